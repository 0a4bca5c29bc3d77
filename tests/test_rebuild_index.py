"""
Tests for the index rebuild script
"""
import json
from unittest.mock import Mock, patch

import numpy as np
import pytest

import embedding_provider
import rebuild_index
from conftest import FakeEmbeddingProvider
from embedding_provider import SentenceTransformerEmbeddingProvider
from rag_retriever import RetrievalMethod, RetrievalOrchestrator
from record_store import RecordStore
from retrieval_errors import CorpusUnavailable, EmbeddingProviderError
from vector_index import VectorIndex


class FlakyProvider(FakeEmbeddingProvider):
    """Fails for any text containing a marker"""

    def __init__(self, marker, **kwargs):
        super().__init__(**kwargs)
        self.marker = marker

    async def embed(self, text):
        if self.marker in text:
            self.calls.append(text)
            raise EmbeddingProviderError("rate limited")
        return await super().embed(text)


class TestRebuildIndex:
    """Tests for rebuild_index()"""

    @pytest.mark.asyncio
    async def test_builds_and_saves(self, snapshot_dir):
        provider = FakeEmbeddingProvider()

        index = await rebuild_index.rebuild_index(snapshot_dir, provider, delay=0)

        assert index.size == 5
        assert (snapshot_dir / "vector_index.faiss").is_file()
        assert VectorIndex.load(snapshot_dir).record_ids() == index.record_ids()
        assert len(provider.calls) == 5
        assert provider.calls[0].startswith("Scheme: Fund A Mid Cap\nSection: fees")

    @pytest.mark.asyncio
    async def test_failed_records_are_left_out(self, snapshot_dir):
        provider = FlakyProvider("Nifty 50")

        index = await rebuild_index.rebuild_index(snapshot_dir, provider, delay=0)

        assert index.size == 4
        assert "fund-b-large-cap__riskometer_benchmark" not in index.record_ids()

    @pytest.mark.asyncio
    async def test_local_model_provider_writes_metadata(self, snapshot_dir):
        model = Mock()
        model.get_sentence_embedding_dimension.return_value = 4
        model.encode.return_value = np.array([[0.5, 0.5, 0.5, 0.5]], dtype="float32")
        with patch.object(embedding_provider, "SentenceTransformer", return_value=model):
            provider = SentenceTransformerEmbeddingProvider("tiny-model")

        index = await rebuild_index.rebuild_index(snapshot_dir, provider, delay=0)

        metadata = json.loads((snapshot_dir / "index_metadata.json").read_text())
        assert index.size == 5
        assert metadata["embedding_provider"] == "sentence_transformers"
        assert metadata["embedding_model"] == "tiny-model"
        assert metadata["dimension"] == 4

    @pytest.mark.asyncio
    async def test_gemini_model_name_in_metadata(self, snapshot_dir):
        provider = FakeEmbeddingProvider()
        provider.model_id = "text-embedding-004"

        await rebuild_index.rebuild_index(snapshot_dir, provider, delay=0)

        metadata = json.loads((snapshot_dir / "index_metadata.json").read_text())
        assert metadata["embedding_model"] == "text-embedding-004"

    @pytest.mark.asyncio
    async def test_unavailable_provider(self, snapshot_dir):
        with pytest.raises(EmbeddingProviderError):
            await rebuild_index.rebuild_index(snapshot_dir, FakeEmbeddingProvider(available=False))

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, tmp_path):
        with pytest.raises(CorpusUnavailable):
            await rebuild_index.rebuild_index(tmp_path / "missing", FakeEmbeddingProvider(), delay=0)

    @pytest.mark.asyncio
    async def test_rebuilt_index_enables_vector_search(self, snapshot_dir, analyzer):
        provider = FakeEmbeddingProvider()
        await rebuild_index.rebuild_index(snapshot_dir, provider, delay=0)

        orchestrator = RetrievalOrchestrator(snapshot_dir=snapshot_dir, embedding_provider=provider,
                                             analyzer=analyzer)
        result = await orchestrator.retrieve("tell me about these funds")

        assert orchestrator.is_vector_enabled
        assert result.method == RetrievalMethod.VECTOR_UNFILTERED


class TestEmbedRecords:
    """Tests for embed_records()"""

    @pytest.mark.asyncio
    async def test_entries_carry_record_metadata(self, store):
        entries = await rebuild_index.embed_records(store, FakeEmbeddingProvider(), delay=0)

        assert [e.record_id for e in entries] == [r.id for r in store.all_records()]
        assert entries[4].entity_id == "fund-c-small-cap"
        assert entries[4].category_tag == "tax_redemption"


class TestMain:
    """Tests for the command-line entry point"""

    @pytest.mark.asyncio
    async def test_success(self, snapshot_dir):
        provider = FakeEmbeddingProvider()

        with patch.object(rebuild_index, "create_embedding_provider", return_value=provider), \
                patch.object(rebuild_index, "REQUEST_DELAY_SECONDS", 0):
            code = await rebuild_index.main(str(snapshot_dir))

        assert code == 0
        assert provider.closed
        assert len(RecordStore.load(snapshot_dir)) == VectorIndex.load(snapshot_dir).size

    @pytest.mark.asyncio
    async def test_failure_exit_code(self, tmp_path):
        provider = FakeEmbeddingProvider()

        with patch.object(rebuild_index, "create_embedding_provider", return_value=provider):
            code = await rebuild_index.main(str(tmp_path / "missing"))

        assert code == 1
        assert provider.closed
