"""
Tests for embedding providers
"""
import asyncio
import json
from unittest.mock import Mock, patch

import aiohttp
import numpy as np
import pytest

import embedding_provider
from embedding_provider import (
    GeminiEmbeddingProvider, NullEmbeddingProvider, SentenceTransformerEmbeddingProvider,
    create_embedding_provider,
)
from retrieval_errors import EmbeddingProviderError, EmbeddingTimeout


class FakeResponse:
    def __init__(self, status=200, payload=None, text=""):
        self.status = status
        self._payload = payload
        self._text = text

    async def json(self):
        return self._payload

    async def text(self):
        return self._text


class FakeRequest:
    """Async context manager returned by session.post()"""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self.response

    async def __aexit__(self, *exc_info):
        return False


def gemini_with(request):
    provider = GeminiEmbeddingProvider(api_key="test-key", timeout=1.0)
    session = Mock()
    session.post.return_value = request
    provider._get_session = Mock(return_value=session)
    return provider, session


class TestGeminiEmbeddingProvider:
    """Tests for the Gemini REST provider"""

    @pytest.mark.asyncio
    async def test_embed(self):
        provider, session = gemini_with(FakeRequest(FakeResponse(
            payload={"embedding": {"values": [0.1, 0.2, 0.3]}})))

        vector = await provider.embed("expense ratio")

        assert vector == [0.1, 0.2, 0.3]
        _, kwargs = session.post.call_args
        assert kwargs["params"] == {"key": "test-key"}
        assert kwargs["json"]["content"]["parts"][0]["text"] == "expense ratio"
        assert session.post.call_args[0][0].endswith("models/text-embedding-004:embedContent")

    @pytest.mark.asyncio
    async def test_http_error(self):
        provider, _ = gemini_with(FakeRequest(FakeResponse(status=429, text="quota")))

        with pytest.raises(EmbeddingProviderError, match="429"):
            await provider.embed("nav")

    @pytest.mark.asyncio
    async def test_timeout(self):
        provider, _ = gemini_with(FakeRequest(error=asyncio.TimeoutError()))

        with pytest.raises(EmbeddingTimeout):
            await provider.embed("nav")

    @pytest.mark.asyncio
    async def test_client_error(self):
        provider, _ = gemini_with(FakeRequest(error=aiohttp.ClientConnectionError("refused")))

        with pytest.raises(EmbeddingProviderError):
            await provider.embed("nav")

    @pytest.mark.asyncio
    async def test_empty_values(self):
        provider, _ = gemini_with(FakeRequest(FakeResponse(payload={"embedding": {}})))

        with pytest.raises(EmbeddingProviderError):
            await provider.embed("nav")

    @pytest.mark.asyncio
    async def test_malformed_json_body(self):
        response = FakeResponse()
        response.json = Mock(side_effect=json.JSONDecodeError("Expecting value", "<html>", 0))
        provider, _ = gemini_with(FakeRequest(response))

        with pytest.raises(EmbeddingProviderError, match="not valid JSON"):
            await provider.embed("nav")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        ["not", "an", "object"],
        {"embedding": ["values"]},
        {"embedding": {"values": "0.1,0.2"}},
    ])
    async def test_unexpected_payload_shape(self, payload):
        provider, _ = gemini_with(FakeRequest(FakeResponse(payload=payload)))

        with pytest.raises(EmbeddingProviderError):
            await provider.embed("nav")

    @pytest.mark.asyncio
    async def test_non_numeric_values(self):
        provider, _ = gemini_with(FakeRequest(FakeResponse(
            payload={"embedding": {"values": [0.1, "high", None]}})))

        with pytest.raises(EmbeddingProviderError, match="not numeric"):
            await provider.embed("nav")

    @pytest.mark.asyncio
    async def test_without_api_key(self):
        provider = GeminiEmbeddingProvider(api_key=None)

        assert not provider.is_available
        with pytest.raises(EmbeddingProviderError):
            await provider.embed("nav")

    def test_dimension(self):
        assert GeminiEmbeddingProvider(api_key="k").dimension == 768


class TestSentenceTransformerEmbeddingProvider:
    """Tests for the local provider (model mocked out)"""

    @pytest.mark.asyncio
    async def test_embed(self):
        model = Mock()
        model.get_sentence_embedding_dimension.return_value = 3
        model.encode.return_value = np.array([[0.6, 0.8, 0.0]], dtype="float32")

        with patch.object(embedding_provider, "SentenceTransformer", return_value=model):
            provider = SentenceTransformerEmbeddingProvider("tiny-model")

        assert provider.is_available
        assert provider.dimension == 3
        vector = await provider.embed("fees")
        assert vector == pytest.approx([0.6, 0.8, 0.0])
        model.encode.assert_called_once_with(["fees"], normalize_embeddings=True)

    @pytest.mark.asyncio
    async def test_model_load_failure(self):
        with patch.object(embedding_provider, "SentenceTransformer", side_effect=OSError("offline")):
            provider = SentenceTransformerEmbeddingProvider("missing-model")

        assert not provider.is_available
        with pytest.raises(EmbeddingProviderError):
            await provider.embed("fees")

    @pytest.mark.asyncio
    async def test_encode_failure(self):
        model = Mock()
        model.get_sentence_embedding_dimension.return_value = 3
        model.encode.side_effect = RuntimeError("CUDA out of memory")

        with patch.object(embedding_provider, "SentenceTransformer", return_value=model):
            provider = SentenceTransformerEmbeddingProvider("tiny-model")

        with pytest.raises(EmbeddingProviderError):
            await provider.embed("fees")


class TestCreateEmbeddingProvider:
    """Tests for provider selection"""

    @staticmethod
    def config(provider, model="text-embedding-004"):
        return Mock(embedding_provider=provider, gemini_api_key="k", embedding_model=model,
                    embedding_timeout=2.0, embedding_dimension=None)

    def test_gemini(self):
        provider = create_embedding_provider(self.config("Gemini"))

        assert isinstance(provider, GeminiEmbeddingProvider)
        assert provider.timeout == 2.0
        assert provider.dimension == 768

    def test_sentence_transformers_uses_local_default_model(self):
        with patch.object(embedding_provider, "SentenceTransformer") as model_cls:
            provider = create_embedding_provider(self.config("sentence_transformers"))

        assert isinstance(provider, SentenceTransformerEmbeddingProvider)
        model_cls.assert_called_once_with("all-MiniLM-L6-v2")

    def test_none(self):
        provider = create_embedding_provider(self.config("none"))

        assert isinstance(provider, NullEmbeddingProvider)
        assert not provider.is_available

    def test_unknown_name(self):
        assert isinstance(create_embedding_provider(self.config("word2vec")), NullEmbeddingProvider)
