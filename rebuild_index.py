"""
Rebuild the vector index for a corpus snapshot
Embeds every record and writes vector_index.faiss + vector_mapping.json
next to records.jsonl. Records whose embedding fails are left out.
"""
import asyncio
import sys
import time
from pathlib import Path
from typing import List, Optional

from config_loader import get_config
from embedding_provider import EmbeddingProvider, create_embedding_provider
from record_store import RecordStore
from retrieval_errors import EmbeddingProviderError, RetrievalError
from structured_logger import configure_logger, get_logger
from vector_index import EmbeddingEntry, VectorIndex, build_embedding_text

# Pause between provider calls to stay under API rate limits
REQUEST_DELAY_SECONDS = 0.2


async def embed_records(store: RecordStore, provider: EmbeddingProvider,
                        delay: float = REQUEST_DELAY_SECONDS) -> List[EmbeddingEntry]:
    """
    Embed every record in corpus order

    Args:
        store: Loaded RecordStore
        provider: Embedding provider
        delay: Seconds to wait between calls

    Returns:
        EmbeddingEntry list (failed records omitted)
    """
    logger = get_logger()
    entries = []
    records = store.all_records()

    for position, record in enumerate(records, start=1):
        try:
            vector = await provider.embed(build_embedding_text(record))
        except EmbeddingProviderError as e:
            logger.warning("record_embedding_failed", record_id=record.id, error=str(e))
            continue
        entries.append(EmbeddingEntry(
            record_id=record.id,
            vector=vector,
            entity_id=record.entity_id,
            category_tag=record.category_tag,
        ))
        logger.debug("record_embedded", record_id=record.id, progress=f"{position}/{len(records)}")
        if delay:
            await asyncio.sleep(delay)

    return entries


async def rebuild_index(snapshot_dir, provider: EmbeddingProvider,
                        delay: float = REQUEST_DELAY_SECONDS) -> VectorIndex:
    """
    Build and save the vector index for a snapshot directory

    Raises:
        CorpusUnavailable: snapshot cannot be loaded
        VectorIndexUnavailable: no record could be embedded
        EmbeddingProviderError: provider is not available at all
    """
    logger = get_logger()
    if not provider.is_available:
        raise EmbeddingProviderError(f"Embedding provider '{provider.name}' is not available")

    start_time = time.time()
    store = await RecordStore.load_async(snapshot_dir)
    logger.info("index_rebuild_started", records=len(store), provider=provider.name)

    entries = await embed_records(store, provider, delay=delay)
    index = VectorIndex.build(entries, dimension=provider.dimension)
    index.save(snapshot_dir, extra_metadata={
        "embedding_provider": provider.name,
        "embedding_model": provider.model_id,
        "record_count": len(store),
    })

    logger.info("index_rebuild_completed",
                vectors=index.size,
                skipped=len(store) - index.size,
                dimension=index.dimension,
                elapsed_seconds=round(time.time() - start_time, 2))
    return index


async def main(snapshot_dir: Optional[str] = None) -> int:
    config = get_config()
    snapshot_dir = snapshot_dir or config.snapshot_dir
    provider = create_embedding_provider(config)
    configure_logger(config.log_level, config.log_file)
    try:
        index = await rebuild_index(Path(snapshot_dir), provider, delay=REQUEST_DELAY_SECONDS)
    except RetrievalError as e:
        get_logger().log_error(e, {'snapshot_dir': str(snapshot_dir)})
        return 1
    finally:
        await provider.close()
    print(f"✓ Index rebuild complete: {index.size} vectors in {snapshot_dir}")
    return 0


def cli():
    sys.exit(asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None)))


if __name__ == "__main__":
    cli()
