"""
Vector Index - FAISS nearest-neighbour search over record embeddings
Built once from (record_id, vector, entity_id, category_tag) entries and never mutated.
Holds record ids only; record content stays in the RecordStore.
"""
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import faiss

from constants import (
    FIELD_DISPLAY_NAMES, VECTOR_INDEX_FILENAME, VECTOR_MAPPING_FILENAME,
    INDEX_METADATA_FILENAME,
)
from retrieval_errors import VectorIndexUnavailable
from structured_logger import get_logger


@dataclass(frozen=True)
class EmbeddingEntry:
    """One record's embedding plus the metadata used for pre-filtering"""
    record_id: str
    vector: Sequence[float]
    entity_id: str
    category_tag: str


def build_embedding_text(record) -> str:
    """
    Text embedded for a record: scheme + section header, body, key fields

    Args:
        record: Record instance

    Returns:
        Text to pass to the embedding provider
    """
    text = f"Scheme: {record.entity_display_name}\nSection: {record.category_tag}\n\n"
    text += record.body_text

    key_lines = []
    for field_name, label in FIELD_DISPLAY_NAMES.items():
        value = record.structured_fields.get(field_name)
        if value is not None and value != '':
            key_lines.append(f"{label}: {value}")
    if key_lines:
        text += "\n\nKey Information:\n" + "\n".join(key_lines)

    return text.strip()


def cosine_to_similarity(cosine: float) -> float:
    """Map cosine in [-1, 1] to a similarity in [0, 1] (1 = same direction)"""
    return float(min(1.0, max(0.0, (cosine + 1.0) / 2.0)))


class VectorIndex:
    """Inner-product FAISS index over L2-normalised vectors (cosine similarity)"""

    def __init__(self, index: 'faiss.Index', mapping: List[Dict[str, str]]):
        if index.ntotal != len(mapping):
            raise VectorIndexUnavailable(
                f"Index holds {index.ntotal} vectors but mapping has {len(mapping)} entries")
        self.index = index
        self.dimension = index.d
        self._mapping = mapping
        self._annotations = {m['record_id']: (m['entity_id'], m['category_tag']) for m in mapping}

    @classmethod
    def build(cls, entries: Sequence[EmbeddingEntry], dimension: Optional[int] = None) -> 'VectorIndex':
        """
        Build an index from embedding entries

        Entries whose vector has the wrong length or zero norm are skipped.

        Args:
            entries: EmbeddingEntry objects in corpus order
            dimension: Expected vector length (defaults to the first entry's length)

        Returns:
            VectorIndex

        Raises:
            VectorIndexUnavailable: no usable vectors
        """
        logger = get_logger()
        if not entries:
            raise VectorIndexUnavailable("No embeddings to index")
        if dimension is None:
            dimension = len(entries[0].vector)

        vectors = []
        mapping = []
        seen = set()
        for entry in entries:
            if entry.record_id in seen:
                logger.warning("duplicate_embedding_skipped", record_id=entry.record_id)
                continue
            vector = np.asarray(entry.vector, dtype='float32')
            if vector.shape != (dimension,) or not np.any(vector):
                logger.warning("embedding_skipped", record_id=entry.record_id,
                               length=int(vector.size), expected=dimension)
                continue
            seen.add(entry.record_id)
            vectors.append(vector)
            mapping.append({
                'record_id': entry.record_id,
                'entity_id': entry.entity_id,
                'category_tag': entry.category_tag,
            })

        if not vectors:
            raise VectorIndexUnavailable("No usable embeddings to index")

        matrix = np.ascontiguousarray(np.vstack(vectors), dtype='float32')
        faiss.normalize_L2(matrix)

        index = faiss.IndexFlatIP(dimension)
        index.add(matrix)
        return cls(index, mapping)

    @property
    def size(self) -> int:
        return self.index.ntotal

    def __len__(self) -> int:
        return self.index.ntotal

    def record_ids(self) -> List[str]:
        """Indexed record ids in insertion order"""
        return [m['record_id'] for m in self._mapping]

    def candidate(self, record_id: str) -> Optional[Tuple[str, str]]:
        """(entity_id, category_tag) for an indexed record, or None"""
        return self._annotations.get(record_id)

    def query(self, vector: Sequence[float], k: int) -> List[Tuple[str, float]]:
        """
        Nearest records to a query vector

        Args:
            vector: Query embedding (normalised here)
            k: Maximum number of results; larger than the index returns everything

        Returns:
            List of (record_id, similarity) with similarity in [0, 1], best first
        """
        if k <= 0 or self.index.ntotal == 0:
            return []
        query_vector = np.asarray(vector, dtype='float32').reshape(1, -1)
        if query_vector.shape[1] != self.dimension:
            raise ValueError(
                f"Query vector has dimension {query_vector.shape[1]}, index expects {self.dimension}")
        if not np.any(query_vector):
            return []
        query_vector = np.ascontiguousarray(query_vector)
        faiss.normalize_L2(query_vector)

        search_k = min(k, self.index.ntotal)
        scores, indices = self.index.search(query_vector, search_k)

        results = []
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0:
                continue
            results.append((self._mapping[idx]['record_id'], cosine_to_similarity(float(score))))
        return results

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, directory: Union[str, Path], extra_metadata: Optional[Dict] = None):
        """Write index, id mapping and a small metadata file into directory"""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        index_path = directory / VECTOR_INDEX_FILENAME
        mapping_path = directory / VECTOR_MAPPING_FILENAME
        faiss.write_index(self.index, str(index_path))
        with open(mapping_path, "w", encoding="utf-8") as f:
            json.dump(self._mapping, f, ensure_ascii=False, indent=2)

        index_metadata = {
            "vector_db": "faiss",
            "index_path": str(index_path),
            "mapping_path": str(mapping_path),
            "distance_metric": "cosine",
            "vector_count": self.index.ntotal,
            "dimension": self.dimension,
            **(extra_metadata or {})
        }
        with open(directory / INDEX_METADATA_FILENAME, "w", encoding="utf-8") as f:
            json.dump(index_metadata, f, indent=2)

    @classmethod
    def load(cls, directory: Union[str, Path]) -> 'VectorIndex':
        """
        Load an index written by save()

        Raises:
            VectorIndexUnavailable: files missing, unreadable or inconsistent
        """
        directory = Path(directory)
        index_path = directory / VECTOR_INDEX_FILENAME
        mapping_path = directory / VECTOR_MAPPING_FILENAME
        if not index_path.is_file() or not mapping_path.is_file():
            raise VectorIndexUnavailable(f"No vector index in {directory}")

        try:
            index = faiss.read_index(str(index_path))
            with open(mapping_path, encoding="utf-8") as f:
                mapping = json.load(f)
        except (RuntimeError, OSError, json.JSONDecodeError) as e:
            # faiss reports I/O and format problems as RuntimeError
            raise VectorIndexUnavailable(f"Could not load vector index from {directory}: {e}") from e

        if not isinstance(mapping, list) or not all(
                isinstance(m, dict) and {'record_id', 'entity_id', 'category_tag'} <= m.keys()
                for m in mapping):
            raise VectorIndexUnavailable(f"Malformed vector mapping in {mapping_path}")
        return cls(index, mapping)
