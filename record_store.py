"""
Record Store - Loads a corpus snapshot and serves read-only lookups
Records are validated on load; any malformed record fails the whole load
"""
import json
import hashlib
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Union

import aiofiles
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from constants import CATEGORY_TAGS, ID_SEPARATOR, RECORDS_FILENAME
from retrieval_errors import CorpusUnavailable, RecordNotFound
from structured_logger import get_logger

# Field names used by the ingestion pipeline's chunk files
FIELD_ALIASES = {
    'chunk_id': 'id',
    'scheme_id': 'entity_id',
    'scheme_display_name': 'entity_display_name',
    'section_type': 'category_tag',
    'source_url': 'source_ref',
    'content_md': 'body_text',
    'fields_json': 'structured_fields',
    'hash': 'content_hash',
}


def compute_content_hash(body_text: str) -> str:
    """SHA-256 hex digest of a record body"""
    return hashlib.sha256(body_text.encode('utf-8')).hexdigest()


def make_record_id(entity_id: str, category_tag: str, sub_key: Optional[str] = None) -> str:
    """Build the canonical id {entity_id}__{category_tag}[__{sub_key}]"""
    parts = [entity_id, category_tag]
    if sub_key:
        parts.append(sub_key)
    return ID_SEPARATOR.join(parts)


class Record(BaseModel):
    """One retrievable unit of content about a scheme/category pair"""
    model_config = ConfigDict(frozen=True, extra='ignore')

    id: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    entity_display_name: str = Field(min_length=1)
    category_tag: str = Field(min_length=1)
    source_ref: str = Field(min_length=1)
    fetched_at: datetime
    body_text: str
    structured_fields: Dict[str, Any] = Field(default_factory=dict)
    content_hash: str = ''

    @model_validator(mode='before')
    @classmethod
    def _fill_content_hash(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get('content_hash') and isinstance(data.get('body_text'), str):
            data = dict(data)
            data['content_hash'] = compute_content_hash(data['body_text'])
        return data

    @model_validator(mode='after')
    def _check_id_layout(self) -> 'Record':
        prefix = make_record_id(self.entity_id, self.category_tag)
        if self.id != prefix and not self.id.startswith(prefix + ID_SEPARATOR):
            raise ValueError(f"id '{self.id}' does not start with '{prefix}'")
        return self

    @property
    def sub_key(self) -> Optional[str]:
        prefix = make_record_id(self.entity_id, self.category_tag)
        if self.id == prefix:
            return None
        return self.id[len(prefix) + len(ID_SEPARATOR):]

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')


def normalize_raw_record(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map ingestion chunk field names onto Record field names"""
    normalized = {}
    for key, value in raw.items():
        target = FIELD_ALIASES.get(key, key)
        # Native names win when a raw record carries both spellings
        if target in normalized and key != target:
            continue
        normalized[target] = value
    return normalized


class RecordStore:
    """
    Immutable id -> Record map with secondary indexes by entity and category.

    Build one with RecordStore.load(path) (or load_async) or directly from
    a sequence of Records. Nothing mutates the store afterwards.
    """

    def __init__(self, records: Sequence[Record],
                 allowed_categories: Optional[Iterable[str]] = CATEGORY_TAGS):
        self._records: Dict[str, Record] = {}
        self._by_entity: Dict[str, List[str]] = {}
        self._by_category: Dict[str, List[str]] = {}
        allowed = set(allowed_categories) if allowed_categories is not None else None

        for record in records:
            if record.id in self._records:
                raise CorpusUnavailable(f"Duplicate record id: {record.id}")
            if allowed is not None and record.category_tag not in allowed:
                raise CorpusUnavailable(
                    f"Unknown category '{record.category_tag}' in record {record.id}")
            if record.content_hash != compute_content_hash(record.body_text):
                # Stale hash from the build; retrieval does not depend on it
                get_logger().warning("content_hash_mismatch", record_id=record.id)
            self._records[record.id] = record
            self._by_entity.setdefault(record.entity_id, []).append(record.id)
            self._by_category.setdefault(record.category_tag, []).append(record.id)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @staticmethod
    def resolve_source(source: Union[str, Path]) -> Path:
        """Snapshot directories hold records.jsonl; files are used as given"""
        path = Path(source)
        if path.is_dir():
            path = path / RECORDS_FILENAME
        if not path.is_file():
            raise CorpusUnavailable(f"Corpus snapshot not found: {path}")
        return path

    @classmethod
    def load(cls, source: Union[str, Path],
             allowed_categories: Optional[Iterable[str]] = CATEGORY_TAGS) -> 'RecordStore':
        """
        Load a corpus snapshot

        Args:
            source: Snapshot directory, .jsonl file or .json file
            allowed_categories: Category vocabulary to enforce (None disables the check)

        Returns:
            Populated RecordStore

        Raises:
            CorpusUnavailable: snapshot missing, unparseable, or invalid
        """
        path = cls.resolve_source(source)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise CorpusUnavailable(f"Could not read corpus snapshot {path}: {e}") from e
        return cls.from_text(content, origin=path, allowed_categories=allowed_categories)

    @classmethod
    async def load_async(cls, source: Union[str, Path],
                         allowed_categories: Optional[Iterable[str]] = CATEGORY_TAGS) -> 'RecordStore':
        """Same as load(), reading the file without blocking the event loop"""
        path = cls.resolve_source(source)
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                content = await f.read()
        except OSError as e:
            raise CorpusUnavailable(f"Could not read corpus snapshot {path}: {e}") from e
        return cls.from_text(content, origin=path, allowed_categories=allowed_categories)

    @classmethod
    def from_text(cls, content: str, origin: Union[str, Path] = '<memory>',
                  allowed_categories: Optional[Iterable[str]] = CATEGORY_TAGS) -> 'RecordStore':
        """Parse snapshot text (JSON Lines, a JSON list, or a JSON id -> record map)"""
        raw_records = cls._parse(content, origin)
        records = []
        for position, raw in enumerate(raw_records, start=1):
            if not isinstance(raw, dict):
                raise CorpusUnavailable(f"{origin}: entry {position} is not an object")
            try:
                records.append(Record.model_validate(normalize_raw_record(raw)))
            except ValidationError as e:
                raise CorpusUnavailable(f"{origin}: invalid record at entry {position}: {e}") from e
        if not records:
            raise CorpusUnavailable(f"{origin}: corpus snapshot is empty")
        return cls(records, allowed_categories=allowed_categories)

    @staticmethod
    def _parse(content: str, origin: Union[str, Path]) -> List[Any]:
        stripped = content.strip()
        if not stripped:
            return []
        if str(origin).endswith('.json'):
            try:
                data = json.loads(stripped)
            except json.JSONDecodeError as e:
                raise CorpusUnavailable(f"{origin}: malformed JSON: {e}") from e
            if isinstance(data, dict):
                # chunk lookup layout: {record_id: record}
                return list(data.values())
            if isinstance(data, list):
                return data
            raise CorpusUnavailable(f"{origin}: expected a list or an object of records")

        entries = []
        for line_no, line in enumerate(stripped.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise CorpusUnavailable(f"{origin}:{line_no}: malformed JSON line: {e}") from e
        return entries

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_id(self, record_id: str) -> Record:
        """Return the record with this id or raise RecordNotFound"""
        try:
            return self._records[record_id]
        except KeyError:
            raise RecordNotFound(f"No record with id '{record_id}'") from None

    def get_by_entity(self, entity_id: str) -> List[Record]:
        return [self._records[rid] for rid in self._by_entity.get(entity_id, [])]

    def get_by_category(self, category_tag: str) -> List[Record]:
        return [self._records[rid] for rid in self._by_category.get(category_tag, [])]

    def list_entities(self) -> Set[str]:
        return set(self._by_entity)

    def list_categories(self) -> Set[str]:
        return set(self._by_category)

    def all_records(self) -> List[Record]:
        """All records in corpus order"""
        return list(self._records.values())

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def __len__(self) -> int:
        return len(self._records)
