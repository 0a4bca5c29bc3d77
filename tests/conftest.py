"""
Shared fixtures: a small five-record corpus, hand-picked 4-d vectors for it,
and a deterministic embedding provider
"""
import asyncio
import copy
import json

import pytest

from embedding_provider import EmbeddingProvider
from query_analyzer import QueryAnalyzer
from record_store import Record, RecordStore, make_record_id
from vector_index import EmbeddingEntry, VectorIndex

FETCHED_AT = "2025-11-14T09:30:00Z"


def make_raw_record(entity_id, category_tag, body_text, structured_fields=None,
                    sub_key=None, display_name=None):
    return {
        "id": make_record_id(entity_id, category_tag, sub_key),
        "entity_id": entity_id,
        "entity_display_name": display_name or entity_id.replace("-", " ").title(),
        "category_tag": category_tag,
        "source_ref": f"https://example.com/funds/{entity_id}",
        "fetched_at": FETCHED_AT,
        "body_text": body_text,
        "structured_fields": structured_fields or {},
    }


SAMPLE_RECORDS = [
    make_raw_record("fund-a-mid-cap", "fees",
                    "Total expense ratio 0.71%. Exit load 1% within one year.",
                    {"expense_ratio_percent": 0.71}),
    make_raw_record("fund-a-mid-cap", "facts_performance",
                    "Net asset value 224.35. Three year annualised gain 27.0%.",
                    {"nav": 224.35}),
    make_raw_record("fund-b-large-cap", "fees",
                    "Total expense ratio 0.97%. Exit load 1% within one year.",
                    {"expense_ratio_percent": 0.97}),
    make_raw_record("fund-b-large-cap", "riskometer_benchmark",
                    "Very high risk. Benchmark Nifty 50 TRI.",
                    {"riskometer_category": "Very High Risk"}),
    make_raw_record("fund-c-small-cap", "tax_redemption",
                    "No lock-in. Gains taxed as LTCG after twelve months.",
                    {"lock_in_text": "No lock-in"}),
]

RECORD_VECTORS = {
    "fund-a-mid-cap__fees": [1.0, 0.0, 0.0, 0.0],
    "fund-a-mid-cap__facts_performance": [0.0, 1.0, 0.0, 0.0],
    "fund-b-large-cap__fees": [0.9, 0.1, 0.0, 0.0],
    "fund-b-large-cap__riskometer_benchmark": [0.0, 0.0, 1.0, 0.0],
    "fund-c-small-cap__tax_redemption": [0.0, 0.0, 0.0, 1.0],
}

TEST_ENTITY_RULES = [
    (r"mid.?cap", "fund-a-mid-cap"),
    (r"large.?cap", "fund-b-large-cap"),
    (r"small.?cap", "fund-c-small-cap"),
]


class FakeEmbeddingProvider(EmbeddingProvider):
    """Returns canned vectors per text; can be made to fail or stall"""

    name = "fake"

    def __init__(self, vectors=None, default=None, dimension=4, available=True,
                 error=None, delay=0.0):
        self.vectors = vectors or {}
        self.default = default if default is not None else [0.5] * dimension
        self.dimension = dimension
        self.available = available
        self.error = error
        self.delay = delay
        self.calls = []
        self.closed = False

    @property
    def is_available(self):
        return self.available

    async def embed(self, text):
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.vectors.get(text, self.default))

    async def close(self):
        self.closed = True


def write_snapshot(directory, raw_records):
    """Write raw records as records.jsonl under directory"""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "records.jsonl"
    with open(path, "w", encoding="utf-8") as f:
        for raw in raw_records:
            f.write(json.dumps(raw) + "\n")
    return path


def build_sample_index(records=None):
    records = records if records is not None else [Record.model_validate(r) for r in SAMPLE_RECORDS]
    entries = [
        EmbeddingEntry(record_id=r.id, vector=RECORD_VECTORS[r.id],
                       entity_id=r.entity_id, category_tag=r.category_tag)
        for r in records
    ]
    return VectorIndex.build(entries, dimension=4)


@pytest.fixture
def raw_records():
    return copy.deepcopy(SAMPLE_RECORDS)


@pytest.fixture
def records(raw_records):
    return [Record.model_validate(raw) for raw in raw_records]


@pytest.fixture
def store(records):
    return RecordStore(records)


@pytest.fixture
def vector_index():
    return build_sample_index()


@pytest.fixture
def analyzer():
    return QueryAnalyzer(entity_rules=TEST_ENTITY_RULES)


@pytest.fixture
def snapshot_dir(tmp_path, raw_records):
    directory = tmp_path / "corpus"
    write_snapshot(directory, raw_records)
    return directory
