"""
RAG Retriever - Cascading retrieval over the fund corpus
Exact key lookup -> filtered vector search -> relaxed vector searches ->
unfiltered vector search -> substring fallbacks. The first strategy that
finds anything wins; later strategies are not run.
"""
import asyncio
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from constants import (
    CATEGORY_TAGS, DEFAULT_LIMIT, CANDIDATE_MULTIPLIER, EXACT_MATCH_SCORE,
    SUBSTRING_PLACEHOLDER_SCORE, SCAN_TOKEN_COUNT, EMBEDDING_TIMEOUT_SECONDS,
)
from embedding_provider import EmbeddingProvider, NullEmbeddingProvider, create_embedding_provider
from query_analyzer import QueryAnalyzer, QueryHints
from record_store import Record, RecordStore, make_record_id
from retrieval_errors import (
    CorpusUnavailable, EmbeddingTimeout, InvalidQuery,
    RecordNotFound, VectorIndexUnavailable,
)
from structured_logger import get_logger
from vector_index import VectorIndex


class RetrievalMethod(str, Enum):
    """Strategy that produced a result, in cascade order"""
    EXACT = "exact"
    VECTOR_FILTERED = "vector_filtered"
    CATEGORY_FILTERED = "category_filtered"
    ENTITY_FILTERED = "entity_filtered"
    VECTOR_UNFILTERED = "vector_unfiltered"
    SUBSTRING_EXACT = "substring_exact"
    SUBSTRING_ENTITY = "substring_entity"
    SUBSTRING_CATEGORY = "substring_category"
    SUBSTRING_SCAN = "substring_scan"
    NONE = "none"


VECTOR_METHODS = frozenset({
    RetrievalMethod.VECTOR_FILTERED, RetrievalMethod.CATEGORY_FILTERED,
    RetrievalMethod.ENTITY_FILTERED, RetrievalMethod.VECTOR_UNFILTERED,
})


@dataclass
class RetrievalResult:
    """
    Outcome of one retrieve() call.

    scores runs parallel to records. Vector methods carry similarities in
    [0, 1]; exact lookups carry 1.0; substring methods carry a constant
    placeholder that says nothing about relevance.
    """
    records: List[Record]
    scores: List[float]
    method: RetrievalMethod
    entity_hint: Optional[str] = None
    category_hint: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.records)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'records': [record.to_dict() for record in self.records],
            'scores': list(self.scores),
            'method': self.method.value,
            'entity_hint': self.entity_hint,
            'category_hint': self.category_hint,
        }


@dataclass
class StrategyHit:
    """Non-empty output of a strategy, before the limit is applied"""
    records: List[Record]
    scores: List[float]


@dataclass
class QueryContext:
    """Per-call state shared by the strategies of one retrieve() call"""
    query: str
    hints: QueryHints
    limit: int
    search_k: int
    neighbours: Optional[List[tuple]] = field(default=None, repr=False)


StrategyFn = Callable[[QueryContext], Awaitable[Optional[StrategyHit]]]


@dataclass(frozen=True)
class RetrievalStrategy:
    method: RetrievalMethod
    run: StrategyFn


class RetrievalOrchestrator:
    """
    Single entry point for retrieval.

    Create one per process, await initialize() once, and share the instance.
    Everything it holds is read-only after initialization, so concurrent
    retrieve() calls need no locking.
    """

    def __init__(self, snapshot_dir: Optional[Union[str, Path]] = None,
                 store: Optional[RecordStore] = None,
                 vector_index: Optional[VectorIndex] = None,
                 embedding_provider: Optional[EmbeddingProvider] = None,
                 analyzer: Optional[QueryAnalyzer] = None,
                 use_vector_search: bool = True,
                 default_limit: int = DEFAULT_LIMIT,
                 candidate_multiplier: int = CANDIDATE_MULTIPLIER,
                 substring_score: float = SUBSTRING_PLACEHOLDER_SCORE,
                 embedding_timeout: float = EMBEDDING_TIMEOUT_SECONDS,
                 allowed_categories: Optional[Iterable[str]] = CATEGORY_TAGS):
        """
        Initialize orchestrator (nothing is loaded until initialize())

        Args:
            snapshot_dir: Corpus snapshot directory (records.jsonl + optional index files)
            store: Pre-built RecordStore; skips loading from snapshot_dir
            vector_index: Pre-built VectorIndex; skips loading from snapshot_dir
            embedding_provider: Query embedder; vector search is off without one
            analyzer: QueryAnalyzer (default rule tables when omitted)
            use_vector_search: False forces substring-only mode
            default_limit: Limit used when retrieve() gets none
            candidate_multiplier: Vector steps fetch limit * multiplier neighbours
            substring_score: Placeholder score attached to substring results
            embedding_timeout: Seconds allowed for one query embedding
            allowed_categories: Category vocabulary enforced on load
        """
        if snapshot_dir is None and store is None:
            raise ValueError("Either snapshot_dir or store is required")
        self.snapshot_dir = Path(snapshot_dir) if snapshot_dir is not None else None
        self.analyzer = analyzer or QueryAnalyzer()
        self.embedding_provider = embedding_provider or NullEmbeddingProvider()
        self.use_vector_search = use_vector_search
        self.default_limit = default_limit
        self.candidate_multiplier = candidate_multiplier
        self.substring_score = substring_score
        self.embedding_timeout = embedding_timeout
        self.allowed_categories = allowed_categories
        self.logger = get_logger()

        self._preloaded_store = store
        self._preloaded_index = vector_index
        self._store: Optional[RecordStore] = None
        self._vector_index: Optional[VectorIndex] = None
        self._init_task: Optional[asyncio.Future] = None
        self.strategies: List[RetrievalStrategy] = []

    @classmethod
    def from_config(cls, config) -> 'RetrievalOrchestrator':
        """Build an orchestrator from a Config instance"""
        analyzer = QueryAnalyzer(
            entity_rules=config.get_rules('analyzer.entity_rules'),
            category_rules=config.get_rules('analyzer.category_rules'),
        )
        return cls(
            snapshot_dir=config.snapshot_dir,
            embedding_provider=create_embedding_provider(config),
            analyzer=analyzer,
            default_limit=config.default_limit,
            candidate_multiplier=config.candidate_multiplier,
            substring_score=config.substring_score,
            embedding_timeout=config.embedding_timeout,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._store is not None

    @property
    def is_vector_enabled(self) -> bool:
        return self._vector_index is not None

    async def initialize(self):
        """
        Load the corpus (and the vector index when possible) exactly once

        Concurrent callers wait on the same load. A failed load is raised to
        every waiter and the next call starts a fresh attempt.

        Raises:
            CorpusUnavailable: the record store could not be loaded
        """
        if self._store is not None:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._load())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _load(self):
        start_time = time.time()
        if self._preloaded_store is not None:
            store = self._preloaded_store
        else:
            try:
                store = await RecordStore.load_async(self.snapshot_dir,
                                                     allowed_categories=self.allowed_categories)
            except CorpusUnavailable as e:
                self.logger.critical("corpus_unavailable", error=str(e),
                                     snapshot_dir=str(self.snapshot_dir))
                raise

        vector_index = await self._load_vector_index(store)

        self._store = store
        self._vector_index = vector_index
        self.strategies = self._build_strategies()
        self.logger.info("retriever_initialized",
                         records=len(store),
                         entities=len(store.list_entities()),
                         vector_search=vector_index is not None,
                         vectors=vector_index.size if vector_index is not None else 0,
                         elapsed_seconds=round(time.time() - start_time, 3))

    async def _load_vector_index(self, store: RecordStore) -> Optional[VectorIndex]:
        """Return a usable vector index, or None for substring-only mode"""
        if not self.use_vector_search:
            self._log_vector_disabled("vector search switched off")
            return None
        if not self.embedding_provider.is_available:
            self._log_vector_disabled(f"embedding provider '{self.embedding_provider.name}' unavailable")
            return None

        vector_index = self._preloaded_index
        if vector_index is None:
            if self.snapshot_dir is None:
                self._log_vector_disabled("no snapshot directory for the vector index")
                return None
            loop = asyncio.get_running_loop()
            try:
                vector_index = await loop.run_in_executor(None, VectorIndex.load, self.snapshot_dir)
            except VectorIndexUnavailable as e:
                self._log_vector_disabled(str(e))
                return None

        expected = self.embedding_provider.dimension
        if expected is not None and expected != vector_index.dimension:
            self._log_vector_disabled(
                f"provider dimension {expected} does not match index dimension {vector_index.dimension}")
            return None

        missing = sum(1 for record_id in vector_index.record_ids() if record_id not in store)
        if missing:
            self.logger.warning("vector_index_stale", missing_records=missing)
        return vector_index

    def _log_vector_disabled(self, reason: str):
        self.logger.log_degraded("vector_search", reason, mode="substring_only")

    def _build_strategies(self) -> List[RetrievalStrategy]:
        strategies = [RetrievalStrategy(RetrievalMethod.EXACT, self._exact_lookup)]
        if self._vector_index is not None:
            strategies += [
                RetrievalStrategy(RetrievalMethod.VECTOR_FILTERED, self._vector_filtered),
                RetrievalStrategy(RetrievalMethod.CATEGORY_FILTERED, self._vector_category_only),
                RetrievalStrategy(RetrievalMethod.ENTITY_FILTERED, self._vector_entity_only),
                RetrievalStrategy(RetrievalMethod.VECTOR_UNFILTERED, self._vector_unfiltered),
            ]
        strategies += [
            RetrievalStrategy(RetrievalMethod.SUBSTRING_EXACT, self._substring_exact),
            RetrievalStrategy(RetrievalMethod.SUBSTRING_ENTITY, self._substring_entity),
            RetrievalStrategy(RetrievalMethod.SUBSTRING_CATEGORY, self._substring_category),
            RetrievalStrategy(RetrievalMethod.SUBSTRING_SCAN, self._substring_scan),
        ]
        return strategies

    def replace_strategy(self, method: RetrievalMethod, run: StrategyFn):
        """Swap the function behind one strategy (instrumentation hook)"""
        for position, strategy in enumerate(self.strategies):
            if strategy.method == method:
                self.strategies[position] = replace(strategy, run=run)
                return
        raise KeyError(method)

    async def close(self):
        await self.embedding_provider.close()

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def retrieve(self, query_text: str, limit: Optional[int] = None) -> RetrievalResult:
        """
        Retrieve records for a free-text query

        Args:
            query_text: Non-empty user query
            limit: Maximum number of records (default_limit when None). 0 is
                allowed and reports the matching method with no records.

        Returns:
            RetrievalResult; method NONE with no records when nothing matched

        Raises:
            InvalidQuery: empty query or negative/non-integer limit
            CorpusUnavailable: the corpus could not be loaded
        """
        if not isinstance(query_text, str) or not query_text.strip():
            raise InvalidQuery("Query text must be a non-empty string")
        if limit is None:
            limit = self.default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise InvalidQuery(f"Limit must be a non-negative integer, got {limit!r}")

        await self.initialize()

        start_time = time.time()
        hints = self.analyzer.analyze(query_text)
        ctx = QueryContext(
            query=query_text,
            hints=hints,
            limit=limit,
            search_k=self.candidate_multiplier * max(limit, 1),
        )

        result = None
        for strategy in self.strategies:
            hit = await strategy.run(ctx)
            self.logger.log_strategy(strategy.method.value, len(hit.records) if hit else 0)
            if hit is not None and hit.records:
                result = RetrievalResult(
                    records=hit.records[:limit],
                    scores=hit.scores[:limit],
                    method=strategy.method,
                    entity_hint=hints.entity_id,
                    category_hint=hints.category_tag,
                )
                break

        if result is None:
            result = RetrievalResult(records=[], scores=[], method=RetrievalMethod.NONE,
                                     entity_hint=hints.entity_id,
                                     category_hint=hints.category_tag)

        self.logger.log_retrieval(query_text, result.method.value, len(result.records),
                                  time.time() - start_time,
                                  entity_hint=hints.entity_id,
                                  category_hint=hints.category_tag)
        return result

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _lookup_exact(self, hints: QueryHints) -> Optional[StrategyHit]:
        if not hints.has_both:
            return None
        try:
            record = self._store.get_by_id(make_record_id(hints.entity_id, hints.category_tag))
        except RecordNotFound:
            return None
        return StrategyHit([record], [EXACT_MATCH_SCORE])

    async def _exact_lookup(self, ctx: QueryContext) -> Optional[StrategyHit]:
        return self._lookup_exact(ctx.hints)

    async def _embed_query(self, text: str) -> List[float]:
        try:
            return await asyncio.wait_for(self.embedding_provider.embed(text),
                                          timeout=self.embedding_timeout)
        except asyncio.TimeoutError as e:
            raise EmbeddingTimeout(
                f"Query embedding exceeded {self.embedding_timeout}s") from e

    async def _neighbours(self, ctx: QueryContext) -> List[tuple]:
        """Nearest neighbours for the query, embedded at most once per call"""
        if ctx.neighbours is not None:
            return ctx.neighbours
        ctx.neighbours = []
        try:
            vector = await self._embed_query(ctx.query)
        except Exception as e:
            # Any provider failure only costs this call its vector steps
            self.logger.warning("embedding_failed",
                                error_type=type(e).__name__, error_message=str(e))
            return ctx.neighbours
        try:
            ctx.neighbours = self._vector_index.query(vector, ctx.search_k)
        except ValueError as e:
            self.logger.warning("vector_query_failed", error_message=str(e))
        return ctx.neighbours

    async def _vector_search(self, ctx: QueryContext, entity_id: Optional[str],
                             category_tag: Optional[str]) -> Optional[StrategyHit]:
        records = []
        scores = []
        for record_id, similarity in await self._neighbours(ctx):
            annotation = self._vector_index.candidate(record_id)
            if annotation is None:
                continue
            candidate_entity, candidate_category = annotation
            if entity_id is not None and candidate_entity != entity_id:
                continue
            if category_tag is not None and candidate_category != category_tag:
                continue
            try:
                records.append(self._store.get_by_id(record_id))
            except RecordNotFound:
                continue
            scores.append(similarity)
        if not records:
            return None
        return StrategyHit(records, scores)

    async def _vector_filtered(self, ctx: QueryContext) -> Optional[StrategyHit]:
        if ctx.hints.is_empty:
            return None
        return await self._vector_search(ctx, ctx.hints.entity_id, ctx.hints.category_tag)

    async def _vector_category_only(self, ctx: QueryContext) -> Optional[StrategyHit]:
        # Same filter as the strict pass unless both hints are present
        if not ctx.hints.has_both:
            return None
        return await self._vector_search(ctx, None, ctx.hints.category_tag)

    async def _vector_entity_only(self, ctx: QueryContext) -> Optional[StrategyHit]:
        if not ctx.hints.has_both:
            return None
        return await self._vector_search(ctx, ctx.hints.entity_id, None)

    async def _vector_unfiltered(self, ctx: QueryContext) -> Optional[StrategyHit]:
        return await self._vector_search(ctx, None, None)

    def _substring_hit(self, records: List[Record]) -> Optional[StrategyHit]:
        if not records:
            return None
        return StrategyHit(records, [self.substring_score] * len(records))

    async def _substring_exact(self, ctx: QueryContext) -> Optional[StrategyHit]:
        hit = self._lookup_exact(ctx.hints)
        if hit is None:
            return None
        return self._substring_hit(hit.records)

    async def _substring_entity(self, ctx: QueryContext) -> Optional[StrategyHit]:
        if ctx.hints.entity_id is None:
            return None
        records = self._store.get_by_entity(ctx.hints.entity_id)
        if ctx.hints.category_tag is not None:
            narrowed = [r for r in records if r.category_tag == ctx.hints.category_tag]
            if narrowed:
                records = narrowed
        return self._substring_hit(records)

    async def _substring_category(self, ctx: QueryContext) -> Optional[StrategyHit]:
        if ctx.hints.category_tag is None:
            return None
        return self._substring_hit(self._store.get_by_category(ctx.hints.category_tag))

    async def _substring_scan(self, ctx: QueryContext) -> Optional[StrategyHit]:
        tokens = [t.lower() for t in ctx.query.split()[:SCAN_TOKEN_COUNT]]
        if not tokens:
            return None
        records = [
            record for record in self._store.all_records()
            if any(token in record.body_text.lower() for token in tokens)
        ]
        return self._substring_hit(records)

    # ------------------------------------------------------------------
    # Pass-through accessors
    # ------------------------------------------------------------------

    def _require_store(self) -> RecordStore:
        if self._store is None:
            raise RuntimeError("Retriever not initialized; await initialize() first")
        return self._store

    def list_entities(self) -> Set[str]:
        return self._require_store().list_entities()

    def get_record(self, record_id: str) -> Optional[Record]:
        """Record by id, or None when it does not exist"""
        try:
            return self._require_store().get_by_id(record_id)
        except RecordNotFound:
            return None

    def get_records_for_entity(self, entity_id: str) -> List[Record]:
        return self._require_store().get_by_entity(entity_id)

    def status(self) -> Dict[str, Any]:
        """Summary used by the health endpoint"""
        if self._store is None:
            return {'initialized': False, 'vector_search': False}
        return {
            'initialized': True,
            'vector_search': self.is_vector_enabled,
            'mode': 'vector' if self.is_vector_enabled else 'substring_only',
            'records': len(self._store),
            'entities': len(self._store.list_entities()),
            'vectors': self._vector_index.size if self._vector_index is not None else 0,
            'embedding_provider': self.embedding_provider.name,
        }
