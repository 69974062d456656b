"""
Query Strategy Router

Chooses between semantic and direct search according to the repository's
query policy, merges or falls back, keeps rolling statistics and a
single-flight result cache. All shared state is owned per repository.
"""

import asyncio
import json
import re
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, assert_never

import structlog

from review_forge.errors import MethodUnavailableError, RetrievalError
from review_forge.policy import QueryPolicy, QueryStrategy

from .direct import DirectSearch
from .models import RetrievalMethod, RetrievalResult, ScoredUnit
from .semantic import SemanticSearch

logger = structlog.get_logger(__name__)

# Recommendation thresholds
MIN_CALLS_FOR_RECOMMENDATION = 10
HIGH_VECTOR_FAILURE_RATE = 0.3
LOW_VECTOR_FAILURE_RATE = 0.1
VECTOR_SLOWDOWN_MS = 2000.0

# Cached results kept per repository before the oldest are evicted
MAX_CACHE_ENTRIES = 256


@dataclass
class QueryStats:
    """Rolling retrieval counters for one repository."""

    total_queries: int = 0
    vector_calls: int = 0
    direct_calls: int = 0
    vector_failures: int = 0
    direct_failures: int = 0
    avg_vector_ms: float = 0.0
    avg_direct_ms: float = 0.0
    fallback_to_direct: int = 0
    empty_vector_to_direct: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    index_updates: int = 0
    index_failures: int = 0
    last_served_by: RetrievalMethod | None = None
    last_index_update: float | None = None
    is_vector_index_available: bool = False
    preferred_strategy: QueryStrategy | None = None
    recommendation: str | None = None

    @property
    def cache_hit_ratio(self) -> float:
        lookups = self.cache_hits + self.cache_misses
        return self.cache_hits / lookups if lookups else 0.0

    @property
    def fallback_count(self) -> int:
        return self.fallback_to_direct

    @property
    def vector_failure_rate(self) -> float:
        attempts = self.vector_calls + self.vector_failures
        return self.vector_failures / attempts if attempts else 0.0

    def record_latency(self, method: RetrievalMethod, elapsed_ms: float) -> None:
        """Count a successful call and fold its latency into the running mean."""
        if method == RetrievalMethod.VECTOR:
            self.vector_calls += 1
            self.avg_vector_ms += (elapsed_ms - self.avg_vector_ms) / self.vector_calls
        else:
            self.direct_calls += 1
            self.avg_direct_ms += (elapsed_ms - self.avg_direct_ms) / self.direct_calls

    def recommend(self) -> None:
        """Derive the advisory preferred strategy. Never changes behavior."""
        attempts = self.vector_calls + self.vector_failures + self.direct_calls
        if attempts < MIN_CALLS_FOR_RECOMMENDATION:
            self.preferred_strategy = None
            self.recommendation = "Not enough queries to recommend a strategy"
            return

        rate = self.vector_failure_rate
        if rate > HIGH_VECTOR_FAILURE_RATE:
            self.preferred_strategy = QueryStrategy.DIRECT_FALLBACK
            self.recommendation = (
                f"Vector search fails {rate:.0%} of the time; keep direct search as fallback"
            )
        elif (
            self.vector_calls
            and self.direct_calls
            and self.avg_vector_ms > self.avg_direct_ms + VECTOR_SLOWDOWN_MS
        ):
            self.preferred_strategy = QueryStrategy.DIRECT_ONLY
            self.recommendation = (
                f"Vector search averages {self.avg_vector_ms:.0f} ms against "
                f"{self.avg_direct_ms:.0f} ms for direct search"
            )
        elif rate < LOW_VECTOR_FAILURE_RATE and self.is_vector_index_available:
            self.preferred_strategy = QueryStrategy.HYBRID
            self.recommendation = "Vector search is reliable; hybrid retrieval is recommended"
        else:
            self.preferred_strategy = QueryStrategy.DIRECT_FALLBACK
            self.recommendation = "Vector search is usable with direct search as fallback"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "totalQueries": self.total_queries,
            "vectorCalls": self.vector_calls,
            "directCalls": self.direct_calls,
            "vectorFailures": self.vector_failures,
            "directFailures": self.direct_failures,
            "avgVectorMs": round(self.avg_vector_ms, 2),
            "avgDirectMs": round(self.avg_direct_ms, 2),
            "fallbackCount": self.fallback_to_direct,
            "cacheHits": self.cache_hits,
            "cacheMisses": self.cache_misses,
            "cacheHitRatio": round(self.cache_hit_ratio, 4),
            "indexUpdates": self.index_updates,
            "indexFailures": self.index_failures,
            "lastServedBy": self.last_served_by.value if self.last_served_by else None,
            "isVectorIndexAvailable": self.is_vector_index_available,
            "preferredStrategy": (
                self.preferred_strategy.value if self.preferred_strategy else None
            ),
            "recommendation": self.recommendation,
        }


@dataclass
class RoutedRetrieval:
    """A retrieval result plus how it was served."""

    result: RetrievalResult
    served_by: RetrievalMethod
    cache_hit: bool = False
    fell_back: bool = False


@dataclass
class _CacheEntry:
    value: RoutedRetrieval
    created_at: float


class _LeaderCancelled(Exception):
    """The caller computing a cache entry was cancelled; waiters recompute."""


@dataclass
class _RepositoryState:
    """Everything the router owns for one repository."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    stats: QueryStats = field(default_factory=QueryStats)
    cache: dict[str, _CacheEntry] = field(default_factory=dict)
    inflight: dict[str, asyncio.Future] = field(default_factory=dict)


class QueryStrategyRouter:
    """Route retrieval calls per policy, with caching and statistics."""

    def __init__(
        self,
        semantic: SemanticSearch,
        direct: DirectSearch,
        clock: Callable[[], float] = time.time,
        max_cache_entries: int = MAX_CACHE_ENTRIES,
    ):
        self.semantic = semantic
        self.direct = direct
        self._clock = clock
        self.max_cache_entries = max_cache_entries
        self._repositories: dict[str, _RepositoryState] = {}

    def _state(self, repository_path: str) -> _RepositoryState:
        state = self._repositories.get(repository_path)
        if state is None:
            state = self._repositories[repository_path] = _RepositoryState()
        return state

    async def stats(self, repository_path: str) -> QueryStats:
        """Snapshot of a repository's statistics."""
        state = self._state(repository_path)
        async with state.lock:
            state.stats.last_index_update = self.semantic.last_index_update(repository_path)
            state.stats.is_vector_index_available = self.semantic.is_index_available(
                repository_path
            )
            state.stats.recommend()
            return replace(state.stats)

    async def clear_cache(self, repository_path: str) -> None:
        state = self._state(repository_path)
        async with state.lock:
            state.cache.clear()

    async def update_index(
        self,
        repository_path: str,
        files: Mapping[str, str | None],
        policy: QueryPolicy,
    ) -> int:
        """
        Re-embed changed files so vector search sees their current content.

        Does nothing when the policy disables vector search. A failed update
        is counted and leaves retrieval to fall back as the policy allows.

        Args:
            repository_path: Repository the files belong to
            files: File path to current content (None removes the file)
            policy: Repository query policy

        Returns:
            Number of unit embeddings written
        """
        if not policy.enable_vector or not files:
            return 0
        state = self._state(repository_path)
        try:
            written = await self.semantic.index_files(repository_path, files)
        except MethodUnavailableError:
            async with state.lock:
                state.stats.index_failures += 1
            return 0
        async with state.lock:
            state.stats.index_updates += 1
        return written

    async def index_repository(self, repository_path: str, policy: QueryPolicy) -> int:
        """Embed every file direct search would consider in a checkout."""
        if not policy.enable_vector:
            return 0
        options = policy.direct_options()
        paths = await asyncio.to_thread(self.direct.list_files, repository_path, options)
        files: dict[str, str | None] = {}
        for path in paths:
            read = await asyncio.to_thread(
                self.direct.read_file, repository_path, path, None, None, options.max_file_size_kb
            )
            if read.exists and read.content:
                files[path] = read.content
        logger.info("Indexing repository", repository=repository_path, files=len(files))
        return await self.update_index(repository_path, files, policy)

    async def retrieve(
        self,
        repository_path: str,
        query: str,
        policy: QueryPolicy,
        k: int | None = None,
    ) -> RoutedRetrieval:
        """
        Retrieve the most relevant units for ``query``.

        Args:
            repository_path: Repository checkout to search
            query: Free-text query (usually identifiers from a diff)
            policy: Strategy, enable flags, limits and cache settings
            k: Maximum units to return (defaults to ``policy.max_results``)

        Returns:
            RoutedRetrieval with the ranked result and the serving method

        Raises:
            RetrievalError: if the configured method(s) failed with no fallback
        """
        k = k or policy.max_results
        state = self._state(repository_path)
        async with state.lock:
            state.stats.total_queries += 1

        if not policy.enable_caching:
            return await self._execute(repository_path, query, policy, k, state)

        key = self._cache_key(repository_path, query, policy, k)
        while True:
            async with state.lock:
                entry = state.cache.get(key)
                if entry is not None and self._is_fresh(entry, repository_path, policy):
                    state.stats.cache_hits += 1
                    return replace(entry.value, cache_hit=True)
                if entry is not None:
                    del state.cache[key]
                pending = state.inflight.get(key)
                if pending is None:
                    state.stats.cache_misses += 1
                    leader = asyncio.get_running_loop().create_future()
                    state.inflight[key] = leader
                    break

            try:
                value = await asyncio.shield(pending)
            except _LeaderCancelled:
                continue
            async with state.lock:
                state.stats.cache_hits += 1
            return replace(value, cache_hit=True)

        try:
            value = await self._execute(repository_path, query, policy, k, state)
        except asyncio.CancelledError:
            leader.set_exception(_LeaderCancelled())
            raise
        except Exception as e:
            leader.set_exception(e)
            raise
        else:
            async with state.lock:
                self._prune(state, policy)
                state.cache[key] = _CacheEntry(value=value, created_at=self._clock())
            leader.set_result(value)
            return value
        finally:
            state.inflight.pop(key, None)
            if leader.done() and not leader.cancelled():
                # Mark the exception retrieved when nobody was waiting
                leader.exception()

    def _is_fresh(self, entry: _CacheEntry, repository_path: str, policy: QueryPolicy) -> bool:
        if self._clock() - entry.created_at > policy.cache_ttl_seconds:
            return False
        updated = self.semantic.last_index_update(repository_path)
        return updated is None or updated <= entry.created_at

    def _prune(self, state: _RepositoryState, policy: QueryPolicy) -> None:
        """Drop expired entries, then the oldest beyond the size cap. Lock held."""
        stale = [
            key
            for key, entry in state.cache.items()
            if self._clock() - entry.created_at > policy.cache_ttl_seconds
        ]
        for key in stale:
            del state.cache[key]
        while len(state.cache) >= self.max_cache_entries:
            del state.cache[next(iter(state.cache))]

    @staticmethod
    def _cache_key(repository_path: str, query: str, policy: QueryPolicy, k: int) -> str:
        normalized = re.sub(r"\s+", " ", query).strip().lower()
        options = policy.model_dump(
            mode="json", exclude={"cache_ttl_seconds", "enable_caching"}
        )
        options["k"] = k
        return json.dumps([repository_path, normalized, options], sort_keys=True)

    async def _execute(
        self,
        repository_path: str,
        query: str,
        policy: QueryPolicy,
        k: int,
        state: _RepositoryState,
    ) -> RoutedRetrieval:
        """Run the configured strategy once, uncached."""
        strategy = policy.strategy
        match strategy:
            case QueryStrategy.VECTOR_ONLY:
                routed = await self._vector_only(repository_path, query, k, state)
            case QueryStrategy.DIRECT_ONLY:
                routed = await self._direct_only(repository_path, query, policy, k, state)
            case QueryStrategy.HYBRID:
                routed = await self._hybrid(repository_path, query, policy, k, state)
            case QueryStrategy.DIRECT_FALLBACK:
                routed = await self._direct_fallback(repository_path, query, policy, k, state)
            case _:
                assert_never(strategy)

        async with state.lock:
            state.stats.last_served_by = routed.served_by
        logger.info(
            "Retrieval served",
            repository=repository_path,
            strategy=strategy.value,
            served_by=routed.served_by.value,
            fell_back=routed.fell_back,
            results=len(routed.result),
        )
        return routed

    async def _vector_only(
        self, repository_path: str, query: str, k: int, state: _RepositoryState
    ) -> RoutedRetrieval:
        try:
            result = await self._timed(
                state, RetrievalMethod.VECTOR, self.semantic.search(repository_path, query, k)
            )
        except MethodUnavailableError as e:
            raise RetrievalError(f"Vector search failed with no fallback configured: {e}") from e
        return RoutedRetrieval(result=result, served_by=RetrievalMethod.VECTOR)

    async def _direct_only(
        self,
        repository_path: str,
        query: str,
        policy: QueryPolicy,
        k: int,
        state: _RepositoryState,
    ) -> RoutedRetrieval:
        try:
            result = await self._timed(
                state,
                RetrievalMethod.DIRECT,
                self.direct.retrieve(repository_path, query, k, policy.direct_options()),
            )
        except (OSError, ValueError) as e:
            raise RetrievalError(f"Direct search failed: {e}") from e
        return RoutedRetrieval(result=result, served_by=RetrievalMethod.DIRECT)

    async def _hybrid(
        self,
        repository_path: str,
        query: str,
        policy: QueryPolicy,
        k: int,
        state: _RepositoryState,
    ) -> RoutedRetrieval:
        if not policy.enable_vector:
            return await self._direct_only(repository_path, query, policy, k, state)
        if not policy.enable_direct:
            return await self._vector_only(repository_path, query, k, state)

        vector_result, direct_result = await asyncio.gather(
            self._timed(
                state, RetrievalMethod.VECTOR, self.semantic.search(repository_path, query, k)
            ),
            self._timed(
                state,
                RetrievalMethod.DIRECT,
                self.direct.retrieve(repository_path, query, k, policy.direct_options()),
            ),
            return_exceptions=True,
        )
        for outcome in (vector_result, direct_result):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome

        if isinstance(vector_result, Exception) and isinstance(direct_result, Exception):
            raise RetrievalError(
                f"Both search methods failed: vector={vector_result}; direct={direct_result}"
            ) from direct_result
        if isinstance(vector_result, Exception):
            return RoutedRetrieval(result=direct_result, served_by=RetrievalMethod.DIRECT)
        if isinstance(direct_result, Exception):
            return RoutedRetrieval(result=vector_result, served_by=RetrievalMethod.VECTOR)

        merged = merge_results(query, [vector_result, direct_result], k)
        return RoutedRetrieval(result=merged, served_by=RetrievalMethod.HYBRID)

    async def _direct_fallback(
        self,
        repository_path: str,
        query: str,
        policy: QueryPolicy,
        k: int,
        state: _RepositoryState,
    ) -> RoutedRetrieval:
        if not policy.enable_vector:
            return await self._direct_only(repository_path, query, policy, k, state)

        try:
            result = await self._timed(
                state,
                RetrievalMethod.VECTOR,
                asyncio.wait_for(
                    self.semantic.search(repository_path, query, k),
                    timeout=policy.vector_latency_ceiling_seconds,
                ),
            )
        except (MethodUnavailableError, asyncio.TimeoutError) as e:
            if not policy.enable_direct:
                raise RetrievalError(f"Vector search failed: {e}") from e
            async with state.lock:
                state.stats.fallback_to_direct += 1
            logger.warning(
                "Vector search failed, falling back to direct search",
                repository=repository_path,
                error=str(e) or type(e).__name__,
            )
            routed = await self._direct_only(repository_path, query, policy, k, state)
            routed.fell_back = True
            return routed

        if len(result) == 0 and policy.enable_direct:
            async with state.lock:
                state.stats.empty_vector_to_direct += 1
            return await self._direct_only(repository_path, query, policy, k, state)
        return RoutedRetrieval(result=result, served_by=RetrievalMethod.VECTOR)

    async def _timed(
        self,
        state: _RepositoryState,
        method: RetrievalMethod,
        call: Awaitable[RetrievalResult],
    ) -> RetrievalResult:
        """Await a search call and record its latency or failure."""
        started = time.perf_counter()
        try:
            result = await call
        except Exception:
            async with state.lock:
                if method == RetrievalMethod.VECTOR:
                    state.stats.vector_failures += 1
                else:
                    state.stats.direct_failures += 1
            raise
        elapsed_ms = (time.perf_counter() - started) * 1000
        async with state.lock:
            state.stats.record_latency(method, elapsed_ms)
        return result


def merge_results(query: str, results: list[RetrievalResult], k: int | None = None) -> RetrievalResult:
    """
    Merge results from several methods.

    Units in the same file with overlapping line ranges are duplicates; the
    higher-scored copy wins. Output uses the standard ranking order.
    """
    candidates: list[ScoredUnit] = [item for r in results for item in r.items]
    candidates.sort(key=lambda item: (-item.score, item.unit.file_path, item.unit.start_line))

    kept: list[ScoredUnit] = []
    for item in candidates:
        if any(item.unit.overlaps(other.unit) for other in kept):
            continue
        kept.append(item)

    merged = RetrievalResult(query=query, items=kept, method=RetrievalMethod.HYBRID)
    if k is not None and len(merged.items) > k:
        merged.items = merged.items[:k]
    merged.truncated = any(r.truncated for r in results)
    merged.truncation_reason = next(
        (r.truncation_reason for r in results if r.truncation_reason), None
    )
    return merged
