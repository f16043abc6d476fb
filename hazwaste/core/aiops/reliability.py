"""Reliability layer for model calls.

Wraps any async operation with:
- TTL result caching keyed by a caller-supplied cache key
- Retry with exponential backoff and jitter for retryable failures
- Fire-and-forget shadow execution for comparing a candidate implementation
- Rate-conscious batch execution with settle-all semantics
- Optional single-flight sharing of concurrent identical requests

Without single-flight, two concurrent calls with the same cache key that
both miss the cache will both invoke the operation.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import random
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from pydantic import BaseModel

from hazwaste.core.aiops.errors import is_retryable
from hazwaste.core.aiops.types import (
    CacheEntry,
    ExecutionOutcome,
    ReliabilityOptions,
    Settled,
    ShadowComparison,
    ShadowRecord,
)

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class ReliabilityExecutor:
    """Runs async operations with cache-then-retry-then-optional-shadow."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay_seconds: float = 1.0,
        max_jitter_seconds: float = 1.0,
        single_flight: bool = False,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        self.max_retries = max_retries
        self.base_delay = base_delay_seconds
        self.max_jitter = max_jitter_seconds
        self.single_flight = single_flight
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter

        self._cache: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._shadow_results: dict[str | None, ShadowRecord] = {}
        self._shadow_tasks: set[asyncio.Task[None]] = set()

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute_with_reliability(
        self,
        operation: Operation,
        options: ReliabilityOptions | None = None,
    ) -> ExecutionOutcome[Any]:
        """Execute an operation, serving from cache when a live entry exists.

        Raises the last error if every attempt fails. Non-retryable errors
        are raised on first occurrence.
        """
        options = options or ReliabilityOptions()
        use_cache = options.enable_cache and bool(options.cache_key)

        if use_cache:
            cached = self._get_cached(options.cache_key)
            if cached is not None:
                logger.info("Cache hit: trace=%s key=%s", options.trace_id, options.cache_key)
                return ExecutionOutcome(result=copy.deepcopy(cached.value), from_cache=True)

        if use_cache and self.single_flight:
            return await self._execute_single_flight(operation, options)

        result = await self._execute(operation, options)
        return ExecutionOutcome(result=result, from_cache=False)

    async def _execute_single_flight(
        self,
        operation: Operation,
        options: ReliabilityOptions,
    ) -> ExecutionOutcome[Any]:
        key = options.cache_key
        pending = self._in_flight.get(key)
        if pending is not None:
            logger.info("Joining in-flight request: trace=%s key=%s", options.trace_id, key)
            result = await asyncio.shield(pending)
            return ExecutionOutcome(result=result, from_cache=False)

        task = asyncio.ensure_future(self._execute(operation, options))
        self._in_flight[key] = task
        task.add_done_callback(lambda _: self._in_flight.pop(key, None))
        result = await asyncio.shield(task)
        return ExecutionOutcome(result=result, from_cache=False)

    async def _execute(self, operation: Operation, options: ReliabilityOptions) -> Any:
        result = await self._execute_with_retry(operation, options.trace_id, options.enable_retry)

        if options.enable_cache and options.cache_key:
            self._set_cache(options.cache_key, result, options.cache_ttl_seconds)

        if options.enable_shadow and options.shadow_operation is not None:
            task = asyncio.ensure_future(
                self._execute_shadow(options.trace_id, options.shadow_operation, result)
            )
            self._shadow_tasks.add(task)
            task.add_done_callback(self._shadow_tasks.discard)

        return result

    async def _execute_with_retry(
        self,
        operation: Operation,
        trace_id: str | None,
        enable_retry: bool,
    ) -> Any:
        max_attempts = self.max_retries if enable_retry else 1
        last_error: BaseException | None = None

        for attempt in range(max_attempts):
            start = time.perf_counter()
            try:
                result = await operation()
            except Exception as e:
                if not is_retryable(e):
                    logger.warning(
                        "Request failed with non-retryable error: trace=%s error=%s",
                        trace_id, e,
                    )
                    raise
                last_error = e
                logger.warning(
                    "Request failed, retrying: trace=%s attempt=%d error=%s",
                    trace_id, attempt, e,
                )
                if attempt < max_attempts - 1:
                    await self._sleep(self.calculate_backoff(attempt))
                continue

            latency_ms = (time.perf_counter() - start) * 1000
            logger.info(
                "Request succeeded: trace=%s attempt=%d latency_ms=%.0f",
                trace_id, attempt, latency_ms,
            )
            return result

        logger.error("All retries exhausted: trace=%s error=%s", trace_id, last_error)
        if last_error is None:
            raise RuntimeError(f"No attempt was made: trace={trace_id}")
        raise last_error

    def calculate_backoff(self, attempt: int) -> float:
        """Delay before the next attempt: ``base * 2**attempt + jitter``."""
        return self.base_delay * (2 ** attempt) + self._jitter() * self.max_jitter

    async def batch_execute(
        self,
        requests: Sequence[tuple[Operation, ReliabilityOptions | None]],
        batch_size: int = 10,
        delay_between_batches: float = 0.1,
    ) -> list[Settled]:
        """Execute requests in chunks, concurrently within each chunk.

        A failing item never cancels its siblings; each item's outcome is
        returned as a ``Settled`` record in input order.
        """
        results: list[Settled] = []
        total_batches = (len(requests) + batch_size - 1) // batch_size

        for index in range(0, len(requests), batch_size):
            batch = requests[index:index + batch_size]
            batch_results = await asyncio.gather(
                *(self.execute_with_reliability(op, opts) for op, opts in batch),
                return_exceptions=True,
            )
            results.extend(Settled.from_result(r) for r in batch_results)

            logger.info(
                "Batch completed: batch=%d/%d",
                index // batch_size + 1, total_batches,
            )

            if index + batch_size < len(requests):
                await self._sleep(delay_between_batches)

        return results

    # =========================================================================
    # Shadow execution
    # =========================================================================

    async def _execute_shadow(
        self,
        trace_id: str | None,
        shadow_operation: Operation,
        primary_result: Any,
    ) -> None:
        try:
            start = time.perf_counter()
            shadow_result = await shadow_operation()
            latency_ms = (time.perf_counter() - start) * 1000

            comparison = compare_results(primary_result, shadow_result)
            logger.info(
                "Shadow execution completed: trace=%s latency_ms=%.0f match=%s similarity=%.3f",
                trace_id, latency_ms, comparison.match, comparison.similarity,
            )

            self._shadow_results[trace_id] = ShadowRecord(
                trace_id=trace_id,
                primary_result=_jsonable(primary_result),
                shadow_result=_jsonable(shadow_result),
                comparison=comparison,
                latency_ms=latency_ms,
            )
        except Exception as e:
            logger.error("Shadow execution failed: trace=%s error=%s", trace_id, e)

    async def drain_shadows(self) -> None:
        """Wait for outstanding shadow executions to finish."""
        if self._shadow_tasks:
            await asyncio.gather(*list(self._shadow_tasks), return_exceptions=True)

    def get_shadow_results(self) -> list[ShadowRecord]:
        return list(self._shadow_results.values())

    def get_shadow_result(self, trace_id: str) -> ShadowRecord | None:
        return self._shadow_results.get(trace_id)

    # =========================================================================
    # Cache
    # =========================================================================

    def _get_cached(self, key: str) -> CacheEntry | None:
        entry = self._cache.get(key)
        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired(self._clock()):
            del self._cache[key]
            self._misses += 1
            return None

        entry.hit_count += 1
        self._hits += 1
        return entry

    def _set_cache(self, key: str, value: Any, ttl_seconds: float) -> None:
        # Stored and served as copies; callers may mutate what they get back
        now = self._clock()
        self._cache[key] = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            expires_at=now + ttl_seconds,
            created_at=now,
        )

    def purge_expired(self) -> int:
        """Remove expired entries and return how many were dropped."""
        now = self._clock()
        expired = [k for k, v in self._cache.items() if v.is_expired(now)]
        for key in expired:
            del self._cache[key]
        return len(expired)

    def clear_cache(self) -> int:
        count = len(self._cache)
        self._cache.clear()
        logger.info("Cache cleared: entries=%d", count)
        return count

    def get_cache_stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "entries": len(self._cache),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total > 0 else 0.0,
            "in_flight": len(self._in_flight),
        }


# =============================================================================
# Comparison helpers
# =============================================================================


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def compare_results(primary: Any, shadow: Any) -> ShadowComparison:
    """Compare primary and shadow results.

    Structured values are compared through their JSON serialisation with a
    character-overlap similarity. Scalars compare by equality only.
    """
    primary, shadow = _jsonable(primary), _jsonable(shadow)

    if type(primary) is not type(shadow):
        return ShadowComparison(match=False, similarity=0.0)

    if isinstance(primary, (dict, list, tuple)):
        primary_str = json.dumps(primary, sort_keys=True, default=str)
        shadow_str = json.dumps(shadow, sort_keys=True, default=str)
        return ShadowComparison(
            match=primary_str == shadow_str,
            similarity=string_similarity(primary_str, shadow_str),
        )

    equal = primary == shadow
    return ShadowComparison(match=equal, similarity=1.0 if equal else 0.0)


def string_similarity(first: str, second: str) -> float:
    """Share of the longer string's length covered by characters of the shorter."""
    longer, shorter = (first, second) if len(first) > len(second) else (second, first)
    if not longer:
        return 1.0
    present = set(longer)
    common = sum(1 for char in shorter if char in present)
    return common / len(longer)
