"""Caching, rate limiting, retrying and timeouts as composable step decorators.

``wrap`` stacks them in a fixed order: cache check, then rate limit, then
retry around the inner step.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .canonical import state_hash
from .errors import StepTimeoutError
from .utils import MISSING, ensure_callable, run_step

if TYPE_CHECKING:
    from .ledger import Ledger
    from .models import State, Step

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]
CacheKey = tuple[str, Hashable]


# ---------------------------------------------------------------------------
# TTL cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheEntry:
    timestamp: float
    result: Any


class TTLCache:
    """Time-bounded memo of step results keyed by operation name and input hash.

    Expired entries are dropped lazily on read. Writes keep the cache under
    ``max_entries`` by evicting the least recently used entry, and purge all
    expired entries at most once per ``sweep_interval`` seconds.
    """

    def __init__(
        self,
        ttl: float,
        *,
        max_entries: int = 1_024,
        sweep_interval: float | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        if ttl < 0:
            raise ValueError(f"ttl must be >= 0, got: {ttl}")
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got: {max_entries}")
        self.ttl = ttl
        self.max_entries = max_entries
        self.sweep_interval = ttl if sweep_interval is None else sweep_interval
        self._clock = clock
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return self.get(key) is not MISSING

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp >= self.ttl

    def get(self, key: CacheKey) -> Any:
        """Return the cached result, or ``MISSING`` if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return MISSING
        if self._expired(entry, self._clock()):
            del self._entries[key]
            return MISSING
        self._entries.move_to_end(key)
        return entry.result

    def put(self, key: CacheKey, result: Any) -> None:
        now = self._clock()
        self._entries[key] = CacheEntry(timestamp=now, result=result)
        self._entries.move_to_end(key)
        if now - self._last_sweep >= self.sweep_interval:
            self.sweep()
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def sweep(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        self._last_sweep = now
        stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("Swept %d expired cache entries", len(stale))
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


# ---------------------------------------------------------------------------
# Token-bucket rate limiting
# ---------------------------------------------------------------------------


@dataclass
class TokenBucket:
    capacity: float
    refill_rate: float
    tokens: float
    last_refill: float

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def try_take(self, now: float) -> bool:
        self.refill(now)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False


class RateLimiter:
    """Per-operation token buckets enforcing a queries-per-second ceiling."""

    def __init__(self, qps: float, *, clock: Clock = time.monotonic, sleep: Sleep = asyncio.sleep) -> None:
        if qps <= 0:
            raise ValueError(f"qps must be > 0, got: {qps}")
        self.qps = qps
        self._clock = clock
        self._sleep = sleep
        self._buckets: dict[str, TokenBucket] = {}

    @property
    def refill_interval(self) -> float:
        return 1.0 / self.qps

    def bucket(self, name: str) -> TokenBucket:
        bucket = self._buckets.get(name)
        if bucket is None:
            capacity = max(1.0, self.qps)
            bucket = TokenBucket(capacity=capacity, refill_rate=self.qps, tokens=capacity, last_refill=self._clock())
            self._buckets[name] = bucket
        return bucket

    async def acquire(self, name: str) -> float:
        """Take one token for ``name``; returns the seconds spent waiting.

        While the bucket is empty the caller sleeps one refill interval and
        tries again, so concurrent callers are granted at most ``qps`` tokens
        per second between them.
        """
        bucket = self.bucket(name)
        waited = 0.0
        while not bucket.try_take(self._clock()):
            wait = self.refill_interval
            logger.debug("Rate limit reached for '%s'; waiting %.3fs", name, wait)
            await self._sleep(wait)
            waited += wait
        return waited

    def clear(self) -> None:
        self._buckets.clear()


# ---------------------------------------------------------------------------
# Step decorators
# ---------------------------------------------------------------------------


def cached(name: str, step: Step, cache: TTLCache, *, key: Callable[[State], Hashable] | None = None) -> Step:
    """Serve repeated calls with an identical input state from ``cache``.

    A hit returns without invoking ``step`` (and without touching any rate
    limiter stacked beneath it).
    """
    ensure_callable(step, "Cached step")
    key_fn = key if key is not None else state_hash

    async def _cached(state: State, ledger: Ledger) -> State:
        cache_key = (name, key_fn(state))
        hit = cache.get(cache_key)
        if hit is not MISSING:
            logger.debug("Cache hit for '%s'", name)
            return hit
        result = await run_step(step, state, ledger)
        cache.put(cache_key, result)
        return result

    return _cached


def rate_limited(name: str, step: Step, limiter: RateLimiter) -> Step:
    ensure_callable(step, "Rate-limited step")

    async def _rate_limited(state: State, ledger: Ledger) -> State:
        await limiter.acquire(name)
        return await run_step(step, state, ledger)

    return _rate_limited


async def _attempt_with_backoff(
    step: Step,
    state: State,
    ledger: Ledger,
    *,
    attempts: int,
    delay: float,
    backoff: float,
    sleep: Sleep,
    name: str | None,
) -> State:
    wait = delay
    for attempt in range(1, attempts + 1):
        try:
            return await run_step(step, state, ledger)
        except Exception as exc:
            if attempt >= attempts:
                exc.add_note(f"gave up after {attempts} attempts" + (f" of '{name}'" if name else ""))
                raise
            if name is not None:
                await ledger.emit(
                    f"retry:{name}",
                    state,
                    state,
                    meta={"error": str(exc), "attempt": attempt},
                )
            logger.debug("Attempt %d/%d of %s failed: %s", attempt, attempts, name or "step", exc)
            await sleep(wait)
            wait *= backoff
    raise AssertionError("unreachable")


def retrying(
    name: str,
    step: Step,
    *,
    attempts: int = 3,
    delay: float = 0.1,
    backoff: float = 2.0,
    sleep: Sleep = asyncio.sleep,
) -> Step:
    """Retry ``step`` with exponential backoff, recording ``retry:<name>`` per failure.

    After ``attempts`` failures the last exception is re-raised unchanged.
    """
    ensure_callable(step, "Retried step")
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got: {attempts}")

    async def _retrying(state: State, ledger: Ledger) -> State:
        return await _attempt_with_backoff(
            step, state, ledger, attempts=attempts, delay=delay, backoff=backoff, sleep=sleep, name=name
        )

    return _retrying


def retry(
    step: Step,
    *,
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    sleep: Sleep = asyncio.sleep,
) -> Step:
    """Retry a plain step without recording ledger events."""
    ensure_callable(step, "Retried step")
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got: {attempts}")

    async def _retry(state: State, ledger: Ledger) -> State:
        return await _attempt_with_backoff(
            step, state, ledger, attempts=attempts, delay=delay, backoff=backoff, sleep=sleep, name=None
        )

    return _retry


def wrap(
    name: str,
    step: Step,
    *,
    cache: TTLCache,
    limiter: RateLimiter,
    attempts: int,
    delay: float,
    backoff: float,
    key: Callable[[State], Hashable] | None = None,
) -> Step:
    """Apply cache, rate limit and retry around ``step``, outermost first."""
    inner = retrying(name, step, attempts=attempts, delay=delay, backoff=backoff)
    return cached(name, rate_limited(name, inner, limiter), cache, key=key)


def timeout(step: Step, seconds: float) -> Step:
    """Stop waiting for ``step`` after ``seconds`` and raise ``StepTimeoutError``.

    The inner task is cancelled; work it already handed off elsewhere is not
    aborted.
    """
    ensure_callable(step, "Timed step")
    if seconds <= 0:
        raise ValueError(f"seconds must be > 0, got: {seconds}")

    async def _timed(state: State, ledger: Ledger) -> State:
        scope = asyncio.timeout(seconds)
        try:
            async with scope:
                return await run_step(step, state, ledger)
        except TimeoutError as exc:
            if scope.expired():
                raise StepTimeoutError(seconds) from exc
            raise

    return _timed
