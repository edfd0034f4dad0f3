from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Any

import pytest

from fxflow.errors import StepTimeoutError
from fxflow.ledger import Ledger, MemorySink
from fxflow.resilience import RateLimiter, TTLCache, cached, retry, retrying, timeout, wrap
from fxflow.utils import MISSING


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class Counter:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, state: dict[str, Any], ledger: Ledger) -> dict[str, Any]:
        self.calls += 1
        return {**state, "calls": self.calls}


class Flaky:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def __call__(self, state: dict[str, Any], ledger: Ledger) -> dict[str, Any]:
        self.calls += 1
        if self.calls <= self.failures:
            raise ValueError(f"boom {self.calls}")
        return {**state, "ok": True}


class RecordingSleep:
    def __init__(self, clock: FakeClock | None = None) -> None:
        self.waits: list[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


def test_ttl_cache_expires_entries(clock: FakeClock) -> None:
    cache = TTLCache(10.0, clock=clock)
    cache.put(("op", "k"), "value")
    clock.advance(9)
    assert cache.get(("op", "k")) == "value"
    clock.advance(1)
    assert cache.get(("op", "k")) is MISSING
    assert len(cache) == 0


def test_ttl_cache_evicts_least_recently_used(clock: FakeClock) -> None:
    cache = TTLCache(10.0, max_entries=2, clock=clock)
    cache.put(("op", "a"), 1)
    cache.put(("op", "b"), 2)
    assert cache.get(("op", "a")) == 1
    cache.put(("op", "c"), 3)
    assert ("op", "b") not in cache
    assert ("op", "a") in cache
    assert ("op", "c") in cache


def test_ttl_cache_sweep_drops_only_expired(clock: FakeClock) -> None:
    cache = TTLCache(10.0, sweep_interval=100.0, clock=clock)
    cache.put(("op", "old"), 1)
    clock.advance(5)
    cache.put(("op", "new"), 2)
    clock.advance(6)
    assert cache.sweep() == 1
    assert len(cache) == 1


def test_zero_ttl_disables_caching(clock: FakeClock) -> None:
    cache = TTLCache(0.0, clock=clock)
    cache.put(("op", "k"), 1)
    assert cache.get(("op", "k")) is MISSING


@pytest.mark.asyncio
async def test_cached_step_skips_repeat_invocations(ledger: Ledger, clock: FakeClock) -> None:
    counter = Counter()
    step = cached("count", counter, TTLCache(60.0, clock=clock))
    first = await step({"n": 1}, ledger)
    second = await step({"n": 1}, ledger)
    assert first == second == {"n": 1, "calls": 1}
    assert counter.calls == 1

    await step({"n": 2}, ledger)
    assert counter.calls == 2

    clock.advance(60)
    await step({"n": 1}, ledger)
    assert counter.calls == 3


@pytest.mark.asyncio
async def test_rate_limiter_waits_one_interval_when_bucket_is_empty(clock: FakeClock) -> None:
    sleep = RecordingSleep(clock)
    limiter = RateLimiter(1.0, clock=clock, sleep=sleep)
    assert await limiter.acquire("api") == 0.0
    assert await limiter.acquire("api") == 1.0
    assert sleep.waits == [1.0]
    assert await limiter.acquire("other") == 0.0


@pytest.mark.asyncio
async def test_rate_limiter_refills_over_time(clock: FakeClock) -> None:
    sleep = RecordingSleep(clock)
    limiter = RateLimiter(2.0, clock=clock, sleep=sleep)
    assert await limiter.acquire("api") == 0.0
    assert await limiter.acquire("api") == 0.0
    clock.advance(0.5)
    assert await limiter.acquire("api") == 0.0
    assert sleep.waits == []


class VirtualTime:
    """Fake clock whose sleeps resolve in deadline order as time is advanced."""

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[tuple[float, int, asyncio.Future[None]]] = []
        self._seq = itertools.count()

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._timers, (self.now + seconds, next(self._seq), waiter))
        await waiter

    async def run(self, tasks: list[asyncio.Task[Any]]) -> None:
        while True:
            for _ in range(5):
                await asyncio.sleep(0)
            if all(task.done() for task in tasks):
                return
            deadline, _, waiter = heapq.heappop(self._timers)
            self.now = deadline
            waiter.set_result(None)
            while self._timers and self._timers[0][0] == deadline:
                heapq.heappop(self._timers)[2].set_result(None)


@pytest.mark.asyncio
async def test_rate_limiter_holds_ceiling_under_concurrent_burst() -> None:
    time_source = VirtualTime()
    limiter = RateLimiter(2.0, clock=time_source, sleep=time_source.sleep)
    grants: list[float] = []

    async def caller() -> None:
        await limiter.acquire("api")
        grants.append(time_source.now)

    tasks = [asyncio.ensure_future(caller()) for _ in range(10)]
    await time_source.run(tasks)

    assert grants == [0.0, 0.0, 0.5, 1.0, 1.5, 2.0, 2.5, 3.0, 3.5, 4.0]
    for start in grants:
        assert sum(1 for granted in grants if start <= granted < start + 1.0) <= 3


def test_rate_limiter_rejects_non_positive_qps() -> None:
    with pytest.raises(ValueError, match="qps must be > 0"):
        RateLimiter(0)


@pytest.mark.asyncio
async def test_retrying_records_each_failed_attempt(ledger: Ledger, sink: MemorySink) -> None:
    flaky = Flaky(failures=2)
    sleep = RecordingSleep()
    step = retrying("fetch", flaky, attempts=3, delay=0.1, backoff=2.0, sleep=sleep)

    result = await step({"id": 1}, ledger)

    assert result == {"id": 1, "ok": True}
    assert flaky.calls == 3
    assert sleep.waits == [0.1, 0.2]
    assert [event.name for event in sink.events] == ["retry:fetch", "retry:fetch"]
    assert [event.meta for event in sink.events] == [
        {"error": "boom 1", "attempt": 1},
        {"error": "boom 2", "attempt": 2},
    ]
    assert not sink.events[0].changed


@pytest.mark.asyncio
async def test_retrying_reraises_last_error_after_all_attempts(ledger: Ledger) -> None:
    flaky = Flaky(failures=5)
    step = retrying("fetch", flaky, attempts=3, delay=0.0, sleep=RecordingSleep())

    with pytest.raises(ValueError, match="boom 3") as excinfo:
        await step({}, ledger)

    assert flaky.calls == 3
    assert any("gave up after 3 attempts" in note for note in excinfo.value.__notes__)


@pytest.mark.asyncio
async def test_plain_retry_records_no_events(ledger: Ledger) -> None:
    flaky = Flaky(failures=1)
    step = retry(flaky, attempts=2, delay=0.5, sleep=RecordingSleep())
    result = await step({}, ledger)
    assert result == {"ok": True}
    assert len(ledger) == 0


def test_retry_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError, match="attempts must be >= 1"):
        retry(Counter(), attempts=0)


@pytest.mark.asyncio
async def test_wrap_serves_cache_hits_without_rate_limiting(ledger: Ledger, clock: FakeClock) -> None:
    sleep = RecordingSleep(clock)
    limiter = RateLimiter(1.0, clock=clock, sleep=sleep)
    counter = Counter()
    step = wrap("op", counter, cache=TTLCache(60.0, clock=clock), limiter=limiter, attempts=1, delay=0.0, backoff=1.0)

    for _ in range(3):
        await step({"q": "same"}, ledger)

    assert counter.calls == 1
    assert sleep.waits == []


@pytest.mark.asyncio
async def test_timeout_raises_step_timeout_error(ledger: Ledger) -> None:
    async def slow(state: dict[str, Any], _ledger: Ledger) -> dict[str, Any]:
        await asyncio.sleep(5)
        return state

    with pytest.raises(StepTimeoutError, match="Step timed out after 0.01s") as excinfo:
        await timeout(slow, 0.01)({}, ledger)
    assert isinstance(excinfo.value, TimeoutError)


@pytest.mark.asyncio
async def test_timeout_passes_through_fast_steps(ledger: Ledger) -> None:
    assert await timeout(Counter(), 1.0)({}, ledger) == {"calls": 1}
