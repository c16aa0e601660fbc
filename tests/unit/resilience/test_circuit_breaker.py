import asyncio

import pytest

from codemend.config.breaker import BreakerConfig
from codemend.core.errors import DependencyOpen, TransientError, ValidationError
from codemend.resilience.circuit_breaker import BreakerRegistry, BreakerState, CircuitBreaker


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FlakyDependency:
    def __init__(self, fail=True):
        self.fail = fail
        self.calls = 0

    async def __call__(self, value="ok"):
        self.calls += 1
        if self.fail:
            raise ConnectionError("dependency down")
        return value


def make_breaker(clock, threshold=5, reset_timeout=30.0, **kwargs):
    config = BreakerConfig(failure_threshold=threshold, reset_timeout=reset_timeout, call_timeout=None)
    return CircuitBreaker("generator", config, clock=clock, **kwargs)


async def _fail_n(breaker, dependency, n):
    for _ in range(n):
        with pytest.raises(ConnectionError):
            await breaker.call(dependency)


def test_opens_after_threshold_and_short_circuits():
    clock = FakeClock()
    breaker = make_breaker(clock, threshold=5)
    dependency = FlakyDependency()

    async def scenario():
        await _fail_n(breaker, dependency, 4)
        assert breaker.state == BreakerState.CLOSED
        await _fail_n(breaker, dependency, 1)
        assert breaker.state == BreakerState.OPEN

        with pytest.raises(DependencyOpen) as excinfo:
            await breaker.call(dependency)
        assert excinfo.value.retry_after == pytest.approx(30.0)

    asyncio.run(scenario())
    # the short-circuited call never reached the dependency
    assert dependency.calls == 5
    assert breaker.snapshot().total_short_circuits == 1


def test_open_breaker_returns_fallback():
    clock = FakeClock()
    breaker = make_breaker(clock, threshold=1)
    dependency = FlakyDependency()

    async def scenario():
        await _fail_n(breaker, dependency, 1)
        return await breaker.call(dependency, fallback=lambda: "cached")

    assert asyncio.run(scenario()) == "cached"
    assert dependency.calls == 1


def test_half_open_admits_exactly_one_trial():
    clock = FakeClock()
    breaker = make_breaker(clock, threshold=2, reset_timeout=10.0)
    dependency = FlakyDependency()
    release = asyncio.Event()
    trials = []

    async def slow_trial():
        trials.append(1)
        await release.wait()
        return "recovered"

    async def scenario():
        await _fail_n(breaker, dependency, 2)
        clock.now += 10.0

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state == BreakerState.HALF_OPEN

        with pytest.raises(DependencyOpen):
            await breaker.call(slow_trial)

        release.set()
        assert await trial == "recovered"

    asyncio.run(scenario())
    assert trials == [1]
    assert breaker.state == BreakerState.CLOSED


def test_failed_trial_reopens():
    clock = FakeClock()
    breaker = make_breaker(clock, threshold=1, reset_timeout=5.0)
    dependency = FlakyDependency()

    async def scenario():
        await _fail_n(breaker, dependency, 1)
        clock.now += 5.0
        await _fail_n(breaker, dependency, 1)
        assert breaker.state == BreakerState.OPEN
        with pytest.raises(DependencyOpen):
            await breaker.call(dependency)

    asyncio.run(scenario())
    assert dependency.calls == 2


def test_success_resets_failure_count():
    clock = FakeClock()
    breaker = make_breaker(clock, threshold=3)
    dependency = FlakyDependency()

    async def scenario():
        await _fail_n(breaker, dependency, 2)
        dependency.fail = False
        assert await breaker.call(dependency, "value") == "value"
        dependency.fail = True
        await _fail_n(breaker, dependency, 2)

    asyncio.run(scenario())
    assert breaker.state == BreakerState.CLOSED


def test_failures_outside_window_do_not_accumulate():
    clock = FakeClock()
    config = BreakerConfig(failure_threshold=2, failure_window=60.0, call_timeout=None)
    breaker = CircuitBreaker("store", config, clock=clock)
    dependency = FlakyDependency()

    async def scenario():
        await _fail_n(breaker, dependency, 1)
        clock.now += 120.0
        await _fail_n(breaker, dependency, 1)

    asyncio.run(scenario())
    assert breaker.state == BreakerState.CLOSED


def test_excluded_errors_do_not_count():
    clock = FakeClock()
    breaker = make_breaker(clock, threshold=1, exclude=(ValidationError,))

    async def bad_output():
        raise ValidationError("no code block")

    async def scenario():
        with pytest.raises(ValidationError):
            await breaker.call(bad_output)

    asyncio.run(scenario())
    assert breaker.state == BreakerState.CLOSED


def test_call_timeout_counts_as_failure():
    breaker = CircuitBreaker("slow", BreakerConfig(failure_threshold=1, call_timeout=0.01))

    async def hang():
        await asyncio.sleep(5)

    async def scenario():
        with pytest.raises(TransientError):
            await breaker.call(hang)

    asyncio.run(scenario())
    assert breaker.state == BreakerState.OPEN


def test_sync_functions_are_supported():
    breaker = CircuitBreaker("sync", BreakerConfig(call_timeout=None))
    assert asyncio.run(breaker.call(lambda x: x * 2, 21)) == 42


def test_registry_shares_state_by_name():
    registry = BreakerRegistry({"default": BreakerConfig(failure_threshold=1), "llm": BreakerConfig(failure_threshold=3)})
    assert registry.get("llm") is registry.get("llm")
    assert registry.get("llm").config.failure_threshold == 3
    assert registry.get("other").config.failure_threshold == 1
    assert {s.name for s in registry.snapshot()} == {"llm", "other"}
