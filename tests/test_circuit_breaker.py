"""Tests for the named circuit breaker (state machine, windows, fallbacks)."""

import asyncio

import pytest

from services.order.app.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    SlidingWindowType,
)
from services.order.app.errors import (
    CallNotPermitted,
    ConfigurationError,
    DownstreamUnavailable,
    ProductNotFound,
    RemoteLookupError,
)


class Boom(Exception):
    pass


async def succeed():
    return "ok"


async def fail():
    raise Boom("remote down")


def fallback(error):
    return f"fallback:{type(error).__name__}"


async def run_many(breaker, protected, times):
    for _ in range(times):
        await breaker.run(protected, fallback)


class TestClosedState:
    async def test_successful_call_returns_result(self, clock):
        breaker = CircuitBreaker("catalog", clock=clock)
        assert await breaker.run(succeed, fallback) == "ok"
        assert breaker.state is CircuitState.CLOSED

    async def test_failure_goes_to_fallback_with_error(self, clock):
        breaker = CircuitBreaker("catalog", clock=clock)
        assert await breaker.run(fail, fallback) == "fallback:Boom"

    async def test_failure_without_fallback_reraises(self, clock):
        breaker = CircuitBreaker("catalog", clock=clock)
        with pytest.raises(Boom):
            await breaker.run(fail)

    async def test_stays_closed_until_window_is_full(self, clock):
        breaker = CircuitBreaker("catalog", clock=clock)
        await run_many(breaker, fail, 9)
        assert breaker.state is CircuitState.CLOSED

    async def test_opens_on_the_call_that_crosses_threshold(self, clock):
        breaker = CircuitBreaker("catalog", clock=clock)
        await run_many(breaker, succeed, 4)
        await run_many(breaker, fail, 5)
        assert breaker.state is CircuitState.CLOSED

        await breaker.run(fail, fallback)
        assert breaker.state is CircuitState.OPEN

    async def test_rate_equal_to_threshold_opens(self, clock):
        breaker = CircuitBreaker("catalog", clock=clock)
        await run_many(breaker, succeed, 5)
        await run_many(breaker, fail, 5)
        assert breaker.state is CircuitState.OPEN

    async def test_rate_below_threshold_stays_closed(self, clock):
        breaker = CircuitBreaker("catalog", clock=clock)
        await run_many(breaker, succeed, 6)
        await run_many(breaker, fail, 4)
        assert breaker.state is CircuitState.CLOSED

    async def test_count_window_slides(self, clock):
        config = CircuitBreakerConfig(sliding_window_size=4)
        breaker = CircuitBreaker("catalog", config, clock=clock)
        await run_many(breaker, fail, 1)
        await run_many(breaker, succeed, 3)
        # [F, S, S, S] -> [S, S, S, S]
        await run_many(breaker, succeed, 1)
        await run_many(breaker, fail, 1)
        assert breaker.state is CircuitState.CLOSED
        assert breaker.metrics()["failure_rate"] == 25.0

    async def test_timeout_counts_as_failure(self, clock):
        config = CircuitBreakerConfig(sliding_window_size=1)
        breaker = CircuitBreaker("catalog", config, clock=clock)
        seen = []

        async def slow():
            await asyncio.sleep(1)
            return "late"

        result = await breaker.run(slow, lambda e: seen.append(e) or "fb", timeout=0.01)

        assert result == "fb"
        assert isinstance(seen[0], asyncio.TimeoutError)
        assert breaker.state is CircuitState.OPEN


class TestOpenState:
    @pytest.fixture()
    async def open_breaker(self, clock):
        config = CircuitBreakerConfig(
            sliding_window_size=2, wait_duration_in_open_state=10.0,
            permitted_number_of_calls_in_half_open_state=2,
        )
        breaker = CircuitBreaker("catalog", config, clock=clock)
        await run_many(breaker, fail, 2)
        assert breaker.state is CircuitState.OPEN
        return breaker

    async def test_short_circuits_without_calling_protected(self, open_breaker):
        calls = []

        async def tracked():
            calls.append(1)
            return "ok"

        errors = []
        result = await open_breaker.run(tracked, lambda e: errors.append(e) or "fb")

        assert result == "fb"
        assert calls == []
        assert isinstance(errors[0], CallNotPermitted)

    async def test_short_circuit_without_fallback_raises_call_not_permitted(self, open_breaker):
        with pytest.raises(CallNotPermitted) as exc_info:
            await open_breaker.run(succeed)
        assert exc_info.value.status_code == 503

    async def test_half_open_after_wait_duration(self, open_breaker, clock):
        clock.advance(9.9)
        assert open_breaker.state is CircuitState.OPEN
        clock.advance(0.1)
        assert open_breaker.state is CircuitState.HALF_OPEN

    async def test_successful_trials_close(self, open_breaker, clock):
        clock.advance(10)
        await run_many(open_breaker, succeed, 2)
        assert open_breaker.state is CircuitState.CLOSED
        assert open_breaker.metrics()["buffered_calls"] == 0

    async def test_failing_trials_reopen(self, open_breaker, clock):
        clock.advance(10)
        await open_breaker.run(succeed, fallback)
        await open_breaker.run(fail, fallback)
        assert open_breaker.state is CircuitState.OPEN

    async def test_trial_limit_short_circuits_extra_calls(self, clock):
        config = CircuitBreakerConfig(
            sliding_window_size=1, wait_duration_in_open_state=1.0,
            permitted_number_of_calls_in_half_open_state=1,
        )
        breaker = CircuitBreaker("catalog", config, clock=clock)
        await breaker.run(fail, fallback)
        clock.advance(1)

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.run(slow_trial, fallback))
        await asyncio.sleep(0)

        assert await breaker.run(succeed, fallback) == "fallback:CallNotPermitted"

        release.set()
        assert await trial == "trial"
        assert breaker.state is CircuitState.CLOSED


class TestOutcomeBookkeeping:
    async def test_ignored_exception_is_not_recorded_or_absorbed(self, clock):
        config = CircuitBreakerConfig(sliding_window_size=1, ignored_exceptions=(ProductNotFound,))
        breaker = CircuitBreaker("catalog", config, clock=clock)

        async def missing():
            raise ProductNotFound("X")

        with pytest.raises(ProductNotFound):
            await breaker.run(missing, fallback)

        assert breaker.state is CircuitState.CLOSED
        metrics = breaker.metrics()
        assert metrics["ignored_calls"] == 1
        assert metrics["failed_calls"] == 0
        assert metrics["fallback_calls"] == 0

    async def test_cancelled_call_is_neither_success_nor_failure(self, clock):
        breaker = CircuitBreaker("catalog", clock=clock)

        async def hang():
            await asyncio.sleep(10)

        task = asyncio.create_task(breaker.run(hang, fallback))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        metrics = breaker.metrics()
        assert metrics["successful_calls"] == 0
        assert metrics["failed_calls"] == 0
        assert metrics["buffered_calls"] == 0

    async def test_outcome_from_previous_state_is_dropped(self, clock):
        config = CircuitBreakerConfig(sliding_window_size=2, wait_duration_in_open_state=5.0)
        breaker = CircuitBreaker("catalog", config, clock=clock)
        release = asyncio.Event()

        async def slow_failure():
            await release.wait()
            raise Boom("late")

        straggler = asyncio.create_task(breaker.run(slow_failure, fallback))
        await asyncio.sleep(0)
        await run_many(breaker, fail, 2)
        assert breaker.state is CircuitState.OPEN

        clock.advance(5)
        assert breaker.state is CircuitState.HALF_OPEN
        release.set()
        await straggler

        # The straggler was admitted while CLOSED; it must not count as a trial.
        assert breaker.state is CircuitState.HALF_OPEN

    async def test_failing_fallback_raises_downstream_unavailable(self, clock):
        breaker = CircuitBreaker("catalog", clock=clock)

        def broken_fallback(error):
            raise RuntimeError("no cache either")

        with pytest.raises(DownstreamUnavailable) as exc_info:
            await breaker.run(fail, broken_fallback)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    async def test_async_fallback_is_awaited(self, clock):
        breaker = CircuitBreaker("catalog", clock=clock)

        async def async_fallback(error):
            return "async-fb"

        assert await breaker.run(fail, async_fallback) == "async-fb"

    async def test_metrics_snapshot(self, clock):
        breaker = CircuitBreaker("catalog", clock=clock)
        await run_many(breaker, succeed, 3)
        await run_many(breaker, fail, 1)

        metrics = breaker.metrics()
        assert metrics["name"] == "catalog"
        assert metrics["state"] == "CLOSED"
        assert metrics["successful_calls"] == 3
        assert metrics["failed_calls"] == 1
        assert metrics["fallback_calls"] == 1
        assert metrics["buffered_calls"] == 4
        assert metrics["failure_rate"] == 25.0


class TestTimeBasedWindow:
    async def test_old_outcomes_expire(self, clock):
        config = CircuitBreakerConfig(
            sliding_window_size=5,
            sliding_window_type=SlidingWindowType.TIME_BASED,
            minimum_number_of_calls=2,
        )
        breaker = CircuitBreaker("catalog", config, clock=clock)

        await breaker.run(fail, fallback)
        clock.advance(6)
        await breaker.run(fail, fallback)
        assert breaker.state is CircuitState.CLOSED

        clock.advance(1)
        await breaker.run(fail, fallback)
        assert breaker.state is CircuitState.OPEN


class TestConfigAndRegistry:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"sliding_window_size": 0},
            {"failure_rate_threshold": 0},
            {"failure_rate_threshold": 101},
            {"wait_duration_in_open_state": -1},
            {"permitted_number_of_calls_in_half_open_state": 0},
        ],
    )
    def test_invalid_config_is_rejected(self, kwargs):
        with pytest.raises(ConfigurationError):
            CircuitBreakerConfig(**kwargs)

    def test_minimum_calls_defaults_to_window_size(self):
        assert CircuitBreakerConfig(sliding_window_size=7).minimum_calls == 7

    def test_registry_shares_breaker_per_name(self):
        registry = CircuitBreakerRegistry(
            {"product-service": CircuitBreakerConfig(sliding_window_size=3)}
        )
        first = registry.get("product-service")
        assert registry.get("product-service") is first
        assert first.config.sliding_window_size == 3
        assert registry.get("other").config.sliding_window_size == 10
        assert {b.name for b in registry.all()} == {"product-service", "other"}

    async def test_shared_state_across_callers(self, clock):
        registry = CircuitBreakerRegistry(
            {"product-service": CircuitBreakerConfig(sliding_window_size=2)}, clock=clock
        )

        async def remote_error():
            raise RemoteLookupError("500")

        await registry.get("product-service").run(remote_error, fallback)
        await registry.get("product-service").run(remote_error, fallback)
        assert registry.get("product-service").state is CircuitState.OPEN
