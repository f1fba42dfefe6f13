"""
Unit tests for the relay circuit breaker.
"""
import logging
from unittest.mock import AsyncMock

import pytest

from sandwich_engine.errors import CircuitOpenError, NetworkError
from sandwich_engine.mev_protection.circuit_breaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 1_000.0

    def __call__(self):
        return self.now


def make_breaker(threshold=3, cooldown=10.0):
    clock = FakeClock()
    return CircuitBreaker(failure_threshold=threshold, cooldown_seconds=cooldown, clock=clock), clock


class TestCircuitBreaker:
    """Test state transitions of the breaker."""

    def test_opens_after_consecutive_failures(self):
        breaker, _ = make_breaker(threshold=3)

        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure()
        assert breaker.is_open
        with pytest.raises(CircuitOpenError):
            breaker.before_call()
        assert breaker.stats["rejected_calls"] == 1

    def test_success_resets_count(self):
        breaker, _ = make_breaker(threshold=3)

        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED

    def test_half_open_after_cooldown(self):
        breaker, clock = make_breaker(threshold=1, cooldown=10.0)
        breaker.record_failure()

        clock.now += 9
        assert breaker.state == CircuitState.OPEN

        clock.now += 1
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.before_call()
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_probe_success_closes(self):
        breaker, clock = make_breaker(threshold=1)
        breaker.record_failure()
        clock.now += 10

        breaker.before_call()
        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        breaker.before_call()

    def test_probe_failure_reopens(self):
        breaker, clock = make_breaker(threshold=2)
        breaker.record_failure()
        breaker.record_failure()
        clock.now += 10

        breaker.before_call()
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.stats["opened"] == 2

    def test_alerts_logged(self, caplog):
        breaker, clock = make_breaker(threshold=1)

        with caplog.at_level(logging.WARNING, logger="sandwich_engine.alerts"):
            breaker.record_failure()
            clock.now += 10
            breaker.before_call()
            breaker.record_success()

        messages = [r.getMessage() for r in caplog.records if r.name == "sandwich_engine.alerts"]
        assert any("opened" in m for m in messages)
        assert any("closed" in m for m in messages)

    @pytest.mark.asyncio
    async def test_call_wrapper(self):
        breaker, _ = make_breaker(threshold=1)

        assert await breaker.call(AsyncMock(return_value=42)) == 42

        with pytest.raises(NetworkError):
            await breaker.call(AsyncMock(side_effect=NetworkError("down")))
        with pytest.raises(CircuitOpenError):
            await breaker.call(AsyncMock(return_value=1))

    @pytest.mark.asyncio
    async def test_unexpected_error_frees_half_open_slot(self):
        breaker, clock = make_breaker(threshold=1, cooldown=10.0)
        breaker.record_failure()
        clock.now += 10

        with pytest.raises(ValueError):
            await breaker.call(AsyncMock(side_effect=ValueError("Expecting value")))

        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.call(AsyncMock(return_value=7)) == 7
        assert breaker.state == CircuitState.CLOSED

    def test_release_half_open_slot(self):
        breaker, clock = make_breaker(threshold=1)
        breaker.record_failure()
        clock.now += 10
        breaker.before_call()

        breaker.release_probe()

        breaker.before_call()
        assert breaker.stats["rejected_calls"] == 0

    def test_stats(self):
        breaker, _ = make_breaker()
        breaker.record_failure()

        stats = breaker.get_stats()
        assert stats["state"] == "closed"
        assert stats["consecutive_failures"] == 1
