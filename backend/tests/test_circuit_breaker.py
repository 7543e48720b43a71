"""
Circuit breaker tests with an injectable clock.

Run: pytest backend/tests/test_circuit_breaker.py -v
"""
from __future__ import annotations

import pytest

from shared.config import Settings
from shared.utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, CircuitState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _ok() -> str:
    return "ok"


async def _boom() -> str:
    raise ConnectionError("provider down")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker("opta", failure_threshold=3, recovery_timeout_s=30, success_threshold=2, clock=clock)


@pytest.mark.asyncio
async def test_opens_after_consecutive_failures(breaker: CircuitBreaker) -> None:
    for _ in range(3):
        with pytest.raises(ConnectionError):
            await breaker.call(_boom)
    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpen) as exc:
        await breaker.call(_ok)
    assert exc.value.name == "opta"


@pytest.mark.asyncio
async def test_success_resets_failure_count(breaker: CircuitBreaker) -> None:
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.call(_boom)
    assert await breaker.call(_ok) == "ok"
    with pytest.raises(ConnectionError):
        await breaker.call(_boom)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_probes_close_circuit(breaker: CircuitBreaker, clock: FakeClock) -> None:
    for _ in range(3):
        with pytest.raises(ConnectionError):
            await breaker.call(_boom)
    assert breaker.retry_after == 30
    clock.now += 31
    assert breaker.state == CircuitState.HALF_OPEN

    await breaker.call(_ok)
    assert breaker.state == CircuitState.HALF_OPEN
    await breaker.call(_ok)
    assert breaker.state == CircuitState.CLOSED
    assert breaker.stats["failure_count"] == 0


@pytest.mark.asyncio
async def test_failed_probe_reopens(breaker: CircuitBreaker, clock: FakeClock) -> None:
    for _ in range(3):
        with pytest.raises(ConnectionError):
            await breaker.call(_boom)
    clock.now += 31
    with pytest.raises(ConnectionError):
        await breaker.call(_boom)
    assert breaker.state == CircuitState.OPEN


def test_breaker_from_settings() -> None:
    settings = Settings(circuit_failure_threshold=7, circuit_recovery_timeout_s=12, circuit_success_threshold=3)
    breaker = CircuitBreaker.for_provider("scout", settings)
    assert (breaker.name, breaker.failure_threshold, breaker.recovery_timeout_s) == ("scout", 7, 12)
    assert breaker.success_threshold == 3
