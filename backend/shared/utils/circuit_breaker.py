"""
Circuit breaker for provider ingestion.

States:
  CLOSED    : normal operation, the provider queue is drained
  OPEN      : too many consecutive failures, calls fail fast and the queue is left alone
  HALF_OPEN : after cooldown, a bounded number of probe calls test recovery;
              the circuit closes after ``success_threshold`` probe successes
"""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Callable, Coroutine, Optional, TypeVar

from shared.config import Settings
from shared.utils.logging import get_logger
from shared.utils.metrics import CIRCUIT_STATE

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when the circuit is open and calls are being rejected."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN. Retry after {retry_after:.0f}s.")


class CircuitBreaker:
    """
    Async circuit breaker.

    Args:
        name: Identifier for logging and the per-provider gauge.
        failure_threshold: Consecutive failures before opening the circuit.
        recovery_timeout_s: Seconds to wait in OPEN state before probing.
        half_open_max: Max concurrent probes allowed in HALF_OPEN state.
        success_threshold: Probe successes needed to close again.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout_s: float = 60.0,
        half_open_max: int = 1,
        success_threshold: int = 1,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout_s = recovery_timeout_s
        self.half_open_max = half_open_max
        self.success_threshold = success_threshold
        self._clock = clock or time.monotonic

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._probe_successes = 0
        self._last_failure_time: float = 0.0
        self._half_open_calls = 0
        self._lock = asyncio.Lock()
        CIRCUIT_STATE.labels(provider=name).set(0)

    @classmethod
    def for_provider(cls, provider_id: str, settings: Settings) -> "CircuitBreaker":
        return cls(
            name=provider_id,
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout_s=settings.circuit_recovery_timeout_s,
            half_open_max=settings.circuit_half_open_max,
            success_threshold=settings.circuit_success_threshold,
        )

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN:
            if self._clock() - self._last_failure_time >= self.recovery_timeout_s:
                self._set_state(CircuitState.HALF_OPEN)
                self._half_open_calls = 0
                self._probe_successes = 0
                logger.info("circuit_breaker_half_open", name=self.name)
        return self._state

    @property
    def retry_after(self) -> float:
        return max(self.recovery_timeout_s - (self._clock() - self._last_failure_time), 0.0)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "probe_successes": self._probe_successes,
            "last_failure_ago_s": round(self._clock() - self._last_failure_time, 1)
            if self._last_failure_time > 0
            else None,
        }

    def _set_state(self, state: CircuitState) -> None:
        self._state = state
        CIRCUIT_STATE.labels(provider=self.name).set(0 if state == CircuitState.CLOSED else 1)

    async def call(
        self, func: Callable[..., Coroutine[Any, Any, T]], *args: Any, **kwargs: Any
    ) -> T:
        current_state = self.state

        if current_state == CircuitState.OPEN:
            raise CircuitBreakerOpen(self.name, max(self.retry_after, 1.0))

        probing = current_state == CircuitState.HALF_OPEN
        if probing:
            async with self._lock:
                if self._half_open_calls >= self.half_open_max:
                    raise CircuitBreakerOpen(self.name, 1.0)
                self._half_open_calls += 1

        try:
            result = await func(*args, **kwargs)
        except CircuitBreakerOpen:
            raise
        except Exception as exc:
            await self._on_failure(exc)
            raise
        finally:
            if probing:
                self._half_open_calls = max(self._half_open_calls - 1, 0)
        await self._on_success()
        return result

    async def _on_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._probe_successes += 1
                if self._probe_successes < self.success_threshold:
                    return
                logger.info("circuit_breaker_closed", name=self.name, probes=self._probe_successes)
            self._set_state(CircuitState.CLOSED)
            self._failure_count = 0
            self._probe_successes = 0

    async def _on_failure(self, exc: Exception) -> None:
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.OPEN)
                self._probe_successes = 0
                logger.warning(
                    "circuit_breaker_reopened",
                    name=self.name,
                    error=str(exc),
                )
            elif self._failure_count >= self.failure_threshold:
                self._set_state(CircuitState.OPEN)
                logger.warning(
                    "circuit_breaker_opened",
                    name=self.name,
                    failures=self._failure_count,
                    error=str(exc),
                )
