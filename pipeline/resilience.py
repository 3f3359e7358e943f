"""Resilience primitives for external service calls and task retries."""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from pipeline.failures import PipelineError, TransientTaskError, is_retryable_exception

T = TypeVar("T")


class ExternalServiceError(TransientTaskError):
    """Raised when an external dependency call fails after retries."""


class CircuitBreakerOpenError(ExternalServiceError):
    """Raised when a circuit breaker rejects a call while open."""


class CircuitBreakerState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Thread-safe breaker shared by every client of one provider.

    ESP and search clients are rebuilt per task run, so the breaker for a
    provider lives in a module registry (``breaker_for``) rather than on the
    client. While open, calls are rejected; after the recovery timeout a
    single trial call is let through (half open).
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        recovery_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout_seconds = recovery_timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._opened_at: float | None = None

    def _current_state(self) -> CircuitBreakerState:
        if self._opened_at is None:
            return CircuitBreakerState.CLOSED
        if self._clock() - self._opened_at >= self.recovery_timeout_seconds:
            return CircuitBreakerState.HALF_OPEN
        return CircuitBreakerState.OPEN

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            return self._current_state()

    def before_call(self) -> None:
        with self._lock:
            if self._current_state() == CircuitBreakerState.OPEN:
                remaining = self.recovery_timeout_seconds - (self._clock() - (self._opened_at or 0))
                raise CircuitBreakerOpenError(
                    f"Circuit breaker {self.name} is open; retry in {max(remaining, 0):.0f}s"
                )

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            half_open = self._current_state() == CircuitBreakerState.HALF_OPEN
            if half_open or self._consecutive_failures >= self.failure_threshold:
                self._opened_at = self._clock()


_breakers: dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def breaker_for(
    name: str,
    *,
    failure_threshold: int = 5,
    recovery_timeout_seconds: float = 60.0,
) -> CircuitBreaker:
    """Return the process-wide breaker for ``name``, creating it on first use."""
    with _breakers_lock:
        breaker = _breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=failure_threshold,
                recovery_timeout_seconds=recovery_timeout_seconds,
            )
            _breakers[name] = breaker
        return breaker


def reset_circuit_breakers() -> None:
    with _breakers_lock:
        _breakers.clear()


class ResiliencePolicy:
    """Retry and circuit-breaker execution policy for a single outbound call."""

    def __init__(
        self,
        *,
        name: str,
        max_attempts: int,
        failure_threshold: int = 5,
        recovery_timeout_seconds: float = 60.0,
        initial_wait_seconds: float = 0.25,
        max_wait_seconds: float = 8.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.name = name
        self.max_attempts = max_attempts
        self._initial_wait_seconds = initial_wait_seconds
        self._max_wait_seconds = max_wait_seconds
        self.breaker = breaker_for(
            name,
            failure_threshold=failure_threshold,
            recovery_timeout_seconds=recovery_timeout_seconds,
        )

    def execute(self, operation: Callable[[], T]) -> T:
        """Execute operation with retry and breaker behavior.

        Pipeline errors that are not worth retrying (4xx responses, unparseable
        bodies) propagate unchanged so the task runtime can classify them.
        Everything else that survives the retries is wrapped in
        ``ExternalServiceError``.
        """
        self.breaker.before_call()

        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(
                initial=self._initial_wait_seconds,
                max=self._max_wait_seconds,
            ),
            retry=retry_if_exception(is_retryable_exception),
            reraise=True,
        )

        try:
            result = retryer(operation)
        except CircuitBreakerOpenError:
            raise
        except PipelineError as exc:
            if is_retryable_exception(exc):
                self.breaker.record_failure()
                raise ExternalServiceError(
                    f"{self.name} failed after {self.max_attempts} attempts: {exc}"
                ) from exc
            raise
        except Exception as exc:
            self.breaker.record_failure()
            raise ExternalServiceError(
                f"{self.name} failed after {self.max_attempts} attempts: {_root_cause(exc)}"
            ) from exc

        self.breaker.record_success()
        return result


@dataclass(frozen=True)
class RetryPolicy:
    """Task-level retry schedule: bounded attempts, exponential backoff, jitter."""

    max_attempts: int = 3
    factor: float = 1.8
    min_timeout_seconds: float = 1.0
    max_timeout_seconds: float = 30.0
    randomize: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.min_timeout_seconds > self.max_timeout_seconds:
            raise ValueError("min_timeout_seconds must be <= max_timeout_seconds")

    def delay_for(
        self,
        attempt: int,
        *,
        rng: Callable[[], float] = random.random,
    ) -> float:
        """Seconds to wait before the attempt after ``attempt`` (1-based)."""
        base = self.min_timeout_seconds * (self.factor ** max(attempt - 1, 0))
        delay = min(base, self.max_timeout_seconds)
        if self.randomize:
            delay *= 1.0 + rng()
        return min(delay, self.max_timeout_seconds)


def _root_cause(exc: BaseException) -> str:
    """Walk the exception chain to find the root cause message."""
    current: BaseException | None = exc
    last_msg = str(exc)
    while current is not None:
        msg = str(current).strip()
        if msg:
            last_msg = msg
        current = current.__cause__ or current.__context__
        if current is exc:
            break
    return last_msg
