"""
Retry with backoff and a circuit breaker for outbound calls.

Used by the forecast digest webhook. Both take injectable sleep / clock
functions so tests run without real waiting.
"""

import asyncio
import random
import time
from enum import StrEnum
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from slocast.errors import SlocastError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitOpenError(SlocastError):
    """A circuit breaker is open and rejected the call."""
    status_code = 503


# ── Retry with Exponential Backoff ─────────────────────────────────────────


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 2,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    jitter: float = 0.25,
    retry_on: tuple = (Exception,),
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call `fn` up to max_retries + 1 times.

    Delay before attempt n+1: min(base_delay * 2^n, max_delay) + uniform(0, jitter).
    An open circuit is never retried.
    """
    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except CircuitOpenError:
            raise
        except retry_on as exc:
            if attempt == max_retries:
                logger.error(
                    "retry_exhausted",
                    operation=operation_name,
                    attempts=attempt + 1,
                    error=str(exc),
                )
                raise
            delay = min(base_delay * (2 ** attempt), max_delay) + random.uniform(0, jitter)
            logger.warning(
                "retry_attempt",
                operation=operation_name,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=round(delay, 2),
                error=str(exc),
            )
            await sleep(delay)
    raise AssertionError("unreachable")


# ── Circuit Breaker ─────────────────────────────────────────────────────────


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    CLOSED -> OPEN after `failure_threshold` failures within `window_seconds`.
    OPEN rejects for `recovery_timeout` seconds, then HALF_OPEN lets one
    probe through: success closes, failure reopens.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        window_seconds: float = 60.0,
        recovery_timeout: float = 30.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.recovery_timeout = recovery_timeout
        self._clock = clock or time.monotonic

        self._state = CircuitState.CLOSED
        self._failures: list[float] = []
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.recovery_timeout:
            self._state = CircuitState.HALF_OPEN
            logger.info("circuit_half_open", breaker=self.name)
        return self._state

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        state = self.state
        if state == CircuitState.OPEN:
            logger.warning("circuit_open_rejected", breaker=self.name)
            raise CircuitOpenError(f"Circuit breaker '{self.name}' is open")
        if state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(f"Circuit breaker '{self.name}' is probing")
            self._probe_in_flight = True

        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("circuit_closed", breaker=self.name)
        self.reset()

    def _on_failure(self) -> None:
        now = self._clock()
        self._probe_in_flight = False

        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self._opened_at = now
            logger.warning("circuit_reopened", breaker=self.name)
            return

        cutoff = now - self.window_seconds
        self._failures = [t for t in self._failures if t > cutoff]
        self._failures.append(now)
        if len(self._failures) >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = now
            logger.warning(
                "circuit_opened",
                breaker=self.name,
                failures=len(self._failures),
                threshold=self.failure_threshold,
            )

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._probe_in_flight = False


webhook_breaker = CircuitBreaker(name="digest_webhook", failure_threshold=5, recovery_timeout=30.0)
