#!/usr/bin/env python3
"""Retry, circuit breaking and timeouts for calls to the two target systems.

retry_async is opt-in: its default of one attempt means no retry, so a
client only retries when configured to. The circuit breaker is fed by the
clients themselves (before_call / record_success / record_failure) so they
decide which failures say something about the remote's health.

Example:
    breaker = CircuitBreaker(failure_threshold=5, timeout=60, name="legacy-platform")
    await breaker.before_call()
    ...
    page = await retry_async(rest.get, "/api/tenant/devices", max_attempts=2)
"""
import asyncio
import logging
import random
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import (
    CircuitOpenError,
    RateLimitError,
    ServerError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 4xx answers other than 429 are final and never retried.
DEFAULT_RETRYABLE_EXCEPTIONS = (
    TransientNetworkError,
    RateLimitError,
    ServerError,
    asyncio.TimeoutError,
)


def _jittered(delay: float, max_delay: float) -> float:
    return min(delay * (0.5 + random.random()), max_delay)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 1,
    backoff_factor: float = 2.0,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    retryable_exceptions: tuple = DEFAULT_RETRYABLE_EXCEPTIONS,
    **kwargs,
) -> T:
    """Await func(*args, **kwargs), retrying transient failures.

    Args:
        func: Coroutine function to call
        max_attempts: Total attempts including the first (1 = no retry)
        backoff_factor: Multiplier applied to the delay after each retry
        initial_delay: Base delay before the first retry, in seconds
        max_delay: Upper bound on any single sleep
        retryable_exceptions: Exception types worth another attempt

    A RateLimitError's retry_after replaces the computed base delay.
    """
    attempts = max(1, max_attempts)
    delay = initial_delay
    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except retryable_exceptions as e:
            if attempt >= attempts:
                if attempts > 1:
                    logger.error(f"Giving up after {attempts} attempts: {e}")
                raise
            if isinstance(e, RateLimitError) and e.retry_after:
                delay = float(e.retry_after)
            sleep_for = _jittered(delay, max_delay)
            logger.warning(f"Attempt {attempt}/{attempts} failed: {e}. Retrying in {sleep_for:.1f}s")
            await asyncio.sleep(sleep_for)
            delay = min(delay * backoff_factor, max_delay)
            attempt += 1


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fails fast while a target system looks down.

    closed     -> open       after failure_threshold consecutive failures
    open       -> half_open  on the first call once `timeout` seconds have passed
    half_open  -> closed     after success_threshold successes
    half_open  -> open       on any failure
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        success_threshold: int = 1,
        name: str = "default",
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.name = name

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_successes = 0
        self._opened_at: Optional[float] = None
        self._last_failure_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = time.monotonic()

    def _cooling_down(self) -> bool:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return False
        return time.monotonic() - self._opened_at < self.timeout

    async def before_call(self) -> None:
        """Admit a call, moving open to half-open once the timeout has passed.

        Raises:
            CircuitOpenError: While the circuit is open and cooling down
        """
        async with self._lock:
            if self._cooling_down():
                reset_at = None
                if self._last_failure_at is not None:
                    reset_at = self._last_failure_at + timedelta(seconds=self.timeout)
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is open",
                    reset_at=reset_at,
                    failure_count=self._failure_count,
                )
            if self._state == CircuitState.OPEN:
                logger.info(f"Circuit '{self.name}' half-open, letting a probe through")
                self._state = CircuitState.HALF_OPEN
                self._half_open_successes = 0

    async def record_success(self) -> None:
        async with self._lock:
            self._failure_count = 0
            if self._state != CircuitState.HALF_OPEN:
                return
            self._half_open_successes += 1
            if self._half_open_successes >= self.success_threshold:
                logger.info(f"Circuit '{self.name}' closed after {self._half_open_successes} good probe(s)")
                self._state = CircuitState.CLOSED
                self._half_open_successes = 0

    async def record_failure(self, exception: Exception) -> None:
        async with self._lock:
            self._failure_count += 1
            self._last_failure_at = datetime.now(timezone.utc)
            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit '{self.name}' probe failed, reopening: {exception}")
                self._open()
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                logger.warning(f"Circuit '{self.name}' open after {self._failure_count} failures")
                self._open()

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "timeout_seconds": self.timeout,
            "last_failure_at": self._last_failure_at.isoformat() if self._last_failure_at else None,
        }


async def with_timeout(
    func: Callable[..., Awaitable[T]],
    timeout_seconds: Optional[float],
    *args,
    **kwargs,
) -> T:
    """Await func with a deadline. None or 0 means no deadline.

    Raises:
        asyncio.TimeoutError: The deadline passed; func was cancelled
    """
    coro = func(*args, **kwargs)
    if not timeout_seconds:
        return await coro
    return await asyncio.wait_for(coro, timeout=timeout_seconds)


__all__ = [
    "retry_async",
    "DEFAULT_RETRYABLE_EXCEPTIONS",
    "CircuitBreaker",
    "CircuitState",
    "with_timeout",
]
