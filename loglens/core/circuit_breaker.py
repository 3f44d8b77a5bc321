"""Circuit breaker for storage backends.

A backend that keeps refusing connections is taken out of the request path:
after ``failure_threshold`` consecutive failures the breaker opens and calls
fail immediately. Once ``recovery_timeout`` has elapsed a single trial call is
let through; its outcome either closes the breaker or re-opens it for another
full timeout.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """The backend is short-circuited; no call was attempted."""

    def __init__(self, backend: str, retry_in: float):
        self.backend = backend
        self.retry_in = max(0.0, retry_in)
        super().__init__(f"Circuit open for backend '{backend}', retry in {self.retry_in:.1f}s")


class CircuitBreaker:
    """Counts consecutive ``trip_on`` failures of one backend.

    Exceptions outside ``trip_on`` (rejected queries, missing documents) pass
    through untouched and do not affect the breaker.
    """

    def __init__(
        self,
        backend: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        trip_on: type[Exception] | tuple[type[Exception], ...] = Exception,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.trip_on = trip_on
        self._clock = clock

        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probing = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def retry_in(self) -> float:
        if self._state != BreakerState.OPEN:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def snapshot(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "state": self._state.value,
            "failures": self._failures,
            "retry_in": round(self.retry_in(), 1),
        }

    async def _admit(self) -> None:
        async with self._lock:
            if self._state == BreakerState.OPEN:
                if self.retry_in() > 0:
                    raise CircuitBreakerError(self.backend, self.retry_in())
                logger.info("Circuit for %s half-open, sending trial", self.backend)
                self._state = BreakerState.HALF_OPEN

            if self._state == BreakerState.HALF_OPEN:
                # Only one trial at a time; everyone else keeps failing fast
                if self._probing:
                    raise CircuitBreakerError(self.backend, 0.0)
                self._probing = True

    async def _succeeded(self) -> None:
        async with self._lock:
            if self._state != BreakerState.CLOSED:
                logger.info("Circuit for %s closed after successful trial", self.backend)
            self._state = BreakerState.CLOSED
            self._failures = 0
            self._probing = False

    async def _failed(self, error: Exception) -> None:
        async with self._lock:
            self._failures += 1
            trial_failed = self._state == BreakerState.HALF_OPEN
            self._probing = False

            if trial_failed or self._failures >= self.failure_threshold:
                self._state = BreakerState.OPEN
                self._opened_at = self._clock()
                logger.warning(
                    "Circuit for %s opened after %d consecutive failures: %s",
                    self.backend,
                    self._failures,
                    error,
                )
            else:
                logger.warning(
                    "Backend %s failure %d/%d: %s", self.backend, self._failures, self.failure_threshold, error
                )

    async def _release_trial(self) -> None:
        async with self._lock:
            self._probing = False

    async def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``func`` (sync or async) unless the circuit is open.

        Raises:
            CircuitBreakerError: Circuit open, or a trial is already running
        """
        await self._admit()
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except self.trip_on as e:
            await self._failed(e)
            raise
        except BaseException:
            # Errors that say nothing about backend health free the trial slot
            await self._release_trial()
            raise
        await self._succeeded()
        return result

    def reset(self) -> None:
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probing = False
        logger.info("Circuit for %s manually reset", self.backend)


_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(backend: str, **options: Any) -> CircuitBreaker:
    """Process-wide breaker for ``backend``; options only apply on first use."""
    if backend not in _breakers:
        _breakers[backend] = CircuitBreaker(backend, **options)
    return _breakers[backend]
