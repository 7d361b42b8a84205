"""
Circuit breaker guarding calls to the AI generation backend.

After `threshold` consecutive failures the breaker opens and rejects calls
with ServiceUnavailable until `open_duration` seconds have passed since the
last failure. The first call after the cool-down resets the counter and is
let through; its outcome alone decides whether the breaker stays closed or
reopens. There is no limited half-open trial budget.

One instance is shared by every concurrent request, so counter updates are
serialized with a lock. The lock is never held while the guarded call runs.
"""

import logging
import threading
import time
from typing import Awaitable, Callable, Optional, TypeVar

from app.models.generation import CircuitState, CircuitStatus
from app.services.errors import ServiceUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Args:
        threshold: Consecutive failures before the breaker opens (default: 5)
        open_duration: Seconds to reject calls after the last failure (default: 60)
        clock: Returns the current time in seconds; injectable for tests
    """

    def __init__(
        self,
        threshold: int = 5,
        open_duration: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        if open_duration < 0:
            raise ValueError("open_duration must not be negative")

        self._state = CircuitState(threshold=threshold, open_duration=open_duration)
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()

        logger.info(
            "Circuit breaker initialized: threshold=%d, open duration=%.1fs",
            threshold,
            open_duration,
        )

    def _remaining_open_time(self, now: float) -> float:
        """Seconds the breaker stays open, 0.0 if it is closed. Caller holds the lock."""
        state = self._state
        if state.consecutive_failures < state.threshold:
            return 0.0
        elapsed = now - state.last_failure_at
        if elapsed < state.open_duration:
            return state.open_duration - elapsed
        return 0.0

    def _admit(self) -> None:
        """Reject the call if open; reset the counter once the cool-down elapsed."""
        with self._lock:
            now = self._clock()
            retry_after = self._remaining_open_time(now)
            if retry_after > 0:
                logger.warning(
                    "Circuit breaker is OPEN (failures: %d). Retry after %.1fs.",
                    self._state.consecutive_failures,
                    retry_after,
                )
                raise ServiceUnavailable(details={"retry_after": round(retry_after, 1)})

            if self._state.consecutive_failures >= self._state.threshold:
                logger.info("Circuit breaker cool-down elapsed, resetting failure count")
                self._state.consecutive_failures = 0

    def _on_success(self) -> None:
        with self._lock:
            self._state.consecutive_failures = 0

    def _on_failure(self) -> None:
        with self._lock:
            self._state.consecutive_failures += 1
            self._state.last_failure_at = self._clock()
            failures = self._state.consecutive_failures
        logger.error("Circuit breaker failure count: %d", failures)

    async def execute(self, action: Callable[[], Awaitable[T]]) -> T:
        """
        Run `action` once if the breaker is closed.

        Raises:
            ServiceUnavailable: if the breaker is open; `action` is not called.
            Exception: whatever `action` raised, after recording the failure.
        """
        self._admit()

        try:
            result = await action()
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def status(self) -> CircuitStatus:
        """Snapshot of the current counters. Never resets state."""
        with self._lock:
            now = self._clock()
            retry_after = self._remaining_open_time(now)
            return CircuitStatus(
                failures=self._state.consecutive_failures,
                is_open=retry_after > 0,
                last_failure_at=self._state.last_failure_at,
                threshold=self._state.threshold,
                open_duration=self._state.open_duration,
                retry_after=retry_after,
            )
