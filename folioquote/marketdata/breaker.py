"""Per-provider circuit breaker.

States:
  CLOSED    normal operation, calls go through
  OPEN      too many failures, calls rejected until the recovery timeout elapses
  HALF_OPEN trial state after recovery; one failure reopens, enough successes close
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from folioquote.marketdata.errors import CircuitOpenError
from folioquote.utils import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BreakerState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Stops calling a failing provider until it has had time to recover.

    State mutation happens under a per-instance lock; the wrapped operation
    itself runs outside the lock. Only ``Exception`` subclasses count as
    failures, so task cancellation leaves the counters untouched.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_timeout = recovery_timeout
        self.half_open_success_threshold = max(1, half_open_success_threshold)
        self._clock = clock
        self._lock = threading.Lock()

        self._state = BreakerState.CLOSED
        self._failures = 0
        self._successes = 0
        self._last_failure: float | None = None
        self._last_failure_wall: datetime | None = None
        self._last_transition_wall: datetime = utc_now()

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def consecutive_half_open_successes(self) -> int:
        return self._successes

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        with self._lock:
            self._maybe_half_open()
            if self._state is BreakerState.OPEN:
                raise CircuitOpenError(self.name, self._retry_in())

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def is_available(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            return self._state is not BreakerState.OPEN

    def reset(self) -> None:
        with self._lock:
            self._state = BreakerState.CLOSED
            self._failures = 0
            self._successes = 0
            self._last_failure = None
            self._last_failure_wall = None
            self._last_transition_wall = utc_now()
        logger.info("[breaker] %s manually reset", self.name)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                "provider": self.name,
                "state": self._state.value,
                "consecutive_failures": self._failures,
                "consecutive_half_open_successes": self._successes,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout,
                "last_failure_at": self._last_failure_wall.isoformat() if self._last_failure_wall else None,
                "last_transition_at": self._last_transition_wall.isoformat(),
                "retry_in": round(self._retry_in(), 1) if self._state is BreakerState.OPEN else 0.0,
                "available": self._state is not BreakerState.OPEN,
            }

    # ── internals (callers hold the lock unless noted) ─────────────────

    def _retry_in(self) -> float:
        if self._last_failure is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self._last_failure))

    def _maybe_half_open(self) -> None:
        if (
            self._state is BreakerState.OPEN
            and self._last_failure is not None
            and self._clock() - self._last_failure >= self.recovery_timeout
        ):
            self._transition(BreakerState.HALF_OPEN)

    def _on_success(self) -> None:
        with self._lock:
            if self._state is BreakerState.HALF_OPEN:
                self._successes += 1
                logger.info(
                    "[breaker] %s success in HALF_OPEN (%d/%d)",
                    self.name, self._successes, self.half_open_success_threshold,
                )
                if self._successes >= self.half_open_success_threshold:
                    self._transition(BreakerState.CLOSED)
            elif self._state is BreakerState.CLOSED:
                self._failures = 0

    def _on_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure = self._clock()
            self._last_failure_wall = utc_now()
            if self._state is BreakerState.HALF_OPEN:
                logger.info("[breaker] %s failure in HALF_OPEN, reopening", self.name)
                self._transition(BreakerState.OPEN)
            elif self._state is BreakerState.CLOSED and self._failures >= self.failure_threshold:
                logger.info("[breaker] %s threshold reached (%d failures), opening", self.name, self._failures)
                self._transition(BreakerState.OPEN)

    def _transition(self, new_state: BreakerState) -> None:
        old_state = self._state
        self._state = new_state
        self._last_transition_wall = utc_now()
        if new_state is BreakerState.CLOSED:
            self._failures = 0
            self._successes = 0
        elif new_state is BreakerState.HALF_OPEN:
            self._successes = 0
        logger.info("[breaker] %s: %s -> %s", self.name, old_state.value, new_state.value)
