"""Per-target circuit breakers for action execution.

State is in-process only; it does not need to survive a restart.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, Optional

from ..errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitSnapshot:
    """Point-in-time view of a breaker, for status output."""
    target: str
    state: CircuitState
    consecutive_failures: int
    opened_at: Optional[float]


class CircuitBreaker:
    """
    Circuit breaker for a single execution target (e.g. a hostname).

    - closed: calls flow; failures inside the rolling window are counted
    - open: calls are rejected until reset_timeout has elapsed
    - half_open: exactly one probe call is let through; success closes the
      circuit, failure re-opens it
    """

    def __init__(
        self,
        target: str,
        failure_threshold: int = 5,
        window: float = 60.0,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.target = target
        self.failure_threshold = failure_threshold
        self.window = window
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            logger.info(f"Circuit for {self.target} half-open, allowing probe")

    def _prune(self, now: float) -> None:
        while self._failures and now - self._failures[0] > self.window:
            self._failures.popleft()

    def before_call(self) -> None:
        """Raise CircuitOpenError if the call must not proceed."""
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.CLOSED:
                return
            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return
            retry_after = 0.0
            if self._opened_at is not None:
                retry_after = max(0.0, self.reset_timeout - (self._clock() - self._opened_at))
            raise CircuitOpenError(self.target, retry_after)

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit for {self.target} closed after successful probe")
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._opened_at = None
            self._probe_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._trip(now)
                return
            self._failures.append(now)
            self._prune(now)
            if self._state == CircuitState.CLOSED and len(self._failures) >= self.failure_threshold:
                self._trip(now)

    def release_probe(self) -> None:
        """Give back a half-open probe slot without a verdict (e.g. input error)."""
        with self._lock:
            self._probe_in_flight = False

    def _trip(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._probe_in_flight = False
        logger.warning(
            f"Circuit for {self.target} opened after {len(self._failures)} failures "
            f"(cooldown {self.reset_timeout}s)"
        )

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            self._maybe_half_open()
            return CircuitSnapshot(
                target=self.target,
                state=self._state,
                consecutive_failures=len(self._failures),
                opened_at=self._opened_at,
            )


class CircuitBreakerRegistry:
    """Lazily creates one breaker per target key."""

    def __init__(
        self,
        failure_threshold: int = 5,
        window: float = 60.0,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.window = window
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, target: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(target)
            if breaker is None:
                breaker = CircuitBreaker(
                    target,
                    failure_threshold=self.failure_threshold,
                    window=self.window,
                    reset_timeout=self.reset_timeout,
                    clock=self._clock,
                )
                self._breakers[target] = breaker
            return breaker

    def snapshots(self) -> list[CircuitSnapshot]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.snapshot() for b in breakers]
