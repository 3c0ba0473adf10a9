"""Token-bucket rate limiting keyed by action type."""

import threading
import time
from typing import Callable, Dict, Optional, TYPE_CHECKING

from pydantic import BaseModel

from ..errors import RateLimitedError

if TYPE_CHECKING:
    from ..core.cancellation import CancellationToken


class RateLimit(BaseModel):
    """Sustained rate (calls per second) plus burst capacity."""
    rate: float
    burst: int = 1


class TokenBucket:
    def __init__(self, rate: float, burst: int, clock: Callable[[], float] = time.monotonic):
        self.rate = rate
        self.capacity = max(1, burst)
        self._clock = clock
        self._tokens = float(self.capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def try_acquire(self) -> float:
        """Take a token. Returns 0.0 on success, else seconds until one is available."""
        with self._lock:
            now = self._clock()
            self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
            self._updated = now
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / self.rate


class RateLimiter:
    """Holds one bucket per key; keys without a configured limit are unlimited."""

    def __init__(self, limits: Optional[Dict[str, RateLimit]] = None):
        self._limits: Dict[str, RateLimit] = dict(limits or {})
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def configure(self, key: str, limit: Optional[RateLimit]) -> None:
        with self._lock:
            if limit is None:
                self._limits.pop(key, None)
            else:
                self._limits[key] = limit
            self._buckets.pop(key, None)

    def ensure(self, key: str, limit: RateLimit) -> None:
        """Configure ``key`` unless it already has a limit."""
        with self._lock:
            if key in self._limits:
                return
        self.configure(key, limit)

    def _bucket(self, key: str) -> Optional[TokenBucket]:
        with self._lock:
            limit = self._limits.get(key)
            if limit is None or limit.rate <= 0:
                return None
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(limit.rate, limit.burst)
                self._buckets[key] = bucket
            return bucket

    def acquire(
        self,
        key: str,
        timeout: float,
        cancel_token: Optional["CancellationToken"] = None,
    ) -> None:
        """Block until a token is available, the timeout passes, or cancellation."""
        bucket = self._bucket(key)
        if bucket is None:
            return

        deadline = time.monotonic() + timeout
        while True:
            wait = bucket.try_acquire()
            if wait == 0.0:
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0 or wait > remaining:
                raise RateLimitedError(f"Rate limit for '{key}' not available within {timeout:.1f}s")
            if cancel_token is not None:
                cancel_token.wait(wait)
                cancel_token.raise_if_cancelled()
            else:
                time.sleep(wait)
