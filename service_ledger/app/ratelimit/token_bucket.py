"""
Token bucket rate limiter for the ledger gateway.
"""

import threading
import time
from typing import Any, Callable, Dict, Optional

from shared.errors import RateLimitError
from shared.logging import get_logger


class TokenBucketRateLimiter:
    """Process-wide token bucket.

    Admission never waits: a request either takes a token now or is rejected
    with the time until the next token becomes available.
    """

    def __init__(self, rate: float, burst: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        self.burst = int(burst) if burst is not None else max(1, int(rate))
        if self.burst < 1:
            raise ValueError("burst must be at least 1")
        self.logger = get_logger("ledger.rate_limiter")
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = float(self.burst)
        self._updated_at = clock()

    def _refill(self, now: float) -> None:
        # Caller holds the lock.
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._updated_at = now

    def try_acquire(self, tokens: float = 1.0) -> float:
        """Take ``tokens``; returns 0.0 on success or the seconds to wait."""
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= tokens:
                self._tokens -= tokens
                return 0.0
            return (tokens - self._tokens) / self.rate

    def check(self, tokens: float = 1.0) -> None:
        """Admit a request or raise RateLimitError."""
        wait = self.try_acquire(tokens)
        if wait > 0:
            self.logger.warning("Rate limit exceeded", retry_after=round(wait, 3))
            raise RateLimitError(retry_after=wait)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            self._refill(self._clock())
            return {
                "rate": self.rate,
                "burst": self.burst,
                "available": round(self._tokens, 3)
            }
