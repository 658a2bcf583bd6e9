"""
Circuit breaker pattern implementation for resilient service calls.

One breaker guards one downstream dependency. It is constructed once at
startup and handed to every client of that dependency; there is no global
registry. State and counters live behind a single lock that is only held for
the duration of a transition, never across an ``await``.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from shared.errors import CircuitOpenError
from shared.logging import get_logger


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for a circuit breaker."""

    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: float = 30.0

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be at least 1")
        if self.timeout < 0:
            raise ValueError("timeout must not be negative")


class CircuitBreaker:
    """Closed/Open/HalfOpen breaker gating calls to a dependency."""

    def __init__(self,
                 config: Optional[CircuitBreakerConfig] = None,
                 name: str = "default",
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = 0.0
        self._half_open_transitions = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def before_request(self) -> None:
        """Admit or refuse a call; raises CircuitOpenError while cooling down."""
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return
            if self._state is CircuitState.HALF_OPEN:
                return

            elapsed = self._clock() - self._opened_at
            if elapsed >= self.config.timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
                self._half_open_transitions += 1
                self.logger.info("Circuit breaker transitioning to half-open", name=self.name)
                return

            remaining = self.config.timeout - elapsed

        raise CircuitOpenError(self.name, remaining)

    def on_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            if self._state is CircuitState.CLOSED:
                self._failure_count = 0
            elif self._state is CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
                    self._success_count = 0
                    self.logger.info("Circuit breaker reset to CLOSED after successful calls", name=self.name)

    def on_failure(self) -> None:
        """Record a failed call."""
        with self._lock:
            if self._state is CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    self._trip()
            elif self._state is CircuitState.HALF_OPEN:
                self._trip()

    def _trip(self) -> None:
        # Caller holds the lock.
        self._opened_at = self._clock()
        self._state = CircuitState.OPEN
        self._failure_count = 0
        self._success_count = 0
        self.logger.warning(
            "Circuit breaker opened",
            name=self.name,
            failure_threshold=self.config.failure_threshold,
            timeout=self.config.timeout
        )

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "opened_at": self._opened_at,
                "half_open_transitions": self._half_open_transitions,
                "failure_threshold": self.config.failure_threshold,
                "success_threshold": self.config.success_threshold,
                "timeout": self.config.timeout
            }

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self.state is CircuitState.OPEN
