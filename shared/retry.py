"""
Retry mechanism for resilient operations.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from shared.errors import GatewayException
from shared.logging import get_logger


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be at least 1.0")


JITTER_LOW = 0.8
JITTER_HIGH = 1.2


def is_retryable(exc: BaseException) -> bool:
    """Classify an error as worth another attempt."""
    if isinstance(exc, GatewayException):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        # ConnectionError covers refused, reset and broken pipe.
        return True
    return False


class RetryRunner:
    """Runs an async operation with exponential backoff and jitter.

    The runner never wraps the failure: when attempts are exhausted or the
    error is not retryable, the last exception propagates unchanged so callers
    can still dispatch on its type.

    The submit paths of the ledger client go through this runner too. Only
    transport failures and 5xx responses are retried there; no idempotency
    key is attached, so a submission whose response was lost in transit may
    be sent twice.
    """

    def __init__(self,
                 config: Optional[RetryConfig] = None,
                 classifier: Callable[[BaseException], bool] = is_retryable,
                 name: str = "default",
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 jitter: Callable[[float, float], float] = random.uniform):
        self.config = config or RetryConfig()
        self.classifier = classifier
        self.name = name
        self.logger = get_logger(f"retry.{name}")
        self._sleep = sleep
        self._jitter = jitter

    async def run(self, operation: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute ``operation`` until it succeeds or retrying is pointless."""
        delay = self.config.initial_delay

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                result = await operation(*args, **kwargs)
            except Exception as e:
                if not self.classifier(e):
                    self.logger.debug(
                        "Non-retryable failure",
                        attempt=attempt,
                        error=str(e),
                        error_type=type(e).__name__
                    )
                    raise

                if attempt >= self.config.max_attempts:
                    self.logger.error(
                        "All retry attempts exhausted",
                        attempt=attempt,
                        max_attempts=self.config.max_attempts,
                        error=str(e)
                    )
                    raise

                wait = delay * self._jitter(JITTER_LOW, JITTER_HIGH)
                self.logger.warning(
                    "Retry attempt failed, waiting before next attempt",
                    attempt=attempt,
                    delay=round(wait, 3),
                    error=str(e)
                )
                await self._sleep(wait)
                delay = min(delay * self.config.backoff_multiplier, self.config.max_delay)
                continue

            if attempt > 1:
                self.logger.info("Retry succeeded", attempt=attempt)
            return result

        # max_attempts >= 1 guarantees the loop returns or raises.
        raise AssertionError("unreachable")
