"""
Signed webhook fan-out for ledger gateway events.
"""

import asyncio
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import httpx

from shared.logging import get_logger

SIGNATURE_HEADER = "X-Ledger-Signature"
SIGNATURE_PREFIX = "sha256="
RETRY_DELAY_SECONDS = 1.0


@dataclass(frozen=True)
class WebhookConfig:
    """Webhook targets and shared signing secret."""
    urls: Tuple[str, ...]
    secret: str = field(repr=False)
    timeout: float = 5.0


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of delivering one event to one target."""
    url: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


def encode_event(event_type: str, payload: Any) -> bytes:
    """Canonical body: compact JSON with sorted keys."""
    body = {"event": event_type, "data": payload}
    return json.dumps(body, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def sign(secret: str, body: bytes) -> str:
    """Returns ``sha256=<hex>`` HMAC of ``body``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Check a received signature against ``body`` in constant time."""
    if not signature:
        return False
    received = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature
    try:
        received_bytes = bytes.fromhex(received)
    except ValueError:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return hmac.compare_digest(expected, received_bytes)


class WebhookDispatcher:
    """Concurrent signed delivery to every configured target.

    ``dispatch`` awaits all deliveries. ``fire`` schedules a dispatch and
    returns at once; those background dispatches are tracked so ``drain`` can
    wait for them at shutdown.
    """

    def __init__(self,
                 config: WebhookConfig,
                 client: Optional[httpx.AsyncClient] = None,
                 retry_delay: float = RETRY_DELAY_SECONDS,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 on_delivery: Optional[Callable[[DeliveryResult], None]] = None):
        self.config = config
        self.logger = get_logger("ledger.webhooks")
        self._client = client or httpx.AsyncClient(timeout=config.timeout)
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._on_delivery = on_delivery
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._in_flight)

    async def dispatch(self, event_type: str, payload: Any) -> List[DeliveryResult]:
        """Deliver one event to all targets; one result per target, in order."""
        body = encode_event(event_type, payload)
        signature = sign(self.config.secret, body)

        outcomes = await asyncio.gather(
            *(self._post_with_retry(url, body, signature) for url in self.config.urls),
            return_exceptions=True
        )

        results: List[DeliveryResult] = []
        for url, outcome in zip(self.config.urls, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                self.logger.error(
                    "Webhook delivery task crashed",
                    url=url,
                    event=event_type,
                    error=repr(outcome)
                )
                outcome = DeliveryResult(url=url, success=False, error=f"delivery task failed: {outcome!r}")
            results.append(outcome)
            if self._on_delivery is not None:
                self._on_delivery(outcome)
        return results

    def fire(self, event_type: str, payload: Any) -> asyncio.Task:
        """Schedule a dispatch without waiting for it."""
        task = asyncio.create_task(self._dispatch_and_log(event_type, payload))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _dispatch_and_log(self, event_type: str, payload: Any) -> List[DeliveryResult]:
        try:
            results = await self.dispatch(event_type, payload)
        except Exception as e:
            self.logger.error("Webhook dispatch failed", event=event_type, error=str(e), exc_info=True)
            return []

        for result in results:
            if result.success:
                self.logger.info("Webhook delivered", url=result.url, event=event_type)
            else:
                self.logger.warning(
                    "Webhook delivery failed",
                    url=result.url,
                    event=event_type,
                    status_code=result.status_code,
                    error=result.error
                )
        return results

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for background dispatches started by ``fire``."""
        if not self._in_flight:
            return
        pending = list(self._in_flight)
        self.logger.info("Waiting for in-flight webhook deliveries", count=len(pending))
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            self.logger.warning("Cancelled unfinished webhook deliveries", count=len(not_done))

    async def close(self, timeout: Optional[float] = None) -> None:
        await self.drain(timeout)
        await self._client.aclose()

    async def _post_with_retry(self, url: str, body: bytes, signature: str) -> DeliveryResult:
        first = await self._attempt(url, body, signature)
        if first.success:
            return first

        self.logger.warning("Webhook first attempt failed, retrying", url=url, delay=self._retry_delay)
        await self._sleep(self._retry_delay)
        return await self._attempt(url, body, signature)

    async def _attempt(self, url: str, body: bytes, signature: str) -> DeliveryResult:
        headers: Dict[str, str] = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signature,
        }
        try:
            response = await self._client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            self.logger.error("Webhook HTTP error", url=url, error=str(e) or type(e).__name__)
            return DeliveryResult(url=url, success=False, error=str(e) or type(e).__name__)

        success = response.is_success
        return DeliveryResult(
            url=url,
            success=success,
            status_code=response.status_code,
            error=None if success else f"HTTP {response.status_code}"
        )
