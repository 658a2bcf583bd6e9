"""
Verification gateway: cache-fronted access to the ledger.

Request flow is admission (rate limiter), validation, cache lookup, then on a
miss a ledger call guarded by the circuit breaker, followed by a best-effort
cache write. Side-effecting operations also publish webhook events without
waiting for delivery.
"""

import asyncio
import hashlib
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from shared.circuit_breaker import CircuitState
from shared.errors import (
    CacheError,
    CircuitOpenError,
    DocumentNotFoundError,
    GatewayException,
    SerializationError,
    ValidationError,
)
from shared.logging import get_logger, set_document_context
from shared.metrics import MetricsCollector

from ..adapters.ledger_client import LedgerClient
from ..cache import Cache
from ..hash_validator import validate_hash
from ..models import (
    BatchVerifyItem,
    HealthResponse,
    RevocationResult,
    TransactionRecord,
    TransferRecord,
    VerificationResult,
    VerifyResponse,
)
from ..ratelimit import TokenBucketRateLimiter
from ..webhooks import WebhookDispatcher

HISTORY_PREFIX = "history:"
TRANSFER_PREFIX = "transfer:"

_history_adapter = TypeAdapter(List[TransactionRecord])
_transfers_adapter = TypeAdapter(List[TransferRecord])


class VerificationGateway:
    """Orchestrates cache, ledger client, rate limiter and webhooks."""

    def __init__(self,
                 ledger_client: LedgerClient,
                 cache: Cache,
                 rate_limiter: Optional[TokenBucketRateLimiter] = None,
                 webhook_dispatcher: Optional[WebhookDispatcher] = None,
                 metrics: Optional[MetricsCollector] = None,
                 verification_ttl: int = 3600,
                 history_ttl: int = 300,
                 transfer_ttl: int = 30 * 24 * 3600,
                 max_batch_size: int = 100,
                 clock: Callable[[], float] = time.time):
        self.ledger_client = ledger_client
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.webhook_dispatcher = webhook_dispatcher
        self.metrics = metrics
        self.verification_ttl = verification_ttl
        self.history_ttl = history_ttl
        self.transfer_ttl = transfer_ttl
        self.max_batch_size = max_batch_size
        self.logger = get_logger("ledger.gateway")
        self._clock = clock
        self._inflight: Dict[str, asyncio.Future] = {}
        self._waiters: Dict[asyncio.Future, int] = {}

    # Plumbing

    @contextmanager
    def _observe(self, operation: str) -> Iterator[None]:
        """Admit the request and account for its outcome."""
        if self.metrics:
            self.metrics.record_request(operation)
        try:
            if self.rate_limiter is not None:
                self.rate_limiter.check()
            yield
        except GatewayException as e:
            if self.metrics:
                self.metrics.record_error(e.kind.value)
            raise
        finally:
            if self.metrics:
                self.metrics.set_circuit_state(self.ledger_client.circuit_breaker.state)

    async def _cache_get(self, key: str) -> Optional[str]:
        try:
            return await self.cache.get(key)
        except CacheError as e:
            self.logger.warning("Cache read failed, treating as miss", key=key, error=str(e))
            return None

    async def _cache_set(self, key: str, value: str, ttl: int) -> None:
        try:
            await self.cache.set(key, value, ttl)
        except CacheError as e:
            self.logger.warning("Cache write failed", key=key, error=str(e))

    async def _cache_delete(self, key: str) -> None:
        try:
            await self.cache.delete(key)
        except CacheError as e:
            self.logger.warning("Cache invalidation failed", key=key, error=str(e))

    @staticmethod
    def _decode(adapter_or_model: Any, raw: str, key: str) -> Any:
        try:
            if isinstance(adapter_or_model, TypeAdapter):
                return adapter_or_model.validate_json(raw)
            return adapter_or_model.model_validate_json(raw)
        except PydanticValidationError as e:
            raise SerializationError("Cached value could not be decoded", details={"key": key}) from e

    def _fire(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.webhook_dispatcher is not None:
            self.webhook_dispatcher.fire(event_type, payload)

    # Verification

    async def verify(self, document_hash: str) -> VerifyResponse:
        """Verify one document hash."""
        with self._observe("verify"):
            normalized = validate_hash(document_hash)
            set_document_context(normalized)
            return await self._verify_normalized(normalized)

    async def _verify_normalized(self, document_hash: str) -> VerifyResponse:
        raw = await self._cache_get(document_hash)
        if raw is not None:
            result = self._decode(VerificationResult, raw, document_hash)
            if self.metrics:
                self.metrics.record_cache_hit()
            self.logger.debug("Cache hit for hash", document_hash=document_hash)
            return VerifyResponse.from_result(result, cached=True)

        if self.metrics:
            self.metrics.record_cache_miss()
        result = await self._lookup(document_hash)
        return VerifyResponse.from_result(result, cached=False)

    async def _lookup(self, document_hash: str) -> VerificationResult:
        """Single-flight ledger lookup: concurrent misses share one call.

        Each waiter is shielded from the others. When the last waiter is
        cancelled the shared call is cancelled with it, so abandoned lookups
        stop retrying.
        """
        future = self._inflight.get(document_hash)
        if future is None:
            future = asyncio.ensure_future(self._fetch_and_cache(document_hash))
            self._inflight[document_hash] = future
            future.add_done_callback(lambda f, key=document_hash: self._lookup_done(key, f))

        self._waiters[future] = self._waiters.get(future, 0) + 1
        try:
            return await asyncio.shield(future)
        finally:
            remaining = self._waiters.pop(future) - 1
            if remaining:
                self._waiters[future] = remaining
            elif not future.done():
                self.logger.debug("Lookup abandoned by all callers", document_hash=document_hash)
                future.cancel()

    def _lookup_done(self, key: str, future: asyncio.Future) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]
        if not future.cancelled():
            # Mark the exception retrieved; waiters re-raise it themselves.
            future.exception()

    async def _fetch_and_cache(self, document_hash: str) -> VerificationResult:
        result = await self.ledger_client.verify_hash(document_hash)
        # An invalidation during the call detaches this task from _inflight.
        if self._inflight.get(document_hash) is asyncio.current_task():
            await self._cache_set(document_hash, result.model_dump_json(), self.verification_ttl)
        else:
            self.logger.debug("Skipping cache write for invalidated lookup", document_hash=document_hash)
        return result

    async def verify_batch(self, hashes: Sequence[str]) -> List[BatchVerifyItem]:
        """Verify many hashes concurrently; results follow request order."""
        with self._observe("verify_batch"):
            if not hashes:
                raise ValidationError("Batch must contain at least one hash")
            if len(hashes) > self.max_batch_size:
                raise ValidationError(
                    "Batch is too large",
                    details={"max_batch_size": self.max_batch_size, "actual": len(hashes)}
                )

            normalized = [validate_hash(h) for h in hashes]
            unique = list(dict.fromkeys(normalized))
            outcomes = await asyncio.gather(
                *(self._verify_normalized(h) for h in unique),
                return_exceptions=True
            )
            by_hash = dict(zip(unique, outcomes))

            for outcome in outcomes:
                if isinstance(outcome, CircuitOpenError):
                    raise outcome
                if isinstance(outcome, BaseException) and not isinstance(outcome, GatewayException):
                    raise outcome

            items = []
            for document_hash in normalized:
                outcome = by_hash[document_hash]
                if isinstance(outcome, GatewayException):
                    items.append(BatchVerifyItem(document_hash=document_hash, error=outcome.message))
                else:
                    items.append(BatchVerifyItem(document_hash=document_hash, result=outcome))
            return items

    async def get_history(self, document_hash: str) -> List[TransactionRecord]:
        """Ledger transactions referencing a hash, oldest first."""
        with self._observe("history"):
            normalized = validate_hash(document_hash)
            set_document_context(normalized)
            key = HISTORY_PREFIX + normalized

            raw = await self._cache_get(key)
            if raw is not None:
                return self._decode(_history_adapter, raw, key)

            history = await self.ledger_client.get_hash_history(normalized)
            await self._cache_set(key, _history_adapter.dump_json(history).decode("utf-8"), self.history_ttl)
            return history

    # Submissions

    async def _invalidate(self, document_hash: str) -> None:
        # A lookup already in flight may predate the change; later misses start fresh.
        self._inflight.pop(document_hash, None)
        await self._cache_delete(document_hash)
        await self._cache_delete(HISTORY_PREFIX + document_hash)

    async def submit_hash(self, document_hash: str) -> str:
        """Anchor a document hash on the ledger."""
        with self._observe("submit"):
            normalized = validate_hash(document_hash)
            set_document_context(normalized)

            transaction_id = await self.ledger_client.submit_hash(normalized)
            await self._invalidate(normalized)
            self._fire("hash_submitted", {
                "document_hash": normalized,
                "transaction_id": transaction_id,
            })
            return transaction_id

    async def revoke(self, document_hash: str, reason: str, revoked_by: str) -> RevocationResult:
        """Revoke an anchored document hash."""
        with self._observe("revoke"):
            normalized = validate_hash(document_hash)
            set_document_context(normalized)
            if not reason or not revoked_by:
                raise ValidationError("reason and revoked_by are required")

            # Checked against the ledger itself; a cached positive may be stale.
            verification = await self.ledger_client.verify_hash(normalized)
            if not verification.verified:
                self.logger.info("Revocation refused, hash not on ledger")
                raise DocumentNotFoundError(normalized)

            transaction_id = await self.ledger_client.revoke_hash(normalized, reason, revoked_by)
            revoked_at = int(self._clock())
            await self._invalidate(normalized)

            self.logger.info("Document revoked", transaction_id=transaction_id)
            self._fire("document_revoked", {
                "document_hash": normalized,
                "transaction_id": transaction_id,
                "reason": reason,
                "revoked_by": revoked_by,
                "revoked_at": revoked_at,
            })
            return RevocationResult(transaction_id=transaction_id, revoked_at=revoked_at)

    async def _read_transfers(self, key: str) -> List[TransferRecord]:
        raw = await self.cache.get(key)
        if raw is None:
            return []
        return self._decode(_transfers_adapter, raw, key)

    async def record_transfer(self, document_hash: str, from_owner: str, to_owner: str) -> TransferRecord:
        """Anchor an ownership transfer and append it to the document's list.

        The append is a read-modify-write against the cache without
        compare-and-set; two transfers of the same document recorded at the
        same moment can overwrite each other's entry.
        """
        with self._observe("transfer"):
            normalized = validate_hash(document_hash)
            set_document_context(normalized)
            if not from_owner or not to_owner:
                raise ValidationError("from_owner and to_owner are required")
            if from_owner == to_owner:
                raise ValidationError("from_owner and to_owner must differ")

            timestamp = int(self._clock())
            transfer_hash = hashlib.sha256(
                f"{normalized}:{from_owner}:{to_owner}:{timestamp}".encode("utf-8")
            ).hexdigest()
            # Read and decode before anchoring so a corrupt list fails without a ledger write.
            key = TRANSFER_PREFIX + normalized
            transfers: Optional[List[TransferRecord]]
            try:
                transfers = await self._read_transfers(key)
            except CacheError as e:
                # Writing a fresh list later would drop the existing entries.
                self.logger.error("Transfer list unreadable, record will not be appended", key=key, error=str(e))
                transfers = None

            transaction_id = await self.ledger_client.anchor_transfer(transfer_hash)

            record = TransferRecord(
                transfer_hash=transfer_hash,
                transaction_id=transaction_id,
                from_owner=from_owner,
                to_owner=to_owner,
                timestamp=timestamp
            )

            if transfers is not None:
                transfers.append(record)
                await self._cache_set(key, _transfers_adapter.dump_json(transfers).decode("utf-8"), self.transfer_ttl)

            self._fire("ownership_transferred", {
                "document_hash": normalized,
                "transfer_hash": transfer_hash,
                "transaction_id": transaction_id,
                "from_owner": from_owner,
                "to_owner": to_owner,
                "timestamp": timestamp,
            })
            return record

    async def get_transfers(self, document_hash: str) -> List[TransferRecord]:
        with self._observe("transfers"):
            normalized = validate_hash(document_hash)
            key = TRANSFER_PREFIX + normalized
            try:
                return await self._read_transfers(key)
            except CacheError as e:
                self.logger.warning("Transfer list unreadable", key=key, error=str(e))
                return []

    # Health

    async def health(self) -> HealthResponse:
        ledger_ok, cache_ok = await asyncio.gather(
            self.ledger_client.check_connection(),
            self.cache.check_connection()
        )
        circuit = self.ledger_client.circuit_breaker.state
        if self.metrics:
            self.metrics.set_circuit_state(circuit)

        healthy = ledger_ok and cache_ok and circuit is not CircuitState.OPEN
        return HealthResponse(
            status="healthy" if healthy else "degraded",
            ledger_connected=ledger_ok,
            cache_connected=cache_ok,
            ledger_circuit=circuit.value
        )
