"""
Ledger (Horizon) API client.

Every public call takes one circuit-breaker admission, then runs its HTTP
requests through the retry runner. A single logical call may therefore issue
several physical requests; the breaker only hears about the final outcome.
"""

import base64
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker
from shared.errors import (
    SerializationError,
    TerminalClientError,
    TransientTransportError,
)
from shared.logging import get_logger
from shared.retry import RetryRunner

from ..models import LedgerAccount, TransactionRecord, VerificationResult

SERVICE_NAME = "ledger"
MEMO_MAX_BYTES = 28
REVOKE_PREFIX = "REVOKE:"
DEFAULT_PAGE_SIZE = 200
MAX_HISTORY_PAGES = 100


def truncate_memo(text: str, limit: int = MEMO_MAX_BYTES) -> str:
    """Cut ``text`` to ``limit`` UTF-8 bytes without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= limit:
        return text
    return encoded[:limit].decode("utf-8", errors="ignore")


def anchor_memo(document_hash: str) -> str:
    return truncate_memo(document_hash)


def revocation_memo(document_hash: str) -> str:
    return truncate_memo(REVOKE_PREFIX + document_hash)


def memo_references(memo: Optional[str], document_hash: str) -> bool:
    """True when a memo carries the hash, in full or as the truncated anchor."""
    if not memo:
        return False
    return (
        document_hash in memo
        or memo == anchor_memo(document_hash)
        or memo == revocation_memo(document_hash)
    )


def parse_timestamp(value: str) -> int:
    """RFC3339 ``created_at`` to Unix seconds."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


class LedgerClient:
    """Client for the external ledger HTTP API."""

    def __init__(self,
                 horizon_url: str,
                 circuit_breaker: CircuitBreaker,
                 retry_runner: RetryRunner,
                 source_public_key: Optional[str] = None,
                 page_size: int = DEFAULT_PAGE_SIZE,
                 timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = horizon_url.rstrip("/")
        self.circuit_breaker = circuit_breaker
        self.retry_runner = retry_runner
        self.source_public_key = source_public_key
        self.page_size = page_size
        self.logger = get_logger("ledger.client")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    # Call plumbing

    async def _execute(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """Admission, call, outcome report."""
        self.circuit_breaker.before_request()

        try:
            result = await func()
        except TerminalClientError:
            # The ledger answered; a 4xx says nothing about its health.
            self.circuit_breaker.on_success()
            raise
        except Exception as e:
            self.circuit_breaker.on_failure()
            self.logger.error(
                "Ledger call failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__
            )
            raise

        self.circuit_breaker.on_success()
        return result

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """One physical request with status classification."""
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientTransportError(SERVICE_NAME, f"timeout calling {url}") from e
        except httpx.TransportError as e:
            raise TransientTransportError(SERVICE_NAME, str(e) or type(e).__name__) from e

        if response.status_code >= 500:
            raise TransientTransportError(
                SERVICE_NAME,
                f"Unexpected status {response.status_code}",
                status_code=response.status_code
            )
        if response.status_code >= 400:
            raise TerminalClientError(SERVICE_NAME, response.status_code, details={"url": str(response.url)})

        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SerializationError("Ledger returned a non-JSON body", details={"url": str(response.url)}) from e
        if not isinstance(data, dict):
            raise SerializationError("Ledger returned an unexpected JSON shape", details={"url": str(response.url)})
        return data

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.retry_runner.run(self._request, "GET", url, params=params)

    @staticmethod
    def _records(page: Dict[str, Any]) -> List[Dict[str, Any]]:
        embedded = page.get("_embedded") or {}
        if not isinstance(embedded, dict):
            raise SerializationError("Ledger page has malformed records")
        records = embedded.get("records") or []
        if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
            raise SerializationError("Ledger page has malformed records")
        return records

    @staticmethod
    def _next_link(page: Dict[str, Any]) -> Optional[str]:
        links = page.get("_links") or {}
        if not isinstance(links, dict):
            return None
        next_link = links.get("next") or {}
        if not isinstance(next_link, dict):
            return None
        return next_link.get("href")

    @staticmethod
    def _to_record(record: Dict[str, Any]) -> TransactionRecord:
        try:
            return TransactionRecord(
                transaction_id=record["id"],
                timestamp=parse_timestamp(record["created_at"]),
                memo=record.get("memo") or "",
                ledger_sequence=record.get("ledger")
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SerializationError("Malformed ledger transaction record", details={"error": str(e)}) from e

    # Queries

    async def verify_hash(self, document_hash: str) -> VerificationResult:
        """Look for a recent transaction whose memo anchors ``document_hash``.

        Records come newest first, so the first memo referencing the hash
        decides: a revocation newer than the anchor reports not verified, a
        re-anchor newer than the revocation reports verified.
        """

        async def _verify() -> VerificationResult:
            page = await self._get("/transactions", params={"order": "desc", "limit": self.page_size})
            for record in self._records(page):
                memo = record.get("memo")
                if not memo_references(memo, document_hash):
                    continue
                if memo == revocation_memo(document_hash):
                    self.logger.info("Latest ledger record for hash is a revocation")
                    return VerificationResult(verified=False)
                matched = self._to_record(record)
                return VerificationResult(
                    verified=True,
                    transaction_id=matched.transaction_id,
                    timestamp=matched.timestamp
                )
            return VerificationResult(verified=False)

        try:
            return await self._execute("verify_hash", _verify)
        except TerminalClientError as e:
            self.logger.info("Ledger has no record for hash", status_code=e.status_code)
            return VerificationResult(verified=False)

    async def get_hash_history(self, document_hash: str) -> List[TransactionRecord]:
        """All transactions referencing ``document_hash``, oldest first."""

        async def _history() -> List[TransactionRecord]:
            matches: List[TransactionRecord] = []
            url: Optional[str] = "/transactions"
            params: Optional[Dict[str, Any]] = {"limit": self.page_size, "order": "asc"}
            seen = set()

            for _ in range(MAX_HISTORY_PAGES):
                page = await self._get(url, params=params)
                records = self._records(page)
                for record in records:
                    if memo_references(record.get("memo"), document_hash):
                        matches.append(self._to_record(record))

                next_url = self._next_link(page)
                if not records or not next_url or next_url in seen:
                    break
                seen.add(next_url)
                # The next link already carries limit, order and cursor.
                url, params = next_url, None
            else:
                self.logger.warning("History pagination stopped at page limit", pages=MAX_HISTORY_PAGES)

            matches.sort(key=lambda r: r.timestamp)
            return matches

        return await self._execute("get_hash_history", _history)

    async def get_account(self, public_key: str) -> LedgerAccount:
        async def _account() -> LedgerAccount:
            return await self._fetch_account(public_key)

        return await self._execute("get_account", _account)

    async def _fetch_account(self, public_key: str) -> LedgerAccount:
        data = await self._get(f"/accounts/{public_key}")
        try:
            return LedgerAccount(account_id=data.get("account_id", public_key), sequence=int(data["sequence"]))
        except (KeyError, TypeError, ValueError) as e:
            raise SerializationError("Malformed ledger account", details={"error": str(e)}) from e

    async def check_connection(self) -> bool:
        """Reachability check; bypasses the breaker so health reflects reality."""
        try:
            response = await self._client.get("/")
        except httpx.HTTPError as e:
            self.logger.warning("Ledger connection check failed", error=str(e))
            return False
        return response.is_success

    # Submissions

    def _build_envelope(self, memo: str, sequence: Optional[int], metadata: Dict[str, Any]) -> str:
        # Placeholder envelope; real transaction signing is not performed here.
        envelope = {
            "source": self.source_public_key,
            "sequence": sequence + 1 if sequence is not None else None,
            "memo": {"type": "text", "value": memo},
            "metadata": metadata,
        }
        return base64.b64encode(json.dumps(envelope, sort_keys=True).encode("utf-8")).decode("ascii")

    async def _submit_memo(self, operation: str, memo: str, metadata: Dict[str, Any]) -> str:
        """Submit a memo-carrying transaction and return its id.

        Retries cover transport failures and 5xx only. A submission whose
        response is lost can still land twice; no idempotency key is sent.
        """

        async def _submit() -> str:
            sequence = None
            if self.source_public_key:
                account = await self._fetch_account(self.source_public_key)
                sequence = account.sequence

            envelope = self._build_envelope(memo, sequence, metadata)
            data = await self.retry_runner.run(self._request, "POST", "/transactions", data={"tx": envelope})
            transaction_id = data.get("hash") or data.get("id")
            if not transaction_id:
                raise SerializationError("Ledger submission response has no transaction id")
            return transaction_id

        transaction_id = await self._execute(operation, _submit)
        self.logger.info("Ledger transaction submitted", operation=operation, transaction_id=transaction_id)
        return transaction_id

    async def submit_hash(self, document_hash: str) -> str:
        return await self._submit_memo("submit_hash", anchor_memo(document_hash), {"action": "anchor"})

    async def revoke_hash(self, document_hash: str, reason: str, revoked_by: str) -> str:
        return await self._submit_memo(
            "revoke_hash",
            revocation_memo(document_hash),
            {"action": "revoke", "reason": reason, "revoked_by": revoked_by}
        )

    async def anchor_transfer(self, transfer_hash: str, memo: Optional[str] = None) -> str:
        return await self._submit_memo(
            "anchor_transfer",
            truncate_memo(memo or transfer_hash),
            {"action": "transfer", "transfer_hash": transfer_hash}
        )
