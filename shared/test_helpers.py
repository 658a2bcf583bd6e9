"""
Test helper functions and factory methods for the ledger gateway.
"""

import base64
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import httpx

LEDGER_BASE_URL = "http://ledger.test"


def make_hash(seed: str = "document") -> str:
    """SHA-256 hex digest of ``seed``."""
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def rfc3339(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class FakeClock:
    """Manually advanced clock usable wherever a ``clock`` callable is taken."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep stand-in that records requested delays and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeLedger:
    """In-memory ledger API served through ``httpx.MockTransport``.

    Transactions are kept oldest first. ``fail_with`` queues status codes that
    are returned, one per request, before normal handling resumes.
    """

    def __init__(self, base_url: str = LEDGER_BASE_URL, start_time: int = 1_700_000_000,
                 sequence: int = 100):
        self.base_url = base_url
        self.start_time = start_time
        self.sequence = sequence
        self.transactions: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.failures: List[int] = []
        self.submitted_envelopes: List[Dict[str, Any]] = []

    def add_transaction(self, memo: Optional[str], tx_id: Optional[str] = None,
                        created_at: Optional[int] = None) -> Dict[str, Any]:
        index = len(self.transactions)
        record = {
            "id": tx_id or f"tx{index + 1}",
            "created_at": rfc3339(created_at if created_at is not None else self.start_time + index),
            "memo": memo,
            "ledger": 1000 + index,
        }
        self.transactions.append(record)
        return record

    def fail_with(self, *status_codes: int) -> None:
        self.failures.extend(status_codes)

    def requests_to(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self.transport())

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            return httpx.Response(self.failures.pop(0), json={"status": "error"})

        path = request.url.path
        if request.method == "GET" and path == "/":
            return httpx.Response(200, json={"horizon_version": "test"})
        if request.method == "GET" and path.startswith("/accounts/"):
            account_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"account_id": account_id, "sequence": str(self.sequence)})
        if request.method == "GET" and path == "/transactions":
            return self._list_transactions(request)
        if request.method == "POST" and path == "/transactions":
            return self._submit(request)
        return httpx.Response(404, json={"status": 404, "title": "Resource Missing"})

    def _list_transactions(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        limit = int(params.get("limit", "10"))
        order = params.get("order", "asc")

        if order == "desc":
            records = list(reversed(self.transactions))[:limit]
            return httpx.Response(200, json=page(records))

        start = int(params.get("cursor", "0"))
        records = self.transactions[start:start + limit]
        next_href = f"{self.base_url}/transactions?cursor={start + len(records)}&limit={limit}&order=asc"
        return httpx.Response(200, json=page(records, next_href))

    def _submit(self, request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode("utf-8"))
        envelope = json.loads(base64.b64decode(form["tx"][0]))
        self.submitted_envelopes.append(envelope)
        self.sequence += 1
        record = self.add_transaction(envelope["memo"]["value"])
        return httpx.Response(200, json={"hash": record["id"], "ledger": record["ledger"]})


def page(records: List[Dict[str, Any]], next_href: Optional[str] = None) -> Dict[str, Any]:
    """A Horizon-style collection page."""
    body: Dict[str, Any] = {"_embedded": {"records": records}, "_links": {}}
    if next_href:
        body["_links"]["next"] = {"href": next_href}
    return body
