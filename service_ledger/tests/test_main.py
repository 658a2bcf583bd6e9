"""
Unit tests for the ledger service HTTP layer.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from service_ledger.app.cache import InMemoryCache
from service_ledger.app.main import LedgerService, create_app
from service_ledger.app.webhooks import verify_signature
from service_ledger.app.webhooks.dispatcher import SIGNATURE_HEADER
from shared.config import GatewayConfig
from shared.test_helpers import LEDGER_BASE_URL, FakeLedger, make_hash

HASH = make_hash("contract.pdf")
WEBHOOK_URL = "http://hooks.test/ledger"
WEBHOOK_SECRET = "whsec-test"


def make_config(**overrides):
    settings = dict(
        _env_file=None,
        horizon_url=LEDGER_BASE_URL,
        redis_url="memory://",
        max_retries=1,
        retry_initial_delay=0.0,
        circuit_failure_threshold=2,
        circuit_timeout=30.0,
        rate_limit_per_second=1000.0,
        webhook_urls=WEBHOOK_URL,
        webhook_secret=WEBHOOK_SECRET,
    )
    settings.update(overrides)
    return GatewayConfig(**settings)


class TestLedgerService:
    """Test cases for LedgerService."""

    @pytest.fixture
    def ledger(self):
        return FakeLedger()

    @pytest.fixture
    def webhook_requests(self):
        return []

    @pytest.fixture
    def service(self, ledger, webhook_requests):
        def webhook_handler(request):
            webhook_requests.append(request)
            return httpx.Response(200)

        return LedgerService(
            make_config(),
            ledger_http_client=ledger.client(),
            webhook_http_client=httpx.AsyncClient(transport=httpx.MockTransport(webhook_handler))
        )

    @pytest.fixture
    def client(self, service):
        """Create test client."""
        with TestClient(service.app) as client:
            yield client

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "ledger_connected": True,
            "cache_connected": True,
            "ledger_circuit": "closed",
        }

    def test_health_degraded(self, client, ledger):
        ledger.fail_with(503)

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert response.json()["ledger_connected"] is False

    def test_metrics(self, client):
        client.post("/verify", json={"document_hash": HASH})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'gateway_requests_total{operation="verify"} 1.0' in response.text

    def test_verify_post_and_get(self, client, ledger):
        ledger.add_transaction(HASH[:28], tx_id="tx123")

        posted = client.post("/verify", json={"document_hash": HASH})
        fetched = client.get(f"/verify/{HASH}")

        assert posted.status_code == 200
        assert posted.json()["verified"] is True
        assert posted.json()["transaction_id"] == "tx123"
        assert posted.json()["cached"] is False
        assert fetched.json()["cached"] is True

    def test_request_id_echoed(self, client):
        response = client.get(f"/verify/{HASH}", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    def test_invalid_hash(self, client, ledger):
        response = client.get("/verify/xyz", headers={"X-Request-ID": "req-7"})

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["request_id"] == "req-7"
        assert ledger.requests_to("GET", "/transactions") == []

    def test_circuit_open_maps_to_503(self, client, ledger):
        ledger.fail_with(500, 500)

        assert client.get(f"/verify/{HASH}").status_code == 502
        assert client.get(f"/verify/{make_hash('b')}").status_code == 502

        response = client.get(f"/verify/{make_hash('c')}")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "30"
        assert response.json()["code"] == "CIRCUIT_OPEN"
        assert len(ledger.requests_to("GET", "/transactions")) == 2

    def test_rate_limited(self, ledger):
        service = LedgerService(
            make_config(rate_limit_per_second=0.5, rate_limit_burst=1, webhook_secret=None),
            ledger_http_client=ledger.client()
        )
        with TestClient(service.app) as client:
            assert client.get(f"/verify/{HASH}").status_code == 200
            response = client.get(f"/verify/{HASH}")
            # Health is not rate limited.
            assert client.get("/health").status_code == 200

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "2"

    def test_batch(self, client, ledger):
        ledger.add_transaction(HASH[:28])
        other = make_hash("other")

        response = client.post("/verify/batch", json={"hashes": [HASH, other]})

        assert response.status_code == 200
        results = response.json()["results"]
        assert [r["document_hash"] for r in results] == [HASH, other]
        assert results[0]["result"]["verified"] is True
        assert results[1]["result"]["verified"] is False

    def test_batch_empty(self, client):
        assert client.post("/verify/batch", json={"hashes": []}).status_code == 400

    def test_submit_then_verify_and_history(self, client):
        submitted = client.post("/submit", json={"document_hash": HASH.upper()})

        assert submitted.status_code == 200
        assert submitted.json() == {"document_hash": HASH, "transaction_id": "tx1"}
        assert client.get(f"/verify/{HASH}").json()["verified"] is True

        history = client.get(f"/verify/{HASH}/history").json()
        assert history["document_hash"] == HASH
        assert [t["transaction_id"] for t in history["transactions"]] == ["tx1"]

    def test_revoke_unknown(self, client, ledger):
        response = client.post("/revoke", json={
            "document_hash": HASH, "reason": "superseded", "revoked_by": "alice"
        })

        assert response.status_code == 404
        assert response.json()["code"] == "DOCUMENT_NOT_FOUND"
        assert ledger.submitted_envelopes == []

    def test_revoke_requires_reason(self, client):
        response = client.post("/revoke", json={
            "document_hash": HASH, "reason": "", "revoked_by": "alice"
        })

        assert response.status_code == 422

    def test_transfer_routes(self, client):
        client.post("/submit", json={"document_hash": HASH})

        recorded = client.post("/transfer", json={
            "document_hash": HASH, "from_owner": "alice", "to_owner": "bob"
        })
        listed = client.get(f"/transfer/{HASH}")

        assert recorded.status_code == 200
        assert recorded.json()["from_owner"] == "alice"
        assert listed.json()["transfers"] == [recorded.json()]

    def test_webhooks_delivered_by_shutdown(self, service, webhook_requests):
        with TestClient(service.app) as client:
            client.post("/submit", json={"document_hash": HASH})

        assert len(webhook_requests) == 1
        request = webhook_requests[0]
        assert json.loads(request.content) == {
            "event": "hash_submitted",
            "data": {"document_hash": HASH, "transaction_id": "tx1"},
        }
        assert verify_signature(WEBHOOK_SECRET, request.content, request.headers[SIGNATURE_HEADER])

    def test_create_app(self):
        app = create_app(make_config())

        assert isinstance(app.state.ledger_service, LedgerService)

    def test_memory_url_selects_in_process_cache(self, service):
        assert service.config.uses_memory_cache is True
        assert isinstance(service.cache, InMemoryCache)
