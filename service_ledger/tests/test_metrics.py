"""
Unit tests for metrics and error responses.
"""

from shared.circuit_breaker import CircuitState
from shared.errors import CircuitOpenError, ErrorKind, RateLimitError, TerminalClientError
from shared.logging import clear_context, set_request_id
from shared.metrics import MetricsCollector


def test_collectors_are_independent():
    first = MetricsCollector("ledger")
    second = MetricsCollector("ledger")

    first.record_request("verify")

    assert first.registry.get_sample_value("gateway_requests_total", {"operation": "verify"}) == 1
    assert second.registry.get_sample_value("gateway_requests_total", {"operation": "verify"}) is None


def test_webhook_and_circuit_metrics():
    metrics = MetricsCollector("ledger")

    metrics.record_webhook_delivery(True)
    metrics.record_webhook_delivery(False)
    metrics.record_webhook_delivery(False)
    metrics.set_circuit_state(CircuitState.HALF_OPEN)

    sample = metrics.registry.get_sample_value
    assert sample("gateway_webhook_deliveries_total", {"outcome": "success"}) == 1
    assert sample("gateway_webhook_deliveries_total", {"outcome": "failure"}) == 2
    assert sample("gateway_circuit_state") == 2
    assert b"gateway_circuit_state 2.0" in metrics.render()


def test_error_response_carries_request_id():
    set_request_id("req-1")
    try:
        response = CircuitOpenError("ledger", 4.2).to_response()
    finally:
        clear_context()

    assert response.request_id == "req-1"
    assert response.code == "CIRCUIT_OPEN"
    assert response.details == {"circuit": "ledger", "retry_after": 5}


def test_error_kinds_and_statuses():
    assert RateLimitError(0.2).retry_after == 1
    assert RateLimitError().http_status == 429
    terminal = TerminalClientError("ledger", 404)
    assert terminal.kind is ErrorKind.TERMINAL_CLIENT
    assert terminal.retryable is False
    assert terminal.details["status_code"] == 404
