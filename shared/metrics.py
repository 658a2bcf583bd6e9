"""
Shared metrics configuration for the ledger gateway.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from shared.circuit_breaker import CircuitState


CIRCUIT_STATE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}


class MetricsCollector:
    """Prometheus counters for one gateway process."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # A private registry keeps repeated construction (tests, reloads) from
        # colliding in the process-wide default registry.
        self.registry = registry or CollectorRegistry()

        self.requests = Counter(
            "gateway_requests_total",
            "Requests handled by the gateway",
            ["operation"],
            registry=self.registry
        )
        self.cache_hits = Counter(
            "gateway_cache_hits_total",
            "Verification cache hits",
            registry=self.registry
        )
        self.cache_misses = Counter(
            "gateway_cache_misses_total",
            "Verification cache misses",
            registry=self.registry
        )
        self.errors = Counter(
            "gateway_errors_total",
            "Errors by kind",
            ["kind"],
            registry=self.registry
        )
        self.webhook_deliveries = Counter(
            "gateway_webhook_deliveries_total",
            "Webhook deliveries by outcome",
            ["outcome"],
            registry=self.registry
        )
        self.circuit_state = Gauge(
            "gateway_circuit_state",
            "Ledger circuit state (0 closed, 1 open, 2 half-open)",
            registry=self.registry
        )

    def record_request(self, operation: str):
        self.requests.labels(operation=operation).inc()

    def record_cache_hit(self):
        self.cache_hits.inc()

    def record_cache_miss(self):
        self.cache_misses.inc()

    def record_error(self, kind: str):
        self.errors.labels(kind=kind).inc()

    def record_webhook_delivery(self, success: bool):
        self.webhook_deliveries.labels(outcome="success" if success else "failure").inc()

    def set_circuit_state(self, state: CircuitState):
        self.circuit_state.set(CIRCUIT_STATE_VALUES[state])

    def render(self) -> bytes:
        """Render all metrics in Prometheus text format."""
        return generate_latest(self.registry)
