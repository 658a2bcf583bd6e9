"""
Shared utilities for the ledger gateway.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Backoff-with-jitter retry runner
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service scaffolding
- test_helpers: Fakes and factories shared by the test suites

Do not import from service_* packages into shared/.
"""
