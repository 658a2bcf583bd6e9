"""
Ledger verification gateway service.
"""

from typing import Optional

import httpx
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from shared.config import GatewayConfig, get_config
from shared.retry import RetryConfig, RetryRunner

from .adapters import LedgerClient
from .cache import Cache, create_cache
from .domain import VerificationGateway
from .models import (
    BatchVerifyRequest,
    BatchVerifyResponse,
    HistoryResponse,
    RevocationResult,
    RevokeRequest,
    SubmitRequest,
    SubmitResponse,
    TransferHistoryResponse,
    TransferRecord,
    TransferRequest,
    VerifyRequest,
    VerifyResponse,
)
from .ratelimit import TokenBucketRateLimiter
from .webhooks import WebhookConfig, WebhookDispatcher

SERVICE_NAME = "ledger"


class LedgerService(BaseService):
    """Ledger verification gateway service implementation.

    ``ledger_http_client``, ``webhook_http_client`` and ``cache`` replace the
    clients built from configuration; tests pass transports and in-process
    backends through them.
    """

    def __init__(self,
                 config: Optional[GatewayConfig] = None,
                 cache: Optional[Cache] = None,
                 ledger_http_client: Optional[httpx.AsyncClient] = None,
                 webhook_http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(SERVICE_NAME, config or get_config())

        self.circuit_breaker = CircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold=self.config.circuit_failure_threshold,
                success_threshold=self.config.circuit_success_threshold,
                timeout=self.config.circuit_timeout
            ),
            name="ledger"
        )
        self.retry_runner = RetryRunner(
            RetryConfig(
                max_attempts=self.config.max_retries,
                initial_delay=self.config.retry_initial_delay,
                max_delay=self.config.retry_max_delay,
                backoff_multiplier=self.config.retry_backoff_multiplier
            ),
            name="ledger"
        )
        self.ledger_client = LedgerClient(
            self.config.horizon_url,
            self.circuit_breaker,
            self.retry_runner,
            source_public_key=self.config.source_public_key,
            page_size=self.config.history_page_size,
            timeout=self.config.http_timeout,
            client=ledger_http_client
        )
        self.cache = cache or create_cache(self.config)
        self.rate_limiter = TokenBucketRateLimiter(
            self.config.rate_limit_per_second,
            self.config.rate_limit_burst
        )

        self.webhook_dispatcher = None
        if self.config.webhooks_enabled:
            self.webhook_dispatcher = WebhookDispatcher(
                WebhookConfig(
                    urls=tuple(self.config.webhook_url_list),
                    secret=self.config.webhook_secret,
                    timeout=self.config.webhook_timeout
                ),
                client=webhook_http_client,
                on_delivery=lambda result: self.metrics.record_webhook_delivery(result.success)
            )
        else:
            self.logger.info("Webhook dispatch disabled")

        self.gateway = VerificationGateway(
            self.ledger_client,
            self.cache,
            rate_limiter=self.rate_limiter,
            webhook_dispatcher=self.webhook_dispatcher,
            metrics=self.metrics,
            verification_ttl=self.config.cache_verification_ttl,
            history_ttl=self.config.cache_history_ttl,
            max_batch_size=self.config.max_batch_size
        )

        self._setup_ledger_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.ledger_service = self

    async def check_health(self):
        health = await self.gateway.health()
        status_code = 200 if health.status == "healthy" else 503
        return JSONResponse(status_code=status_code, content=health.model_dump())

    async def shutdown(self) -> None:
        if self.webhook_dispatcher is not None:
            # Two attempts plus the retry pause bound one delivery.
            await self.webhook_dispatcher.close(timeout=self.config.webhook_timeout * 2 + 1.0)
        await self.ledger_client.close()
        close = getattr(self.cache, "close", None)
        if close is not None:
            await close()

    def _setup_ledger_routes(self):
        """Set up verification, submission and transfer routes."""

        @self.app.post("/verify", response_model=VerifyResponse)
        async def verify(request: VerifyRequest):
            return await self.gateway.verify(request.document_hash)

        @self.app.get("/verify/{document_hash}", response_model=VerifyResponse)
        async def verify_by_path(document_hash: str):
            return await self.gateway.verify(document_hash)

        @self.app.post("/verify/batch", response_model=BatchVerifyResponse)
        async def verify_batch(request: BatchVerifyRequest):
            items = await self.gateway.verify_batch(request.hashes)
            return BatchVerifyResponse(results=items)

        @self.app.get("/verify/{document_hash}/history", response_model=HistoryResponse)
        async def history(document_hash: str):
            transactions = await self.gateway.get_history(document_hash)
            return HistoryResponse(document_hash=document_hash.strip().lower(), transactions=transactions)

        @self.app.post("/submit", response_model=SubmitResponse)
        async def submit(request: SubmitRequest):
            transaction_id = await self.gateway.submit_hash(request.document_hash)
            return SubmitResponse(
                document_hash=request.document_hash.strip().lower(),
                transaction_id=transaction_id
            )

        @self.app.post("/revoke", response_model=RevocationResult)
        async def revoke(request: RevokeRequest):
            return await self.gateway.revoke(request.document_hash, request.reason, request.revoked_by)

        @self.app.post("/transfer", response_model=TransferRecord)
        async def transfer(request: TransferRequest):
            return await self.gateway.record_transfer(
                request.document_hash,
                request.from_owner,
                request.to_owner
            )

        @self.app.get("/transfer/{document_hash}", response_model=TransferHistoryResponse)
        async def transfers(document_hash: str):
            records = await self.gateway.get_transfers(document_hash)
            return TransferHistoryResponse(document_hash=document_hash.strip().lower(), transfers=records)


def create_app(config: Optional[GatewayConfig] = None):
    """Create FastAPI application."""
    service = LedgerService(config)
    return service.app


if __name__ == "__main__":
    service = LedgerService()
    service.run()
