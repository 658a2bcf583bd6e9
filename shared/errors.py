"""
Shared error handling for the ledger gateway.
"""

import math
from enum import Enum
from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorKind(Enum):
    """Machine-checkable error categories."""
    CIRCUIT_OPEN = "circuit_open"
    TRANSIENT_TRANSPORT = "transient_transport"
    TERMINAL_CLIENT = "terminal_client"
    NOT_FOUND = "not_found"
    SERIALIZATION = "serialization"
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    CACHE = "cache"
    INTERNAL = "internal"


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class GatewayException(Exception):
    """Base exception for the ledger gateway."""

    kind = ErrorKind.INTERNAL
    retryable = False
    http_status = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class CircuitOpenError(GatewayException):
    """Raised when a circuit breaker refuses a call."""

    kind = ErrorKind.CIRCUIT_OPEN
    http_status = 503

    def __init__(self, name: str, remaining_seconds: float):
        self.name = name
        self.remaining_seconds = max(0.0, remaining_seconds)
        super().__init__(
            "CIRCUIT_OPEN",
            f"Circuit breaker '{name}' is open; retry after {self.retry_after} seconds",
            {"circuit": name, "retry_after": self.retry_after}
        )

    @property
    def retry_after(self) -> int:
        """Remaining cool-down rounded up to whole seconds."""
        return int(math.ceil(self.remaining_seconds))


class TransientTransportError(GatewayException):
    """Timeouts, connection failures and upstream 5xx responses."""

    kind = ErrorKind.TRANSIENT_TRANSPORT
    retryable = True
    http_status = 502

    def __init__(self, service: str, message: str, status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.service = service
        self.status_code = status_code
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__("UPSTREAM_UNAVAILABLE", f"{service}: {message}", details)


class TerminalClientError(GatewayException):
    """Upstream rejected the request with a 4xx status."""

    kind = ErrorKind.TERMINAL_CLIENT
    http_status = 502

    def __init__(self, service: str, status_code: int, message: str = "Request rejected",
                 details: Optional[Dict[str, Any]] = None):
        self.service = service
        self.status_code = status_code
        details = dict(details or {})
        details["status_code"] = status_code
        super().__init__("UPSTREAM_REJECTED", f"{service}: {message}", details)


class DocumentNotFoundError(GatewayException):
    """Document hash has no record on the ledger."""

    kind = ErrorKind.NOT_FOUND
    http_status = 404

    def __init__(self, document_hash: str):
        super().__init__(
            "DOCUMENT_NOT_FOUND",
            f"The document hash '{document_hash}' does not exist on the ledger",
            {"document_hash": document_hash}
        )


class SerializationError(GatewayException):
    """Cached or upstream payload could not be decoded."""

    kind = ErrorKind.SERIALIZATION

    def __init__(self, message: str = "Serialization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_ERROR", message, details)


class ValidationError(GatewayException):
    """Caller input is malformed."""

    kind = ErrorKind.VALIDATION
    http_status = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class RateLimitError(GatewayException):
    """Rate limiting errors."""

    kind = ErrorKind.RATE_LIMITED
    http_status = 429

    def __init__(self, retry_after: float = 1.0, message: str = "Rate limit exceeded"):
        self.retry_after = int(math.ceil(max(0.0, retry_after)))
        super().__init__("RATE_LIMIT_ERROR", message, {"retry_after": self.retry_after})


class CacheError(GatewayException):
    """Cache backend failure."""

    kind = ErrorKind.CACHE

    def __init__(self, operation: str, message: str):
        super().__init__("CACHE_ERROR", f"Cache {operation} failed: {message}", {"operation": operation})
