from .dispatcher import (
    DeliveryResult,
    WebhookConfig,
    WebhookDispatcher,
    encode_event,
    sign,
    verify_signature,
)

__all__ = [
    "DeliveryResult",
    "WebhookConfig",
    "WebhookDispatcher",
    "encode_event",
    "sign",
    "verify_signature",
]
