from .gateway import (
    AccountStatus,
    BasePaymentGateway,
    Capture,
    Hold,
    ProcessorError,
    ProcessorTimeout,
    WebhookEvent,
    get_gateway,
)
from .stub import StubGateway

__all__ = [
    "AccountStatus",
    "BasePaymentGateway",
    "Capture",
    "Hold",
    "ProcessorError",
    "ProcessorTimeout",
    "WebhookEvent",
    "get_gateway",
    "StubGateway",
]
