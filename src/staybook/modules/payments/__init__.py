from staybook.modules.payments.gateway import (
    GatewayEvent,
    GatewayIntent,
    GatewayRefund,
    InvalidWebhook,
    PaymentGateway,
    StripeGateway,
)
from staybook.modules.payments.reconciliation import PaymentService, RefundResult

__all__ = [
    "GatewayEvent",
    "GatewayIntent",
    "GatewayRefund",
    "InvalidWebhook",
    "PaymentGateway",
    "PaymentService",
    "RefundResult",
    "StripeGateway",
]
