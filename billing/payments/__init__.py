"""Payment gateway adapters and shared payment types."""

from .gateway import PaymentGatewayAdapter
from .models import (
    CardDetails,
    CardVerification,
    ChargeResult,
    ChargeVerification,
    GatewayCard,
    PaymentMethod,
    RefundResult,
    TransactionStatus,
)
from .paystack import PaystackGateway
from .retry import RetryPolicy

__all__ = [
    "CardDetails",
    "CardVerification",
    "ChargeResult",
    "ChargeVerification",
    "GatewayCard",
    "PaymentGatewayAdapter",
    "PaymentMethod",
    "PaystackGateway",
    "RefundResult",
    "RetryPolicy",
    "TransactionStatus",
]
