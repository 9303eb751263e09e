"""Data models for the transaction ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from billing.payments.models import TransactionStatus
from billing.storage import to_iso

VERIFIED_STATUSES = (
    TransactionStatus.SUCCESSFUL,
    TransactionStatus.FAILED,
    TransactionStatus.REFUNDED,
)


class TransactionType(str, Enum):
    subscription = "subscription"
    upgrade = "upgrade"
    refund = "refund"
    payment_method_update = "payment-method-update"

    @property
    def is_charge(self) -> bool:
        return self in (TransactionType.subscription, TransactionType.upgrade)


@dataclass(slots=True)
class Transaction:
    """Database representation of a ledger entry.

    ``encrypted_payload`` holds the sealed card, provider reference and provider
    responses; nothing else on the record is sensitive.
    """

    id: str
    type: TransactionType
    reference: str
    user_id: str
    subscription_id: Optional[str]
    amount: Decimal
    unit_amount: int
    fee: Decimal
    unit_fee: int
    currency: str
    status: TransactionStatus
    description: str
    metadata: Dict[str, Any]
    encrypted_payload: Optional[str]
    version: int
    created_at: datetime
    updated_at: datetime

    @property
    def is_verified(self) -> bool:
        return self.status in VERIFIED_STATUSES


@dataclass(slots=True)
class SensitivePayload:
    """Plaintext shape of ``Transaction.encrypted_payload``."""

    card: Optional[Dict[str, Any]] = None
    provider_ref: Optional[str] = None
    provider_data: List[Dict[str, Any]] = field(default_factory=list)
    payment_email: Optional[str] = None
    channel: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "card": self.card,
            "provider_ref": self.provider_ref,
            "provider_data": list(self.provider_data),
            "payment_email": self.payment_email,
            "channel": self.channel,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SensitivePayload":
        return cls(
            card=payload.get("card"),
            provider_ref=payload.get("provider_ref"),
            provider_data=list(payload.get("provider_data") or []),
            payment_email=payload.get("payment_email"),
            channel=payload.get("channel"),
            error=payload.get("error"),
        )


@dataclass(slots=True)
class CardDisplay:
    last4: Optional[str]
    brand: Optional[str]


@dataclass(slots=True)
class TransactionView:
    """Sanitized transaction returned to callers: no ciphertext, no provider reference."""

    id: str
    type: TransactionType
    reference: str
    user_id: str
    subscription_id: Optional[str]
    amount: Decimal
    fee: Decimal
    currency: str
    status: TransactionStatus
    description: str
    metadata: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    card: Optional[CardDisplay] = None
    authorization_url: Optional[str] = None

    def as_payload(self) -> Dict[str, Any]:
        payload = {
            "id": self.id,
            "type": self.type.value,
            "reference": self.reference,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "amount": str(self.amount),
            "fee": str(self.fee),
            "currency": self.currency,
            "status": self.status.value,
            "description": self.description,
            "metadata": dict(self.metadata),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }
        if self.card is not None:
            payload["card"] = {"last4": self.card.last4, "brand": self.card.brand}
        if self.authorization_url:
            payload["authorization_url"] = self.authorization_url
        return payload
