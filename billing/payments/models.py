"""Payment method and gateway result types shared by the ledger and adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class TransactionStatus(str, Enum):
    """Internal transaction status; gateway-native values never leak past adapters."""

    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    DEFAULT = "default"


@dataclass(frozen=True)
class CardDetails:
    """Raw card data supplied by the customer. Only ever held in memory."""

    number: str
    cvv: str
    expiry_month: str
    expiry_year: str

    @property
    def last4(self) -> str:
        return self.number[-4:]

    def __repr__(self) -> str:
        return f"CardDetails(number='****{self.last4}', expiry={self.expiry_month}/{self.expiry_year})"


@dataclass(frozen=True)
class PaymentMethod:
    """How a customer pays: an e-mail plus either card data or a reusable authorization."""

    email: str
    type: str = "card"
    card: Optional[CardDetails] = None
    authorization_code: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PaymentMethod":
        card_payload = payload.get("card") or None
        card = None
        if card_payload:
            card = CardDetails(
                number=str(card_payload.get("number", "")),
                cvv=str(card_payload.get("cvv", "")),
                expiry_month=str(card_payload.get("expiry_month", "")),
                expiry_year=str(card_payload.get("expiry_year", "")),
            )
        return cls(
            email=str(payload.get("email") or ""),
            type=str(payload.get("type") or ""),
            card=card,
            authorization_code=payload.get("authorization_code"),
        )


@dataclass(frozen=True)
class GatewayCard:
    """Card authorization returned by the processor after a charge."""

    authorization_code: Optional[str] = None
    bin: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None
    brand: Optional[str] = None
    reusable: bool = False

    def as_payload(self) -> Dict[str, Any]:
        return {
            "authorization_code": self.authorization_code,
            "bin": self.bin,
            "last4": self.last4,
            "exp_month": self.exp_month,
            "exp_year": self.exp_year,
            "brand": self.brand,
            "reusable": self.reusable,
        }

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> Optional["GatewayCard"]:
        if not payload:
            return None
        return cls(
            authorization_code=payload.get("authorization_code"),
            bin=payload.get("bin"),
            last4=payload.get("last4"),
            exp_month=payload.get("exp_month"),
            exp_year=payload.get("exp_year"),
            brand=payload.get("brand"),
            reusable=bool(payload.get("reusable", False)),
        )


@dataclass
class ChargeResult:
    """Outcome of ``initialize_charge``."""

    status: TransactionStatus
    provider_ref: str
    card: Optional[GatewayCard] = None
    authorization_url: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class ChargeVerification:
    """Outcome of ``verify_charge``."""

    status: TransactionStatus
    amount: Decimal
    currency: Optional[str] = None
    card: Optional[GatewayCard] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Outcome of ``refund``."""

    status: TransactionStatus
    refund_ref: str
    amount: Decimal
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class CardVerification:
    """Outcome of ``verify_card``."""

    status: TransactionStatus
    reference: str
    card: Optional[GatewayCard] = None
    raw: Mapping[str, Any] = field(default_factory=dict)
