"""Paystack implementation of the payment gateway adapter."""

from __future__ import annotations

import hashlib
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from billing.config import DEFAULT_PAYSTACK_URL
from billing.errors import GatewayError

from .models import (
    CardVerification,
    ChargeResult,
    ChargeVerification,
    GatewayCard,
    PaymentMethod,
    RefundResult,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

_STATUS_MAP: Dict[str, TransactionStatus] = {
    "success": TransactionStatus.SUCCESSFUL,
    "failed": TransactionStatus.FAILED,
    "pending": TransactionStatus.PENDING,
    "ongoing": TransactionStatus.PENDING,
    "processing": TransactionStatus.PENDING,
    "queued": TransactionStatus.PENDING,
    "send_otp": TransactionStatus.PENDING,
    "send_pin": TransactionStatus.PENDING,
    "abandoned": TransactionStatus.EXPIRED,
    "reversed": TransactionStatus.REFUNDED,
    "processed": TransactionStatus.REFUNDED,
}

_CHANNELS = ["card", "bank", "ussd", "qr", "mobile_money"]

# Local card schedule: 1.5% + NGN 100 (waived under NGN 2,500), capped at NGN 2,000.
_FEE_RATE = Decimal("0.015")
_FEE_FLAT = Decimal("100")
_FEE_FLAT_THRESHOLD = Decimal("2500")
_FEE_CAP = Decimal("2000")

_VERIFICATION_AMOUNT_KOBO = 50

_CENTS = Decimal("0.01")


def map_paystack_status(native: Optional[str]) -> TransactionStatus:
    """Translate a Paystack status string into :class:`TransactionStatus`."""

    if not native:
        return TransactionStatus.DEFAULT
    return _STATUS_MAP.get(native.lower(), TransactionStatus.DEFAULT)


def to_kobo(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_kobo(value: Any) -> Decimal:
    return (Decimal(str(value or 0)) / 100).quantize(_CENTS)


def verify_webhook_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check the ``x-paystack-signature`` header (HMAC-SHA512 of the raw body)."""

    if not secret or not signature:
        return False
    computed = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(signature, computed)


def _map_card(authorization: Optional[Mapping[str, Any]]) -> Optional[GatewayCard]:
    if not authorization:
        return None
    return GatewayCard(
        authorization_code=authorization.get("authorization_code"),
        bin=authorization.get("bin"),
        last4=authorization.get("last4"),
        exp_month=authorization.get("exp_month"),
        exp_year=authorization.get("exp_year"),
        brand=authorization.get("brand") or authorization.get("card_type"),
        reusable=bool(authorization.get("reusable", False)),
    )


def _card_payload(payment_method: PaymentMethod) -> Dict[str, str]:
    card = payment_method.card
    return {
        "number": card.number,
        "cvv": card.cvv,
        "expiry_month": card.expiry_month,
        "expiry_year": card.expiry_year,
    }


class PaystackGateway:
    """Talk to the Paystack REST API using ``httpx``."""

    name = "paystack"

    def __init__(
        self,
        *,
        secret_key: str,
        base_url: str = DEFAULT_PAYSTACK_URL,
        callback_url: Optional[str] = None,
        currency: str = "NGN",
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        if not secret_key:
            raise ValueError("Paystack secret key is required")
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._callback_url = callback_url
        self._currency = currency
        self._http_client_factory = http_client_factory or (lambda: httpx.AsyncClient(timeout=10.0))

    async def initialize_charge(
        self, amount: Decimal, payment_method: PaymentMethod, idempotency_key: str
    ) -> ChargeResult:
        if payment_method.authorization_code:
            data = await self._request(
                "POST",
                "/transaction/charge_authorization",
                json={
                    "authorization_code": payment_method.authorization_code,
                    "email": payment_method.email,
                    "amount": to_kobo(amount),
                    "currency": self._currency,
                    "reference": idempotency_key,
                },
            )
            return ChargeResult(
                status=map_paystack_status(data.get("status")),
                provider_ref=str(data.get("reference") or idempotency_key),
                card=_map_card(data.get("authorization")),
                raw=data,
            )

        if payment_method.card is not None:
            data = await self._request(
                "POST",
                "/charge",
                json={
                    "email": payment_method.email,
                    "amount": to_kobo(amount),
                    "reference": idempotency_key,
                    "card": _card_payload(payment_method),
                },
            )
            return ChargeResult(
                status=map_paystack_status(data.get("status")),
                provider_ref=str(data.get("reference") or idempotency_key),
                card=_map_card(data.get("authorization")),
                raw=data,
            )

        # No card data and no saved authorization: hand off to hosted checkout.
        payload: Dict[str, Any] = {
            "email": payment_method.email,
            "amount": to_kobo(amount),
            "currency": self._currency,
            "reference": idempotency_key,
            "channels": _CHANNELS,
            "metadata": {
                "custom_fields": [
                    {
                        "display_name": "Payment Method",
                        "variable_name": "payment_method",
                        "value": payment_method.type,
                    }
                ]
            },
        }
        if self._callback_url:
            payload["callback_url"] = self._callback_url
        data = await self._request("POST", "/transaction/initialize", json=payload)
        return ChargeResult(
            status=TransactionStatus.PENDING,
            provider_ref=str(data.get("reference") or idempotency_key),
            authorization_url=data.get("authorization_url"),
            raw=data,
        )

    async def verify_charge(self, reference: str) -> ChargeVerification:
        data = await self._request("GET", f"/transaction/verify/{reference}")
        return ChargeVerification(
            status=map_paystack_status(data.get("status")),
            amount=from_kobo(data.get("amount")),
            currency=data.get("currency"),
            card=_map_card(data.get("authorization")),
            metadata=data.get("metadata") or {},
            raw=data,
        )

    async def refund(self, reference: str, amount: Decimal, reason: str) -> RefundResult:
        data = await self._request(
            "POST",
            "/refund",
            json={"transaction": reference, "amount": to_kobo(amount), "merchant_note": reason},
        )
        transaction = data.get("transaction") or {}
        refund_ref = data.get("id") or transaction.get("reference") or reference
        return RefundResult(
            status=map_paystack_status(data.get("status")),
            refund_ref=str(refund_ref),
            amount=from_kobo(data.get("amount")) if data.get("amount") is not None else Decimal(amount),
            raw=data,
        )

    async def calculate_fee(self, amount: Decimal) -> Decimal:
        amount = Decimal(amount)
        fee = amount * _FEE_RATE
        if amount >= _FEE_FLAT_THRESHOLD:
            fee += _FEE_FLAT
        return min(fee, _FEE_CAP).quantize(_CENTS, rounding=ROUND_HALF_UP)

    async def verify_card(self, payment_method: PaymentMethod, reference: str) -> CardVerification:
        card = payment_method.card
        if card is None:
            raise GatewayError("Card details are required for verification")

        verification_ref = f"verify_{reference}"
        data = await self._request(
            "POST",
            "/charge",
            json={
                "email": payment_method.email,
                "amount": _VERIFICATION_AMOUNT_KOBO,
                "reference": verification_ref,
                "card": _card_payload(payment_method),
                "metadata": {
                    "custom_fields": [
                        {
                            "display_name": "Verification",
                            "variable_name": "verification_type",
                            "value": "card_verification",
                        }
                    ]
                },
            },
        )
        status = map_paystack_status(data.get("status"))
        provider_ref = str(data.get("reference") or verification_ref)
        if status is TransactionStatus.SUCCESSFUL:
            await self._release_verification_charge(provider_ref)
        return CardVerification(
            status=status,
            reference=provider_ref,
            card=_map_card(data.get("authorization")),
            raw=data,
        )

    async def _release_verification_charge(self, reference: str) -> None:
        try:
            await self._request("POST", "/refund", json={"transaction": reference})
        except GatewayError:
            logger.exception("Failed to refund card verification charge", extra={"reference": reference})

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        async with self._http_client_factory() as client:
            try:
                response = await client.request(method, url, json=json, params=params, headers=self._headers())
            except httpx.TimeoutException as exc:
                raise GatewayError(f"Paystack request timed out: {path}", retryable=True) from exc
            except httpx.TransportError as exc:
                raise GatewayError(f"Paystack unreachable: {exc}", retryable=True) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayError(
                f"Paystack returned HTTP {response.status_code} for {path}", retryable=True
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayError(f"Paystack returned a non-JSON body for {path}") from exc

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            raise GatewayError(f"Paystack rejected {path}: {message}")

        data = body.get("data")
        return data if isinstance(data, dict) else {}
