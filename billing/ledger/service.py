"""Transaction ledger: idempotent, retried and encrypted money movement."""

from __future__ import annotations

import logging
import secrets
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

from billing.clock import Clock, SystemClock
from billing.crypto import SecretCipher
from billing.errors import (
    EncryptionError,
    GatewayError,
    NotFoundError,
    ValidationError,
    operation_result,
)
from billing.metrics import record_transaction
from billing.payments.gateway import PaymentGatewayAdapter
from billing.payments.models import GatewayCard, PaymentMethod, TransactionStatus
from billing.payments.retry import RetryPolicy

from .models import (
    CardDisplay,
    SensitivePayload,
    Transaction,
    TransactionType,
    TransactionView,
)
from .repository import TransactionRepository

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")
_ZERO = Decimal("0.00")


def _to_minor(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _money(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValidationError("Invalid amount")
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def _validate_payment_method(payment_method: Optional[PaymentMethod]) -> PaymentMethod:
    if payment_method is None or not payment_method.email or not payment_method.type:
        raise ValidationError("Invalid payment method")
    return payment_method


class TransactionLedger:
    """Executes payment attempts and keeps the immutable record of each one.

    Callers inside the engine use the ``execute_*`` coroutines, which raise
    :class:`BillingError`. The remaining public coroutines wrap them and return
    :class:`OperationResult`.
    """

    def __init__(
        self,
        repository: TransactionRepository,
        gateway: PaymentGatewayAdapter,
        cipher: SecretCipher,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        currency: str = "NGN",
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._cipher = cipher
        self._retry = retry_policy or RetryPolicy()
        self._clock = clock or SystemClock()
        self._currency = currency

    # Engine-facing API

    async def execute_charge(
        self,
        *,
        user_id: str,
        amount: Any,
        payment_method: Optional[PaymentMethod],
        type: TransactionType,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
        subscription_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> TransactionView:
        amount = _money(amount)
        if amount <= 0:
            raise ValidationError("Invalid amount")
        payment_method = _validate_payment_method(payment_method)

        transaction = self._reserve(
            user_id=user_id,
            amount=amount,
            type=type,
            description=description,
            metadata=metadata,
            subscription_id=subscription_id,
            reference=reference or self.generate_reference(user_id),
        )
        # A re-armed reference keeps the provider data of its earlier attempts.
        sensitive = self._unseal_or_empty(transaction)
        sensitive.payment_email = payment_method.email
        sensitive.channel = payment_method.type
        sensitive.error = None

        try:
            result = await self._retry.call(
                "initialize_charge",
                lambda: self._gateway.initialize_charge(amount, payment_method, transaction.reference),
            )
        except GatewayError as exc:
            if not exc.retryable:
                self._fail(transaction, sensitive, exc)
                raise
            status = await self._settle_unanswered_charge(transaction, sensitive, payment_method, exc)
            authorization_url = None
        else:
            sensitive.provider_ref = result.provider_ref
            sensitive.provider_data.append(dict(result.raw))
            sensitive.card = self._card_payload(result.card, payment_method)
            status = result.status
            authorization_url = result.authorization_url

            if status is TransactionStatus.PENDING and not authorization_url:
                try:
                    status = await self._verify_sent_charge(sensitive, payment_method)
                except GatewayError as exc:
                    sensitive.error = exc.message
                    logger.warning(
                        "Charge verification deferred",
                        extra={"reference": transaction.reference, "error": exc.message},
                    )

        fee = _ZERO
        if status is TransactionStatus.SUCCESSFUL:
            fee = _money(await self._gateway.calculate_fee(amount))

        transaction = self._finalize(transaction, status, sensitive, fee=fee)
        # PENDING is left for verify_transaction or the webhook to settle.
        if status not in (TransactionStatus.SUCCESSFUL, TransactionStatus.PENDING):
            raise GatewayError(f"Payment was declined ({status.value})")

        logger.info(
            "Charge recorded",
            extra={"reference": transaction.reference, "status": status.value, "type": type.value},
        )
        return self._view(transaction, authorization_url=authorization_url)

    async def execute_stored_charge(
        self,
        *,
        subscription_id: str,
        user_id: str,
        amount: Any,
        type: TransactionType,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> TransactionView:
        """Charge the authorization saved with the subscription's latest successful payment."""

        payment_method = self.stored_payment_method(subscription_id)
        if payment_method is None:
            raise ValidationError(f"No reusable payment method on file for subscription {subscription_id}")
        return await self.execute_charge(
            user_id=user_id,
            amount=amount,
            payment_method=payment_method,
            type=type,
            description=description,
            metadata=metadata,
            subscription_id=subscription_id,
            reference=reference,
        )

    def stored_payment_method(self, subscription_id: str) -> Optional[PaymentMethod]:
        source = self._repository.latest_for_subscription(
            subscription_id,
            types=(
                TransactionType.payment_method_update,
                TransactionType.subscription,
                TransactionType.upgrade,
            ),
        )
        if source is None or not source.encrypted_payload:
            return None
        sensitive = SensitivePayload.from_dict(self._cipher.unseal(source.encrypted_payload))
        card = GatewayCard.from_payload(sensitive.card)
        if card is None or not card.authorization_code or not sensitive.payment_email:
            return None
        return PaymentMethod(
            email=sensitive.payment_email,
            type=sensitive.channel or "card",
            authorization_code=card.authorization_code,
        )

    async def execute_card_verification(
        self,
        *,
        user_id: str,
        payment_method: Optional[PaymentMethod],
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
        subscription_id: Optional[str] = None,
    ) -> TransactionView:
        payment_method = _validate_payment_method(payment_method)
        if payment_method.card is None:
            raise ValidationError("Card details are required to update the payment method")

        transaction = self._reserve(
            user_id=user_id,
            amount=_ZERO,
            type=TransactionType.payment_method_update,
            description=description,
            metadata=metadata,
            subscription_id=subscription_id,
            reference=self.generate_reference(user_id),
        )
        sensitive = SensitivePayload(payment_email=payment_method.email, channel=payment_method.type)

        try:
            verification = await self._retry.call(
                "verify_card",
                lambda: self._gateway.verify_card(payment_method, transaction.reference),
            )
        except GatewayError as exc:
            self._fail(transaction, sensitive, exc)
            raise

        sensitive.provider_ref = verification.reference
        sensitive.provider_data.append(dict(verification.raw))
        sensitive.card = self._card_payload(verification.card, payment_method)
        transaction = self._finalize(transaction, verification.status, sensitive)
        if verification.status is not TransactionStatus.SUCCESSFUL:
            raise GatewayError(f"Card verification failed ({verification.status.value})")
        return self._view(transaction)

    async def execute_refund(self, transaction_id: str, reason: str) -> TransactionView:
        original = self._repository.get(transaction_id)
        if original is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if not original.type.is_charge or original.status is not TransactionStatus.SUCCESSFUL:
            raise ValidationError("Only successful charges can be refunded")
        if not original.encrypted_payload:
            raise EncryptionError("Original transaction has no provider data")
        original_sensitive = SensitivePayload.from_dict(self._cipher.unseal(original.encrypted_payload))
        provider_ref = original_sensitive.provider_ref or original.reference

        refund = self._reserve(
            user_id=original.user_id,
            amount=original.amount,
            type=TransactionType.refund,
            description=f"Refund for transaction {original.reference}",
            metadata={
                "original_transaction_id": original.id,
                "original_reference": original.reference,
                "reason": reason,
            },
            subscription_id=original.subscription_id,
            reference=f"REF-{original.reference}",
            currency=original.currency,
        )
        sensitive = SensitivePayload(
            card=original_sensitive.card,
            payment_email=original_sensitive.payment_email,
            channel=original_sensitive.channel,
        )

        try:
            result = await self._retry.call(
                "refund",
                lambda: self._gateway.refund(provider_ref, original.amount, reason),
            )
        except GatewayError as exc:
            self._fail(refund, sensitive, exc)
            raise

        sensitive.provider_ref = result.refund_ref
        sensitive.provider_data.append(dict(result.raw))
        if result.status is TransactionStatus.FAILED:
            self._finalize(refund, TransactionStatus.FAILED, sensitive)
            raise GatewayError("Refund was rejected by the payment processor")

        refund = self._finalize(refund, TransactionStatus.REFUNDED, sensitive)
        logger.info(
            "Refund recorded",
            extra={"reference": refund.reference, "original_reference": original.reference},
        )
        return self._view(refund)

    async def execute_verification(self, reference: str) -> TransactionView:
        transaction = self._repository.get_by_reference(reference)
        if transaction is None:
            raise NotFoundError(f"Transaction {reference} not found")
        if transaction.is_verified:
            return self._view(transaction)

        sensitive = self._unseal_or_empty(transaction)
        provider_ref = sensitive.provider_ref or transaction.reference
        verification = await self._retry.call(
            "verify_charge",
            lambda: self._gateway.verify_charge(provider_ref),
        )
        sensitive.provider_data.append(dict(verification.raw))
        if verification.card is not None:
            sensitive.card = verification.card.as_payload()

        fee = transaction.fee
        if verification.status is TransactionStatus.SUCCESSFUL and transaction.amount > 0:
            fee = _money(await self._gateway.calculate_fee(transaction.amount))
        transaction = self._finalize(transaction, verification.status, sensitive, fee=fee)
        return self._view(transaction)

    def latest_successful_charge(self, subscription_id: str) -> Optional[TransactionView]:
        transaction = self._repository.latest_for_subscription(
            subscription_id,
            types=(TransactionType.subscription, TransactionType.upgrade),
        )
        return self._view(transaction) if transaction else None

    def fetch(self, transaction_id: str) -> TransactionView:
        transaction = self._repository.get(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return self._view(transaction)

    def generate_reference(self, user_id: str) -> str:
        epoch_ms = int(self._clock.now().timestamp() * 1000)
        return f"TRX-{user_id}-{epoch_ms}-{secrets.token_hex(6)}"

    # Public operations

    @operation_result("Transaction created successfully")
    async def create_transaction(
        self,
        user_id: str,
        amount: Any,
        payment_method: Optional[PaymentMethod],
        type: TransactionType,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
        subscription_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        view = await self.execute_charge(
            user_id=user_id,
            amount=amount,
            payment_method=payment_method,
            type=type,
            description=description,
            metadata=metadata,
            subscription_id=subscription_id,
            reference=reference,
        )
        return view.as_payload()

    @operation_result("Transaction created successfully")
    async def charge_stored_method(
        self,
        subscription_id: str,
        user_id: str,
        amount: Any,
        type: TransactionType,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        view = await self.execute_stored_charge(
            subscription_id=subscription_id,
            user_id=user_id,
            amount=amount,
            type=type,
            description=description,
            metadata=metadata,
            reference=reference,
        )
        return view.as_payload()

    @operation_result("Transaction verified successfully")
    async def verify_transaction(self, reference: str) -> Dict[str, Any]:
        return (await self.execute_verification(reference)).as_payload()

    @operation_result("Payment method verified successfully")
    async def verify_payment_method(
        self,
        user_id: str,
        payment_method: Optional[PaymentMethod],
        description: str = "Payment method verification",
        metadata: Optional[Mapping[str, Any]] = None,
        subscription_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        view = await self.execute_card_verification(
            user_id=user_id,
            payment_method=payment_method,
            description=description,
            metadata=metadata,
            subscription_id=subscription_id,
        )
        return view.as_payload()

    @operation_result("Refund processed successfully")
    async def process_refund(self, transaction_id: str, reason: str) -> Dict[str, Any]:
        return (await self.execute_refund(transaction_id, reason)).as_payload()

    @operation_result("Transaction retrieved successfully")
    async def get_transaction(self, transaction_id: str) -> Dict[str, Any]:
        return self.fetch(transaction_id).as_payload()

    @operation_result("Transactions retrieved successfully")
    async def list_transactions(self, transaction_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return [self._view(item).as_payload() for item in self._repository.list(list(transaction_ids))]

    # Internals

    def _reserve(
        self,
        *,
        user_id: str,
        amount: Decimal,
        type: TransactionType,
        description: str,
        metadata: Optional[Mapping[str, Any]],
        subscription_id: Optional[str],
        reference: str,
        currency: Optional[str] = None,
    ) -> Transaction:
        now = self._clock.now()
        transaction = Transaction(
            id=uuid4().hex,
            type=type,
            reference=reference,
            user_id=user_id,
            subscription_id=subscription_id,
            amount=amount,
            unit_amount=_to_minor(amount),
            fee=_ZERO,
            unit_fee=0,
            currency=currency or self._currency,
            status=TransactionStatus.PENDING,
            description=description,
            metadata=dict(metadata or {}),
            encrypted_payload=None,
            version=1,
            created_at=now,
            updated_at=now,
        )
        return self._repository.reserve(transaction)

    def _finalize(
        self,
        transaction: Transaction,
        status: TransactionStatus,
        sensitive: SensitivePayload,
        *,
        fee: Optional[Decimal] = None,
    ) -> Transaction:
        expected_version = transaction.version
        transaction.status = status
        if fee is not None:
            transaction.fee = fee
            transaction.unit_fee = _to_minor(fee)
        transaction.encrypted_payload = self._cipher.seal(sensitive.as_dict())
        transaction.version = expected_version + 1
        transaction.updated_at = self._clock.now()
        self._repository.update(transaction, expected_version=expected_version)
        record_transaction(transaction.type.value, status.value)
        return transaction

    def _fail(self, transaction: Transaction, sensitive: SensitivePayload, exc: GatewayError) -> None:
        sensitive.error = exc.message
        self._finalize(transaction, TransactionStatus.FAILED, sensitive)
        logger.warning(
            "Gateway call failed",
            extra={"reference": transaction.reference, "retryable": exc.retryable, "error": exc.message},
        )

    async def _verify_sent_charge(
        self, sensitive: SensitivePayload, payment_method: PaymentMethod
    ) -> TransactionStatus:
        verification = await self._retry.call(
            "verify_charge",
            lambda: self._gateway.verify_charge(sensitive.provider_ref),
        )
        sensitive.provider_data.append(dict(verification.raw))
        if verification.card is not None:
            sensitive.card = self._card_payload(verification.card, payment_method)
        return verification.status

    async def _settle_unanswered_charge(
        self,
        transaction: Transaction,
        sensitive: SensitivePayload,
        payment_method: PaymentMethod,
        exc: GatewayError,
    ) -> TransactionStatus:
        """Resolve a charge whose request may have reached the processor without an answer.

        The processor is asked about the reference before anything is decided.
        A successful or pending answer is kept. A definite failure (a decline,
        or a permanent error such as an unknown reference) marks the row
        FAILED. If the processor cannot be reached at all the row stays PENDING,
        so the reference cannot be re-armed until ``verify_transaction`` or the
        webhook settles it. ``exc`` is raised in every case except a
        successful or pending answer.
        """

        sensitive.provider_ref = transaction.reference
        sensitive.error = exc.message
        try:
            status = await self._verify_sent_charge(sensitive, payment_method)
        except GatewayError as verify_exc:
            if not verify_exc.retryable:
                self._fail(transaction, sensitive, exc)
                raise exc
            self._finalize(transaction, TransactionStatus.PENDING, sensitive)
            logger.warning(
                "Charge outcome unknown; holding reference for verification",
                extra={"reference": transaction.reference, "error": verify_exc.message},
            )
            raise exc

        if status not in (TransactionStatus.SUCCESSFUL, TransactionStatus.PENDING):
            self._fail(transaction, sensitive, exc)
            raise exc
        sensitive.error = None
        logger.info(
            "Unanswered charge resolved by verification",
            extra={"reference": transaction.reference, "status": status.value},
        )
        return status

    def _unseal_or_empty(self, transaction: Transaction) -> SensitivePayload:
        if not transaction.encrypted_payload:
            return SensitivePayload()
        try:
            return SensitivePayload.from_dict(self._cipher.unseal(transaction.encrypted_payload))
        except EncryptionError:
            logger.warning("Discarding unreadable provider data", extra={"reference": transaction.reference})
            return SensitivePayload()

    @staticmethod
    def _card_payload(card: Optional[GatewayCard], payment_method: PaymentMethod) -> Optional[Dict[str, Any]]:
        if card is not None:
            return card.as_payload()
        if payment_method.card is not None:
            return {"last4": payment_method.card.last4}
        return None

    def _view(self, transaction: Transaction, *, authorization_url: Optional[str] = None) -> TransactionView:
        card = None
        if transaction.encrypted_payload:
            try:
                sensitive = SensitivePayload.from_dict(self._cipher.unseal(transaction.encrypted_payload))
            except EncryptionError:
                logger.warning("Omitting card details", extra={"reference": transaction.reference})
            else:
                if sensitive.card:
                    card = CardDisplay(last4=sensitive.card.get("last4"), brand=sensitive.card.get("brand"))
        return TransactionView(
            id=transaction.id,
            type=transaction.type,
            reference=transaction.reference,
            user_id=transaction.user_id,
            subscription_id=transaction.subscription_id,
            amount=transaction.amount,
            fee=transaction.fee,
            currency=transaction.currency,
            status=transaction.status,
            description=transaction.description,
            metadata=dict(transaction.metadata),
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
            card=card,
            authorization_url=authorization_url,
        )
