import sqlite3
from decimal import Decimal

from billing.ledger.models import TransactionType
from billing.payments.models import PaymentMethod, TransactionStatus
from conftest import declined, transient


async def _charge(services, card_method, **overrides):
    arguments = {
        "user_id": "user-1",
        "amount": Decimal("20.00"),
        "payment_method": card_method,
        "type": TransactionType.subscription,
        "description": "Test charge",
    }
    arguments.update(overrides)
    return await services.ledger.create_transaction(**arguments)


async def test_successful_charge_records_fee_and_masked_card(services, gateway, card_method):
    result = await _charge(services, card_method)

    assert result.ok
    data = result.data
    assert data["status"] == "successful"
    assert data["amount"] == "20.00"
    assert data["fee"] == "0.30"
    assert data["card"] == {"last4": "4081", "brand": "visa"}
    assert data["reference"].startswith("TRX-user-1-")
    assert "encrypted_payload" not in data
    assert len(gateway.charges) == 1


async def test_sensitive_payload_is_encrypted_at_rest(services, settings, card_method):
    result = await _charge(services, card_method)

    connection = sqlite3.connect(settings.database_path)
    try:
        row = connection.execute(
            "SELECT encrypted_payload, unit_amount FROM transactions WHERE id = ?", (result.data["id"],)
        ).fetchone()
    finally:
        connection.close()

    ciphertext, unit_amount = row
    assert unit_amount == 2000
    assert "4084084084084081" not in ciphertext
    assert "AUTH_" not in ciphertext
    sealed = services.cipher.unseal(ciphertext)
    assert sealed["provider_ref"] == f"PSK-{result.data['reference']}"
    assert "number" not in (sealed["card"] or {})


async def test_invalid_amount_and_payment_method_are_rejected(services, gateway, card_method):
    zero = await _charge(services, card_method, amount=Decimal("0"))
    garbage = await _charge(services, card_method, amount="abc")
    no_email = await _charge(services, card_method, payment_method=PaymentMethod(email="", type="card"))

    assert zero.error and zero.message == "Invalid amount"
    assert garbage.error and garbage.code == 400
    assert no_email.error and no_email.message == "Invalid payment method"
    assert gateway.charges == []


async def test_reference_is_idempotent(services, gateway, card_method):
    first = await _charge(services, card_method, reference="ORDER-1")
    second = await _charge(services, card_method, reference="ORDER-1")

    assert first.ok
    assert second.error and second.error_code == "conflict"
    assert len(gateway.charges) == 1


async def test_transient_errors_are_retried_until_success(services, gateway, card_method):
    gateway.charge_outcomes = [transient(), transient()]

    result = await _charge(services, card_method)

    assert result.ok
    assert len(gateway.charges) == 3
    assert {key for _, _, key in gateway.charges} == {result.data["reference"]}


async def test_exhausted_retries_mark_transaction_failed(services, gateway, card_method):
    gateway.charge_outcomes = [transient(), transient(), transient()]
    gateway.verify_outcomes = [TransactionStatus.FAILED]

    result = await _charge(services, card_method, reference="ORDER-2")
    stored = services.transaction_repo.get_by_reference("ORDER-2")

    assert result.error and result.code == 502
    assert "failed after 3 attempts" in result.message
    assert gateway.verifications == ["ORDER-2"]
    assert stored.status is TransactionStatus.FAILED
    assert services.cipher.unseal(stored.encrypted_payload)["error"] == result.message


async def test_unanswered_charge_is_settled_by_verification(services, gateway, card_method):
    gateway.charge_outcomes = [transient(), transient(), transient()]

    result = await _charge(services, card_method, reference="ORDER-6")

    assert result.ok
    assert result.data["status"] == "successful"
    assert result.data["fee"] == "0.30"
    assert gateway.verifications == ["ORDER-6"]


async def test_unreachable_processor_holds_the_reference(services, gateway, card_method):
    gateway.charge_outcomes = [transient(), transient(), transient()]
    gateway.verify_outcomes = [transient(), transient(), transient()]

    result = await _charge(services, card_method, reference="ORDER-7")
    stored = services.transaction_repo.get_by_reference("ORDER-7")
    retried = await _charge(services, card_method, reference="ORDER-7")

    assert result.error and result.code == 502
    assert stored.status is TransactionStatus.PENDING
    assert retried.error and retried.error_code == "conflict"
    assert len(gateway.charges) == 3

    settled = await services.ledger.verify_transaction("ORDER-7")

    assert settled.data["status"] == "successful"
    assert gateway.verifications[-1] == "ORDER-7"


async def test_failed_reference_can_be_retried(services, gateway, card_method):
    gateway.charge_outcomes = [declined()]
    failed = await _charge(services, card_method, reference="ORDER-3")

    retried = await _charge(services, card_method, reference="ORDER-3")

    assert failed.error and failed.message == "insufficient funds"
    assert retried.ok and retried.data["status"] == "successful"
    assert len(gateway.charges) == 2


async def test_failed_reference_cannot_be_reused_for_a_different_charge(services, gateway, card_method):
    gateway.charge_outcomes = [declined()]
    await _charge(services, card_method, reference="SHARED")

    other_user = await _charge(services, card_method, user_id="user-2", reference="SHARED")
    other_amount = await _charge(services, card_method, amount=Decimal("99.00"), reference="SHARED")
    stored = services.transaction_repo.get_by_reference("SHARED")

    assert other_user.error and other_user.error_code == "conflict"
    assert other_amount.error and other_amount.error_code == "conflict"
    assert (stored.user_id, stored.amount, stored.status) == ("user-1", Decimal("20.00"), TransactionStatus.FAILED)
    assert len(gateway.charges) == 1


async def test_retried_reference_keeps_earlier_provider_data(services, gateway, card_method):
    gateway.charge_outcomes = [TransactionStatus.FAILED]
    await _charge(services, card_method, reference="ORDER-8")

    retried = await _charge(services, card_method, reference="ORDER-8")
    stored = services.transaction_repo.get_by_reference("ORDER-8")
    sealed = services.cipher.unseal(stored.encrypted_payload)

    assert retried.ok
    assert [entry["status"] for entry in sealed["provider_data"]] == ["failed", "successful"]
    assert sealed["error"] is None


async def test_declined_status_raises_and_persists_failure(services, gateway, card_method):
    gateway.charge_outcomes = [TransactionStatus.FAILED]

    result = await _charge(services, card_method, reference="ORDER-4")

    assert result.error and result.error_code == "gateway_error"
    assert services.transaction_repo.get_by_reference("ORDER-4").status is TransactionStatus.FAILED


async def test_pending_charge_is_verified_immediately(services, gateway, card_method):
    gateway.charge_outcomes = [TransactionStatus.PENDING]
    gateway.verify_outcomes = [TransactionStatus.SUCCESSFUL]

    result = await _charge(services, card_method)

    assert result.ok
    assert result.data["status"] == "successful"
    assert gateway.verifications == [f"PSK-{result.data['reference']}"]


async def test_verify_transaction_settles_pending_and_is_noop_once_verified(services, gateway, card_method):
    gateway.charge_outcomes = [TransactionStatus.PENDING]
    gateway.verify_outcomes = [TransactionStatus.PENDING, TransactionStatus.SUCCESSFUL]
    pending = await _charge(services, card_method)
    reference = pending.data["reference"]
    assert pending.data["status"] == "pending"

    settled = await services.ledger.verify_transaction(reference)
    again = await services.ledger.verify_transaction(reference)
    missing = await services.ledger.verify_transaction("nope")

    assert settled.data["status"] == "successful"
    assert settled.data["fee"] == "0.30"
    assert again.data["status"] == "successful"
    assert len(gateway.verifications) == 2
    assert missing.error and missing.code == 404


async def test_refund_creates_linked_refund_transaction(services, gateway, card_method):
    charge = await _charge(services, card_method, subscription_id="sub-1")

    refund = await services.ledger.process_refund(charge.data["id"], "duplicate charge")
    repeat = await services.ledger.process_refund(charge.data["id"], "again")

    assert refund.ok
    assert refund.data["type"] == "refund"
    assert refund.data["status"] == "refunded"
    assert refund.data["reference"] == f"REF-{charge.data['reference']}"
    assert refund.data["metadata"]["original_transaction_id"] == charge.data["id"]
    assert refund.data["subscription_id"] == "sub-1"
    assert gateway.refunds == [(f"PSK-{charge.data['reference']}", Decimal("20.00"), "duplicate charge")]
    assert repeat.error and repeat.error_code == "conflict"
    assert services.transaction_repo.get(charge.data["id"]).status is TransactionStatus.SUCCESSFUL


async def test_only_successful_charges_can_be_refunded(services, gateway, card_method):
    gateway.charge_outcomes = [TransactionStatus.FAILED]
    failed = await _charge(services, card_method, reference="ORDER-5")
    stored = services.transaction_repo.get_by_reference("ORDER-5")

    result = await services.ledger.process_refund(stored.id, "nope")

    assert failed.error
    assert result.error and result.code == 400


async def test_rejected_refund_is_recorded_as_failed(services, gateway, card_method):
    charge = await _charge(services, card_method)
    gateway.refund_outcomes = [TransactionStatus.FAILED]

    result = await services.ledger.process_refund(charge.data["id"], "customer request")
    stored = services.transaction_repo.get_by_reference(f"REF-{charge.data['reference']}")

    assert result.error and result.code == 502
    assert stored.status is TransactionStatus.FAILED


async def test_verify_payment_method_stores_reusable_authorization(services, gateway, card_method):
    result = await services.ledger.verify_payment_method("user-1", card_method, subscription_id="sub-9")

    method = services.ledger.stored_payment_method("sub-9")

    assert result.ok
    assert result.data["type"] == "payment-method-update"
    assert result.data["amount"] == "0.00"
    assert result.data["card"]["brand"] == "mastercard"
    assert method.authorization_code == "AUTH_VERIFIED"
    assert method.email == "ada@example.com"


async def test_stored_charge_without_method_on_file_fails(services, gateway):
    result = await services.ledger.charge_stored_method(
        "sub-none", "user-1", Decimal("10"), TransactionType.subscription, "Renewal"
    )

    assert result.error and result.code == 400
    assert gateway.charges == []


async def test_list_transactions_preserves_requested_order(services, card_method):
    first = await _charge(services, card_method)
    second = await _charge(services, card_method)

    listed = await services.ledger.list_transactions([second.data["id"], "missing", first.data["id"]])
    fetched = await services.ledger.get_transaction(first.data["id"])

    assert [item["id"] for item in listed.data] == [second.data["id"], first.data["id"]]
    assert fetched.data["reference"] == first.data["reference"]
