import hashlib
import hmac
import json

import pytest

from billing.payments.models import TransactionStatus
from billing.security import RateLimiter

CARD = {
    "email": "ada@example.com",
    "type": "card",
    "card": {"number": "4084084084084081", "cvv": "408", "expiry_month": "12", "expiry_year": "2030"},
}


def _create_plan(client, **overrides):
    payload = {"name": "Basic", "monthly_price": "10.00", "yearly_price": "100.00"}
    payload.update(overrides)
    response = client.post("/api/v1/billing/plans", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _subscribe(client, plan_id, user_id="user-1", **overrides):
    payload = {"user_id": user_id, "plan_id": plan_id, "payment_method": CARD}
    payload.update(overrides)
    return client.post("/api/v1/billing/subscriptions", json=payload)


def _signed(body: dict, secret: str = "test-webhook-secret") -> tuple[bytes, dict[str, str]]:
    raw = json.dumps(body, separators=(",", ":")).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw, hashlib.sha512).hexdigest()
    return raw, {"Content-Type": "application/json", "x-paystack-signature": signature}


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"status": "ok"}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "billing_transactions_total" in metrics.text


def test_plan_crud_round(client):
    plan = _create_plan(client, trial_active=True, trial_days=7, currency="ngn")
    assert plan["currency"] == "NGN"

    listed = client.get("/api/v1/billing/plans").json()["data"]
    trials = client.get("/api/v1/billing/plans/trials").json()["data"]
    patched = client.patch(f"/api/v1/billing/plans/{plan['id']}", json={"monthly_price": "12.00"})
    disabled = client.post(f"/api/v1/billing/plans/{plan['id']}/disable")
    enabled = client.post(f"/api/v1/billing/plans/{plan['id']}/enable")
    deleted = client.delete(f"/api/v1/billing/plans/{plan['id']}")
    missing = client.get(f"/api/v1/billing/plans/{plan['id']}")

    assert [item["id"] for item in listed] == [plan["id"]]
    assert [item["id"] for item in trials] == [plan["id"]]
    assert patched.json()["data"]["pricing"]["monthly"] == "12.00"
    assert disabled.json()["data"]["is_enabled"] is False
    assert enabled.json()["data"]["is_enabled"] is True
    assert deleted.status_code == 200
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "not_found"


def test_duplicate_plan_returns_conflict(client):
    _create_plan(client)

    response = client.post(
        "/api/v1/billing/plans", json={"name": "Basic", "monthly_price": "1", "yearly_price": "10"}
    )

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "conflict"


def test_compare_stats_and_trial_eligibility(client):
    basic = _create_plan(client)
    pro = _create_plan(client, name="Pro", monthly_price="20.00", yearly_price="200.00", trial_active=True, trial_days=3)

    comparison = client.get("/api/v1/billing/plans/compare", params={"base": basic["id"], "other": pro["id"]})
    eligibility = client.get(f"/api/v1/billing/plans/{pro['id']}/trial-eligibility/user-1")
    stats = client.get("/api/v1/billing/plans/stats")

    assert comparison.json()["data"]["monthly_percentage"] == "100.00"
    assert eligibility.json()["data"]["is_eligible"] is True
    assert {item["name"] for item in stats.json()["data"]} == {"Basic", "Pro"}


def test_subscription_lifecycle_over_http(client, gateway):
    plan = _create_plan(client)

    created = _subscribe(client, plan["id"])
    assert created.status_code == 201, created.text
    subscription = created.json()["data"]
    base = f"/api/v1/billing/subscriptions/{subscription['id']}"

    duplicate = _subscribe(client, plan["id"])
    fetched = client.get(base)
    access = client.get(f"{base}/access")
    active = client.get("/api/v1/billing/subscriptions/users/user-1/active")
    cancelled = client.post(f"{base}/cancel", json={"reason": "moving on"})
    live = client.get("/api/v1/billing/subscriptions/users/user-1")
    everything = client.get("/api/v1/billing/subscriptions/users/user-1", params={"include_inactive": True})
    renewed = client.post(f"{base}/renew", json={"payment_method": CARD})

    assert duplicate.status_code == 409
    assert fetched.json()["data"]["status"] == "active"
    assert access.json()["data"]["has_access"] is True
    assert active.json()["data"]["has_active_subscription"] is True
    assert cancelled.json()["data"]["status"] == "cancelled"
    assert live.json()["data"] == []
    assert len(everything.json()["data"]) == 1
    assert renewed.json()["data"]["status"] == "active"
    assert len(gateway.charges) == 2


def test_change_plan_payment_method_and_refund_over_http(client, gateway):
    basic = _create_plan(client)
    pro = _create_plan(client, name="Pro", monthly_price="20.00", yearly_price="200.00")
    subscription = _subscribe(client, basic["id"]).json()["data"]
    base = f"/api/v1/billing/subscriptions/{subscription['id']}"

    upgraded = client.post(f"{base}/change-plan", json={"plan_id": pro["id"]})
    updated = client.put(f"{base}/payment-method", json={"payment_method": CARD})
    refunded = client.post(f"{base}/refund", json={"reason": "changed mind"})

    assert upgraded.status_code == 200, upgraded.text
    assert upgraded.json()["data"]["plan_id"] == pro["id"]
    assert updated.json()["data"]["metadata"][0]["last4"] == "4081"
    body = refunded.json()["data"]
    assert body["subscription"]["status"] == "cancelled"
    assert body["refund"]["amount"] == "10.00"
    assert len(gateway.refunds) == 1


def test_declined_payment_maps_to_bad_gateway(client, gateway):
    plan = _create_plan(client)
    gateway.charge_outcomes = [TransactionStatus.FAILED]

    response = _subscribe(client, plan["id"])

    assert response.status_code == 502
    assert response.json()["detail"]["code"] == "gateway_error"


def test_request_validation(client):
    plan = _create_plan(client)

    bad_card = _subscribe(
        client,
        plan["id"],
        payment_method={**CARD, "card": {**CARD["card"], "number": "123"}},
    )
    bad_frequency = _subscribe(client, plan["id"], frequency="weekly")

    assert bad_card.status_code == 422
    assert bad_frequency.status_code == 422


def test_transactions_are_listed_without_secrets(client):
    plan = _create_plan(client)
    subscription = _subscribe(client, plan["id"]).json()["data"]
    transaction_id = subscription["transaction_ids"][0]

    fetched = client.get(f"/api/v1/billing/transactions/{transaction_id}")
    listed = client.get("/api/v1/billing/transactions", params={"ids": [transaction_id, "missing"]})

    data = fetched.json()["data"]
    assert data["status"] == "successful"
    assert data["card"] == {"last4": "4081", "brand": "visa"}
    assert "encrypted_payload" not in data
    assert "provider_ref" not in json.dumps(data)
    assert [item["id"] for item in listed.json()["data"]] == [transaction_id]
    assert client.get("/api/v1/billing/transactions/missing").status_code == 404


def test_webhook_settles_pending_transaction(client, gateway):
    plan = _create_plan(client)
    gateway.charge_outcomes = [TransactionStatus.PENDING]
    gateway.verify_outcomes = [TransactionStatus.PENDING, TransactionStatus.SUCCESSFUL]
    response = _subscribe(client, plan["id"])
    assert response.status_code == 502
    pending_reference = gateway.charges[0][2]

    raw, headers = _signed({"event": "charge.success", "data": {"reference": pending_reference}})
    processed = client.post("/api/v1/billing/webhooks/paystack", content=raw, headers=headers)
    verified = client.post(f"/api/v1/billing/transactions/verify/{pending_reference}")

    assert processed.json() == {"status": "processed", "reference": pending_reference}
    assert verified.json()["data"]["status"] == "successful"


def test_webhook_ignores_unknown_events_and_references(client):
    raw, headers = _signed({"event": "transfer.success", "data": {"reference": "x"}})
    unknown_event = client.post("/api/v1/billing/webhooks/paystack", content=raw, headers=headers)
    raw, headers = _signed({"event": "charge.success", "data": {"reference": "missing"}})
    unknown_reference = client.post("/api/v1/billing/webhooks/paystack", content=raw, headers=headers)

    assert unknown_event.json() == {"status": "ignored"}
    assert unknown_reference.json() == {"status": "ignored"}


@pytest.mark.parametrize(
    ("headers", "detail"),
    [
        ({}, "missing_signature"),
        ({"x-paystack-signature": "deadbeef"}, "invalid_signature"),
    ],
)
def test_webhook_rejects_bad_signatures(client, headers, detail):
    response = client.post(
        "/api/v1/billing/webhooks/paystack",
        content=b'{"event":"charge.success"}',
        headers={"Content-Type": "application/json", **headers},
    )

    assert response.status_code == 401
    assert response.json()["detail"] == detail


def test_webhook_is_rate_limited(client):
    client.app.state.webhook_rate_limiter = RateLimiter(limit=2, window_seconds=60.0)
    raw, headers = _signed({"event": "noop", "data": {}})

    responses = [client.post("/api/v1/billing/webhooks/paystack", content=raw, headers=headers) for _ in range(3)]

    assert [response.status_code for response in responses] == [200, 200, 429]
    assert int(responses[-1].headers["Retry-After"]) >= 1
