from datetime import datetime, timezone

from billing.payments.models import TransactionStatus
from billing.scheduler.__main__ import main
from conftest import declined

RENEWAL_DAY = datetime(2026, 2, 15, 1, 0, tzinfo=timezone.utc)


def _outcomes(report):
    return [(outcome.subscription_id, outcome.action) for outcome in report.outcomes]


async def test_due_subscription_is_renewed_once(services, clock, notifier, gateway, make_plan, card_method):
    plan = await make_plan()
    created = await services.manager.create_subscription("user-1", plan["id"], card_method)
    subscription_id = created.data["id"]
    clock.set(RENEWAL_DAY)

    first = await services.scheduler.run_sweep()
    second = await services.scheduler.run_sweep()

    assert _outcomes(first) == [(subscription_id, "renewed")]
    assert first.exit_code == 0
    assert _outcomes(second) == []
    renewed = (await services.manager.get_subscription(subscription_id)).data
    assert renewed["billing"]["start_date"] == "2026-02-15T09:30:00+00:00"
    assert renewed["billing"]["paid_date"] == RENEWAL_DAY.isoformat()
    assert renewed["billing"]["due_date"] == "2026-03-15T09:30:00+00:00"
    assert len(gateway.charges) == 2
    assert gateway.charges[-1][1].authorization_code == "AUTH_1"
    assert notifier.kinds() == ["renewal-success"]


async def test_failed_renewal_expires_and_notifies(services, clock, notifier, gateway, make_plan, card_method):
    plan = await make_plan()
    created = await services.manager.create_subscription("user-1", plan["id"], card_method)
    clock.set(RENEWAL_DAY)
    gateway.charge_outcomes = [declined()]

    report = await services.scheduler.run_sweep()

    assert _outcomes(report) == [(created.data["id"], "expired")]
    assert report.exit_code == 0
    expired = (await services.manager.get_subscription(created.data["id"])).data
    assert expired["status"] == "expired"
    assert notifier.kinds() == ["renewal-failure"]
    assert notifier.notifications[0].payload["reason"] == "insufficient funds"


async def test_past_due_subscriptions_expire(services, clock, make_plan, card_method):
    plan = await make_plan()
    created = await services.manager.create_subscription("user-1", plan["id"], card_method)
    clock.set(datetime(2026, 2, 18, 1, 0, tzinfo=timezone.utc))

    report = await services.scheduler.run_sweep()

    assert _outcomes(report) == [(created.data["id"], "expired")]
    assert report.outcomes[0].detail == "Payment overdue"


async def test_reminder_is_sent_days_before_due(services, clock, notifier, make_plan, card_method):
    plan = await make_plan()
    created = await services.manager.create_subscription("user-1", plan["id"], card_method)
    clock.set(datetime(2026, 2, 12, 8, 0, tzinfo=timezone.utc))

    report = await services.scheduler.run_sweep()
    again = await services.scheduler.run_sweep()

    assert _outcomes(report) == [(created.data["id"], "reminder-sent")]
    assert _outcomes(again) == []
    assert notifier.kinds() == ["expiry-reminder"]
    assert notifier.notifications[0].payload["amount"] == "10.00"
    assert notifier.notifications[0].payload["days_remaining"] == 3


async def test_scheduled_downgrade_applies_before_renewal(services, clock, gateway, make_plan, card_method):
    basic = await make_plan(name="Basic", monthly="10.00", yearly="100.00")
    pro = await make_plan(name="Pro", monthly="25.00", yearly="250.00")
    created = await services.manager.create_subscription("user-1", pro["id"], card_method)
    await services.manager.change_plan(created.data["id"], basic["id"])
    clock.set(RENEWAL_DAY)

    report = await services.scheduler.run_sweep()

    subscription_id = created.data["id"]
    assert _outcomes(report) == [(subscription_id, "downgraded"), (subscription_id, "renewed")]
    renewed = (await services.manager.get_subscription(subscription_id)).data
    assert renewed["plan_id"] == basic["id"]
    assert renewed["pending_downgrade"] is False
    amount, _, _ = gateway.charges[-1]
    assert str(amount) == "10.00"


async def test_trial_conversion_with_method_on_file(services, clock, notifier, make_plan, card_method):
    plan = await make_plan(name="Trial", trial_active=True, trial_days=14)
    created = await services.manager.create_subscription("user-1", plan["id"], card_method)
    await services.manager.update_payment_method(created.data["id"], card_method)
    clock.set(datetime(2026, 1, 29, 2, 0, tzinfo=timezone.utc))

    report = await services.scheduler.run_sweep()

    assert _outcomes(report) == [(created.data["id"], "renewed")]
    assert report.outcomes[0].detail == "trial converted"
    converted = (await services.manager.get_subscription(created.data["id"])).data
    assert converted["status"] == "active"
    assert notifier.kinds() == ["renewal-success"]


async def test_trial_without_method_on_file_expires(services, clock, gateway, make_plan, card_method):
    plan = await make_plan(name="Trial", trial_active=True, trial_days=14)
    created = await services.manager.create_subscription("user-1", plan["id"], card_method)
    clock.set(datetime(2026, 1, 29, 2, 0, tzinfo=timezone.utc))

    report = await services.scheduler.run_sweep()

    assert _outcomes(report) == [(created.data["id"], "expired")]
    assert gateway.charges == []


async def test_missed_trial_end_is_expired_on_a_later_sweep(services, clock, gateway, make_plan, card_method):
    plan = await make_plan(name="Trial", trial_active=True, trial_days=14)
    created = await services.manager.create_subscription("user-1", plan["id"], card_method)
    clock.set(datetime(2026, 1, 31, 2, 0, tzinfo=timezone.utc))

    report = await services.scheduler.run_sweep()
    again = await services.scheduler.run_sweep()
    resubscribed = await services.manager.create_subscription("user-1", plan["id"], card_method)

    assert _outcomes(report) == [(created.data["id"], "expired")]
    assert report.outcomes[0].detail == "Trial ended"
    assert _outcomes(again) == []
    assert resubscribed.data["status"] == "active"
    assert len(gateway.charges) == 1


async def test_item_failures_are_isolated(services, clock, gateway, make_plan, card_method, monkeypatch):
    plan = await make_plan()
    first = await services.manager.create_subscription("user-1", plan["id"], card_method)
    second = await services.manager.create_subscription("user-2", plan["id"], card_method)
    clock.set(RENEWAL_DAY)
    original = services.manager.renew_due_subscription

    async def _flaky(subscription_id):
        if subscription_id == first.data["id"]:
            raise RuntimeError("boom")
        return await original(subscription_id)

    monkeypatch.setattr(services.manager, "renew_due_subscription", _flaky)

    report = await services.scheduler.run_sweep()

    actions = dict(_outcomes(report))
    assert actions == {first.data["id"]: "error", second.data["id"]: "renewed"}
    assert report.exit_code == 0


async def test_partition_query_failure_is_a_system_error(services, clock, monkeypatch):
    def _broken(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(services.subscription_repo, "due_before", _broken)

    report = await services.scheduler.run_sweep()

    assert report.exit_code == 1
    assert report.system_error == "past_due: database unavailable"
    assert report.as_payload()["system_error"] == report.system_error


async def test_pending_renewal_charge_is_not_settled_as_renewed(services, clock, gateway, make_plan, card_method):
    plan = await make_plan()
    created = await services.manager.create_subscription("user-1", plan["id"], card_method)
    clock.set(RENEWAL_DAY)
    gateway.charge_outcomes = [TransactionStatus.PENDING]
    gateway.verify_outcomes = [TransactionStatus.PENDING]

    report = await services.scheduler.run_sweep()

    assert _outcomes(report) == [(created.data["id"], "expired")]


def test_command_line_sweep(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("BILLING_CIPHER_SECRET", "cli-secret")
    monkeypatch.setenv("BILLING_DB_PATH", str(tmp_path / "cli.sqlite3"))
    monkeypatch.setenv("PAYSTACK_SECRET_KEY", "sk_test_cli")

    assert main() == 0
    assert capsys.readouterr().out == ""


def test_command_line_sweep_fails_without_configuration(monkeypatch):
    monkeypatch.delenv("BILLING_CIPHER_SECRET", raising=False)

    assert main() == 1
