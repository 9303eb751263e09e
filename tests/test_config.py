import pytest

from billing.config import DEFAULT_PAYSTACK_URL, Settings

_KEYS = (
    "BILLING_CIPHER_SECRET",
    "BILLING_DB_PATH",
    "PAYSTACK_SECRET_KEY",
    "PAYSTACK_BASE_URL",
    "PAYSTACK_CALLBACK_URL",
    "PAYSTACK_WEBHOOK_SECRET",
    "BILLING_CURRENCY",
    "BILLING_GATEWAY_TIMEOUT",
    "BILLING_RETRY_ATTEMPTS",
    "BILLING_RETRY_BASE_DELAY",
    "BILLING_REMINDER_DAYS",
    "BILLING_GRACE_DAYS",
    "BILLING_WEBHOOK_RATE_LIMIT",
    "BILLING_NOTIFY_WEBHOOK",
)


@pytest.fixture()
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    clean_env.setenv("BILLING_CIPHER_SECRET", "s3cret")

    settings = Settings.from_env()

    assert settings.cipher_secret == "s3cret"
    assert settings.paystack_base_url == DEFAULT_PAYSTACK_URL
    assert settings.currency == "NGN"
    assert settings.retry_attempts == 3
    assert settings.reminder_days == 3
    assert settings.grace_days == 7
    assert settings.notify_webhook_url is None


def test_overrides(clean_env):
    clean_env.setenv("BILLING_CIPHER_SECRET", "s3cret")
    clean_env.setenv("PAYSTACK_BASE_URL", "https://paystack.test/")
    clean_env.setenv("BILLING_CURRENCY", "ghs")
    clean_env.setenv("BILLING_RETRY_ATTEMPTS", "5")
    clean_env.setenv("BILLING_RETRY_BASE_DELAY", "0.5")
    clean_env.setenv("BILLING_NOTIFY_WEBHOOK", "https://hooks.test")

    settings = Settings.from_env()

    assert settings.paystack_base_url == "https://paystack.test"
    assert settings.currency == "GHS"
    assert settings.retry_attempts == 5
    assert settings.retry_base_delay == 0.5
    assert settings.notify_webhook_url == "https://hooks.test"


def test_missing_cipher_secret_is_fatal(clean_env):
    with pytest.raises(ValueError, match="BILLING_CIPHER_SECRET"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("BILLING_RETRY_ATTEMPTS", "three"),
        ("BILLING_RETRY_ATTEMPTS", "0"),
        ("BILLING_GATEWAY_TIMEOUT", "-1"),
    ],
)
def test_invalid_numbers_are_rejected(clean_env, key, value):
    clean_env.setenv("BILLING_CIPHER_SECRET", "s3cret")
    clean_env.setenv(key, value)

    with pytest.raises(ValueError, match=key):
        Settings.from_env()
