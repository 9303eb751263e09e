import pytest

from billing.security import RateLimiter, RateLimitExceeded


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_limit_applies_per_key_and_window_slides():
    clock = _Clock()
    limiter = RateLimiter(limit=2, window_seconds=10, time_source=clock)

    assert limiter.allow("10.0.0.1")
    assert limiter.allow("10.0.0.1")
    assert not limiter.allow("10.0.0.1")
    assert limiter.allow("10.0.0.2")

    clock.now = 10.5
    assert limiter.allow("10.0.0.1")


def test_retry_after_reports_time_until_free_slot():
    clock = _Clock()
    limiter = RateLimiter(limit=1, window_seconds=30, time_source=clock)
    limiter.allow("client")
    clock.now = 12

    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.assert_allow("client")

    assert excinfo.value.retry_after == pytest.approx(18)
    assert limiter.retry_after("someone-else") == 0.0


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        RateLimiter(limit=0)
