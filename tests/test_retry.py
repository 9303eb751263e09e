import asyncio

import pytest

from billing.errors import GatewayError
from billing.payments.retry import RetryPolicy


class _Flaky:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or GatewayError("connection reset", retryable=True)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


def _recording_sleep(delays):
    async def _sleep(delay):
        delays.append(delay)

    return _sleep


async def test_transient_failures_are_retried_with_exponential_backoff():
    delays = []
    operation = _Flaky(failures=2)

    result = await RetryPolicy(attempts=3, base_delay=1.0).call("charge", operation, sleep=_recording_sleep(delays))

    assert result == "ok"
    assert operation.calls == 3
    assert delays == [1.0, 2.0]


async def test_exhausted_attempts_raise_retryable_error():
    operation = _Flaky(failures=10)

    with pytest.raises(GatewayError) as excinfo:
        await RetryPolicy(attempts=3, base_delay=0).call("charge", operation, sleep=_recording_sleep([]))

    assert operation.calls == 3
    assert excinfo.value.retryable is True
    assert "failed after 3 attempts" in excinfo.value.message


async def test_permanent_failures_are_not_retried():
    operation = _Flaky(failures=10, error=GatewayError("card declined"))

    with pytest.raises(GatewayError) as excinfo:
        await RetryPolicy(attempts=3, base_delay=0).call("charge", operation, sleep=_recording_sleep([]))

    assert operation.calls == 1
    assert excinfo.value.retryable is False
    assert excinfo.value.message == "card declined"


async def test_slow_attempts_time_out_and_count_as_transient():
    calls = []

    async def slow():
        calls.append(1)
        await asyncio.sleep(1)

    with pytest.raises(GatewayError) as excinfo:
        await RetryPolicy(attempts=2, base_delay=0, timeout=0.01).call("verify", slow, sleep=_recording_sleep([]))

    assert len(calls) == 2
    assert excinfo.value.retryable is True
    assert "timed out" in excinfo.value.message
