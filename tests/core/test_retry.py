import threading

import pytest

from ipwarden.core.errors import AddressFamilyMismatch, ApplyFailed, Cancelled
from ipwarden.core.retry import RetryPolicy


class Flaky:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or ApplyFailed("boom")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "done"


def test_retries_until_success():
    func = Flaky(2)
    assert RetryPolicy(attempts=3, delay=0).call(func) == "done"
    assert func.calls == 3


def test_raises_last_error_when_exhausted():
    func = Flaky(5)
    with pytest.raises(ApplyFailed):
        RetryPolicy(attempts=2, delay=0).call(func)
    assert func.calls == 2


def test_never_retries_family_mismatch():
    func = Flaky(5, AddressFamilyMismatch("v4 vs v6"))
    with pytest.raises(AddressFamilyMismatch):
        RetryPolicy(attempts=4, delay=0).call(func)
    assert func.calls == 1


def test_retry_predicate():
    func = Flaky(5)
    with pytest.raises(ApplyFailed):
        RetryPolicy(attempts=4, delay=0, retry_on=lambda e: False).call(func)
    assert func.calls == 1


def test_cancel_before_first_attempt():
    cancel = threading.Event()
    cancel.set()
    func = Flaky(0)
    with pytest.raises(Cancelled):
        RetryPolicy().call(func, cancel)
    assert func.calls == 0


def test_cancel_during_backoff_wakes_up():
    cancel = threading.Event()

    def fail_and_cancel():
        cancel.set()
        raise ApplyFailed("boom")

    with pytest.raises(Cancelled):
        RetryPolicy(attempts=3, delay=30).call(fail_and_cancel, cancel)


def test_from_config():
    policy = RetryPolicy.from_config({"attempts": 5, "delay_seconds": 0.5, "backoff": 2})
    assert (policy.attempts, policy.delay, policy.backoff) == (5, 0.5, 2.0)
    assert RetryPolicy.from_config({}).attempts == 3


@pytest.mark.parametrize("attempts", [0, -3])
def test_non_positive_attempts_still_run_once(attempts):
    func = Flaky(5)
    with pytest.raises(ApplyFailed):
        RetryPolicy(attempts=attempts, delay=0).call(func)
    assert func.calls == 1
    assert RetryPolicy(attempts=attempts, delay=0).call(Flaky(0)) == "done"
