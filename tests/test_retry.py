import pytest

from pdc.errors import OrchestrationUnavailable, PoolNotFound
from pdc.retry import call_with_retry


def test_retries_transient_failures_then_succeeds():
    slept = []
    attempts = {"n": 0}

    def flaky():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise OrchestrationUnavailable("down")
        return "ok"

    assert call_with_retry(flaky, attempts=4, base_delay_s=0.1, max_delay_s=1.0, sleep=slept.append) == "ok"
    assert attempts["n"] == 3
    assert slept == [0.1, 0.2]


def test_backoff_is_exponential_and_capped():
    slept = []

    def down():
        raise OrchestrationUnavailable("down")

    with pytest.raises(OrchestrationUnavailable):
        call_with_retry(down, attempts=5, base_delay_s=0.5, max_delay_s=3.0, sleep=slept.append)
    assert slept == [0.5, 1.0, 2.0, 3.0]


def test_gives_up_after_attempt_limit_and_reports_each_retry():
    calls = []
    retried = []

    def down():
        calls.append(1)
        raise OrchestrationUnavailable("down")

    with pytest.raises(OrchestrationUnavailable, match="down"):
        call_with_retry(
            down,
            attempts=3,
            base_delay_s=0,
            sleep=lambda _s: None,
            on_retry=lambda attempt, e: retried.append((attempt, type(e).__name__)),
        )
    assert len(calls) == 3
    assert retried == [(1, "OrchestrationUnavailable"), (2, "OrchestrationUnavailable")]


def test_pool_not_found_is_not_retried():
    calls = []

    def missing():
        calls.append(1)
        raise PoolNotFound("nope")

    with pytest.raises(PoolNotFound):
        call_with_retry(missing, attempts=5, base_delay_s=0, sleep=lambda _s: None)
    assert len(calls) == 1


def test_arguments_are_forwarded():
    assert call_with_retry(lambda a, b=0: a + b, 2, b=3, attempts=1, sleep=lambda _s: None) == 5
