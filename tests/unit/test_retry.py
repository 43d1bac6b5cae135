from __future__ import annotations

from datetime import timedelta

import pytest

from decom_libs.retry import (
    DRAIN_RETRY_POLICY,
    JOB_COMPLETION_RETRY_POLICY,
    WORKLOADS_GONE_RETRY_POLICY,
    RetryPolicy,
)


def get_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts, interval=timedelta(seconds=1), per_attempt_timeout=timedelta(seconds=5)
    )


def test_run_returns_true_on_first_success():
    calls = []

    def attempt(timeout: timedelta) -> bool:
        calls.append(timeout)
        return True

    assert get_policy().run(attempt=attempt, description="test") is True
    assert calls == [timedelta(seconds=5)]


def test_run_retries_until_success():
    results = iter([False, False, True])

    assert get_policy(max_attempts=5).run(attempt=lambda _: next(results), description="test") is True


@pytest.mark.parametrize("max_attempts", [1, 3, 10])
def test_run_returns_false_after_exactly_max_attempts(max_attempts: int):
    calls = []

    def attempt(timeout: timedelta) -> bool:
        calls.append(timeout)
        return False

    assert get_policy(max_attempts=max_attempts).run(attempt=attempt, description="test") is False
    assert len(calls) == max_attempts


def test_run_propagates_unexpected_errors():
    def attempt(_: timedelta) -> bool:
        raise KeyboardInterrupt()

    with pytest.raises(KeyboardInterrupt):
        get_policy().run(attempt=attempt, description="test")


def test_run_logs_when_giving_up(caplog):
    get_policy(max_attempts=2).run(attempt=lambda _: False, description="Doing stuff")

    assert "Doing stuff: giving up after 2 attempts" in caplog.text


@pytest.mark.parametrize(
    "params",
    [
        {"max_attempts": 0, "interval": timedelta(seconds=1), "per_attempt_timeout": timedelta(seconds=1)},
        {"max_attempts": 1, "interval": timedelta(seconds=1), "per_attempt_timeout": timedelta(seconds=0)},
    ],
)
def test_invalid_policies_are_rejected(params):
    with pytest.raises(ValueError):
        RetryPolicy(**params)


def test_default_policies():
    assert (DRAIN_RETRY_POLICY.max_attempts, DRAIN_RETRY_POLICY.interval) == (3, timedelta(seconds=2))
    assert JOB_COMPLETION_RETRY_POLICY.max_attempts == 10
    assert JOB_COMPLETION_RETRY_POLICY.interval == timedelta(seconds=2)
    assert JOB_COMPLETION_RETRY_POLICY.per_attempt_timeout == timedelta(seconds=15)
    assert (WORKLOADS_GONE_RETRY_POLICY.max_attempts, WORKLOADS_GONE_RETRY_POLICY.interval) == (
        30,
        timedelta(seconds=10),
    )
    assert {
        policy.backoff_mode for policy in (DRAIN_RETRY_POLICY, JOB_COMPLETION_RETRY_POLICY, WORKLOADS_GONE_RETRY_POLICY)
    } == {"constant"}
