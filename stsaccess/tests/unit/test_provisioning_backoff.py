from __future__ import annotations

from stsaccess.core.config import DEFAULT_BACKOFF_SCHEDULE_S
from stsaccess.providers.provisioning.base import (
    ERROR_NOT_CONFIGURED,
    ERROR_RATE_LIMITED,
    ERROR_TIMEOUT,
)
from stsaccess.services.provisioning.retry import BackoffPolicy, decide_retry


def test_default_schedule_escalates() -> None:
    policy = BackoffPolicy.build(DEFAULT_BACKOFF_SCHEDULE_S, max_attempts=5)
    assert policy.schedule_s == (30, 120, 600, 1800, 3600)
    assert [policy.delay_for(k) for k in range(1, 6)] == [30, 120, 600, 1800, 3600]


def test_schedule_is_normalized_non_decreasing() -> None:
    policy = BackoffPolicy.build([60, 10, 300, 200], max_attempts=4)
    assert policy.schedule_s == (60, 60, 300, 300)


def test_last_delay_repeats_past_schedule_end() -> None:
    policy = BackoffPolicy.build([5, 10], max_attempts=6)
    assert [policy.delay_for(k) for k in range(1, 6)] == [5, 10, 10, 10, 10]


def test_rate_limited_skips_ahead() -> None:
    policy = BackoffPolicy.build(DEFAULT_BACKOFF_SCHEDULE_S, max_attempts=5, rate_limit_skip=1)
    assert policy.delay_for(1, rate_limited=True) == 120
    assert policy.delay_for(5, rate_limited=True) == 3600


def test_scheduled_delays_never_shrink_across_a_job() -> None:
    policy = BackoffPolicy.build(DEFAULT_BACKOFF_SCHEDULE_S, max_attempts=5)
    categories = [ERROR_RATE_LIMITED, ERROR_TIMEOUT, ERROR_RATE_LIMITED, ERROR_TIMEOUT]
    previous = None
    delays = []
    for attempt, category in enumerate(categories, start=1):
        decision = decide_retry(policy, attempt=attempt, category=category, previous_delay_s=previous)
        assert decision.retry is True
        delays.append(decision.delay_s)
        previous = decision.delay_s
    assert delays == sorted(delays)
    # Attempt 2 alone would be 120s; the earlier rate-limit skip already reached 120s.
    assert delays[:2] == [120, 120]


def test_job_abandoned_after_exactly_max_attempts() -> None:
    policy = BackoffPolicy.build(DEFAULT_BACKOFF_SCHEDULE_S, max_attempts=3)
    assert decide_retry(policy, attempt=1, category=ERROR_TIMEOUT).retry is True
    assert decide_retry(policy, attempt=2, category=ERROR_TIMEOUT).retry is True
    final = decide_retry(policy, attempt=3, category=ERROR_TIMEOUT)
    assert final.retry is False
    assert final.reason == "exhausted"


def test_configuration_errors_are_not_retried() -> None:
    policy = BackoffPolicy.build(DEFAULT_BACKOFF_SCHEDULE_S, max_attempts=3)
    decision = decide_retry(policy, attempt=1, category=ERROR_NOT_CONFIGURED)
    assert decision.retry is False
    assert decision.reason == "non_retryable"


def test_policy_reads_settings(monkeypatch) -> None:
    from stsaccess.core.config import get_settings

    monkeypatch.setenv("PROVISIONING_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("PROVISIONING_BACKOFF_SCHEDULE_S", "[1, 2, 3]")
    get_settings.cache_clear()
    policy = BackoffPolicy.from_settings()
    assert policy.max_attempts == 4
    assert policy.schedule_s == (1, 2, 3)
