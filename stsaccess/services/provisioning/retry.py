from __future__ import annotations

from dataclasses import dataclass
from itertools import accumulate

from stsaccess.core.config import DEFAULT_BACKOFF_SCHEDULE_S, Settings, get_settings
from stsaccess.providers.provisioning.base import (
    ERROR_AUTH,
    ERROR_NETWORK,
    ERROR_RATE_LIMITED,
    ERROR_TIMEOUT,
    ERROR_UPSTREAM,
)


# Categories the queue retries; anything else goes straight to an operator.
TRANSIENT_CATEGORIES = frozenset({ERROR_TIMEOUT, ERROR_NETWORK, ERROR_RATE_LIMITED, ERROR_AUTH, ERROR_UPSTREAM})


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry schedule expressed as data.

    ``schedule_s[k - 1]`` is the delay before attempt ``k + 1``. The schedule
    is normalized to be non-decreasing and its last entry repeats when a
    job has more attempts than entries.
    """

    schedule_s: tuple[int, ...]
    max_attempts: int
    rate_limit_skip: int = 1

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "BackoffPolicy":
        settings = settings or get_settings()
        return cls.build(
            settings.provisioning_backoff_schedule_s,
            max_attempts=settings.provisioning_max_attempts,
            rate_limit_skip=settings.provisioning_rate_limit_skip,
        )

    @classmethod
    def build(cls, schedule_s: list[int] | tuple[int, ...], *, max_attempts: int, rate_limit_skip: int = 1) -> "BackoffPolicy":
        cleaned = [max(0, int(value)) for value in schedule_s] or list(DEFAULT_BACKOFF_SCHEDULE_S)
        return cls(
            schedule_s=tuple(accumulate(cleaned, max)),
            max_attempts=max(1, int(max_attempts)),
            rate_limit_skip=max(0, int(rate_limit_skip)),
        )

    def delay_for(self, attempt: int, *, rate_limited: bool = False) -> int:
        # attempt is the 1-based attempt that just failed.
        index = max(0, attempt - 1)
        if rate_limited:
            index += self.rate_limit_skip
        return self.schedule_s[min(index, len(self.schedule_s) - 1)]


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_s: int | None
    reason: str


def decide_retry(
    policy: BackoffPolicy,
    *,
    attempt: int,
    category: str | None,
    previous_delay_s: int | None = None,
) -> RetryDecision:
    if category not in TRANSIENT_CATEGORIES:
        return RetryDecision(retry=False, delay_s=None, reason="non_retryable")
    if attempt >= policy.max_attempts:
        return RetryDecision(retry=False, delay_s=None, reason="exhausted")
    delay = policy.delay_for(attempt, rate_limited=category == ERROR_RATE_LIMITED)
    # A rate-limited skip earlier in the job must not make later waits shorter.
    if previous_delay_s:
        delay = max(delay, previous_delay_s)
    return RetryDecision(retry=True, delay_s=delay, reason="scheduled")
