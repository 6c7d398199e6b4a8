"""
Retry policy for referral workflow steps.

Backoff is persisted through ReferralProgress.last_error / attempt_count, so
it survives restarts: a step that failed 3 times waits base * 4 (± jitter)
after the last failure, no matter how many times the process restarted.

The jitter factor is seeded by (referral_code, operation, attempts): one
client sees the same window on every timer tick, different clients spread
their retries out.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import config
from attribution.services.referrals.progress import ReferralProgress, operation_name
from attribution.utils.retry import apply_jitter, exponential_delay


@dataclass(frozen=True)
class RetryPolicy:
    base_seconds: float = 30.0
    max_seconds: float = 1800.0
    jitter: float = 0.2

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            base_seconds=config.RETRY_BASE_SECONDS,
            max_seconds=config.RETRY_MAX_SECONDS,
            jitter=config.RETRY_JITTER,
        )


DEFAULT_POLICY = RetryPolicy()


def compute_backoff(
    attempts: int,
    policy: RetryPolicy = DEFAULT_POLICY,
    seed: Optional[str] = None,
) -> timedelta:
    """
    Wait required after the `attempts`-th failure (1-based).

    base, 2*base, 4*base, ... capped at max_seconds, then jittered.
    """
    if attempts <= 0:
        return timedelta(0)
    delay = exponential_delay(attempts - 1, policy.base_seconds, policy.max_seconds)
    if policy.jitter:
        rng = random.Random(seed) if seed is not None else None
        delay = apply_jitter(delay, policy.jitter, rng)
    return timedelta(seconds=delay)


def backoff_for(
    progress: ReferralProgress,
    operation,
    policy: RetryPolicy = DEFAULT_POLICY,
) -> timedelta:
    """Backoff window currently applying to `operation` on this record."""
    name = operation_name(operation)
    attempts = progress.attempts(name)
    return compute_backoff(attempts, policy, seed=f"{progress.referral_code}:{name}:{attempts}")


def should_retry(
    progress: ReferralProgress,
    operation,
    now: Optional[datetime] = None,
    policy: Optional[RetryPolicy] = None,
) -> bool:
    """
    True if `operation` may be attempted now.

    Always true when the last recorded error belongs to another operation
    (or there is none); otherwise true once the backoff window has elapsed.
    """
    error = progress.last_error
    if error is None or error.operation != operation_name(operation):
        return True
    now = now or datetime.now(timezone.utc)
    return now - error.at >= backoff_for(progress, operation, policy or DEFAULT_POLICY)


def retry_at(
    progress: ReferralProgress,
    operation,
    policy: Optional[RetryPolicy] = None,
) -> Optional[datetime]:
    """Earliest time `operation` may be retried, None if it is not backing off."""
    error = progress.last_error
    if error is None or error.operation != operation_name(operation):
        return None
    return error.at + backoff_for(progress, operation, policy or DEFAULT_POLICY)
