"""
Unit tests for the referral retry policy.

Tests focus on:
- Exponential backoff windows and the cap
- Retry boundary (just before / just after the window)
- Deterministic jitter
- Errors of other operations never block
"""
from datetime import timedelta

from attribution.services.referrals.progress import ReferralOperation, record_error
from attribution.services.referrals.retry_policy import (
    RetryPolicy,
    backoff_for,
    compute_backoff,
    retry_at,
    should_retry,
)


class TestComputeBackoff:
    """Tests for compute_backoff function"""

    def test_no_attempts_no_wait(self, no_jitter_policy):
        assert compute_backoff(0, no_jitter_policy) == timedelta(0)

    def test_doubles_per_attempt(self, no_jitter_policy):
        assert compute_backoff(1, no_jitter_policy) == timedelta(seconds=30)
        assert compute_backoff(2, no_jitter_policy) == timedelta(seconds=60)
        assert compute_backoff(3, no_jitter_policy) == timedelta(seconds=120)

    def test_capped(self, no_jitter_policy):
        assert compute_backoff(50, no_jitter_policy) == timedelta(seconds=1800)

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_seconds=100.0, max_seconds=1000.0, jitter=0.2)
        for seed in ("a", "b", "c", "d", "e"):
            delay = compute_backoff(1, policy, seed=seed).total_seconds()
            assert 80.0 <= delay <= 120.0

    def test_jitter_is_deterministic_per_seed(self):
        policy = RetryPolicy(jitter=0.2)
        assert compute_backoff(2, policy, seed="CG-ab12cd:track_click:2") == compute_backoff(
            2, policy, seed="CG-ab12cd:track_click:2"
        )


class TestShouldRetry:
    """Tests for should_retry function"""

    def test_no_error_allows(self, progress_initiated, mock_now):
        assert should_retry(progress_initiated, ReferralOperation.TRACK_CLICK, now=mock_now) is True

    def test_error_of_other_operation_allows(self, progress_initiated, mock_now):
        progress = record_error(progress_initiated, ReferralOperation.TRACK_CLICK, "boom", now=mock_now)
        assert should_retry(progress, ReferralOperation.REGISTER_CONVERSION, now=mock_now) is True

    def test_boundary_without_jitter(self, progress_initiated, mock_now, no_jitter_policy):
        """Exactly one millisecond before the window: no. One after: yes."""
        progress = record_error(progress_initiated, ReferralOperation.TRACK_CLICK, "boom", now=mock_now)
        window = timedelta(seconds=30)

        before = mock_now + window - timedelta(milliseconds=1)
        after = mock_now + window + timedelta(milliseconds=1)

        assert should_retry(progress, ReferralOperation.TRACK_CLICK, now=before, policy=no_jitter_policy) is False
        assert should_retry(progress, ReferralOperation.TRACK_CLICK, now=after, policy=no_jitter_policy) is True

    def test_boundary_with_jitter(self, progress_initiated, mock_now):
        """Same boundary using the record's own jittered window"""
        policy = RetryPolicy(jitter=0.2)
        progress = record_error(progress_initiated, ReferralOperation.TRACK_CLICK, "boom", now=mock_now)
        progress = record_error(progress, ReferralOperation.TRACK_CLICK, "boom", now=mock_now)
        window = backoff_for(progress, ReferralOperation.TRACK_CLICK, policy)

        assert timedelta(seconds=48) <= window <= timedelta(seconds=72)
        before = mock_now + window - timedelta(milliseconds=1)
        after = mock_now + window + timedelta(milliseconds=1)
        assert should_retry(progress, ReferralOperation.TRACK_CLICK, now=before, policy=policy) is False
        assert should_retry(progress, ReferralOperation.TRACK_CLICK, now=after, policy=policy) is True

    def test_window_grows_with_attempts(self, progress_initiated, mock_now, no_jitter_policy):
        progress = progress_initiated
        for _ in range(3):
            progress = record_error(progress, ReferralOperation.REGISTER_CONVERSION, "503", now=mock_now)

        at_90s = mock_now + timedelta(seconds=90)
        assert should_retry(progress, ReferralOperation.REGISTER_CONVERSION, now=at_90s, policy=no_jitter_policy) is False
        at_121s = mock_now + timedelta(seconds=121)
        assert should_retry(progress, ReferralOperation.REGISTER_CONVERSION, now=at_121s, policy=no_jitter_policy) is True


class TestRetryAt:
    """Tests for retry_at function"""

    def test_none_without_error(self, progress_initiated):
        assert retry_at(progress_initiated, ReferralOperation.TRACK_CLICK) is None

    def test_error_time_plus_window(self, progress_initiated, mock_now, no_jitter_policy):
        progress = record_error(progress_initiated, ReferralOperation.TRACK_CLICK, "boom", now=mock_now)
        assert retry_at(progress, ReferralOperation.TRACK_CLICK, no_jitter_policy) == mock_now + timedelta(seconds=30)
