"""
Referral Attribution Service Layer

This package tracks a visitor who arrived through a referral link until the
referrer's bonus is settled: click tracking, account binding, conversion
registration and bonus verification, with persisted progress and backoff.
"""

from attribution.services.referrals.progress import (
    ReferralStep,
    ReferralOperation,
    ReferralProgress,
    UtmParams,
    LastError,
    ConversionOutcome,
    initialize_progress,
    mark_click_tracked,
    mark_wallet_connected,
    mark_conversion_registered,
    mark_completed,
    record_error,
    get_next_step,
    is_complete,
)

from attribution.services.referrals.validation import is_valid_referral_code
from attribution.services.referrals.retry_policy import RetryPolicy, should_retry, compute_backoff
from attribution.services.referrals.store import (
    ProgressStore,
    MemoryProgressStore,
    FileProgressStore,
    RedisProgressStore,
)
from attribution.services.referrals.signal import (
    CompatibilitySignal,
    NullSignal,
    CookieJarSignal,
    RedisSignal,
)
from attribution.services.referrals.entry import EntryContext, parse_entry_url
from attribution.services.referrals.client import ReferralApiClient, TrackClickResult, StatusResult
from attribution.services.referrals.tracker import ReferralTracker

from attribution.services.referrals.exceptions import (
    ReferralServiceError,
    ReferralApiError,
    ReferralApiAuthError,
    ReferralApiInvalidResponseError,
    ReferralApiUnavailableError,
    ProgressStoreError,
)

__all__ = [
    "ReferralStep",
    "ReferralOperation",
    "ReferralProgress",
    "UtmParams",
    "LastError",
    "ConversionOutcome",
    "initialize_progress",
    "mark_click_tracked",
    "mark_wallet_connected",
    "mark_conversion_registered",
    "mark_completed",
    "record_error",
    "get_next_step",
    "is_complete",
    "is_valid_referral_code",
    "RetryPolicy",
    "should_retry",
    "compute_backoff",
    "ProgressStore",
    "MemoryProgressStore",
    "FileProgressStore",
    "RedisProgressStore",
    "CompatibilitySignal",
    "NullSignal",
    "CookieJarSignal",
    "RedisSignal",
    "EntryContext",
    "parse_entry_url",
    "ReferralApiClient",
    "TrackClickResult",
    "StatusResult",
    "ReferralTracker",
    "ReferralServiceError",
    "ReferralApiError",
    "ReferralApiAuthError",
    "ReferralApiInvalidResponseError",
    "ReferralApiUnavailableError",
    "ProgressStoreError",
]
