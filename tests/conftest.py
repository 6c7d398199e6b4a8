"""
Pytest configuration and shared fixtures for referral service tests.
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from attribution.services.referrals.client import StatusResult, TrackClickResult
from attribution.services.referrals.progress import (
    ConversionOutcome,
    UtmParams,
    initialize_progress,
)
from attribution.services.referrals.retry_policy import RetryPolicy
from attribution.services.referrals.store import MemoryProgressStore

from tests.helpers import FakeClock, REFERRER_WALLET


@pytest.fixture
def mock_now():
    """Fixed datetime for deterministic tests"""
    return datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(mock_now):
    return FakeClock(mock_now)


@pytest.fixture
def utm():
    return UtmParams(source="twitter", medium="social", campaign="launch")


@pytest.fixture
def progress_initiated(mock_now, utm):
    """Fresh record at step=initiated"""
    return initialize_progress("CG-ab12cd", utm, "/landing", now=mock_now)


@pytest.fixture
def memory_store():
    return MemoryProgressStore()


@pytest.fixture
def no_jitter_policy():
    """Backoff without jitter: 30s, 60s, 120s, ... capped at 30 min"""
    return RetryPolicy(base_seconds=30.0, max_seconds=1800.0, jitter=0.0)


@pytest.fixture
def registered_outcome():
    """Conversion registered, bonus not distributed yet"""
    return ConversionOutcome(
        registered=True,
        referrer=REFERRER_WALLET,
        level=1,
        bonus_distributed=False,
    )


@pytest.fixture
def distributed_outcome():
    """Conversion registered and bonus distributed"""
    return ConversionOutcome(
        registered=True,
        referrer=REFERRER_WALLET,
        level=1,
        bonus_distributed=True,
        bonus_total_amount=150.0,
    )


@pytest.fixture
def mock_api_client(registered_outcome):
    """Mock Remote Attribution Service client (happy path by default)"""
    client = MagicMock()
    client.track_click = AsyncMock(return_value=TrackClickResult(ip_hash="iphash-1"))
    client.check_status = AsyncMock(return_value=StatusResult(already_attributed=False))
    client.register_conversion = AsyncMock(return_value=registered_outcome)
    return client


@pytest.fixture
def mock_signal():
    """Mock compatibility signal"""
    signal = MagicMock()
    signal.mirror = AsyncMock()
    signal.clear = AsyncMock()
    signal.get_referral_code = AsyncMock(return_value=None)
    return signal
