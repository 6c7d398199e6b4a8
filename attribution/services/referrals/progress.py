"""
Referral Progress - Attribution State Machine

One ReferralProgress record describes the in-flight attribution of a single
browser/session context. All functions in this module are pure: they take a
record and return a new one (dataclasses.replace), never touch the network
or the store, and accept an optional `now` for deterministic tests.

Lifecycle:
    initiated → click_tracked → wallet_connected → conversion_registered → completed

Rules:
- step only moves forward; record_error never changes it
- utm_* and landing_page are first-touch values, fixed at initialize_progress
- wallet_address is IMMUTABLE once set (a different account is rejected)
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any

# Bump when the persisted layout changes; older records are discarded on load
PROGRESS_SCHEMA_VERSION = 1

MAX_ERROR_MESSAGE_LENGTH = 200


class ReferralStep(str, Enum):
    """Attribution workflow steps, in order"""
    INITIATED = "initiated"  # Record created, click not yet tracked
    CLICK_TRACKED = "click_tracked"  # Remote service recorded the click
    WALLET_CONNECTED = "wallet_connected"  # Identifying account bound to the record
    CONVERSION_REGISTERED = "conversion_registered"  # Ledger registered the conversion
    COMPLETED = "completed"  # Bonus distributed or settled; record is purged

    @property
    def rank(self) -> int:
        return _STEP_ORDER.index(self)


_STEP_ORDER = (
    ReferralStep.INITIATED,
    ReferralStep.CLICK_TRACKED,
    ReferralStep.WALLET_CONNECTED,
    ReferralStep.CONVERSION_REGISTERED,
    ReferralStep.COMPLETED,
)


class ReferralOperation(str, Enum):
    """Remote operations the tracker may attempt for a record"""
    TRACK_CLICK = "track_click"
    REGISTER_CONVERSION = "register_conversion"
    VERIFY_BONUS = "verify_bonus"


@dataclass(frozen=True)
class UtmParams:
    """First-touch marketing attributes"""
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None


@dataclass(frozen=True)
class LastError:
    operation: str
    message: str
    at: datetime


@dataclass(frozen=True)
class ConversionOutcome:
    """Result of PUT /referrals/track as seen by the state machine"""
    registered: bool
    referrer: Optional[str] = None
    level: Optional[int] = None
    bonus_distributed: bool = False
    bonus_total_amount: Optional[float] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class ReferralProgress:
    referral_code: str
    step: ReferralStep
    created_at: datetime
    updated_at: datetime
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    landing_page: Optional[str] = None
    wallet_address: Optional[str] = None
    ip_hash: Optional[str] = None
    registered: bool = False
    referrer: Optional[str] = None
    level: Optional[int] = None
    bonus_distributed: bool = False
    bonus_total_amount: Optional[float] = None
    last_error: Optional[LastError] = None
    attempt_count: Dict[str, int] = field(default_factory=dict)
    version: int = PROGRESS_SCHEMA_VERSION

    @property
    def utm(self) -> UtmParams:
        return UtmParams(self.utm_source, self.utm_medium, self.utm_campaign)

    def attempts(self, operation) -> int:
        return self.attempt_count.get(operation_name(operation), 0)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def operation_name(operation) -> str:
    if isinstance(operation, ReferralOperation):
        return operation.value
    return str(operation)


def _clear_error_for(progress: ReferralProgress, *operations: ReferralOperation) -> Optional[LastError]:
    """Drop last_error if it belongs to one of the operations that just succeeded."""
    error = progress.last_error
    if error is None:
        return None
    if error.operation in {operation_name(op) for op in operations}:
        return None
    return error


def _same_wallet(a: str, b: str) -> bool:
    # EVM addresses are case-insensitive (checksum casing is presentation only)
    return a.strip().lower() == b.strip().lower()


# =============================================================================
# Transitions
# =============================================================================

def initialize_progress(
    referral_code: str,
    utm: Optional[UtmParams] = None,
    landing_page: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReferralProgress:
    """Build a fresh record at step=initiated."""
    now = now or _utcnow()
    utm = utm or UtmParams()
    return ReferralProgress(
        referral_code=referral_code,
        step=ReferralStep.INITIATED,
        created_at=now,
        updated_at=now,
        utm_source=utm.source,
        utm_medium=utm.medium,
        utm_campaign=utm.campaign,
        landing_page=landing_page,
    )


def mark_click_tracked(
    progress: ReferralProgress,
    ip_hash: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReferralProgress:
    """
    Record a tracked click and advance to click_tracked.

    Returns the record unchanged if it is already at or beyond click_tracked,
    so repeating the call is harmless.
    """
    if progress.step.rank >= ReferralStep.CLICK_TRACKED.rank:
        return progress
    return replace(
        progress,
        step=ReferralStep.CLICK_TRACKED,
        ip_hash=ip_hash,
        last_error=_clear_error_for(progress, ReferralOperation.TRACK_CLICK),
        updated_at=now or _utcnow(),
    )


def has_wallet_conflict(progress: Optional[ReferralProgress], address: Optional[str]) -> bool:
    """True if the record is already bound to a different account."""
    if progress is None or not address or not progress.wallet_address:
        return False
    return not _same_wallet(progress.wallet_address, address)


def mark_wallet_connected(
    progress: ReferralProgress,
    address: str,
    now: Optional[datetime] = None,
) -> ReferralProgress:
    """
    Bind an identifying account to the record.

    - wallet_address is set only if it was unset
    - step advances to wallet_connected only from click_tracked
    - a different account than the one already bound is rejected:
      the record is returned unchanged (see has_wallet_conflict)
    """
    if not address or has_wallet_conflict(progress, address):
        return progress

    wallet = progress.wallet_address or address
    step = progress.step
    if step == ReferralStep.CLICK_TRACKED:
        step = ReferralStep.WALLET_CONNECTED

    if wallet == progress.wallet_address and step == progress.step:
        return progress

    return replace(
        progress,
        wallet_address=wallet,
        step=step,
        updated_at=now or _utcnow(),
    )


def mark_conversion_registered(
    progress: ReferralProgress,
    outcome: ConversionOutcome,
    now: Optional[datetime] = None,
) -> ReferralProgress:
    """
    Store the registration outcome and advance to conversion_registered,
    or straight to completed when the bonus was distributed.
    """
    if progress.step == ReferralStep.COMPLETED:
        return progress

    target = ReferralStep.COMPLETED if outcome.bonus_distributed else ReferralStep.CONVERSION_REGISTERED
    step = target if target.rank > progress.step.rank else progress.step

    cleared = _clear_error_for(
        progress,
        ReferralOperation.REGISTER_CONVERSION,
        ReferralOperation.VERIFY_BONUS,
    )
    return replace(
        progress,
        step=step,
        registered=progress.registered or outcome.registered,
        referrer=outcome.referrer if outcome.referrer is not None else progress.referrer,
        level=outcome.level if outcome.level is not None else progress.level,
        bonus_distributed=progress.bonus_distributed or outcome.bonus_distributed,
        bonus_total_amount=(
            outcome.bonus_total_amount
            if outcome.bonus_total_amount is not None
            else progress.bonus_total_amount
        ),
        last_error=None if step == ReferralStep.COMPLETED else cleared,
        updated_at=now or _utcnow(),
    )


def mark_completed(
    progress: ReferralProgress,
    bonus_total_amount: Optional[float] = None,
    bonus_distributed: Optional[bool] = True,
    now: Optional[datetime] = None,
) -> ReferralProgress:
    """
    Force the terminal state.

    Used when bonus distribution is confirmed by a later signal. Pass
    bonus_distributed=None when the workflow is settled without a bonus
    confirmation (flag left as it was).
    """
    if progress.step == ReferralStep.COMPLETED:
        return progress
    return replace(
        progress,
        step=ReferralStep.COMPLETED,
        bonus_distributed=progress.bonus_distributed if bonus_distributed is None else bonus_distributed,
        bonus_total_amount=bonus_total_amount if bonus_total_amount is not None else progress.bonus_total_amount,
        last_error=None,
        updated_at=now or _utcnow(),
    )


def record_error(
    progress: ReferralProgress,
    operation,
    message: str,
    now: Optional[datetime] = None,
) -> ReferralProgress:
    """Remember a failed attempt of `operation`; step is left untouched."""
    now = now or _utcnow()
    name = operation_name(operation)
    attempt_count = dict(progress.attempt_count)
    attempt_count[name] = attempt_count.get(name, 0) + 1
    return replace(
        progress,
        last_error=LastError(
            operation=name,
            message=(message or "unknown error")[:MAX_ERROR_MESSAGE_LENGTH],
            at=now,
        ),
        attempt_count=attempt_count,
        updated_at=now,
    )


# =============================================================================
# Queries
# =============================================================================

def get_next_step(progress: Optional[ReferralProgress]) -> Optional[ReferralOperation]:
    """
    Remote operation that should run next for this record.

    None means nothing to do: the record is complete, or it is waiting for
    an account to be connected.
    """
    if progress is None:
        return None
    step = progress.step
    if step == ReferralStep.INITIATED:
        return ReferralOperation.TRACK_CLICK
    if step == ReferralStep.CLICK_TRACKED:
        return ReferralOperation.REGISTER_CONVERSION if progress.wallet_address else None
    if step == ReferralStep.WALLET_CONNECTED:
        return ReferralOperation.REGISTER_CONVERSION
    if step == ReferralStep.CONVERSION_REGISTERED:
        return None if progress.bonus_distributed else ReferralOperation.VERIFY_BONUS
    return None


def is_complete(progress: Optional[ReferralProgress]) -> bool:
    if progress is None:
        return False
    return progress.step == ReferralStep.COMPLETED


def is_expired(progress: ReferralProgress, ttl: timedelta, now: Optional[datetime] = None) -> bool:
    """Records older than ttl (since created_at) are abandoned."""
    now = now or _utcnow()
    return now - progress.created_at > ttl


# =============================================================================
# Serialization
# =============================================================================

def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def progress_to_dict(progress: ReferralProgress) -> Dict[str, Any]:
    """JSON-compatible representation for the progress store."""
    last_error = None
    if progress.last_error is not None:
        last_error = {
            "operation": progress.last_error.operation,
            "message": progress.last_error.message,
            "at": _dt_to_str(progress.last_error.at),
        }
    return {
        "version": progress.version,
        "referral_code": progress.referral_code,
        "step": progress.step.value,
        "utm_source": progress.utm_source,
        "utm_medium": progress.utm_medium,
        "utm_campaign": progress.utm_campaign,
        "landing_page": progress.landing_page,
        "wallet_address": progress.wallet_address,
        "ip_hash": progress.ip_hash,
        "registered": progress.registered,
        "referrer": progress.referrer,
        "level": progress.level,
        "bonus_distributed": progress.bonus_distributed,
        "bonus_total_amount": progress.bonus_total_amount,
        "last_error": last_error,
        "attempt_count": dict(progress.attempt_count),
        "created_at": _dt_to_str(progress.created_at),
        "updated_at": _dt_to_str(progress.updated_at),
    }


def progress_from_dict(data: Dict[str, Any]) -> ReferralProgress:
    """
    Rebuild a record from progress_to_dict output.

    Raises:
        KeyError, ValueError, TypeError: malformed payload
    """
    raw_error = data.get("last_error")
    raw_counts = data.get("attempt_count") or {}
    if raw_error is not None and not isinstance(raw_error, dict):
        raise TypeError(f"last_error must be an object, got {type(raw_error).__name__}")
    if not isinstance(raw_counts, dict):
        raise TypeError(f"attempt_count must be an object, got {type(raw_counts).__name__}")

    last_error = None
    if raw_error:
        last_error = LastError(
            operation=str(raw_error["operation"]),
            message=str(raw_error.get("message", "")),
            at=_dt_from_str(raw_error["at"]),
        )
    level = data.get("level")
    amount = data.get("bonus_total_amount")
    return ReferralProgress(
        referral_code=str(data["referral_code"]),
        step=ReferralStep(data["step"]),
        created_at=_dt_from_str(data["created_at"]),
        updated_at=_dt_from_str(data.get("updated_at") or data["created_at"]),
        utm_source=data.get("utm_source"),
        utm_medium=data.get("utm_medium"),
        utm_campaign=data.get("utm_campaign"),
        landing_page=data.get("landing_page"),
        wallet_address=data.get("wallet_address"),
        ip_hash=data.get("ip_hash"),
        registered=bool(data.get("registered", False)),
        referrer=data.get("referrer"),
        level=int(level) if level is not None else None,
        bonus_distributed=bool(data.get("bonus_distributed", False)),
        bonus_total_amount=float(amount) if amount is not None else None,
        last_error=last_error,
        attempt_count={str(k): int(v) for k, v in raw_counts.items()},
        version=int(data.get("version", 0)),
    )
