"""
Referral Tracker - single-flight orchestrator of the attribution workflow.

The tracker owns the one ReferralProgress record of a context and is the
only caller of the Remote Attribution Service. Triggers:

1. on_referral_code      - a visitor arrived with ?ref=<code>
2. on_account_changed    - the account provider reports (address, is_connected)
3. on_retry_tick         - periodic timer (run_retry_loop), only while a step failed
4. on_bonus_confirmed    - later signal that the bonus was distributed
5. start / clear         - resume after restart, explicit reset

SINGLE-FLIGHT CONTRACT:
- One in-memory busy flag (never persisted), set before the first await
- While busy: inbound code / new account / bonus / clear are deferred and
  replayed after release; retry ticks are skipped; a repeated signal for the
  same account is dropped
- Every transition is persisted (store + compatibility signal) before the
  busy flag is released

ERROR POLICY:
- Remote failures → record_error on the progress, retried with backoff
- Already attributed / not registered → progress cleared, no error
- Nothing raises to trigger callers
- If the store cannot be read, nothing is initialized or written; the
  trigger is held and replayed after the next successful load, which the
  retry timer keeps attempting
- Bonus polling stops after max_verify_attempts pending answers; the
  record then waits for on_bonus_confirmed
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Callable, Awaitable, Dict

import config
from attribution.core.structured_logger import log_event, mask_wallet
from attribution.services.referrals.entry import EntryContext, parse_entry_url
from attribution.services.referrals.exceptions import ProgressStoreError
from attribution.services.referrals.progress import (
    ReferralOperation,
    ReferralProgress,
    ReferralStep,
    UtmParams,
    get_next_step,
    has_wallet_conflict,
    initialize_progress,
    is_complete,
    mark_click_tracked,
    mark_completed,
    mark_conversion_registered,
    mark_wallet_connected,
    record_error,
)
from attribution.services.referrals.retry_policy import RetryPolicy, should_retry, retry_at
from attribution.services.referrals.signal import CompatibilitySignal, NullSignal
from attribution.services.referrals.validation import is_valid_referral_code

logger = logging.getLogger(__name__)

BONUS_PENDING = "bonus_pending"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReferralTracker:
    """
    Drives one context's ReferralProgress forward.

    Collaborators are injected: a ProgressStore, a ReferralApiClient (or
    anything with track_click / check_status / register_conversion) and an
    optional CompatibilitySignal.
    """

    def __init__(
        self,
        store,
        client,
        signal: Optional[CompatibilitySignal] = None,
        policy: Optional[RetryPolicy] = None,
        context_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        retry_interval: Optional[float] = None,
        max_verify_attempts: Optional[int] = None,
    ):
        self._store = store
        self._client = client
        self._signal = signal or NullSignal()
        self._policy = policy or RetryPolicy.from_config()
        self.context_id = context_id
        self._clock = clock or _utcnow
        self.retry_interval = retry_interval if retry_interval is not None else config.RETRY_INTERVAL_SECONDS
        self.max_verify_attempts = (
            max_verify_attempts if max_verify_attempts is not None else config.VERIFY_BONUS_MAX_ATTEMPTS
        )

        self._progress: Optional[ReferralProgress] = None
        self._loaded = False
        self._busy = False
        self._referrer_url: Optional[str] = None
        self._account: Optional[str] = None
        self._previous_account: Optional[str] = None
        self._deferred: Dict[str, Callable[[], Awaitable[None]]] = {}
        # Triggers held back while the store could not be read
        self._stalled: Dict[str, Callable[[], Awaitable[None]]] = {}

    # =========================================================================
    # Read API
    # =========================================================================

    @property
    def progress(self) -> Optional[ReferralProgress]:
        return self._progress

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def account(self) -> Optional[str]:
        return self._account

    def is_referral_complete(self) -> bool:
        return is_complete(self._progress)

    def is_settled(self) -> bool:
        """
        Nothing left for the retry timer: no record, a terminal record, a
        record waiting for an account, or bonus polling given up.
        """
        if not self._loaded:
            return False
        progress = self._progress
        if progress is None or is_complete(progress):
            return True
        if self._verify_exhausted(progress):
            return True
        return get_next_step(progress) is None and progress.last_error is None

    async def get_referral_code(self) -> Optional[str]:
        """Code of the active record, falling back to the compatibility flags."""
        if self._progress is not None:
            return self._progress.referral_code
        return await self._signal.get_referral_code()

    async def was_referred(self) -> bool:
        return bool(await self.get_referral_code())

    # =========================================================================
    # Triggers
    # =========================================================================

    async def start(self, resume: bool = True) -> None:
        """
        Load the persisted record and re-mirror the compatibility flags.

        With resume=True, any step that is due (not backing off) runs now, so
        a crash right after a record was created still gets its click tracked.
        """
        await self._run_exclusive("start", lambda: self._handle_start(resume))

    async def on_entry(self, url: str, referrer_url: Optional[str] = None) -> None:
        """Convenience: parse an entry URL and fire on_referral_code if it has ?ref=."""
        entry: EntryContext = parse_entry_url(url, referrer_url)
        if entry.referral_code is None:
            return
        await self.on_referral_code(entry.referral_code, entry.utm, entry.landing_page, entry.referrer_url)

    async def on_referral_code(
        self,
        code: str,
        utm: Optional[UtmParams] = None,
        landing_page: Optional[str] = None,
        referrer_url: Optional[str] = None,
    ) -> None:
        """Inbound-code trigger."""
        if not is_valid_referral_code(code):
            logger.debug(f"REFERRAL_CODE_IGNORED [reason=invalid_format, code={str(code)[:32]!r}]")
            return

        if self._busy:
            # First code seen while busy wins, same as first touch
            self._deferred.setdefault(
                "referral_code",
                lambda: self.on_referral_code(code, utm, landing_page, referrer_url),
            )
            self._log_deferred("referral_code")
            return

        await self._run_exclusive(
            "referral_code",
            lambda: self._handle_referral_code(code, utm, landing_page, referrer_url),
        )

    async def on_account_changed(self, address: Optional[str], is_connected: bool = True) -> None:
        """
        Account-connection trigger.

        Fires the workflow only for a concrete address that differs from the
        previously observed one.
        """
        if not is_connected or not address:
            if self._account is not None:
                logger.info(f"REFERRAL_ACCOUNT_DISCONNECTED [wallet={mask_wallet(self._account)}]")
            self._account = None
            return

        if self._previous_account is not None and self._previous_account.lower() == address.lower():
            return

        self._account = address

        if self._busy:
            self._deferred["account"] = lambda: self.on_account_changed(self._account, self._account is not None)
            self._log_deferred("account_connected")
            return

        self._previous_account = address
        await self._run_exclusive("account_connected", lambda: self._handle_account(address))

    async def on_retry_tick(self) -> None:
        """Retry-timer trigger. Skipped while another operation is in flight."""
        if self._busy:
            self._log_deferred("retry_tick", level="debug")
            return
        await self._run_exclusive("retry_tick", self._handle_retry_tick)

    async def on_bonus_confirmed(self, total_amount: Optional[float] = None) -> None:
        """Later signal that bonus distribution happened: complete and purge."""
        if self._busy:
            self._deferred["bonus_confirmed"] = lambda: self.on_bonus_confirmed(total_amount)
            self._log_deferred("bonus_confirmed")
            return
        await self._run_exclusive("bonus_confirmed", lambda: self._handle_bonus_confirmed(total_amount))

    async def clear(self) -> None:
        """Explicitly drop the record and the compatibility flags."""
        if self._busy:
            self._deferred["clear"] = self.clear
            self._log_deferred("clear")
            return
        await self._run_exclusive("clear", lambda: self._clear_progress("explicit_clear"))

    async def run_retry_loop(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Periodic retry timer.

        WORKER LOOP CONTRACT:
        - Ticks every retry_interval seconds until stop_event is set
        - Fires on_retry_tick only while the record is non-terminal and has a last_error
        - An iteration error never kills the loop
        """
        logger.info(f"REFERRAL_RETRY_LOOP_STARTED [interval={self.retry_interval}s, context={self.context_id}]")
        while stop_event is None or not stop_event.is_set():
            try:
                if self._retry_due():
                    await self.on_retry_tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"REFERRAL_RETRY_LOOP_ITERATION_FAILED [error={type(e).__name__}: {str(e)[:100]}]")

            if stop_event is None:
                await asyncio.sleep(self.retry_interval)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.retry_interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"REFERRAL_RETRY_LOOP_STOPPED [context={self.context_id}]")

    # =========================================================================
    # Single-flight
    # =========================================================================

    async def _run_exclusive(self, trigger: str, action: Callable[[], Awaitable[None]]) -> bool:
        if self._busy:
            return False
        self._busy = True
        try:
            await action()
        except Exception as e:
            # Triggers never raise; the record keeps its last persisted state
            logger.exception(
                f"REFERRAL_TRACKER_UNEXPECTED_ERROR [trigger={trigger}, "
                f"error={type(e).__name__}: {str(e)[:100]}]"
            )
        finally:
            self._busy = False

        await self._replay_deferred()
        return True

    async def _replay_deferred(self) -> None:
        while self._deferred and not self._busy:
            name = next(iter(self._deferred))
            action = self._deferred.pop(name)
            logger.debug(f"REFERRAL_TRIGGER_REPLAY [trigger={name}]")
            await action()

    def _log_deferred(self, trigger: str, level: str = "info") -> None:
        log_event(
            logger,
            component="tracker",
            operation=trigger,
            correlation_id=self.context_id,
            outcome="deferred",
            reason="operation_in_flight",
            level=level,
        )

    def _retry_due(self) -> bool:
        if not self._loaded:
            return True
        progress = self._progress
        if progress is None or is_complete(progress) or progress.last_error is None:
            return False
        return not self._verify_exhausted(progress)

    def _verify_exhausted(self, progress: ReferralProgress) -> bool:
        if self.max_verify_attempts <= 0:
            return False
        return (
            get_next_step(progress) == ReferralOperation.VERIFY_BONUS
            and progress.attempts(ReferralOperation.VERIFY_BONUS) >= self.max_verify_attempts
        )

    # =========================================================================
    # Trigger bodies (always run inside _run_exclusive)
    # =========================================================================

    async def _handle_start(self, resume: bool) -> None:
        if not await self._ensure_loaded():
            self._stall("start", lambda: self.start(resume))
            return
        progress = self._progress
        if progress is None:
            return
        logger.info(
            f"REFERRAL_PROGRESS_RESUMED [code={progress.referral_code}, step={progress.step.value}, "
            f"context={self.context_id}]"
        )
        await self._sync_signal(progress)
        if resume:
            await self._advance()

    async def _handle_referral_code(
        self,
        code: str,
        utm: Optional[UtmParams],
        landing_page: Optional[str],
        referrer_url: Optional[str],
    ) -> None:
        if not await self._ensure_loaded():
            # Stored record unknown: initializing now could overwrite an earlier first touch
            self._stall("referral_code", lambda: self.on_referral_code(code, utm, landing_page, referrer_url))
            return
        progress = self._progress

        if progress is not None and not is_complete(progress):
            if progress.referral_code != code:
                logger.info(
                    f"REFERRAL_FIRST_TOUCH_PRESERVED [existing_code={progress.referral_code}, "
                    f"step={progress.step.value}, ignored_code={code}]"
                )
                return
            logger.info(f"REFERRAL_PROGRESS_CONTINUED [code={code}, step={progress.step.value}]")
            if referrer_url and self._referrer_url is None:
                self._referrer_url = referrer_url
            await self._adopt_known_account()
            await self._advance()
            return

        self._referrer_url = referrer_url
        progress = initialize_progress(code, utm, landing_page, now=self._clock())
        log_event(
            logger,
            component="tracker",
            operation="initialize",
            correlation_id=self.context_id,
            outcome="success",
            message=f"REFERRAL_PROGRESS_INITIALIZED [code={code}, landing_page={landing_page}]",
        )
        await self._commit(progress)
        await self._adopt_known_account()
        await self._advance()

    async def _handle_account(self, address: str) -> None:
        if not await self._ensure_loaded():
            # Forget the address so the replayed signal is not dropped as a repeat
            self._previous_account = None
            self._stall("account", lambda: self.on_account_changed(self._account, self._account is not None))
            return
        progress = self._progress
        if progress is None or is_complete(progress):
            logger.debug(f"REFERRAL_ACCOUNT_NO_PROGRESS [wallet={mask_wallet(address)}]")
            return

        if has_wallet_conflict(progress, address):
            logger.error(
                f"REFERRAL_WALLET_CONFLICT [code={progress.referral_code}, "
                f"bound_wallet={mask_wallet(progress.wallet_address)}, new_wallet={mask_wallet(address)}]"
            )
            return

        updated = mark_wallet_connected(progress, address, now=self._clock())
        if updated is not progress:
            logger.info(
                f"REFERRAL_WALLET_CONNECTED [code={updated.referral_code}, "
                f"wallet={mask_wallet(address)}, step={updated.step.value}]"
            )
            await self._commit(updated)
        await self._advance()

    async def _handle_retry_tick(self) -> None:
        if not await self._ensure_loaded():
            return
        progress = self._progress
        if progress is None or is_complete(progress) or progress.last_error is None:
            return

        await self._adopt_known_account()
        await self._advance()

    async def _adopt_known_account(self) -> None:
        """Bind the account seen this session if the record has none yet."""
        progress = self._progress
        if progress is None or progress.wallet_address is not None or not self._account:
            return
        updated = mark_wallet_connected(progress, self._account, now=self._clock())
        if updated is not progress:
            await self._commit(updated)

    async def _handle_bonus_confirmed(self, total_amount: Optional[float]) -> None:
        if not await self._ensure_loaded():
            self._stall("bonus_confirmed", lambda: self.on_bonus_confirmed(total_amount))
            return
        progress = self._progress
        if progress is None or is_complete(progress):
            return
        if progress.step.rank < ReferralStep.CONVERSION_REGISTERED.rank:
            logger.warning(
                f"REFERRAL_BONUS_CONFIRMATION_IGNORED [code={progress.referral_code}, "
                f"step={progress.step.value}, reason=conversion_not_registered]"
            )
            return
        await self._commit(mark_completed(progress, bonus_total_amount=total_amount, now=self._clock()))

    # =========================================================================
    # Workflow engine
    # =========================================================================

    async def _advance(self) -> None:
        """
        Run due operations until the record waits (backoff, missing account)
        or ends. Each successful operation moves the step forward or clears
        the record, so the loop is bounded.
        """
        while True:
            progress = self._progress
            if progress is None or is_complete(progress):
                return

            operation = get_next_step(progress)
            if operation is None:
                return

            if self._verify_exhausted(progress):
                logger.debug(
                    f"REFERRAL_BONUS_POLL_STOPPED [code={progress.referral_code}, "
                    f"attempts={progress.attempts(operation)}]"
                )
                return

            if not should_retry(progress, operation, now=self._clock(), policy=self._policy):
                next_at = retry_at(progress, operation, self._policy)
                logger.debug(
                    f"REFERRAL_RETRY_BACKOFF [code={progress.referral_code}, operation={operation.value}, "
                    f"attempts={progress.attempts(operation)}, "
                    f"retry_at={next_at.isoformat() if next_at else None}]"
                )
                return

            if operation == ReferralOperation.TRACK_CLICK:
                advanced = await self._track_click(progress)
            elif operation == ReferralOperation.REGISTER_CONVERSION:
                advanced = await self._register_conversion(progress)
            else:
                advanced = await self._verify_bonus(progress)

            if not advanced:
                return

    async def _track_click(self, progress: ReferralProgress) -> bool:
        try:
            result = await self._client.track_click(
                progress.referral_code,
                progress.utm,
                self._referrer_url,
                progress.landing_page,
            )
        except Exception as e:
            await self._fail(progress, ReferralOperation.TRACK_CLICK, e)
            return False

        now = self._clock()
        updated = mark_click_tracked(progress, result.ip_hash, now=now)
        if progress.wallet_address:
            # Account arrived before the click was tracked
            updated = mark_wallet_connected(updated, progress.wallet_address, now=now)
        log_event(
            logger,
            component="tracker",
            operation="track_click",
            correlation_id=self.context_id,
            outcome="success",
            message=f"REFERRAL_CLICK_TRACKED [code={updated.referral_code}, step={updated.step.value}]",
        )
        await self._commit(updated)
        return True

    async def _register_conversion(self, progress: ReferralProgress) -> bool:
        account = progress.wallet_address
        if not account:
            return False

        if progress.step == ReferralStep.CLICK_TRACKED:
            progress = mark_wallet_connected(progress, account, now=self._clock())
            await self._commit(progress)

        # Idempotency pre-check: never register an account the ledger already knows
        try:
            status = await self._client.check_status(account)
        except Exception as e:
            await self._fail(progress, ReferralOperation.REGISTER_CONVERSION, e, prefix="status_check_failed")
            return False

        if status.already_attributed:
            logger.info(
                f"REFERRAL_ALREADY_ATTRIBUTED [code={progress.referral_code}, wallet={mask_wallet(account)}]"
            )
            await self._clear_progress("already_attributed")
            return True

        try:
            outcome = await self._client.register_conversion(account, progress.referral_code, progress.utm)
        except Exception as e:
            await self._fail(progress, ReferralOperation.REGISTER_CONVERSION, e)
            return False

        if not outcome.registered:
            logger.info(
                f"REFERRAL_CONVERSION_NOT_REGISTERED [code={progress.referral_code}, "
                f"wallet={mask_wallet(account)}, message={outcome.message!r}]"
            )
            await self._clear_progress("not_registered")
            return True

        now = self._clock()
        updated = mark_conversion_registered(progress, outcome, now=now)
        if not is_complete(updated):
            # Keeps the retry timer polling for the bonus
            updated = record_error(updated, ReferralOperation.VERIFY_BONUS, BONUS_PENDING, now=now)
            self._log_poll_exhausted(updated)
        log_event(
            logger,
            component="tracker",
            operation="register_conversion",
            correlation_id=self.context_id,
            outcome="success",
            message=(
                f"REFERRAL_CONVERSION_REGISTERED [code={updated.referral_code}, "
                f"referrer={mask_wallet(outcome.referrer)}, level={outcome.level}, "
                f"bonus_distributed={outcome.bonus_distributed}, step={updated.step.value}]"
            ),
        )
        await self._commit(updated)
        return True

    async def _verify_bonus(self, progress: ReferralProgress) -> bool:
        account = progress.wallet_address
        if not account:
            return False

        try:
            outcome = await self._client.register_conversion(account, progress.referral_code, progress.utm)
        except Exception as e:
            await self._fail(progress, ReferralOperation.VERIFY_BONUS, e)
            return False

        now = self._clock()
        if outcome.bonus_distributed:
            updated = mark_conversion_registered(progress, outcome, now=now)
        elif not outcome.registered:
            # Ledger already settled this conversion; nothing left for the client
            updated = mark_completed(progress, bonus_distributed=None, now=now)
        else:
            updated = record_error(
                mark_conversion_registered(progress, outcome, now=now),
                ReferralOperation.VERIFY_BONUS,
                BONUS_PENDING,
                now=now,
            )
            logger.info(
                f"REFERRAL_BONUS_PENDING [code={progress.referral_code}, "
                f"attempts={updated.attempts(ReferralOperation.VERIFY_BONUS)}]"
            )
            self._log_poll_exhausted(updated)
            await self._commit(updated)
            return False

        log_event(
            logger,
            component="tracker",
            operation="verify_bonus",
            correlation_id=self.context_id,
            outcome="success",
            message=f"REFERRAL_BONUS_SETTLED [code={progress.referral_code}, distributed={updated.bonus_distributed}]",
        )
        await self._commit(updated)
        return True

    def _log_poll_exhausted(self, progress: ReferralProgress) -> None:
        if not self._verify_exhausted(progress):
            return
        log_event(
            logger,
            component="tracker",
            operation="verify_bonus",
            correlation_id=self.context_id,
            outcome="failed",
            reason="poll_limit_reached",
            level="warning",
            message=(
                f"REFERRAL_BONUS_POLL_EXHAUSTED [code={progress.referral_code}, "
                f"attempts={progress.attempts(ReferralOperation.VERIFY_BONUS)}, waiting_for=bonus_confirmed]"
            ),
        )

    async def _fail(self, progress: ReferralProgress, operation: ReferralOperation, error: Exception, prefix: str = None) -> None:
        message = f"{type(error).__name__}: {error}"
        if prefix:
            message = f"{prefix}: {message}"
        updated = record_error(progress, operation, message, now=self._clock())
        log_event(
            logger,
            component="tracker",
            operation=operation.value,
            correlation_id=self.context_id,
            outcome="failed",
            reason=message[:100],
            level="warning",
            message=(
                f"REFERRAL_OPERATION_FAILED [code={progress.referral_code}, operation={operation.value}, "
                f"attempts={updated.attempts(operation)}, will_retry=True]"
            ),
        )
        await self._commit(updated)

    # =========================================================================
    # Persistence
    # =========================================================================

    async def _ensure_loaded(self) -> bool:
        """True once the stored record (or its absence) is known."""
        if self._loaded:
            return True
        try:
            self._progress = await self._store.load(now=self._clock())
        except ProgressStoreError as e:
            logger.error(f"REFERRAL_PROGRESS_LOAD_FAILED [context={self.context_id}, error={str(e)[:100]}]")
            return False
        self._loaded = True
        if self._stalled:
            # Replayed by _run_exclusive once this flight releases the flag
            for name, action in self._stalled.items():
                self._deferred.setdefault(name, action)
            self._stalled.clear()
        return True

    def _stall(self, trigger: str, action: Callable[[], Awaitable[None]]) -> None:
        # First code wins, as with the busy deferral; other triggers keep the latest
        if trigger == "referral_code":
            self._stalled.setdefault(trigger, action)
        else:
            self._stalled[trigger] = action
        log_event(
            logger,
            component="tracker",
            operation=trigger,
            correlation_id=self.context_id,
            outcome="deferred",
            reason="progress_unavailable",
            level="warning",
            message=f"REFERRAL_TRIGGER_POSTPONED [trigger={trigger}, reason=progress_unavailable]",
        )

    async def _commit(self, progress: ReferralProgress) -> None:
        """Persist a transition: completed records are purged, others saved."""
        self._progress = progress
        try:
            if is_complete(progress):
                await self._store.clear()
            else:
                await self._store.save(progress, now=self._clock())
        except ProgressStoreError as e:
            logger.error(
                f"REFERRAL_PROGRESS_PERSIST_FAILED [code={progress.referral_code}, "
                f"step={progress.step.value}, error={str(e)[:100]}]"
            )
        await self._sync_signal(progress)

        if is_complete(progress):
            log_event(
                logger,
                component="tracker",
                operation="complete",
                correlation_id=self.context_id,
                outcome="success",
                message=f"REFERRAL_COMPLETED [code={progress.referral_code}, bonus_total={progress.bonus_total_amount}]",
            )

    async def _clear_progress(self, reason: str) -> None:
        progress = self._progress
        self._progress = None
        self._loaded = True
        self._stalled.clear()
        try:
            await self._store.clear()
        except ProgressStoreError as e:
            logger.error(f"REFERRAL_PROGRESS_CLEAR_FAILED [reason={reason}, error={str(e)[:100]}]")
        await self._signal.clear()
        log_event(
            logger,
            component="tracker",
            operation="clear",
            correlation_id=self.context_id,
            outcome="cleared",
            reason=reason,
            message=f"REFERRAL_PROGRESS_CLEARED [code={progress.referral_code if progress else None}, reason={reason}]",
        )

    async def _sync_signal(self, progress: Optional[ReferralProgress]) -> None:
        if progress is None or is_complete(progress):
            await self._signal.clear()
        elif progress.step.rank >= ReferralStep.CLICK_TRACKED.rank:
            await self._signal.mirror(progress.referral_code)
