import argparse
import asyncio
import logging
import sys
import uuid

# Configure logging FIRST (before any other imports that may log)
# Routes INFO/WARNING → stdout, ERROR/CRITICAL → stderr for correct container classification
from attribution.core.logging_config import setup_logging
setup_logging()

import config
import redis_client
from attribution.core.structured_logger import log_event, mask_wallet
from attribution.services.referrals import (
    CookieJarSignal,
    FileProgressStore,
    MemoryProgressStore,
    RedisProgressStore,
    RedisSignal,
    ReferralApiClient,
    ReferralTracker,
)

logger = logging.getLogger(__name__)

SETTLE_POLL_SECONDS = 1.0


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Referral attribution tracker")
    parser.add_argument("--url", help="Entry URL the visitor landed on (with ?ref=<code>)")
    parser.add_argument("--referrer", help="Referring page URL (Referer header equivalent)")
    parser.add_argument("--wallet", help="Connected account address")
    parser.add_argument(
        "--context-id",
        default=None,
        help="Browser/session context owning the progress record (default: random)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process the triggers once and exit without waiting for retries",
    )
    return parser.parse_args(argv)


async def build_store_and_signal(context_id: str, http_cookies):
    """Pick the progress store and compatibility signal from PROGRESS_STORE."""
    if config.PROGRESS_STORE == "redis":
        client = await redis_client.get_redis_client()
        if client is not None and await redis_client.check_redis_connection():
            return RedisProgressStore(client, context_id), RedisSignal(client, context_id)
        # Degraded: no Redis, keep the run alive with a process-local store
        logger.warning("REFERRAL_STORE_DEGRADED [configured=redis, using=memory]")
        return MemoryProgressStore(), CookieJarSignal(http_cookies)

    if config.PROGRESS_STORE == "file":
        return FileProgressStore(config.PROGRESS_FILE_PATH), CookieJarSignal(http_cookies)

    return MemoryProgressStore(), CookieJarSignal(http_cookies)


def workflow_settled(tracker: ReferralTracker) -> bool:
    """Nothing left to do: no record, terminal record, waiting for an account or bonus signal."""
    return tracker.is_settled()


async def main(argv=None):
    args = parse_args(argv)
    context_id = args.context_id or str(uuid.uuid4())

    logger.info(f"Starting referral tracker in {config.APP_ENV.upper()} environment")
    logger.info(f"Using REFERRAL_API_URL from {config.APP_ENV.upper()}_REFERRAL_API_URL")
    logger.info(f"PROGRESS_STORE={config.PROGRESS_STORE}, context={context_id}")

    client = ReferralApiClient.create()
    store, signal = await build_store_and_signal(context_id, client.cookies)
    tracker = ReferralTracker(store, client, signal=signal, context_id=context_id)

    stop_event = asyncio.Event()
    retry_task = None
    try:
        await tracker.start()

        if args.url:
            await tracker.on_entry(args.url, referrer_url=args.referrer)
        if args.wallet:
            logger.info(f"REFERRAL_CLI_ACCOUNT [wallet={mask_wallet(args.wallet)}]")
            await tracker.on_account_changed(args.wallet, True)

        if not args.once:
            retry_task = asyncio.create_task(tracker.run_retry_loop(stop_event))
            while not workflow_settled(tracker):
                await asyncio.sleep(SETTLE_POLL_SECONDS)

        progress = tracker.progress
        log_event(
            logger,
            component="runner",
            operation="run",
            correlation_id=context_id,
            outcome="success",
            message=(
                f"REFERRAL_RUN_FINISHED [step={progress.step.value if progress else None}, "
                f"complete={tracker.is_referral_complete()}]"
            ),
        )
    finally:
        log_event(logger, component="shutdown", operation="shutdown_start", outcome="success")

        stop_event.set()
        if retry_task is not None:
            try:
                await retry_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Error during shutdown of retry loop: {e}")

        try:
            await client.aclose()
        except Exception as e:
            logger.debug(f"Error closing http client: {e}")

        await redis_client.close_redis_client()
        log_event(logger, component="shutdown", operation="shutdown_completed", outcome="success")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Referral tracker stopped")
        sys.exit(0)
