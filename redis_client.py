"""
Redis Client Module

Shared redis.asyncio connection for the Redis progress store and the Redis
compatibility signal. One client per process, created lazily.

Keys are namespaced per environment and context:
    {prefix}:{APP_ENV}:{context_id}
so STAGE and PROD trackers can share one Redis instance.

INFRASTRUCTURE ONLY - no referral logic here.
"""
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

import config
from attribution.core.structured_logger import log_event

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def build_key(prefix: str, context_id: str, environment: Optional[str] = None) -> str:
    """Namespaced key: build_key("referral_progress", "ctx-1") -> "referral_progress:prod:ctx-1" """
    return f"{prefix}:{environment or config.APP_ENV}:{context_id}"


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Get or create the Redis client (singleton).

    Returns:
        Redis client, or None if REDIS_URL is not configured

    Raises:
        RuntimeError: If the client cannot be created from REDIS_URL
    """
    global _redis_client

    if not config.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                config.REDIS_URL,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=4,
            )
        except ValueError as e:
            logger.error(f"REDIS_CLIENT_CREATE_FAILED [error={str(e)[:100]}]")
            raise RuntimeError(f"Redis client creation failed: {e}") from e
        logger.info(f"REDIS_CLIENT_CREATED [env={config.APP_ENV}, store={config.PROGRESS_STORE}]")

    return _redis_client


async def check_redis_connection() -> bool:
    """
    PING the configured Redis.

    Never raises: returns False when Redis is not configured or unreachable,
    so the runner can fall back to a process-local store.
    """
    try:
        client = await get_redis_client()
        if client is None:
            return False
        ok = bool(await client.ping())
    except (RuntimeError, RedisError, OSError) as e:
        log_event(
            logger,
            component="infra",
            operation="redis_health_check",
            outcome="failed",
            reason=str(e)[:100],
            level="warning",
        )
        return False

    log_event(
        logger,
        component="infra",
        operation="redis_health_check",
        outcome="success" if ok else "failed",
        level="info" if ok else "warning",
    )
    return ok


async def close_redis_client() -> None:
    """Close the connection pool. Safe to call multiple times."""
    global _redis_client

    if _redis_client is None:
        return
    try:
        await _redis_client.aclose()
        logger.info("REDIS_CLIENT_CLOSED")
    except (RedisError, OSError) as e:
        logger.error(f"REDIS_CLIENT_CLOSE_FAILED [error={str(e)[:100]}]")
    finally:
        _redis_client = None
