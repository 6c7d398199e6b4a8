"""
Cross-process compatibility signal.

Server requests issued outside the tracker still look for two short-lived
flags: the referral code and a "tracked" marker. The tracker mirrors them
whenever progress is at click_tracked or later and clears them on terminal
states.

Implementations:
- CookieJarSignal: writes the flags into an httpx.Cookies jar shared with
  outgoing requests (the browser-cookie equivalent)
- RedisSignal: short-lived Redis keys visible to other processes
- NullSignal: no-op (pure backend deployments rely on the store alone)
"""

import logging
from typing import Optional

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError

import config
from redis_client import build_key

logger = logging.getLogger(__name__)

REFERRAL_CODE_COOKIE = "cgdao_ref_code"
REFERRAL_TRACKED_COOKIE = "cgdao_ref_tracked"


class CompatibilitySignal:
    """Base class: mirror(code) sets both flags, clear() removes them."""

    async def mirror(self, referral_code: str) -> None:
        raise NotImplementedError

    async def clear(self) -> None:
        raise NotImplementedError

    async def get_referral_code(self) -> Optional[str]:
        return None


class NullSignal(CompatibilitySignal):
    async def mirror(self, referral_code: str) -> None:
        return None

    async def clear(self) -> None:
        return None


class CookieJarSignal(CompatibilitySignal):
    """
    Flags stored as cookies in an httpx jar.

    Pass the jar of the AsyncClient used for server calls (client.cookies)
    and every later request carries the flags.
    """

    def __init__(self, cookies: httpx.Cookies, domain: str = "", path: str = "/"):
        self.cookies = cookies
        self.domain = domain
        self.path = path

    async def mirror(self, referral_code: str) -> None:
        self.cookies.set(REFERRAL_CODE_COOKIE, referral_code, domain=self.domain, path=self.path)
        self.cookies.set(REFERRAL_TRACKED_COOKIE, "true", domain=self.domain, path=self.path)

    async def clear(self) -> None:
        for name in (REFERRAL_CODE_COOKIE, REFERRAL_TRACKED_COOKIE):
            try:
                self.cookies.delete(name, domain=self.domain or None, path=self.path)
            except KeyError:
                pass

    async def get_referral_code(self) -> Optional[str]:
        return self.cookies.get(REFERRAL_CODE_COOKIE)


class RedisSignal(CompatibilitySignal):
    """
    Flags as Redis keys with a max-age:
        cgdao_ref_code:{environment}:{context_id}
        cgdao_ref_tracked:{environment}:{context_id}
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        context_id: str,
        environment: Optional[str] = None,
        max_age_seconds: Optional[int] = None,
    ):
        self.redis_client = redis_client
        self.max_age_seconds = max_age_seconds or config.SIGNAL_MAX_AGE_SECONDS
        self.code_key = build_key(REFERRAL_CODE_COOKIE, context_id, environment)
        self.tracked_key = build_key(REFERRAL_TRACKED_COOKIE, context_id, environment)

    async def mirror(self, referral_code: str) -> None:
        try:
            await self.redis_client.set(self.code_key, referral_code, ex=self.max_age_seconds)
            await self.redis_client.set(self.tracked_key, "true", ex=self.max_age_seconds)
        except RedisError as e:
            logger.warning(f"REFERRAL_SIGNAL_MIRROR_FAILED [key={self.code_key}, error={str(e)[:100]}]")

    async def clear(self) -> None:
        try:
            await self.redis_client.delete(self.code_key, self.tracked_key)
        except RedisError as e:
            logger.warning(f"REFERRAL_SIGNAL_CLEAR_FAILED [key={self.code_key}, error={str(e)[:100]}]")

    async def get_referral_code(self) -> Optional[str]:
        try:
            return await self.redis_client.get(self.code_key)
        except RedisError as e:
            logger.warning(f"REFERRAL_SIGNAL_READ_FAILED [key={self.code_key}, error={str(e)[:100]}]")
            return None
