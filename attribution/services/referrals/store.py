"""
Progress Store - durable persistence for the single in-flight ReferralProgress.

One key/file per context holds the serialized record. Implementations:
- RedisProgressStore: redis.asyncio, key TTL = progress TTL
- FileProgressStore: local JSON file, atomic replace
- MemoryProgressStore: process-local (tests, ephemeral runs)

load() never returns a stale record: payloads with another schema version,
expired records and malformed payloads are discarded (and removed).
Backend failures raise ProgressStoreError; the tracker decides what to do.
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Dict, Any

import redis.asyncio as redis
from redis.exceptions import RedisError

import config
from redis_client import build_key
from attribution.services.referrals.exceptions import ProgressStoreError
from attribution.services.referrals.progress import (
    PROGRESS_SCHEMA_VERSION,
    ReferralProgress,
    is_expired,
    progress_from_dict,
    progress_to_dict,
)

logger = logging.getLogger(__name__)

STORAGE_KEY_PREFIX = "referral_progress"


class ProgressStore:
    """
    Base class for progress stores.

    Subclasses implement _read_raw / _write_raw / _delete_raw; decoding,
    version and expiry checks live here.
    """

    def __init__(self, ttl: Optional[timedelta] = None):
        self.ttl = ttl if ttl is not None else timedelta(days=config.PROGRESS_TTL_DAYS)

    async def _read_raw(self) -> Optional[str]:
        raise NotImplementedError

    async def _write_raw(self, payload: str, expires_in: timedelta) -> None:
        raise NotImplementedError

    async def _delete_raw(self) -> None:
        raise NotImplementedError

    async def load(self, now: Optional[datetime] = None) -> Optional[ReferralProgress]:
        raw = await self._read_raw()
        if not raw:
            return None

        progress = self._decode(raw)
        if progress is None:
            await self.clear()
            return None

        if is_expired(progress, self.ttl, now or datetime.now(timezone.utc)):
            logger.info(
                f"REFERRAL_PROGRESS_EXPIRED [code={progress.referral_code}, "
                f"step={progress.step.value}, created_at={progress.created_at.isoformat()}]"
            )
            await self.clear()
            return None

        return progress

    async def save(self, progress: ReferralProgress, now: Optional[datetime] = None) -> None:
        payload = json.dumps(progress_to_dict(progress), separators=(",", ":"))
        # Lifetime counts from created_at, not from the last write
        expires_in = progress.created_at + self.ttl - (now or datetime.now(timezone.utc))
        await self._write_raw(payload, expires_in)
        logger.debug(f"REFERRAL_PROGRESS_SAVED [code={progress.referral_code}, step={progress.step.value}]")

    async def clear(self) -> None:
        await self._delete_raw()
        logger.debug("REFERRAL_PROGRESS_CLEARED")

    def _decode(self, raw: str) -> Optional[ReferralProgress]:
        try:
            data: Dict[str, Any] = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"REFERRAL_PROGRESS_CORRUPT [reason=invalid_json, error={str(e)[:100]}]")
            return None

        if not isinstance(data, dict):
            logger.warning("REFERRAL_PROGRESS_CORRUPT [reason=not_an_object]")
            return None

        if data.get("version") != PROGRESS_SCHEMA_VERSION:
            logger.info(
                f"REFERRAL_PROGRESS_VERSION_MISMATCH [stored={data.get('version')}, "
                f"expected={PROGRESS_SCHEMA_VERSION}]"
            )
            return None

        try:
            return progress_from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"REFERRAL_PROGRESS_CORRUPT [reason=invalid_fields, error={type(e).__name__}: {str(e)[:100]}]")
            return None


class MemoryProgressStore(ProgressStore):
    """Keeps the serialized record in memory."""

    def __init__(self, ttl: Optional[timedelta] = None):
        super().__init__(ttl)
        self.payload: Optional[str] = None

    async def _read_raw(self) -> Optional[str]:
        return self.payload

    async def _write_raw(self, payload: str, expires_in: timedelta) -> None:
        self.payload = payload

    async def _delete_raw(self) -> None:
        self.payload = None


class FileProgressStore(ProgressStore):
    """
    JSON file store.

    Writes go to a temp file in the same directory followed by os.replace,
    so a crash mid-write leaves either the old or the new record.
    """

    def __init__(self, path, ttl: Optional[timedelta] = None):
        super().__init__(ttl)
        self.path = Path(path)

    def _read_sync(self) -> Optional[str]:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write_sync(self, payload: str) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _delete_sync(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    async def _read_raw(self) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._read_sync)
        except OSError as e:
            raise ProgressStoreError(f"Failed to read progress file {self.path}: {e}") from e

    async def _write_raw(self, payload: str, expires_in: timedelta) -> None:
        try:
            await asyncio.to_thread(self._write_sync, payload)
        except OSError as e:
            raise ProgressStoreError(f"Failed to write progress file {self.path}: {e}") from e

    async def _delete_raw(self) -> None:
        try:
            await asyncio.to_thread(self._delete_sync)
        except OSError as e:
            raise ProgressStoreError(f"Failed to delete progress file {self.path}: {e}") from e


class RedisProgressStore(ProgressStore):
    """
    Redis store: key referral_progress:{environment}:{context_id}.

    The key expires when the record itself would (created_at + TTL), so
    abandoned records disappear even if this context never loads again.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        context_id: str,
        environment: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ):
        super().__init__(ttl)
        self.redis_client = redis_client
        self.context_id = context_id
        self.key = build_key(STORAGE_KEY_PREFIX, context_id, environment)

    async def _read_raw(self) -> Optional[str]:
        try:
            return await self.redis_client.get(self.key)
        except RedisError as e:
            raise ProgressStoreError(f"Redis GET failed for {self.key}: {e}") from e

    async def _write_raw(self, payload: str, expires_in: timedelta) -> None:
        # Redis rejects a non-positive EX
        ex = max(1, int(expires_in.total_seconds()))
        try:
            await self.redis_client.set(self.key, payload, ex=ex)
        except RedisError as e:
            raise ProgressStoreError(f"Redis SET failed for {self.key}: {e}") from e

    async def _delete_raw(self) -> None:
        try:
            await self.redis_client.delete(self.key)
        except RedisError as e:
            raise ProgressStoreError(f"Redis DEL failed for {self.key}: {e}") from e
