"""
Unit tests for progress stores.

Tests focus on:
- Save / load / clear for memory, file and Redis backends
- Expired, outdated and corrupt payloads are discarded
- Backend failures surface as ProgressStoreError
"""
import json
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError

from attribution.services.referrals.exceptions import ProgressStoreError
from attribution.services.referrals.progress import (
    ReferralOperation,
    mark_click_tracked,
    progress_to_dict,
    record_error,
)
from attribution.services.referrals.store import (
    FileProgressStore,
    MemoryProgressStore,
    RedisProgressStore,
)


class TestMemoryProgressStore:
    """Tests for MemoryProgressStore"""

    @pytest.mark.asyncio
    async def test_empty(self, memory_store, mock_now):
        assert await memory_store.load(now=mock_now) is None

    @pytest.mark.asyncio
    async def test_save_load_clear(self, memory_store, progress_initiated, mock_now):
        progress = record_error(
            mark_click_tracked(progress_initiated, "h", now=mock_now),
            ReferralOperation.REGISTER_CONVERSION,
            "503",
            now=mock_now,
        )
        await memory_store.save(progress)
        assert await memory_store.load(now=mock_now) == progress

        await memory_store.clear()
        assert memory_store.payload is None
        assert await memory_store.load(now=mock_now) is None

    @pytest.mark.asyncio
    async def test_expired_record_discarded(self, progress_initiated, mock_now):
        store = MemoryProgressStore(ttl=timedelta(days=30))
        await store.save(progress_initiated)

        assert await store.load(now=mock_now + timedelta(days=31)) is None
        assert store.payload is None

    @pytest.mark.asyncio
    async def test_version_mismatch_discarded(self, memory_store, progress_initiated, mock_now):
        data = progress_to_dict(progress_initiated)
        data["version"] = 0
        memory_store.payload = json.dumps(data)

        assert await memory_store.load(now=mock_now) is None
        assert memory_store.payload is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", ["not json", "[1, 2]", json.dumps({"version": 1, "step": "initiated"})])
    async def test_corrupt_payload_discarded(self, memory_store, mock_now, payload):
        memory_store.payload = payload
        assert await memory_store.load(now=mock_now) is None
        assert memory_store.payload is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field, value",
        [
            ("attempt_count", "x"),
            ("attempt_count", [1, 2]),
            ("last_error", "boom"),
        ],
    )
    async def test_malformed_nested_field_discarded(self, memory_store, progress_initiated, mock_now, field, value):
        """Well-formed JSON with a wrong nested shape is treated as corrupt, not raised"""
        data = progress_to_dict(progress_initiated)
        data[field] = value
        memory_store.payload = json.dumps(data)

        assert await memory_store.load(now=mock_now) is None
        assert memory_store.payload is None


class TestFileProgressStore:
    """Tests for FileProgressStore"""

    @pytest.mark.asyncio
    async def test_round_trip_on_disk(self, tmp_path, progress_initiated, mock_now):
        path = tmp_path / "state" / "progress.json"
        store = FileProgressStore(path)

        await store.save(progress_initiated)
        assert path.exists()
        assert json.loads(path.read_text())["referral_code"] == "CG-ab12cd"

        # A new store instance (process restart) sees the same record
        assert await FileProgressStore(path).load(now=mock_now) == progress_initiated

    @pytest.mark.asyncio
    async def test_clear_missing_file_is_noop(self, tmp_path):
        store = FileProgressStore(tmp_path / "missing.json")
        await store.clear()
        await store.clear()

    @pytest.mark.asyncio
    async def test_clear_removes_file(self, tmp_path, progress_initiated):
        path = tmp_path / "progress.json"
        store = FileProgressStore(path)
        await store.save(progress_initiated)
        await store.clear()
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, tmp_path, progress_initiated):
        store = FileProgressStore(tmp_path / "progress.json")
        await store.save(progress_initiated)
        await store.save(mark_click_tracked(progress_initiated))
        assert [p.name for p in tmp_path.iterdir()] == ["progress.json"]

    @pytest.mark.asyncio
    async def test_unreadable_path_raises_store_error(self, tmp_path):
        # A directory where the file should be
        path = tmp_path / "progress.json"
        path.mkdir()
        with pytest.raises(ProgressStoreError):
            await FileProgressStore(path).load()


class TestRedisProgressStore:
    """Tests for RedisProgressStore with a mocked redis client"""

    def _redis(self):
        client = MagicMock()
        client.get = AsyncMock(return_value=None)
        client.set = AsyncMock(return_value=True)
        client.delete = AsyncMock(return_value=1)
        return client

    def test_key_layout(self):
        store = RedisProgressStore(self._redis(), "ctx-1", environment="stage")
        assert store.key == "referral_progress:stage:ctx-1"

    @pytest.mark.asyncio
    async def test_save_sets_ttl(self, progress_initiated, mock_now):
        client = self._redis()
        store = RedisProgressStore(client, "ctx-1", environment="stage", ttl=timedelta(days=30))

        await store.save(progress_initiated, now=mock_now)

        client.set.assert_awaited_once()
        args, kwargs = client.set.call_args
        assert args[0] == "referral_progress:stage:ctx-1"
        assert json.loads(args[1])["step"] == "initiated"
        assert kwargs["ex"] == 30 * 24 * 60 * 60

    @pytest.mark.asyncio
    async def test_ttl_counts_from_created_at(self, progress_initiated, mock_now):
        """Re-saving an older record does not extend the key past created_at + TTL"""
        client = self._redis()
        store = RedisProgressStore(client, "ctx-1", environment="stage", ttl=timedelta(days=30))

        await store.save(mark_click_tracked(progress_initiated, now=mock_now), now=mock_now + timedelta(days=10))

        assert client.set.call_args.kwargs["ex"] == 20 * 24 * 60 * 60

    @pytest.mark.asyncio
    async def test_ttl_never_below_one_second(self, progress_initiated, mock_now):
        client = self._redis()
        store = RedisProgressStore(client, "ctx-1", environment="stage", ttl=timedelta(days=30))

        await store.save(progress_initiated, now=mock_now + timedelta(days=31))

        assert client.set.call_args.kwargs["ex"] == 1

    @pytest.mark.asyncio
    async def test_load(self, progress_initiated, mock_now):
        client = self._redis()
        client.get.return_value = json.dumps(progress_to_dict(progress_initiated))
        store = RedisProgressStore(client, "ctx-1", environment="stage")

        assert await store.load(now=mock_now) == progress_initiated

    @pytest.mark.asyncio
    async def test_redis_failure_raises_store_error(self):
        client = self._redis()
        client.get.side_effect = RedisConnectionError("down")
        store = RedisProgressStore(client, "ctx-1", environment="stage")

        with pytest.raises(ProgressStoreError):
            await store.load()

    @pytest.mark.asyncio
    async def test_clear_deletes_key(self):
        client = self._redis()
        store = RedisProgressStore(client, "ctx-1", environment="stage")
        await store.clear()
        client.delete.assert_awaited_once_with("referral_progress:stage:ctx-1")
