"""
Unit tests for the shared Redis client helpers.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from redis.exceptions import ConnectionError as RedisConnectionError

import config
import redis_client


class TestBuildKey:
    """Tests for build_key function"""

    def test_explicit_environment(self):
        assert redis_client.build_key("referral_progress", "ctx-1", "stage") == "referral_progress:stage:ctx-1"

    def test_defaults_to_app_env(self):
        assert redis_client.build_key("cgdao_ref_code", "ctx-1") == f"cgdao_ref_code:{config.APP_ENV}:ctx-1"


class TestCheckRedisConnection:
    """Tests for check_redis_connection function"""

    @pytest.mark.asyncio
    async def test_not_configured(self):
        with patch.object(config, "REDIS_URL", ""):
            assert await redis_client.get_redis_client() is None
            assert await redis_client.check_redis_connection() is False

    @pytest.mark.asyncio
    async def test_ping_ok(self):
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        with patch("redis_client.get_redis_client", new=AsyncMock(return_value=client)):
            assert await redis_client.check_redis_connection() is True

    @pytest.mark.asyncio
    async def test_ping_failure_never_raises(self):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        with patch("redis_client.get_redis_client", new=AsyncMock(return_value=client)):
            assert await redis_client.check_redis_connection() is False

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        client = MagicMock()
        client.aclose = AsyncMock()
        with patch.object(redis_client, "_redis_client", client):
            await redis_client.close_redis_client()
            client.aclose.assert_awaited_once()
            assert redis_client._redis_client is None
            await redis_client.close_redis_client()
