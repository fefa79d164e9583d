"""RedisSessionCache against a mocked redis.asyncio client."""

import asyncio
import hashlib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from usersvc.storage.errors import CacheUnavailable
from usersvc.storage.redis_cache import RedisSessionCache


def _sha(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def create_cache(timeout: float = 2.0) -> RedisSessionCache:
    client = MagicMock()
    client.register_script.side_effect = lambda source: AsyncMock()
    for name in ("getdel", "srem", "ttl", "delete", "set", "exists", "get", "aclose"):
        setattr(client, name, AsyncMock())
    return RedisSessionCache("redis://localhost:6379/0", socket_timeout=timeout, client=client)


class TestRateCounters:
    async def test_record_attempt_uses_hashed_key_and_window(self):
        cache = create_cache()
        cache._record_attempt_script.return_value = 3

        assert await cache.record_attempt("login:10.0.0.1", 900) == 3
        cache._record_attempt_script.assert_awaited_once_with(
            keys=[f"rate:{_sha('login:10.0.0.1')}"], args=[900]
        )

    async def test_is_throttled_compares_with_threshold(self):
        cache = create_cache()
        cache._record_attempt_script.side_effect = [5, 6]
        assert await cache.is_throttled("k", 5, 60) is False
        assert await cache.is_throttled("k", 5, 60) is True

    async def test_window_reset_never_negative(self):
        cache = create_cache()
        cache.client.ttl.return_value = -2
        assert await cache.window_reset_seconds("k") == 0
        cache.client.ttl.return_value = 42
        assert await cache.window_reset_seconds("k") == 42

    async def test_reset_attempts_deletes_bucket(self):
        cache = create_cache()
        await cache.reset_attempts("k")
        cache.client.delete.assert_awaited_once_with(f"rate:{_sha('k')}")


class TestRefreshTokens:
    async def test_store_indexes_under_user(self):
        cache = create_cache()
        await cache.store_refresh_token("raw-token", "user-1", 600)
        cache._store_refresh_script.assert_awaited_once_with(
            keys=[f"auth:refresh:{_sha('raw-token')}", "auth:user_refresh:user-1"],
            args=["user-1", 600],
        )

    async def test_consume_uses_getdel_and_unindexes(self):
        cache = create_cache()
        cache.client.getdel.return_value = "user-1"
        key = f"auth:refresh:{_sha('raw-token')}"

        assert await cache.consume_refresh_token("raw-token") == "user-1"
        cache.client.getdel.assert_awaited_once_with(key)
        cache.client.srem.assert_awaited_once_with("auth:user_refresh:user-1", key)

    async def test_consume_missing_token(self):
        cache = create_cache()
        cache.client.getdel.return_value = None
        assert await cache.consume_refresh_token("raw-token") is None
        cache.client.srem.assert_not_awaited()

    async def test_revoke_returns_count(self):
        cache = create_cache()
        cache._revoke_user_script.return_value = 2
        assert await cache.revoke_user_refresh_tokens("user-1") == 2
        cache._revoke_user_script.assert_awaited_once_with(keys=["auth:user_refresh:user-1"])


class TestDenylistAndCutoff:
    async def test_denylist_sets_ttl(self):
        cache = create_cache()
        await cache.denylist_access_token("jti-1", 120)
        cache.client.set.assert_awaited_once_with("auth:access:denylist:jti-1", "1", ex=120)

    async def test_denylist_skips_expired(self):
        cache = create_cache()
        await cache.denylist_access_token("jti-1", 0)
        cache.client.set.assert_not_awaited()

    async def test_is_denylisted(self):
        cache = create_cache()
        cache.client.exists.return_value = 1
        assert await cache.is_access_token_denylisted("jti-1") is True
        cache.client.exists.return_value = 0
        assert await cache.is_access_token_denylisted("jti-1") is False

    async def test_cutoff_round_trip(self):
        cache = create_cache()
        await cache.set_token_cutoff("user-1", 1700000000, 3600)
        cache.client.set.assert_awaited_once_with("auth:cutoff:user-1", "1700000000", ex=3600)
        cache.client.get.return_value = "1700000000"
        assert await cache.get_token_cutoff("user-1") == 1700000000
        cache.client.get.return_value = None
        assert await cache.get_token_cutoff("user-1") is None


class TestFailures:
    async def test_redis_error_becomes_cache_unavailable(self):
        cache = create_cache()
        cache.client.getdel.side_effect = RedisConnectionError("connection refused")
        with pytest.raises(CacheUnavailable) as excinfo:
            await cache.consume_refresh_token("raw-token")
        assert excinfo.value.operation == "consume_refresh_token"
        assert excinfo.value.backend == "session cache"

    async def test_timeout_becomes_cache_unavailable(self):
        cache = create_cache(timeout=0.01)

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        cache.client.exists.side_effect = slow
        with pytest.raises(CacheUnavailable):
            await cache.is_access_token_denylisted("jti-1")

    async def test_close_closes_client(self):
        cache = create_cache()
        await cache.close()
        cache.client.aclose.assert_awaited_once()


def test_verify_connection_pings_with_sync_client():
    cache = create_cache()
    with patch("usersvc.storage.redis_cache.Redis") as redis_cls:
        sync_client = redis_cls.from_url.return_value
        cache.verify_connection()
    sync_client.ping.assert_called_once()
    sync_client.close.assert_called_once()


def test_verify_connection_propagates_failure():
    cache = create_cache()
    with patch("usersvc.storage.redis_cache.Redis") as redis_cls:
        redis_cls.from_url.return_value.ping.side_effect = RedisConnectionError("down")
        with pytest.raises(RedisConnectionError):
            cache.verify_connection()
