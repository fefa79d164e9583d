from __future__ import annotations

import asyncio
import hashlib
from typing import Any, Awaitable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from usersvc.logging import get_logger
from usersvc.storage.errors import CacheUnavailable

logger = get_logger(__name__)


class RedisSessionCache:
    """Redis-backed refresh tokens, attempt counters and token denylists."""

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # Fixed window: INCR and open the window TTL only on the first hit
    _ATTEMPT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
elseif redis.call('TTL', KEYS[1]) < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    # Store the token and index it under its owner in one round trip
    _STORE_REFRESH_SCRIPT = """
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
redis.call('SADD', KEYS[2], KEYS[1])
local ttl = redis.call('TTL', KEYS[2])
if ttl < tonumber(ARGV[2]) then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end
return 1
"""

    _REVOKE_USER_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
local revoked = 0
for _, key in ipairs(members) do
  revoked = revoked + redis.call('DEL', key)
end
redis.call('DEL', KEYS[1])
return revoked
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = socket_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._record_attempt_script = self.client.register_script(self._ATTEMPT_SCRIPT)
        self._store_refresh_script = self.client.register_script(
            self._STORE_REFRESH_SCRIPT
        )
        self._revoke_user_script = self.client.register_script(self._REVOKE_USER_SCRIPT)

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.error("cache_timeout", operation=operation, timeout=self.operation_timeout)
            raise CacheUnavailable(operation, exc) from exc
        except RedisError as exc:
            logger.error("cache_unavailable", operation=operation, error=str(exc))
            raise CacheUnavailable(operation, exc) from exc

    @staticmethod
    def _rate_key(bucket_key: str) -> str:
        # Hash so client-controlled identifiers cannot inject key delimiters
        return f"rate:{hashlib.sha256(bucket_key.encode()).hexdigest()}"

    @staticmethod
    def _token_key(token: str) -> str:
        return f"auth:refresh:{hashlib.sha256(token.encode()).hexdigest()}"

    @staticmethod
    def _user_tokens_key(user_id: str) -> str:
        return f"auth:user_refresh:{user_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity with a short-lived sync client.

        A sync client keeps the async pool from binding to a temporary loop
        during startup and health probes.
        """
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def record_attempt(self, bucket_key: str, window_seconds: int) -> int:
        result = await self._run(
            "record_attempt",
            self._record_attempt_script(
                keys=[self._rate_key(bucket_key)], args=[max(1, int(window_seconds))]
            ),
        )
        return int(result)

    async def is_throttled(
        self, bucket_key: str, threshold: int, window_seconds: int
    ) -> bool:
        return await self.record_attempt(bucket_key, window_seconds) > threshold

    async def window_reset_seconds(self, bucket_key: str) -> int:
        ttl = await self._run("window_ttl", self.client.ttl(self._rate_key(bucket_key)))
        return max(0, int(ttl))

    async def reset_attempts(self, bucket_key: str) -> None:
        await self._run("reset_attempts", self.client.delete(self._rate_key(bucket_key)))

    async def store_refresh_token(
        self, token: str, user_id: str, ttl_seconds: int
    ) -> None:
        await self._run(
            "store_refresh_token",
            self._store_refresh_script(
                keys=[self._token_key(token), self._user_tokens_key(user_id)],
                args=[user_id, max(1, int(ttl_seconds))],
            ),
        )

    async def consume_refresh_token(self, token: str) -> Optional[str]:
        """Atomically fetch and delete a refresh token (single use).

        GETDEL (Redis 6.2+) means two concurrent rotations of the same token
        cannot both observe it.
        """
        key = self._token_key(token)
        user_id = await self._run("consume_refresh_token", self.client.getdel(key))
        if user_id:
            await self._run(
                "unindex_refresh_token",
                self.client.srem(self._user_tokens_key(user_id), key),
            )
        return user_id

    async def revoke_user_refresh_tokens(self, user_id: str) -> int:
        revoked = await self._run(
            "revoke_user_refresh_tokens",
            self._revoke_user_script(keys=[self._user_tokens_key(user_id)]),
        )
        return int(revoked or 0)

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Deny an access token until its natural expiry."""
        if ttl_seconds > 0:
            await self._run(
                "denylist_access_token",
                self.client.set(f"auth:access:denylist:{jti}", "1", ex=int(ttl_seconds)),
            )

    async def is_access_token_denylisted(self, jti: str) -> bool:
        exists = await self._run(
            "is_access_token_denylisted",
            self.client.exists(f"auth:access:denylist:{jti}"),
        )
        return bool(exists)

    async def set_token_cutoff(
        self, user_id: str, issued_before: int, ttl_seconds: int
    ) -> None:
        await self._run(
            "set_token_cutoff",
            self.client.set(
                f"auth:cutoff:{user_id}", str(int(issued_before)), ex=max(1, int(ttl_seconds))
            ),
        )

    async def get_token_cutoff(self, user_id: str) -> Optional[int]:
        raw = await self._run("get_token_cutoff", self.client.get(f"auth:cutoff:{user_id}"))
        return int(raw) if raw is not None else None

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
