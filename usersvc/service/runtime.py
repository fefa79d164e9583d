from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse

from usersvc.config import Settings
from usersvc.logging import get_logger
from usersvc.service.auth import AuthService
from usersvc.service.metrics import ServiceMetrics
from usersvc.service.passwords import PasswordService
from usersvc.service.tokens import TokenEngine
from usersvc.storage.interfaces import CredentialStore, SessionCache
from usersvc.storage.memory import MemoryCredentialStore, MemorySessionCache
from usersvc.storage.postgres import PostgresCredentialStore
from usersvc.storage.redis_cache import RedisSessionCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Owns the store, cache and services for one app instance.

    ``store`` and ``cache`` may be injected (tests pass in-memory or mocked
    backends); otherwise they are built from ``settings``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[CredentialStore] = None,
        cache: Optional[SessionCache] = None,
        metrics: Optional[ServiceMetrics] = None,
    ) -> None:
        self.settings = settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            use_memory_cache=settings.use_memory_cache,
            test_mode=settings.test_mode,
        )
        self.store: CredentialStore = store or self._build_store()
        self.cache: SessionCache = cache or self._build_cache()
        self.metrics = metrics or ServiceMetrics()
        self.passwords = PasswordService.from_settings(settings)
        self.tokens = TokenEngine.from_settings(settings, self.cache)
        self.auth = AuthService(
            self.store,
            self.cache,
            settings,
            passwords=self.passwords,
            tokens=self.tokens,
            metrics=self.metrics,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
        )

    def _build_store(self) -> CredentialStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store: CredentialStore = MemoryCredentialStore(self.settings.memory_state_path)
            else:
                store = PostgresCredentialStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> SessionCache:
        if self.settings.use_memory_cache:
            return MemorySessionCache()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisSessionCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.cache_timeout_seconds,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh tokens and rate limits; start Redis or set "
                "USE_MEMORY_CACHE=true, TEST_MODE=true or ALLOW_REDIS_FALLBACK_DEV=true."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; refresh tokens and rate "
                "limits are process-local."
            ),
            mode=fallback_mode,
        )
        return MemorySessionCache()

    async def check_dependencies(self, timeout_seconds: float = 3.0) -> Dict[str, Any]:
        """Probe the store and cache; each probe is bounded by ``timeout_seconds``."""

        async def _probe(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), timeout_seconds)
                return True
            except asyncio.TimeoutError:
                logger.error("health_check_timeout", component=label, timeout=timeout_seconds)
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        db_ok = await _probe("database", self.store.verify_connection)
        cache_ok = await _probe("cache", self.cache.verify_connection)
        return {
            "database": {"status": "healthy" if db_ok else "unhealthy", "type": type(self.store).__name__},
            "cache": {"status": "healthy" if cache_ok else "unhealthy", "type": type(self.cache).__name__},
        }

    async def close(self) -> None:
        try:
            await self.cache.close()
        finally:
            await asyncio.to_thread(self.store.close)
        logger.info("runtime_closed")
