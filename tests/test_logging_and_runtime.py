import pytest

from conftest import make_settings
from usersvc.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)
from usersvc.service.runtime import Runtime, _mask_url_password
from usersvc.storage.memory import MemoryCredentialStore, MemorySessionCache


class TestLogging:
    def test_pii_keys_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "email": "someone@example.com",
                "password": "abc",
                "refresh_token": "tok-1234567890",
                "user_id": "u-1",
            },
        )
        assert event["email"] == "so***om"
        assert event["password"] == "***"
        assert event["refresh_token"] == "to***90"
        assert event["user_id"] == "u-1"

    def test_correlation_id_generated_when_missing(self):
        cid = set_correlation_id()
        assert cid and get_correlation_id() == cid
        assert set_correlation_id("given") == "given"

    def test_sanitize_error_message(self):
        message = sanitize_error_message(
            "connection to server failed: SELECT * FROM users at /var/lib/pg password=hunter2"
        )
        assert "SELECT" not in message
        assert "/var/lib/pg" not in message
        assert "hunter2" not in message
        assert sanitize_error_message("") == "An error occurred"


class TestRuntime:
    def test_mask_url_password(self):
        assert _mask_url_password("redis://:s3cret@cache:6379/0") == "redis://:***@cache:6379/0"
        assert (
            _mask_url_password("postgresql://app:pw@db:5432/users")
            == "postgresql://app:***@db:5432/users"
        )
        assert _mask_url_password("redis://cache:6379") == "redis://cache:6379"
        assert _mask_url_password(None) is None

    def test_memory_backends_from_settings(self):
        runtime = Runtime(make_settings())
        assert isinstance(runtime.store, MemoryCredentialStore)
        assert isinstance(runtime.cache, MemorySessionCache)
        assert runtime.auth.tokens is runtime.tokens

    def test_redis_required_outside_dev_modes(self):
        settings = make_settings(
            use_memory_cache=False,
            test_mode=False,
            allow_redis_fallback_dev=False,
            redis_url="redis://127.0.0.1:1/0",
            cache_timeout_seconds=0.2,
        )
        with pytest.raises(RuntimeError):
            Runtime(settings, store=MemoryCredentialStore())

    def test_redis_fallback_in_test_mode(self):
        settings = make_settings(
            use_memory_cache=False,
            redis_url="redis://127.0.0.1:1/0",
            cache_timeout_seconds=0.2,
        )
        runtime = Runtime(settings, store=MemoryCredentialStore())
        assert isinstance(runtime.cache, MemorySessionCache)

    async def test_check_dependencies_and_close(self):
        runtime = Runtime(make_settings())
        deps = await runtime.check_dependencies(1.0)
        assert deps["database"]["status"] == "healthy"
        assert deps["cache"]["type"] == "MemorySessionCache"
        await runtime.close()
