import asyncio
import inspect
import os

# Settings for anything that reads the environment before a fixture runs
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from usersvc.app import create_app  # noqa: E402
from usersvc.config import Settings  # noqa: E402
from usersvc.service.runtime import Runtime  # noqa: E402
from usersvc.storage.memory import MemoryCredentialStore, MemorySessionCache  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"
TEST_PASSWORD = "TestPassword123!"


def make_settings(**overrides) -> Settings:
    """Memory-backed settings with cheap argon2 parameters."""
    values = dict(
        test_mode=True,
        use_memory_store=True,
        use_memory_cache=True,
        jwt_secret=TEST_SECRET,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        log_level="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def runtime(settings):
    return Runtime(settings, store=MemoryCredentialStore(), cache=MemorySessionCache())


@pytest.fixture
def app(settings, runtime):
    return create_app(settings, runtime=runtime)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def register_user(client):
    """Register through the API and return the response ``data``."""

    def _register(email="testuser@example.com", password=TEST_PASSWORD, **names):
        body = {
            "email": email,
            "password": password,
            "first_name": names.get("first_name", "Test"),
            "last_name": names.get("last_name", "User"),
        }
        response = client.post("/api/v1/auth/register", json=body)
        assert response.status_code == 201, response.json()
        return response.json()["data"]

    return _register


@pytest.fixture
def make_admin(runtime):
    """Create an admin directly through the auth service; returns the user."""

    def _make(email="admin@example.com", password=TEST_PASSWORD):
        user, _ = asyncio.run(
            runtime.auth.ensure_admin(email, password, first_name="Ada", last_name="Admin")
        )
        return user

    return _make


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
