import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from conftest import TEST_PASSWORD, make_settings
from usersvc.api.schemas import (
    LoginRequest,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenRefreshRequest,
    UserListQuery,
)
from usersvc.app import create_app
from usersvc.service.runtime import Runtime
from usersvc.storage.memory import MemoryCredentialStore, MemorySessionCache


def test_health_and_live(client):
    for path in ("/health", "/live"):
        response = client.get(path)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["service"] == "user-service"
        assert body["version"]
        assert body["timestamp"]


def test_ready_when_dependencies_answer(client):
    response = client.get("/ready")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ready"
    assert body["dependencies"]["database"]["status"] == "healthy"
    assert body["dependencies"]["cache"]["status"] == "healthy"


def test_ready_reports_failing_store(client, runtime, monkeypatch):
    def broken():
        raise ConnectionError("db down")

    monkeypatch.setattr(runtime.store, "verify_connection", broken)
    response = client.get("/ready")
    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "not ready"
    assert body["dependencies"]["database"]["status"] == "unhealthy"
    assert body["dependencies"]["cache"]["status"] == "healthy"


def test_metrics_count_requests_and_auth_events(client):
    client.post(
        "/api/v1/auth/register",
        json={
            "email": "metrics@example.com",
            "password": TEST_PASSWORD,
            "first_name": "Met",
            "last_name": "Rics",
        },
    )
    client.post("/api/v1/auth/login", json={"email": "metrics@example.com", "password": "Nope-123!"})

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    text = response.text
    assert 'http_requests_total{method="POST",route="/api/v1/auth/register",status_code="201"} 1.0' in text
    assert 'auth_events_total{event="register",outcome="success"} 1.0' in text
    assert 'auth_events_total{event="login",outcome="failure"} 1.0' in text
    assert "http_request_duration_seconds_bucket" in text


def test_metrics_use_route_templates(client):
    client.get("/api/v1/users/abc")
    client.get("/api/v1/users/def")
    text = client.get("/metrics").text
    assert 'route="/api/v1/users/{user_id}"' in text
    assert 'route="/api/v1/users/abc"' not in text


def test_two_apps_do_not_share_metrics():
    first = create_app(make_settings())
    second = create_app(make_settings())
    TestClient(first).get("/health")
    assert 'route="/health"' not in TestClient(second).get("/metrics").text


def test_security_headers(client):
    response = client.get("/health")
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "Cache-Control" not in response.headers
    assert "Strict-Transport-Security" not in response.headers


def test_cors_allows_configured_origin():
    settings = make_settings(cors_allow_origins=["https://app.example"])
    runtime = Runtime(settings, store=MemoryCredentialStore(), cache=MemorySessionCache())
    client = TestClient(create_app(settings, runtime=runtime))
    response = client.options(
        "/api/v1/auth/login",
        headers={"Origin": "https://app.example", "Access-Control-Request-Method": "POST"},
    )
    assert response.headers["access-control-allow-origin"] == "https://app.example"
    denied = client.options(
        "/api/v1/auth/login",
        headers={"Origin": "https://evil.example", "Access-Control-Request-Method": "POST"},
    )
    assert "access-control-allow-origin" not in denied.headers


class TestSchemas:
    def test_register_normalizes_email_and_names(self):
        request = RegisterRequest(
            email="  Mixed@Example.COM ",
            password=TEST_PASSWORD,
            firstName="Jo\u200bhn",
            lastName="O'Brien-Smith",
        )
        assert request.email == "mixed@example.com"
        assert request.first_name == "John"
        assert request.last_name == "O'Brien-Smith"

    @pytest.mark.parametrize(
        "email",
        ["plain", "a@b", "@example.com", "a@-bad.com", "a b@example.com", ("x" * 65) + "@example.com"],
    )
    def test_invalid_emails(self, email):
        with pytest.raises(ValidationError):
            LoginRequest(email=email, password="x")

    @pytest.mark.parametrize(
        "password",
        ["Sh0rt!", "alllower1!", "ALLUPPER1!", "NoDigits!!", "NoSpecial12", "A1!" + "a" * 126],
    )
    def test_weak_passwords(self, password):
        with pytest.raises(ValidationError):
            PasswordChangeRequest(current_password="x", new_password=password)

    def test_blank_names_rejected(self):
        with pytest.raises(ValidationError):
            ProfileUpdateRequest(first_name="   ")

    def test_profile_changes_only_include_given_fields(self):
        assert ProfileUpdateRequest(lastName="Only").changes() == {"last_name": "Only"}
        assert ProfileUpdateRequest().changes() == {}

    def test_refresh_token_aliases(self):
        assert TokenRefreshRequest(refreshToken="t").refresh_token == "t"
        with pytest.raises(ValidationError):
            TokenRefreshRequest(refresh_token="")

    def test_list_query(self):
        query = UserListQuery.model_validate({"page": "3", "limit": "10", "search": "  "})
        assert (query.page, query.limit, query.search) == (3, 10, None)
        with pytest.raises(ValidationError):
            UserListQuery.model_validate({"limit": "0"})
