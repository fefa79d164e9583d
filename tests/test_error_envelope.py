"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from conftest import TEST_PASSWORD
from usersvc.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, error_response
from usersvc.api.schemas import Envelope, ErrorBody
from usersvc.logging import set_correlation_id
from usersvc.service.errors import ServerError
from usersvc.storage.errors import CacheUnavailable, StoreUnavailable


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.details is None

    def test_details_accept_dict_and_list(self):
        assert ErrorBody(code="validation_error", message="m", details={"field": "email"}).details
        assert len(ErrorBody(code="validation_error", message="m", details=[{}, {}]).details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")


class TestEnvelope:
    def test_request_id_auto_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (405, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unlisted_statuses(self):
        assert _error_code_for_status(422) == "validation_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_code_is_a_valid_error_body_code(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_shape(self):
        set_correlation_id("cid-123")
        response = error_response(404, "user not found", {"user_id": "x"})

        body = json.loads(response.body)
        assert response.status_code == 404
        assert body == {
            "status": "error",
            "error": {"code": "not_found", "message": "user not found", "details": {"user_id": "x"}},
            "request_id": "cid-123",
        }

    def test_headers_are_forwarded(self):
        response = error_response(429, "slow down", headers={"Retry-After": "30"})
        assert response.headers["Retry-After"] == "30"


class TestBackendFailures:
    def test_store_failure_is_generic_500(self, client, runtime):
        with patch.object(
            runtime.store,
            "find_by_email",
            side_effect=StoreUnavailable("find_by_email", OSError("could not connect to /var/run/db")),
        ):
            response = client.post(
                "/api/v1/auth/login",
                json={"email": "a@example.com", "password": TEST_PASSWORD},
            )

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
        assert "/var/run/db" not in response.text

    def test_cache_failure_is_generic_500(self, client, runtime):
        with patch.object(
            runtime.cache,
            "record_attempt",
            new=AsyncMock(side_effect=CacheUnavailable("record_attempt", TimeoutError())),
        ):
            response = client.post(
                "/api/v1/auth/login",
                json={"email": "a@example.com", "password": TEST_PASSWORD},
            )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"

    def test_unexpected_exception_is_generic_500(self, app, runtime):
        client = TestClient(app, raise_server_exceptions=False)
        token = runtime.tokens.issue_access_token(runtime.store.create_user("boom@example.com", "h"))
        with patch.object(runtime.store, "find_by_id", side_effect=KeyError("secret-internal")):
            response = client.get(
                "/api/v1/users/profile", headers={"Authorization": f"Bearer {token}"}
            )

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"
        assert "secret-internal" not in response.text

    def test_server_error_message_is_scrubbed(self, client, runtime, register_user):
        tokens = register_user(email="scrub@example.com")
        failing = AsyncMock(side_effect=ServerError("lookup failed: SELECT * FROM users WHERE id = 1"))
        with patch.object(runtime.auth, "get_user", new=failing):
            response = client.get(
                "/api/v1/users/profile",
                headers={"Authorization": f"Bearer {tokens['access_token']}"},
            )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "SELECT" not in response.text


class TestFrameworkErrors:
    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/api/v1/nope")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"
        assert body["request_id"] == response.headers["X-Request-ID"]

    def test_wrong_method_uses_envelope(self, client):
        response = client.get("/api/v1/auth/login")
        assert response.status_code == 405
        assert response.json()["status"] == "error"
        assert response.json()["error"]["code"] == "not_found"

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/v1/nope", headers={"X-Request-ID": "trace-42"})
        assert response.headers["X-Request-ID"] == "trace-42"
        assert response.json()["request_id"] == "trace-42"
