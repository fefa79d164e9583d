"""Request pipeline ordering and short-circuit behavior."""

import json

import pytest

from conftest import make_settings
from usersvc.api.schemas import LoginRequest, RegisterRequest
from usersvc.service.errors import AuthenticationError, RateLimitedError, ValidationError
from usersvc.service.pipeline import (
    Authenticate,
    Authorize,
    ParseBody,
    Pipeline,
    RateCheck,
    RequestState,
    Stage,
)
from usersvc.service.runtime import Runtime
from usersvc.storage.memory import MemoryCredentialStore, MemorySessionCache


def make_state(body=None, **kwargs) -> RequestState:
    raw = json.dumps(body).encode() if body is not None else None
    return RequestState(
        request_id="req-1",
        method="POST",
        path="/api/v1/test",
        client_ip="10.0.0.9",
        body=raw,
        **kwargs,
    )


@pytest.fixture
def services():
    return Runtime(
        make_settings(login_rate_limit=2),
        store=MemoryCredentialStore(),
        cache=MemorySessionCache(),
    )


class RecordingHandler:
    def __init__(self, result=None):
        self.calls = []
        self.result = result if result is not None else {"ok": True}

    async def __call__(self, state, services):
        self.calls.append(state)
        return self.result


class TestConstruction:
    def test_out_of_order_stages_rejected(self):
        with pytest.raises(ValueError):
            Pipeline("bad", RecordingHandler(), [Authenticate(), ParseBody(LoginRequest)])

    def test_authorize_requires_authenticate(self):
        with pytest.raises(ValueError):
            Pipeline("bad", RecordingHandler(), [Authorize("admin")])

    def test_state_never_moves_backwards(self):
        state = make_state()
        state.advance(Stage.AUTHENTICATED)
        with pytest.raises(RuntimeError):
            state.advance(Stage.PARSED)


class TestRun:
    async def test_happy_path_visits_stages_in_order(self, services):
        handler = RecordingHandler()
        pipeline = Pipeline(
            "login", handler, [ParseBody(LoginRequest), RateCheck("login")]
        )
        state = make_state({"email": "A@Example.com", "password": "x"})

        response = await pipeline.run(state, services)

        assert response.status_code == 200
        assert state.history == [
            Stage.RECEIVED,
            Stage.PARSED,
            Stage.RATE_CHECKED,
            Stage.HANDLED,
            Stage.RESPONDED,
        ]
        assert state.payload.email == "a@example.com"
        body = json.loads(response.body)
        assert body == {"status": "ok", "data": {"ok": True}, "request_id": "req-1"}
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"

    async def test_parse_failure_short_circuits(self, services):
        handler = RecordingHandler()
        pipeline = Pipeline("register", handler, [ParseBody(RegisterRequest), RateCheck("register")])
        state = make_state({"email": "bad", "password": "weak"})

        with pytest.raises(ValidationError) as excinfo:
            await pipeline.run(state, services)

        assert handler.calls == []
        assert state.stage == Stage.FAILED
        assert Stage.HANDLED not in state.history
        fields = {d["field"] for d in excinfo.value.detail}
        assert {"email", "password"} <= fields
        assert len(excinfo.value.detail) == 4
        # rate check never ran, so nothing was counted
        assert state.rate_limit is None

    async def test_malformed_json(self, services):
        pipeline = Pipeline("login", RecordingHandler(), [ParseBody(LoginRequest)])
        state = make_state()
        state.body = b"{not json"
        with pytest.raises(ValidationError) as excinfo:
            await pipeline.run(state, services)
        assert excinfo.value.message == "malformed JSON body"

    async def test_non_object_body(self, services):
        pipeline = Pipeline("login", RecordingHandler(), [ParseBody(LoginRequest)])
        with pytest.raises(ValidationError):
            await pipeline.run(make_state(["a", "b"]), services)

    async def test_rate_limit_failure_carries_headers(self, services):
        handler = RecordingHandler()
        pipeline = Pipeline("login", handler, [ParseBody(LoginRequest), RateCheck("login")])
        body = {"email": "a@example.com", "password": "x"}

        await pipeline.run(make_state(body), services)
        await pipeline.run(make_state(body), services)
        with pytest.raises(RateLimitedError) as excinfo:
            await pipeline.run(make_state(body), services)

        assert len(handler.calls) == 2
        headers = excinfo.value.headers
        assert headers["X-RateLimit-Remaining"] == "0"
        assert int(headers["Retry-After"]) > 0
        assert excinfo.value.detail["retry_after"] == int(headers["Retry-After"])

    async def test_authenticate_without_token(self, services):
        handler = RecordingHandler()
        pipeline = Pipeline("profile", handler, [Authenticate()])
        with pytest.raises(AuthenticationError):
            await pipeline.run(make_state(), services)
        assert handler.calls == []

    async def test_authenticated_identity_reaches_handler(self, services):
        user, pair = await services.auth.register(
            "who@example.com", "TestPassword123!", {"first_name": "W", "last_name": "H"}
        )
        handler = RecordingHandler()
        pipeline = Pipeline("profile", handler, [Authenticate()])
        state = make_state(authorization=f"Bearer {pair.access_token}")

        await pipeline.run(state, services)

        assert handler.calls[0].identity.user_id == user.id
        assert Stage.AUTHENTICATED in state.history
