"""Ordered request pipeline.

Each request moves through ``RECEIVED -> PARSED -> RATE_CHECKED ->
AUTHENTICATED -> AUTHORIZED -> HANDLED -> RESPONDED``. Stages that a route
does not need are skipped, but the ones it has always run in that order. A
``ServiceError`` from any stage moves the request to ``FAILED`` and is
re-raised for the error formatter; the handler never runs after a failure.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Mapping, Optional, Protocol, Sequence, Type, TypeVar

from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from usersvc.api.schemas import Envelope
from usersvc.config import Settings
from usersvc.logging import get_logger
from usersvc.service.auth import AuthContext, AuthService
from usersvc.service.errors import RateLimitedError, ServiceError, ValidationError
from usersvc.service.metrics import ServiceMetrics
from usersvc.storage.interfaces import SessionCache

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class Stage(enum.IntEnum):
    RECEIVED = 0
    PARSED = 1
    RATE_CHECKED = 2
    AUTHENTICATED = 3
    AUTHORIZED = 4
    HANDLED = 5
    RESPONDED = 6
    FAILED = 99


class PipelineServices(Protocol):
    settings: Settings
    auth: AuthService
    cache: SessionCache
    metrics: ServiceMetrics


@dataclass
class RateLimitStatus:
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


@dataclass
class RequestState:
    """Everything a request carries between stages."""

    request_id: str
    method: str
    path: str
    client_ip: str
    authorization: Optional[str] = None
    body: Any = None
    query: Mapping[str, str] = field(default_factory=dict)
    path_params: Mapping[str, str] = field(default_factory=dict)
    stage: Stage = Stage.RECEIVED
    history: list[Stage] = field(default_factory=lambda: [Stage.RECEIVED])
    payload: Any = None
    rate_limit: Optional[RateLimitStatus] = None
    identity: Optional[AuthContext] = None
    result: Any = None
    error: Optional[ServiceError] = None

    def advance(self, stage: Stage) -> None:
        if stage != Stage.FAILED and stage < self.stage:
            raise RuntimeError(f"pipeline cannot move from {self.stage.name} back to {stage.name}")
        self.stage = stage
        self.history.append(stage)

    def fail(self, exc: ServiceError) -> None:
        self.error = exc
        self.advance(Stage.FAILED)

    @property
    def identity_required(self) -> AuthContext:
        if self.identity is None:
            raise RuntimeError("handler requires an authenticated request")
        return self.identity


def _field_name(loc: Sequence[Any]) -> str:
    parts = [str(p) for p in loc if not isinstance(p, int)]
    return ".".join(parts) or "body"


def _clean_message(message: str) -> str:
    # pydantic prefixes messages raised from validators
    prefix = "Value error, "
    return message[len(prefix):] if message.startswith(prefix) else message


def validation_details(exc: PydanticValidationError) -> list[dict[str, str]]:
    """Flatten pydantic errors into one ``{field, message}`` entry per violation."""
    return [
        {"field": _field_name(err.get("loc", ())), "message": _clean_message(err.get("msg", "invalid"))}
        for err in exc.errors()
    ]


def validation_error_from(details: list[dict[str, str]]) -> ValidationError:
    summary = "; ".join(f"{d['field']}: {d['message']}" for d in details)
    return ValidationError(f"validation failed: {summary}", detail=details)


class PipelineStage:
    stage: Stage = Stage.RECEIVED

    async def run(self, state: RequestState, services: PipelineServices) -> None:
        raise NotImplementedError


class ParseBody(PipelineStage, Generic[M]):
    stage = Stage.PARSED

    def __init__(self, model: Type[M]) -> None:
        self.model = model

    async def run(self, state: RequestState, services: PipelineServices) -> None:
        body = state.body
        if isinstance(body, (bytes, bytearray, str)):
            try:
                body = json.loads(body) if body else None
            except ValueError:
                raise ValidationError(
                    "malformed JSON body",
                    detail=[{"field": "body", "message": "invalid JSON"}],
                ) from None
        if not isinstance(body, dict):
            raise ValidationError(
                "request body must be a JSON object",
                detail=[{"field": "body", "message": "expected a JSON object"}],
            )
        try:
            state.payload = self.model.model_validate(body)
        except PydanticValidationError as exc:
            raise validation_error_from(validation_details(exc)) from None


class ParseQuery(PipelineStage, Generic[M]):
    stage = Stage.PARSED

    def __init__(self, model: Type[M]) -> None:
        self.model = model

    async def run(self, state: RequestState, services: PipelineServices) -> None:
        try:
            state.payload = self.model.model_validate(dict(state.query))
        except PydanticValidationError as exc:
            raise validation_error_from(validation_details(exc)) from None


class RateCheck(PipelineStage):
    """Fixed-window throttle keyed by ``<category>:<client ip>``.

    Limits are read from settings as ``<category>_rate_limit`` and
    ``<category>_rate_window_seconds``.
    """

    stage = Stage.RATE_CHECKED

    def __init__(self, category: str) -> None:
        self.category = category

    def bucket_key(self, state: RequestState) -> str:
        return f"{self.category}:{state.client_ip}"

    async def run(self, state: RequestState, services: PipelineServices) -> None:
        limit = getattr(services.settings, f"{self.category}_rate_limit")
        window = getattr(services.settings, f"{self.category}_rate_window_seconds")
        key = self.bucket_key(state)
        count = await services.cache.record_attempt(key, window)
        reset = await services.cache.window_reset_seconds(key) or window
        state.rate_limit = RateLimitStatus(limit=limit, remaining=limit - count, reset_seconds=reset)
        if count > limit:
            services.metrics.rate_limited(self.category)
            logger.warning(
                "rate_limit_exceeded", category=self.category, client_ip=state.client_ip, count=count
            )
            raise RateLimitedError(
                "too many requests, rate limit exceeded",
                detail={"retry_after": reset},
                headers={"Retry-After": str(reset)},
            )


class Authenticate(PipelineStage):
    stage = Stage.AUTHENTICATED

    async def run(self, state: RequestState, services: PipelineServices) -> None:
        state.identity = await services.auth.authenticate(state.authorization)


class Authorize(PipelineStage):
    """Role check, optionally letting a user act on their own record."""

    stage = Stage.AUTHORIZED

    def __init__(self, role: Optional[str] = None, *, self_param: Optional[str] = None) -> None:
        self.role = role
        self.self_param = self_param

    async def run(self, state: RequestState, services: PipelineServices) -> None:
        identity = state.identity_required
        if self.self_param:
            services.auth.authorize_self_or_admin(identity, state.path_params[self.self_param])
        if self.role:
            services.auth.authorize(identity, self.role)


Handler = Callable[[RequestState, PipelineServices], Awaitable[Any]]


class Pipeline:
    """Runs a route's stages in order, then its handler, then the response."""

    def __init__(
        self,
        name: str,
        handler: Handler,
        stages: Sequence[PipelineStage] = (),
        *,
        status_code: int = 200,
    ) -> None:
        order = [s.stage for s in stages]
        if order != sorted(order):
            raise ValueError(f"pipeline {name} stages out of order: {[s.name for s in order]}")
        if Authorize in {type(s) for s in stages} and Stage.AUTHENTICATED not in order:
            raise ValueError(f"pipeline {name} authorizes without authenticating")
        self.name = name
        self.handler = handler
        self.stages = tuple(stages)
        self.status_code = status_code

    async def run(self, state: RequestState, services: PipelineServices) -> JSONResponse:
        try:
            for stage in self.stages:
                await stage.run(state, services)
                state.advance(stage.stage)
            state.result = await self.handler(state, services)
            state.advance(Stage.HANDLED)
        except ServiceError as exc:
            state.fail(exc)
            if state.rate_limit is not None:
                for name, value in state.rate_limit.headers().items():
                    exc.headers.setdefault(name, value)
            logger.debug(
                "pipeline_failed",
                pipeline=self.name,
                stages=[s.name for s in state.history],
                error_code=exc.error_code,
            )
            raise
        response = self.respond(state)
        state.advance(Stage.RESPONDED)
        return response

    def respond(self, state: RequestState) -> JSONResponse:
        data = state.result
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json")
        envelope = Envelope(status="ok", data=data, request_id=state.request_id)
        headers = state.rate_limit.headers() if state.rate_limit else None
        return JSONResponse(
            status_code=self.status_code,
            content=envelope.model_dump(mode="json", exclude={"error"}),
            headers=headers,
        )
