from __future__ import annotations

from fastapi import APIRouter, Path, Request
from fastapi.responses import JSONResponse

from usersvc.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    Pagination,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserEnvelopeData,
    UserListQuery,
    UserListResponse,
    UserResponse,
    UserStatusRequest,
)
from usersvc.logging import get_correlation_id
from usersvc.service.pipeline import (
    Authenticate,
    Authorize,
    ParseBody,
    ParseQuery,
    Pipeline,
    PipelineServices,
    RateCheck,
    RequestState,
)
from usersvc.service.runtime import Runtime

router = APIRouter(prefix="/api/v1")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def _state(request: Request, *, with_body: bool = False) -> RequestState:
    return RequestState(
        request_id=get_correlation_id() or "",
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else "unknown",
        authorization=request.headers.get("Authorization"),
        body=await request.body() if with_body else None,
        query=dict(request.query_params),
        path_params=dict(request.path_params),
    )


async def _run(
    pipeline: Pipeline, request: Request, *, with_body: bool = False
) -> JSONResponse:
    state = await _state(request, with_body=with_body)
    return await pipeline.run(state, get_runtime(request))


# handlers


async def _register(state: RequestState, services: PipelineServices) -> AuthResponse:
    body: RegisterRequest = state.payload
    user, pair = await services.auth.register(
        body.email,
        body.password,
        {"first_name": body.first_name, "last_name": body.last_name},
    )
    return AuthResponse(user=UserResponse.from_user(user), **pair.as_dict())


async def _login(state: RequestState, services: PipelineServices) -> AuthResponse:
    body: LoginRequest = state.payload
    user, pair = await services.auth.login(body.email, body.password)
    return AuthResponse(user=UserResponse.from_user(user), **pair.as_dict())


async def _refresh(state: RequestState, services: PipelineServices) -> TokenResponse:
    body: TokenRefreshRequest = state.payload
    pair, _ = await services.auth.refresh(body.refresh_token)
    return TokenResponse(**pair.as_dict())


async def _logout(state: RequestState, services: PipelineServices) -> dict:
    revoked = await services.auth.logout(state.identity_required)
    return {"logged_out": True, "revoked_refresh_tokens": revoked}


async def _get_profile(state: RequestState, services: PipelineServices) -> UserEnvelopeData:
    user = await services.auth.get_user(state.identity_required.user_id)
    return UserEnvelopeData(user=UserResponse.from_user(user))


async def _update_profile(state: RequestState, services: PipelineServices) -> UserEnvelopeData:
    body: ProfileUpdateRequest = state.payload
    identity = state.identity_required
    changes = body.changes()
    if changes:
        user = await services.auth.update_profile(identity.user_id, changes)
    else:
        user = await services.auth.get_user(identity.user_id)
    return UserEnvelopeData(user=UserResponse.from_user(user))


async def _change_password(state: RequestState, services: PipelineServices) -> TokenResponse:
    body: PasswordChangeRequest = state.payload
    pair = await services.auth.change_password(
        state.identity_required, body.current_password, body.new_password
    )
    return TokenResponse(**pair.as_dict())


async def _get_user(state: RequestState, services: PipelineServices) -> UserEnvelopeData:
    user = await services.auth.get_user(state.path_params["user_id"])
    return UserEnvelopeData(user=UserResponse.from_user(user))


async def _list_users(state: RequestState, services: PipelineServices) -> UserListResponse:
    query: UserListQuery = state.payload
    page = await services.auth.list_users(page=query.page, limit=query.limit, search=query.search)
    return UserListResponse(
        users=[UserResponse.from_user(u) for u in page.users],
        pagination=Pagination(page=page.page, limit=page.limit, total=page.total, pages=page.pages),
    )


async def _set_user_status(state: RequestState, services: PipelineServices) -> UserEnvelopeData:
    body: UserStatusRequest = state.payload
    user = await services.auth.set_user_status(
        state.identity_required, state.path_params["user_id"], body.is_active
    )
    return UserEnvelopeData(user=UserResponse.from_user(user))


REGISTER = Pipeline(
    "register", _register, [ParseBody(RegisterRequest), RateCheck("register")], status_code=201
)
LOGIN = Pipeline("login", _login, [ParseBody(LoginRequest), RateCheck("login")])
REFRESH = Pipeline("refresh", _refresh, [ParseBody(TokenRefreshRequest), RateCheck("refresh")])
LOGOUT = Pipeline("logout", _logout, [Authenticate()])
GET_PROFILE = Pipeline("get_profile", _get_profile, [Authenticate()])
UPDATE_PROFILE = Pipeline(
    "update_profile", _update_profile, [ParseBody(ProfileUpdateRequest), Authenticate()]
)
CHANGE_PASSWORD = Pipeline(
    "change_password",
    _change_password,
    [ParseBody(PasswordChangeRequest), RateCheck("password"), Authenticate()],
)
GET_USER = Pipeline("get_user", _get_user, [Authenticate(), Authorize(self_param="user_id")])
LIST_USERS = Pipeline(
    "list_users", _list_users, [ParseQuery(UserListQuery), Authenticate(), Authorize("admin")]
)
SET_USER_STATUS = Pipeline(
    "set_user_status",
    _set_user_status,
    [ParseBody(UserStatusRequest), Authenticate(), Authorize("admin")],
)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(request: Request):
    """Create an account and sign it in.

    Raises:
        400: invalid email, weak password or missing names
        409: email already registered
        429: too many registrations from this client
    """
    return await _run(REGISTER, request, with_body=True)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(request: Request):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials or deactivated account
        429: rate limit exceeded for this client
    """
    return await _run(LOGIN, request, with_body=True)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request):
    """Exchange a refresh token for a new pair; the old one stops working."""
    return await _run(REFRESH, request, with_body=True)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request):
    return await _run(LOGOUT, request)


@router.get("/users/profile", response_model=Envelope, tags=["users"])
async def get_profile(request: Request):
    return await _run(GET_PROFILE, request)


@router.put("/users/profile", response_model=Envelope, tags=["users"])
async def update_profile(request: Request):
    return await _run(UPDATE_PROFILE, request, with_body=True)


@router.put("/users/password", response_model=Envelope, tags=["users"])
async def change_password(request: Request):
    """Change the password and rotate every credential the user holds."""
    return await _run(CHANGE_PASSWORD, request, with_body=True)


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(request: Request, user_id: str = Path(..., max_length=64)):
    return await _run(GET_USER, request)


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def list_users(request: Request):
    """Paginated user listing; accepts ``page``, ``limit`` and ``search`` query args."""
    return await _run(LIST_USERS, request)


@router.put("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def set_user_status(request: Request, user_id: str = Path(..., max_length=64)):
    return await _run(SET_USER_STATUS, request, with_body=True)
