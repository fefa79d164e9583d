from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, TypeVar

from usersvc.config import Settings
from usersvc.logging import get_logger
from usersvc.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from usersvc.service.metrics import ServiceMetrics
from usersvc.service.passwords import PasswordService
from usersvc.service.tokens import AccessClaims, TokenEngine, TokenPair
from usersvc.storage.errors import ConstraintViolation, RecordNotFound, StoreUnavailable
from usersvc.storage.interfaces import CredentialStore, SessionCache
from usersvc.storage.models import ROLES, User, UserPage

logger = get_logger(__name__)

T = TypeVar("T")

INVALID_CREDENTIALS = "invalid credentials"
ACCOUNT_DEACTIVATED = "account is deactivated"


@dataclass
class AuthContext:
    """Identity attached to a request after its access token checks out."""

    user_id: str
    role: str
    email: str
    jti: str
    token_exp: int
    user: Optional[User] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class AuthService:
    """Registration, login, token lifecycle and account management.

    Store calls are synchronous and run in a worker thread under
    ``store_timeout_seconds``; argon2 work is offloaded the same way so it
    never blocks the event loop.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: SessionCache,
        settings: Settings,
        *,
        passwords: Optional[PasswordService] = None,
        tokens: Optional[TokenEngine] = None,
        metrics: Optional[ServiceMetrics] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.passwords = passwords or PasswordService.from_settings(settings)
        self.tokens = tokens or TokenEngine.from_settings(settings, cache)
        self.metrics = metrics or ServiceMetrics()
        self.logger = logger

    async def _store_call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        timeout = self.settings.store_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout)
        except asyncio.TimeoutError as exc:
            self.logger.error("store_call_timeout", operation=operation, timeout=timeout)
            raise StoreUnavailable(operation, exc) from exc

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.passwords.hash_password, password)

    async def _verify(self, password: str, password_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(
            self.passwords.verify_password, password, password_hash
        )

    async def _load_active_user(self, user_id: str) -> Optional[User]:
        user = await self._store_call("find_by_id", self.store.find_by_id, user_id)
        if user is None or not user.is_active:
            return None
        return user

    def _role_allows(self, role: str, required: str) -> bool:
        if role == required:
            return True
        if role == "admin" and required in {"admin", "user"}:
            return True
        return False

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    # account lifecycle

    async def register(
        self,
        email: str,
        password: str,
        profile: Optional[Mapping[str, Any]] = None,
    ) -> tuple[User, TokenPair]:
        existing = await self._store_call("find_by_email", self.store.find_by_email, email)
        if existing is not None:
            self.metrics.auth_event("register", "conflict")
            raise ConflictError("email already registered", detail={"field": "email"})
        password_hash = await self._hash(password)
        try:
            user = await self._store_call(
                "create_user", self.store.create_user, email, password_hash, dict(profile or {})
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same email
            self.metrics.auth_event("register", "conflict")
            raise ConflictError("email already registered", detail=exc.detail) from exc
        pair = await self.tokens.issue_pair(user)
        self.metrics.auth_event("register", "success")
        self.logger.info("user_registered", user_id=user.id)
        return user, pair

    async def login(self, email: str, password: str) -> tuple[User, TokenPair]:
        user = await self._store_call("find_by_email", self.store.find_by_email, email)
        if user is None:
            # Same argon2 cost as a real mismatch
            await asyncio.to_thread(self.passwords.burn_verification, password)
            self.metrics.auth_event("login", "failure")
            self.logger.warning("login_failed", reason="unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS)

        stored_hash = await self._store_call(
            "get_password_hash", self.store.get_password_hash, user.id
        )
        if not await self._verify(password, stored_hash):
            self.metrics.auth_event("login", "failure")
            self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        if not user.is_active:
            self.metrics.auth_event("login", "inactive")
            self.logger.warning("login_failed", reason="inactive", user_id=user.id)
            raise AuthenticationError(ACCOUNT_DEACTIVATED)

        if stored_hash and self.passwords.needs_rehash(stored_hash):
            new_hash = await self._hash(password)
            await self._store_call(
                "update_password_hash", self.store.update_password_hash, user.id, new_hash
            )
            self.logger.info("password_rehashed", user_id=user.id)

        await self._store_call("record_login", self.store.record_login, user.id)
        refreshed = await self._store_call("find_by_id", self.store.find_by_id, user.id)
        pair = await self.tokens.issue_pair(refreshed or user)
        self.metrics.auth_event("login", "success")
        self.logger.info("user_logged_in", user_id=user.id)
        return refreshed or user, pair

    async def refresh(self, refresh_token: str) -> tuple[TokenPair, str]:
        try:
            pair, user_id = await self.tokens.rotate_refresh_token(
                refresh_token, self._load_active_user
            )
        except InvalidTokenError:
            self.metrics.auth_event("refresh", "failure")
            raise
        self.metrics.auth_event("refresh", "success")
        self.logger.info("refresh_token_rotated", user_id=user_id)
        return pair, user_id

    async def logout(self, ctx: AuthContext) -> int:
        revoked = await self.cache.revoke_user_refresh_tokens(ctx.user_id)
        await self.cache.denylist_access_token(
            ctx.jti, self.tokens.revocation_ttl(ctx.token_exp)
        )
        self.metrics.auth_event("logout", "success")
        self.logger.info("user_logged_out", user_id=ctx.user_id, revoked_refresh_tokens=revoked)
        return revoked

    async def revoke_all_user_sessions(self, user_id: str) -> int:
        """Kill every refresh token and every access token issued before now."""
        revoked = await self.cache.revoke_user_refresh_tokens(user_id)
        await self.cache.set_token_cutoff(
            user_id, self.tokens.now(), self.tokens.cutoff_ttl
        )
        return revoked

    # request authentication

    async def authenticate(
        self, authorization: Optional[str], *, required_role: Optional[str] = None
    ) -> AuthContext:
        token = self.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims: AccessClaims = self.tokens.verify_access_token(token)
        if await self.cache.is_access_token_denylisted(claims.jti):
            self.logger.warning("access_token_denylisted", user_id=claims.user_id)
            raise InvalidTokenError("token has been revoked")
        cutoff = await self.cache.get_token_cutoff(claims.user_id)
        # Cutoff is a whole second; tokens minted in that same second survive
        if cutoff is not None and claims.iat < cutoff:
            self.logger.warning("access_token_before_cutoff", user_id=claims.user_id)
            raise InvalidTokenError("token has been revoked")
        user = await self._load_active_user(claims.user_id)
        if user is None:
            raise InvalidTokenError("invalid or expired token")
        ctx = AuthContext(
            user_id=user.id,
            role=user.role,
            email=user.email,
            jti=claims.jti,
            token_exp=claims.exp,
            user=user,
        )
        if required_role:
            self.authorize(ctx, required_role)
        return ctx

    def authorize(self, ctx: AuthContext, required_role: str) -> None:
        if not self._role_allows(ctx.role, required_role):
            self.logger.warning(
                "authorization_denied", user_id=ctx.user_id, role=ctx.role, required=required_role
            )
            raise ForbiddenError("insufficient permissions")

    def authorize_self_or_admin(self, ctx: AuthContext, user_id: str) -> None:
        if ctx.user_id != user_id and not ctx.is_admin:
            self.logger.warning("authorization_denied", user_id=ctx.user_id, target=user_id)
            raise ForbiddenError("insufficient permissions")

    # profile

    async def get_user(self, user_id: str) -> User:
        user = await self._store_call("find_by_id", self.store.find_by_id, user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def update_profile(self, user_id: str, fields: Mapping[str, Any]) -> User:
        try:
            user = await self._store_call(
                "update_profile", self.store.update_profile, user_id, dict(fields)
            )
        except RecordNotFound as exc:
            raise NotFoundError("user not found", detail=exc.detail) from exc
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(fields))
        return user

    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> TokenPair:
        stored_hash = await self._store_call(
            "get_password_hash", self.store.get_password_hash, ctx.user_id
        )
        if not await self._verify(current_password, stored_hash):
            self.metrics.auth_event("password_change", "failure")
            raise ValidationError(
                "current password is incorrect",
                detail=[{"field": "current_password", "message": "current password is incorrect"}],
            )
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current password",
                detail=[{"field": "new_password", "message": "must differ from the current password"}],
            )
        new_hash = await self._hash(new_password)
        await self._store_call(
            "update_password_hash", self.store.update_password_hash, ctx.user_id, new_hash
        )
        await self.revoke_all_user_sessions(ctx.user_id)
        await self.cache.denylist_access_token(
            ctx.jti, self.tokens.revocation_ttl(ctx.token_exp)
        )
        user = await self.get_user(ctx.user_id)
        pair = await self.tokens.issue_pair(user)
        self.metrics.auth_event("password_change", "success")
        self.logger.info("password_changed", user_id=ctx.user_id)
        return pair

    # administration

    async def list_users(
        self, *, page: int = 1, limit: Optional[int] = None, search: Optional[str] = None
    ) -> UserPage:
        size = min(limit or self.settings.default_page_size, self.settings.max_page_size)
        return await self._store_call(
            "list_users",
            lambda: self.store.list_users(page=page, limit=size, search=search),
        )

    async def set_user_status(self, actor: AuthContext, user_id: str, active: bool) -> User:
        if actor.user_id == user_id and not active:
            raise ValidationError(
                "administrators cannot deactivate their own account",
                detail=[{"field": "is_active", "message": "cannot deactivate yourself"}],
            )
        try:
            await self._store_call("set_active", self.store.set_active, user_id, active)
        except RecordNotFound as exc:
            raise NotFoundError("user not found", detail=exc.detail) from exc
        if not active:
            await self.revoke_all_user_sessions(user_id)
        self.logger.info(
            "user_status_changed", user_id=user_id, actor_id=actor.user_id, is_active=active
        )
        return await self.get_user(user_id)

    async def set_user_role(self, user_id: str, role: str) -> User:
        if role not in ROLES:
            raise ValidationError(
                "invalid role", detail=[{"field": "role", "message": f"must be one of {', '.join(ROLES)}"}]
            )
        try:
            await self._store_call("set_role", self.store.set_role, user_id, role)
        except RecordNotFound as exc:
            raise NotFoundError("user not found", detail=exc.detail) from exc
        self.logger.info("user_role_changed", user_id=user_id, role=role)
        return await self.get_user(user_id)

    async def ensure_admin(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> tuple[User, bool]:
        """Create an admin account or promote the existing one.

        Returns the user and whether it was newly created.
        """
        existing = await self._store_call("find_by_email", self.store.find_by_email, email)
        if existing is not None:
            if existing.role != "admin":
                existing = await self.set_user_role(existing.id, "admin")
            if not existing.is_active:
                await self._store_call("set_active", self.store.set_active, existing.id, True)
                existing = await self.get_user(existing.id)
            return existing, False
        password_hash = await self._hash(password)
        user = await self._store_call(
            "create_user",
            lambda: self.store.create_user(
                email,
                password_hash,
                {"first_name": first_name, "last_name": last_name},
                role="admin",
            ),
        )
        self.logger.info("admin_created", user_id=user.id)
        return user, True
