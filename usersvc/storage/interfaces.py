from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

from usersvc.storage.models import User, UserPage


class CredentialStore(Protocol):
    """Durable user records and password hashes.

    Implementations are synchronous; callers offload them to a worker thread.
    Every method is atomic at the row level. Failures to reach the backend
    raise ``StoreUnavailable``.
    """

    def create_user(
        self,
        email: str,
        password_hash: str,
        profile: Optional[Mapping[str, Any]] = None,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User: ...

    def find_by_email(self, email: str) -> Optional[User]: ...

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def update_profile(self, user_id: str, fields: Mapping[str, Any]) -> User: ...

    def update_password_hash(self, user_id: str, new_hash: str) -> None: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def set_active(self, user_id: str, active: bool) -> None: ...

    def set_role(self, user_id: str, role: str) -> None: ...

    def record_login(self, user_id: str) -> None: ...

    def list_users(
        self, *, page: int = 1, limit: int = 20, search: Optional[str] = None
    ) -> UserPage: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


class SessionCache(Protocol):
    """Ephemeral, TTL-bound state: refresh tokens, attempt counters, denylists.

    Failures to reach the backend raise ``CacheUnavailable``.
    """

    async def record_attempt(self, bucket_key: str, window_seconds: int) -> int: ...

    async def is_throttled(
        self, bucket_key: str, threshold: int, window_seconds: int
    ) -> bool: ...

    async def window_reset_seconds(self, bucket_key: str) -> int: ...

    async def reset_attempts(self, bucket_key: str) -> None: ...

    async def store_refresh_token(
        self, token: str, user_id: str, ttl_seconds: int
    ) -> None: ...

    async def consume_refresh_token(self, token: str) -> Optional[str]: ...

    async def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None: ...

    async def is_access_token_denylisted(self, jti: str) -> bool: ...

    async def set_token_cutoff(
        self, user_id: str, issued_before: int, ttl_seconds: int
    ) -> None: ...

    async def get_token_cutoff(self, user_id: str) -> Optional[int]: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


__all__ = ["CredentialStore", "SessionCache"]
