from __future__ import annotations

import asyncio
import hashlib
import json
import os
import tempfile
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from usersvc.logging import get_logger
from usersvc.storage.errors import ConstraintViolation, RecordNotFound
from usersvc.storage.models import (
    PROFILE_FIELDS,
    ROLES,
    User,
    UserPage,
    normalize_email,
    utcnow,
)


class MemoryCredentialStore:
    """In-process credential store for tests and local development.

    Optionally mirrors its state to a JSON file so a dev server keeps users
    across restarts.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.emails: Dict[str, str] = {}
        self.password_hashes: Dict[str, str] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self._load_state()

    def create_user(
        self,
        email: str,
        password_hash: str,
        profile: Optional[Mapping[str, Any]] = None,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        profile = profile or {}
        with self._data_lock:
            key = normalize_email(email)
            if key in self.emails:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(
                key,
                first_name=profile.get("first_name"),
                last_name=profile.get("last_name"),
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            self.emails[key] = user.id
            self.password_hashes[user.id] = password_hash
            self._persist_state()
            return self._copy(user)

    def find_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self.emails.get(normalize_email(email))
            return self._copy(self.users[user_id]) if user_id else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy(user) if user else None

    def update_profile(self, user_id: str, fields: Mapping[str, Any]) -> User:
        with self._data_lock:
            user = self._require(user_id)
            for name in PROFILE_FIELDS:
                if name in fields:
                    setattr(user, name, fields[name])
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy(user)

    def update_password_hash(self, user_id: str, new_hash: str) -> None:
        with self._data_lock:
            user = self._require(user_id)
            self.password_hashes[user_id] = new_hash
            user.updated_at = utcnow()
            self._persist_state()

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.password_hashes.get(user_id)

    def set_active(self, user_id: str, active: bool) -> None:
        with self._data_lock:
            user = self._require(user_id)
            user.is_active = bool(active)
            user.updated_at = utcnow()
            self._persist_state()

    def set_role(self, user_id: str, role: str) -> None:
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        with self._data_lock:
            user = self._require(user_id)
            user.role = role
            user.updated_at = utcnow()
            self._persist_state()

    def record_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self._require(user_id)
            user.last_login = utcnow()
            self._persist_state()

    def list_users(
        self, *, page: int = 1, limit: int = 20, search: Optional[str] = None
    ) -> UserPage:
        needle = search.strip().lower() if search else None
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if not needle
                or needle in u.email
                or needle in (u.first_name or "").lower()
                or needle in (u.last_name or "").lower()
            ]
            matches.sort(key=lambda u: u.created_at, reverse=True)
            offset = (page - 1) * limit
            window = [self._copy(u) for u in matches[offset : offset + limit]]
            return UserPage(users=window, total=len(matches), page=page, limit=limit)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    def _require(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return user

    @staticmethod
    def _copy(user: User) -> User:
        # Callers get snapshots; mutations go through the store methods
        return User(**user.__dict__)

    # persistence
    def _persist_state(self) -> None:
        if not self.state_path:
            return
        state = {
            "users": [
                {
                    **self._serialize_user(u),
                    "password_hash": self.password_hashes.get(u.id),
                }
                for u in self.users.values()
            ]
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a crash never leaves a truncated file
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.state_path.parent), prefix=".users_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, self.state_path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _load_state(self) -> None:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return
        for entry in data.get("users", []):
            user = self._deserialize_user(entry)
            self.users[user.id] = user
            self.emails[user.email] = user.id
            if entry.get("password_hash"):
                self.password_hashes[user.id] = entry["password_hash"]
        self.logger.info("memory_store_loaded", users=len(self.users))

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role": user.role,
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "created_at": user.created_at.isoformat(),
            "updated_at": user.updated_at.isoformat(),
            "last_login": user.last_login.isoformat() if user.last_login else None,
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        last_login = data.get("last_login")
        return User(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            role=data.get("role", "user"),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data.get("updated_at") or data["created_at"]),
            last_login=datetime.fromisoformat(last_login) if last_login else None,
        )


class MemorySessionCache:
    """asyncio-safe in-process stand-in for the Redis session cache.

    Entries carry a monotonic deadline and are dropped lazily on access,
    mirroring Redis TTL semantics closely enough for tests and dev fallback.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._values: Dict[str, Tuple[Any, float]] = {}
        self._clock = time.monotonic

    def _get(self, key: str) -> Any:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._values[key] = (value, self._clock() + max(ttl_seconds, 1))

    @staticmethod
    def _token_key(token: str) -> str:
        return f"auth:refresh:{hashlib.sha256(token.encode()).hexdigest()}"

    async def record_attempt(self, bucket_key: str, window_seconds: int) -> int:
        key = f"rate:{bucket_key}"
        async with self._lock:
            entry = self._values.get(key)
            if entry is None or entry[1] <= self._clock():
                # First hit opens the window
                self._set(key, 1, window_seconds)
                return 1
            count, deadline = entry
            self._values[key] = (count + 1, deadline)
            return count + 1

    async def is_throttled(
        self, bucket_key: str, threshold: int, window_seconds: int
    ) -> bool:
        return await self.record_attempt(bucket_key, window_seconds) > threshold

    async def window_reset_seconds(self, bucket_key: str) -> int:
        async with self._lock:
            entry = self._values.get(f"rate:{bucket_key}")
            if entry is None:
                return 0
            return max(0, int(round(entry[1] - self._clock())))

    async def reset_attempts(self, bucket_key: str) -> None:
        async with self._lock:
            self._values.pop(f"rate:{bucket_key}", None)

    async def store_refresh_token(
        self, token: str, user_id: str, ttl_seconds: int
    ) -> None:
        key = self._token_key(token)
        async with self._lock:
            self._set(key, user_id, ttl_seconds)
            index_key = f"auth:user_refresh:{user_id}"
            members = self._get(index_key) or set()
            members.add(key)
            self._set(index_key, members, ttl_seconds)

    async def consume_refresh_token(self, token: str) -> Optional[str]:
        key = self._token_key(token)
        async with self._lock:
            user_id = self._get(key)
            self._values.pop(key, None)
            return user_id

    async def revoke_user_refresh_tokens(self, user_id: str) -> int:
        async with self._lock:
            members = self._get(f"auth:user_refresh:{user_id}") or set()
            self._values.pop(f"auth:user_refresh:{user_id}", None)
            revoked = 0
            for key in members:
                if self._get(key) is not None:
                    revoked += 1
                self._values.pop(key, None)
            return revoked

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        async with self._lock:
            self._set(f"auth:access:denylist:{jti}", "1", ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        async with self._lock:
            return self._get(f"auth:access:denylist:{jti}") is not None

    async def set_token_cutoff(
        self, user_id: str, issued_before: int, ttl_seconds: int
    ) -> None:
        async with self._lock:
            self._set(f"auth:cutoff:{user_id}", int(issued_before), ttl_seconds)

    async def get_token_cutoff(self, user_id: str) -> Optional[int]:
        async with self._lock:
            return self._get(f"auth:cutoff:{user_id}")

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        async with self._lock:
            self._values.clear()
