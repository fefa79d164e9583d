from __future__ import annotations

import secrets
import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

ROLES = ("user", "admin")
PROFILE_FIELDS = ("first_name", "last_name")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Canonical form used for uniqueness and lookups."""
    return unicodedata.normalize("NFKC", email.strip()).lower()


@dataclass
class User:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "user",
        is_active: bool = True,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            first_name=first_name,
            last_name=last_name,
            role=role,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )


@dataclass
class RefreshToken:
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, user_id: str, ttl_seconds: int) -> "RefreshToken":
        now = utcnow()
        return cls(
            token=secrets.token_urlsafe(48),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    @property
    def ttl_seconds(self) -> int:
        return max(1, int((self.expires_at - utcnow()).total_seconds()))


@dataclass
class UserPage:
    users: list[User]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit
