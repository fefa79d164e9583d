from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from usersvc.logging import get_logger
from usersvc.storage.errors import ConstraintViolation, RecordNotFound, StoreUnavailable
from usersvc.storage.models import (
    PROFILE_FIELDS,
    ROLES,
    User,
    UserPage,
    normalize_email,
    utcnow,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    first_name TEXT,
    last_name TEXT,
    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_login TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS users_email_lower_idx ON users (lower(email));
"""

_USER_COLUMNS = (
    "id, email, first_name, last_name, role, is_active, email_verified, "
    "created_at, updated_at, last_login"
)


class PostgresCredentialStore:
    """Credential store backed by a psycopg 3 connection pool.

    Every statement runs under ``statement_timeout`` and pool checkout is
    bounded, so a stuck database surfaces as ``StoreUnavailable`` instead of
    a hung request.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )
        if ensure_schema:
            self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (ConstraintViolation, RecordNotFound):
            raise
        except PoolTimeout as exc:
            self.logger.error("store_pool_timeout", operation=operation, error=str(exc))
            raise StoreUnavailable(operation, exc) from exc
        except errors.QueryCanceled as exc:
            self.logger.error("store_statement_timeout", operation=operation)
            raise StoreUnavailable(operation, exc) from exc
        except psycopg.OperationalError as exc:
            self.logger.error("store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable(operation, exc) from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            conn.execute(_SCHEMA)

    @staticmethod
    def _row_to_user(row: Mapping[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            email_verified=row.get("email_verified", False),
            created_at=_aware(row.get("created_at")) or utcnow(),
            updated_at=_aware(row.get("updated_at")) or utcnow(),
            last_login=_aware(row.get("last_login")),
        )

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
        user = User.new(
            email,
            first_name=profile.get("first_name"),
            last_name=profile.get("last_name"),
            role=role,
            is_active=is_active,
        )
        try:
            with self._connect("create_user") as conn:
                conn.execute(
                    """
                    INSERT INTO users (id, email, password_hash, first_name, last_name,
                                       role, is_active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        password_hash,
                        user.first_name,
                        user.last_name,
                        user.role,
                        user.is_active,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        with self._connect("find_by_email") as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect("find_by_id") as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_profile(self, user_id: str, fields: Mapping[str, Any]) -> User:
        if not _is_uuid(user_id):
            raise RecordNotFound("user not found", {"user_id": user_id})
        updates = {name: fields[name] for name in PROFILE_FIELDS if name in fields}
        assignments = ", ".join(f"{name} = %s" for name in updates)
        sql = (
            f"UPDATE users SET {assignments + ', ' if assignments else ''}updated_at = now() "
            f"WHERE id = %s RETURNING {_USER_COLUMNS}"
        )
        with self._connect("update_profile") as conn:
            row = conn.execute(sql, (*updates.values(), user_id)).fetchone()
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return self._row_to_user(row)

    def update_password_hash(self, user_id: str, new_hash: str) -> None:
        self._update_one(
            "update_password_hash",
            "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
            (new_hash, user_id),
        )

    def get_password_hash(self, user_id: str) -> Optional[str]:
        if not _is_uuid(user_id):
            return None
        with self._connect("get_password_hash") as conn:
            row = conn.execute(
                "SELECT password_hash FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return row["password_hash"] if row else None

    def set_active(self, user_id: str, active: bool) -> None:
        self._update_one(
            "set_active",
            "UPDATE users SET is_active = %s, updated_at = now() WHERE id = %s",
            (bool(active), user_id),
        )

    def set_role(self, user_id: str, role: str) -> None:
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        self._update_one(
            "set_role",
            "UPDATE users SET role = %s, updated_at = now() WHERE id = %s",
            (role, user_id),
        )

    def record_login(self, user_id: str) -> None:
        self._update_one(
            "record_login",
            "UPDATE users SET last_login = now() WHERE id = %s",
            (user_id,),
        )

    def list_users(
        self, *, page: int = 1, limit: int = 20, search: Optional[str] = None
    ) -> UserPage:
        where = ""
        params: list[Any] = []
        if search:
            pattern = f"%{search.strip().lower()}%"
            where = (
                "WHERE lower(email) LIKE %s OR lower(coalesce(first_name, '')) LIKE %s "
                "OR lower(coalesce(last_name, '')) LIKE %s"
            )
            params = [pattern, pattern, pattern]
        offset = (page - 1) * limit
        with self._connect("list_users") as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM users {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users {where} "
                "ORDER BY created_at DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return UserPage(
            users=[self._row_to_user(r) for r in rows],
            total=int(total_row["total"]) if total_row else 0,
            page=page,
            limit=limit,
        )

    def verify_connection(self) -> None:
        with self._connect("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _update_one(self, operation: str, sql: str, params: tuple) -> None:
        # ids that are not UUIDs can never match and would fail the column cast
        if not _is_uuid(params[-1]):
            raise RecordNotFound("user not found", {"user_id": params[-1]})
        with self._connect(operation) as conn:
            cur = conn.execute(sql, params)
            if cur.rowcount == 0:
                raise RecordNotFound("user not found", {"user_id": params[-1]})


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
