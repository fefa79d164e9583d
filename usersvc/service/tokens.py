from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from usersvc.config import Settings
from usersvc.logging import get_logger
from usersvc.service.errors import InvalidTokenError
from usersvc.storage.interfaces import SessionCache
from usersvc.storage.models import RefreshToken, User

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    email: str
    role: str
    iat: int
    exp: int
    jti: str

    @property
    def user_id(self) -> str:
        return self.sub


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenEngine:
    """HS256 access tokens and cache-backed opaque refresh tokens."""

    def __init__(
        self,
        cache: SessionCache,
        *,
        secret: str,
        issuer: str,
        audience: str,
        access_ttl_seconds: int = 60 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        leeway_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self.cache = cache
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, cache: SessionCache) -> "TokenEngine":
        return cls(
            cache,
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    def now(self) -> int:
        return int(self._clock())

    def revocation_ttl(self, exp: int) -> int:
        """Seconds a revocation entry must outlive a token that expires at ``exp``.

        Verification accepts a token until ``exp + leeway_seconds``, so the
        entry covers the leeway plus one second for sub-second clock drift.
        """
        return max(0, exp + self.leeway_seconds - self.now() + 1)

    @property
    def cutoff_ttl(self) -> int:
        return self.access_ttl_seconds + self.leeway_seconds + 1

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm before touching the signature
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            logger.warning("jwt_signature_mismatch")
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self.leeway_seconds:
            return None
        return payload

    def issue_access_token(self, user: User) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "token_type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.access_ttl_seconds,
        }
        return self._encode_jwt(payload)

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise InvalidTokenError("invalid or expired token")
        try:
            return AccessClaims(
                sub=str(payload["sub"]),
                email=str(payload.get("email") or ""),
                role=str(payload.get("role") or "user"),
                iat=int(payload.get("iat") or 0),
                exp=int(payload["exp"]),
                jti=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("invalid or expired token")

    async def issue_refresh_token(self, user_id: str) -> str:
        record = RefreshToken.new(user_id, self.refresh_ttl_seconds)
        await self.cache.store_refresh_token(record.token, user_id, record.ttl_seconds)
        return record.token

    async def issue_pair(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(user),
            refresh_token=await self.issue_refresh_token(user.id),
            expires_in=self.access_ttl_seconds,
        )

    async def rotate_refresh_token(
        self,
        old_token: str,
        load_user: Callable[[str], Awaitable[Optional[User]]],
    ) -> tuple[TokenPair, str]:
        """Consume ``old_token`` and mint a fresh pair for its owner.

        The token is gone after the first call whatever happens next, so a
        replayed or concurrently rotated token always fails. ``load_user``
        returns the owner only while the account may still sign in.
        """
        if not old_token:
            raise InvalidTokenError("invalid refresh token")
        user_id = await self.cache.consume_refresh_token(old_token)
        if not user_id:
            logger.warning("refresh_token_rejected", reason="unknown_or_used")
            raise InvalidTokenError("invalid refresh token")
        user = await load_user(user_id)
        if user is None:
            logger.warning("refresh_token_rejected", reason="user_unavailable", user_id=user_id)
            raise InvalidTokenError("invalid refresh token")
        return await self.issue_pair(user), user_id
