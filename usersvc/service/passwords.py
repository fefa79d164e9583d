from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from usersvc.config import Settings
from usersvc.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """argon2id hashing with cost parameters taken from settings."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against unknown emails so a miss costs the same as a mismatch
        self._dummy_hash = self._hasher.hash("not-a-real-password")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordService":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash_password(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("password must not be empty")
        return self._hasher.hash(plaintext)

    def verify_password(self, plaintext: str, password_hash: str | None) -> bool:
        """Constant-time check; any malformed input is simply a mismatch."""
        if not plaintext or not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid")
            return False

    def burn_verification(self, plaintext: str) -> None:
        """Spend one verification on a throwaway hash."""
        self.verify_password(plaintext or "x", self._dummy_hash)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
