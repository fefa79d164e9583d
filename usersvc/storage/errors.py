from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RecordNotFound(LookupError):
    """Raised when an update targets a user id that does not exist."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class BackendUnavailable(Exception):
    """A backing store or cache failed or timed out.

    Surfaced to clients as a generic 500; the original error is logged only.
    """

    backend: str = "backend"

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"{self.backend} {operation} failed")
        self.operation = operation
        self.cause = cause


class StoreUnavailable(BackendUnavailable):
    backend = "credential store"


class CacheUnavailable(BackendUnavailable):
    backend = "session cache"


__all__ = [
    "ConstraintViolation",
    "RecordNotFound",
    "BackendUnavailable",
    "StoreUnavailable",
    "CacheUnavailable",
]
