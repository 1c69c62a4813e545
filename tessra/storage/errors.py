from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(Exception):
    """A backing store could not be reached or failed mid-operation."""

    backend = "store"

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class CacheUnavailableError(StoreUnavailableError):
    """Redis is not configured, unreachable, or returned a connection error."""

    backend = "cache"


class DurableStoreUnavailableError(StoreUnavailableError):
    """Postgres is unreachable or the connection dropped."""

    backend = "database"


__all__ = [
    "ConstraintViolation",
    "StoreUnavailableError",
    "CacheUnavailableError",
    "DurableStoreUnavailableError",
]
