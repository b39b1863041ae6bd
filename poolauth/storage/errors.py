from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by an identity store backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class NotFound(StorageError):
    """The (pool_id, id) composite key did not resolve."""


class AlreadyExists(StorageError):
    """A primary key or declared-unique key collided on create or update."""


class TenantIsolationViolation(StorageError):
    """A read resolved a record outside the caller's pool.

    Never expected at runtime; surfaced as a fatal defect.
    """


class BackendUnavailable(StorageError):
    """Connection or transport failure talking to the storage engine."""


__all__ = [
    "StorageError",
    "NotFound",
    "AlreadyExists",
    "TenantIsolationViolation",
    "BackendUnavailable",
]
