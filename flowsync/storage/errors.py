from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for data-access failures raised by the stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a uniqueness or FK constraint is violated.

    Copying twice into the same workspace concurrently can trip the
    ``(imported_from_id, imported_from_workspace_id)`` unique index.
    """


class RecordNotFound(StorageError):
    """An update targeted a record id that does not exist in the workspace table."""


__all__ = ["StorageError", "ConstraintViolation", "RecordNotFound"]
