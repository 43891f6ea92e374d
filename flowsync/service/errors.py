from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - precondition_failed (412)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class PreconditionFailed(ServiceError):
    """A required request parameter is absent (412)."""
    status_code = 412
    error_code = "precondition_failed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class WorkspaceCopyError(ServerError):
    """A workspace copy failed; nothing was committed."""


class FetchFailure(WorkspaceCopyError):
    """Records of one workspace could not be read. Raised before any write."""

    def __init__(self, workspace_id: str, kind: str, cause: str) -> None:
        super().__init__(
            f"failed to fetch {kind} records of workspace {workspace_id}",
            detail={"workspace_id": workspace_id, "kind": kind, "cause": cause},
        )
        self.workspace_id = workspace_id
        self.kind = kind
        self.cause = cause


class WriteFailure(WorkspaceCopyError):
    """An insert or update failed; the whole copy was rolled back."""

    def __init__(self, kind: str, cause: str) -> None:
        super().__init__(
            f"failed to write {kind} records; copy rolled back",
            detail={"kind": kind, "cause": cause},
        )
        self.kind = kind
        self.cause = cause


class PublishFailure(ServerError):
    """An abort event could not be published to the prediction event channel."""

    def __init__(self, execution_id: str, cause: str) -> None:
        super().__init__(
            f"failed to publish abort for execution {execution_id}",
            detail={"execution_id": execution_id, "cause": cause},
        )
        self.execution_id = execution_id
        self.cause = cause


__all__ = [
    "ServiceError",
    "ValidationError",
    "PreconditionFailed",
    "ServerError",
    "WorkspaceCopyError",
    "FetchFailure",
    "WriteFailure",
    "PublishFailure",
]
