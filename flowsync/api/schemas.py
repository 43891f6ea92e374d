from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from flowsync.storage.models import CopySummary, Record

# Maximum length for workspace, flow and chat identifiers
MAX_ID_LENGTH = 128

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "precondition_failed",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _strip_id(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("identifier must be a string")
    value = value.strip()
    if not value:
        raise ValueError("identifier must not be empty")
    return value


class CopyWorkspaceRequest(BaseModel):
    from_workspace_id: str = Field(..., max_length=MAX_ID_LENGTH)
    to_workspace_id: str = Field(..., max_length=MAX_ID_LENGTH)

    @field_validator("from_workspace_id", "to_workspace_id")
    @classmethod
    def _validate_ids(cls, value: str) -> str:
        return _strip_id(value)

    @model_validator(mode="after")
    def _distinct_workspaces(self) -> "CopyWorkspaceRequest":
        if self.from_workspace_id == self.to_workspace_id:
            raise ValueError("from_workspace_id and to_workspace_id must differ")
        return self


class KindCounts(BaseModel):
    created: int
    updated: int


class CopyWorkspaceResponse(BaseModel):
    message: str = "success"
    from_workspace_id: str
    to_workspace_id: str
    created: int
    updated: int
    kinds: Dict[str, KindCounts]
    remapped_tool_ids: int

    @classmethod
    def from_summary(cls, summary: CopySummary) -> "CopyWorkspaceResponse":
        return cls(
            from_workspace_id=summary.source_workspace_id,
            to_workspace_id=summary.destination_workspace_id,
            created=summary.created,
            updated=summary.updated,
            kinds={
                kind: KindCounts(created=counts.created, updated=counts.updated)
                for kind, counts in summary.kinds.items()
            },
            remapped_tool_ids=summary.remapped_tool_ids,
        )


class FlowResponse(BaseModel):
    id: str
    workspace_id: str
    name: str
    type: Optional[str] = None
    payload: Dict[str, Any]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    imported_from_id: Optional[str] = None
    imported_from_workspace_id: Optional[str] = None

    @classmethod
    def from_record(cls, record: Record) -> "FlowResponse":
        return cls(
            id=record.id,
            workspace_id=record.workspace_id,
            name=record.name,
            type=record.flow_type,
            payload=record.payload,
            created_at=record.created_at,
            updated_at=record.updated_at,
            imported_from_id=record.imported_from_id,
            imported_from_workspace_id=record.imported_from_workspace_id,
        )


class FlowListResponse(BaseModel):
    items: List[FlowResponse]


class AbortExecutionResponse(BaseModel):
    execution_id: str
    mode: str
