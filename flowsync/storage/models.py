from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RecordKind(str, Enum):
    """Record kinds copied between workspaces, in write order.

    Tools come first because flows embed tool ids; chatflows and agentflows
    share the ``chat_flow`` table and differ only by ``flow_type``.
    """

    TOOL = "tool"
    VARIABLE = "variable"
    ASSISTANT = "assistant"
    CHATFLOW = "chatflow"
    AGENTFLOW = "agentflow"


COPY_ORDER: tuple[RecordKind, ...] = (
    RecordKind.TOOL,
    RecordKind.VARIABLE,
    RecordKind.ASSISTANT,
    RecordKind.CHATFLOW,
    RecordKind.AGENTFLOW,
)

# Kinds whose payload may reference tool ids
FLOW_KINDS = frozenset({RecordKind.CHATFLOW, RecordKind.AGENTFLOW})

# flow_type values grouped under each flow kind
FLOW_TYPES: Dict[RecordKind, tuple[str, ...]] = {
    RecordKind.CHATFLOW: ("CHATFLOW", "ASSISTANT"),
    RecordKind.AGENTFLOW: ("MULTIAGENT",),
}


def kind_for_flow_type(flow_type: str) -> RecordKind:
    for kind, types in FLOW_TYPES.items():
        if flow_type in types:
            return kind
    raise ValueError(f"unknown flow type: {flow_type}")


@dataclass
class Record:
    id: Optional[str]
    kind: RecordKind
    workspace_id: str
    name: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    flow_type: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    imported_from_id: Optional[str] = None
    imported_from_workspace_id: Optional[str] = None

    def clone(self, **changes: Any) -> "Record":
        """Return a copy with an independent payload and ``changes`` applied."""
        changes.setdefault("payload", self.payload)
        changes["payload"] = copy.deepcopy(changes["payload"])
        return replace(self, **changes)

    def import_key(self) -> Optional[tuple[str, str]]:
        if not self.imported_from_id or not self.imported_from_workspace_id:
            return None
        return (self.imported_from_id, self.imported_from_workspace_id)

    def to_fields(self) -> Dict[str, Any]:
        """Column values for an update; ``id`` and ``kind`` are never written."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in {"id", "kind"}
        }

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["kind"] = self.kind.value
        for key in ("created_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class CopyPlan:
    """Creates and updates computed for one kind during one copy."""

    kind: RecordKind
    to_create: List[Record] = field(default_factory=list)
    to_update: List[Record] = field(default_factory=list)


@dataclass
class KindSummary:
    created: int = 0
    updated: int = 0


@dataclass
class CopySummary:
    source_workspace_id: str
    destination_workspace_id: str
    kinds: Dict[str, KindSummary] = field(default_factory=dict)
    remapped_tool_ids: int = 0

    @property
    def created(self) -> int:
        return sum(k.created for k in self.kinds.values())

    @property
    def updated(self) -> int:
        return sum(k.updated for k in self.kinds.values())
