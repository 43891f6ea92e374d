"""Copy the records of one workspace into another.

Records are matched against earlier copies through their import provenance
(``imported_from_id``, ``imported_from_workspace_id``), so repeating a copy
updates what was copied before instead of duplicating it. Tool ids are
regenerated per workspace; flows that embed a tool id are rewritten to point
at the destination tool before they are written.

All kinds are written inside one store transaction. A failure in any kind
rolls back every kind written before it.
"""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional

from flowsync.logging import get_logger, sanitize_error_message
from flowsync.service.errors import (
    FetchFailure,
    PreconditionFailed,
    ValidationError,
    WriteFailure,
)
from flowsync.storage.models import (
    COPY_ORDER,
    FLOW_KINDS,
    FLOW_TYPES,
    CopyPlan,
    CopySummary,
    KindSummary,
    Record,
    RecordKind,
)

if TYPE_CHECKING:
    from flowsync.storage.memory import MemoryStore
    from flowsync.storage.postgres import PostgresStore

logger = get_logger(__name__)


def separate_records(
    kind: RecordKind,
    from_records: Iterable[Record],
    to_records: Iterable[Record],
    source_workspace_id: str,
    destination_workspace_id: str,
) -> CopyPlan:
    """Split source records into creates and updates for the destination.

    Each source record is re-stamped with the destination workspace and its
    provenance, and its timestamps are cleared. When a destination record
    carries the same provenance, the planned record takes over that record's
    ``id`` and ``created_at`` and becomes an update; otherwise it is a create
    with no id. The input records are left untouched.
    """
    existing: Dict[tuple[str, str], Record] = {}
    for rec in to_records:
        key = rec.import_key()
        if key is not None:
            existing.setdefault(key, rec)

    plan = CopyPlan(kind=kind)
    for rec in from_records:
        planned = rec.clone(
            kind=kind,
            workspace_id=destination_workspace_id,
            imported_from_id=rec.id,
            imported_from_workspace_id=source_workspace_id,
            created_at=None,
            updated_at=None,
        )
        match = existing.get(planned.import_key())
        if match is not None:
            plan.to_update.append(
                planned.clone(id=match.id, created_at=match.created_at)
            )
        else:
            plan.to_create.append(planned.clone(id=None))
    return plan


def rewrite_references(
    records: Iterable[Record], id_remap: Mapping[str, str]
) -> List[Record]:
    """Replace every remapped id inside each record's serialized payload.

    This is a plain text substitution over the JSON form of the payload: any
    occurrence of an old id is replaced, including occurrences that are not
    tool references. Ids are matched in their JSON-escaped form, so ids with
    quotes, backslashes or non-ASCII characters are found as well.
    """
    replacements = [
        (_json_fragment(old_id), _json_fragment(new_id))
        for old_id, new_id in id_remap.items()
        if old_id and old_id != new_id
    ]
    rewritten: List[Record] = []
    for rec in records:
        if not replacements:
            rewritten.append(rec.clone())
            continue
        serialized = json.dumps(rec.payload, ensure_ascii=False, default=str)
        for old_text, new_text in replacements:
            serialized = serialized.replace(old_text, new_text)
        rewritten.append(rec.clone(payload=json.loads(serialized)))
    return rewritten


def _json_fragment(value: str) -> str:
    """``value`` as it appears inside a serialized JSON string, without quotes."""
    return json.dumps(value, ensure_ascii=False)[1:-1]


class WorkspaceCopyService:
    """Copies tools, variables, assistants and flows between workspaces."""

    def __init__(self, store: "PostgresStore | MemoryStore") -> None:
        self.store = store

    def _fetch_all(
        self, workspace_id: str
    ) -> Dict[RecordKind, List[Record]]:
        records: Dict[RecordKind, List[Record]] = {}
        for kind in COPY_ORDER:
            try:
                records[kind] = self.store.fetch_by_workspace(kind, workspace_id)
            except Exception as exc:
                logger.error(
                    "workspace_copy_fetch_failed",
                    workspace_id=workspace_id,
                    kind=kind.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise FetchFailure(
                    workspace_id, kind.value, sanitize_error_message(str(exc))
                ) from exc
        return records

    def _apply_plan(self, plan: CopyPlan, tx) -> Dict[str, str]:
        """Write ``plan`` and return source id -> destination id for every record."""
        final_ids: Dict[str, str] = {}
        if plan.to_create:
            inserted = self.store.bulk_insert(plan.kind, plan.to_create, tx)
            for planned, stored in zip(plan.to_create, inserted):
                final_ids[planned.imported_from_id] = stored.id
        for rec in plan.to_update:
            self.store.update_by_id(plan.kind, rec.id, rec.to_fields(), tx)
            final_ids[rec.imported_from_id] = rec.id
        return final_ids

    @staticmethod
    def _validate_pair(source_workspace_id: str, destination_workspace_id: str) -> None:
        if not source_workspace_id or not destination_workspace_id:
            raise ValidationError(
                "source and destination workspace ids are required",
                detail={
                    "from_workspace_id": source_workspace_id,
                    "to_workspace_id": destination_workspace_id,
                },
            )
        if source_workspace_id == destination_workspace_id:
            raise ValidationError(
                "cannot copy a workspace into itself",
                detail={"workspace_id": source_workspace_id},
            )

    def preview(
        self, source_workspace_id: str, destination_workspace_id: str
    ) -> CopySummary:
        """Count what a copy would create and update without writing anything."""
        self._validate_pair(source_workspace_id, destination_workspace_id)
        copy_from = self._fetch_all(source_workspace_id)
        copy_to = self._fetch_all(destination_workspace_id)
        summary = CopySummary(
            source_workspace_id=source_workspace_id,
            destination_workspace_id=destination_workspace_id,
        )
        for kind in COPY_ORDER:
            if not copy_from[kind]:
                continue
            plan = separate_records(
                kind,
                copy_from[kind],
                copy_to[kind],
                source_workspace_id,
                destination_workspace_id,
            )
            summary.kinds[kind.value] = KindSummary(
                created=len(plan.to_create), updated=len(plan.to_update)
            )
        summary.remapped_tool_ids = len(copy_from[RecordKind.TOOL])
        return summary

    def copy_workspace(
        self, source_workspace_id: str, destination_workspace_id: str
    ) -> CopySummary:
        """Copy every record kind from the source into the destination workspace.

        Raises:
            ValidationError: ids are missing or identical
            FetchFailure: a record set could not be read; nothing was written
            WriteFailure: a write or the commit failed; nothing was committed
        """
        self._validate_pair(source_workspace_id, destination_workspace_id)

        started = time.monotonic()
        logger.info(
            "workspace_copy_started",
            source_workspace_id=source_workspace_id,
            destination_workspace_id=destination_workspace_id,
        )
        copy_from = self._fetch_all(source_workspace_id)
        copy_to = self._fetch_all(destination_workspace_id)

        summary = CopySummary(
            source_workspace_id=source_workspace_id,
            destination_workspace_id=destination_workspace_id,
        )
        id_remap: Dict[str, str] = {}
        current: Optional[RecordKind] = None
        try:
            with self.store.transaction() as tx:
                for kind in COPY_ORDER:
                    from_records = copy_from[kind]
                    if not from_records:
                        continue
                    current = kind
                    if kind in FLOW_KINDS:
                        from_records = rewrite_references(from_records, id_remap)
                    plan = separate_records(
                        kind,
                        from_records,
                        copy_to[kind],
                        source_workspace_id,
                        destination_workspace_id,
                    )
                    final_ids = self._apply_plan(plan, tx)
                    if kind == RecordKind.TOOL:
                        id_remap.update(final_ids)
                    summary.kinds[kind.value] = KindSummary(
                        created=len(plan.to_create), updated=len(plan.to_update)
                    )
                current = None
        except Exception as exc:
            failed = current.value if current is not None else "commit"
            logger.error(
                "workspace_copy_rolled_back",
                source_workspace_id=source_workspace_id,
                destination_workspace_id=destination_workspace_id,
                kind=failed,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise WriteFailure(failed, sanitize_error_message(str(exc))) from exc

        summary.remapped_tool_ids = len(id_remap)
        logger.info(
            "workspace_copy_completed",
            source_workspace_id=source_workspace_id,
            destination_workspace_id=destination_workspace_id,
            created=summary.created,
            updated=summary.updated,
            remapped_tool_ids=summary.remapped_tool_ids,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return summary

    def list_flows(
        self, workspace_id: str, flow_type: Optional[str] = None
    ) -> List[Record]:
        """List the flows of a workspace, optionally narrowed to one flow type."""
        if not workspace_id:
            raise PreconditionFailed("workspace_id not provided")
        if flow_type is not None:
            flow_type = flow_type.upper()
            known = {t for types in FLOW_TYPES.values() for t in types}
            if flow_type not in known:
                raise ValidationError(
                    "unknown flow type",
                    detail={"type": flow_type, "allowed": sorted(known)},
                )
        return self.store.list_flows(workspace_id, flow_type)
