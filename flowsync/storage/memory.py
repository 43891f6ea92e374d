from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from flowsync.logging import get_logger
from flowsync.storage.errors import ConstraintViolation, RecordNotFound, StorageError
from flowsync.storage.models import FLOW_KINDS, Record, RecordKind, kind_for_flow_type


class MemoryTransaction:
    """Handle passed to writes performed inside ``MemoryStore.transaction``."""

    def __init__(self) -> None:
        self.id = str(uuid.uuid4())
        self.active = True


class MemoryStore:
    """In-memory workspace record store for tests and single-process dev runs."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.records: Dict[RecordKind, Dict[str, Record]] = {
            kind: {} for kind in RecordKind
        }
        # RLock so helpers can nest inside an open transaction on the same thread
        self._data_lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[MemoryTransaction]:
        """Run writes atomically; any exception restores the pre-transaction state."""
        with self._data_lock:
            snapshot = copy.deepcopy(self.records)
            tx = MemoryTransaction()
            try:
                yield tx
            except BaseException:
                self.records = snapshot
                self.logger.info("memory_transaction_rolled_back", tx_id=tx.id)
                raise
            finally:
                tx.active = False

    @staticmethod
    def _check_tx(tx: Optional[MemoryTransaction]) -> None:
        if tx is not None and not tx.active:
            raise StorageError("transaction is closed", {"tx_id": tx.id})

    def fetch_by_workspace(
        self,
        kind: RecordKind,
        workspace_id: str,
        tx: Optional[MemoryTransaction] = None,
    ) -> List[Record]:
        self._check_tx(tx)
        with self._data_lock:
            rows = [
                rec.clone()
                for rec in self.records[kind].values()
                if rec.workspace_id == workspace_id
            ]
        return sorted(rows, key=lambda r: (r.created_at or datetime.min, r.id or ""))

    def get_record(self, kind: RecordKind, record_id: str) -> Optional[Record]:
        with self._data_lock:
            rec = self.records[kind].get(record_id)
            return rec.clone() if rec else None

    def _find_by_import_key(
        self, kind: RecordKind, workspace_id: str, key: tuple[str, str]
    ) -> Optional[Record]:
        for rec in self.records[kind].values():
            if rec.workspace_id == workspace_id and rec.import_key() == key:
                return rec
        return None

    def bulk_insert(
        self,
        kind: RecordKind,
        records: Sequence[Record],
        tx: Optional[MemoryTransaction] = None,
    ) -> List[Record]:
        """Insert ``records`` and return them with their assigned ids, in input order."""
        self._check_tx(tx)
        inserted: List[Record] = []
        with self._data_lock:
            for rec in records:
                key = rec.import_key()
                if key and self._find_by_import_key(kind, rec.workspace_id, key):
                    raise ConstraintViolation(
                        "record already imported into workspace",
                        {
                            "kind": kind.value,
                            "workspace_id": rec.workspace_id,
                            "imported_from_id": key[0],
                        },
                    )
                now = datetime.utcnow()
                stored = rec.clone(
                    id=str(uuid.uuid4()),
                    kind=kind,
                    created_at=now,
                    updated_at=now,
                )
                self.records[kind][stored.id] = stored
                inserted.append(stored.clone())
        return inserted

    def update_by_id(
        self,
        kind: RecordKind,
        record_id: str,
        fields: Dict[str, Any],
        tx: Optional[MemoryTransaction] = None,
    ) -> None:
        self._check_tx(tx)
        with self._data_lock:
            current = self.records[kind].get(record_id)
            if current is None:
                raise RecordNotFound(
                    "record not found", {"kind": kind.value, "id": record_id}
                )
            values = copy.deepcopy(fields)
            values.pop("id", None)
            values.pop("kind", None)
            if values.get("created_at") is None:
                values.pop("created_at", None)
            values["updated_at"] = datetime.utcnow()
            self.records[kind][record_id] = current.clone(**values)

    def create_record(
        self,
        kind: RecordKind,
        workspace_id: str,
        name: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        flow_type: Optional[str] = None,
    ) -> Record:
        if kind in FLOW_KINDS:
            flow_type = flow_type or ("MULTIAGENT" if kind == RecordKind.AGENTFLOW else "CHATFLOW")
            if kind_for_flow_type(flow_type) != kind:
                raise ValueError(f"flow type {flow_type} does not belong to {kind.value}")
        rec = Record(
            id=None,
            kind=kind,
            workspace_id=workspace_id,
            name=name,
            payload=payload or {},
            flow_type=flow_type,
        )
        return self.bulk_insert(kind, [rec])[0]

    def list_flows(
        self, workspace_id: str, flow_type: Optional[str] = None
    ) -> List[Record]:
        kinds = [kind_for_flow_type(flow_type)] if flow_type else sorted(FLOW_KINDS)
        flows: List[Record] = []
        for kind in kinds:
            flows.extend(
                rec
                for rec in self.fetch_by_workspace(kind, workspace_id)
                if flow_type is None or rec.flow_type == flow_type
            )
        return flows
