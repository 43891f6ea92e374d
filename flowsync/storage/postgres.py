from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from flowsync.logging import get_logger
from flowsync.storage.errors import ConstraintViolation, RecordNotFound
from flowsync.storage.models import FLOW_KINDS, FLOW_TYPES, Record, RecordKind


# kind -> platform table; both flow kinds live in chat_flow and are split by type
_TABLES: Dict[RecordKind, str] = {
    RecordKind.TOOL: "tool",
    RecordKind.VARIABLE: "variable",
    RecordKind.ASSISTANT: "assistant",
    RecordKind.CHATFLOW: "chat_flow",
    RecordKind.AGENTFLOW: "chat_flow",
}

# Record field -> column. Every other column of a row travels in Record.payload.
_ID = "id"
_WORKSPACE = "workspaceId"
_NAME = "name"
_TYPE = "type"
_CREATED = "createdDate"
_UPDATED = "updatedDate"
_IMPORTED_ID = "importedId"
_IMPORTED_WORKSPACE = "importedWorkspaceId"
_RESERVED = frozenset(
    {_ID, _WORKSPACE, _NAME, _TYPE, _CREATED, _UPDATED, _IMPORTED_ID, _IMPORTED_WORKSPACE}
)

# Partial unique index guarding the import key against racing copies.
# Rows that were never imported carry '' in both provenance columns.
IMPORT_KEY_INDEX_DDL = (
    'CREATE UNIQUE INDEX IF NOT EXISTS "{table}_import_key_uq" '
    'ON "{table}" ("workspaceId", "importedId", "importedWorkspaceId") '
    "WHERE \"importedId\" <> ''"
)


def _quote(column: str) -> str:
    return '"' + column.replace('"', '""') + '"'


def _to_db(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


class PostgresStore:
    """Postgres-backed workspace record store over the platform's own tables.

    Every write method takes the connection yielded by ``transaction()`` so a
    whole workspace copy commits or rolls back as one unit.
    """

    def __init__(
        self, dsn: str, *, min_size: int = 2, max_size: int = 10
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.unindexed_tables: List[str] = []
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the record tables carry the import provenance columns.

        A missing import-key unique index is logged, not fatal: without it,
        two copies racing into one workspace are not caught by the database.
        """

        required_tables = sorted(set(_TABLES.values()))
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f'public."{table}"',)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply the platform migrations first.".format(
                        ", ".join(missing_tables)
                    )
                )

            for table in required_tables:
                cols = conn.execute(
                    """
                    SELECT column_name
                    FROM information_schema.columns
                    WHERE table_schema = 'public' AND table_name = %s
                    """,
                    (table,),
                ).fetchall()
                names = {c["column_name"] for c in cols}
                missing = {_IMPORTED_ID, _IMPORTED_WORKSPACE, _WORKSPACE} - names
                if missing:
                    raise RuntimeError(
                        f"{table} is missing import provenance columns: {', '.join(sorted(missing))}"
                    )

            self.unindexed_tables = []
            for table in required_tables:
                row = conn.execute(
                    """
                    SELECT 1 AS present
                    FROM pg_indexes
                    WHERE schemaname = 'public' AND tablename = %s
                      AND indexdef ILIKE 'CREATE UNIQUE INDEX%%'
                      AND indexdef LIKE %s AND indexdef LIKE %s
                    """,
                    (table, '%"importedId"%', '%"importedWorkspaceId"%'),
                ).fetchone()
                if not row:
                    self.unindexed_tables.append(table)
            if self.unindexed_tables:
                self.logger.warning(
                    "import_key_index_missing",
                    tables=self.unindexed_tables,
                    hint="run scripts/copy_workspace.py --ensure-indexes",
                )

    def ensure_import_key_indexes(self) -> List[str]:
        """Create the import-key unique index on every record table; returns the tables."""
        tables = sorted(set(_TABLES.values()))
        with self._connect() as conn, conn.transaction():
            for table in tables:
                conn.execute(IMPORT_KEY_INDEX_DDL.format(table=table))
        self.unindexed_tables = []
        self.logger.info("import_key_indexes_ensured", tables=tables)
        return tables

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a pooled connection inside a transaction.

        The transaction commits when the block exits normally and rolls back
        when it raises.
        """
        with self._connect() as conn, conn.transaction():
            yield conn

    @contextmanager
    def _use(self, tx: Optional[Connection]) -> Iterator[Connection]:
        if tx is not None:
            yield tx
            return
        with self._connect() as conn:
            yield conn

    @staticmethod
    def _parse_ts(value: Optional[Any]) -> Optional[datetime]:
        if value is None or isinstance(value, datetime):
            return value
        try:
            return datetime.fromisoformat(str(value))
        except ValueError:
            return None

    def _record_from_row(self, kind: RecordKind, row: dict) -> Record:
        return Record(
            id=str(row[_ID]),
            kind=kind,
            workspace_id=str(row[_WORKSPACE]),
            name=row.get(_NAME) or "",
            payload={k: v for k, v in row.items() if k not in _RESERVED},
            flow_type=row.get(_TYPE) if kind in FLOW_KINDS else None,
            created_at=self._parse_ts(row.get(_CREATED)),
            updated_at=self._parse_ts(row.get(_UPDATED)),
            imported_from_id=row.get(_IMPORTED_ID) or None,
            imported_from_workspace_id=row.get(_IMPORTED_WORKSPACE) or None,
        )

    @staticmethod
    def _row_values(kind: RecordKind, rec: Record) -> Dict[str, Any]:
        """Column values for ``rec``; ``name`` only where the table has one."""
        values: Dict[str, Any] = {
            _WORKSPACE: rec.workspace_id,
            _IMPORTED_ID: rec.imported_from_id or "",
            _IMPORTED_WORKSPACE: rec.imported_from_workspace_id or "",
        }
        if kind != RecordKind.ASSISTANT:
            values[_NAME] = rec.name
        if kind in FLOW_KINDS and rec.flow_type:
            values[_TYPE] = rec.flow_type
        for column, value in rec.payload.items():
            if column not in _RESERVED:
                values[column] = _to_db(value)
        return values

    def fetch_by_workspace(
        self,
        kind: RecordKind,
        workspace_id: str,
        tx: Optional[Connection] = None,
    ) -> List[Record]:
        table = _TABLES[kind]
        if kind in FLOW_KINDS:
            query = (
                f'SELECT * FROM "{table}" '
                'WHERE "workspaceId" = %s AND "type" = ANY(%s) ORDER BY "createdDate", "id"'
            )
            params: tuple = (workspace_id, list(FLOW_TYPES[kind]))
        else:
            query = (
                f'SELECT * FROM "{table}" '
                'WHERE "workspaceId" = %s ORDER BY "createdDate", "id"'
            )
            params = (workspace_id,)
        with self._use(tx) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._record_from_row(kind, row) for row in rows]

    def bulk_insert(
        self,
        kind: RecordKind,
        records: Sequence[Record],
        tx: Optional[Connection] = None,
    ) -> List[Record]:
        """Insert ``records``; ids are assigned here and returned in input order."""
        if not records:
            return []
        table = _TABLES[kind]
        now = datetime.now(timezone.utc)
        inserted = [
            rec.clone(id=str(uuid.uuid4()), kind=kind, created_at=now, updated_at=now)
            for rec in records
        ]
        try:
            with self._use(tx) as conn, conn.cursor() as cur:
                for rec in inserted:
                    values = self._row_values(kind, rec)
                    values[_ID] = rec.id
                    values[_CREATED] = rec.created_at
                    values[_UPDATED] = rec.updated_at
                    columns = ", ".join(_quote(c) for c in values)
                    placeholders = ", ".join(["%s"] * len(values))
                    cur.execute(
                        f'INSERT INTO "{table}" ({columns}) VALUES ({placeholders})',
                        tuple(values.values()),
                    )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "record already imported into workspace",
                {"kind": kind.value, "table": table},
            ) from exc
        return inserted

    def update_by_id(
        self,
        kind: RecordKind,
        record_id: str,
        fields: Dict[str, Any],
        tx: Optional[Connection] = None,
    ) -> None:
        table = _TABLES[kind]
        rec = Record(id=record_id, kind=kind, **fields)
        values = self._row_values(kind, rec)
        assignments = [f"{_quote(c)} = %s" for c in values]
        assignments.append('"createdDate" = COALESCE(%s, "createdDate")')
        assignments.append('"updatedDate" = now()')
        params = [*values.values(), rec.created_at, record_id]
        try:
            with self._use(tx) as conn, conn.cursor() as cur:
                cur.execute(
                    f'UPDATE "{table}" SET {", ".join(assignments)} WHERE "id" = %s',
                    tuple(params),
                )
                if cur.rowcount == 0:
                    raise RecordNotFound(
                        "record not found", {"kind": kind.value, "id": record_id}
                    )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "record already imported into workspace",
                {"kind": kind.value, "table": table},
            ) from exc

    def list_flows(
        self, workspace_id: str, flow_type: Optional[str] = None
    ) -> List[Record]:
        with self._connect() as conn:
            if flow_type:
                rows = conn.execute(
                    'SELECT * FROM "chat_flow" WHERE "workspaceId" = %s AND "type" = %s ORDER BY "updatedDate" DESC',
                    (workspace_id, flow_type),
                ).fetchall()
            else:
                rows = conn.execute(
                    'SELECT * FROM "chat_flow" WHERE "workspaceId" = %s ORDER BY "updatedDate" DESC',
                    (workspace_id,),
                ).fetchall()
        flows = []
        for row in rows:
            kind = (
                RecordKind.AGENTFLOW
                if row.get(_TYPE) in FLOW_TYPES[RecordKind.AGENTFLOW]
                else RecordKind.CHATFLOW
            )
            flows.append(self._record_from_row(kind, row))
        return flows

    def close(self) -> None:
        self.pool.close()
