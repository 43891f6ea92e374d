import pytest

from flowsync.storage.errors import ConstraintViolation, RecordNotFound, StorageError
from flowsync.storage.memory import MemoryStore
from flowsync.storage.models import Record, RecordKind


def _imported(workspace_id, source_id, source_ws="ws-a"):
    return Record(
        id=None,
        kind=RecordKind.TOOL,
        workspace_id=workspace_id,
        name="tool",
        imported_from_id=source_id,
        imported_from_workspace_id=source_ws,
    )


def test_bulk_insert_assigns_ids_in_order():
    store = MemoryStore()
    inserted = store.bulk_insert(
        RecordKind.TOOL, [_imported("ws-b", "t1"), _imported("ws-b", "t2")]
    )

    assert [r.imported_from_id for r in inserted] == ["t1", "t2"]
    assert all(r.id for r in inserted)
    assert inserted[0].id != inserted[1].id
    assert inserted[0].created_at is not None


def test_bulk_insert_rejects_duplicate_import_key():
    store = MemoryStore()
    store.bulk_insert(RecordKind.TOOL, [_imported("ws-b", "t1")])

    with pytest.raises(ConstraintViolation):
        store.bulk_insert(RecordKind.TOOL, [_imported("ws-b", "t1")])

    # same provenance in another workspace is fine
    store.bulk_insert(RecordKind.TOOL, [_imported("ws-c", "t1")])


def test_update_by_id_keeps_created_at_when_absent():
    store = MemoryStore()
    rec = store.create_record(RecordKind.VARIABLE, "ws-a", "timeout", {"value": "1"})

    store.update_by_id(
        RecordKind.VARIABLE, rec.id, {"name": "timeout", "payload": {"value": "2"}, "created_at": None}
    )

    updated = store.get_record(RecordKind.VARIABLE, rec.id)
    assert updated.payload == {"value": "2"}
    assert updated.created_at == rec.created_at
    assert updated.updated_at >= rec.updated_at


def test_update_unknown_id_raises():
    store = MemoryStore()
    with pytest.raises(RecordNotFound):
        store.update_by_id(RecordKind.TOOL, "missing", {"name": "x"})


def test_transaction_rolls_back_on_error():
    store = MemoryStore()
    kept = store.create_record(RecordKind.TOOL, "ws-a", "kept")

    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            store.bulk_insert(RecordKind.TOOL, [_imported("ws-b", "t1")], tx)
            store.update_by_id(RecordKind.TOOL, kept.id, {"name": "changed"}, tx)
            raise RuntimeError("boom")

    assert store.fetch_by_workspace(RecordKind.TOOL, "ws-b") == []
    assert store.get_record(RecordKind.TOOL, kept.id).name == "kept"


def test_closed_transaction_rejects_writes():
    store = MemoryStore()
    with store.transaction() as tx:
        pass

    with pytest.raises(StorageError):
        store.bulk_insert(RecordKind.TOOL, [_imported("ws-b", "t1")], tx)


def test_fetch_returns_independent_copies():
    store = MemoryStore()
    rec = store.create_record(RecordKind.ASSISTANT, "ws-a", "helper", {"x": 1})

    [fetched] = store.fetch_by_workspace(RecordKind.ASSISTANT, "ws-a")
    fetched.payload["x"] = 2

    assert store.get_record(RecordKind.ASSISTANT, rec.id).payload == {"x": 1}


def test_create_record_validates_flow_type():
    store = MemoryStore()
    agent = store.create_record(RecordKind.AGENTFLOW, "ws-a", "team")
    assert agent.flow_type == "MULTIAGENT"

    with pytest.raises(ValueError):
        store.create_record(RecordKind.CHATFLOW, "ws-a", "bad", flow_type="MULTIAGENT")
