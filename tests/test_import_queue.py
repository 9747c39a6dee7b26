"""Tests for the import queue state machine and the in-memory queue store."""

import threading
from datetime import datetime, timezone

import pytest

from delivery_ingest.errors import QueueItemNotFoundError, QueuePreconditionError
from delivery_ingest.import_queue import (
    check_processable,
    count_by_status,
    failure_fields,
    merge_upsert,
    patch_fields,
    queue_doc_id,
    success_fields,
)
from delivery_ingest.memory_store import InMemoryStore
from delivery_ingest.models import ImportQueueItem, QueuePatch, QueueUpsert


NOW = datetime(2024, 3, 5, 9, 0, tzinfo=timezone.utc)


def _item(**fields):
    data = {"id": "f1", "file_id": "f1", "file_name": "a.xlsx", "status": "pending", "supplier_id": 1}
    data.update(fields)
    return ImportQueueItem(**data)


def _upsert(file_id="f1", supplier_id=None, **fields):
    return QueueUpsert(file_id=file_id, file_name="a.xlsx", supplier_id=supplier_id, **fields)


# ---------------------------------------------------------------------------
# Discovery upsert
# ---------------------------------------------------------------------------

def test_queue_doc_id_normalizes_slashes():
    assert queue_doc_id(" abc/def ") == "abc_def"


def test_new_row_status_from_match():
    assert merge_upsert(None, _upsert(supplier_id=3))["status"] == "pending"
    assert merge_upsert(None, _upsert())["status"] == "pending_supplier"


def test_confirmed_supplier_survives_fresh_inference():
    fields = merge_upsert(_item(supplier_id=5, status="pending"), _upsert(supplier_id=None, inferred_supplier_name="x"))
    assert fields["supplier_id"] == 5
    assert fields["status"] == "pending"
    assert fields["inferred_supplier_name"] == "x"


def test_rediscovery_assigns_supplier_to_waiting_row():
    fields = merge_upsert(_item(supplier_id=None, status="pending_supplier"), _upsert(supplier_id=2))
    assert fields["supplier_id"] == 2
    assert fields["status"] == "pending"


@pytest.mark.parametrize("status", ["processing", "processed", "error", "ready"])
def test_rediscovery_keeps_later_states(status):
    fields = merge_upsert(_item(status=status), _upsert(supplier_id=1))
    assert fields["status"] == status


# ---------------------------------------------------------------------------
# Manual patch
# ---------------------------------------------------------------------------

def test_patch_requires_fields():
    with pytest.raises(ValueError):
        patch_fields(_item(), QueuePatch())


def test_assigning_supplier_leaves_pending_supplier():
    fields = patch_fields(_item(supplier_id=None, status="pending_supplier"), QueuePatch(supplier_id=4))
    assert fields == {"supplier_id": 4, "status": "pending"}


def test_clearing_supplier_returns_to_pending_supplier():
    fields = patch_fields(_item(), QueuePatch(supplier_id=None))
    assert fields == {"supplier_id": None, "status": "pending_supplier"}


def test_explicit_status_change():
    fields = patch_fields(_item(status="error"), QueuePatch(status="ready"))
    assert fields == {"status": "ready"}


def test_pending_supplier_with_supplier_rejected():
    with pytest.raises(ValueError):
        patch_fields(_item(), QueuePatch(status="pending_supplier"))


def test_pending_without_supplier_rejected():
    with pytest.raises(ValueError):
        patch_fields(_item(supplier_id=None, status="pending_supplier"), QueuePatch(status="pending"))


def test_error_message_stamps_and_clears():
    set_fields = patch_fields(_item(), QueuePatch(error_message="bad mapping"), now=NOW)
    assert set_fields == {"error_message": "bad mapping", "last_error_at": NOW}
    cleared = patch_fields(_item(), QueuePatch(error_message=None), now=NOW)
    assert cleared == {"error_message": None, "last_error_at": None}


# ---------------------------------------------------------------------------
# Processing transitions
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("status", ["pending", "ready", "error"])
def test_processable_states(status):
    check_processable(_item(status=status))


@pytest.mark.parametrize("status", ["processing", "processed", "pending_supplier"])
def test_unprocessable_states(status):
    with pytest.raises(QueuePreconditionError) as exc_info:
        check_processable(_item(status=status))
    assert exc_info.value.status == status


def test_processing_requires_supplier():
    with pytest.raises(QueuePreconditionError, match="supplier"):
        check_processable(_item(supplier_id=None, status="error"))


def test_success_and_failure_fields():
    assert success_fields(NOW) == {"status": "processed", "processed_at": NOW, "error_message": None, "last_error_at": None}
    assert failure_fields("boom", NOW) == {"status": "error", "error_message": "boom", "last_error_at": NOW}


def test_count_by_status_zero_fills():
    counts = count_by_status(["pending", "pending", "error"])
    assert counts["pending"] == 2
    assert counts["error"] == 1
    assert counts["processed"] == 0
    assert len(counts) == 6


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

def test_upsert_is_idempotent_per_file_id():
    store = InMemoryStore()
    first = store.upsert_queue_item(_upsert(file_id="abc", supplier_id=1))
    second = store.upsert_queue_item(_upsert(file_id="abc", supplier_id=1, source_path="A / B"))
    assert first.id == second.id == "abc"
    assert second.source_path == "A / B"
    assert second.created_at == first.created_at
    assert len(store.list_queue_items()) == 1


def test_list_filters_and_limits():
    store = InMemoryStore()
    store.upsert_queue_item(_upsert(file_id="a", supplier_id=1))
    store.upsert_queue_item(_upsert(file_id="b"))
    store.upsert_queue_item(_upsert(file_id="c", supplier_id=2))
    assert {item.id for item in store.list_queue_items(statuses=["pending"])} == {"a", "c"}
    assert len(store.list_queue_items(limit=2)) == 2
    assert store.count_queue_items()["pending_supplier"] == 1


def test_update_unknown_item():
    with pytest.raises(QueueItemNotFoundError):
        InMemoryStore().update_queue_item("nope", {"status": "ready"})


def test_claim_moves_to_processing_and_clears_error():
    store = InMemoryStore()
    store.upsert_queue_item(_upsert(file_id="a", supplier_id=1))
    store.update_queue_item("a", failure_fields("earlier failure"))
    claimed = store.claim_queue_item("a")
    assert claimed.status == "processing"
    assert claimed.error_message is None
    assert claimed.last_error_at is None


def test_concurrent_claims_only_one_wins():
    store = InMemoryStore()
    store.upsert_queue_item(_upsert(file_id="a", supplier_id=1))
    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        try:
            store.claim_queue_item("a")
            result = "claimed"
        except QueuePreconditionError:
            result = "rejected"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("claimed") == 1
    assert outcomes.count("rejected") == 7
    assert store.get_queue_item("a").status == "processing"


def test_rejected_claim_has_no_side_effects():
    store = InMemoryStore()
    store.upsert_queue_item(_upsert(file_id="a"))
    before = store.get_queue_item("a")
    with pytest.raises(QueuePreconditionError):
        store.claim_queue_item("a")
    assert store.get_queue_item("a") == before
