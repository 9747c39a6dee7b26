"""Import queue state machine.

pending_supplier --(supplier assigned)--> pending
pending / ready / error --(claim)--> processing --> processed | error

Storage back-ends call these helpers inside their own atomic section so the
rules are identical whichever store is in use.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from delivery_ingest.errors import QueuePreconditionError
from delivery_ingest.models import (
    PROCESSABLE_STATUSES,
    QUEUE_STATUSES,
    ImportQueueItem,
    QueuePatch,
    QueueUpsert,
)


# Rows in these states may have status re-derived by the poller.
AUTO_STATUSES = frozenset({"pending", "pending_supplier"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def queue_doc_id(file_id: str) -> str:
    return file_id.strip().replace("/", "_")


def entry_status(supplier_id: Optional[int]) -> str:
    return "pending" if supplier_id is not None else "pending_supplier"


def merge_upsert(existing: Optional[ImportQueueItem], payload: QueueUpsert) -> Dict[str, Any]:
    """Fields to write when the poller (re)discovers a file.

    A supplier already on the row is never replaced by a fresh inference, and
    rows that have left the entry states keep their status.
    """
    fields = payload.model_dump()
    if existing is None:
        fields["status"] = entry_status(payload.supplier_id)
        return fields

    if existing.supplier_id is not None:
        fields["supplier_id"] = existing.supplier_id
    if existing.status in AUTO_STATUSES:
        fields["status"] = entry_status(fields["supplier_id"])
    else:
        fields["status"] = existing.status
    return fields


def patch_fields(item: ImportQueueItem, patch: QueuePatch, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Validate a manual edit and return the fields it changes."""
    provided = patch.model_fields_set
    if not provided:
        raise ValueError("No fields to update")

    fields: Dict[str, Any] = {}
    for name in ("inferred_supplier_code", "inferred_supplier_name"):
        if name in provided:
            fields[name] = getattr(patch, name)
    if "error_message" in provided:
        fields["error_message"] = patch.error_message
        fields["last_error_at"] = (now or utcnow()) if patch.error_message else None

    supplier_id = patch.supplier_id if "supplier_id" in provided else item.supplier_id
    if "supplier_id" in provided:
        fields["supplier_id"] = supplier_id

    status = patch.status if "status" in provided and patch.status else item.status
    if "supplier_id" in provided and "status" not in provided:
        if supplier_id is not None and status == "pending_supplier":
            status = "pending"
        elif supplier_id is None and status != "pending_supplier":
            status = "pending_supplier"

    if status == "pending_supplier" and supplier_id is not None:
        raise ValueError("Status pending_supplier requires the supplier to be cleared")
    if status != "pending_supplier" and supplier_id is None:
        raise ValueError(f"Status {status} requires a supplier")

    if status != item.status or "status" in provided:
        fields["status"] = status
    return fields


def check_processable(item: ImportQueueItem) -> None:
    if item.supplier_id is None:
        raise QueuePreconditionError(
            "The supplier is not confirmed yet; assign a supplier before processing",
            status=item.status,
        )
    if item.status not in PROCESSABLE_STATUSES:
        raise QueuePreconditionError(
            f"Items in status {item.status} cannot be processed",
            status=item.status,
        )


def claim_fields() -> Dict[str, Any]:
    return {"status": "processing", "error_message": None, "last_error_at": None}


def success_fields(now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "status": "processed",
        "processed_at": now or utcnow(),
        "error_message": None,
        "last_error_at": None,
    }


def failure_fields(message: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    return {"status": "error", "error_message": message, "last_error_at": now or utcnow()}


def count_by_status(statuses: Iterable[str]) -> Dict[str, int]:
    counts = {status: 0 for status in QUEUE_STATUSES}
    for status in statuses:
        counts[status] = counts.get(status, 0) + 1
    return counts
