from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional, Sequence, Union

from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore

from delivery_ingest.errors import QueueItemNotFoundError
from delivery_ingest.import_queue import (
    check_processable,
    claim_fields,
    count_by_status,
    merge_upsert,
    queue_doc_id,
)
from delivery_ingest.models import (
    QUEUE_STATUSES,
    ChangeFeedCursor,
    ColumnRef,
    DelimitedTemplate,
    ImportQueueItem,
    QueueUpsert,
    SpreadsheetTemplate,
    Supplier,
    parse_template,
)


logger = logging.getLogger(__name__)

AnyTemplate = Union[SpreadsheetTemplate, DelimitedTemplate]
CURSOR_DOC_ID = "singleton"


def _get_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value else None


def _get_database() -> Optional[str]:
    value = _get_env("FIRESTORE_DATABASE")
    return value or None


def template_doc_id(supplier_id: int, source_type: str) -> str:
    return f"{supplier_id}_{source_type}"


def _queue_item(doc_id: str, data: Dict[str, Any]) -> ImportQueueItem:
    return ImportQueueItem(id=doc_id, **{k: v for k, v in data.items() if k != "id"})


def _template(doc_id: str, data: Dict[str, Any]) -> AnyTemplate:
    return parse_template({**data, "id": doc_id})


class FirestoreStore:
    """All persistence in Firestore collections named by env vars."""

    def __init__(self, client: Optional[firestore.Client] = None):
        self.client = client or firestore.Client(database=_get_database())
        self.suppliers = self.client.collection(_get_env("FIRESTORE_SUPPLIER_COLLECTION") or "suppliers")
        self.templates = self.client.collection(_get_env("FIRESTORE_TEMPLATE_COLLECTION") or "file_format_templates")
        self.queue = self.client.collection(_get_env("FIRESTORE_QUEUE_COLLECTION") or "drive_import_queue")
        self.sync_state = self.client.collection(_get_env("FIRESTORE_SYNC_COLLECTION") or "drive_sync_state")
        self.notes = self.client.collection(_get_env("FIRESTORE_NOTE_COLLECTION") or "delivery_notes")

    # -- suppliers ----------------------------------------------------------

    def list_active_suppliers(self) -> list[Supplier]:
        results: list[Supplier] = []
        for doc in self.suppliers.where("is_active", "==", True).stream():
            data = doc.to_dict() or {}
            data.setdefault("id", int(doc.id))
            results.append(Supplier(**data))
        return sorted(results, key=lambda s: s.id)

    def get_supplier(self, supplier_id: int) -> Optional[Supplier]:
        snapshot = self.suppliers.document(str(supplier_id)).get()
        if not snapshot.exists:
            return None
        data = snapshot.to_dict() or {}
        data.setdefault("id", supplier_id)
        return Supplier(**data)

    # -- format templates ---------------------------------------------------

    def find_active_template(self, supplier_id: int, source_type: str) -> Optional[AnyTemplate]:
        query = (
            self.templates.where("supplier_id", "==", supplier_id)
            .where("source_type", "==", source_type)
            .order_by("updated_at", direction=firestore.Query.DESCENDING)
            .limit(1)
        )
        for doc in query.stream():
            return _template(doc.id, doc.to_dict() or {})
        return None

    def save_or_update_template(
        self,
        supplier_id: int,
        source_type: str,
        mapping: Dict[str, Union[ColumnRef, Dict[str, Any]]],
        header_row_index: int = 0,
        data_start_row_index: int = 1,
    ) -> AnyTemplate:
        doc_id = template_doc_id(supplier_id, source_type)
        data: Dict[str, Any] = {
            "id": doc_id,
            "supplier_id": supplier_id,
            "source_type": source_type,
            "column_mapping": mapping,
        }
        if source_type == "spreadsheet":
            data["header_row_index"] = header_row_index
            data["data_start_row_index"] = data_start_row_index
        template = parse_template(data)

        payload = template.model_dump(exclude={"id", "created_at", "updated_at"})
        payload["updated_at"] = firestore.SERVER_TIMESTAMP
        doc_ref = self.templates.document(doc_id)
        try:
            doc_ref.create({**payload, "created_at": firestore.SERVER_TIMESTAMP})
            logger.info("Template created", extra={"template_id": doc_id})
        except AlreadyExists:
            # update() replaces column_mapping whole; a merge would keep unmapped fields.
            doc_ref.update(payload)
            logger.info("Template updated", extra={"template_id": doc_id})
        return _template(doc_id, doc_ref.get().to_dict() or {})

    def list_templates(self, supplier_id: Optional[int] = None, source_type: Optional[str] = None) -> list[AnyTemplate]:
        query = self.templates
        if supplier_id is not None:
            query = query.where("supplier_id", "==", supplier_id)
        if source_type is not None:
            query = query.where("source_type", "==", source_type)
        query = query.order_by("created_at", direction=firestore.Query.DESCENDING)
        return [_template(doc.id, doc.to_dict() or {}) for doc in query.stream()]

    def delete_template(self, template_id: str) -> bool:
        doc_ref = self.templates.document(template_id)
        if not doc_ref.get().exists:
            return False
        doc_ref.delete()
        return True

    # -- import queue -------------------------------------------------------

    def get_queue_item(self, item_id: str) -> Optional[ImportQueueItem]:
        snapshot = self.queue.document(item_id).get()
        if not snapshot.exists:
            return None
        return _queue_item(snapshot.id, snapshot.to_dict() or {})

    def upsert_queue_item(self, payload: QueueUpsert) -> ImportQueueItem:
        doc_ref = self.queue.document(queue_doc_id(payload.file_id))
        transaction = self.client.transaction()

        @firestore.transactional
        def _upsert(transaction) -> None:
            snapshot = doc_ref.get(transaction=transaction)
            existing = _queue_item(snapshot.id, snapshot.to_dict() or {}) if snapshot.exists else None
            fields = merge_upsert(existing, payload)
            fields["updated_at"] = firestore.SERVER_TIMESTAMP
            if existing is None:
                fields["created_at"] = firestore.SERVER_TIMESTAMP
            transaction.set(doc_ref, fields, merge=True)

        _upsert(transaction)
        return _queue_item(doc_ref.id, doc_ref.get().to_dict() or {})

    def update_queue_item(self, item_id: str, fields: Dict[str, Any]) -> ImportQueueItem:
        doc_ref = self.queue.document(item_id)
        if not doc_ref.get().exists:
            raise QueueItemNotFoundError(item_id)
        payload = dict(fields)
        payload["updated_at"] = firestore.SERVER_TIMESTAMP
        doc_ref.set(payload, merge=True)
        return _queue_item(item_id, doc_ref.get().to_dict() or {})

    def claim_queue_item(self, item_id: str) -> ImportQueueItem:
        """Conditional status write inside a transaction; the loser sees the new status."""
        doc_ref = self.queue.document(item_id)
        transaction = self.client.transaction()

        @firestore.transactional
        def _claim(transaction) -> None:
            snapshot = doc_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise QueueItemNotFoundError(item_id)
            check_processable(_queue_item(item_id, snapshot.to_dict() or {}))
            transaction.update(doc_ref, {**claim_fields(), "updated_at": firestore.SERVER_TIMESTAMP})

        _claim(transaction)
        return _queue_item(item_id, doc_ref.get().to_dict() or {})

    def list_queue_items(self, statuses: Optional[Sequence[str]] = None, limit: Optional[int] = None) -> list[ImportQueueItem]:
        query = self.queue
        if statuses:
            query = query.where("status", "in", list(statuses))
        query = query.order_by("created_at", direction=firestore.Query.DESCENDING)
        if limit:
            query = query.limit(limit)
        return [_queue_item(doc.id, doc.to_dict() or {}) for doc in query.stream()]

    def count_queue_items(self) -> Dict[str, int]:
        counts = count_by_status(())
        for status in QUEUE_STATUSES:
            aggregate = self.queue.where("status", "==", status).count(alias="total")
            for result in aggregate.get():
                counts[status] = int(result[0].value)
        return counts

    # -- change-feed cursor -------------------------------------------------

    def load_cursor(self) -> Optional[ChangeFeedCursor]:
        snapshot = self.sync_state.document(CURSOR_DOC_ID).get()
        if not snapshot.exists:
            return None
        return ChangeFeedCursor(**(snapshot.to_dict() or {}))

    def save_cursor(self, cursor: ChangeFeedCursor) -> None:
        payload = cursor.model_dump()
        payload["last_synced_at"] = cursor.last_synced_at or firestore.SERVER_TIMESTAMP
        payload["updated_at"] = firestore.SERVER_TIMESTAMP
        self.sync_state.document(CURSOR_DOC_ID).set(payload, merge=True)

    # -- ledger -------------------------------------------------------------

    def save_document(self, header: Dict[str, Any], items: list[Dict[str, Any]]) -> str:
        doc_ref = self.notes.document()
        doc_ref.set({**header, "created_at": firestore.SERVER_TIMESTAMP})
        try:
            batch = self.client.batch()
            for item in items:
                batch.set(doc_ref.collection("items").document(str(item["line_number"])), item)
            batch.commit()
        except Exception:
            logger.exception("Line item write failed; removing header", extra={"document_id": doc_ref.id})
            doc_ref.delete()
            raise
        return doc_ref.id

    def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        doc_ref = self.notes.document(document_id)
        snapshot = doc_ref.get()
        if not snapshot.exists:
            return None
        items = [doc.to_dict() or {} for doc in doc_ref.collection("items").stream()]
        items.sort(key=lambda item: item.get("line_number") or 0)
        return {"id": document_id, **(snapshot.to_dict() or {}), "items": items}
