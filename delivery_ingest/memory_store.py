from __future__ import annotations

import itertools
import threading
from typing import Any, Dict, Iterable, Optional, Sequence, Union

from delivery_ingest.errors import QueueItemNotFoundError
from delivery_ingest.import_queue import (
    check_processable,
    claim_fields,
    count_by_status,
    merge_upsert,
    queue_doc_id,
    utcnow,
)
from delivery_ingest.models import (
    ChangeFeedCursor,
    ColumnRef,
    DelimitedTemplate,
    ImportQueueItem,
    QueueUpsert,
    SpreadsheetTemplate,
    Supplier,
    parse_template,
)


AnyTemplate = Union[SpreadsheetTemplate, DelimitedTemplate]


class InMemoryStore:
    """Process-local store used when Firestore is disabled (local runs and tests)."""

    def __init__(self, suppliers: Optional[Iterable[Supplier]] = None):
        self._lock = threading.RLock()
        self._suppliers: Dict[int, Supplier] = {s.id: s for s in suppliers or []}
        self._templates: Dict[str, AnyTemplate] = {}
        self._queue: Dict[str, ImportQueueItem] = {}
        self._cursor: Optional[ChangeFeedCursor] = None
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._template_ids = itertools.count(1)
        self._document_ids = itertools.count(1)

    # -- suppliers ----------------------------------------------------------

    def list_active_suppliers(self) -> list[Supplier]:
        with self._lock:
            return [s for s in self._suppliers.values() if s.is_active]

    def get_supplier(self, supplier_id: int) -> Optional[Supplier]:
        with self._lock:
            return self._suppliers.get(supplier_id)

    # -- format templates ---------------------------------------------------

    def find_active_template(self, supplier_id: int, source_type: str) -> Optional[AnyTemplate]:
        with self._lock:
            matches = [
                t for t in self._templates.values()
                if t.supplier_id == supplier_id and t.source_type == source_type
            ]
        if not matches:
            return None
        return max(matches, key=lambda t: t.updated_at or t.created_at)

    def save_or_update_template(
        self,
        supplier_id: int,
        source_type: str,
        mapping: Dict[str, Union[ColumnRef, Dict[str, Any]]],
        header_row_index: int = 0,
        data_start_row_index: int = 1,
    ) -> AnyTemplate:
        with self._lock:
            existing = self.find_active_template(supplier_id, source_type)
            now = utcnow()
            data: Dict[str, Any] = {
                "id": existing.id if existing else str(next(self._template_ids)),
                "supplier_id": supplier_id,
                "source_type": source_type,
                "column_mapping": mapping,
                "created_at": existing.created_at if existing else now,
                "updated_at": now,
            }
            if source_type == "spreadsheet":
                data["header_row_index"] = header_row_index
                data["data_start_row_index"] = data_start_row_index
            template = parse_template(data)
            self._templates[template.id] = template
            return template

    def list_templates(self, supplier_id: Optional[int] = None, source_type: Optional[str] = None) -> list[AnyTemplate]:
        with self._lock:
            templates = list(self._templates.values())
        if supplier_id is not None:
            templates = [t for t in templates if t.supplier_id == supplier_id]
        if source_type is not None:
            templates = [t for t in templates if t.source_type == source_type]
        return sorted(templates, key=lambda t: t.created_at, reverse=True)

    def delete_template(self, template_id: str) -> bool:
        with self._lock:
            return self._templates.pop(template_id, None) is not None

    # -- import queue -------------------------------------------------------

    def get_queue_item(self, item_id: str) -> Optional[ImportQueueItem]:
        with self._lock:
            item = self._queue.get(item_id)
            return item.model_copy() if item else None

    def upsert_queue_item(self, payload: QueueUpsert) -> ImportQueueItem:
        item_id = queue_doc_id(payload.file_id)
        with self._lock:
            existing = self._queue.get(item_id)
            fields = merge_upsert(existing, payload)
            now = utcnow()
            if existing is None:
                item = ImportQueueItem(id=item_id, created_at=now, updated_at=now, **fields)
            else:
                item = existing.model_copy(update={**fields, "updated_at": now})
            self._queue[item_id] = item
            return item.model_copy()

    def update_queue_item(self, item_id: str, fields: Dict[str, Any]) -> ImportQueueItem:
        with self._lock:
            existing = self._queue.get(item_id)
            if existing is None:
                raise QueueItemNotFoundError(item_id)
            item = existing.model_copy(update={**fields, "updated_at": utcnow()})
            self._queue[item_id] = item
            return item.model_copy()

    def claim_queue_item(self, item_id: str) -> ImportQueueItem:
        """Atomically move an eligible item to processing."""
        with self._lock:
            existing = self._queue.get(item_id)
            if existing is None:
                raise QueueItemNotFoundError(item_id)
            check_processable(existing)
            return self.update_queue_item(item_id, claim_fields())

    def list_queue_items(self, statuses: Optional[Sequence[str]] = None, limit: Optional[int] = None) -> list[ImportQueueItem]:
        with self._lock:
            items = [item.model_copy() for item in self._queue.values()]
        if statuses:
            items = [item for item in items if item.status in statuses]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items[:limit] if limit else items

    def count_queue_items(self) -> Dict[str, int]:
        with self._lock:
            return count_by_status(item.status for item in self._queue.values())

    # -- change-feed cursor -------------------------------------------------

    def load_cursor(self) -> Optional[ChangeFeedCursor]:
        with self._lock:
            return self._cursor.model_copy() if self._cursor else None

    def save_cursor(self, cursor: ChangeFeedCursor) -> None:
        with self._lock:
            self._cursor = cursor.model_copy(update={"last_synced_at": cursor.last_synced_at or utcnow()})

    # -- ledger -------------------------------------------------------------

    def save_document(self, header: Dict[str, Any], items: list[Dict[str, Any]]) -> str:
        with self._lock:
            document_id = str(next(self._document_ids))
            self._documents[document_id] = {
                "id": document_id,
                **header,
                "created_at": utcnow(),
                "items": [dict(item) for item in items],
            }
            return document_id

    def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._documents.get(document_id)
            return dict(document) if document else None

    def document_count(self) -> int:
        with self._lock:
            return len(self._documents)
