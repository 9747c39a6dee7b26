from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from delivery_ingest.errors import QueueItemNotFoundError, QueuePreconditionError
from delivery_ingest.extraction import PdfExtractor, extract_document, require_file_type
from delivery_ingest.import_queue import failure_fields, patch_fields, success_fields
from delivery_ingest.ledger import save_document
from delivery_ingest.models import ImportQueueItem, QueuePatch


logger = logging.getLogger(__name__)


class FileStore(Protocol):
    def download_file(self, file_id: str) -> bytes:
        ...

    def move_file(self, file_id: str, dest_folder_id: str) -> None:
        ...


def _relocate(drive: FileStore, item: ImportQueueItem, folder_id: Optional[str], reason: str) -> bool:
    if not folder_id:
        return False
    try:
        drive.move_file(item.file_id, folder_id)
    except Exception as exc:
        logger.warning(
            "File relocation failed: %s",
            exc,
            extra={"queue_id": item.id, "file_id": item.file_id, "dest_folder_id": folder_id, "reason": reason},
        )
        return False
    return True


def process_queue_item(
    store: Any,
    drive: FileStore,
    item_id: str,
    pdf_extractor: Optional[PdfExtractor] = None,
    processed_folder_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Claim one queue item and run it through download, extraction and the ledger.

    Precondition failures raise before anything is written. Every later failure
    is recorded on the item and reported in the returned result.
    """
    item = store.claim_queue_item(item_id)
    logger.info("Processing queue item", extra={"queue_id": item.id, "file_name": item.file_name})

    try:
        file_type = require_file_type(item.file_name)
        content = drive.download_file(item.file_id)
        template = None
        if file_type != "pdf":
            template = store.find_active_template(item.supplier_id, file_type)
        document = extract_document(
            content,
            item.file_name,
            item.supplier_id,
            template=template,
            pdf_extractor=pdf_extractor,
        )
        document_id = save_document(store, document)
    except Exception as exc:
        message = str(exc) or exc.__class__.__name__
        logger.exception("Queue item processing failed", extra={"queue_id": item.id})
        store.update_queue_item(item.id, failure_fields(message))
        return {"status": "error", "queue_id": item.id, "message": message}

    moved = _relocate(drive, item, processed_folder_id, "processed")
    store.update_queue_item(item.id, success_fields())
    return {
        "status": "processed",
        "queue_id": item.id,
        "document_id": document_id,
        "item_count": len(document.items),
        "warnings": document.warnings,
        "moved": moved,
    }


def process_pending(
    store: Any,
    drive: FileStore,
    limit: int = 20,
    pdf_extractor: Optional[PdfExtractor] = None,
    processed_folder_id: Optional[str] = None,
) -> list[Dict[str, Any]]:
    results: list[Dict[str, Any]] = []
    for item in store.list_queue_items(statuses=["pending", "ready"], limit=limit):
        try:
            results.append(process_queue_item(store, drive, item.id, pdf_extractor, processed_folder_id))
        except QueuePreconditionError as exc:
            # Claimed by a concurrent run since the listing.
            logger.info("Skipping queue item: %s", exc, extra={"queue_id": item.id})
            results.append({"status": "skipped", "queue_id": item.id, "message": str(exc)})
    return results


def apply_queue_patch(
    store: Any,
    drive: Optional[FileStore],
    item_id: str,
    patch: QueuePatch,
    pending_folder_id: Optional[str] = None,
) -> ImportQueueItem:
    item = store.get_queue_item(item_id)
    if item is None:
        raise QueueItemNotFoundError(item_id)

    fields = patch_fields(item, patch)
    supplier_id = fields.get("supplier_id")
    if supplier_id is not None and store.get_supplier(supplier_id) is None:
        raise ValueError(f"Unknown supplier {supplier_id}")
    updated = store.update_queue_item(item_id, fields)
    if fields.get("status") == "pending_supplier" and drive is not None:
        _relocate(drive, updated, pending_folder_id, "pending_supplier")
    return updated
