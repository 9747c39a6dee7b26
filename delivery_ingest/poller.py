"""One change-feed poll cycle: Drive changes -> import queue rows.

The cursor is written once, after every page has been handled. A cycle that
dies part-way leaves the previous cursor in place, so the next cycle replays
from there and relies on the queue upsert being idempotent.
"""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from delivery_ingest.folder_paths import AncestorLookup, FolderCache, resolve_folder_path
from delivery_ingest.models import ChangeFeedCursor, ChangesPage, DriveChange, QueueUpsert, Supplier
from delivery_ingest.suppliers import infer_supplier


logger = logging.getLogger(__name__)

MISSING_METADATA_REASON = "File metadata is incomplete (missing id or name)"
QUEUE_SAMPLE_SIZE = 10


class ChangeFeed(AncestorLookup, Protocol):
    def get_start_token(self) -> str:
        ...

    def get_changes_page(self, token: str) -> ChangesPage:
        ...


class QueueSink(Protocol):
    def list_active_suppliers(self) -> list[Supplier]:
        ...

    def upsert_queue_item(self, payload: QueueUpsert) -> Any:
        ...

    def load_cursor(self) -> Optional[ChangeFeedCursor]:
        ...

    def save_cursor(self, cursor: ChangeFeedCursor) -> None:
        ...

    def list_queue_items(self, statuses=None, limit=None) -> list:
        ...


@dataclass
class EntryOutcome:
    kind: str  # processed | skipped | error
    file_id: str
    reason: Optional[str] = None


@dataclass
class PollResult:
    processed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[Dict[str, str]] = field(default_factory=list)
    latest_queue_sample: list[Dict[str, Any]] = field(default_factory=list)

    def add(self, outcome: EntryOutcome) -> None:
        if outcome.kind == "processed":
            self.processed.append(outcome.file_id)
        elif outcome.kind == "skipped":
            self.skipped.append(outcome.file_id)
        else:
            self.errors.append({"file_id": outcome.file_id, "reason": outcome.reason or "Unknown error"})

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "processed_count": len(self.processed),
            "skipped_count": len(self.skipped),
            "error_count": len(self.errors),
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
            "latest_queue_sample": self.latest_queue_sample,
        }


def handle_change(
    change: DriveChange,
    feed: AncestorLookup,
    watch_folder_id: str,
    suppliers: list[Supplier],
    store: QueueSink,
    cache: FolderCache,
) -> EntryOutcome:
    """Classify one change entry and upsert it; never raises."""
    file_id = change.file_id or (change.file.id if change.file else None) or ""
    if change.removed:
        return EntryOutcome("skipped", file_id)

    file = change.file
    if file is None or not file.id or not file.name:
        return EntryOutcome("error", file_id, MISSING_METADATA_REASON)

    try:
        path = resolve_folder_path(feed, file, watch_folder_id, cache)
        if not path.is_under_watch_folder:
            return EntryOutcome("skipped", file.id)

        match = infer_supplier(path.segments, file.name, suppliers)
        store.upsert_queue_item(
            QueueUpsert(
                file_id=file.id,
                file_name=file.name,
                mime_type=file.mime_type,
                md5_checksum=file.md5_checksum,
                supplier_id=match.supplier_id,
                inferred_supplier_code=match.inferred_code,
                inferred_supplier_name=match.inferred_name,
                source_folder_id=path.parent_folder_id,
                source_folder_name=path.parent_folder_name,
                source_path=path.display,
                web_view_link=file.web_view_link,
                size=file.size,
                drive_created_time=file.created_time,
                drive_modified_time=file.modified_time,
            )
        )
    except Exception as exc:
        logger.exception("Queue upsert failed", extra={"file_id": file.id})
        return EntryOutcome("error", file.id, str(exc) or exc.__class__.__name__)
    return EntryOutcome("processed", file.id)


def _handle_page(
    page: ChangesPage,
    feed: ChangeFeed,
    watch_folder_id: str,
    suppliers: list[Supplier],
    store: QueueSink,
    cache: FolderCache,
    max_workers: int,
) -> list[EntryOutcome]:
    if not page.changes:
        return []
    workers = max(1, min(max_workers, len(page.changes)))
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [
            executor.submit(handle_change, change, feed, watch_folder_id, suppliers, store, cache)
            for change in page.changes
        ]
        return [future.result() for future in futures]


def poll_changes(
    store: QueueSink,
    feed: ChangeFeed,
    watch_folder_id: str,
    max_workers: int = 8,
) -> Dict[str, Any]:
    suppliers = store.list_active_suppliers()

    cursor = store.load_cursor()
    start_token = cursor.start_page_token if cursor else None
    page_token = cursor.page_token if cursor else None
    if not start_token:
        start_token = feed.get_start_token()
    if not page_token:
        page_token = start_token
    if not page_token:
        raise RuntimeError("Could not establish a change-feed page token")

    result = PollResult()
    cache = FolderCache()
    new_start_token: Optional[str] = None
    continuation: Optional[str] = None
    pages = 0

    token = page_token
    while True:
        page = feed.get_changes_page(token)
        pages += 1
        for outcome in _handle_page(page, feed, watch_folder_id, suppliers, store, cache, max_workers):
            result.add(outcome)

        if page.new_start_page_token:
            new_start_token = page.new_start_page_token
        # The last page carries newStartPageToken instead of nextPageToken.
        continuation = page.next_page_token or page.new_start_page_token or continuation
        if not page.next_page_token:
            break
        token = page.next_page_token

    store.save_cursor(
        ChangeFeedCursor(
            watch_folder_id=watch_folder_id,
            page_token=continuation or page_token or start_token,
            start_page_token=new_start_token or start_token,
        )
    )

    result.latest_queue_sample = [
        item.model_dump(mode="json") for item in store.list_queue_items(limit=QUEUE_SAMPLE_SIZE)
    ]
    logger.info(
        "Drive poll complete",
        extra={
            "pages": pages,
            "processed_count": len(result.processed),
            "skipped_count": len(result.skipped),
            "error_count": len(result.errors),
            "folder_cache_size": len(cache),
            "folder_cache_hits": cache.hits,
            "folder_cache_misses": cache.misses,
        },
    )
    return result.as_dict()
