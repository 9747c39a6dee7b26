#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from delivery_ingest.config import drive_settings, env_flag, poll_max_workers
from delivery_ingest.drive_client import DriveClient
from delivery_ingest.errors import QueueItemNotFoundError, QueuePreconditionError
from delivery_ingest.parsers.pdf import GeminiPdfExtractor
from delivery_ingest.poller import poll_changes
from delivery_ingest.processor import process_pending, process_queue_item
from delivery_ingest.stores import get_store


def main() -> None:
    parser = argparse.ArgumentParser(description="Run Drive import steps from a scheduler or a shell.")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("poll", help="Run one change-feed poll cycle")
    process = commands.add_parser("process", help="Process one import queue item")
    process.add_argument("item_id", help="Import queue id (the Drive file id)")
    pending = commands.add_parser("process-pending", help="Process queued items that have a supplier")
    pending.add_argument("--limit", type=int, default=20, help="Maximum items to process, default 20")
    listing = commands.add_parser("list-folder", help="List the files in a Drive folder")
    listing.add_argument("folder_id", nargs="?", help="Folder id, default the pending folder")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)

    try:
        settings = drive_settings()
    except RuntimeError as exc:
        raise SystemExit(str(exc))

    store = get_store()
    drive = DriveClient(settings)
    extractor = GeminiPdfExtractor(log_text=env_flag("LOG_PDF_TEXT"))

    if args.command == "poll":
        output = poll_changes(store, drive, settings.watch_folder_id, max_workers=poll_max_workers())
    elif args.command == "process":
        try:
            output = process_queue_item(
                store,
                drive,
                args.item_id,
                pdf_extractor=extractor,
                processed_folder_id=settings.processed_folder_id,
            )
        except (QueueItemNotFoundError, QueuePreconditionError) as exc:
            raise SystemExit(str(exc))
    elif args.command == "list-folder":
        folder_id = args.folder_id or settings.pending_folder_id or settings.watch_folder_id
        files = drive.list_folder_children(folder_id)
        output = {"status": "ok", "folder_id": folder_id, "files": [f.model_dump(mode="json") for f in files]}
    else:
        results = process_pending(
            store,
            drive,
            limit=args.limit,
            pdf_extractor=extractor,
            processed_folder_id=settings.processed_folder_id,
        )
        output = {"status": "ok", "count": len(results), "results": results}

    print(json.dumps(output, indent=2, ensure_ascii=False, default=str))


if __name__ == "__main__":
    main()
