from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Protocol

from delivery_ingest.models import DriveFile, FolderSegment


logger = logging.getLogger(__name__)


class AncestorLookup(Protocol):
    def get_file_ancestor(self, file_id: str) -> FolderSegment:
        ...


class FolderCache:
    """Folder id -> segment lookups, shared by every file in one poll cycle."""

    def __init__(self) -> None:
        self._entries: dict[str, FolderSegment] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, folder_id: str) -> Optional[FolderSegment]:
        with self._lock:
            segment = self._entries.get(folder_id)
            if segment is None:
                self.misses += 1
            else:
                self.hits += 1
            return segment

    def put(self, segment: FolderSegment) -> None:
        with self._lock:
            self._entries[segment.id] = segment

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class FolderPath:
    segments: list[FolderSegment] = field(default_factory=list)
    parent_folder_id: Optional[str] = None
    parent_folder_name: Optional[str] = None
    is_under_watch_folder: bool = False

    @property
    def display(self) -> Optional[str]:
        return " / ".join(segment.name for segment in self.segments) or None


def walk_to_watch_folder(
    lookup: AncestorLookup,
    folder_id: str,
    watch_folder_id: str,
    cache: FolderCache,
) -> tuple[list[FolderSegment], bool]:
    """Follow parent links from *folder_id* upward until the watch folder or the top."""
    segments: list[FolderSegment] = []
    visited: set[str] = set()
    current: Optional[str] = folder_id

    while current:
        if current == watch_folder_id:
            return segments, True
        if current in visited:
            logger.warning("Folder cycle detected at %s", current)
            break
        visited.add(current)

        segment = cache.get(current)
        if segment is None:
            segment = lookup.get_file_ancestor(current)
            if not segment.id or not segment.name:
                break
            cache.put(segment)

        segments.insert(0, segment)
        current = segment.parent_id

    return segments, False


def resolve_folder_path(
    lookup: AncestorLookup,
    file: DriveFile,
    watch_folder_id: str,
    cache: FolderCache,
) -> FolderPath:
    parent_id = file.parents[0] if file.parents else None
    if not parent_id:
        return FolderPath()

    segments, found = walk_to_watch_folder(lookup, parent_id, watch_folder_id, cache)
    innermost = segments[-1] if segments else None
    return FolderPath(
        segments=segments,
        parent_folder_id=innermost.id if innermost else parent_id,
        parent_folder_name=innermost.name if innermost else None,
        is_under_watch_folder=found or watch_folder_id in file.parents,
    )
