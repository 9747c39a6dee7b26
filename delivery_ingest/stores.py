from __future__ import annotations

import logging
import threading
from typing import Optional, Union

from delivery_ingest.config import firestore_enabled
from delivery_ingest.firestore_store import FirestoreStore
from delivery_ingest.memory_store import InMemoryStore


logger = logging.getLogger(__name__)

Store = Union[FirestoreStore, InMemoryStore]

_store: Optional[Store] = None
_lock = threading.Lock()


def get_store() -> Store:
    """Process-wide store: Firestore when FIRESTORE_ENABLED, otherwise in-memory."""
    global _store
    with _lock:
        if _store is None:
            if firestore_enabled():
                _store = FirestoreStore()
                logger.info("Using Firestore store")
            else:
                _store = InMemoryStore()
                logger.info("FIRESTORE_ENABLED not set; using in-memory store")
        return _store


def set_store(store: Optional[Store]) -> None:
    global _store
    with _lock:
        _store = store
