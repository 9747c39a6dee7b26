from __future__ import annotations

from typing import Any, Dict, Optional


class DocumentRejectedError(ValueError):
    """A CanonicalDocument failed the checks that guard the ledger."""

    def __init__(self, message: str, item_count: int, issues: Optional[list[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.item_count = item_count
        self.issues = issues or []


class QueuePreconditionError(ValueError):
    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status


class QueueItemNotFoundError(KeyError):
    def __str__(self) -> str:
        return f"Import queue item not found: {self.args[0]}"


class UnsupportedFileTypeError(ValueError):
    pass


class ExtractionError(RuntimeError):
    pass
