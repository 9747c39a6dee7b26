from __future__ import annotations

import logging
import math
from datetime import date
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError, field_validator

from delivery_ingest.errors import DocumentRejectedError
from delivery_ingest.models import CanonicalDocument


logger = logging.getLogger(__name__)

NO_ITEMS_MESSAGE = (
    "No line items could be extracted (extracted items: {count}). "
    "Check the content and re-upload, or use a different file format."
)
INCOMPLETE_MESSAGE = "The extracted result is incomplete (extracted items: {count}). Review the missing fields."


class DocumentSink(Protocol):
    def save_document(self, header: Dict[str, Any], items: list[Dict[str, Any]]) -> str:
        ...


# ---------------------------------------------------------------------------
# Acceptance schema
# ---------------------------------------------------------------------------

def _finite(value: float) -> float:
    if not math.isfinite(value):
        raise ValueError("must be a finite number")
    return value


class _LedgerItem(BaseModel):
    line_number: int = Field(ge=1)
    delivery_date: Optional[str] = None
    document_number: Optional[str] = None
    product_code: str = Field(min_length=1)
    product_name: str = Field(min_length=1)
    quantity: float = Field(ge=0)
    unit_price: float = Field(ge=0)
    amount: float
    remarks: Optional[str] = None

    @field_validator("product_code", "product_name", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("quantity", "unit_price", "amount")
    @classmethod
    def _check_finite(cls, value: float) -> float:
        return _finite(value)


class _LedgerDocument(BaseModel):
    supplier_id: int = Field(ge=1)
    supplier_name: Optional[str] = None
    delivery_date: Optional[str] = None
    total_amount: float = Field(ge=0)
    original_file_name: str = Field(min_length=1)
    file_type: str = Field(min_length=1)
    items: list[_LedgerItem] = Field(min_length=1)

    @field_validator("total_amount")
    @classmethod
    def _check_finite(cls, value: float) -> float:
        return _finite(value)


def _issues(exc: ValidationError) -> list[Dict[str, Any]]:
    return [
        {"path": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]


def validate_document(doc: CanonicalDocument) -> CanonicalDocument:
    """Reject documents the ledger must not accept, with an operator-facing message."""
    count = len(doc.items)
    try:
        _LedgerDocument.model_validate(doc.model_dump(exclude={"warnings"}))
    except ValidationError as exc:
        no_items = any(tuple(error["loc"]) == ("items",) for error in exc.errors())
        template = NO_ITEMS_MESSAGE if no_items else INCOMPLETE_MESSAGE
        raise DocumentRejectedError(template.format(count=count), item_count=count, issues=_issues(exc)) from exc
    return doc


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def resolve_header_date(doc: CanonicalDocument, today: Optional[date] = None) -> str:
    for item in doc.items:
        if item.delivery_date:
            return item.delivery_date
    if doc.delivery_date:
        return doc.delivery_date
    return (today or date.today()).isoformat()


def ledger_rows(doc: CanonicalDocument, today: Optional[date] = None) -> tuple[Dict[str, Any], list[Dict[str, Any]]]:
    header_date = resolve_header_date(doc, today)
    header = {
        "supplier_id": doc.supplier_id,
        "supplier_name": doc.supplier_name,
        "delivery_date": header_date,
        "total_amount": doc.total_amount,
        "original_file_name": doc.original_file_name,
        "file_type": doc.file_type,
        "item_count": len(doc.items),
    }
    items = []
    for item in doc.items:
        row = item.model_dump()
        row["delivery_date"] = item.delivery_date or header_date
        items.append(row)
    return header, items


def save_document(store: DocumentSink, doc: CanonicalDocument, today: Optional[date] = None) -> str:
    validate_document(doc)
    header, items = ledger_rows(doc, today)
    document_id = store.save_document(header, items)
    logger.info(
        "Delivery note saved",
        extra={
            "document_id": document_id,
            "supplier_id": doc.supplier_id,
            "file_name": doc.original_file_name,
            "item_count": len(items),
        },
    )
    return document_id
