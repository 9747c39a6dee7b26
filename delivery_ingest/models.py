# delivery_ingest/models.py
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator


SourceType = Literal["spreadsheet", "delimited_text"]
FileType = Literal["spreadsheet", "delimited_text", "pdf"]

QueueStatus = Literal["pending", "pending_supplier", "ready", "processing", "processed", "error"]
QUEUE_STATUSES: tuple[str, ...] = (
    "pending",
    "pending_supplier",
    "ready",
    "processing",
    "processed",
    "error",
)
PROCESSABLE_STATUSES = frozenset({"pending", "ready", "error"})

MappingField = Literal[
    "product_code",
    "product_name",
    "quantity",
    "unit_price",
    "amount",
    "delivery_date",
    "document_number",
    "remarks",
]
REQUIRED_MAPPING_FIELDS: tuple[str, ...] = ("product_code", "product_name")


# ---------------------------------------------------------------------------
# Extraction output
# ---------------------------------------------------------------------------

class LineItem(BaseModel):
    line_number: int
    delivery_date: Optional[str] = None
    document_number: Optional[str] = None
    product_code: str
    product_name: str
    quantity: float = 0.0
    unit_price: float = 0.0
    amount: float = 0.0
    remarks: Optional[str] = None


class CanonicalDocument(BaseModel):
    supplier_id: int
    supplier_name: Optional[str] = None
    delivery_date: Optional[str] = None
    total_amount: float = 0.0
    original_file_name: str = ""
    file_type: str = ""

    items: list[LineItem] = []
    warnings: list[str] = []


# ---------------------------------------------------------------------------
# Format templates
# ---------------------------------------------------------------------------

class ColumnRef(BaseModel):
    column: str = Field(min_length=1)
    header_name: Optional[str] = None


class _TemplateBase(BaseModel):
    id: Optional[str] = None
    supplier_id: int = Field(ge=1)
    column_mapping: Dict[MappingField, ColumnRef]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def missing_required_fields(self) -> list[str]:
        return [name for name in REQUIRED_MAPPING_FIELDS if name not in self.column_mapping]


class SpreadsheetTemplate(_TemplateBase):
    """Column letters plus header/data row offsets for one supplier's workbook layout."""

    source_type: Literal["spreadsheet"] = "spreadsheet"
    header_row_index: int = Field(default=0, ge=0)
    data_start_row_index: int = Field(default=1, ge=0)

    @field_validator("column_mapping")
    @classmethod
    def _columns_are_letters(cls, mapping: Dict[str, ColumnRef]) -> Dict[str, ColumnRef]:
        for name, ref in mapping.items():
            letters = ref.column.strip().upper()
            if not letters.isascii() or not letters.isalpha():
                raise ValueError(f"{name}: spreadsheet column must be a letter reference, got {ref.column!r}")
            ref.column = letters
        return mapping

    @model_validator(mode="after")
    def _data_follows_header(self) -> "SpreadsheetTemplate":
        if self.data_start_row_index < self.header_row_index:
            raise ValueError("data_start_row_index must not precede header_row_index")
        return self


class DelimitedTemplate(_TemplateBase):
    """Header-name mapping for one supplier's CSV layout."""

    source_type: Literal["delimited_text"] = "delimited_text"


FormatTemplate = Annotated[
    Union[SpreadsheetTemplate, DelimitedTemplate],
    Field(discriminator="source_type"),
]
FORMAT_TEMPLATE_ADAPTER: TypeAdapter = TypeAdapter(FormatTemplate)


def parse_template(data: Dict) -> Union[SpreadsheetTemplate, DelimitedTemplate]:
    return FORMAT_TEMPLATE_ADAPTER.validate_python(data)


# ---------------------------------------------------------------------------
# Suppliers
# ---------------------------------------------------------------------------

class Supplier(BaseModel):
    id: int
    supplier_code: Optional[str] = None
    supplier_name: str
    is_active: bool = True


class SupplierMatch(BaseModel):
    supplier_id: Optional[int] = None
    inferred_code: Optional[str] = None
    inferred_name: Optional[str] = None


# ---------------------------------------------------------------------------
# Remote storage (Drive) shapes
# ---------------------------------------------------------------------------

class DriveFile(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    mime_type: Optional[str] = None
    parents: list[str] = []
    md5_checksum: Optional[str] = None
    web_view_link: Optional[str] = None
    size: Optional[int] = None
    created_time: Optional[datetime] = None
    modified_time: Optional[datetime] = None


class DriveChange(BaseModel):
    file_id: Optional[str] = None
    removed: bool = False
    file: Optional[DriveFile] = None


class ChangesPage(BaseModel):
    changes: list[DriveChange] = []
    next_page_token: Optional[str] = None
    new_start_page_token: Optional[str] = None


class FolderSegment(BaseModel):
    id: str
    name: str
    parent_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Import queue and change-feed cursor
# ---------------------------------------------------------------------------

class QueueUpsert(BaseModel):
    file_id: str
    file_name: str
    mime_type: Optional[str] = None
    md5_checksum: Optional[str] = None
    supplier_id: Optional[int] = None
    inferred_supplier_code: Optional[str] = None
    inferred_supplier_name: Optional[str] = None
    source_folder_id: Optional[str] = None
    source_folder_name: Optional[str] = None
    source_path: Optional[str] = None
    web_view_link: Optional[str] = None
    size: Optional[int] = None
    drive_created_time: Optional[datetime] = None
    drive_modified_time: Optional[datetime] = None
    status: QueueStatus = "pending_supplier"


class ImportQueueItem(QueueUpsert):
    id: str
    error_message: Optional[str] = None
    last_error_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class QueuePatch(BaseModel):
    status: Optional[QueueStatus] = None
    supplier_id: Optional[int] = None
    inferred_supplier_code: Optional[str] = None
    inferred_supplier_name: Optional[str] = None
    error_message: Optional[str] = None


class ChangeFeedCursor(BaseModel):
    watch_folder_id: str
    page_token: Optional[str] = None
    start_page_token: Optional[str] = None
    last_synced_at: Optional[datetime] = None
