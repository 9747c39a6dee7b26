from __future__ import annotations

import logging
from io import BytesIO
from typing import Any, Iterable, Optional, Sequence

from openpyxl import load_workbook

from delivery_ingest.models import CanonicalDocument, LineItem, SpreadsheetTemplate
from delivery_ingest.parse_utils import (
    cell_text,
    column_letter_to_index,
    find_row_index,
    index_to_column_letter,
    is_blank,
    normalize_date,
    normalize_number,
    value_after_keyword,
)
from delivery_ingest.parsers.common import build_line_item, finish_document
from delivery_ingest.parsers.detectors import Detector, DEFAULT_DETECTORS, detect_header


logger = logging.getLogger(__name__)

FILE_TYPE = "spreadsheet"

DELIVERY_DATE_KEYWORDS = ("納品日", "delivery date")
SUPPLIER_KEYWORDS = ("仕入先", "supplier")
TOTAL_KEYWORDS = ("合計", "total")


def read_spreadsheet(content: bytes) -> list[list[Any]]:
    """Load the first worksheet into a grid; empty cells become ""."""
    try:
        workbook = load_workbook(BytesIO(content), data_only=True, read_only=True)
    except Exception as exc:
        raise ValueError(f"Cannot read spreadsheet (is it corrupted or not .xlsx?): {exc}") from exc

    try:
        sheet = workbook.worksheets[0]
        rows: list[list[Any]] = []
        for row in sheet.iter_rows(values_only=True):
            rows.append(["" if value is None else value for value in row])
    finally:
        workbook.close()

    while rows and all(is_blank(cell) for cell in rows[-1]):
        rows.pop()
    return rows


def _cell(row: Sequence[Any], index: int) -> Any:
    if 0 <= index < len(row):
        return row[index]
    return ""


def _document_header(rows: Sequence[Sequence[Any]], stop: int) -> tuple[Optional[str], Optional[str]]:
    """Supplier name and document date from label rows above *stop*."""
    supplier_name = None
    delivery_date = None

    date_row = find_row_index(rows, DELIVERY_DATE_KEYWORDS, stop=stop)
    if date_row >= 0:
        delivery_date = normalize_date(value_after_keyword(rows[date_row], DELIVERY_DATE_KEYWORDS)) or None

    supplier_row = find_row_index(rows, SUPPLIER_KEYWORDS, stop=stop)
    if supplier_row >= 0:
        supplier_name = cell_text(value_after_keyword(rows[supplier_row], SUPPLIER_KEYWORDS)) or None

    return supplier_name, delivery_date


def _declared_total(rows: Sequence[Sequence[Any]], candidates: Iterable[int]) -> Optional[float]:
    """Value next to a "total" label on one of the non-item rows, if any."""
    for row_index in candidates:
        row = rows[row_index]
        for index, cell in enumerate(row):
            text = cell_text(cell).casefold()
            if any(text.startswith(keyword) for keyword in TOTAL_KEYWORDS):
                for candidate in row[index + 1 :]:
                    if not is_blank(candidate):
                        return normalize_number(candidate)
                break
    return None


# ---------------------------------------------------------------------------
# Template-driven path
# ---------------------------------------------------------------------------

def _extract_with_template(
    rows: Sequence[Sequence[Any]],
    template: SpreadsheetTemplate,
    supplier_id: int,
    file_name: str,
) -> CanonicalDocument:
    warnings: list[str] = []
    items: list[LineItem] = []

    if template.header_row_index >= len(rows):
        warnings.append(f"Header row {template.header_row_index + 1} is outside the sheet ({len(rows)} rows)")
        return finish_document(items, warnings, supplier_id=supplier_id, file_name=file_name, file_type=FILE_TYPE)

    missing = template.missing_required_fields()
    if missing:
        warnings.append(f"Template has no mapping for required field(s): {', '.join(missing)}")

    columns = {name: column_letter_to_index(ref.column) for name, ref in template.column_mapping.items()}
    supplier_name, delivery_date = _document_header(rows, template.header_row_index)
    skipped_rows: list[int] = []

    for index in range(template.data_start_row_index, len(rows)):
        row = rows[index]
        values = {name: _cell(row, column) for name, column in columns.items()}
        item = build_line_item(values, len(items) + 1, f"Row {index + 1}", warnings)
        if item is None:
            skipped_rows.append(index)
            if index == template.data_start_row_index:
                warnings.append(
                    f"Data start row {index + 1} has no product code or name; check the template's data start row"
                )
            continue
        items.append(item)

    return finish_document(
        items,
        warnings,
        supplier_id=supplier_id,
        file_name=file_name,
        file_type=FILE_TYPE,
        supplier_name=supplier_name,
        delivery_date=delivery_date,
        declared_total=_declared_total(rows, skipped_rows),
    )


# ---------------------------------------------------------------------------
# Auto-detect path
# ---------------------------------------------------------------------------

def _extract_auto(
    rows: Sequence[Sequence[Any]],
    supplier_id: int,
    file_name: str,
    detectors: Sequence[Detector],
) -> CanonicalDocument:
    warnings: list[str] = []
    items: list[LineItem] = []

    detection = detect_header(rows, detectors)
    if detection is None:
        warnings.append("Could not locate a product code header row")
        supplier_name, delivery_date = _document_header(rows, len(rows))
        return finish_document(
            items,
            warnings,
            supplier_id=supplier_id,
            file_name=file_name,
            file_type=FILE_TYPE,
            supplier_name=supplier_name,
            delivery_date=delivery_date,
        )

    header_index = detection.header_row_index
    logger.info(
        "Spreadsheet header detected",
        extra={
            "file_name": file_name,
            "strategy": detection.strategy,
            "header_row": header_index + 1,
            "columns": {name: index_to_column_letter(column) for name, column in detection.columns.items()},
        },
    )
    supplier_name, delivery_date = _document_header(rows, header_index)

    # Contiguous block: the first row without code or name ends the table.
    stop = len(rows)
    for index in range(header_index + 1, len(rows)):
        row = rows[index]
        values = {name: _cell(row, column) for name, column in detection.columns.items()}
        item = build_line_item(values, len(items) + 1, f"Row {index + 1}", warnings)
        if item is None:
            stop = index
            break
        items.append(item)

    return finish_document(
        items,
        warnings,
        supplier_id=supplier_id,
        file_name=file_name,
        file_type=FILE_TYPE,
        supplier_name=supplier_name,
        delivery_date=delivery_date,
        declared_total=_declared_total(rows, range(stop, len(rows))),
    )


def extract_from_spreadsheet_rows(
    rows: Sequence[Sequence[Any]],
    template: Optional[SpreadsheetTemplate] = None,
    *,
    supplier_id: int,
    file_name: str = "",
    detectors: Sequence[Detector] = DEFAULT_DETECTORS,
) -> CanonicalDocument:
    if template is not None:
        logger.info("Extracting spreadsheet with template", extra={"supplier_id": supplier_id, "file_name": file_name})
        return _extract_with_template(rows, template, supplier_id, file_name)
    return _extract_auto(rows, supplier_id, file_name, detectors)
