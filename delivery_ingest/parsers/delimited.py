from __future__ import annotations

import csv
import logging
from io import StringIO
from typing import Any, Dict, Mapping, Optional, Sequence

from delivery_ingest.models import CanonicalDocument, DelimitedTemplate, LineItem
from delivery_ingest.parse_utils import is_blank
from delivery_ingest.parsers.common import build_line_item, finish_document
from delivery_ingest.text_decoding import decode_text


logger = logging.getLogger(__name__)

FILE_TYPE = "delimited_text"

# Case-exact header aliases per field; the first present, non-empty alias wins.
HEADER_ALIASES: Dict[str, tuple[str, ...]] = {
    "product_code": ("商品コード", "product_code", "code"),
    "product_name": ("商品名", "product_name", "name"),
    "quantity": ("数量", "quantity"),
    "unit_price": ("単価", "unit_price"),
    "amount": ("金額", "amount"),
    "delivery_date": ("納品日", "delivery_date", "納品日付", "date"),
    "document_number": ("納品書番号", "delivery_note_number", "伝票番号"),
    "remarks": ("備考", "remarks", "備考欄"),
}

MISMATCHED_ROWS_WARNING = "CSV rows with a mismatched column count were found"
UNREADABLE_ROWS_WARNING = "CSV parsing stopped at line {line} ({error}); later rows were not read"


def read_delimited(content: bytes) -> tuple[list[Dict[str, str]], list[str]]:
    """Decode and parse CSV bytes into header-keyed records plus parse warnings."""
    text, encoding = decode_text(content)
    logger.info("Decoded CSV", extra={"encoding": encoding, "size_bytes": len(content)})

    warnings: list[str] = []
    reader = csv.DictReader(StringIO(text, newline=""))
    records: list[Dict[str, str]] = []
    mismatched = False
    try:
        for row in reader:
            if None in row or any(value is None for value in row.values()):
                mismatched = True
            record = {key: (value or "") for key, value in row.items() if key is not None}
            if all(is_blank(value) for value in record.values()):
                continue
            records.append(record)
    except csv.Error as exc:
        logger.warning("CSV parsing stopped at line %s: %s", reader.line_num, exc)
        warnings.append(UNREADABLE_ROWS_WARNING.format(line=reader.line_num, error=exc))

    if mismatched:
        warnings.append(MISMATCHED_ROWS_WARNING)
    return records, warnings


def _aliased_values(record: Mapping[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name, aliases in HEADER_ALIASES.items():
        for alias in aliases:
            value = record.get(alias)
            if not is_blank(value):
                values[name] = value
                break
    return values


def _mapped_values(record: Mapping[str, Any], template: DelimitedTemplate) -> Dict[str, Any]:
    return {name: record.get(ref.column, "") for name, ref in template.column_mapping.items()}


def extract_from_delimited_records(
    records: Sequence[Mapping[str, Any]],
    template: Optional[DelimitedTemplate] = None,
    *,
    supplier_id: int,
    file_name: str = "",
    warnings: Optional[list[str]] = None,
) -> CanonicalDocument:
    warnings = list(warnings or [])
    items: list[LineItem] = []

    if template is not None:
        missing = template.missing_required_fields()
        if missing:
            warnings.append(f"Template has no mapping for required field(s): {', '.join(missing)}")

    for index, record in enumerate(records):
        values = _mapped_values(record, template) if template is not None else _aliased_values(record)
        item = build_line_item(values, len(items) + 1, f"Record {index + 1}", warnings)
        if item is not None:
            items.append(item)

    return finish_document(
        items,
        warnings,
        supplier_id=supplier_id,
        file_name=file_name,
        file_type=FILE_TYPE,
    )
