from __future__ import annotations

from typing import Any, Mapping, Optional

from delivery_ingest.models import CanonicalDocument, LineItem
from delivery_ingest.parse_utils import cell_text, is_blank, normalize_date, parse_number


NO_ITEMS_WARNING = "No line items could be extracted"


def _number(values: Mapping[str, Any], field: str, where: str, warnings: list[str]) -> float:
    raw = values.get(field)
    if is_blank(raw):
        return 0.0
    number = parse_number(raw)
    if number is None:
        warnings.append(f"{where}: {field} value {cell_text(raw)!r} is not numeric; using 0")
        return 0.0
    return number


def _optional_text(values: Mapping[str, Any], field: str) -> Optional[str]:
    text = cell_text(values.get(field))
    return text or None


def build_line_item(
    values: Mapping[str, Any],
    line_number: int,
    where: str,
    warnings: list[str],
) -> Optional[LineItem]:
    """Turn one row's field->raw value mapping into a LineItem.

    Returns None when product code or name is blank; callers decide whether that
    ends the block or is just skipped.
    """
    product_code = cell_text(values.get("product_code"))
    product_name = cell_text(values.get("product_name"))
    if not product_code or not product_name:
        return None

    quantity = _number(values, "quantity", where, warnings)
    unit_price = _number(values, "unit_price", where, warnings)
    if is_blank(values.get("amount")):
        amount = quantity * unit_price
    else:
        amount = _number(values, "amount", where, warnings)

    delivery_date = None
    raw_date = values.get("delivery_date")
    if not is_blank(raw_date):
        delivery_date = normalize_date(raw_date) or None
        if delivery_date is None:
            warnings.append(f"{where}: unrecognised date {cell_text(raw_date)!r}")

    return LineItem(
        line_number=line_number,
        delivery_date=delivery_date,
        document_number=_optional_text(values, "document_number"),
        product_code=product_code,
        product_name=product_name,
        quantity=quantity,
        unit_price=unit_price,
        amount=amount,
        remarks=_optional_text(values, "remarks"),
    )


def finish_document(
    items: list[LineItem],
    warnings: list[str],
    *,
    supplier_id: int,
    file_name: str,
    file_type: str,
    supplier_name: Optional[str] = None,
    delivery_date: Optional[str] = None,
    declared_total: Optional[float] = None,
) -> CanonicalDocument:
    if not items:
        warnings.append(NO_ITEMS_WARNING)
    total = declared_total if declared_total is not None else sum(item.amount for item in items)
    return CanonicalDocument(
        supplier_id=supplier_id,
        supplier_name=supplier_name or None,
        delivery_date=delivery_date or None,
        total_amount=total,
        original_file_name=file_name,
        file_type=file_type,
        items=items,
        warnings=warnings,
    )
