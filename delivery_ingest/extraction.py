from __future__ import annotations

import logging
from typing import Optional, Protocol, Union

from delivery_ingest.errors import UnsupportedFileTypeError
from delivery_ingest.models import CanonicalDocument, DelimitedTemplate, SpreadsheetTemplate
from delivery_ingest.parsers.delimited import extract_from_delimited_records, read_delimited
from delivery_ingest.parsers.spreadsheet import extract_from_spreadsheet_rows, read_spreadsheet


logger = logging.getLogger(__name__)

_EXTENSIONS = {
    ".pdf": "pdf",
    ".xlsx": "spreadsheet",
    ".xlsm": "spreadsheet",
    ".csv": "delimited_text",
}

AnyTemplate = Union[SpreadsheetTemplate, DelimitedTemplate]


class PdfExtractor(Protocol):
    def extract(self, content: bytes, supplier_id: int, file_name: str) -> CanonicalDocument:
        ...


def detect_file_type(file_name: str) -> Optional[str]:
    lower = (file_name or "").lower()
    for extension, file_type in _EXTENSIONS.items():
        if lower.endswith(extension):
            return file_type
    return None


def require_file_type(file_name: str) -> str:
    file_type = detect_file_type(file_name)
    if file_type is None:
        if (file_name or "").lower().endswith(".xls"):
            raise UnsupportedFileTypeError("Legacy .xls workbooks are not supported; save the file as .xlsx")
        raise UnsupportedFileTypeError(f"Unsupported file type: {file_name}")
    return file_type


def extract_document(
    content: bytes,
    file_name: str,
    supplier_id: int,
    template: Optional[AnyTemplate] = None,
    pdf_extractor: Optional[PdfExtractor] = None,
) -> CanonicalDocument:
    """Route raw file bytes to the right extractor by extension."""
    file_type = require_file_type(file_name)
    logger.info(
        "Extracting document",
        extra={
            "file_name": file_name,
            "file_type": file_type,
            "supplier_id": supplier_id,
            "template_id": template.id if template is not None else None,
        },
    )

    if file_type == "pdf":
        if pdf_extractor is None:
            raise RuntimeError("No PDF extractor configured")
        return pdf_extractor.extract(content, supplier_id, file_name)

    if file_type == "spreadsheet":
        rows = read_spreadsheet(content)
        spreadsheet_template = template if isinstance(template, SpreadsheetTemplate) else None
        return extract_from_spreadsheet_rows(
            rows,
            spreadsheet_template,
            supplier_id=supplier_id,
            file_name=file_name,
        )

    records, parse_warnings = read_delimited(content)
    delimited_template = template if isinstance(template, DelimitedTemplate) else None
    return extract_from_delimited_records(
        records,
        delimited_template,
        supplier_id=supplier_id,
        file_name=file_name,
        warnings=parse_warnings,
    )
