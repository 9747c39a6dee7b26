from __future__ import annotations

import base64
import json
import logging
import os
import re
from io import BytesIO
from typing import Any, Dict, Optional

import pdfplumber
import requests

from delivery_ingest.errors import ExtractionError
from delivery_ingest.models import CanonicalDocument, LineItem
from delivery_ingest.parse_utils import cell_text, normalize_date, normalize_number


logger = logging.getLogger(__name__)

FILE_TYPE = "pdf"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash"
NO_PDF_ITEMS_WARNING = "No line items could be extracted from the PDF"

EXTRACTION_PROMPT = """Extract the delivery note in the attached PDF as JSON. Output JSON only.
Amounts are tax-exclusive; ignore consumption tax and tax-inclusive totals.
Extract every product line (any row carrying a product code, name, quantity, unit price or amount).
One file may contain several delivery dates or delivery note numbers; record them per line when they differ.
When a line has no date, leave it null and put the header date in deliveryDate.

{
  "deliveryDate": "YYYY-MM-DD",
  "supplierName": "supplier name",
  "totalAmount": 0,
  "items": [
    {
      "deliveryDate": "YYYY-MM-DD or null",
      "deliveryNoteNumber": "string or null",
      "productCode": "string",
      "productName": "string",
      "quantity": 0,
      "unitPrice": 0,
      "amount": 0,
      "remarks": "string or null"
    }
  ]
}"""

_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def _get_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value else None


def extract_text_from_pdf(pdf_bytes: bytes) -> str:
    if not pdf_bytes:
        return ""

    text_parts: list[str] = []
    with pdfplumber.open(BytesIO(pdf_bytes)) as pdf:
        for page in pdf.pages:
            page_text = page.extract_text() or ""
            page_text = page_text.replace("\u00a0", " ")
            if page_text:
                text_parts.append(page_text)

    return "\n".join(text_parts).strip()


def extract_json_text(text: str) -> str:
    """Strip code fences or surrounding prose from a model reply."""
    stripped = (text or "").strip()
    match = _CODE_BLOCK_RE.search(stripped)
    if match and match.group(1):
        return match.group(1).strip()
    first = stripped.find("{")
    last = stripped.rfind("}")
    if first >= 0 and last > first:
        return stripped[first : last + 1]
    return stripped


def document_from_reply(
    payload: Dict[str, Any],
    supplier_id: int,
    file_name: str,
) -> CanonicalDocument:
    warnings: list[str] = []
    header_date = normalize_date(payload.get("deliveryDate") or "") or None

    items: list[LineItem] = []
    dropped = 0
    for raw in payload.get("items") or []:
        if not isinstance(raw, dict):
            dropped += 1
            continue
        code = cell_text(raw.get("productCode"))
        name = cell_text(raw.get("productName"))
        if not code or not name:
            dropped += 1
            continue
        item_date = normalize_date(raw.get("deliveryDate") or "") or header_date
        items.append(
            LineItem(
                line_number=len(items) + 1,
                delivery_date=item_date,
                document_number=cell_text(raw.get("deliveryNoteNumber")) or None,
                product_code=code,
                product_name=name,
                quantity=normalize_number(raw.get("quantity")),
                unit_price=normalize_number(raw.get("unitPrice")),
                amount=normalize_number(raw.get("amount")),
                remarks=cell_text(raw.get("remarks")) or None,
            )
        )

    if dropped:
        warnings.append(f"{dropped} PDF line(s) without product code or name were dropped")
    if not items:
        warnings.append(NO_PDF_ITEMS_WARNING)

    declared_total = payload.get("totalAmount")
    total = normalize_number(declared_total) if declared_total not in (None, "") else sum(i.amount for i in items)

    return CanonicalDocument(
        supplier_id=supplier_id,
        supplier_name=cell_text(payload.get("supplierName")) or None,
        delivery_date=header_date,
        total_amount=total,
        original_file_name=file_name,
        file_type=FILE_TYPE,
        items=items,
        warnings=warnings,
    )


class GeminiPdfExtractor:
    """Opaque PDF extractor backed by the Gemini generateContent endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: int = 120,
        log_text: bool = False,
    ):
        self.api_key = api_key or _get_env("GEMINI_API_KEY")
        self.model = model or _get_env("GEMINI_MODEL") or DEFAULT_MODEL
        self.timeout = timeout
        self.log_text = log_text

    def _request_body(self, content: bytes) -> Dict[str, Any]:
        parts: list[Dict[str, Any]] = [{"text": EXTRACTION_PROMPT}]
        try:
            text_layer = extract_text_from_pdf(content)
        except Exception as exc:
            logger.info("PDF text layer unavailable: %s", exc)
            text_layer = ""
        if text_layer:
            if self.log_text:
                logger.info("PDF text layer (first 2000 chars): %s", text_layer[:2000])
            parts.append({"text": f"Text layer of the PDF, for reference:\n{text_layer}"})
        parts.append(
            {
                "inline_data": {
                    "mime_type": "application/pdf",
                    "data": base64.b64encode(content).decode("ascii"),
                }
            }
        )
        return {"contents": [{"parts": parts}]}

    def _call(self, body: Dict[str, Any]) -> str:
        if not self.api_key:
            raise RuntimeError("Missing GEMINI_API_KEY")
        resp = requests.post(
            f"{GEMINI_API_BASE}/models/{self.model}:generateContent",
            params={"key": self.api_key},
            json=body,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ExtractionError(f"Gemini returned no candidates: {str(data)[:200]}") from exc
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    def extract(self, content: bytes, supplier_id: int, file_name: str) -> CanonicalDocument:
        reply = self._call(self._request_body(content))
        logger.info("Gemini raw response (first 500 chars): %s", reply[:500])

        json_text = extract_json_text(reply)
        try:
            payload = json.loads(json_text)
        except ValueError as exc:
            raise ExtractionError(f"Could not parse the Gemini reply as JSON. Reply: {reply[:200]}") from exc
        if not isinstance(payload, dict):
            raise ExtractionError(f"Gemini reply is not a JSON object. Reply: {reply[:200]}")

        document = document_from_reply(payload, supplier_id, file_name)
        if not document.items:
            logger.error("No items extracted from PDF", extra={"file_name": file_name})
        return document
