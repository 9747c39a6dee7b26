from __future__ import annotations

import base64
import binascii
import logging
import os
import threading
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, ValidationError

from delivery_ingest.config import DriveSettings, drive_settings, env_flag, poll_max_workers
from delivery_ingest.drive_client import DriveClient
from delivery_ingest.errors import (
    DocumentRejectedError,
    ExtractionError,
    QueueItemNotFoundError,
    QueuePreconditionError,
    UnsupportedFileTypeError,
)
from delivery_ingest.extraction import extract_document, require_file_type
from delivery_ingest.ledger import save_document, validate_document
from delivery_ingest.models import QUEUE_STATUSES, CanonicalDocument, ColumnRef, MappingField, QueuePatch, SourceType
from delivery_ingest.parsers.pdf import GeminiPdfExtractor
from delivery_ingest.poller import poll_changes
from delivery_ingest.processor import apply_queue_patch, process_queue_item
from delivery_ingest.stores import get_store


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("delivery-ingest")

APP_VERSION = os.getenv("APP_VERSION", "dev")

app = FastAPI()


@app.get("/version")
async def version() -> Dict[str, Any]:
    return {
        "status": "ok",
        "revision": os.getenv("K_REVISION"),
        "service": os.getenv("K_SERVICE"),
        "commit": os.getenv("COMMIT_SHA") or os.getenv("REVISION_ID"),
        "app_version": APP_VERSION,
    }


BASIC_USER = os.getenv("BASIC_USER")
BASIC_PASS = os.getenv("BASIC_PASS")
MAX_REQUEST_BYTES = os.getenv("MAX_REQUEST_BYTES")
LOG_PDF_TEXT = env_flag("LOG_PDF_TEXT")

DEFAULT_QUEUE_LIMIT = 50
MAX_QUEUE_LIMIT = 200


def _max_request_bytes() -> Optional[int]:
    if not MAX_REQUEST_BYTES:
        return None
    try:
        return int(MAX_REQUEST_BYTES)
    except ValueError:
        logger.warning("Invalid MAX_REQUEST_BYTES value: %s", MAX_REQUEST_BYTES)
        return None


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Basic"},
    )


def _check_basic_auth(request: Request) -> None:
    if BASIC_USER is None or BASIC_PASS is None:
        logger.error("BASIC_USER/BASIC_PASS not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Auth not configured")

    auth_header = request.headers.get("authorization")
    if not auth_header or not auth_header.lower().startswith("basic "):
        raise _unauthorized()

    token = auth_header.split(" ", 1)[1].strip()
    try:
        decoded = base64.b64decode(token).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        raise _unauthorized()

    if ":" not in decoded:
        raise _unauthorized()

    username, password = decoded.split(":", 1)
    if username != BASIC_USER or password != BASIC_PASS:
        raise _unauthorized()


def _enforce_request_size(request: Request) -> None:
    limit = _max_request_bytes()
    if limit is None:
        return

    content_length = request.headers.get("content-length")
    if content_length is None:
        return

    try:
        length = int(content_length)
    except ValueError:
        return

    if length > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Request too large: {length} bytes (max {limit})",
        )


async def _json_object(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc

    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="JSON payload must be an object")
    return payload


def _validation_issues(exc: ValidationError) -> list[Dict[str, Any]]:
    return [
        {"path": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]


def _invalid_input(exc: ValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"message": "Invalid request", "issues": _validation_issues(exc)},
    )


def _rejected(exc: DocumentRejectedError, warnings: Optional[list[str]] = None) -> HTTPException:
    detail: Dict[str, Any] = {"message": exc.message, "item_count": exc.item_count, "issues": exc.issues}
    if warnings is not None:
        detail["warnings"] = warnings
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

_drive_client: Optional[DriveClient] = None
_drive_lock = threading.Lock()


def _drive_settings() -> DriveSettings:
    try:
        return drive_settings()
    except RuntimeError as exc:
        logger.error("%s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


def _drive() -> DriveClient:
    global _drive_client
    settings = _drive_settings()
    with _drive_lock:
        if _drive_client is None or _drive_client.settings != settings:
            _drive_client = DriveClient(settings)
        return _drive_client


def _pdf_extractor() -> GeminiPdfExtractor:
    return GeminiPdfExtractor(log_text=LOG_PDF_TEXT)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class UploadRequest(BaseModel):
    file_name: str = Field(min_length=1)
    content: str = Field(min_length=1)
    supplier_id: int = Field(ge=1)


class TemplateRequest(BaseModel):
    supplier_id: int = Field(ge=1)
    source_type: SourceType
    column_mapping: Dict[MappingField, ColumnRef]
    header_row_index: int = Field(default=0, ge=0)
    data_start_row_index: int = Field(default=1, ge=0)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/uploads")
async def upload(request: Request) -> Dict[str, Any]:
    """Extract a directly uploaded file and return the validated document without saving it."""
    _check_basic_auth(request)
    _enforce_request_size(request)
    payload = await _json_object(request)

    try:
        body = UploadRequest.model_validate(payload)
    except ValidationError as exc:
        raise _invalid_input(exc) from exc

    try:
        content = base64.b64decode(body.content, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="content must be base64") from exc

    try:
        file_type = require_file_type(body.file_name)
    except UnsupportedFileTypeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    store = get_store()
    template = None
    if file_type != "pdf":
        template = store.find_active_template(body.supplier_id, file_type)

    try:
        document = extract_document(
            content,
            body.file_name,
            body.supplier_id,
            template=template,
            pdf_extractor=_pdf_extractor() if file_type == "pdf" else None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ExtractionError as exc:
        logger.exception("PDF extraction failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    try:
        validate_document(document)
    except DocumentRejectedError as exc:
        logger.info(
            "Upload rejected",
            extra={"file_name": body.file_name, "item_count": exc.item_count, "file_type": file_type},
        )
        raise _rejected(exc, document.warnings) from exc

    return {
        "status": "ok",
        "file_type": file_type,
        "template_id": template.id if template is not None else None,
        "document": document.model_dump(mode="json"),
        "warnings": document.warnings,
    }


@app.post("/delivery-notes")
async def create_delivery_note(request: Request) -> Dict[str, Any]:
    _check_basic_auth(request)
    _enforce_request_size(request)
    payload = await _json_object(request)

    try:
        document = CanonicalDocument.model_validate(payload)
    except ValidationError as exc:
        raise _invalid_input(exc) from exc

    try:
        document_id = save_document(get_store(), document)
    except DocumentRejectedError as exc:
        raise _rejected(exc) from exc

    return {"status": "ok", "document_id": document_id, "item_count": len(document.items)}


@app.get("/file-formats/templates")
async def list_templates(
    request: Request,
    supplier_id: Optional[int] = None,
    source_type: Optional[str] = None,
) -> Dict[str, Any]:
    _check_basic_auth(request)
    templates = get_store().list_templates(supplier_id=supplier_id, source_type=source_type)
    return {"status": "ok", "templates": [t.model_dump(mode="json") for t in templates]}


@app.post("/file-formats/templates")
async def save_template(request: Request) -> Dict[str, Any]:
    _check_basic_auth(request)
    payload = await _json_object(request)

    try:
        body = TemplateRequest.model_validate(payload)
        template = get_store().save_or_update_template(
            body.supplier_id,
            body.source_type,
            body.column_mapping,
            header_row_index=body.header_row_index,
            data_start_row_index=body.data_start_row_index,
        )
    except ValidationError as exc:
        raise _invalid_input(exc) from exc

    logger.info(
        "Template saved",
        extra={"template_id": template.id, "supplier_id": template.supplier_id, "source_type": template.source_type},
    )
    return {
        "status": "ok",
        "template": template.model_dump(mode="json"),
        "missing_required_fields": template.missing_required_fields(),
    }


@app.delete("/file-formats/templates/{template_id}")
async def delete_template(request: Request, template_id: str) -> Dict[str, Any]:
    _check_basic_auth(request)
    if not get_store().delete_template(template_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")
    return {"status": "ok", "id": template_id}


@app.post("/drive/poll")
async def drive_poll(request: Request) -> Dict[str, Any]:
    _check_basic_auth(request)
    drive = _drive()
    try:
        return poll_changes(get_store(), drive, drive.settings.watch_folder_id, max_workers=poll_max_workers())
    except Exception as exc:
        logger.exception("Drive poll failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


@app.get("/drive/import-queue")
async def list_import_queue(
    request: Request,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = DEFAULT_QUEUE_LIMIT,
) -> Dict[str, Any]:
    """status_filter is a comma-separated list of queue statuses."""
    _check_basic_auth(request)
    statuses = [s.strip() for s in (status_filter or "").split(",") if s.strip()]
    unknown = [s for s in statuses if s not in QUEUE_STATUSES]
    if unknown:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown status: {', '.join(unknown)}")

    store = get_store()
    limit = max(1, min(limit, MAX_QUEUE_LIMIT))
    items = store.list_queue_items(statuses=statuses or None, limit=limit)
    return {
        "status": "ok",
        "items": [item.model_dump(mode="json") for item in items],
        "counts": store.count_queue_items(),
    }


@app.get("/drive/import-queue/{item_id}")
async def get_import_queue_item(request: Request, item_id: str) -> Dict[str, Any]:
    _check_basic_auth(request)
    item = get_store().get_queue_item(item_id)
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Queue item not found")
    return {"status": "ok", "item": item.model_dump(mode="json")}


@app.patch("/drive/import-queue/{item_id}")
async def patch_import_queue_item(request: Request, item_id: str) -> Dict[str, Any]:
    _check_basic_auth(request)
    payload = await _json_object(request)

    try:
        patch = QueuePatch.model_validate(payload)
    except ValidationError as exc:
        raise _invalid_input(exc) from exc

    drive = None
    pending_folder_id = None
    if patch.status == "pending_supplier" or ("supplier_id" in patch.model_fields_set and patch.supplier_id is None):
        try:
            drive = _drive()
            pending_folder_id = drive.settings.pending_folder_id
        except HTTPException as exc:
            logger.warning("Drive not configured; file will not be moved: %s", exc.detail)

    try:
        item = apply_queue_patch(get_store(), drive, item_id, patch, pending_folder_id=pending_folder_id)
    except QueueItemNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return {"status": "ok", "item": item.model_dump(mode="json")}


@app.post("/drive/import-queue/{item_id}/process")
async def process_import_queue_item(request: Request, item_id: str) -> Dict[str, Any]:
    _check_basic_auth(request)
    drive = _drive()
    try:
        return process_queue_item(
            get_store(),
            drive,
            item_id,
            pdf_extractor=_pdf_extractor(),
            processed_folder_id=drive.settings.processed_folder_id,
        )
    except QueueItemNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except QueuePreconditionError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "current_status": exc.status},
        ) from exc
