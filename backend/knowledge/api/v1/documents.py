"""
Document API Router

  POST /api/v1/documents/upload            multipart upload → 202 + pending document
  GET  /api/v1/documents/{id}              status view
  POST /api/v1/documents/{id}/reprocess    reset to pending and queue processing
  POST /api/v1/documents/{id}/requeue      chunk purge + path repair + queue processing

Upload lifecycle:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. tenant from X-Tenant-ID (never from the body)         │
  │ 2. content type + size validation                        │
  │ 3. S3 put at tenant/<tenant_id>/uploads/<file_name>      │
  │ 4. document row, status=pending (commit)                 │
  │ 5. processing task published → 202                       │
  └─────────────────────────────────────────────────────────┘

A broker failure in step 5 leaves the document pending; the stale-pending
scanner picks it up, so the upload still answers 202.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, UploadFile, status

from knowledge.api.dependencies import Publisher, Storage, Tenant, UoW
from knowledge.core.config import settings
from knowledge.core.errors import InvalidRequest, PayloadTooLarge
from knowledge.repositories.base import DocumentRecord
from knowledge.schemas.documents import (
    ALLOWED_CONTENT_TYPES,
    MAX_FILE_SIZE_BYTES,
    DocumentView,
    ErrorResponse,
    ReprocessRequest,
    ReprocessResponse,
    RequeueResponse,
)
from knowledge.services.registry import DocumentRegistry
from knowledge.services.requeue import RequeueOrchestrator
from knowledge.storage.s3 import canonical_key, sanitize_file_name

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)

_EXTENSION_TYPES = {
    ".pdf":  "application/pdf",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".txt":  "text/plain",
    ".md":   "text/markdown",
    ".html": "text/html",
    ".htm":  "text/html",
}


def _resolve_content_type(file_name: str, declared: str | None) -> str:
    declared = (declared or "").split(";", 1)[0].strip().lower()
    if declared in ALLOWED_CONTENT_TYPES:
        return declared
    for extension, content_type in _EXTENSION_TYPES.items():
        if file_name.lower().endswith(extension):
            return content_type
    raise InvalidRequest(
        f"Unsupported file type '{declared or file_name}'",
        field="file",
        allowed=sorted(ALLOWED_CONTENT_TYPES),
    )


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=DocumentView,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document for ingestion",
    responses={
        400: {"model": ErrorResponse, "description": "Missing tenant, bad file type or empty file"},
        413: {"model": ErrorResponse, "description": "File exceeds 50 MB limit"},
        502: {"model": ErrorResponse, "description": "Object storage unavailable"},
    },
)
async def upload_document(
    tenant:    Tenant,
    uow:       UoW,
    storage:   Storage,
    publisher: Publisher,
    file:      UploadFile = File(..., description="PDF, DOCX, TXT, Markdown or HTML — max 50 MB"),
    title:     Optional[str] = Form(None, max_length=500),
) -> DocumentView:
    file_name = sanitize_file_name(file.filename or "document")
    content_type = _resolve_content_type(file_name, file.content_type)

    data = await file.read()
    if not data:
        raise InvalidRequest("Uploaded file is empty", field="file")
    if len(data) > MAX_FILE_SIZE_BYTES:
        raise PayloadTooLarge(
            f"File exceeds {MAX_FILE_SIZE_BYTES // (1024 * 1024)} MB limit",
            field="file",
            size=len(data),
        )

    key = canonical_key(tenant.tenant_id, file_name)
    await storage.put_object(settings.storage_bucket, key, data, content_type)

    doc = await DocumentRegistry(uow).create(DocumentRecord(
        tenant_id=tenant.tenant_id,
        file_name=file_name,
        title=(title or "").strip() or file_name.rsplit(".", 1)[0],
        file_path=key,
        mime_type=content_type,
        document_type="upload",
        metadata={"uploaded_by": tenant.user_id, "size_bytes": len(data), "upload_version": 2},
    ))
    await uow.commit()
    logger.info(
        "Upload stored | doc=%s tenant=%s key=%s bytes=%d",
        doc.id, tenant.tenant_id, key, len(data),
    )

    try:
        await publisher.publish_processing(tenant.tenant_id, doc.id, force_reprocess=False)
    except Exception:
        logger.exception("Publish failed, left for stale scanner | doc=%s", doc.id)

    return DocumentView.from_record(doc)


# ---------------------------------------------------------------------------
# GET /documents/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentView,
    responses={404: {"model": ErrorResponse}},
)
async def get_document(document_id: UUID, tenant: Tenant, uow: UoW) -> DocumentView:
    doc = await DocumentRegistry(uow).get(tenant.tenant_id, document_id)
    return DocumentView.from_record(doc)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/reprocess
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/reprocess",
    response_model=ReprocessResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={404: {"model": ErrorResponse}},
)
async def reprocess_document(
    document_id: UUID,
    tenant:      Tenant,
    uow:         UoW,
    storage:     Storage,
    publisher:   Publisher,
    body:        Optional[ReprocessRequest] = None,
) -> ReprocessResponse:
    body = body or ReprocessRequest()
    result = await RequeueOrchestrator.from_settings(uow, storage, publisher).reprocess(
        tenant.tenant_id,
        document_id,
        force_reprocess=body.force_reprocess,
        user_id=tenant.user_id,
    )
    return ReprocessResponse(
        document_id=result.document_id,
        processing_status=result.processing_status,
        processing_triggered=result.processing_triggered,
        purged_chunks=result.purged_chunks,
        message=result.message,
    )


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/requeue
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/requeue",
    response_model=RequeueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={404: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def requeue_document(
    document_id: UUID,
    tenant:      Tenant,
    uow:         UoW,
    storage:     Storage,
    publisher:   Publisher,
) -> RequeueResponse:
    result = await RequeueOrchestrator.from_settings(uow, storage, publisher).requeue(
        tenant.tenant_id, document_id, user_id=tenant.user_id,
    )
    return RequeueResponse(
        request_id=result.request_id,
        document_id=result.document_id,
        repaired=result.repaired,
        storage_path=result.storage_path,
        expected_path=result.expected_path,
        processing_triggered=result.processing_triggered,
        steps=result.steps,
    )
