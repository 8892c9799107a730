"""
Pydantic Request/Response Schemas

Covers every endpoint under /api/v1:
  - document upload, status view, reprocess and requeue
  - maintenance summaries (corruption, duplicates, embeddings, legacy cleanup)
  - crawl domains, crawl trigger / status, nightly run
  - similarity search
  - the uniform ErrorResponse envelope used for all 4xx/5xx

Design decisions:
  - document_id is always server-generated (UUID4); never client-supplied.
  - tenant_id is always taken from the upstream-resolved X-Tenant-ID header,
    never from a request body.
  - processing_status is the async pipeline state, separate from HTTP status.
  - Every maintenance endpoint returns counts plus per-item detail, so the
    caller can decide which items to retry.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Allowed MIME types, enforced before touching S3
# ---------------------------------------------------------------------------

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",  # .docx
        "text/plain",
        "text/markdown",
        "text/html",
    }
)

# 50 MB hard ceiling, enforced in the upload route before storing
MAX_FILE_SIZE_BYTES: int = 50 * 1024 * 1024


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to documents.processing_status.
    Transitions: pending → processing → completed | failed | error
    """
    PENDING     = "pending"       # stored, waiting for a worker
    PROCESSING  = "processing"    # worker actively chunking + embedding
    COMPLETED   = "completed"     # chunks embedded, ready for retrieval
    FAILED      = "failed"        # bad file: extraction / processing error
    ERROR       = "error"         # bad plumbing: storage / path error


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class DocumentView(BaseModel):
    """GET /documents/{id} and the body of a 202 upload response."""
    document_id:       UUID
    tenant_id:         UUID
    title:             str
    file_name:         str
    file_path:         str | None = None
    mime_type:         str
    document_type:     str
    source_url:        str | None = None
    processing_status: ProcessingStatus
    total_chunks:      int = 0
    error_message:     str | None = None
    metadata:          dict[str, Any] = Field(default_factory=dict)
    processed_at:      datetime | None = None
    created_at:        datetime
    updated_at:        datetime

    @classmethod
    def from_record(cls, doc) -> "DocumentView":
        return cls(
            document_id=doc.id,
            tenant_id=doc.tenant_id,
            title=doc.title,
            file_name=doc.file_name,
            file_path=doc.file_path,
            mime_type=doc.mime_type,
            document_type=doc.document_type,
            source_url=doc.source_url,
            processing_status=ProcessingStatus(doc.processing_status),
            total_chunks=doc.total_chunks,
            error_message=doc.error_message,
            metadata=doc.metadata,
            processed_at=doc.processed_at,
            created_at=doc.created_at,
            updated_at=doc.updated_at,
        )


class ReprocessRequest(BaseModel):
    force_reprocess: bool = Field(False, description="Purge existing chunks before re-running")


class ReprocessResponse(BaseModel):
    document_id:          UUID
    processing_status:    ProcessingStatus
    processing_triggered: bool
    purged_chunks:        int = 0
    message:              str


class RequeueResponse(BaseModel):
    request_id:           str
    document_id:          UUID
    repaired:             bool
    storage_path:         str | None
    expected_path:        str
    processing_triggered: bool
    steps:                dict[str, str]


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

class CorruptionCleanupRequest(BaseModel):
    mps_number: str | None = Field(None, description="Optional triggering context, e.g. an MPS reference")
    reason:     str | None = None


class ItemFailureView(BaseModel):
    document_id: UUID
    error:       str


class CorruptionReportView(BaseModel):
    document_id:      UUID
    deleted_chunks:   int
    remaining_chunks: int
    document_reset:   bool


class CorruptionScanResponse(BaseModel):
    documents_scanned: int
    total_deleted:     int
    documents_reset:   int
    reports:           list[CorruptionReportView] = Field(default_factory=list)
    failures:          list[ItemFailureView] = Field(default_factory=list)


class DuplicateRemovalView(BaseModel):
    kept_id:         UUID
    removed_id:      UUID
    kept_chunks:     int
    removed_chunks:  int
    title:           str


class DedupResponse(BaseModel):
    duplicate_sets: int
    total_cleaned:  int
    removals:       list[DuplicateRemovalView] = Field(default_factory=list)
    failures:       list[ItemFailureView] = Field(default_factory=list)


class EmbeddingRegenerateRequest(BaseModel):
    force_all: bool = False
    limit:     int | None = Field(None, ge=1)


class EmbeddingReportView(BaseModel):
    processed: int
    errors:    int
    skipped:   int
    total:     int


class LegacyCleanupRequest(BaseModel):
    dry_run: bool = True


class LegacyCleanupItem(BaseModel):
    document_id: UUID
    title:       str
    reason:      str
    removed:     bool
    error:       str | None = None


class LegacyCleanupResponse(BaseModel):
    dry_run:       bool
    total_found:   int
    total_cleaned: int
    details:       list[LegacyCleanupItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Crawl
# ---------------------------------------------------------------------------

class DomainRegisterRequest(BaseModel):
    domain:        str = Field(..., min_length=1, max_length=255)
    crawl_depth:   int = Field(2, ge=0, le=5)
    recrawl_hours: int = Field(168, ge=1)


class DomainUpdateRequest(BaseModel):
    is_enabled:    bool | None = None
    crawl_depth:   int | None = Field(None, ge=0, le=5)
    recrawl_hours: int | None = Field(None, ge=1)


class DomainView(BaseModel):
    domain:          str
    is_enabled:      bool
    crawl_depth:     int
    recrawl_hours:   int
    last_crawled_at: datetime | None = None
    created_at:      datetime


class CrawlTriggerRequest(BaseModel):
    domain: str | None = None


class IngestJobView(BaseModel):
    job_id:      UUID
    job_type:    str
    status:      str
    stats:       dict[str, Any] = Field(default_factory=dict)
    started_by:  str | None = None
    started_at:  datetime | None = None
    finished_at: datetime | None = None
    created_at:  datetime


class CrawlStatusView(BaseModel):
    state:   str    # idle | running | success | failed
    domains: int
    pages:   int
    chunks:  int
    message: str


class NightlyTenantResult(BaseModel):
    tenant_id: UUID
    job_id:    UUID | None = None
    status:    str
    domains:   int = 0
    error:     str | None = None
    stats:     dict[str, Any] = Field(default_factory=dict)


class NightlyCrawlResponse(BaseModel):
    processed_tenants: int
    results:           list[NightlyTenantResult] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class SearchRequest(BaseModel):
    query:           str | None = Field(None, min_length=1, max_length=8000)
    query_embedding: list[float] | None = None
    match_count:     int = Field(5, ge=1, le=100)
    min_score:       float = Field(0.7, ge=-1.0, le=1.0)
    document_types:  list[str] | None = None

    @model_validator(mode="after")
    def _exactly_one_query(self) -> "SearchRequest":
        if (self.query is None) == (self.query_embedding is None):
            raise ValueError("Provide exactly one of 'query' or 'query_embedding'")
        return self


class SearchMatchView(BaseModel):
    chunk_id:       UUID
    document_id:    UUID
    document_title: str
    content:        str
    similarity:     float


class SearchResponse(BaseModel):
    intent:  str | None = None
    matches: list[SearchMatchView] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code:    str              = Field(..., description="Stable machine-readable code")
    message:       str              = Field(..., description="Human-readable summary")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    Optional[str]    = Field(None, description="Trace ID for log correlation")
