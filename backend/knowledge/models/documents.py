"""
SQLAlchemy ORM Models — Documents, Chunks, Crawl Jobs & Audit Logs

Using SQLAlchemy mapped classes (2.x style) for full async support.

Tenant scoping: every table carries tenant_id and every repository query
filters on it explicitly (see knowledge.repositories.sql).  Chunks denormalize
tenant_id from their document so similarity search never has to join across
tenants to scope a query.

Vectors live in the chunks table itself (pgvector), so a chunk and its
embedding are written and deleted together.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from knowledge.core.config import settings


# ---------------------------------------------------------------------------
# Declarative base shared by all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model (documents)
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One logical source artifact: an uploaded file or a crawled page.

    State machine (processing_status column):
        pending    — stored, waiting for the processing task
        processing — worker actively extracting + chunking + embedding
        completed  — chunks embedded, total_chunks is authoritative
        failed     — extraction / processing error (bad file)
        error      — storage / path error (bad plumbing)
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed', 'error')",
            name="documents_status_check",
        ),
        Index("idx_documents_tenant_status", "tenant_id", "processing_status"),
        Index("idx_documents_tenant_source", "tenant_id", "source_url"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)

    title:     Mapped[str] = mapped_column(Text, nullable=False, default="")
    file_name: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Canonical file name; the last segment of the canonical storage key",
    )
    file_path: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Storage key in the primary bucket: tenant/<tenant_id>/uploads/<file_name>",
    )
    mime_type:     Mapped[str] = mapped_column(Text, nullable=False, default="application/octet-stream")
    document_type: Mapped[str] = mapped_column(Text, nullable=False, default="upload")
    source_url:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    processing_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    total_chunks:  Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} tenant={self.tenant_id} "
            f"status={self.processing_status} file={self.file_name!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model (document_chunks)
# ---------------------------------------------------------------------------

class Chunk(Base):
    """
    One embeddable passage of a Document.

    The embedding is written in a single UPDATE — whole vector or NULL.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunks_position"),
        Index("idx_chunks_tenant_document", "tenant_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index:  Mapped[int] = mapped_column(Integer, nullable=False)
    content:      Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    embedding: Mapped[Optional[list[float]]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# DomainRegistration model (domain_registrations)
# ---------------------------------------------------------------------------

class DomainRegistration(Base):
    """Allow-listed crawl target.  Disabled rows are never scheduled."""

    __tablename__ = "domain_registrations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "domain", name="uq_domain_registrations_tenant_domain"),
        Index("idx_domain_registrations_enabled", "tenant_id", "is_enabled"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    tenant_id:     Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    domain:        Mapped[str]  = mapped_column(Text, nullable=False)
    is_enabled:    Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    crawl_depth:   Mapped[int]  = mapped_column(Integer, nullable=False, default=2)
    recrawl_hours: Mapped[int]  = mapped_column(Integer, nullable=False, default=168)
    last_crawled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# IngestJob model (ingest_jobs)
# ---------------------------------------------------------------------------

class IngestJob(Base):
    """
    One tracked crawl-and-extract run.

    scheduled → running → completed | failed; terminal rows are never updated
    (enforced by the job tracker, not the database).
    """

    __tablename__ = "ingest_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('scheduled', 'running', 'completed', 'failed')",
            name="ingest_jobs_status_check",
        ),
        Index("idx_ingest_jobs_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    tenant_id:  Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    job_type:   Mapped[str] = mapped_column(Text, nullable=False, default="crawl_extract")
    status:     Mapped[str] = mapped_column(String(16), nullable=False, default="scheduled")
    stats:      Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict, server_default="{}")
    started_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# AuditLog model (audit_logs)
# ---------------------------------------------------------------------------

class AuditLog(Base):
    """
    Append-only audit trail.

    Every destructive or state-changing maintenance operation (corruption
    purge, duplicate removal, forced reprocessing, requeue, bulk embedding
    regeneration) writes exactly one row describing what was done and why.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_tenant_id",  "tenant_id"),
        Index("idx_audit_logs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)

    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id:   Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    action: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="e.g. CORRUPTION_CLEANUP, document.duplicate_removed, force_reprocess",
    )
    resource: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="e.g. document:<uuid>",
    )
    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog id={self.id} tenant={self.tenant_id} "
            f"action={self.action!r} success={self.success}>"
        )
