"""
Repositories — Abstract Base

Services never talk to SQLAlchemy directly; they speak this interface, so the
same service code runs against PostgreSQL (knowledge.repositories.sql) and
against the in-memory implementation used by tests and local runs
(knowledge.repositories.memory).

Tenant isolation contract (enforced by ALL implementations):
  - Every read and write takes tenant_id and filters on it.
  - A chunk can only be inserted for a document that belongs to the same
    tenant; anything else raises DocumentNotFound.
  - The only cross-tenant reads are the two scheduler scans
    (DocumentRepository.list_stale_pending and
    DomainRepository.tenants_with_enabled_domains).  Both return rows that
    carry their tenant_id, and every follow-up write is tenant-scoped again.

A UnitOfWork bundles one instance of each repository around a single
transaction plus the post-commit hook list that is flushed after commit.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence
from uuid import UUID, uuid4

from knowledge.services.notifications import PostCommitHooks


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class DocumentRecord:
    tenant_id:         UUID
    file_name:         str
    title:             str = ""
    file_path:         str | None = None
    mime_type:         str = "application/octet-stream"
    document_type:     str = "upload"          # upload | web_crawl | free-form type
    source_url:        str | None = None
    processing_status: str = "pending"
    total_chunks:      int = 0
    error_message:     str | None = None
    metadata:          dict[str, Any] = field(default_factory=dict)
    processed_at:      datetime | None = None
    id:                UUID = field(default_factory=uuid4)
    created_at:        datetime = field(default_factory=utcnow)
    updated_at:        datetime = field(default_factory=utcnow)


@dataclass
class ChunkRecord:
    tenant_id:    UUID
    document_id:  UUID
    chunk_index:  int
    content:      str
    content_hash: str
    embedding:    list[float] | None = None
    id:           UUID = field(default_factory=uuid4)
    created_at:   datetime = field(default_factory=utcnow)


@dataclass
class SearchMatch:
    """One similarity hit, carrying its parent document's metadata."""
    chunk_id:       UUID
    document_id:    UUID
    document_title: str
    content:        str
    similarity:     float
    document_type:  str = "upload"


@dataclass
class IngestJobRecord:
    tenant_id:   UUID
    job_type:    str = "crawl_extract"
    status:      str = "scheduled"             # scheduled | running | completed | failed
    stats:       dict[str, Any] = field(default_factory=dict)
    started_by:  str | None = None
    started_at:  datetime | None = None
    finished_at: datetime | None = None
    id:          UUID = field(default_factory=uuid4)
    created_at:  datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


@dataclass
class DomainRecord:
    tenant_id:       UUID
    domain:          str
    is_enabled:      bool = True
    crawl_depth:     int = 2
    recrawl_hours:   int = 168
    last_crawled_at: datetime | None = None
    id:              UUID = field(default_factory=uuid4)
    created_at:      datetime = field(default_factory=utcnow)


@dataclass
class AuditEntry:
    tenant_id:  UUID
    action:     str
    resource:   str | None = None
    metadata:   dict[str, Any] = field(default_factory=dict)
    user_id:    str | None = None
    success:    bool = True
    created_at: datetime = field(default_factory=utcnow)
    id:         int | None = None


# ---------------------------------------------------------------------------
# Abstract repositories
# ---------------------------------------------------------------------------

class DocumentRepository(ABC):

    @abstractmethod
    async def get(self, tenant_id: UUID, document_id: UUID) -> DocumentRecord | None:
        ...

    @abstractmethod
    async def list(
        self,
        tenant_id:     UUID,
        *,
        status:        str | None = None,
        document_type: str | None = None,
        created_after: datetime | None = None,
    ) -> list[DocumentRecord]:
        """Tenant documents ordered by created_at ascending (first-seen order)."""

    @abstractmethod
    async def find_by_source_url(self, tenant_id: UUID, source_url: str) -> DocumentRecord | None:
        ...

    @abstractmethod
    async def add(self, record: DocumentRecord) -> DocumentRecord:
        ...

    @abstractmethod
    async def update(self, tenant_id: UUID, document_id: UUID, **values: Any) -> DocumentRecord | None:
        """
        Apply field updates (DocumentRecord attribute names) and return the
        updated record, or None when the document does not exist in the tenant.
        """

    @abstractmethod
    async def delete(self, tenant_id: UUID, document_id: UUID) -> bool:
        ...

    @abstractmethod
    async def list_stale_pending(self, updated_before: datetime, limit: int) -> list[DocumentRecord]:
        """Cross-tenant scan: pending documents not touched since `updated_before`."""


class ChunkRepository(ABC):

    @abstractmethod
    async def add_many(
        self,
        tenant_id:   UUID,
        document_id: UUID,
        contents:    Sequence[str],
    ) -> list[ChunkRecord]:
        """
        Insert chunks for a document, indexed from 0 in the given order.
        Raises DocumentNotFound when the document is not owned by tenant_id.
        """

    @abstractmethod
    async def list_for_document(self, tenant_id: UUID, document_id: UUID) -> list[ChunkRecord]:
        ...

    @abstractmethod
    async def count(self, tenant_id: UUID, document_id: UUID, *, embedded_only: bool = False) -> int:
        ...

    @abstractmethod
    async def count_for_documents(self, tenant_id: UUID, document_ids: Sequence[UUID]) -> int:
        ...

    @abstractmethod
    async def delete_for_document(self, tenant_id: UUID, document_id: UUID) -> int:
        ...

    @abstractmethod
    async def delete_many(self, tenant_id: UUID, chunk_ids: Sequence[UUID]) -> int:
        """Delete the given chunk ids in one batch; returns the number removed."""

    @abstractmethod
    async def list_for_embedding(
        self,
        tenant_id:    UUID,
        *,
        document_id:  UUID | None = None,
        missing_only: bool = True,
        limit:        int | None = None,
    ) -> list[ChunkRecord]:
        ...

    @abstractmethod
    async def set_embedding(self, tenant_id: UUID, chunk_id: UUID, embedding: list[float]) -> bool:
        ...

    @abstractmethod
    async def search(
        self,
        tenant_id:       UUID,
        query_embedding: list[float],
        *,
        match_count:     int,
        min_score:       float,
        document_types:  Sequence[str] | None = None,
    ) -> list[SearchMatch]:
        """Cosine-similarity search, descending, similarity >= min_score."""


class IngestJobRepository(ABC):

    @abstractmethod
    async def add(self, record: IngestJobRecord) -> IngestJobRecord:
        ...

    @abstractmethod
    async def get(self, tenant_id: UUID, job_id: UUID) -> IngestJobRecord | None:
        ...

    @abstractmethod
    async def update(self, tenant_id: UUID, job_id: UUID, **values: Any) -> IngestJobRecord | None:
        ...

    @abstractmethod
    async def list(self, tenant_id: UUID, limit: int = 20) -> list[IngestJobRecord]:
        """Most recent first."""


class DomainRepository(ABC):

    @abstractmethod
    async def get(self, tenant_id: UUID, domain: str) -> DomainRecord | None:
        ...

    @abstractmethod
    async def list(self, tenant_id: UUID, *, enabled_only: bool = False) -> list[DomainRecord]:
        ...

    @abstractmethod
    async def add(self, record: DomainRecord) -> DomainRecord:
        ...

    @abstractmethod
    async def update(self, tenant_id: UUID, domain: str, **values: Any) -> DomainRecord | None:
        ...

    @abstractmethod
    async def delete(self, tenant_id: UUID, domain: str) -> bool:
        ...

    @abstractmethod
    async def tenants_with_enabled_domains(self) -> list[UUID]:
        """Cross-tenant scan used only by the nightly scheduler."""


class AuditRepository(ABC):

    @abstractmethod
    async def add(self, entry: AuditEntry) -> AuditEntry:
        ...

    @abstractmethod
    async def list(self, tenant_id: UUID, *, action: str | None = None) -> list[AuditEntry]:
        ...


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------

class UnitOfWork(ABC):
    """
    One transaction's worth of repositories.

    commit() persists pending writes and then flushes the post-commit hooks;
    rollback() discards both.  Services commit at the boundaries of each
    independently recoverable step.
    """

    documents: DocumentRepository
    chunks:    ChunkRepository
    jobs:      IngestJobRepository
    domains:   DomainRepository
    audit:     AuditRepository

    def __init__(self, hooks: PostCommitHooks | None = None) -> None:
        self.hooks = hooks if hooks is not None else PostCommitHooks()

    async def commit(self) -> None:
        await self._commit()
        await self.hooks.flush()

    async def rollback(self) -> None:
        await self._rollback()
        self.hooks.discard()

    @abstractmethod
    async def _commit(self) -> None:
        ...

    @abstractmethod
    async def _rollback(self) -> None:
        ...
