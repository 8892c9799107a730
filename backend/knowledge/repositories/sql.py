"""
SQLAlchemy repositories (PostgreSQL + pgvector).

Each repository wraps the AsyncSession of its unit of work and maps ORM rows
to the plain records defined in knowledge.repositories.base.  Tenant scoping
is explicit: every statement carries a `tenant_id ==` predicate, so isolation
does not depend on any database-side policy being installed.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge.core.errors import DocumentNotFound
from knowledge.models.documents import AuditLog, Chunk, Document, DomainRegistration, IngestJob
from knowledge.processing.chunking import content_hash
from knowledge.repositories.base import (
    AuditEntry,
    AuditRepository,
    ChunkRecord,
    ChunkRepository,
    DocumentRecord,
    DocumentRepository,
    DomainRecord,
    DomainRepository,
    IngestJobRecord,
    IngestJobRepository,
    SearchMatch,
    UnitOfWork,
)
from knowledge.services.notifications import PostCommitHooks

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row ↔ record mapping
# ---------------------------------------------------------------------------

def _document_record(row: Document) -> DocumentRecord:
    return DocumentRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        title=row.title,
        file_name=row.file_name,
        file_path=row.file_path,
        mime_type=row.mime_type,
        document_type=row.document_type,
        source_url=row.source_url,
        processing_status=row.processing_status,
        total_chunks=row.total_chunks,
        error_message=row.error_message,
        metadata=dict(row.doc_metadata or {}),
        processed_at=row.processed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _document_values(values: dict[str, Any]) -> dict[str, Any]:
    """Record attribute names → ORM attribute names."""
    if "metadata" in values:
        values = dict(values)
        values["doc_metadata"] = values.pop("metadata")
    return values


def _chunk_record(row: Chunk) -> ChunkRecord:
    return ChunkRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        document_id=row.document_id,
        chunk_index=row.chunk_index,
        content=row.content,
        content_hash=row.content_hash,
        embedding=list(row.embedding) if row.embedding is not None else None,
        created_at=row.created_at,
    )


def _job_record(row: IngestJob) -> IngestJobRecord:
    return IngestJobRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        job_type=row.job_type,
        status=row.status,
        stats=dict(row.stats or {}),
        started_by=row.started_by,
        started_at=row.started_at,
        finished_at=row.finished_at,
        created_at=row.created_at,
    )


def _domain_record(row: DomainRegistration) -> DomainRecord:
    return DomainRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        domain=row.domain,
        is_enabled=row.is_enabled,
        crawl_depth=row.crawl_depth,
        recrawl_hours=row.recrawl_hours,
        last_crawled_at=row.last_crawled_at,
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class SqlDocumentRepository(DocumentRepository):

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id, document_id):
        result = await self._session.execute(
            select(Document).where(
                Document.id == document_id,
                Document.tenant_id == tenant_id,
            )
        )
        row = result.scalars().first()
        return _document_record(row) if row else None

    async def list(self, tenant_id, *, status=None, document_type=None, created_after=None):
        stmt = select(Document).where(Document.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(Document.processing_status == status)
        if document_type is not None:
            stmt = stmt.where(Document.document_type == document_type)
        if created_after is not None:
            stmt = stmt.where(Document.created_at >= created_after)
        result = await self._session.execute(stmt.order_by(Document.created_at, Document.id))
        return [_document_record(row) for row in result.scalars().all()]

    async def find_by_source_url(self, tenant_id, source_url):
        result = await self._session.execute(
            select(Document)
            .where(Document.tenant_id == tenant_id, Document.source_url == source_url)
            .order_by(Document.created_at)
            .limit(1)
        )
        row = result.scalars().first()
        return _document_record(row) if row else None

    async def add(self, record):
        row = Document(
            id=record.id,
            tenant_id=record.tenant_id,
            title=record.title,
            file_name=record.file_name,
            file_path=record.file_path,
            mime_type=record.mime_type,
            document_type=record.document_type,
            source_url=record.source_url,
            processing_status=record.processing_status,
            total_chunks=record.total_chunks,
            error_message=record.error_message,
            doc_metadata=dict(record.metadata),
            processed_at=record.processed_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        self._session.add(row)
        await self._session.flush()
        return _document_record(row)

    async def update(self, tenant_id, document_id, **values):
        result = await self._session.execute(
            update(Document)
            .where(Document.id == document_id, Document.tenant_id == tenant_id)
            .values(**_document_values(values))
            .returning(Document)
            .execution_options(synchronize_session=False)
        )
        row = result.scalars().first()
        return _document_record(row) if row else None

    async def delete(self, tenant_id, document_id):
        result = await self._session.execute(
            delete(Document).where(Document.id == document_id, Document.tenant_id == tenant_id)
        )
        return result.rowcount > 0

    async def list_stale_pending(self, updated_before, limit):
        result = await self._session.execute(
            select(Document)
            .where(
                Document.processing_status == "pending",
                Document.updated_at < updated_before,
            )
            .order_by(Document.updated_at)
            .limit(limit)
        )
        return [_document_record(row) for row in result.scalars().all()]


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

class SqlChunkRepository(ChunkRepository):

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_many(self, tenant_id, document_id, contents):
        owner = await self._session.execute(
            select(Document.tenant_id).where(
                Document.id == document_id,
                Document.tenant_id == tenant_id,
            )
        )
        if owner.scalar_one_or_none() is None:
            raise DocumentNotFound(
                "Document not found in tenant",
                document_id=str(document_id), tenant_id=str(tenant_id),
            )

        rows = [
            Chunk(
                tenant_id=tenant_id,
                document_id=document_id,
                chunk_index=idx,
                content=text,
                content_hash=content_hash(text),
            )
            for idx, text in enumerate(contents)
        ]
        self._session.add_all(rows)
        await self._session.flush()
        return [_chunk_record(row) for row in rows]

    async def list_for_document(self, tenant_id, document_id):
        result = await self._session.execute(
            select(Chunk)
            .where(Chunk.tenant_id == tenant_id, Chunk.document_id == document_id)
            .order_by(Chunk.chunk_index)
        )
        return [_chunk_record(row) for row in result.scalars().all()]

    async def count(self, tenant_id, document_id, *, embedded_only=False):
        stmt = select(func.count(Chunk.id)).where(
            Chunk.tenant_id == tenant_id,
            Chunk.document_id == document_id,
        )
        if embedded_only:
            stmt = stmt.where(Chunk.embedding.is_not(None))
        return int((await self._session.execute(stmt)).scalar_one())

    async def count_for_documents(self, tenant_id, document_ids):
        if not document_ids:
            return 0
        result = await self._session.execute(
            select(func.count(Chunk.id)).where(
                Chunk.tenant_id == tenant_id,
                Chunk.document_id.in_(list(document_ids)),
            )
        )
        return int(result.scalar_one())

    async def delete_for_document(self, tenant_id, document_id):
        result = await self._session.execute(
            delete(Chunk).where(Chunk.tenant_id == tenant_id, Chunk.document_id == document_id)
        )
        return result.rowcount

    async def delete_many(self, tenant_id, chunk_ids):
        if not chunk_ids:
            return 0
        result = await self._session.execute(
            delete(Chunk).where(Chunk.tenant_id == tenant_id, Chunk.id.in_(list(chunk_ids)))
        )
        return result.rowcount

    async def list_for_embedding(self, tenant_id, *, document_id=None, missing_only=True, limit=None):
        stmt = select(Chunk).where(Chunk.tenant_id == tenant_id)
        if document_id is not None:
            stmt = stmt.where(Chunk.document_id == document_id)
        if missing_only:
            stmt = stmt.where(Chunk.embedding.is_(None))
        stmt = stmt.order_by(Chunk.created_at, Chunk.chunk_index)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return [_chunk_record(row) for row in result.scalars().all()]

    async def set_embedding(self, tenant_id, chunk_id, embedding):
        result = await self._session.execute(
            update(Chunk)
            .where(Chunk.id == chunk_id, Chunk.tenant_id == tenant_id)
            .values(embedding=embedding)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def search(self, tenant_id, query_embedding, *, match_count, min_score, document_types=None):
        distance   = Chunk.embedding.cosine_distance(query_embedding)
        similarity = (1 - distance).label("similarity")

        stmt = (
            select(
                Chunk.id,
                Chunk.document_id,
                Chunk.content,
                Document.title,
                Document.document_type,
                similarity,
            )
            .join(Document, Document.id == Chunk.document_id)
            .where(
                Chunk.tenant_id == tenant_id,
                Document.tenant_id == tenant_id,
                Chunk.embedding.is_not(None),
                (1 - distance) >= min_score,
            )
            .order_by(distance)
            .limit(match_count)
        )
        if document_types:
            stmt = stmt.where(Document.document_type.in_(list(document_types)))

        result = await self._session.execute(stmt)
        return [
            SearchMatch(
                chunk_id=row.id,
                document_id=row.document_id,
                document_title=row.title,
                content=row.content,
                similarity=float(row.similarity),
                document_type=row.document_type,
            )
            for row in result.all()
        ]


# ---------------------------------------------------------------------------
# Jobs, domains, audit
# ---------------------------------------------------------------------------

class SqlIngestJobRepository(IngestJobRepository):

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, record):
        row = IngestJob(
            id=record.id,
            tenant_id=record.tenant_id,
            job_type=record.job_type,
            status=record.status,
            stats=dict(record.stats),
            started_by=record.started_by,
            started_at=record.started_at,
            finished_at=record.finished_at,
            created_at=record.created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return _job_record(row)

    async def get(self, tenant_id, job_id):
        result = await self._session.execute(
            select(IngestJob).where(IngestJob.id == job_id, IngestJob.tenant_id == tenant_id)
        )
        row = result.scalars().first()
        return _job_record(row) if row else None

    async def update(self, tenant_id, job_id, **values):
        result = await self._session.execute(
            update(IngestJob)
            .where(IngestJob.id == job_id, IngestJob.tenant_id == tenant_id)
            .values(**values)
            .returning(IngestJob)
            .execution_options(synchronize_session=False)
        )
        row = result.scalars().first()
        return _job_record(row) if row else None

    async def list(self, tenant_id, limit=20):
        result = await self._session.execute(
            select(IngestJob)
            .where(IngestJob.tenant_id == tenant_id)
            .order_by(IngestJob.created_at.desc())
            .limit(limit)
        )
        return [_job_record(row) for row in result.scalars().all()]


class SqlDomainRepository(DomainRepository):

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id, domain):
        result = await self._session.execute(
            select(DomainRegistration).where(
                DomainRegistration.tenant_id == tenant_id,
                DomainRegistration.domain == domain,
            )
        )
        row = result.scalars().first()
        return _domain_record(row) if row else None

    async def list(self, tenant_id, *, enabled_only=False):
        stmt = select(DomainRegistration).where(DomainRegistration.tenant_id == tenant_id)
        if enabled_only:
            stmt = stmt.where(DomainRegistration.is_enabled.is_(True))
        result = await self._session.execute(stmt.order_by(DomainRegistration.created_at))
        return [_domain_record(row) for row in result.scalars().all()]

    async def add(self, record):
        row = DomainRegistration(
            id=record.id,
            tenant_id=record.tenant_id,
            domain=record.domain,
            is_enabled=record.is_enabled,
            crawl_depth=record.crawl_depth,
            recrawl_hours=record.recrawl_hours,
            last_crawled_at=record.last_crawled_at,
            created_at=record.created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return _domain_record(row)

    async def update(self, tenant_id, domain, **values):
        result = await self._session.execute(
            update(DomainRegistration)
            .where(
                DomainRegistration.tenant_id == tenant_id,
                DomainRegistration.domain == domain,
            )
            .values(**values)
            .returning(DomainRegistration)
            .execution_options(synchronize_session=False)
        )
        row = result.scalars().first()
        return _domain_record(row) if row else None

    async def delete(self, tenant_id, domain):
        result = await self._session.execute(
            delete(DomainRegistration).where(
                DomainRegistration.tenant_id == tenant_id,
                DomainRegistration.domain == domain,
            )
        )
        return result.rowcount > 0

    async def tenants_with_enabled_domains(self):
        result = await self._session.execute(
            select(distinct(DomainRegistration.tenant_id))
            .where(DomainRegistration.is_enabled.is_(True))
        )
        return list(result.scalars().all())


class SqlAuditRepository(AuditRepository):

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, entry):
        row = AuditLog(
            tenant_id=entry.tenant_id,
            user_id=entry.user_id,
            action=entry.action,
            resource=entry.resource,
            doc_metadata=dict(entry.metadata),
            success=entry.success,
        )
        self._session.add(row)
        await self._session.flush()
        return AuditEntry(
            id=row.id,
            tenant_id=row.tenant_id,
            user_id=row.user_id,
            action=row.action,
            resource=row.resource,
            metadata=dict(row.doc_metadata),
            success=row.success,
            created_at=entry.created_at,
        )

    async def list(self, tenant_id, *, action=None):
        stmt = select(AuditLog).where(AuditLog.tenant_id == tenant_id)
        if action is not None:
            stmt = stmt.where(AuditLog.action == action)
        result = await self._session.execute(stmt.order_by(AuditLog.id))
        return [
            AuditEntry(
                id=row.id,
                tenant_id=row.tenant_id,
                user_id=row.user_id,
                action=row.action,
                resource=row.resource,
                metadata=dict(row.doc_metadata or {}),
                success=row.success,
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------

class SqlUnitOfWork(UnitOfWork):
    """Repositories sharing one AsyncSession; commit() commits that session."""

    def __init__(self, session: AsyncSession, hooks: PostCommitHooks | None = None) -> None:
        super().__init__(hooks)
        self.session   = session
        self.documents = SqlDocumentRepository(session)
        self.chunks    = SqlChunkRepository(session)
        self.jobs      = SqlIngestJobRepository(session)
        self.domains   = SqlDomainRepository(session)
        self.audit     = SqlAuditRepository(session)

    async def _commit(self) -> None:
        await self.session.commit()

    async def _rollback(self) -> None:
        await self.session.rollback()
        logger.debug("Unit of work rolled back")
