"""
In-memory repositories.

Same contract as the SQL implementation, backed by dicts owned by an
InMemoryStore.  Used by the test-suite and for local runs without PostgreSQL.
Records are copied on the way in and out so callers never alias stored state.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from knowledge.core.errors import DocumentNotFound
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
    utcnow,
)
from knowledge.services.notifications import PostCommitHooks


def _copy(record):
    values = {}
    for name in ("metadata", "stats"):
        if hasattr(record, name):
            values[name] = dict(getattr(record, name))
    if getattr(record, "embedding", None) is not None:
        values["embedding"] = list(record.embedding)
    return replace(record, **values)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"different vector dimensions {len(a)} and {len(b)}")
    dot    = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


@dataclass
class InMemoryStore:
    documents: dict[UUID, DocumentRecord] = field(default_factory=dict)
    chunks:    dict[UUID, ChunkRecord] = field(default_factory=dict)
    jobs:      dict[UUID, IngestJobRecord] = field(default_factory=dict)
    domains:   dict[tuple[UUID, str], DomainRecord] = field(default_factory=dict)
    audit:     list[AuditEntry] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class InMemoryDocumentRepository(DocumentRepository):

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def _owned(self, tenant_id: UUID, document_id: UUID) -> DocumentRecord | None:
        doc = self._store.documents.get(document_id)
        if doc is None or doc.tenant_id != tenant_id:
            return None
        return doc

    async def get(self, tenant_id, document_id):
        doc = self._owned(tenant_id, document_id)
        return _copy(doc) if doc else None

    async def list(self, tenant_id, *, status=None, document_type=None, created_after=None):
        docs = [
            d for d in self._store.documents.values()
            if d.tenant_id == tenant_id
            and (status is None or d.processing_status == status)
            and (document_type is None or d.document_type == document_type)
            and (created_after is None or d.created_at >= created_after)
        ]
        # sorted() is stable, so equal timestamps keep insertion order
        return [_copy(d) for d in sorted(docs, key=lambda d: d.created_at)]

    async def find_by_source_url(self, tenant_id, source_url):
        for doc in self._store.documents.values():
            if doc.tenant_id == tenant_id and doc.source_url == source_url:
                return _copy(doc)
        return None

    async def add(self, record):
        self._store.documents[record.id] = _copy(record)
        return _copy(record)

    async def update(self, tenant_id, document_id, **values: Any):
        doc = self._owned(tenant_id, document_id)
        if doc is None:
            return None
        values.setdefault("updated_at", utcnow())
        updated = replace(doc, **values)
        self._store.documents[document_id] = _copy(updated)
        return _copy(updated)

    async def delete(self, tenant_id, document_id):
        if self._owned(tenant_id, document_id) is None:
            return False
        del self._store.documents[document_id]
        # ON DELETE CASCADE
        for chunk_id in [c.id for c in self._store.chunks.values() if c.document_id == document_id]:
            del self._store.chunks[chunk_id]
        return True

    async def list_stale_pending(self, updated_before: datetime, limit: int):
        stale = [
            d for d in self._store.documents.values()
            if d.processing_status == "pending" and d.updated_at < updated_before
        ]
        return [_copy(d) for d in sorted(stale, key=lambda d: d.updated_at)[:limit]]


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

class InMemoryChunkRepository(ChunkRepository):

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def _scoped(self, tenant_id: UUID, document_id: UUID | None = None) -> list[ChunkRecord]:
        return [
            c for c in self._store.chunks.values()
            if c.tenant_id == tenant_id
            and (document_id is None or c.document_id == document_id)
        ]

    async def add_many(self, tenant_id, document_id, contents):
        doc = self._store.documents.get(document_id)
        if doc is None or doc.tenant_id != tenant_id:
            raise DocumentNotFound(
                "Document not found in tenant",
                document_id=str(document_id), tenant_id=str(tenant_id),
            )
        records = [
            ChunkRecord(
                tenant_id=doc.tenant_id,
                document_id=document_id,
                chunk_index=idx,
                content=text,
                content_hash=content_hash(text),
            )
            for idx, text in enumerate(contents)
        ]
        for record in records:
            self._store.chunks[record.id] = _copy(record)
        return records

    async def list_for_document(self, tenant_id, document_id):
        chunks = sorted(self._scoped(tenant_id, document_id), key=lambda c: c.chunk_index)
        return [_copy(c) for c in chunks]

    async def count(self, tenant_id, document_id, *, embedded_only=False):
        return sum(
            1 for c in self._scoped(tenant_id, document_id)
            if not embedded_only or c.embedding is not None
        )

    async def count_for_documents(self, tenant_id, document_ids):
        wanted = set(document_ids)
        return sum(1 for c in self._scoped(tenant_id) if c.document_id in wanted)

    async def delete_for_document(self, tenant_id, document_id):
        doomed = [c.id for c in self._scoped(tenant_id, document_id)]
        for chunk_id in doomed:
            del self._store.chunks[chunk_id]
        return len(doomed)

    async def delete_many(self, tenant_id, chunk_ids):
        removed = 0
        for chunk_id in chunk_ids:
            chunk = self._store.chunks.get(chunk_id)
            if chunk is not None and chunk.tenant_id == tenant_id:
                del self._store.chunks[chunk_id]
                removed += 1
        return removed

    async def list_for_embedding(self, tenant_id, *, document_id=None, missing_only=True, limit=None):
        chunks = [
            c for c in self._scoped(tenant_id, document_id)
            if not missing_only or c.embedding is None
        ]
        chunks.sort(key=lambda c: (c.created_at, c.chunk_index))
        if limit is not None:
            chunks = chunks[:limit]
        return [_copy(c) for c in chunks]

    async def set_embedding(self, tenant_id, chunk_id, embedding):
        chunk = self._store.chunks.get(chunk_id)
        if chunk is None or chunk.tenant_id != tenant_id:
            return False
        self._store.chunks[chunk_id] = replace(chunk, embedding=list(embedding))
        return True

    async def search(self, tenant_id, query_embedding, *, match_count, min_score, document_types=None):
        matches: list[SearchMatch] = []
        for chunk in self._scoped(tenant_id):
            if chunk.embedding is None:
                continue
            doc = self._store.documents.get(chunk.document_id)
            if doc is None or doc.tenant_id != tenant_id:
                continue
            if document_types and doc.document_type not in document_types:
                continue
            score = cosine_similarity(query_embedding, chunk.embedding)
            if score < min_score:
                continue
            matches.append(SearchMatch(
                chunk_id=chunk.id,
                document_id=doc.id,
                document_title=doc.title,
                content=chunk.content,
                similarity=score,
                document_type=doc.document_type,
            ))
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:match_count]


# ---------------------------------------------------------------------------
# Jobs, domains, audit
# ---------------------------------------------------------------------------

class InMemoryIngestJobRepository(IngestJobRepository):

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    async def add(self, record):
        self._store.jobs[record.id] = _copy(record)
        return _copy(record)

    async def get(self, tenant_id, job_id):
        job = self._store.jobs.get(job_id)
        return _copy(job) if job and job.tenant_id == tenant_id else None

    async def update(self, tenant_id, job_id, **values):
        job = self._store.jobs.get(job_id)
        if job is None or job.tenant_id != tenant_id:
            return None
        updated = replace(job, **values)
        self._store.jobs[job_id] = _copy(updated)
        return _copy(updated)

    async def list(self, tenant_id, limit=20):
        jobs = [j for j in self._store.jobs.values() if j.tenant_id == tenant_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [_copy(j) for j in jobs[:limit]]


class InMemoryDomainRepository(DomainRepository):

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    async def get(self, tenant_id, domain):
        record = self._store.domains.get((tenant_id, domain))
        return _copy(record) if record else None

    async def list(self, tenant_id, *, enabled_only=False):
        records = [
            r for (tid, _), r in self._store.domains.items()
            if tid == tenant_id and (r.is_enabled or not enabled_only)
        ]
        return [_copy(r) for r in sorted(records, key=lambda r: r.created_at)]

    async def add(self, record):
        self._store.domains[(record.tenant_id, record.domain)] = _copy(record)
        return _copy(record)

    async def update(self, tenant_id, domain, **values):
        record = self._store.domains.get((tenant_id, domain))
        if record is None:
            return None
        updated = replace(record, **values)
        self._store.domains[(tenant_id, domain)] = updated
        return _copy(updated)

    async def delete(self, tenant_id, domain):
        return self._store.domains.pop((tenant_id, domain), None) is not None

    async def tenants_with_enabled_domains(self):
        seen: dict[UUID, None] = {}
        for (tenant_id, _), record in self._store.domains.items():
            if record.is_enabled:
                seen.setdefault(tenant_id, None)
        return list(seen)


class InMemoryAuditRepository(AuditRepository):

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    async def add(self, entry):
        entry = replace(entry, id=len(self._store.audit) + 1)
        self._store.audit.append(entry)
        return entry

    async def list(self, tenant_id, *, action=None):
        return [
            e for e in self._store.audit
            if e.tenant_id == tenant_id and (action is None or e.action == action)
        ]


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(UnitOfWork):
    """
    Writes are applied immediately, so commit only flushes hooks and
    rollback only discards them.
    """

    def __init__(self, store: InMemoryStore | None = None, hooks: PostCommitHooks | None = None) -> None:
        super().__init__(hooks)
        self.store     = store if store is not None else InMemoryStore()
        self.documents = InMemoryDocumentRepository(self.store)
        self.chunks    = InMemoryChunkRepository(self.store)
        self.jobs      = InMemoryIngestJobRepository(self.store)
        self.domains   = InMemoryDomainRepository(self.store)
        self.audit     = InMemoryAuditRepository(self.store)
        self.commits   = 0

    async def _commit(self) -> None:
        self.commits += 1

    async def _rollback(self) -> None:
        return None
