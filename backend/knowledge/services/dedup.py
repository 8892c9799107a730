"""
Deduplicator & legacy cleanup.

Duplicate ranking
─────────────────
Documents of a tenant are grouped by normalize_title(title), falling back
to the file name when the title is blank.  Inside each group of 2+ members
the order is:

    1. processing_status == completed first
    2. higher total_chunks
    3. newer created_at
    4. first-seen order (list order; sorted() is stable)

The top member is kept; the rest are removed with a two-step delete
(chunks, then document).  A removal that fails is reported and the run
continues.  Running twice removes nothing the second time.

Legacy cleanup
──────────────
Finds documents that never produced a chunk and are stuck or obsolete:
total_chunks == 0 AND one of
    pending for more than LEGACY_STALE_PENDING
    failed
    metadata.legacy_upload is truthy, or metadata.upload_version < 2
    storage path contains "temp/" or "legacy/"
Dry-run by default.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import groupby
from uuid import UUID

from knowledge.repositories.base import AuditEntry, DocumentRecord, UnitOfWork, utcnow
from knowledge.schemas.documents import ProcessingStatus
from knowledge.services.registry import DocumentRegistry

logger = logging.getLogger(__name__)

LEGACY_STALE_PENDING = timedelta(hours=2)

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    return _WHITESPACE_RE.sub(" ", title or "").strip().lower()


def _group_key(doc: DocumentRecord) -> str:
    return normalize_title(doc.title) or normalize_title(doc.file_name)


def rank_duplicates(documents: list[DocumentRecord]) -> list[DocumentRecord]:
    """Best first.  Stable, so equal members keep their input order."""
    return sorted(
        documents,
        key=lambda d: (
            d.processing_status != ProcessingStatus.COMPLETED.value,
            -d.total_chunks,
            -d.created_at.timestamp(),
        ),
    )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@dataclass
class DuplicateRemoval:
    kept_id:        UUID
    removed_id:     UUID
    kept_chunks:    int
    removed_chunks: int
    title:          str


@dataclass
class DedupReport:
    duplicate_sets: int = 0
    total_cleaned:  int = 0
    removals:       list[DuplicateRemoval] = field(default_factory=list)
    failures:       list[dict] = field(default_factory=list)


@dataclass
class LegacyCandidate:
    document: DocumentRecord
    reason:   str
    removed:  bool = False
    error:    str | None = None


@dataclass
class LegacyCleanupReport:
    dry_run:       bool
    total_found:   int = 0
    total_cleaned: int = 0
    details:       list[LegacyCandidate] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Deduplicator
# ---------------------------------------------------------------------------

class Deduplicator:

    def __init__(self, uow: UnitOfWork) -> None:
        self._uow      = uow
        self._registry = DocumentRegistry(uow)

    async def auto_clean(self, tenant_id: UUID, *, user_id: str | None = None) -> DedupReport:
        report = DedupReport()
        for group in await self._duplicate_groups(tenant_id):
            report.duplicate_sets += 1
            await self._clean_group(tenant_id, group, report, user_id=user_id)

        logger.info(
            "Dedup auto-clean | tenant=%s sets=%d cleaned=%d failures=%d",
            tenant_id, report.duplicate_sets, report.total_cleaned, len(report.failures),
        )
        return report

    async def clean_document(
        self,
        tenant_id:   UUID,
        document_id: UUID,
        *,
        user_id:     str | None = None,
    ) -> DedupReport:
        """
        Remove `document_id` as a duplicate of the best-ranked member of its
        set.  Only the named document is ever deleted; when it is the best
        member itself, or has no siblings, nothing is removed.
        """
        target = await self._registry.get(tenant_id, document_id)
        key = _group_key(target)

        report = DedupReport()
        for group in await self._duplicate_groups(tenant_id):
            if _group_key(group[0]) != key:
                continue
            report.duplicate_sets = 1
            keep = rank_duplicates(group)[0]
            if keep.id != document_id:
                await self._remove(tenant_id, keep, target, report, user_id=user_id)
            break

        logger.info(
            "Dedup single | doc=%s tenant=%s cleaned=%d",
            document_id, tenant_id, report.total_cleaned,
        )
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _duplicate_groups(self, tenant_id: UUID) -> list[list[DocumentRecord]]:
        documents = await self._uow.documents.list(tenant_id)
        keyed = sorted(
            ((idx, _group_key(doc), doc) for idx, doc in enumerate(documents) if _group_key(doc)),
            key=lambda item: (item[1], item[0]),
        )
        groups = []
        for _, members in groupby(keyed, key=lambda item: item[1]):
            docs = [doc for _, _, doc in members]
            if len(docs) > 1:
                groups.append(docs)
        return groups

    async def _clean_group(
        self,
        tenant_id: UUID,
        group:     list[DocumentRecord],
        report:    DedupReport,
        *,
        user_id:   str | None,
    ) -> None:
        keep, *duplicates = rank_duplicates(group)
        for doc in duplicates:
            await self._remove(tenant_id, keep, doc, report, user_id=user_id)

    async def _remove(
        self,
        tenant_id: UUID,
        keep:      DocumentRecord,
        doc:       DocumentRecord,
        report:    DedupReport,
        *,
        user_id:   str | None,
    ) -> None:
        """Two-step delete of `doc`; a failure is reported, never raised."""
        try:
            removed_chunks = await self._registry.delete(tenant_id, doc.id)
            removal = DuplicateRemoval(
                kept_id=keep.id,
                removed_id=doc.id,
                kept_chunks=keep.total_chunks,
                removed_chunks=max(removed_chunks, doc.total_chunks),
                title=doc.title,
            )
            await self._uow.audit.add(AuditEntry(
                tenant_id=tenant_id,
                user_id=user_id,
                action="document.duplicate_removed",
                resource=f"document:{doc.id}",
                metadata={
                    "kept_id":        str(keep.id),
                    "removed_id":     str(doc.id),
                    "kept_chunks":    removal.kept_chunks,
                    "removed_chunks": removal.removed_chunks,
                    "title":          doc.title,
                    "removed_status": doc.processing_status,
                },
            ))
            await self._uow.commit()
        except Exception as exc:
            logger.exception("Duplicate removal failed | doc=%s tenant=%s", doc.id, tenant_id)
            await self._uow.rollback()
            report.failures.append({"document_id": doc.id, "error": str(exc)})
            return

        report.removals.append(removal)
        report.total_cleaned += 1
        logger.info(
            "Duplicate removed | kept=%s removed=%s title=%r",
            keep.id, doc.id, doc.title,
        )


# ---------------------------------------------------------------------------
# Legacy cleanup
# ---------------------------------------------------------------------------

def legacy_reason(doc: DocumentRecord, now: datetime) -> str | None:
    """Why `doc` is a legacy leftover, or None when it is not one."""
    if doc.total_chunks != 0:
        return None

    if (
        doc.processing_status == ProcessingStatus.PENDING.value
        and now - doc.created_at > LEGACY_STALE_PENDING
    ):
        return "stuck_pending"
    if doc.processing_status == ProcessingStatus.FAILED.value:
        return "failed_processing"

    metadata = doc.metadata or {}
    version = metadata.get("upload_version")
    if metadata.get("legacy_upload") or (isinstance(version, (int, float)) and version < 2):
        return "legacy_upload"

    path = doc.file_path or ""
    if "temp/" in path or "legacy/" in path:
        return "legacy_path"
    return None


class LegacyCleanupService:

    def __init__(self, uow: UnitOfWork) -> None:
        self._uow      = uow
        self._registry = DocumentRegistry(uow)

    async def run(
        self,
        tenant_id: UUID,
        *,
        dry_run:   bool = True,
        user_id:   str | None = None,
        now:       datetime | None = None,
    ) -> LegacyCleanupReport:
        now = now or utcnow()
        report = LegacyCleanupReport(dry_run=dry_run)

        for doc in await self._uow.documents.list(tenant_id):
            reason = legacy_reason(doc, now)
            if reason is None:
                continue
            candidate = LegacyCandidate(document=doc, reason=reason)
            report.details.append(candidate)
            report.total_found += 1

            if dry_run:
                continue
            try:
                await self._registry.delete(tenant_id, doc.id)
                await self._uow.audit.add(AuditEntry(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    action="document.legacy_removed",
                    resource=f"document:{doc.id}",
                    metadata={"title": doc.title, "reason": reason, "file_path": doc.file_path},
                ))
                await self._uow.commit()
            except Exception as exc:
                logger.exception("Legacy cleanup failed | doc=%s tenant=%s", doc.id, tenant_id)
                await self._uow.rollback()
                candidate.error = str(exc)
                continue

            candidate.removed = True
            report.total_cleaned += 1

        logger.info(
            "Legacy cleanup | tenant=%s dry_run=%s found=%d cleaned=%d",
            tenant_id, dry_run, report.total_found, report.total_cleaned,
        )
        return report
