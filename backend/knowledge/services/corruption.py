"""
Corruption recovery — targeted purge of damaged chunks.

purge_document:
  1. fetch every chunk of the document (tenant-scoped)
  2. classify each with detect_corruption()
  3. delete the corrupted ids in one batch; clean chunks stay untouched
  4. zero clean chunks left → document back to `pending`, total_chunks=0,
     processed_at cleared, so it can be fully reprocessed (whatever its
     status, unless a processing run currently owns it)
     otherwise → status unchanged, total_chunks re-derived from a live count
  5. one CORRUPTION_CLEANUP audit record with the purge count and context

scan_tenant runs the purge over every completed document of a tenant; one
document failing is logged and reported, never fatal to the scan.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from uuid import UUID

from knowledge.processing.corruption import detect_corruption
from knowledge.repositories.base import AuditEntry, UnitOfWork
from knowledge.schemas.documents import ProcessingStatus
from knowledge.services.registry import DocumentRegistry

logger = logging.getLogger(__name__)

AUDIT_ACTION = "CORRUPTION_CLEANUP"


@dataclass
class CorruptionReport:
    document_id:      UUID
    deleted_chunks:   int
    remaining_chunks: int
    document_reset:   bool
    reasons:          dict[str, int] = field(default_factory=dict)


@dataclass
class CorruptionScanReport:
    documents_scanned: int = 0
    total_deleted:     int = 0
    documents_reset:   int = 0
    reports:           list[CorruptionReport] = field(default_factory=list)
    failures:          list[dict] = field(default_factory=list)


class CorruptionRecoveryService:

    def __init__(self, uow: UnitOfWork) -> None:
        self._uow      = uow
        self._registry = DocumentRegistry(uow)

    async def purge_document(
        self,
        tenant_id:   UUID,
        document_id: UUID,
        *,
        user_id:     str | None = None,
        mps_number:  str | None = None,
        reason:      str | None = None,
    ) -> CorruptionReport:
        doc = await self._registry.get(tenant_id, document_id)
        chunks = await self._uow.chunks.list_for_document(tenant_id, document_id)

        corrupted_ids = []
        reason_counts: Counter[str] = Counter()
        for chunk in chunks:
            verdict = detect_corruption(chunk.content)
            if verdict.is_corrupted:
                corrupted_ids.append(chunk.id)
                reason_counts.update(verdict.reasons)

        deleted = await self._uow.chunks.delete_many(tenant_id, corrupted_ids) if corrupted_ids else 0
        remaining = await self._uow.chunks.count(tenant_id, document_id)

        document_reset = False
        if remaining == 0 and doc.processing_status != ProcessingStatus.PROCESSING.value:
            await self._registry.reset_to_pending(tenant_id, document_id)
            document_reset = True
        else:
            await self._registry.refresh_chunk_count(tenant_id, document_id)

        await self._uow.audit.add(AuditEntry(
            tenant_id=tenant_id,
            user_id=user_id,
            action=AUDIT_ACTION,
            resource=f"document:{document_id}",
            metadata={
                "document_title":   doc.title,
                "deleted_chunks":   deleted,
                "remaining_chunks": remaining,
                "document_reset":   document_reset,
                "reasons":          dict(reason_counts),
                "mps_number":       mps_number,
                "reason":           reason,
            },
        ))
        await self._uow.commit()

        logger.info(
            "Corruption cleanup | doc=%s tenant=%s deleted=%d remaining=%d reset=%s",
            document_id, tenant_id, deleted, remaining, document_reset,
        )
        return CorruptionReport(
            document_id=document_id,
            deleted_chunks=deleted,
            remaining_chunks=remaining,
            document_reset=document_reset,
            reasons=dict(reason_counts),
        )

    async def scan_tenant(self, tenant_id: UUID, *, user_id: str | None = None) -> CorruptionScanReport:
        scan = CorruptionScanReport()
        documents = await self._uow.documents.list(
            tenant_id, status=ProcessingStatus.COMPLETED.value,
        )
        for doc in documents:
            scan.documents_scanned += 1
            try:
                report = await self.purge_document(
                    tenant_id, doc.id, user_id=user_id, reason="tenant_scan",
                )
            except Exception as exc:
                logger.exception("Corruption scan failed | doc=%s tenant=%s", doc.id, tenant_id)
                await self._uow.rollback()
                scan.failures.append({"document_id": str(doc.id), "error": str(exc)})
                continue

            if report.deleted_chunks:
                scan.reports.append(report)
                scan.total_deleted += report.deleted_chunks
                scan.documents_reset += int(report.document_reset)

        logger.info(
            "Corruption scan | tenant=%s scanned=%d deleted=%d reset=%d failures=%d",
            tenant_id, scan.documents_scanned, scan.total_deleted,
            scan.documents_reset, len(scan.failures),
        )
        return scan
