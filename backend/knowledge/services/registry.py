"""
Document Registry — processing state machine.

    pending ──► processing ──► completed
       ▲            │
       │            ├────────► failed   (extraction / processing error)
       │            └────────► error    (storage / path error)
       │
       └──── reset_to_pending() from any state (chunks purged first)

Rules:
  begin_processing   pending / failed / error → processing.
                     Already `processing` or `completed` → no-op unless
                     force_reprocess.  A run always starts from an empty chunk
                     set, so any leftover chunks are purged first.
  complete           processing → completed; needs ≥1 embedded chunk.
                     total_chunks is re-derived from a live count.
  fail               kind=processing → failed, kind=storage → error.
  reset_to_pending   any → pending, total_chunks=0, processed_at cleared.

The registry never commits; callers commit at their step boundaries.
Every transition queues a `document.status_changed` event on the unit of
work's post-commit hooks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID

from knowledge.core.errors import DocumentNotFound, InvalidTransition
from knowledge.repositories.base import DocumentRecord, UnitOfWork, utcnow
from knowledge.schemas.documents import ProcessingStatus

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_CHARS = 1000


class FailureKind(str, Enum):
    PROCESSING = "processing"   # → failed
    STORAGE    = "storage"      # → error


@dataclass
class TransitionResult:
    document:        DocumentRecord
    started:         bool
    previous_status: str
    purged_chunks:   int = 0

    @property
    def skipped(self) -> bool:
        return not self.started


class DocumentRegistry:

    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, tenant_id: UUID, document_id: UUID) -> DocumentRecord:
        doc = await self._uow.documents.get(tenant_id, document_id)
        if doc is None:
            raise DocumentNotFound(
                f"Document {document_id} not found",
                document_id=str(document_id),
            )
        return doc

    # ------------------------------------------------------------------
    # Creation / deletion
    # ------------------------------------------------------------------

    async def create(self, record: DocumentRecord) -> DocumentRecord:
        record.processing_status = ProcessingStatus.PENDING.value
        record.total_chunks = 0
        doc = await self._uow.documents.add(record)
        self._emit(doc, previous=None)
        logger.info(
            "Document created | doc=%s tenant=%s type=%s",
            doc.id, doc.tenant_id, doc.document_type,
        )
        return doc

    async def delete(self, tenant_id: UUID, document_id: UUID) -> int:
        """
        Two-step delete: chunks first, then the document row.
        Returns the number of chunks removed.
        """
        removed = await self._uow.chunks.delete_for_document(tenant_id, document_id)
        if not await self._uow.documents.delete(tenant_id, document_id):
            raise DocumentNotFound(
                f"Document {document_id} not found",
                document_id=str(document_id),
            )
        self._uow.hooks.emit(
            "document.deleted",
            tenant_id=str(tenant_id),
            document_id=str(document_id),
            chunks_removed=removed,
        )
        return removed

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def begin_processing(
        self,
        tenant_id:       UUID,
        document_id:     UUID,
        *,
        force_reprocess: bool = False,
    ) -> TransitionResult:
        doc = await self.get(tenant_id, document_id)
        previous = doc.processing_status

        if not force_reprocess and previous in (
            ProcessingStatus.PROCESSING.value,
            ProcessingStatus.COMPLETED.value,
        ):
            logger.info(
                "Processing skipped | doc=%s tenant=%s status=%s",
                document_id, tenant_id, previous,
            )
            return TransitionResult(document=doc, started=False, previous_status=previous)

        purged = await self._uow.chunks.delete_for_document(tenant_id, document_id)
        doc = await self._update(
            doc,
            processing_status=ProcessingStatus.PROCESSING.value,
            total_chunks=0,
            error_message=None,
        )
        logger.info(
            "Processing started | doc=%s tenant=%s from=%s purged=%d force=%s",
            document_id, tenant_id, previous, purged, force_reprocess,
        )
        return TransitionResult(document=doc, started=True, previous_status=previous, purged_chunks=purged)

    async def complete(self, tenant_id: UUID, document_id: UUID) -> DocumentRecord:
        doc = await self.get(tenant_id, document_id)
        if doc.processing_status != ProcessingStatus.PROCESSING.value:
            raise InvalidTransition(
                f"Cannot complete a document in status '{doc.processing_status}'",
                document_id=str(document_id),
            )

        embedded = await self._uow.chunks.count(tenant_id, document_id, embedded_only=True)
        if embedded < 1:
            raise InvalidTransition(
                "Cannot complete a document without an embedded chunk",
                document_id=str(document_id),
            )

        total = await self._uow.chunks.count(tenant_id, document_id)
        metadata = dict(doc.metadata)
        if "requeue_attempts" in metadata:
            metadata["requeue_attempts"] = 0

        return await self._update(
            doc,
            processing_status=ProcessingStatus.COMPLETED.value,
            total_chunks=total,
            processed_at=utcnow(),
            error_message=None,
            metadata=metadata,
        )

    async def fail(
        self,
        tenant_id:   UUID,
        document_id: UUID,
        reason:      str,
        *,
        kind:        FailureKind = FailureKind.PROCESSING,
    ) -> DocumentRecord:
        doc = await self.get(tenant_id, document_id)
        status = (
            ProcessingStatus.ERROR if kind == FailureKind.STORAGE else ProcessingStatus.FAILED
        )
        # the cached count is never trusted after a partial run
        total = await self._uow.chunks.count(tenant_id, document_id)

        logger.warning(
            "Processing %s | doc=%s tenant=%s reason=%s",
            status.value, document_id, tenant_id, reason,
        )
        return await self._update(
            doc,
            processing_status=status.value,
            total_chunks=total,
            error_message=reason[:MAX_ERROR_MESSAGE_CHARS],
        )

    async def reset_to_pending(
        self,
        tenant_id:      UUID,
        document_id:    UUID,
        *,
        metadata_patch: dict[str, Any] | None = None,
    ) -> tuple[DocumentRecord, int]:
        """Returns (document, purged chunk count)."""
        doc = await self.get(tenant_id, document_id)
        purged = await self._uow.chunks.delete_for_document(tenant_id, document_id)

        values: dict[str, Any] = {
            "processing_status": ProcessingStatus.PENDING.value,
            "total_chunks":      0,
            "processed_at":      None,
            "error_message":     None,
        }
        if metadata_patch:
            values["metadata"] = {**doc.metadata, **metadata_patch}

        doc = await self._update(doc, **values)
        return doc, purged

    async def mark_pending(self, tenant_id: UUID, document_id: UUID) -> DocumentRecord:
        """Back to pending with chunks kept; the next run purges them."""
        doc = await self.get(tenant_id, document_id)
        if doc.processing_status == ProcessingStatus.PENDING.value:
            return doc
        return await self._update(
            doc,
            processing_status=ProcessingStatus.PENDING.value,
            error_message=None,
        )

    async def refresh_chunk_count(self, tenant_id: UUID, document_id: UUID) -> DocumentRecord:
        """Re-derive total_chunks from the live chunk count; status unchanged."""
        doc = await self.get(tenant_id, document_id)
        total = await self._uow.chunks.count(tenant_id, document_id)
        if total == doc.total_chunks:
            return doc
        updated = await self._uow.documents.update(tenant_id, document_id, total_chunks=total)
        return updated or doc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _update(self, doc: DocumentRecord, **values: Any) -> DocumentRecord:
        updated = await self._uow.documents.update(doc.tenant_id, doc.id, **values)
        if updated is None:
            raise DocumentNotFound(f"Document {doc.id} not found", document_id=str(doc.id))
        if "processing_status" in values:
            self._emit(updated, previous=doc.processing_status)
        return updated

    def _emit(self, doc: DocumentRecord, previous: str | None) -> None:
        self._uow.hooks.emit(
            "document.status_changed",
            tenant_id=str(doc.tenant_id),
            document_id=str(doc.id),
            from_status=previous,
            to_status=doc.processing_status,
        )
