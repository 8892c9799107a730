"""
Document Processor — the processing step.

  1. registry.begin_processing       (no-op when already running / done)
  2. download from the primary bucket at document.file_path
  3. extract text                    (pypdf / python-docx / bs4 / decode)
  4. chunk                           (RecursiveCharacterTextSplitter)
  5. drop corrupted chunks           (they are never written)
  6. persist clean chunks            (commit)
  7. embed the document's chunks     (batched, per-chunk failures counted)
  8. registry.complete               (≥1 embedded chunk) or registry.fail

Failure mapping:
  FileNotFoundError / StorageError  → error   (bad plumbing)
  ExtractionError, nothing to chunk,
  all chunks corrupted, no embedding → failed  (bad file)

Each document is processed independently; nothing here aborts a batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from knowledge.core.errors import ExtractionError, StorageError
from knowledge.processing.chunking import Chunker
from knowledge.processing.corruption import detect_corruption
from knowledge.processing.embeddings import EmbeddingPipeline, EmbeddingReport
from knowledge.processing.extractor import TextExtractor
from knowledge.repositories.base import UnitOfWork
from knowledge.services.registry import DocumentRegistry, FailureKind

logger = logging.getLogger(__name__)


@dataclass
class ProcessingOutcome:
    document_id:      UUID
    status:           str           # completed | failed | error | skipped
    chunks_written:   int = 0
    chunks_discarded: int = 0
    reason:           str | None = None
    embedding:        EmbeddingReport = field(default_factory=EmbeddingReport)

    def as_dict(self) -> dict:
        return {
            "document_id":      str(self.document_id),
            "status":           self.status,
            "chunks_written":   self.chunks_written,
            "chunks_discarded": self.chunks_discarded,
            "reason":           self.reason,
            "embedding":        self.embedding.as_dict(),
        }


class DocumentProcessor:
    """
    Usage:
        processor = DocumentProcessor(uow, storage, embedder, bucket="documents")
        outcome   = await processor.process(tenant_id, document_id)
    """

    def __init__(
        self,
        uow:       UnitOfWork,
        storage,
        embedder,
        *,
        bucket:    str,
        extractor: TextExtractor | None = None,
        chunker:   Chunker | None = None,
        pipeline:  EmbeddingPipeline | None = None,
    ) -> None:
        self._uow       = uow
        self._storage   = storage
        self._bucket    = bucket
        self._registry  = DocumentRegistry(uow)
        self._extractor = extractor or TextExtractor()
        self._chunker   = chunker or Chunker()
        self._pipeline  = pipeline or EmbeddingPipeline(uow, embedder)

    async def process(
        self,
        tenant_id:       UUID,
        document_id:     UUID,
        *,
        force_reprocess: bool = False,
    ) -> ProcessingOutcome:
        logger.info("Processing | doc=%s tenant=%s force=%s", document_id, tenant_id, force_reprocess)

        # --- Phase 1: state transition ------------------------------------
        transition = await self._registry.begin_processing(
            tenant_id, document_id, force_reprocess=force_reprocess,
        )
        if not transition.started:
            return ProcessingOutcome(
                document_id=document_id,
                status="skipped",
                reason=f"document is {transition.previous_status}",
            )
        await self._uow.commit()
        doc = transition.document

        # --- Phase 2: download --------------------------------------------
        if not doc.file_path:
            return await self._fail(tenant_id, document_id, "Document has no storage path", FailureKind.STORAGE)
        try:
            data = await self._storage.get_object(self._bucket, doc.file_path)
        except (FileNotFoundError, StorageError) as exc:
            return await self._fail(tenant_id, document_id, f"Storage error: {exc}", FailureKind.STORAGE)

        # --- Phase 3: extraction ------------------------------------------
        try:
            extracted = self._extractor.extract(data, doc.mime_type, doc.file_name)
        except ExtractionError as exc:
            return await self._fail(tenant_id, document_id, f"Text extraction error: {exc}")

        # --- Phase 4: chunking + corruption filter ------------------------
        passages = self._chunker.split(extracted.text)
        clean = [p for p in passages if not detect_corruption(p).is_corrupted]
        discarded = len(passages) - len(clean)
        if discarded:
            logger.warning(
                "Corrupted chunks discarded | doc=%s discarded=%d kept=%d",
                document_id, discarded, len(clean),
            )
        if not clean:
            reason = "No chunks produced" if not passages else "All chunks were corrupted"
            outcome = await self._fail(tenant_id, document_id, reason)
            outcome.chunks_discarded = discarded
            return outcome

        # --- Phase 5: persist chunks --------------------------------------
        written = await self._uow.chunks.add_many(tenant_id, document_id, clean)
        await self._uow.commit()
        logger.info("Chunked | doc=%s chunks=%d", document_id, len(written))

        # --- Phase 6: embeddings ------------------------------------------
        report = await self._pipeline.embed_document(tenant_id, document_id)

        # --- Phase 7: finalization ----------------------------------------
        if report.processed < 1:
            outcome = await self._fail(tenant_id, document_id, "No chunk could be embedded")
            outcome.chunks_written, outcome.chunks_discarded, outcome.embedding = len(written), discarded, report
            return outcome

        await self._registry.complete(tenant_id, document_id)
        await self._uow.commit()

        logger.info(
            "Processing complete | doc=%s chunks=%d embedded=%d errors=%d",
            document_id, len(written), report.processed, report.errors,
        )
        return ProcessingOutcome(
            document_id=document_id,
            status="completed",
            chunks_written=len(written),
            chunks_discarded=discarded,
            embedding=report,
        )

    async def _fail(
        self,
        tenant_id:   UUID,
        document_id: UUID,
        reason:      str,
        kind:        FailureKind = FailureKind.PROCESSING,
    ) -> ProcessingOutcome:
        doc = await self._registry.fail(tenant_id, document_id, reason, kind=kind)
        await self._uow.commit()
        return ProcessingOutcome(document_id=document_id, status=doc.processing_status, reason=reason)
