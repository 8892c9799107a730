"""
Requeue / Path-Repair Orchestrator.

requeue() runs five steps; each is independently fault-tolerant, records
its outcome in `steps` and never prevents the ones after it:

    1. delete_chunks   purge every chunk of the document
    2. reset_status    pending, total_chunks=0, processed_at cleared
    3. path_repair     move the source object to its canonical key
    4. metadata        stamp request id / time / user / outcome / attempts
    5. trigger         publish the processing task

Path repair
───────────
Canonical key: tenant/<tenant_id>/uploads/<file_name> in the primary bucket.

    recorded path == canonical                → already_canonical
    canonical object already exists           → relinked   (path updated)
    found at a candidate location             → repaired   (copy, path committed, then old deleted)
    found nowhere                             → not_found  (processing still triggered)

Candidates are the recorded path in the primary bucket and in each legacy
bucket, then the older layouts org/<tenant>/uploads/<name> and
<tenant>/<name> in the same buckets.

Retry bound
───────────
At most `requeue_max_attempts` requeues per document between successful
completions.  The counter lives in metadata.requeue_attempts and is reset by
DocumentRegistry.complete().  The stale-pending scanner waits
backoff_base * 2**attempts after the last touch before requeueing again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from knowledge.core.errors import RequeueLimitExceeded
from knowledge.repositories.base import AuditEntry, DocumentRecord, UnitOfWork, utcnow
from knowledge.schemas.documents import ProcessingStatus
from knowledge.services.registry import DocumentRegistry, FailureKind
from knowledge.storage.s3 import canonical_key, sanitize_file_name

logger = logging.getLogger(__name__)


@dataclass
class RequeueResult:
    request_id:           str
    document_id:          UUID
    repaired:             bool
    storage_path:         str | None
    expected_path:        str
    processing_triggered: bool
    steps:                dict[str, str] = field(default_factory=dict)


@dataclass
class ReprocessResult:
    document_id:          UUID
    processing_status:    str
    processing_triggered: bool
    purged_chunks:        int
    message:              str


@dataclass
class StaleScanReport:
    scanned:  int = 0
    requeued: int = 0
    deferred: int = 0
    failed:   int = 0
    errors:   int = 0

    def as_dict(self) -> dict:
        return {
            "scanned":  self.scanned,
            "requeued": self.requeued,
            "deferred": self.deferred,
            "failed":   self.failed,
            "errors":   self.errors,
        }


def requeue_attempts(doc: DocumentRecord) -> int:
    try:
        return int((doc.metadata or {}).get("requeue_attempts", 0))
    except (TypeError, ValueError):
        return 0


class RequeueOrchestrator:
    """
    Usage:
        orchestrator = RequeueOrchestrator(
            uow, storage, publisher,
            primary_bucket="documents", legacy_buckets=["ai_documents"],
        )
        result = await orchestrator.requeue(tenant_id, document_id, user_id="u-1")
    """

    def __init__(
        self,
        uow:            UnitOfWork,
        storage,
        publisher,
        *,
        primary_bucket: str,
        legacy_buckets: list[str] | None = None,
        max_attempts:   int = 3,
        backoff_base:   float = 60.0,
        stale_minutes:  int = 5,
        scan_batch:     int = 50,
    ) -> None:
        self._uow            = uow
        self._storage        = storage
        self._publisher      = publisher
        self._registry       = DocumentRegistry(uow)
        self._primary_bucket = primary_bucket
        self._legacy_buckets = [b for b in (legacy_buckets or []) if b and b != primary_bucket]
        self._max_attempts   = max_attempts
        self._backoff_base   = backoff_base
        self._stale_minutes  = stale_minutes
        self._scan_batch     = scan_batch

    @classmethod
    def from_settings(cls, uow: UnitOfWork, storage, publisher) -> "RequeueOrchestrator":
        from knowledge.core.config import settings

        return cls(
            uow,
            storage,
            publisher,
            primary_bucket=settings.storage_bucket,
            legacy_buckets=settings.storage_legacy_buckets,
            max_attempts=settings.requeue_max_attempts,
            backoff_base=settings.requeue_backoff_base_seconds,
            stale_minutes=settings.stale_pending_minutes,
            scan_batch=settings.stale_scan_batch_size,
        )

    # ------------------------------------------------------------------
    # Requeue
    # ------------------------------------------------------------------

    async def requeue(
        self,
        tenant_id:   UUID,
        document_id: UUID,
        *,
        user_id:     str | None = None,
    ) -> RequeueResult:
        doc = await self._registry.get(tenant_id, document_id)
        attempts = requeue_attempts(doc)
        if attempts >= self._max_attempts:
            raise RequeueLimitExceeded(
                f"Document {document_id} was requeued {attempts} times without completing",
                document_id=str(document_id),
                attempts=attempts,
                max_attempts=self._max_attempts,
            )

        request_id = str(uuid4())
        expected   = canonical_key(tenant_id, doc.file_name)
        steps: dict[str, str] = {}
        logger.info("Requeue | doc=%s tenant=%s request=%s", document_id, tenant_id, request_id)

        # --- Step 1: purge chunks -----------------------------------------
        try:
            removed = await self._uow.chunks.delete_for_document(tenant_id, document_id)
            await self._uow.commit()
            steps["delete_chunks"] = f"deleted {removed}"
        except Exception as exc:
            await self._step_failed(steps, "delete_chunks", exc, document_id)

        # --- Step 2: reset status -----------------------------------------
        try:
            await self._registry.reset_to_pending(tenant_id, document_id)
            await self._uow.commit()
            steps["reset_status"] = "pending"
        except Exception as exc:
            await self._step_failed(steps, "reset_status", exc, document_id)

        # --- Step 3: path repair ------------------------------------------
        storage_path = doc.file_path
        try:
            outcome, storage_path = await self._repair_path(tenant_id, doc, expected)
            steps["path_repair"] = outcome
        except Exception as exc:
            await self._step_failed(steps, "path_repair", exc, document_id)

        # --- Step 4: metadata stamp ---------------------------------------
        try:
            current = await self._registry.get(tenant_id, document_id)
            await self._uow.documents.update(
                tenant_id,
                document_id,
                metadata={
                    **current.metadata,
                    "last_requeue_request_id": request_id,
                    "last_requeue_time":       utcnow().isoformat(),
                    "last_requeue_user_id":    user_id,
                    "path_repair":             steps.get("path_repair", "failed"),
                    "requeue_attempts":        attempts + 1,
                },
            )
            await self._uow.audit.add(AuditEntry(
                tenant_id=tenant_id,
                user_id=user_id,
                action="requeue",
                resource=f"document:{document_id}",
                metadata={"request_id": request_id, "steps": dict(steps), "attempt": attempts + 1},
            ))
            await self._uow.commit()
            steps["metadata"] = "stamped"
        except Exception as exc:
            await self._step_failed(steps, "metadata", exc, document_id)

        # --- Step 5: trigger processing -----------------------------------
        triggered = False
        try:
            await self._publisher.publish_processing(tenant_id, document_id, force_reprocess=False)
            triggered = True
            steps["trigger"] = "queued"
        except Exception as exc:
            await self._step_failed(steps, "trigger", exc, document_id)

        logger.info(
            "Requeue done | doc=%s request=%s path=%s triggered=%s",
            document_id, request_id, steps.get("path_repair"), triggered,
        )
        return RequeueResult(
            request_id=request_id,
            document_id=document_id,
            repaired=steps.get("path_repair") in ("repaired", "relinked"),
            storage_path=storage_path,
            expected_path=expected,
            processing_triggered=triggered,
            steps=steps,
        )

    async def _repair_path(
        self,
        tenant_id: UUID,
        doc:       DocumentRecord,
        expected:  str,
    ) -> tuple[str, str | None]:
        """Returns (outcome, storage path after repair)."""
        if doc.file_path == expected:
            return "already_canonical", expected

        if await self._storage.object_exists(self._primary_bucket, expected):
            await self._set_path(tenant_id, doc.id, expected)
            logger.info("Path relinked | doc=%s path=%s", doc.id, expected)
            return "relinked", expected

        for bucket, key in self._candidates(tenant_id, doc):
            if not await self._storage.object_exists(bucket, key):
                continue
            # the old object goes only once the new path is committed
            await self._storage.copy_object(bucket, key, self._primary_bucket, expected)
            await self._set_path(tenant_id, doc.id, expected)
            logger.info(
                "Path repaired | doc=%s from=%s/%s to=%s/%s",
                doc.id, bucket, key, self._primary_bucket, expected,
            )
            try:
                await self._storage.delete_object(bucket, key)
            except Exception:
                logger.exception(
                    "Old object left in place | doc=%s bucket=%s key=%s", doc.id, bucket, key,
                )
            return "repaired", expected

        logger.warning("Source object not found | doc=%s recorded=%s", doc.id, doc.file_path)
        return "not_found", doc.file_path

    def _candidates(self, tenant_id: UUID, doc: DocumentRecord) -> list[tuple[str, str]]:
        name = sanitize_file_name(doc.file_name)
        keys = [k for k in (doc.file_path, f"org/{tenant_id}/uploads/{name}", f"{tenant_id}/{name}") if k]

        seen, candidates = set(), []
        for key in dict.fromkeys(keys):
            for bucket in (self._primary_bucket, *self._legacy_buckets):
                if (bucket, key) not in seen:
                    seen.add((bucket, key))
                    candidates.append((bucket, key))
        return candidates

    async def _set_path(self, tenant_id: UUID, document_id: UUID, path: str) -> None:
        await self._uow.documents.update(tenant_id, document_id, file_path=path)
        await self._uow.commit()

    async def _step_failed(self, steps: dict[str, str], step: str, exc: Exception, document_id: UUID) -> None:
        logger.exception("Requeue step failed | doc=%s step=%s", document_id, step)
        await self._uow.rollback()
        steps[step] = f"failed: {exc}"

    # ------------------------------------------------------------------
    # Reprocess
    # ------------------------------------------------------------------

    async def reprocess(
        self,
        tenant_id:       UUID,
        document_id:     UUID,
        *,
        force_reprocess: bool = False,
        user_id:         str | None = None,
    ) -> ReprocessResult:
        doc = await self._registry.get(tenant_id, document_id)

        previous = doc.processing_status
        purged = 0
        if force_reprocess:
            doc, purged = await self._registry.reset_to_pending(tenant_id, document_id)
        elif previous != ProcessingStatus.PROCESSING.value:
            doc = await self._registry.mark_pending(tenant_id, document_id)

        await self._uow.audit.add(AuditEntry(
            tenant_id=tenant_id,
            user_id=user_id,
            action="force_reprocess" if force_reprocess else "reprocess",
            resource=f"document:{document_id}",
            metadata={"purged_chunks": purged, "previous_status": previous},
        ))
        await self._uow.commit()

        try:
            await self._publisher.publish_processing(
                tenant_id, document_id, force_reprocess=force_reprocess,
            )
        except Exception as exc:
            logger.exception("Reprocess publish failed | doc=%s tenant=%s", document_id, tenant_id)
            doc = await self._registry.fail(
                tenant_id, document_id, f"Could not queue processing: {exc}", kind=FailureKind.STORAGE,
            )
            await self._uow.commit()
            return ReprocessResult(
                document_id=document_id,
                processing_status=doc.processing_status,
                processing_triggered=False,
                purged_chunks=purged,
                message=f"Processing could not be queued: {exc}",
            )

        logger.info(
            "Reprocess queued | doc=%s tenant=%s force=%s purged=%d",
            document_id, tenant_id, force_reprocess, purged,
        )
        return ReprocessResult(
            document_id=document_id,
            processing_status=doc.processing_status,
            processing_triggered=True,
            purged_chunks=purged,
            message="Processing queued",
        )

    # ------------------------------------------------------------------
    # Stale-pending scanner
    # ------------------------------------------------------------------

    async def requeue_stale(self, now: datetime | None = None) -> StaleScanReport:
        now = now or utcnow()
        report = StaleScanReport()
        cutoff = now - timedelta(minutes=self._stale_minutes)

        for doc in await self._uow.documents.list_stale_pending(cutoff, self._scan_batch):
            report.scanned += 1
            attempts = requeue_attempts(doc)
            try:
                if attempts >= self._max_attempts:
                    await self._registry.fail(
                        doc.tenant_id, doc.id,
                        f"Requeue limit exceeded after {attempts} attempts",
                    )
                    await self._uow.commit()
                    report.failed += 1
                    continue

                backoff = timedelta(seconds=self._backoff_base * 2 ** attempts)
                if attempts and doc.updated_at + backoff > now:
                    report.deferred += 1
                    continue

                await self.requeue(doc.tenant_id, doc.id)
                report.requeued += 1
            except Exception:
                logger.exception("Stale requeue failed | doc=%s tenant=%s", doc.id, doc.tenant_id)
                await self._uow.rollback()
                report.errors += 1

        logger.info(
            "Stale scan | scanned=%d requeued=%d deferred=%d failed=%d errors=%d",
            report.scanned, report.requeued, report.deferred, report.failed, report.errors,
        )
        return report
