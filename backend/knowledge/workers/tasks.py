"""
Celery Tasks

Task: process_document
  Runs DocumentProcessor for one document inside a fresh unit of work.
  Known failures (storage, extraction, corruption, embedding) are settled by
  the processor itself and end in `failed` / `error`.  Anything unexpected
  marks the document `error` and retries the task, so the retry is not
  skipped as "already processing".

Task: requeue_stale_documents  (beat, every 60 s)
  Requeues documents stuck in `pending`, with per-document back-off and the
  requeue attempt bound.

Task: run_nightly_crawl  (beat, 02:00 UTC)
  Runs the crawl scheduler over every tenant with an enabled domain.

All ids cross the broker as strings and are re-validated against the
database, tenant-scoped, inside the task.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from celery import Task

from knowledge.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Document processing
# ---------------------------------------------------------------------------

class _UnexpectedFailure(Exception):
    """Raised out of the async body when the task should be retried."""


@celery_app.task(
    name="knowledge.workers.tasks.process_document",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=540,
    time_limit=600,
)
def process_document(
    self: Task,
    *,
    document_id:     str,
    tenant_id:       str,
    force_reprocess: bool = False,
) -> dict[str, Any]:
    try:
        return run_async(
            _process_document_async(
                document_id=uuid.UUID(document_id),
                tenant_id=uuid.UUID(tenant_id),
                force_reprocess=force_reprocess,
            )
        )
    except _UnexpectedFailure as exc:
        raise self.retry(exc=exc.__cause__ or exc)


async def _process_document_async(
    document_id:     uuid.UUID,
    tenant_id:       uuid.UUID,
    force_reprocess: bool,
) -> dict[str, Any]:
    from knowledge.core.config import settings
    from knowledge.core.errors import DocumentNotFound
    from knowledge.db.session import unit_of_work
    from knowledge.processing.chunking import Chunker
    from knowledge.processing.embeddings import EmbeddingClient, EmbeddingPipeline
    from knowledge.services.processing import DocumentProcessor
    from knowledge.storage.s3 import S3StorageService

    embedder = EmbeddingClient.from_settings()
    try:
        async with unit_of_work() as uow:
            processor = DocumentProcessor(
                uow,
                S3StorageService(),
                embedder,
                bucket=settings.storage_bucket,
                chunker=Chunker.from_settings(),
                pipeline=EmbeddingPipeline.from_settings(uow, embedder),
            )
            outcome = await processor.process(tenant_id, document_id, force_reprocess=force_reprocess)
            return outcome.as_dict()
    except DocumentNotFound:
        logger.error("Document not found | doc=%s tenant=%s", document_id, tenant_id)
        return {"document_id": str(document_id), "status": "not_found"}
    except Exception as exc:
        logger.exception("Processing crashed | doc=%s tenant=%s", document_id, tenant_id)
        await _mark_error(document_id, tenant_id, f"Worker error: {exc}")
        raise _UnexpectedFailure(str(exc)) from exc


async def _mark_error(document_id: uuid.UUID, tenant_id: uuid.UUID, reason: str) -> None:
    from knowledge.db.session import unit_of_work
    from knowledge.services.registry import DocumentRegistry, FailureKind

    try:
        async with unit_of_work() as uow:
            await DocumentRegistry(uow).fail(tenant_id, document_id, reason, kind=FailureKind.STORAGE)
    except Exception:
        logger.exception("Could not record worker error | doc=%s tenant=%s", document_id, tenant_id)


# ---------------------------------------------------------------------------
# Stale-pending scanner, runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="knowledge.workers.tasks.requeue_stale_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stale_documents() -> dict[str, int]:
    return run_async(_requeue_stale_async())


async def _requeue_stale_async() -> dict[str, int]:
    from knowledge.db.session import unit_of_work
    from knowledge.services.requeue import RequeueOrchestrator
    from knowledge.storage.s3 import S3StorageService
    from knowledge.workers.publisher import TaskPublisher

    async with unit_of_work() as uow:
        orchestrator = RequeueOrchestrator.from_settings(uow, S3StorageService(), TaskPublisher())
        report = await orchestrator.requeue_stale()
    return report.as_dict()


# ---------------------------------------------------------------------------
# Nightly crawl, 02:00 UTC via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="knowledge.workers.tasks.run_nightly_crawl",
    acks_late=True,
    soft_time_limit=6 * 3600,
    time_limit=6 * 3600 + 60,
)
def run_nightly_crawl() -> dict[str, Any]:
    return run_async(_run_nightly_crawl_async())


async def _run_nightly_crawl_async() -> dict[str, Any]:
    from knowledge.core.config import settings
    from knowledge.crawl.crawler import tenant_crawl_scope
    from knowledge.db.session import unit_of_work
    from knowledge.services.crawl import CrawlScheduler
    from knowledge.storage.s3 import S3StorageService
    from knowledge.workers.publisher import TaskPublisher

    storage, publisher = S3StorageService(), TaskPublisher()
    async with unit_of_work() as uow:
        scheduler = CrawlScheduler(
            uow,
            tenant_timeout=settings.crawl_tenant_timeout_seconds,
            tenant_scope=tenant_crawl_scope(unit_of_work, storage, publisher),
            max_concurrent_tenants=settings.crawl_max_concurrent_tenants,
        )
        report = await scheduler.run_nightly()

    return {
        "processed_tenants": report.processed_tenants,
        "results": [
            {
                "tenant_id": str(r.tenant_id),
                "job_id":    str(r.job_id) if r.job_id else None,
                "status":    r.status,
                "error":     r.error,
            }
            for r in report.results
        ],
    }
