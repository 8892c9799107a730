"""
Crawl scheduling: domain registry, ingest job tracker, nightly scheduler.

Nightly run
───────────
    tenants with ≥1 enabled domain
        └─ eligible domains  (last_crawled_at is null or older than recrawl_hours)
            └─ IngestJob scheduled → running → completed | failed
                 crawl step wrapped in asyncio.wait_for(tenant_timeout)

One tenant failing or timing out is recorded in its own job and result;
the remaining tenants still run.  With a tenant scope, due tenants run
concurrently (at most max_concurrent_tenants at once), each in its own unit
of work, so a slow tenant does not hold up the others.  Without one they
share the caller's unit of work and run one after another.  Disabled
domains are never selected.

Jobs are immutable once terminal: any further mutation raises
JobAlreadyFinished.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncContextManager, Awaitable, Callable
from urllib.parse import urlsplit
from uuid import UUID

from knowledge.core.errors import (
    DomainNotFound,
    InvalidRequest,
    JobAlreadyFinished,
    JobNotFound,
    NoEnabledDomains,
)
from knowledge.repositories.base import DomainRecord, IngestJobRecord, UnitOfWork, utcnow
from knowledge.schemas.documents import ProcessingStatus

logger = logging.getLogger(__name__)

CRAWL_JOB_TYPE = "crawl_extract"
STATUS_WINDOW  = timedelta(minutes=10)

CrawlStep = Callable[[UUID, list[DomainRecord], IngestJobRecord], Awaitable[dict[str, Any]]]

# yields a fresh (unit of work, crawl step) pair for one tenant
TenantScope = Callable[[], AsyncContextManager[tuple[UnitOfWork, CrawlStep]]]


def normalize_domain(value: str) -> str:
    """
    'https://WWW.Example.com/about/' → 'www.example.com'

    Raises InvalidRequest when no usable host remains.
    """
    raw = (value or "").strip()
    if "://" not in raw:
        raw = f"//{raw}"
    try:
        host = urlsplit(raw).netloc.lower()
    except ValueError as exc:
        raise InvalidRequest(f"Invalid domain: {value!r}", field="domain") from exc

    host = host.rsplit("@", 1)[-1].rstrip("/.")
    if not host or " " in host or ("." not in host and not host.startswith("localhost")):
        raise InvalidRequest(f"Invalid domain: {value!r}", field="domain")
    return host


def is_due(domain: DomainRecord, now: datetime) -> bool:
    if not domain.is_enabled:
        return False
    if domain.last_crawled_at is None:
        return True
    return now - domain.last_crawled_at >= timedelta(hours=domain.recrawl_hours)


# ---------------------------------------------------------------------------
# Domain registry
# ---------------------------------------------------------------------------

class DomainRegistry:

    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow

    async def register(
        self,
        tenant_id:     UUID,
        domain:        str,
        *,
        crawl_depth:   int = 2,
        recrawl_hours: int = 168,
    ) -> DomainRecord:
        """Upsert on the normalized domain; re-registering re-enables it."""
        host = normalize_domain(domain)
        existing = await self._uow.domains.get(tenant_id, host)
        if existing is not None:
            record = await self._uow.domains.update(
                tenant_id, host,
                crawl_depth=crawl_depth,
                recrawl_hours=recrawl_hours,
                is_enabled=True,
            )
        else:
            record = await self._uow.domains.add(DomainRecord(
                tenant_id=tenant_id,
                domain=host,
                crawl_depth=crawl_depth,
                recrawl_hours=recrawl_hours,
            ))
        logger.info("Domain registered | tenant=%s domain=%s depth=%d", tenant_id, host, crawl_depth)
        return record

    async def get(self, tenant_id: UUID, domain: str) -> DomainRecord:
        host = normalize_domain(domain)
        record = await self._uow.domains.get(tenant_id, host)
        if record is None:
            raise DomainNotFound(f"Domain {host} is not registered", domain=host)
        return record

    async def set_enabled(self, tenant_id: UUID, domain: str, enabled: bool) -> DomainRecord:
        return await self.update(tenant_id, domain, is_enabled=enabled)

    async def update(self, tenant_id: UUID, domain: str, **values: Any) -> DomainRecord:
        record = await self.get(tenant_id, domain)
        values = {k: v for k, v in values.items() if v is not None}
        if not values:
            return record
        return await self._uow.domains.update(tenant_id, record.domain, **values)

    async def list(self, tenant_id: UUID, *, enabled_only: bool = False) -> list[DomainRecord]:
        return await self._uow.domains.list(tenant_id, enabled_only=enabled_only)

    async def remove(self, tenant_id: UUID, domain: str) -> None:
        host = normalize_domain(domain)
        if not await self._uow.domains.delete(tenant_id, host):
            raise DomainNotFound(f"Domain {host} is not registered", domain=host)
        logger.info("Domain removed | tenant=%s domain=%s", tenant_id, host)


# ---------------------------------------------------------------------------
# Ingest job tracker
# ---------------------------------------------------------------------------

class IngestJobTracker:

    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow

    async def create_scheduled(
        self,
        tenant_id:  UUID,
        *,
        trigger:    str,
        started_by: str | None = None,
        now:        datetime | None = None,
    ) -> IngestJobRecord:
        now = now or utcnow()
        job = await self._uow.jobs.add(IngestJobRecord(
            tenant_id=tenant_id,
            job_type=CRAWL_JOB_TYPE,
            status="scheduled",
            stats={"trigger": trigger, "scheduled_at": now.isoformat()},
            started_by=started_by,
            created_at=now,
        ))
        logger.info("Job scheduled | job=%s tenant=%s trigger=%s", job.id, tenant_id, trigger)
        return job

    async def get(self, tenant_id: UUID, job_id: UUID) -> IngestJobRecord:
        job = await self._uow.jobs.get(tenant_id, job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found", job_id=str(job_id))
        return job

    async def latest(self, tenant_id: UUID) -> IngestJobRecord | None:
        jobs = await self._uow.jobs.list(tenant_id, limit=1)
        return jobs[0] if jobs else None

    async def mark_running(self, tenant_id: UUID, job_id: UUID) -> IngestJobRecord:
        job = await self._mutable(tenant_id, job_id)
        return await self._uow.jobs.update(tenant_id, job.id, status="running", started_at=utcnow())

    async def complete(self, tenant_id: UUID, job_id: UUID, stats: dict[str, Any] | None = None) -> IngestJobRecord:
        return await self._finish(tenant_id, job_id, "completed", stats or {})

    async def fail(
        self,
        tenant_id: UUID,
        job_id:    UUID,
        error:     str,
        stats:     dict[str, Any] | None = None,
    ) -> IngestJobRecord:
        return await self._finish(tenant_id, job_id, "failed", {**(stats or {}), "error": error})

    async def _finish(self, tenant_id: UUID, job_id: UUID, status: str, stats: dict[str, Any]) -> IngestJobRecord:
        job = await self._mutable(tenant_id, job_id)
        finished = await self._uow.jobs.update(
            tenant_id, job.id,
            status=status,
            stats={**job.stats, **stats},
            finished_at=utcnow(),
        )
        self._uow.hooks.emit(
            "ingest_job.finished",
            tenant_id=str(tenant_id),
            job_id=str(job_id),
            status=status,
        )
        logger.info("Job %s | job=%s tenant=%s", status, job_id, tenant_id)
        return finished

    async def _mutable(self, tenant_id: UUID, job_id: UUID) -> IngestJobRecord:
        job = await self.get(tenant_id, job_id)
        if job.is_terminal:
            raise JobAlreadyFinished(
                f"Job {job_id} is already {job.status}",
                job_id=str(job_id),
                status=job.status,
            )
        return job


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

@dataclass
class TenantCrawlResult:
    tenant_id: UUID
    status:    str                  # completed | failed | timeout | not_due
    job_id:    UUID | None = None
    domains:   int = 0
    error:     str | None = None
    stats:     dict[str, Any] = field(default_factory=dict)


@dataclass
class NightlyCrawlReport:
    processed_tenants: int = 0
    results:           list[TenantCrawlResult] = field(default_factory=list)


@dataclass
class CrawlStatus:
    state:   str                    # idle | running | success | failed
    domains: int
    pages:   int
    chunks:  int
    message: str


class CrawlScheduler:
    """
    Usage:
        scheduler = CrawlScheduler(uow, crawler.crawl_tenant, tenant_timeout=900)
        report    = await scheduler.run_nightly()

    Pass `tenant_scope` to run the nightly tenants concurrently; see
    knowledge.crawl.crawler.tenant_crawl_scope.

    `crawl_step(tenant_id, domains, job)` returns the job stats; a result
    with errors and no page handled marks the job failed.
    It may be omitted when the scheduler is only used for crawl_status.
    """

    def __init__(
        self,
        uow:                    UnitOfWork,
        crawl_step:             CrawlStep | None = None,
        *,
        tenant_timeout:         float = 900.0,
        tenant_scope:           TenantScope | None = None,
        max_concurrent_tenants: int = 4,
    ) -> None:
        if max_concurrent_tenants < 1:
            raise ValueError("max_concurrent_tenants must be >= 1")
        self._uow            = uow
        self._crawl_step     = crawl_step
        self._tenant_timeout = tenant_timeout
        self._tenant_scope   = tenant_scope
        self._max_concurrent = max_concurrent_tenants if tenant_scope else 1
        self._jobs           = IngestJobTracker(uow)
        self._domains        = DomainRegistry(uow)

    async def run_nightly(self, now: datetime | None = None) -> NightlyCrawlReport:
        if self._tenant_scope is None:
            self._require_step()
        now = now or utcnow()
        report = NightlyCrawlReport()
        due_runs: list[tuple[int, UUID, list[DomainRecord]]] = []

        for tenant_id in await self._uow.domains.tenants_with_enabled_domains():
            try:
                enabled = await self._uow.domains.list(tenant_id, enabled_only=True)
            except Exception as exc:
                logger.exception("Nightly domain lookup failed | tenant=%s", tenant_id)
                await self._uow.rollback()
                report.results.append(TenantCrawlResult(tenant_id=tenant_id, status="failed", error=str(exc)))
                continue

            due = [d for d in enabled if is_due(d, now)]
            if not due:
                report.results.append(TenantCrawlResult(tenant_id=tenant_id, status="not_due"))
                continue

            report.processed_tenants += 1
            due_runs.append((len(report.results), tenant_id, due))
            report.results.append(TenantCrawlResult(tenant_id=tenant_id, status="failed", domains=len(due)))

        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def run(tenant_id: UUID, due: list[DomainRecord]) -> TenantCrawlResult:
            async with semaphore:
                return await self._run_nightly_tenant(tenant_id, due, now)

        outcomes = await asyncio.gather(*(run(tenant_id, due) for _, tenant_id, due in due_runs))
        for (slot, _, _), result in zip(due_runs, outcomes):
            report.results[slot] = result

        logger.info(
            "Nightly crawl | processed_tenants=%d results=%d",
            report.processed_tenants, len(report.results),
        )
        return report

    async def trigger_manual(
        self,
        tenant_id:  UUID,
        *,
        domain:     str | None = None,
        started_by: str | None = None,
    ) -> TenantCrawlResult:
        self._require_step()
        if domain is not None:
            record = await self._domains.get(tenant_id, domain)
            domains = [record] if record.is_enabled else []
        else:
            domains = await self._uow.domains.list(tenant_id, enabled_only=True)

        if not domains:
            raise NoEnabledDomains(
                "No enabled domain to crawl",
                tenant_id=str(tenant_id),
                domain=domain,
            )
        return await self._run_tenant(
            tenant_id, domains, trigger="manual", started_by=started_by, now=utcnow(),
        )

    async def crawl_status(self, tenant_id: UUID, now: datetime | None = None) -> CrawlStatus:
        now = now or utcnow()
        cutoff = now - STATUS_WINDOW

        domains = await self._uow.domains.list(tenant_id, enabled_only=True)
        pages = [
            d for d in await self._uow.documents.list(tenant_id, document_type="web_crawl")
            if d.updated_at >= cutoff
        ]
        chunks = await self._uow.chunks.count_for_documents(tenant_id, [d.id for d in pages])
        statuses = {d.processing_status for d in pages}

        if statuses & {ProcessingStatus.PROCESSING.value, ProcessingStatus.PENDING.value}:
            state, message = "running", f"Processing {len(pages)} crawled pages"
        elif statuses & {ProcessingStatus.FAILED.value, ProcessingStatus.ERROR.value}:
            state, message = "failed", "Some crawled pages could not be processed"
        elif pages and chunks > 0:
            state, message = "success", f"Crawled {len(pages)} pages into {chunks} chunks"
        else:
            latest = await self._jobs.latest(tenant_id)
            if latest is not None and latest.status in ("scheduled", "running"):
                state, message = "running", f"Crawl job {latest.status}"
            else:
                state, message = "idle", "No recent crawl activity"

        return CrawlStatus(
            state=state,
            domains=len(domains),
            pages=len(pages),
            chunks=chunks,
            message=message,
        )

    # ------------------------------------------------------------------
    # Per-tenant run
    # ------------------------------------------------------------------

    async def _run_nightly_tenant(
        self,
        tenant_id: UUID,
        due:       list[DomainRecord],
        now:       datetime,
    ) -> TenantCrawlResult:
        if self._tenant_scope is None:
            return await self._run_tenant(
                tenant_id, due, trigger="nightly_cron", started_by="nightly_cron", now=now,
            )
        try:
            async with self._tenant_scope() as (uow, crawl_step):
                scoped = CrawlScheduler(uow, crawl_step, tenant_timeout=self._tenant_timeout)
                return await scoped._run_tenant(
                    tenant_id, due, trigger="nightly_cron", started_by="nightly_cron", now=now,
                )
        except Exception as exc:
            logger.exception("Tenant crawl scope failed | tenant=%s", tenant_id)
            return TenantCrawlResult(tenant_id=tenant_id, status="failed", domains=len(due), error=str(exc))

    async def _run_tenant(
        self,
        tenant_id:  UUID,
        domains:    list[DomainRecord],
        *,
        trigger:    str,
        started_by: str | None,
        now:        datetime,
    ) -> TenantCrawlResult:
        result = TenantCrawlResult(tenant_id=tenant_id, status="failed", domains=len(domains))
        try:
            job = await self._jobs.create_scheduled(tenant_id, trigger=trigger, started_by=started_by, now=now)
            result.job_id = job.id
            job = await self._jobs.mark_running(tenant_id, job.id)
            await self._uow.commit()
        except Exception as exc:
            logger.exception("Job creation failed | tenant=%s", tenant_id)
            await self._uow.rollback()
            result.error = str(exc)
            return result

        try:
            stats = await asyncio.wait_for(
                self._crawl_step(tenant_id, domains, job),
                timeout=self._tenant_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Crawl timed out | tenant=%s job=%s timeout=%.0fs", tenant_id, job.id, self._tenant_timeout)
            result.status = "timeout"
            result.error = f"Timed out after {self._tenant_timeout:.0f}s"
            await self._record_failure(tenant_id, job.id, result.error)
            return result
        except Exception as exc:
            logger.exception("Crawl failed | tenant=%s job=%s", tenant_id, job.id)
            result.error = str(exc)
            await self._record_failure(tenant_id, job.id, result.error)
            return result

        stats = dict(stats or {})
        result.stats = stats
        handled = stats.get("pages_queued", 0) + stats.get("pages_unchanged", 0)
        try:
            for domain in domains:
                await self._uow.domains.update(tenant_id, domain.domain, last_crawled_at=now)
            if stats.get("errors", 0) and not handled:
                result.error = f"{stats['errors']} page errors, no page crawled"
                await self._jobs.fail(tenant_id, job.id, result.error, stats)
            else:
                await self._jobs.complete(tenant_id, job.id, stats)
                result.status = "completed"
            await self._uow.commit()
        except Exception as exc:
            logger.exception("Job finalization failed | tenant=%s job=%s", tenant_id, job.id)
            await self._uow.rollback()
            result.status, result.error = "failed", str(exc)
        return result

    def _require_step(self) -> None:
        if self._crawl_step is None:
            raise RuntimeError("CrawlScheduler was built without a crawl step")

    async def _record_failure(self, tenant_id: UUID, job_id: UUID, error: str) -> None:
        await self._uow.rollback()
        try:
            await self._jobs.fail(tenant_id, job_id, error)
            await self._uow.commit()
        except Exception:
            logger.exception("Could not mark job failed | tenant=%s job=%s", tenant_id, job_id)
            await self._uow.rollback()
