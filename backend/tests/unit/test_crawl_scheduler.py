"""
Unit Tests — Domain registry, ingest job tracker, crawl scheduler
═════════════════════════════════════════════════════════════════
The crawl step is replaced by plain async functions; the crawler itself is
covered in test_crawler.py.

Coverage targets:
  ✅ domain normalisation and upsert; re-registering re-enables
  ✅ jobs: scheduled → running → completed | failed, immutable once terminal
  ✅ nightly run: only tenants with enabled + due domains get a job
  ✅ one tenant timing out or raising never stops the others
  ✅ with a tenant scope, tenants run concurrently (bounded), each in its own
     unit of work, so a slow tenant does not hold up the rest
  ✅ errors with no page handled → job failed
  ✅ manual trigger: no enabled domain → NoEnabledDomains
  ✅ crawl status derived from recent web_crawl documents
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest

from knowledge.core.errors import (
    DomainNotFound,
    InvalidRequest,
    JobAlreadyFinished,
    JobNotFound,
    NoEnabledDomains,
)
from knowledge.repositories.base import utcnow
from knowledge.repositories.memory import InMemoryUnitOfWork
from knowledge.services.crawl import (
    CrawlScheduler,
    DomainRegistry,
    IngestJobTracker,
    is_due,
    normalize_domain,
)

OK_STATS = {"pages_queued": 2, "pages_processed": 2, "pages_unchanged": 0, "errors": 0}


async def _ok_step(tenant_id, domains, job):
    return dict(OK_STATS)


# ─────────────────────────────────────────────────────────────────────────────
# Domains
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.crawl
class TestDomainRegistry:

    @pytest.mark.parametrize("raw, expected", [
        ("https://WWW.Example.com/about/", "www.example.com"),
        ("example.com", "example.com"),
        ("http://user@example.org.", "example.org"),
        ("localhost:8000", "localhost:8000"),
    ])
    def test_normalize_domain(self, raw, expected):
        assert normalize_domain(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", "not a domain", "intranet"])
    def test_invalid_domain_rejected(self, raw):
        with pytest.raises(InvalidRequest):
            normalize_domain(raw)

    async def test_register_is_an_upsert(self, uow, test_tenant_id):
        registry = DomainRegistry(uow)

        await registry.register(test_tenant_id, "https://example.com/", crawl_depth=1)
        await registry.set_enabled(test_tenant_id, "example.com", False)
        record = await registry.register(test_tenant_id, "EXAMPLE.com", crawl_depth=3)

        assert record.domain == "example.com"
        assert record.crawl_depth == 3
        assert record.is_enabled is True
        assert len(await registry.list(test_tenant_id)) == 1

    async def test_update_ignores_unset_fields(self, uow, test_tenant_id):
        registry = DomainRegistry(uow)
        await registry.register(test_tenant_id, "example.com", crawl_depth=2, recrawl_hours=24)

        record = await registry.update(test_tenant_id, "example.com", crawl_depth=None, recrawl_hours=48)

        assert record.crawl_depth == 2
        assert record.recrawl_hours == 48

    async def test_unknown_domain(self, uow, test_tenant_id):
        registry = DomainRegistry(uow)

        with pytest.raises(DomainNotFound):
            await registry.get(test_tenant_id, "missing.org")
        with pytest.raises(DomainNotFound):
            await registry.remove(test_tenant_id, "missing.org")

    async def test_domains_are_tenant_scoped(self, uow, test_tenant_id, other_tenant_id):
        registry = DomainRegistry(uow)
        await registry.register(test_tenant_id, "example.com")

        assert await registry.list(other_tenant_id) == []
        with pytest.raises(DomainNotFound):
            await registry.get(other_tenant_id, "example.com")

    async def test_is_due(self, uow, test_tenant_id):
        now = utcnow()
        record = await DomainRegistry(uow).register(test_tenant_id, "example.com", recrawl_hours=24)

        assert is_due(record, now)
        record.last_crawled_at = now - timedelta(hours=2)
        assert not is_due(record, now)
        record.last_crawled_at = now - timedelta(hours=24)
        assert is_due(record, now)
        record.is_enabled = False
        assert not is_due(record, now)


# ─────────────────────────────────────────────────────────────────────────────
# Jobs
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.crawl
class TestIngestJobTracker:

    async def test_lifecycle(self, uow, test_tenant_id):
        tracker = IngestJobTracker(uow)

        job = await tracker.create_scheduled(test_tenant_id, trigger="manual", started_by="u-1")
        assert job.status == "scheduled"
        assert job.stats["trigger"] == "manual"

        job = await tracker.mark_running(test_tenant_id, job.id)
        assert job.status == "running"
        assert job.started_at is not None

        job = await tracker.complete(test_tenant_id, job.id, {"pages_queued": 3})
        assert job.status == "completed"
        assert job.finished_at is not None
        assert job.stats["pages_queued"] == 3
        assert job.stats["trigger"] == "manual"
        assert [e.name for e in uow.hooks.pending] == ["ingest_job.finished"]

    async def test_terminal_job_is_immutable(self, uow, test_tenant_id):
        tracker = IngestJobTracker(uow)
        job = await tracker.create_scheduled(test_tenant_id, trigger="manual")
        await tracker.fail(test_tenant_id, job.id, "boom")

        with pytest.raises(JobAlreadyFinished):
            await tracker.complete(test_tenant_id, job.id)
        with pytest.raises(JobAlreadyFinished):
            await tracker.mark_running(test_tenant_id, job.id)
        with pytest.raises(JobAlreadyFinished):
            await tracker.fail(test_tenant_id, job.id, "again")

        stored = await tracker.get(test_tenant_id, job.id)
        assert stored.status == "failed"
        assert stored.stats["error"] == "boom"

    async def test_unknown_job(self, uow, test_tenant_id, other_tenant_id):
        tracker = IngestJobTracker(uow)
        job = await tracker.create_scheduled(test_tenant_id, trigger="manual")

        with pytest.raises(JobNotFound):
            await tracker.get(test_tenant_id, uuid.uuid4())
        with pytest.raises(JobNotFound):
            await tracker.get(other_tenant_id, job.id)


# ─────────────────────────────────────────────────────────────────────────────
# Scheduler
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.crawl
class TestNightlyRun:

    async def _three_tenants(self, uow):
        """Two tenants with an enabled domain, one with only a disabled domain."""
        registry = DomainRegistry(uow)
        t1, t2, t3 = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        await registry.register(t1, "one.example.com")
        await registry.register(t2, "two.example.com")
        await registry.register(t3, "three.example.com")
        await registry.set_enabled(t3, "three.example.com", False)
        return t1, t2, t3

    async def test_only_tenants_with_enabled_domains_get_jobs(self, uow):
        t1, t2, t3 = await self._three_tenants(uow)

        report = await CrawlScheduler(uow, _ok_step).run_nightly()

        assert report.processed_tenants == 2
        assert {r.tenant_id for r in report.results} == {t1, t2}
        assert all(r.status == "completed" for r in report.results)
        for tenant_id in (t1, t2):
            [job] = await uow.jobs.list(tenant_id)
            assert job.status == "completed"
            assert job.started_by == "nightly_cron"
            assert job.stats["trigger"] == "nightly_cron"
            assert job.stats["pages_queued"] == 2
        assert await uow.jobs.list(t3) == []

    async def test_crawled_domains_are_stamped(self, uow):
        t1, _, _ = await self._three_tenants(uow)
        now = utcnow()

        await CrawlScheduler(uow, _ok_step).run_nightly(now)

        [domain] = await uow.domains.list(t1)
        assert domain.last_crawled_at == now

    async def test_timeout_is_isolated(self, uow):
        t1, t2, _ = await self._three_tenants(uow)

        async def step(tenant_id, domains, job):
            if tenant_id == t1:
                await asyncio.sleep(10)
            return dict(OK_STATS)

        report = await CrawlScheduler(uow, step, tenant_timeout=0.05).run_nightly()

        results = {r.tenant_id: r for r in report.results}
        assert results[t1].status == "timeout"
        assert results[t2].status == "completed"
        [job] = await uow.jobs.list(t1)
        assert job.status == "failed"
        assert "Timed out" in job.stats["error"]

    async def test_exception_is_isolated(self, uow):
        t1, t2, _ = await self._three_tenants(uow)

        async def step(tenant_id, domains, job):
            if tenant_id == t2:
                raise RuntimeError("crawler exploded")
            return dict(OK_STATS)

        report = await CrawlScheduler(uow, step).run_nightly()

        results = {r.tenant_id: r for r in report.results}
        assert results[t1].status == "completed"
        assert results[t2].status == "failed"
        assert results[t2].error == "crawler exploded"
        [job] = await uow.jobs.list(t2)
        assert job.status == "failed"

    async def test_errors_without_pages_fail_the_job(self, uow):
        t1, _, _ = await self._three_tenants(uow)

        async def step(tenant_id, domains, job):
            return {"pages_queued": 0, "pages_processed": 0, "pages_unchanged": 0, "errors": 4}

        report = await CrawlScheduler(uow, step).run_nightly()

        assert all(r.status == "failed" for r in report.results)
        [job] = await uow.jobs.list(t1)
        assert job.status == "failed"
        assert job.stats["errors"] == 4

    async def test_recently_crawled_tenant_not_due(self, uow, test_tenant_id):
        now = utcnow()
        await DomainRegistry(uow).register(test_tenant_id, "example.com", recrawl_hours=168)
        await uow.domains.update(test_tenant_id, "example.com", last_crawled_at=now - timedelta(hours=1))

        report = await CrawlScheduler(uow, _ok_step).run_nightly(now)

        assert report.processed_tenants == 0
        assert [r.status for r in report.results] == ["not_due"]
        assert await uow.jobs.list(test_tenant_id) == []

    async def test_scheduler_without_step_cannot_run(self, uow):
        with pytest.raises(RuntimeError):
            await CrawlScheduler(uow).run_nightly()


@pytest.mark.unit
@pytest.mark.crawl
class TestConcurrentNightlyRun:

    def _scope(self, uow, step, opened):
        @asynccontextmanager
        async def scope():
            tenant_uow = InMemoryUnitOfWork(uow.store)
            opened.append(tenant_uow)
            yield tenant_uow, step

        return scope

    async def test_slow_tenant_does_not_hold_up_others(self, uow):
        registry = DomainRegistry(uow)
        slow, fast = uuid.uuid4(), uuid.uuid4()
        await registry.register(slow, "slow.example.com")
        await registry.register(fast, "fast.example.com")
        fast_done = asyncio.Event()

        async def step(tenant_id, domains, job):
            if tenant_id == slow:
                # only finishes in time when the other tenant runs alongside
                await fast_done.wait()
            else:
                fast_done.set()
            return dict(OK_STATS)

        opened = []
        report = await CrawlScheduler(
            uow, tenant_timeout=1.0, tenant_scope=self._scope(uow, step, opened),
        ).run_nightly()

        assert {r.tenant_id for r in report.results} == {slow, fast}
        assert all(r.status == "completed" for r in report.results)
        assert len(opened) == 2
        assert opened[0] is not opened[1]
        for tenant_id in (slow, fast):
            [job] = await uow.jobs.list(tenant_id)
            assert job.status == "completed"

    async def test_concurrency_is_bounded(self, uow):
        registry = DomainRegistry(uow)
        for _ in range(5):
            await registry.register(uuid.uuid4(), "example.com")
        running, peak = 0, 0

        async def step(tenant_id, domains, job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return dict(OK_STATS)

        report = await CrawlScheduler(
            uow, tenant_scope=self._scope(uow, step, []), max_concurrent_tenants=2,
        ).run_nightly()

        assert report.processed_tenants == 5
        assert all(r.status == "completed" for r in report.results)
        assert peak == 2

    async def test_scope_failure_is_isolated(self, uow):
        registry = DomainRegistry(uow)
        await registry.register(uuid.uuid4(), "one.example.com")
        await registry.register(uuid.uuid4(), "two.example.com")
        healthy_scope = self._scope(uow, _ok_step, [])
        calls = []

        def scope():
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("database unavailable")
            return healthy_scope()

        report = await CrawlScheduler(uow, tenant_scope=scope).run_nightly()

        assert sorted(r.status for r in report.results) == ["completed", "failed"]
        [failed] = [r for r in report.results if r.status == "failed"]
        assert failed.error == "database unavailable"

    def test_concurrency_must_be_positive(self, uow):
        with pytest.raises(ValueError):
            CrawlScheduler(uow, _ok_step, max_concurrent_tenants=0)


@pytest.mark.unit
@pytest.mark.crawl
class TestManualTriggerAndStatus:

    async def test_no_enabled_domains(self, uow, test_tenant_id):
        with pytest.raises(NoEnabledDomains):
            await CrawlScheduler(uow, _ok_step).trigger_manual(test_tenant_id)

    async def test_disabled_domain_not_crawled(self, uow, test_tenant_id):
        registry = DomainRegistry(uow)
        await registry.register(test_tenant_id, "example.com")
        await registry.set_enabled(test_tenant_id, "example.com", False)

        with pytest.raises(NoEnabledDomains):
            await CrawlScheduler(uow, _ok_step).trigger_manual(test_tenant_id, domain="example.com")

    async def test_manual_run_ignores_cadence(self, uow, test_tenant_id):
        await DomainRegistry(uow).register(test_tenant_id, "example.com")
        await uow.domains.update(test_tenant_id, "example.com", last_crawled_at=utcnow())

        result = await CrawlScheduler(uow, _ok_step).trigger_manual(test_tenant_id, started_by="u-9")

        assert result.status == "completed"
        assert result.domains == 1
        job = await IngestJobTracker(uow).get(test_tenant_id, result.job_id)
        assert job.started_by == "u-9"
        assert job.stats["trigger"] == "manual"

    async def test_status_idle_without_activity(self, uow, test_tenant_id):
        status = await CrawlScheduler(uow).crawl_status(test_tenant_id)

        assert status.state == "idle"
        assert status.pages == 0

    async def test_status_running_while_pages_pending(self, uow, make_document, test_tenant_id):
        await make_document(document_type="web_crawl", processing_status="pending")

        status = await CrawlScheduler(uow).crawl_status(test_tenant_id)

        assert status.state == "running"
        assert status.pages == 1

    async def test_status_success_with_chunks(self, uow, make_document, add_chunks, test_tenant_id):
        page = await make_document(document_type="web_crawl", processing_status="completed")
        await add_chunks(page, ["crawled page passage"])

        status = await CrawlScheduler(uow).crawl_status(test_tenant_id)

        assert status.state == "success"
        assert status.chunks == 1

    async def test_status_failed(self, uow, make_document, test_tenant_id):
        await make_document(document_type="web_crawl", processing_status="completed")
        await make_document(document_type="web_crawl", processing_status="failed")

        status = await CrawlScheduler(uow).crawl_status(test_tenant_id)

        assert status.state == "failed"

    async def test_status_ignores_old_pages(self, uow, make_document, test_tenant_id):
        await make_document(
            document_type="web_crawl",
            processing_status="pending",
            updated_at=utcnow() - timedelta(hours=1),
        )

        status = await CrawlScheduler(uow).crawl_status(test_tenant_id)

        assert status.state == "idle"
        assert status.pages == 0
