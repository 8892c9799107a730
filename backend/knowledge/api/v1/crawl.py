"""
Crawl API Router

  GET    /crawl/domains               registered domains of the tenant
  POST   /crawl/domains               register (upsert) a domain
  PATCH  /crawl/domains/{domain}      enable / disable, depth, cadence
  DELETE /crawl/domains/{domain}      unregister
  POST   /crawl/trigger               crawl now, regardless of cadence
  GET    /crawl/status                state derived from recent crawl documents
  POST   /crawl/nightly               scheduled run over all tenants (X-Cron-Key)

The nightly endpoint is for external schedulers; Celery beat calls the same
scheduler in-process.  It carries no tenant header and authenticates only
with the shared cron key.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response, status

from knowledge.api.dependencies import (
    CrawlClient,
    Publisher,
    Storage,
    Tenant,
    UoW,
    UoWFactory,
    verify_cron_key,
)
from knowledge.core.config import settings
from knowledge.crawl.crawler import WebCrawler, tenant_crawl_scope
from knowledge.repositories.base import DomainRecord
from knowledge.schemas.documents import (
    CrawlStatusView,
    CrawlTriggerRequest,
    DomainRegisterRequest,
    DomainUpdateRequest,
    DomainView,
    ErrorResponse,
    NightlyCrawlResponse,
    NightlyTenantResult,
)
from knowledge.services.crawl import CrawlScheduler, DomainRegistry, TenantCrawlResult

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/crawl",
    tags=["Crawl"],
)


def _domain_view(record: DomainRecord) -> DomainView:
    return DomainView(
        domain=record.domain,
        is_enabled=record.is_enabled,
        crawl_depth=record.crawl_depth,
        recrawl_hours=record.recrawl_hours,
        last_crawled_at=record.last_crawled_at,
        created_at=record.created_at,
    )


def _tenant_result(result: TenantCrawlResult) -> NightlyTenantResult:
    return NightlyTenantResult(
        tenant_id=result.tenant_id,
        job_id=result.job_id,
        status=result.status,
        domains=result.domains,
        error=result.error,
        stats=result.stats,
    )


def _scheduler(uow, storage, publisher, client) -> CrawlScheduler:
    crawler = WebCrawler.from_settings(uow, storage, publisher, client=client)
    return CrawlScheduler(
        uow,
        crawler.crawl_tenant,
        tenant_timeout=settings.crawl_tenant_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Domains
# ---------------------------------------------------------------------------

@router.get("/domains", response_model=list[DomainView])
async def list_domains(tenant: Tenant, uow: UoW) -> list[DomainView]:
    return [_domain_view(d) for d in await DomainRegistry(uow).list(tenant.tenant_id)]


@router.post(
    "/domains",
    response_model=DomainView,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def register_domain(body: DomainRegisterRequest, tenant: Tenant, uow: UoW) -> DomainView:
    record = await DomainRegistry(uow).register(
        tenant.tenant_id,
        body.domain,
        crawl_depth=body.crawl_depth,
        recrawl_hours=body.recrawl_hours,
    )
    await uow.commit()
    return _domain_view(record)


@router.patch(
    "/domains/{domain}",
    response_model=DomainView,
    responses={404: {"model": ErrorResponse}},
)
async def update_domain(domain: str, body: DomainUpdateRequest, tenant: Tenant, uow: UoW) -> DomainView:
    record = await DomainRegistry(uow).update(
        tenant.tenant_id,
        domain,
        is_enabled=body.is_enabled,
        crawl_depth=body.crawl_depth,
        recrawl_hours=body.recrawl_hours,
    )
    await uow.commit()
    return _domain_view(record)


@router.delete(
    "/domains/{domain}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_domain(domain: str, tenant: Tenant, uow: UoW) -> Response:
    await DomainRegistry(uow).remove(tenant.tenant_id, domain)
    await uow.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Trigger / status
# ---------------------------------------------------------------------------

@router.post(
    "/trigger",
    response_model=NightlyTenantResult,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def trigger_crawl(
    tenant:    Tenant,
    uow:       UoW,
    storage:   Storage,
    publisher: Publisher,
    client:    CrawlClient,
    body:      CrawlTriggerRequest | None = None,
) -> NightlyTenantResult:
    body = body or CrawlTriggerRequest()
    result = await _scheduler(uow, storage, publisher, client).trigger_manual(
        tenant.tenant_id,
        domain=body.domain,
        started_by=tenant.user_id or "manual",
    )
    return _tenant_result(result)


@router.get("/status", response_model=CrawlStatusView)
async def crawl_status(tenant: Tenant, uow: UoW) -> CrawlStatusView:
    status_ = await CrawlScheduler(uow).crawl_status(tenant.tenant_id)
    return CrawlStatusView(
        state=status_.state,
        domains=status_.domains,
        pages=status_.pages,
        chunks=status_.chunks,
        message=status_.message,
    )


# ---------------------------------------------------------------------------
# Scheduled trigger
# ---------------------------------------------------------------------------

@router.post(
    "/nightly",
    response_model=NightlyCrawlResponse,
    dependencies=[Depends(verify_cron_key)],
    responses={401: {"model": ErrorResponse}},
)
async def nightly_crawl(
    uow:         UoW,
    uow_factory: UoWFactory,
    storage:     Storage,
    publisher:   Publisher,
    client:      CrawlClient,
) -> NightlyCrawlResponse:
    scheduler = CrawlScheduler(
        uow,
        tenant_timeout=settings.crawl_tenant_timeout_seconds,
        tenant_scope=tenant_crawl_scope(uow_factory, storage, publisher, client=client),
        max_concurrent_tenants=settings.crawl_max_concurrent_tenants,
    )
    report = await scheduler.run_nightly()
    logger.info("Nightly crawl via HTTP | processed_tenants=%d", report.processed_tenants)
    return NightlyCrawlResponse(
        processed_tenants=report.processed_tenants,
        results=[_tenant_result(r) for r in report.results],
    )
