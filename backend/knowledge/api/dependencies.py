"""
Composed FastAPI Dependencies

Single wiring point for the request context.  Route handlers import from
here, never from db/session, storage or workers directly, so tests can swap
every collaborator through app.dependency_overrides.

Tenant resolution happens upstream: X-Tenant-ID (required, UUID) and
X-User-ID (optional) arrive already authenticated.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Annotated, AsyncGenerator, Optional
from uuid import UUID

import httpx
from fastapi import Depends, Header

from knowledge.core.errors import CronKeyRejected, InvalidRequest
from knowledge.repositories.base import UnitOfWork


# ---------------------------------------------------------------------------
# 1. Tenant context from upstream headers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TenantContext:
    tenant_id: UUID
    user_id:   str | None = None


async def get_tenant_context(
    x_tenant_id: Annotated[str | None, Header()] = None,
    x_user_id:   Annotated[str | None, Header()] = None,
) -> TenantContext:
    if not x_tenant_id:
        raise InvalidRequest("X-Tenant-ID header is required", field="X-Tenant-ID")
    try:
        tenant_id = UUID(x_tenant_id)
    except ValueError as exc:
        raise InvalidRequest("X-Tenant-ID must be a UUID", field="X-Tenant-ID") from exc
    return TenantContext(tenant_id=tenant_id, user_id=x_user_id or None)


# ---------------------------------------------------------------------------
# 2. Unit of work (one transaction scope per request)
# ---------------------------------------------------------------------------

async def get_uow() -> AsyncGenerator[UnitOfWork, None]:
    from knowledge.db.session import unit_of_work

    async with unit_of_work() as uow:
        yield uow


def get_uow_factory():
    """Opens further units of work, e.g. one per tenant of a nightly crawl."""
    from knowledge.db.session import unit_of_work

    return unit_of_work


# ---------------------------------------------------------------------------
# 3. Outbound collaborators
# ---------------------------------------------------------------------------

def get_storage():
    from knowledge.storage.s3 import S3StorageService

    return S3StorageService()


def get_publisher():
    from knowledge.workers.publisher import TaskPublisher

    return TaskPublisher()


def get_embedding_client():
    from knowledge.processing.embeddings import EmbeddingClient

    return EmbeddingClient.from_settings()


# ---------------------------------------------------------------------------
# 4. Crawl collaborators
# ---------------------------------------------------------------------------

def get_crawl_client() -> httpx.AsyncClient | None:
    """None lets the crawler open its own client per run."""
    return None


async def verify_cron_key(x_cron_key: Annotated[str | None, Header()] = None) -> None:
    """Scheduled-trigger guard; runs before any tenant is touched."""
    from knowledge.core.config import settings

    expected = settings.cron_key
    if not expected or not x_cron_key or not hmac.compare_digest(x_cron_key.encode(), expected.encode()):
        raise CronKeyRejected("Missing or invalid X-Cron-Key")


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Tenant      = Annotated[TenantContext, Depends(get_tenant_context)]
UoW         = Annotated[UnitOfWork,    Depends(get_uow)]
UoWFactory  = Annotated[object,        Depends(get_uow_factory)]
Storage     = Annotated[object,        Depends(get_storage)]
Publisher   = Annotated[object,        Depends(get_publisher)]
Embedder    = Annotated[object,        Depends(get_embedding_client)]
CrawlClient = Annotated[Optional[httpx.AsyncClient], Depends(get_crawl_client)]
