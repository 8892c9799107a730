"""
Maintenance API Router

Every endpoint is tenant-scoped, writes audit records for what it changes
and answers with a structured summary (counts plus per-item detail).

  POST /maintenance/duplicates/{id}              resolve the duplicate set of one document
  POST /maintenance/duplicates/auto-clean        resolve every duplicate set of the tenant
  POST /maintenance/documents/{id}/corruption    purge corrupted chunks of one document
  POST /maintenance/corruption/scan              purge across all completed documents
  POST /maintenance/embeddings/regenerate        fill (or recompute) chunk embeddings
  POST /maintenance/legacy-cleanup               remove chunkless legacy documents (dry-run default)
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter

from knowledge.api.dependencies import Embedder, Tenant, UoW
from knowledge.processing.embeddings import EmbeddingPipeline
from knowledge.schemas.documents import (
    CorruptionCleanupRequest,
    CorruptionReportView,
    CorruptionScanResponse,
    DedupResponse,
    DuplicateRemovalView,
    EmbeddingRegenerateRequest,
    EmbeddingReportView,
    ErrorResponse,
    ItemFailureView,
    LegacyCleanupItem,
    LegacyCleanupRequest,
    LegacyCleanupResponse,
)
from knowledge.services.corruption import CorruptionRecoveryService
from knowledge.services.dedup import DedupReport, Deduplicator, LegacyCleanupService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/maintenance",
    tags=["Maintenance"],
)


def _dedup_response(report: DedupReport) -> DedupResponse:
    return DedupResponse(
        duplicate_sets=report.duplicate_sets,
        total_cleaned=report.total_cleaned,
        removals=[
            DuplicateRemovalView(
                kept_id=r.kept_id,
                removed_id=r.removed_id,
                kept_chunks=r.kept_chunks,
                removed_chunks=r.removed_chunks,
                title=r.title,
            )
            for r in report.removals
        ],
        failures=[
            ItemFailureView(document_id=f["document_id"], error=f["error"])
            for f in report.failures
        ],
    )


# ---------------------------------------------------------------------------
# Duplicates
# ---------------------------------------------------------------------------

# Declared before /duplicates/{document_id} so "auto-clean" is not parsed as an id.
@router.post("/duplicates/auto-clean", response_model=DedupResponse)
async def auto_clean_duplicates(tenant: Tenant, uow: UoW) -> DedupResponse:
    report = await Deduplicator(uow).auto_clean(tenant.tenant_id, user_id=tenant.user_id)
    return _dedup_response(report)


@router.post(
    "/duplicates/{document_id}",
    response_model=DedupResponse,
    responses={404: {"model": ErrorResponse}},
)
async def clean_duplicate(document_id: UUID, tenant: Tenant, uow: UoW) -> DedupResponse:
    report = await Deduplicator(uow).clean_document(
        tenant.tenant_id, document_id, user_id=tenant.user_id,
    )
    return _dedup_response(report)


# ---------------------------------------------------------------------------
# Corruption
# ---------------------------------------------------------------------------

@router.post(
    "/documents/{document_id}/corruption",
    response_model=CorruptionReportView,
    responses={404: {"model": ErrorResponse}},
)
async def purge_corrupted_chunks(
    document_id: UUID,
    tenant:      Tenant,
    uow:         UoW,
    body:        Optional[CorruptionCleanupRequest] = None,
) -> CorruptionReportView:
    body = body or CorruptionCleanupRequest()
    report = await CorruptionRecoveryService(uow).purge_document(
        tenant.tenant_id,
        document_id,
        user_id=tenant.user_id,
        mps_number=body.mps_number,
        reason=body.reason,
    )
    return CorruptionReportView(
        document_id=report.document_id,
        deleted_chunks=report.deleted_chunks,
        remaining_chunks=report.remaining_chunks,
        document_reset=report.document_reset,
    )


@router.post("/corruption/scan", response_model=CorruptionScanResponse)
async def scan_corruption(tenant: Tenant, uow: UoW) -> CorruptionScanResponse:
    scan = await CorruptionRecoveryService(uow).scan_tenant(tenant.tenant_id, user_id=tenant.user_id)
    return CorruptionScanResponse(
        documents_scanned=scan.documents_scanned,
        total_deleted=scan.total_deleted,
        documents_reset=scan.documents_reset,
        reports=[
            CorruptionReportView(
                document_id=r.document_id,
                deleted_chunks=r.deleted_chunks,
                remaining_chunks=r.remaining_chunks,
                document_reset=r.document_reset,
            )
            for r in scan.reports
        ],
        failures=[
            ItemFailureView(document_id=f["document_id"], error=f["error"])
            for f in scan.failures
        ],
    )


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

@router.post("/embeddings/regenerate", response_model=EmbeddingReportView)
async def regenerate_embeddings(
    tenant:   Tenant,
    uow:      UoW,
    embedder: Embedder,
    body:     Optional[EmbeddingRegenerateRequest] = None,
) -> EmbeddingReportView:
    body = body or EmbeddingRegenerateRequest()
    report = await EmbeddingPipeline.from_settings(uow, embedder).regenerate(
        tenant.tenant_id,
        force_all=body.force_all,
        limit=body.limit,
        user_id=tenant.user_id,
    )
    return EmbeddingReportView(**report.as_dict())


# ---------------------------------------------------------------------------
# Legacy cleanup
# ---------------------------------------------------------------------------

@router.post("/legacy-cleanup", response_model=LegacyCleanupResponse)
async def legacy_cleanup(
    tenant: Tenant,
    uow:    UoW,
    body:   Optional[LegacyCleanupRequest] = None,
) -> LegacyCleanupResponse:
    body = body or LegacyCleanupRequest()
    report = await LegacyCleanupService(uow).run(
        tenant.tenant_id, dry_run=body.dry_run, user_id=tenant.user_id,
    )
    return LegacyCleanupResponse(
        dry_run=report.dry_run,
        total_found=report.total_found,
        total_cleaned=report.total_cleaned,
        details=[
            LegacyCleanupItem(
                document_id=c.document.id,
                title=c.document.title,
                reason=c.reason,
                removed=c.removed,
                error=c.error,
            )
            for c in report.details
        ],
    )

