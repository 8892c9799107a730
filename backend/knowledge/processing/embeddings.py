"""
Embedding Client & Pipeline  —  Rate-Limited Batches with Retry
═══════════════════════════════════════════════════════════════

EmbeddingClient
  One OpenAI embeddings call per text.  Input is truncated to
  `embedding_max_input_chars` before it leaves the process.

  Retry policy:
    RateLimitError / APIConnectionError / APITimeoutError / 5xx
        → wait RETRY_BASE_DELAY × 2^attempt, at most MAX_RETRIES times
    anything else (auth, bad request)
        → fail immediately, not transient

EmbeddingPipeline
  Fills chunk embeddings in small sequential batches:

    batch 1: N provider calls concurrently ── all settle ── write vectors
             sleep(batch_delay)
    batch 2: ...

  Within a batch the calls are unordered; batch k+1 never starts before
  batch k has settled.  Vectors are written one chunk at a time after the
  batch settles (a whole vector or nothing), then the batch is committed.

  Empty-content chunks are skipped, never sent.  A chunk whose call fails
  after retries is counted in `errors` and left with a NULL embedding; it
  never aborts the batch.

  Modes:
    default     only chunks whose embedding is NULL
    force_all   every chunk of the tenant (model upgrades)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable
from uuid import UUID

import openai
from openai import AsyncOpenAI

from knowledge.repositories.base import AuditEntry, ChunkRecord, UnitOfWork

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MAX_RETRIES      = 3      # per-text retry limit
RETRY_BASE_DELAY = 2.0    # seconds, doubles each retry
RETRY_MAX_DELAY  = 60.0   # cap

RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    openai.RateLimitError,
    openai.APIConnectionError,   # includes APITimeoutError
    openai.InternalServerError,
)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingReport:
    """
    processed : chunks that received a new embedding
    errors    : chunks whose provider call failed after retries
    skipped   : empty-content chunks, never sent
    total     : chunks selected for the run
    """
    processed: int = 0
    errors:    int = 0
    skipped:   int = 0
    total:     int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "errors":    self.errors,
            "skipped":   self.skipped,
            "total":     self.total,
        }


# ---------------------------------------------------------------------------
# Provider client
# ---------------------------------------------------------------------------

class EmbeddingClient:
    """
    Thin async wrapper around the OpenAI embeddings endpoint.

    Usage:
        client = EmbeddingClient.from_settings()
        vector = await client.embed("some passage")
    """

    def __init__(
        self,
        model:            str   = "text-embedding-3-small",
        dimensions:       int   = 1536,
        api_key:          str   = "",
        max_input_chars:  int   = 8000,
        max_retries:      int   = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
        client:           AsyncOpenAI | None = None,
        sleep:            Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._model            = model
        self._dimensions       = dimensions
        self._max_input_chars  = max_input_chars
        self._max_retries      = max_retries
        self._retry_base_delay = retry_base_delay
        # max_retries=0: retries are handled here so they are logged and bounded
        self._client = client or AsyncOpenAI(api_key=api_key or None, max_retries=0)
        self._sleep  = sleep

    @classmethod
    def from_settings(cls) -> "EmbeddingClient":
        from knowledge.core.config import settings

        return cls(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=settings.openai_api_key,
            max_input_chars=settings.embedding_max_input_chars,
            max_retries=settings.embedding_max_retries,
            retry_base_delay=settings.embedding_retry_base_delay,
        )

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, text: str) -> list[float]:
        text = text[: self._max_input_chars]
        attempt = 0
        while True:
            try:
                return await self._call_openai(text)
            except RETRYABLE_ERRORS as exc:
                if attempt >= self._max_retries:
                    raise
                attempt += 1
                delay = min(self._retry_base_delay * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | attempt=%d delay=%.1fs error=%s",
                    attempt, delay, exc,
                )
            await self._sleep(delay)

    async def _call_openai(self, text: str) -> list[float]:
        kwargs = {}
        # `dimensions` only applies to text-embedding-3-* models
        if self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions

        t_api = time.monotonic()
        response = await self._client.embeddings.create(model=self._model, input=[text], **kwargs)
        logger.debug(
            "OpenAI embeddings | chars=%d api_ms=%.0f",
            len(text), (time.monotonic() - t_api) * 1000,
        )
        return list(response.data[0].embedding)


# ---------------------------------------------------------------------------
# Batch pipeline over the chunk store
# ---------------------------------------------------------------------------

class EmbeddingPipeline:
    """
    One instance per unit of work.

    `client` only needs an async `embed(text) -> list[float]`.
    """

    def __init__(
        self,
        uow:         UnitOfWork,
        client,
        batch_size:  int   = 10,
        batch_delay: float = 1.0,
        sleep:       Callable[[float], Awaitable[None]] = asyncio.sleep,
        dimensions:  int | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._uow         = uow
        self._client      = client
        self._batch_size  = batch_size
        self._batch_delay = batch_delay
        self._sleep       = sleep
        self._dimensions  = dimensions

    @classmethod
    def from_settings(cls, uow: UnitOfWork, client) -> "EmbeddingPipeline":
        from knowledge.core.config import settings

        return cls(
            uow,
            client,
            batch_size=settings.embedding_batch_size,
            batch_delay=settings.embedding_batch_delay,
            dimensions=settings.embedding_dimensions,
        )

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def regenerate(
        self,
        tenant_id: UUID,
        *,
        force_all: bool = False,
        limit:     int | None = None,
        user_id:   str | None = None,
    ) -> EmbeddingReport:
        """Bulk (re)embedding across a tenant; writes one audit record."""
        chunks = await self._uow.chunks.list_for_embedding(
            tenant_id, missing_only=not force_all, limit=limit,
        )
        logger.info(
            "Embedding regeneration | tenant=%s chunks=%d force_all=%s",
            tenant_id, len(chunks), force_all,
        )
        report = await self._run(tenant_id, chunks)

        await self._uow.audit.add(AuditEntry(
            tenant_id=tenant_id,
            user_id=user_id,
            action="bulk_embedding_regeneration",
            resource=f"tenant:{tenant_id}",
            metadata={**report.as_dict(), "force_all": force_all, "limit": limit},
            success=report.errors == 0,
        ))
        await self._uow.commit()
        return report

    async def embed_document(self, tenant_id: UUID, document_id: UUID) -> EmbeddingReport:
        """Fill the NULL embeddings of one document (used by the processor)."""
        chunks = await self._uow.chunks.list_for_embedding(
            tenant_id, document_id=document_id, missing_only=True,
        )
        return await self._run(tenant_id, chunks)

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    async def _run(self, tenant_id: UUID, chunks: list[ChunkRecord]) -> EmbeddingReport:
        report = EmbeddingReport(total=len(chunks))
        t0 = time.monotonic()

        batches = [
            chunks[i : i + self._batch_size]
            for i in range(0, len(chunks), self._batch_size)
        ]
        for batch_idx, batch in enumerate(batches):
            if batch_idx > 0 and self._batch_delay > 0:
                await self._sleep(self._batch_delay)

            sendable = [c for c in batch if c.content.strip()]
            report.skipped += len(batch) - len(sendable)

            results = await asyncio.gather(
                *(self._client.embed(c.content) for c in sendable),
                return_exceptions=True,
            )

            for chunk, result in zip(sendable, results):
                if isinstance(result, BaseException):
                    report.errors += 1
                    logger.error(
                        "Embedding failed | tenant=%s doc=%s chunk=%s error=%s",
                        tenant_id, chunk.document_id, chunk.id, result,
                    )
                    continue
                if self._dimensions is not None and len(result) != self._dimensions:
                    report.errors += 1
                    logger.error(
                        "Embedding dimension mismatch | tenant=%s doc=%s chunk=%s got=%d expected=%d",
                        tenant_id, chunk.document_id, chunk.id, len(result), self._dimensions,
                    )
                    continue
                if await self._uow.chunks.set_embedding(tenant_id, chunk.id, result):
                    report.processed += 1
                else:
                    # chunk deleted while its call was in flight
                    report.skipped += 1

            await self._uow.commit()
            logger.debug(
                "Embedding batch settled | tenant=%s batch=%d/%d size=%d",
                tenant_id, batch_idx + 1, len(batches), len(batch),
            )

        logger.info(
            "Embedding done | tenant=%s processed=%d errors=%d skipped=%d total=%d elapsed_ms=%.0f",
            tenant_id, report.processed, report.errors, report.skipped, report.total,
            (time.monotonic() - t0) * 1000,
        )
        return report
