"""
Retrieval Engine — tenant-scoped cosine-similarity search over chunks.

  search(tenant, query_embedding, match_count, min_score)
      → SearchMatch list, similarity ≥ min_score, descending, ≤ match_count

  search_text(tenant, query, ...)
      → classify intent, embed the query, search, then re-rank matches with
        equal similarity so the intent's preferred document types come first

Pure read: nothing is written.  A query vector whose length differs from
the configured embedding dimensions is rejected.  No chunks, or only
chunks without an embedding, gives an empty list rather than an error.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Sequence
from uuid import UUID

from knowledge.core.config import settings
from knowledge.core.errors import InvalidRequest
from knowledge.repositories.base import ChunkRepository, SearchMatch
from knowledge.retrieval.intent import QueryIntent, classify_intent, preferred_document_types

logger = logging.getLogger(__name__)


@dataclass
class TextSearchResult:
    intent:  QueryIntent
    matches: list[SearchMatch] = field(default_factory=list)


class RetrievalEngine:
    """
    Instantiate per request::

        engine  = RetrievalEngine(uow.chunks, embedder)
        matches = await engine.search(tenant_id, vector, match_count=5, min_score=0.7)
    """

    def __init__(self, chunks: ChunkRepository, embedder=None, dimensions: int | None = None) -> None:
        self._chunks     = chunks
        self._embedder   = embedder
        self._dimensions = dimensions or settings.embedding_dimensions

    async def search(
        self,
        tenant_id:       UUID,
        query_embedding: Sequence[float],
        *,
        match_count:     int = 5,
        min_score:       float = 0.7,
        document_types:  Sequence[str] | None = None,
    ) -> list[SearchMatch]:
        if match_count < 1:
            raise InvalidRequest("match_count must be at least 1", field="match_count")
        if not -1.0 <= min_score <= 1.0:
            raise InvalidRequest("min_score must be between -1 and 1", field="min_score")
        if not query_embedding:
            raise InvalidRequest("query_embedding must not be empty", field="query_embedding")
        if len(query_embedding) != self._dimensions:
            raise InvalidRequest(
                f"query_embedding must have {self._dimensions} dimensions, got {len(query_embedding)}",
                field="query_embedding",
            )

        t0 = time.monotonic()
        matches = await self._chunks.search(
            tenant_id,
            list(query_embedding),
            match_count=match_count,
            min_score=min_score,
            document_types=document_types,
        )
        matches = sorted(
            (m for m in matches if m.similarity >= min_score),
            key=lambda m: m.similarity,
            reverse=True,
        )[:match_count]

        logger.info(
            "Search | tenant=%s matches=%d match_count=%d min_score=%.2f latency_ms=%.1f",
            tenant_id, len(matches), match_count, min_score, (time.monotonic() - t0) * 1000,
        )
        return matches

    async def search_text(
        self,
        tenant_id:      UUID,
        query:          str,
        *,
        match_count:    int = 5,
        min_score:      float = 0.7,
        document_types: Sequence[str] | None = None,
    ) -> TextSearchResult:
        if not query or not query.strip():
            raise InvalidRequest("query must not be empty", field="query")
        if self._embedder is None:
            raise InvalidRequest("Text search is not available without an embedding client")

        intent = classify_intent(query)
        vector = await self._embedder.embed(query)
        matches = await self.search(
            tenant_id,
            vector,
            match_count=match_count,
            min_score=min_score,
            document_types=document_types,
        )

        preferred = preferred_document_types(intent)
        # stable: only equal-similarity neighbours change places
        matches.sort(key=lambda m: (-m.similarity, m.document_type not in preferred))
        logger.info("Text search | tenant=%s intent=%s matches=%d", tenant_id, intent.value, len(matches))
        return TextSearchResult(intent=intent, matches=matches)
