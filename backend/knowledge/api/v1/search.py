"""
Search API Router

POST /api/v1/search

  { "query": "...",            free text: intent classified, query embedded
    "query_embedding": [...],  or a caller-supplied vector (exactly one of the two)
    "match_count": 5,
    "min_score": 0.7,
    "document_types": [...] }  optional filter

Pure read; results are tenant-scoped and ordered by similarity.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from knowledge.api.dependencies import Embedder, Tenant, UoW
from knowledge.retrieval.engine import RetrievalEngine
from knowledge.schemas.documents import ErrorResponse, SearchMatchView, SearchRequest, SearchResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/search",
    tags=["Retrieval"],
)


@router.post(
    "",
    response_model=SearchResponse,
    responses={400: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def search(body: SearchRequest, tenant: Tenant, uow: UoW, embedder: Embedder) -> SearchResponse:
    engine = RetrievalEngine(uow.chunks, embedder)

    intent = None
    if body.query is not None:
        result = await engine.search_text(
            tenant.tenant_id,
            body.query,
            match_count=body.match_count,
            min_score=body.min_score,
            document_types=body.document_types,
        )
        intent, matches = result.intent.value, result.matches
    else:
        matches = await engine.search(
            tenant.tenant_id,
            body.query_embedding,
            match_count=body.match_count,
            min_score=body.min_score,
            document_types=body.document_types,
        )

    return SearchResponse(
        intent=intent,
        matches=[
            SearchMatchView(
                chunk_id=m.chunk_id,
                document_id=m.document_id,
                document_title=m.document_title,
                content=m.content,
                similarity=m.similarity,
            )
            for m in matches
        ],
    )
