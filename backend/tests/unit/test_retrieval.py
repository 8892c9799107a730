"""
Unit Tests — RetrievalEngine & intent router
════════════════════════════════════════════
Coverage targets:
  ✅ min_score threshold, descending order, match_count cap
  ✅ tenant isolation
  ✅ argument validation → InvalidRequest, including a query vector of the wrong length
  ✅ document_types filter
  ✅ intent classification: whole words only, ties → earlier intent
  ✅ equal-similarity matches re-ranked by preferred document type
"""

from __future__ import annotations

import pytest

from knowledge.core.errors import InvalidRequest
from knowledge.retrieval.engine import RetrievalEngine
from knowledge.retrieval.intent import QueryIntent, classify_intent, preferred_document_types, score_intents

EXACT   = [1.0, 0.0, 0.0]
CLOSE   = [0.8, 0.6, 0.0]     # cosine 0.8 against EXACT
OFF     = [0.0, 1.0, 0.0]     # cosine 0.0 against EXACT


@pytest.fixture
async def corpus(make_document, add_chunks):
    exact = await make_document(title="Exact", processing_status="completed")
    close = await make_document(title="Close", processing_status="completed", document_type="mps_document")
    off   = await make_document(title="Off", processing_status="completed")
    await add_chunks(exact, ["exact passage"], embedding=EXACT)
    await add_chunks(close, ["close passage"], embedding=CLOSE)
    await add_chunks(off, ["off passage"], embedding=OFF)
    return {"exact": exact, "close": close, "off": off}


@pytest.mark.unit
@pytest.mark.retrieval
class TestSearch:

    async def test_threshold_and_order(self, uow, corpus, test_tenant_id):
        matches = await RetrievalEngine(uow.chunks).search(test_tenant_id, EXACT, match_count=5, min_score=0.5)

        assert [m.document_title for m in matches] == ["Exact", "Close"]
        assert matches[0].similarity == pytest.approx(1.0)
        assert matches[1].similarity == pytest.approx(0.8)
        assert matches[1].document_type == "mps_document"

    async def test_match_count_caps_results(self, uow, corpus, test_tenant_id):
        matches = await RetrievalEngine(uow.chunks).search(test_tenant_id, EXACT, match_count=1, min_score=-1.0)

        assert len(matches) == 1
        assert matches[0].document_id == corpus["exact"].id

    async def test_other_tenant_never_returned(self, uow, corpus, make_document, add_chunks, other_tenant_id):
        theirs = await make_document(tenant_id=other_tenant_id, title="Theirs")
        await add_chunks(theirs, ["their passage"], embedding=EXACT)

        matches = await RetrievalEngine(uow.chunks).search(other_tenant_id, EXACT, min_score=-1.0)

        assert [m.document_title for m in matches] == ["Theirs"]

    async def test_chunks_without_embedding_ignored(self, uow, make_document, add_chunks, test_tenant_id):
        doc = await make_document()
        await add_chunks(doc, ["not embedded yet"])

        assert await RetrievalEngine(uow.chunks).search(test_tenant_id, EXACT, min_score=-1.0) == []

    async def test_document_types_filter(self, uow, corpus, test_tenant_id):
        matches = await RetrievalEngine(uow.chunks).search(
            test_tenant_id, EXACT, min_score=0.0, document_types=["mps_document"],
        )

        assert [m.document_title for m in matches] == ["Close"]

    @pytest.mark.parametrize("kwargs", [
        {"match_count": 0},
        {"min_score": 1.5},
        {"min_score": -2.0},
    ])
    async def test_invalid_arguments(self, uow, test_tenant_id, kwargs):
        with pytest.raises(InvalidRequest):
            await RetrievalEngine(uow.chunks).search(test_tenant_id, EXACT, **kwargs)

    async def test_empty_embedding_rejected(self, uow, test_tenant_id):
        with pytest.raises(InvalidRequest):
            await RetrievalEngine(uow.chunks).search(test_tenant_id, [])

    async def test_wrong_length_embedding_rejected(self, uow, corpus, test_tenant_id):
        with pytest.raises(InvalidRequest) as exc_info:
            await RetrievalEngine(uow.chunks).search(test_tenant_id, [1.0], min_score=0.5)

        assert exc_info.value.details["field"] == "query_embedding"

    async def test_dimensions_override(self, uow, test_tenant_id):
        with pytest.raises(InvalidRequest):
            await RetrievalEngine(uow.chunks, dimensions=1536).search(test_tenant_id, EXACT)


@pytest.mark.unit
@pytest.mark.retrieval
class TestSearchText:

    async def test_preferred_type_wins_ties(self, uow, embedder, make_document, add_chunks, test_tenant_id):
        criteria = await make_document(title="Criteria", document_type="mps_document")
        profile  = await make_document(title="Profile", document_type="organization-profile")
        await add_chunks(criteria, ["criteria passage"], embedding=EXACT)
        await add_chunks(profile, ["profile passage"], embedding=EXACT)

        result = await RetrievalEngine(uow.chunks, embedder).search_text(
            test_tenant_id, "Tell me about the company", min_score=0.5,
        )

        assert result.intent == QueryIntent.ORGANIZATION_OVERVIEW
        assert [m.document_title for m in result.matches] == ["Profile", "Criteria"]
        assert embedder.calls == ["Tell me about the company"]

    async def test_similarity_still_dominates(self, uow, embedder, corpus, test_tenant_id):
        result = await RetrievalEngine(uow.chunks, embedder).search_text(
            test_tenant_id, "give me the maturity criteria", min_score=0.5,
        )

        assert result.intent == QueryIntent.MATURITY_CRITERIA
        # "Close" is preferred for this intent but scores lower
        assert [m.document_title for m in result.matches] == ["Exact", "Close"]

    async def test_empty_query_rejected(self, uow, embedder, test_tenant_id):
        with pytest.raises(InvalidRequest):
            await RetrievalEngine(uow.chunks, embedder).search_text(test_tenant_id, "   ")

    async def test_requires_embedder(self, uow, test_tenant_id):
        with pytest.raises(InvalidRequest):
            await RetrievalEngine(uow.chunks).search_text(test_tenant_id, "company overview")


@pytest.mark.unit
@pytest.mark.retrieval
class TestIntentRouter:

    @pytest.mark.parametrize("query,intent", [
        ("Tell me about the company",              QueryIntent.ORGANIZATION_OVERVIEW),
        ("Which markets and countries?",           QueryIntent.ORGANIZATION_OVERVIEW),
        ("Give me the maturity criteria",          QueryIntent.MATURITY_CRITERIA),
        ("What are the governance controls",       QueryIntent.MATURITY_CRITERIA),
        ("companywide",                            QueryIntent.GENERAL),
        ("",                                       QueryIntent.GENERAL),
        ("list the company",                       QueryIntent.ORGANIZATION_OVERVIEW),
    ])
    def test_classify(self, query, intent):
        assert classify_intent(query) == intent

    def test_phrases_match_across_whitespace(self):
        assert score_intents("tell   me about")[QueryIntent.ORGANIZATION_OVERVIEW] == 1

    def test_every_intent_has_preferred_types(self):
        for intent in QueryIntent:
            assert preferred_document_types(intent)
