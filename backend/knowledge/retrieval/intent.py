"""
Query intent router.

A closed set of intents, each with a ranked keyword list.  Every intent is
scored by how many of its keywords occur in the query (whole words / whole
phrases only, case-insensitive); the highest score wins and ties go to the
earlier member of QueryIntent.  No match at all → GENERAL.

The intent feeds retrieval only through `preferred_document_types`, which
re-ranks results with equal similarity.
"""

from __future__ import annotations

import re
from enum import Enum


class QueryIntent(str, Enum):
    ORGANIZATION_OVERVIEW = "organization_overview"
    MATURITY_CRITERIA     = "maturity_criteria"
    GENERAL               = "general"


_KEYWORDS: dict[QueryIntent, tuple[str, ...]] = {
    QueryIntent.ORGANIZATION_OVERVIEW: (
        "tell me about", "overview", "company", "organization", "organisation",
        "background", "business", "operations", "footprint", "brands",
        "subsidiaries", "joint ventures", "partnerships", "sales channels",
        "locations", "countries", "presence", "markets", "industry", "sector",
        "who is", "what is", "describe",
    ),
    QueryIntent.MATURITY_CRITERIA: (
        "maturity", "criteria", "controls", "requirements", "compliance",
        "governance", "leadership", "process integrity", "proof it works",
        "protection", "access", "scanning", "give me", "list", "provide",
    ),
}

_PREFERRED_TYPES: dict[QueryIntent, tuple[str, ...]] = {
    QueryIntent.ORGANIZATION_OVERVIEW: ("organization-profile", "company_overview", "web_crawl", "general"),
    QueryIntent.MATURITY_CRITERIA:     ("mps_document", "industry-priority", "diamond-specific"),
    QueryIntent.GENERAL:               ("mps_document", "general"),
}


def _phrase_pattern(phrase: str) -> re.Pattern[str]:
    words = (re.escape(w) for w in phrase.split())
    return re.compile(r"\b" + r"\s+".join(words) + r"\b", re.IGNORECASE)


_PATTERNS: dict[QueryIntent, list[re.Pattern[str]]] = {
    intent: [_phrase_pattern(k) for k in keywords] for intent, keywords in _KEYWORDS.items()
}


def score_intents(query: str) -> dict[QueryIntent, int]:
    return {
        intent: sum(1 for pattern in patterns if pattern.search(query or ""))
        for intent, patterns in _PATTERNS.items()
    }


def classify_intent(query: str) -> QueryIntent:
    scores = score_intents(query)
    best = QueryIntent.GENERAL
    best_score = 0
    for intent in QueryIntent:
        if scores.get(intent, 0) > best_score:
            best, best_score = intent, scores[intent]
    return best


def preferred_document_types(intent: QueryIntent) -> tuple[str, ...]:
    return _PREFERRED_TYPES[intent]
