"""
Retrieval package.

  engine.py   tenant-scoped cosine-similarity search over embedded chunks
  intent.py   keyword-based query intent classification
"""

from knowledge.retrieval.engine import RetrievalEngine, TextSearchResult
from knowledge.retrieval.intent import QueryIntent, classify_intent

__all__ = [
    "RetrievalEngine",
    "TextSearchResult",
    "QueryIntent",
    "classify_intent",
]
