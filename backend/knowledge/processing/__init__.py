"""
Document Processing Package
════════════════════════════

Pure text-side building blocks of the ingestion pipeline:

  Text Extraction → Chunking → Corruption Filter → Embedding

Modules
───────
  extractor.py   pypdf / python-docx / BeautifulSoup text extraction
  chunking.py    bounded-size passage splitter with overlap
  corruption.py  deterministic corruption heuristics for chunk text
  embeddings.py  OpenAI embedding client and the batched chunk pipeline

The services package wires these into stateful operations over the
repositories (knowledge.services.processing and friends).
"""

from knowledge.processing.chunking import Chunker, content_hash
from knowledge.processing.corruption import CorruptionVerdict, detect_corruption, is_corrupted
from knowledge.processing.extractor import ExtractionResult, TextExtractor

__all__ = [
    "Chunker",
    "content_hash",
    "CorruptionVerdict",
    "detect_corruption",
    "is_corrupted",
    "ExtractionResult",
    "TextExtractor",
]
