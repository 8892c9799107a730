"""
Chunker  —  Bounded-Size Passage Splitting
══════════════════════════════════════════

Splits extracted document text into passages of at most `chunk_size`
characters with `chunk_overlap` characters carried between neighbours.

Boundary preference (LangChain RecursiveCharacterTextSplitter):
  1. paragraph break   "\n\n"
  2. line break        "\n"
  3. sentence end      ". "
  4. word break        " "
  5. hard cut          ""       (only for runs with no whitespace at all)

A window is only cut at a weaker boundary when no stronger boundary keeps
the piece under the size ceiling, so passages end on whole paragraphs or
sentences whenever the text allows it.

Before splitting, text is normalised: NUL bytes and stray carriage returns
are dropped and runs of 3+ blank lines collapse to one paragraph break.
Whitespace-only passages are never emitted.
"""

from __future__ import annotations

import hashlib
import logging
import re

from langchain_text_splitters import RecursiveCharacterTextSplitter

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE    = 2000
DEFAULT_CHUNK_OVERLAP = 200

SEPARATORS = ["\n\n", "\n", ". ", " ", ""]

_BLANK_RUN_RE = re.compile(r"\n{3,}")


def content_hash(text: str) -> str:
    """sha256 hex digest of a chunk's text; stored alongside the chunk."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_text(text: str) -> str:
    text = text.replace("\x00", "").replace("\r\n", "\n").replace("\r", "\n")
    return _BLANK_RUN_RE.sub("\n\n", text).strip()


class Chunker:
    """
    Stateless splitter; one instance can be shared across documents.

    Usage:
        chunker = Chunker(chunk_size=2000, chunk_overlap=200)
        passages = chunker.split(raw_text)
    """

    def __init__(
        self,
        chunk_size:    int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")

        self.chunk_size    = chunk_size
        self.chunk_overlap = chunk_overlap
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=SEPARATORS,
            keep_separator="end",
            strip_whitespace=True,
        )

    @classmethod
    def from_settings(cls) -> "Chunker":
        from knowledge.core.config import settings
        return cls(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap)

    def split(self, text: str) -> list[str]:
        """Return the ordered passages of `text`; [] for empty input."""
        text = normalize_text(text or "")
        if not text:
            return []

        passages = [p for p in self._splitter.split_text(text) if p.strip()]

        logger.debug(
            "Chunker | chars=%d chunks=%d avg_chars=%.0f",
            len(text), len(passages),
            sum(len(p) for p in passages) / max(1, len(passages)),
        )
        return passages
