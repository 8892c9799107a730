"""
Text Extraction
═══════════════

Turns stored file bytes into plain text for the chunker.

Strategy selection (by MIME type, then file extension):
  application/pdf                → pypdf, one text block per page
  ...wordprocessingml.document   → python-docx, non-empty paragraphs
  text/html                      → BeautifulSoup, boiler-plate tags removed
  text/* and anything else       → UTF-8 decode, latin-1 fallback

Failures surface as ExtractionError so the processor can mark the document
`failed` (bad file) rather than `error` (bad plumbing).  Empty output is a
failure too: a document without text cannot produce chunks.
"""

from __future__ import annotations

import io
import logging
import re
import time
from dataclasses import dataclass

from bs4 import BeautifulSoup

from knowledge.core.errors import ExtractionError

logger = logging.getLogger(__name__)

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

# Tags that never carry page content
BOILERPLATE_TAGS = ["script", "style", "nav", "footer", "header", "aside", "noscript", "iframe"]

_SPACE_RUN_RE = re.compile(r"[^\S\n]+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text          : full extracted text
    strategy_used : "pypdf" | "docx" | "html" | "text"
    page_count    : pages for PDFs, 1 otherwise
    elapsed_ms    : extraction wall time (ms)
    """
    text:          str
    strategy_used: str
    page_count:    int
    elapsed_ms:    float

    @property
    def total_chars(self) -> int:
        return len(self.text)


@dataclass
class HtmlPage:
    title: str
    text:  str


# ---------------------------------------------------------------------------
# HTML helpers (shared with the web crawler)
# ---------------------------------------------------------------------------

def _normalise(text: str) -> str:
    text = _SPACE_RUN_RE.sub(" ", text)
    return _BLANK_RUN_RE.sub("\n\n", text).strip()


def parse_html(html: str) -> tuple[BeautifulSoup, HtmlPage]:
    """
    Parse a page and return (soup, HtmlPage).

    The soup is the unstripped document, so callers can still harvest
    <a href> targets from navigation menus and footers.
    """
    soup = BeautifulSoup(html, "html.parser")
    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()
    else:
        h1 = soup.find("h1")
        if h1:
            title = h1.get_text(strip=True)

    body = BeautifulSoup(html, "html.parser")
    for tag in body(BOILERPLATE_TAGS):
        tag.decompose()
    text = _normalise(body.get_text(separator="\n", strip=True))
    return soup, HtmlPage(title=title, text=text)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class TextExtractor:
    """
    Stateless extractor — select and execute the right strategy.

    Usage:
        result = TextExtractor().extract(data, mime_type, file_name)
    """

    def extract(self, data: bytes, mime_type: str, file_name: str = "") -> ExtractionResult:
        t0 = time.monotonic()
        name = file_name.lower()

        try:
            if mime_type == "application/pdf" or name.endswith(".pdf"):
                strategy = "pypdf"
                pages = self._extract_pdf(data)
                text, page_count = "\n\n".join(pages), len(pages)
            elif "wordprocessingml" in mime_type or name.endswith(".docx"):
                strategy, page_count = "docx", 1
                text = self._extract_docx(data)
            elif "html" in mime_type or name.endswith((".html", ".htm")):
                strategy, page_count = "html", 1
                text = parse_html(self._decode(data))[1].text
            else:
                strategy, page_count = "text", 1
                text = self._decode(data)
        except ExtractionError:
            raise
        except Exception as exc:
            logger.warning("Extraction failed | type=%s file=%s error=%s", mime_type, file_name, exc)
            raise ExtractionError(f"Could not extract text: {exc}", mime_type=mime_type) from exc

        if not text.strip():
            raise ExtractionError("Extracted text is empty", mime_type=mime_type)

        result = ExtractionResult(
            text=text,
            strategy_used=strategy,
            page_count=page_count,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        logger.info(
            "Extraction | strategy=%s pages=%d total_chars=%d elapsed_ms=%.0f",
            result.strategy_used, result.page_count, result.total_chars, result.elapsed_ms,
        )
        return result

    @staticmethod
    def _decode(data: bytes) -> str:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return data.decode("latin-1", errors="replace")

    @staticmethod
    def _extract_pdf(data: bytes) -> list[str]:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        return [page.extract_text() or "" for page in reader.pages]

    @staticmethod
    def _extract_docx(data: bytes) -> str:
        import docx

        document = docx.Document(io.BytesIO(data))
        return "\n".join(para.text for para in document.paragraphs if para.text.strip())
