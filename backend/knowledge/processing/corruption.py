"""
Corruption Detector
═══════════════════

Pure, deterministic classification of chunk text damaged by upstream
extraction, typically raw OOXML package parts leaking out of a malformed
.docx or binary noise from a mis-decoded file.

A chunk is corrupted if ANY rule fires:

  too_short         len(content) < 10
  archive_marker    contains a package-path fragment such as "_rels/"
  binary_noise      control / high-byte characters make up > 30% of it
  garbled_encoding  "?" makes up > 20% of it AND it contains a run of
                    four backslashes (escaped-escape debris)

The verdict lists every rule that fired, in the order above.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

MIN_CONTENT_LENGTH   = 10
BINARY_NOISE_RATIO   = 0.3
QUESTION_MARK_RATIO  = 0.2

ARCHIVE_MARKERS: tuple[str, ...] = (
    "_rels/",
    "customXml/",
    "word/_rels",
    ".xml.rels",
    "tomXml/",
)

_NOISE_RE = re.compile(r"[\x00-\x08\x0E-\x1F\x7F-\xFF]")
_BACKSLASH_RUN = "\\\\\\\\"   # four literal backslashes


@dataclass(frozen=True)
class CorruptionVerdict:
    is_corrupted: bool
    reasons:      tuple[str, ...] = field(default_factory=tuple)


def detect_corruption(content: str) -> CorruptionVerdict:
    reasons: list[str] = []
    length = len(content)

    if length < MIN_CONTENT_LENGTH:
        reasons.append("too_short")

    if any(marker in content for marker in ARCHIVE_MARKERS):
        reasons.append("archive_marker")

    if length and len(_NOISE_RE.findall(content)) / length > BINARY_NOISE_RATIO:
        reasons.append("binary_noise")

    if (
        length
        and content.count("?") / length > QUESTION_MARK_RATIO
        and _BACKSLASH_RUN in content
    ):
        reasons.append("garbled_encoding")

    return CorruptionVerdict(is_corrupted=bool(reasons), reasons=tuple(reasons))


def is_corrupted(content: str) -> bool:
    return detect_corruption(content).is_corrupted
