"""Bounded, overlapping text chunker shared by every source type.

Every segment is a contiguous slice of the normalized input, so consecutive
segments cover the text without gaps (whitespace between boundaries aside)
and overlap by at most ``overlap`` characters.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAX_CONTENT_SIZE = 10 * 1024 * 1024
MAX_CHUNKS = 1000

SPLIT_MODES: frozenset[str] = frozenset(["sentence", "paragraph", "page", "token"])

# A sentence is everything up to and including a run of boundary punctuation;
# the second branch picks up a trailing fragment without punctuation.
_SENTENCE_RE = re.compile(r"[^.!?]*[.!?]+|[^.!?]+")
_PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t]*\n")
_WORD_RE = re.compile(r"\S+")
_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")

_Span = tuple[int, int]


@dataclass
class TextSegment:
    """One chunk of text with its character offsets in the normalized input."""

    text: str
    start: int
    end: int
    truncated: bool = False
    original_size: int | None = None


def normalize_text(text: str) -> str:
    """Normalize line endings and whitespace before chunking."""
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\t", "  ")
    text = _EXCESS_NEWLINES_RE.sub("\n\n", text)
    return text.strip()


def estimate_tokens(text: str) -> int:
    """Average of a 4-chars-per-token and a 1.3-tokens-per-word estimate."""
    chars = len(text)
    words = len(_WORD_RE.findall(text))
    return _estimate(chars, words)


def _estimate(chars: int, words: int) -> int:
    return math.ceil((math.ceil(chars / 4) + math.ceil(words * 1.3)) / 2)


def content_hash(text: str) -> str:
    """Return the first 16 hex chars of sha256 over the trimmed, lowercased text."""
    return hashlib.sha256(text.strip().lower().encode("utf-8")).hexdigest()[:16]


class TextChunker:
    """Split text into bounded segments.

    Modes:
    - ``sentence``: pack whole sentences up to ``max_size`` chars; the next
      segment starts with the trailing sentences (at most ``overlap`` chars)
      of the previous one.
    - ``paragraph``: pack blank-line separated paragraphs, no overlap.
    - ``page``: one segment per form-feed separated page; oversized pages
      fall back to sentence packing.
    - ``token``: pack words up to ``max_size // 4`` estimated tokens and
      repeat the last ``overlap // 20`` words.

    A segment is emitted early only once it holds ``min_size`` chars; a single
    sentence or paragraph larger than ``max_size`` becomes its own segment.
    """

    def __init__(
        self,
        max_size: int = 8000,
        overlap: int = 400,
        min_size: int = 100,
        split_on: str = "sentence",
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if not 0 <= overlap < max_size:
            raise ValueError("overlap must be in [0, max_size)")
        if min_size < 0:
            raise ValueError("min_size must be >= 0")
        if split_on not in SPLIT_MODES:
            raise ValueError(
                f"split_on must be one of: {', '.join(sorted(SPLIT_MODES))}"
            )
        self.max_size = max_size
        self.overlap = overlap
        self.min_size = min_size
        self.split_on = split_on

    def split(self, text: str) -> list[TextSegment]:
        """Normalize *text* and split it into ordered segments.

        Args:
            text: Raw extracted text.

        Returns:
            Segments in document order; ``[]`` for empty or blank input.
        """
        if len(text) > MAX_CONTENT_SIZE:
            logger.warning(
                "Content of %d chars exceeds %d, storing one truncated chunk",
                len(text),
                MAX_CONTENT_SIZE,
            )
            return [self._truncated(normalize_text(text), len(text))]

        normalized = normalize_text(text)
        if not normalized:
            return []

        if self.split_on == "token":
            spans = self._token_spans(normalized)
        elif self.split_on == "paragraph":
            spans = self._pack(_paragraph_spans(normalized, 0, len(normalized)), 0)
        elif self.split_on == "page":
            spans = self._page_spans(normalized)
        else:
            spans = self._pack(
                _sentence_spans(normalized, 0, len(normalized)), self.overlap
            )

        if len(spans) > MAX_CHUNKS:
            logger.warning(
                "Text would create %d chunks, exceeding limit of %d; storing one truncated chunk",
                len(spans),
                MAX_CHUNKS,
            )
            return [self._truncated(normalized, len(normalized))]

        return [TextSegment(text=normalized[s:e], start=s, end=e) for s, e in spans]

    # ------------------------------------------------------------------
    # Packing strategies
    # ------------------------------------------------------------------

    def _pack(self, units: list[_Span], overlap: int) -> list[_Span]:
        """Greedily pack contiguous *units* into spans of at most max_size chars."""
        spans: list[_Span] = []
        first = 0
        j = 0
        n = len(units)
        while j < n:
            if j == first:
                j += 1
                continue
            if units[j][1] - units[first][0] <= self.max_size:
                j += 1
                continue
            if units[j - 1][1] - units[first][0] < self.min_size:
                j += 1
                continue
            spans.append((units[first][0], units[j - 1][1]))
            # Seed the next span with trailing units that fit in the overlap,
            # always dropping at least one unit and leaving room for unit j.
            k = j
            while (
                k - 1 > first
                and units[j - 1][1] - units[k - 1][0] <= overlap
                and units[j][1] - units[k - 1][0] <= self.max_size
            ):
                k -= 1
            first = k
        if first < n:
            spans.append((units[first][0], units[n - 1][1]))
        return spans

    def _page_spans(self, text: str) -> list[_Span]:
        spans: list[_Span] = []
        for start, end in _split_spans(text, re.compile(r"\f"), 0, len(text)):
            if end - start <= self.max_size:
                spans.append((start, end))
            else:
                spans.extend(self._pack(_sentence_spans(text, start, end), self.overlap))
        return spans

    def _token_spans(self, text: str) -> list[_Span]:
        words = [m.span() for m in _WORD_RE.finditer(text)]
        max_tokens = max(1, self.max_size // 4)
        overlap_words = self.overlap // 20
        spans: list[_Span] = []
        first = 0
        j = 0
        n = len(words)
        while j < n:
            if j == first:
                j += 1
                continue
            chars = words[j][1] - words[first][0]
            if _estimate(chars, j - first + 1) <= max_tokens:
                j += 1
                continue
            spans.append((words[first][0], words[j - 1][1]))
            first = max(first + 1, j - overlap_words)
            while first < j and _estimate(words[j][1] - words[first][0], j - first + 1) > max_tokens:
                first += 1
        if first < n:
            spans.append((words[first][0], words[n - 1][1]))
        return spans

    def _truncated(self, text: str, original_size: int) -> TextSegment:
        head = text[:MAX_CONTENT_SIZE]
        stripped = head.strip()
        start = len(head) - len(head.lstrip())
        return TextSegment(
            text=stripped,
            start=start,
            end=start + len(stripped),
            truncated=True,
            original_size=original_size,
        )


# ------------------------------------------------------------------
# Unit splitters: return trimmed, non-empty (start, end) spans
# ------------------------------------------------------------------

def _trim(text: str, start: int, end: int) -> _Span | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return (start, end) if start < end else None


def _sentence_spans(text: str, start: int, end: int) -> list[_Span]:
    spans: list[_Span] = []
    for m in _SENTENCE_RE.finditer(text, start, end):
        span = _trim(text, m.start(), m.end())
        if span:
            spans.append(span)
    return spans


def _split_spans(text: str, sep: re.Pattern[str], start: int, end: int) -> list[_Span]:
    spans: list[_Span] = []
    pos = start
    for m in sep.finditer(text, start, end):
        span = _trim(text, pos, m.start())
        if span:
            spans.append(span)
        pos = m.end()
    span = _trim(text, pos, end)
    if span:
        spans.append(span)
    return spans


def _paragraph_spans(text: str, start: int, end: int) -> list[_Span]:
    return _split_spans(text, _PARAGRAPH_BREAK_RE, start, end)
