"""Tests for TextChunker — bounds, overlap, coverage, and split modes."""

from __future__ import annotations

import pytest

import sourceflow.ingest.chunker as chunker_module
from sourceflow.ingest.chunker import (
    TextChunker,
    content_hash,
    estimate_tokens,
    normalize_text,
)


def _sentences(n: int) -> str:
    return " ".join(f"Sentence number {i} is here." for i in range(n))


def _assert_covers(segments, text: str, overlap: int) -> None:
    normalized = normalize_text(text)
    assert segments[0].start == 0
    assert segments[-1].end == len(normalized)
    for seg in segments:
        assert seg.text == normalized[seg.start : seg.end]
    for prev, nxt in zip(segments, segments[1:]):
        assert nxt.start > prev.start
        if nxt.start >= prev.end:
            # Only whitespace may sit between non-overlapping segments.
            assert normalized[prev.end : nxt.start].strip() == ""
        else:
            assert prev.end - nxt.start <= overlap


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def test_normalize_text():
    assert normalize_text("  a\r\nb\rc\td\n\n\n\ne  ") == "a\nb\nc  d\n\ne"


def test_estimate_tokens():
    assert estimate_tokens("hello world") == 3
    assert estimate_tokens("") == 0


def test_content_hash_is_case_and_edge_whitespace_insensitive():
    assert content_hash("  Hello World ") == content_hash("hello world")
    assert len(content_hash("x")) == 16


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------

@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_size": 0},
        {"max_size": 100, "overlap": 100},
        {"max_size": 100, "overlap": -1},
        {"min_size": -1},
        {"split_on": "word"},
    ],
)
def test_invalid_settings_raise(kwargs):
    with pytest.raises(ValueError):
        TextChunker(**kwargs)


# ------------------------------------------------------------------
# Sentence mode
# ------------------------------------------------------------------

def test_empty_input_returns_no_segments():
    chunker = TextChunker()
    assert chunker.split("") == []
    assert chunker.split("   \n\t ") == []


def test_short_text_single_segment():
    segs = TextChunker(max_size=200).split("  One sentence. Two sentences!  ")
    assert len(segs) == 1
    assert segs[0].text == "One sentence. Two sentences!"
    assert segs[0].truncated is False


def test_no_punctuation_exact_max_size_is_one_chunk():
    text = ("word " * 20).strip().ljust(100, "x")
    assert len(text) == 100
    segs = TextChunker(max_size=100, overlap=10, min_size=0).split(f"  {text}  ")
    assert len(segs) == 1
    assert segs[0].text == text


def test_oversize_unpunctuated_text_stays_one_chunk():
    text = "lorem ipsum " * 50
    segs = TextChunker(max_size=100, overlap=10, min_size=0).split(text)
    assert len(segs) == 1
    assert segs[0].text == text.strip()


def test_segments_respect_max_size():
    text = _sentences(50)
    segs = TextChunker(max_size=100, overlap=30, min_size=0).split(text)
    assert len(segs) > 1
    assert all(len(s.text) <= 100 for s in segs)


def test_segments_cover_input_with_bounded_overlap():
    text = _sentences(50)
    segs = TextChunker(max_size=100, overlap=30, min_size=0).split(text)
    _assert_covers(segs, text, overlap=30)


def test_overlap_repeats_trailing_sentence():
    segs = TextChunker(max_size=100, overlap=30, min_size=0).split(_sentences(10))
    last_sentence = segs[0].text.rsplit(". ", 1)[-1]
    assert segs[1].text.startswith(last_sentence)


def test_zero_overlap_never_repeats():
    text = _sentences(30)
    segs = TextChunker(max_size=100, overlap=0, min_size=0).split(text)
    for prev, nxt in zip(segs, segs[1:]):
        assert nxt.start >= prev.end
    _assert_covers(segs, text, overlap=0)


def test_min_size_merges_small_segments():
    text = "Tiny. " + "A much longer sentence that goes on for a while here. " * 3
    segs = TextChunker(max_size=30, overlap=0, min_size=50).split(text)
    assert segs[0].text == "Tiny. A much longer sentence that goes on for a while here."
    assert len(segs) == 3


# ------------------------------------------------------------------
# Other modes
# ------------------------------------------------------------------

def test_paragraph_mode_packs_paragraphs():
    text = "Para one.\n\nPara two.\n\nPara three."
    segs = TextChunker(max_size=25, overlap=5, min_size=0, split_on="paragraph").split(text)
    assert [s.text for s in segs] == ["Para one.\n\nPara two.", "Para three."]


def test_page_mode_one_segment_per_page():
    text = "Page one text.\fPage two text.\f\fPage three."
    segs = TextChunker(max_size=100, split_on="page").split(text)
    assert [s.text for s in segs] == ["Page one text.", "Page two text.", "Page three."]


def test_page_mode_oversize_page_uses_sentences():
    text = "Short page.\f" + _sentences(10)
    segs = TextChunker(max_size=100, overlap=0, min_size=0, split_on="page").split(text)
    assert segs[0].text == "Short page."
    assert len(segs) > 2
    assert all(len(s.text) <= 100 for s in segs)


def test_token_mode_respects_budget_and_overlaps_words():
    text = " ".join(f"w{i}" for i in range(30))
    segs = TextChunker(max_size=40, overlap=40, min_size=0, split_on="token").split(text)
    assert len(segs) > 1
    assert all(estimate_tokens(s.text) <= 10 for s in segs)
    for prev, nxt in zip(segs, segs[1:]):
        assert nxt.text.split()[:2] == prev.text.split()[-2:]


# ------------------------------------------------------------------
# Ceilings
# ------------------------------------------------------------------

def test_oversized_content_truncated(monkeypatch):
    monkeypatch.setattr(chunker_module, "MAX_CONTENT_SIZE", 100)
    segs = TextChunker(max_size=50, overlap=0).split("a" * 150)
    assert len(segs) == 1
    assert segs[0].truncated is True
    assert segs[0].original_size == 150
    assert segs[0].text == "a" * 100


def test_too_many_chunks_collapses_to_one(monkeypatch, caplog):
    monkeypatch.setattr(chunker_module, "MAX_CHUNKS", 3)
    text = _sentences(20)
    with caplog.at_level("WARNING"):
        segs = TextChunker(max_size=30, overlap=0, min_size=0).split(text)
    assert len(segs) == 1
    assert segs[0].truncated is True
    assert segs[0].text == normalize_text(text)
    assert "exceeding limit" in caplog.text
