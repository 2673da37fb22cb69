"""Unit tests for lodestar.chunking.

Covers:
- Short and empty input
- Separator priority (paragraph, sentence, CJK punctuation)
- Fixed-width fallback windows with overlap
- Size bound and content coverage
"""

import re

import pytest

from fakes import make_paragraph
from lodestar.chunking import chunk_text, normalize_text


def _squash(text: str) -> str:
    return re.sub(r"\s+", "", text)


class TestChunkTextBasics:
    def test_short_text_is_one_stripped_chunk(self) -> None:
        assert chunk_text("  Receipts are required.  \n") == ["Receipts are required."]

    def test_whitespace_only_text_yields_nothing(self) -> None:
        assert chunk_text(" \n\t \n") == []

    @pytest.mark.parametrize(
        "max_chars,overlap",
        [(0, 0), (-5, 0), (100, 100), (100, -1)],
    )
    def test_invalid_parameters_are_rejected(self, max_chars: int, overlap: int) -> None:
        with pytest.raises(ValueError):
            chunk_text("some text", max_chars=max_chars, overlap_chars=overlap)

    def test_normalize_text_unifies_line_endings_and_spaces(self) -> None:
        assert normalize_text("a\r\nb\rc  \t d") == "a\nb\nc d"


class TestSeparatorPriority:
    def test_paragraphs_become_separate_chunks(self) -> None:
        """Three ~800 character paragraphs each fill one chunk on their own."""
        paragraphs = [
            make_paragraph(["apple", "orchard", "harvest"], 798),
            make_paragraph(["quantum", "photon", "laser"], 798),
            make_paragraph(["tundra", "penguin", "iceberg"], 800),
        ]
        chunks = chunk_text("\n\n".join(paragraphs), max_chars=800, overlap_chars=50)
        assert chunks == paragraphs

    def test_small_paragraphs_are_merged(self) -> None:
        text = "First rule.\n\nSecond rule.\n\nThird rule."
        long_text = text + "\n\n" + make_paragraph(["filler"], 90)
        chunks = chunk_text(long_text, max_chars=100, overlap_chars=10)
        assert chunks[0].startswith("First rule.")
        assert "Third rule." in chunks[0]
        assert all(len(c) <= 100 for c in chunks)

    def test_long_paragraph_splits_on_sentence_ends(self) -> None:
        text = "Receipts are required for every expense. " * 40
        chunks = chunk_text(text, max_chars=200, overlap_chars=20)
        assert len(chunks) > 1
        assert all(len(c) <= 200 for c in chunks)
        assert all(c.endswith(".") for c in chunks)

    def test_cjk_sentence_punctuation_is_a_separator(self) -> None:
        text = "报销需要发票。" * 200
        chunks = chunk_text(text, max_chars=300, overlap_chars=30)
        assert all(len(c) <= 300 for c in chunks)
        assert all(c.endswith("。") for c in chunks)
        assert "".join(chunks) == text


class TestFallbackWindows:
    def test_unbroken_run_uses_overlapping_windows(self) -> None:
        text = "".join(chr(ord("a") + i % 26) for i in range(2000))
        chunks = chunk_text(text, max_chars=800, overlap_chars=50)
        assert [len(c) for c in chunks] == [800, 800, 500]
        assert chunks[1][:50] == chunks[0][-50:]
        assert chunks[2][:50] == chunks[1][-50:]


class TestCoverage:
    def test_chunks_cover_text_in_order(self) -> None:
        text = "\n\n".join(
            make_paragraph(words, 350)
            for words in (
                ["invoice", "ledger"],
                ["travel", "hotel", "taxi"],
                ["approval", "manager"],
                ["vat", "refund", "claim"],
            )
        ) + "\nClosing line. Another sentence! Last one?"
        chunks = chunk_text(text, max_chars=300, overlap_chars=30)
        assert all(0 < len(c) <= 300 for c in chunks)
        assert _squash("".join(chunks)) == _squash(text)
