"""Tests for text utility functions."""

from __future__ import annotations

from vaultgraph.utils.text import (
    estimate_tokens,
    section_bounds,
    segment_document,
    split_recursive,
)


class TestSplitRecursive:
    """Test split_recursive function."""

    def test_prefers_paragraph_boundaries(self) -> None:
        """Should cut between paragraphs when they fit."""
        text = "alpha " * 10 + "\n\n" + "beta " * 10 + "\n\n" + "gamma " * 10
        spans = split_recursive(text, max_chars=80)

        assert len(spans) == 3
        assert spans[0].text.startswith("alpha")
        assert spans[1].text.startswith("beta")
        assert spans[2].text.startswith("gamma")

    def test_falls_back_to_fixed_width(self) -> None:
        """Should use fixed windows for text without separators."""
        text = "x" * 250
        spans = split_recursive(text, max_chars=100, overlap=10)

        assert all(len(span.text) <= 100 for span in spans)
        assert spans[0].start == 0
        assert spans[-1].end == 250

    def test_offsets_match_source(self) -> None:
        """Should report offsets that slice back to the chunk text."""
        text = "one\ntwo\nthree\nfour\nfive\nsix\n" * 8
        for span in split_recursive(text, max_chars=40, overlap=8):
            assert text[span.start : span.end] == span.text


class TestSegmentDocument:
    """Test segment_document function."""

    def test_splits_on_headings(self) -> None:
        """Should start a new chunk at every heading."""
        text = "# Intro\nCats are mammals.\n# Diet\nCats eat fish.\n"
        spans = segment_document(text, max_chars=1000)

        assert [span.text.splitlines()[0] for span in spans] == ["# Intro", "# Diet"]

    def test_keeps_preamble(self) -> None:
        """Should keep text before the first heading as its own chunk."""
        text = "Preamble line.\n# Heading\nBody.\n"
        spans = segment_document(text, max_chars=1000)

        assert spans[0].text == "Preamble line.\n"
        assert spans[1].text.startswith("# Heading")

    def test_whitespace_only(self) -> None:
        """Should produce no chunks for whitespace-only bodies."""
        assert segment_document("   \n\n\t  ") == []

    def test_respects_start_offset(self) -> None:
        """Should skip everything before the body offset."""
        text = "---\ntitle: x\n---\nBody text here."
        offset = text.index("Body")
        spans = segment_document(text, start=offset)

        assert len(spans) == 1
        assert spans[0].start == offset
        assert spans[0].text == "Body text here."

    def test_chunks_bounded_and_ordered(self) -> None:
        """Should keep every chunk within the size limit and in document order."""
        paragraphs = "\n\n".join(f"Paragraph {i} " + "word " * 30 for i in range(12))
        text = f"# Title\n{paragraphs}\n## Sub\n" + "tail " * 400
        spans = segment_document(text, max_chars=300, overlap=40)

        assert all(len(span.text) <= 300 for span in spans)
        starts = [span.start for span in spans]
        assert starts == sorted(starts)
        assert spans[-1].end == len(text)


class TestHelpers:
    """Test small text helpers."""

    def test_section_bounds_without_headings(self) -> None:
        """Should return no sections for text without headings."""
        assert section_bounds("plain text") == []

    def test_estimate_tokens(self) -> None:
        """Should round the character estimate up."""
        assert estimate_tokens("", 4) == 0
        assert estimate_tokens("abcde", 4) == 2
