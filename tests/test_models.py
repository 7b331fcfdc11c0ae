"""Tests for core data models."""

from __future__ import annotations

import pytest

from vaultgraph.models import (
    CandidateOrigin,
    Chunk,
    GraphNode,
    ListProperty,
    NodeKind,
    ScoredResult,
    SearchCandidate,
    TextProperty,
    chunk_id,
)


class TestChunk:
    """Test Chunk dataclass."""

    def test_id(self) -> None:
        """Should derive the id from path and position."""
        chunk = Chunk(document_path="Notes/Cats.md", index=2, text="Cats.", start=10, end=15)

        assert chunk.id == "Notes/Cats.md#2"
        assert chunk.id == chunk_id("Notes/Cats.md", 2)

    def test_embedding_text_with_header(self) -> None:
        """Should prefix the context header."""
        chunk = Chunk(document_path="a.md", index=0, text="Body", start=0, end=4, context_header="Title: A")

        assert chunk.embedding_text() == "Title: A\n\nBody"

    def test_embedding_text_without_header(self) -> None:
        """Should embed the bare text when there is no header."""
        chunk = Chunk(document_path="a.md", index=0, text="Body", start=0, end=4)

        assert chunk.embedding_text() == "Body"

    def test_mutable_defaults_not_shared(self) -> None:
        """Should give each chunk its own links list."""
        first = Chunk(document_path="a.md", index=0, text="", start=0, end=0)
        second = Chunk(document_path="b.md", index=0, text="", start=0, end=0)
        first.links.append("x.md")

        assert second.links == []


class TestGraphNode:
    """Test GraphNode dataclass."""

    @pytest.mark.parametrize(
        ("kind", "size", "expected"),
        [
            (NodeKind.FILE, 10, True),
            (NodeKind.FILE, 0, False),
            (NodeKind.TOPIC, 10, False),
            (NodeKind.TAG, 10, False),
        ],
    )
    def test_is_retrievable(self, kind: NodeKind, size: int, expected: bool) -> None:
        """Should only retrieve non-empty file nodes."""
        assert GraphNode(path="x", kind=kind, size=size).is_retrievable is expected


class TestProperties:
    """Test frontmatter property values."""

    def test_text_property(self) -> None:
        """Should drop empty scalars."""
        assert TextProperty("Topic").values() == ["Topic"]
        assert TextProperty("").values() == []

    def test_list_property(self) -> None:
        """Should drop empty items."""
        assert ListProperty(("a", "", "b")).values() == ["a", "b"]


class TestCandidatesAndResults:
    """Test SearchCandidate and ScoredResult."""

    def test_candidate_hydration(self) -> None:
        """Should count as hydrated once it carries text."""
        candidate = SearchCandidate(path="a.md", score=0.5, origin=CandidateOrigin.GRAPH)
        assert not candidate.is_hydrated

        candidate.text = "Alpha"
        assert candidate.is_hydrated

    def test_origin_values(self) -> None:
        """Should expose stable origin labels."""
        assert CandidateOrigin.GRAPH.value == "graph-propagated"
        assert CandidateOrigin.VECTOR.value == "direct-vector"

    def test_result_to_dict(self) -> None:
        """Should serialise every field."""
        result = ScoredResult(path="a.md", title="A", excerpt="Alpha", score=0.9, start=0, end=5)

        assert result.to_dict() == {
            "path": "a.md",
            "title": "A",
            "excerpt": "Alpha",
            "score": 0.9,
            "start": 0,
            "end": 5,
        }
