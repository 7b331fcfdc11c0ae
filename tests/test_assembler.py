"""Tests for tiered context assembly."""

from __future__ import annotations

from vaultgraph.config import IndexConfig
from vaultgraph.context.assembler import (
    ContextAssembler,
    Tier,
    clip_to_tokens,
    extract_snippets,
)
from vaultgraph.models import ScoredResult


def _result(path: str, score: float, excerpt: str = "excerpt") -> ScoredResult:
    return ScoredResult(path=path, title=path[:-3], excerpt=excerpt, score=score)


TEXTS = {
    "A.md": "Alpha " * 500,
    "B.md": "Intro text. " * 50 + "cats eat fish here. " + "Filler text. " * 50,
    "C.md": "Gamma " * 100,
    "D.md": "Delta " * 100,
}


def _assembler(**overrides) -> ContextAssembler:
    config = IndexConfig(**overrides)
    return ContextAssembler(
        config,
        text_loader=TEXTS.get,
        header_loader=lambda path: ["Heading One", "Heading Two"] if path == "C.md" else [],
    )


class TestContextAssembler:
    """Test ContextAssembler class."""

    def test_tiers_relative_to_top_score(self) -> None:
        """Should place results in tiers by their score relative to the best one."""
        results = [_result("A.md", 0.8), _result("B.md", 0.6), _result("C.md", 0.4), _result("D.md", 0.1)]
        context = _assembler().assemble(results, "cats eat", budget=4000)

        assert [(item.path, item.tier) for item in context.items] == [
            ("A.md", Tier.PRIMARY),
            ("B.md", Tier.SUPPORTING),
            ("C.md", Tier.STRUCTURAL),
        ]
        assert context.items[2].content == "- Heading One\n- Heading Two"

    def test_budget_and_document_cap(self) -> None:
        """Should keep every item under the per-document cap and the total under budget."""
        results = [_result(f"Doc{i}.md", 1.0, "word " * 400) for i in range(30)]
        budget = 500
        context = _assembler().assemble(results, budget=budget)

        cap = int(budget * 0.10)
        assert context.used_tokens <= budget
        assert all(item.tokens <= cap for item in context.items)
        assert len(context.items) == 10

    def test_small_remaining_budget_clips(self) -> None:
        """Should clip the last item to what is left of the budget."""
        results = [_result("A.md", 1.0, "Alpha " * 100), _result("B.md", 1.0, "Beta " * 100)]
        context = _assembler(context_doc_cap_ratio=0.6).assemble(results, budget=100)

        assert [item.tokens for item in context.items] == [60, 40]
        assert context.used_tokens == 100

    def test_primary_oversized_uses_matched_excerpt(self) -> None:
        """Should send the matched span of a long primary document rather than its opening."""
        diet = "# Diet\nCats eat meat."
        long_doc = "Cats are mammals. " * 400 + diet
        assembler = ContextAssembler(IndexConfig(), text_loader={"Cats.md": long_doc}.get)

        context = assembler.assemble([_result("Cats.md", 0.9, diet)], "what do cats eat", budget=1000)

        assert context.items[0].tier is Tier.PRIMARY
        assert "eat meat" in context.items[0].content

    def test_primary_fitting_document_sent_whole(self) -> None:
        """Should keep the full text of a primary document that fits the cap."""
        assembler = ContextAssembler(IndexConfig(), text_loader={"Short.md": "Cats purr. Cats nap."}.get)

        context = assembler.assemble([_result("Short.md", 0.9, "Cats nap.")], budget=1000)

        assert context.items[0].content == "Cats purr. Cats nap."

    def test_structural_limit(self) -> None:
        """Should stop adding structural outlines past the configured limit."""
        results = [_result("Top.md", 1.0)] + [_result(f"S{i}.md", 0.5) for i in range(8)]
        context = _assembler(max_structural_docs=2).assemble(results, budget=4000)

        assert sum(1 for item in context.items if item.tier is Tier.STRUCTURAL) == 2

    def test_empty_inputs(self) -> None:
        """Should return an empty context for no results or no budget."""
        assembler = _assembler()

        assert assembler.assemble([], budget=100).items == []
        assert assembler.assemble([_result("A.md", 1.0)], budget=0).items == []
        assert assembler.assemble([_result("A.md", 0.0)], budget=100).items == []

    def test_render_and_dict(self) -> None:
        """Should render markdown blocks and a JSON-friendly dict."""
        context = _assembler().assemble([_result("A.md", 1.0)], budget=20)

        assert context.render().startswith("## A (A.md) [primary]\n")
        assert context.to_dict()["used_tokens"] == context.used_tokens


class TestHelpers:
    """Test assembler helpers."""

    def test_clip_to_tokens(self) -> None:
        """Should cut text to the character equivalent of the token allowance."""
        assert clip_to_tokens("abcdefghij", 2, 4) == "abcdefgh"
        assert clip_to_tokens("abc", 0) == ""

    def test_extract_snippets_around_terms(self) -> None:
        """Should keep windows around query terms."""
        snippet = extract_snippets(TEXTS["B.md"], "cats", max_chars=200)

        assert "cats eat fish" in snippet
        assert len(snippet) < len(TEXTS["B.md"])

    def test_extract_snippets_short_text(self) -> None:
        """Should return short text unchanged."""
        assert extract_snippets("short", "query", max_chars=100) == "short"
