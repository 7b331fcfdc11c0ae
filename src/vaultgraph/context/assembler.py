"""Tiered context assembly under a hard token budget."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence

from vaultgraph.config import IndexConfig
from vaultgraph.models import ScoredResult
from vaultgraph.utils.language import tokenize
from vaultgraph.utils.text import estimate_tokens

LOGGER = logging.getLogger(__name__)

TextLoader = Callable[[str], Optional[str]]
HeaderLoader = Callable[[str], Sequence[str]]

SNIPPET_SEPARATOR = "\n...\n"


class Tier(str, Enum):
    PRIMARY = "primary"
    SUPPORTING = "supporting"
    STRUCTURAL = "structural"
    FILTERED = "filtered"


@dataclass(slots=True)
class ContextItem:
    path: str
    title: str
    tier: Tier
    score: float
    content: str
    tokens: int

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "title": self.title,
            "tier": self.tier.value,
            "score": self.score,
            "content": self.content,
            "tokens": self.tokens,
        }


@dataclass(slots=True)
class AssembledContext:
    budget: int
    items: List[ContextItem] = field(default_factory=list)

    @property
    def used_tokens(self) -> int:
        return sum(item.tokens for item in self.items)

    def render(self) -> str:
        blocks = []
        for item in self.items:
            blocks.append(f"## {item.title} ({item.path}) [{item.tier.value}]\n{item.content}")
        return "\n\n".join(blocks)

    def to_dict(self) -> dict:
        return {
            "budget": self.budget,
            "used_tokens": self.used_tokens,
            "items": [item.to_dict() for item in self.items],
        }


def clip_to_tokens(text: str, tokens: int, chars_per_token: int = 4) -> str:
    """Longest prefix of ``text`` whose estimated cost fits in ``tokens``."""
    if tokens <= 0:
        return ""
    return text[: tokens * chars_per_token]


def extract_snippets(text: str, query: str, *, max_chars: int, language: str = "en") -> str:
    """Windows of ``text`` around the first occurrence of each query term."""
    if len(text) <= max_chars:
        return text
    terms = tokenize(query, language=language)
    lowered = text.lower()
    hits = sorted({pos for pos in (lowered.find(term) for term in terms) if pos >= 0})
    if not hits:
        return text[:max_chars]

    radius = max(max_chars // (2 * len(hits)), 40)
    windows: List[List[int]] = []
    for pos in hits:
        start, end = max(0, pos - radius), min(len(text), pos + radius)
        if windows and start <= windows[-1][1]:
            windows[-1][1] = max(windows[-1][1], end)
        else:
            windows.append([start, end])
    return SNIPPET_SEPARATOR.join(text[start:end].strip() for start, end in windows)


class ContextAssembler:
    """Decide per result how much content to materialise.

    Tiers are relative to the top score so the assembly adapts to the shape of
    the result set. Every document is held to a soft cap of
    ``context_doc_cap_ratio`` of the budget and the running total never
    exceeds the budget.
    """

    def __init__(
        self,
        config: IndexConfig,
        *,
        text_loader: TextLoader | None = None,
        header_loader: HeaderLoader | None = None,
    ) -> None:
        self.config = config
        self.text_loader = text_loader
        self.header_loader = header_loader

    def tier_for(self, relative: float) -> Tier:
        if relative >= self.config.context_primary_threshold:
            return Tier.PRIMARY
        if relative >= self.config.context_supporting_threshold:
            return Tier.SUPPORTING
        if relative >= self.config.context_structural_threshold:
            return Tier.STRUCTURAL
        return Tier.FILTERED

    def _full_text(self, result: ScoredResult) -> str:
        if self.text_loader is not None:
            text = self.text_loader(result.path)
            if text:
                return text
        return result.excerpt

    def _outline(self, result: ScoredResult) -> str:
        headers = list(self.header_loader(result.path)) if self.header_loader is not None else []
        if not headers:
            return result.title
        return "\n".join(f"- {header}" for header in headers)

    def assemble(
        self, results: Sequence[ScoredResult], query: str = "", *, budget: int | None = None
    ) -> AssembledContext:
        budget = self.config.payload_token_budget if budget is None else budget
        context = AssembledContext(budget=budget)
        if not results or budget <= 0:
            return context

        top = max(result.score for result in results)
        if top <= 0:
            return context

        chars_per_token = self.config.chars_per_token
        cap = max(1, int(budget * self.config.context_doc_cap_ratio))
        remaining = budget
        structural = 0

        for result in list(results)[: self.config.context_max_files]:
            tier = self.tier_for(result.score / top)
            if tier is Tier.FILTERED:
                continue
            if tier is Tier.STRUCTURAL:
                if structural >= self.config.max_structural_docs:
                    continue
                content = self._outline(result)
            elif tier is Tier.PRIMARY:
                content = self._full_text(result)
                # oversized documents fall back to the matched span
                if estimate_tokens(content, chars_per_token) > cap and result.excerpt:
                    content = result.excerpt
            else:
                content = extract_snippets(
                    self._full_text(result),
                    query,
                    max_chars=cap * chars_per_token,
                    language=self.config.language,
                )

            allowed = min(cap, remaining)
            content = clip_to_tokens(content, allowed, chars_per_token)
            tokens = estimate_tokens(content, chars_per_token)
            if tokens == 0:
                continue
            if tier is Tier.STRUCTURAL:
                structural += 1

            context.items.append(
                ContextItem(
                    path=result.path,
                    title=result.title,
                    tier=tier,
                    score=result.score,
                    content=content,
                    tokens=tokens,
                )
            )
            remaining -= tokens
            if remaining <= 0:
                break

        LOGGER.debug("Assembled %d items using %d/%d tokens", len(context.items), context.used_tokens, budget)
        return context
