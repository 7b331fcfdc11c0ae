"""Sparse keyword index built on BM25."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Collection, Dict, List, Sequence, Set

import numpy as np
from rank_bm25 import BM25L

from vaultgraph.utils.language import fuzzy_matches, tokenize

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class KeywordHit:
    chunk_id: str
    score: float


class KeywordIndex:
    """BM25L over chunk terms with stop-word stripping and fuzzy term expansion.

    BM25L keeps inverse document frequencies positive on tiny corpora, but it
    also assigns a floor score to documents that lack a term, so every term
    score is masked to the documents that actually contain it.
    """

    def __init__(self, *, language: str = "en") -> None:
        self.language = language
        self._ids: List[str] = []
        self._positions: Dict[str, int] = {}
        self._terms: List[List[str]] = []
        self._postings: Dict[str, Set[int]] = {}
        self._bm25: BM25L | None = None
        self._dirty = False

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._positions

    def analyze(self, text: str) -> List[str]:
        return tokenize(text, language=self.language)

    def add(self, chunk_id: str, terms: Sequence[str]) -> None:
        if chunk_id in self._positions:
            self.remove(chunk_id)
        position = len(self._ids)
        self._ids.append(chunk_id)
        self._terms.append(list(terms))
        self._positions[chunk_id] = position
        for term in set(terms):
            self._postings.setdefault(term, set()).add(position)
        self._dirty = True

    def remove(self, chunk_id: str) -> None:
        position = self._positions.pop(chunk_id, None)
        if position is None:
            return
        for term in set(self._terms[position]):
            postings = self._postings.get(term)
            if postings is not None:
                postings.discard(position)
                if not postings:
                    del self._postings[term]
        # Tombstone; compacted on the next rebuild.
        self._terms[position] = []
        self._dirty = True

    def clear(self) -> None:
        self._ids.clear()
        self._positions.clear()
        self._terms.clear()
        self._postings.clear()
        self._bm25 = None
        self._dirty = False

    def _compact(self) -> None:
        live = [(chunk_id, self._terms[pos]) for chunk_id, pos in sorted(self._positions.items(), key=lambda item: item[1])]
        self.clear()
        for position, (chunk_id, terms) in enumerate(live):
            self._ids.append(chunk_id)
            self._terms.append(terms)
            self._positions[chunk_id] = position
            for term in set(terms):
                self._postings.setdefault(term, set()).add(position)

    def _ensure_model(self) -> BM25L | None:
        if self._dirty or self._bm25 is None:
            if len(self._ids) != len(self._positions):
                self._compact()
            corpus = [terms or ["\x00"] for terms in self._terms]
            self._bm25 = BM25L(corpus) if corpus else None
            self._dirty = False
            LOGGER.debug("Rebuilt keyword index over %d chunks", len(corpus))
        return self._bm25

    def expand(self, token: str, tolerance: int) -> Dict[str, float]:
        """Vocabulary terms matching ``token`` with their weight, exact matches weighing 1."""
        if token in self._postings and tolerance <= 0:
            return {token: 1.0}
        matches = fuzzy_matches(token, self._postings.keys(), tolerance) if tolerance > 0 else {}
        if token in self._postings:
            matches[token] = 0
        return {term: 1.0 / (1 + distance) for term, distance in matches.items()}

    def query(
        self,
        text: str,
        *,
        limit: int = 10,
        tolerance: int = 2,
        only: Collection[str] | None = None,
    ) -> List[KeywordHit]:
        """Top ``limit`` chunks for ``text``, restricted to the ids in ``only`` when given."""
        tokens = list(dict.fromkeys(self.analyze(text)))
        if not tokens or not self._positions:
            return []
        model = self._ensure_model()
        if model is None:
            return []

        totals = np.zeros(len(self._ids), dtype="float64")
        for token in tokens:
            best = np.zeros(len(self._ids), dtype="float64")
            for term, weight in self.expand(token, tolerance).items():
                postings = self._postings.get(term)
                if not postings:
                    continue
                mask = np.zeros(len(self._ids), dtype=bool)
                mask[list(postings)] = True
                scores = np.asarray(model.get_scores([term]), dtype="float64") * weight
                best = np.maximum(best, np.where(mask, scores, 0.0))
            totals += best

        matched = np.flatnonzero(totals > 0)
        if only is not None:
            matched = np.array([pos for pos in matched if self._ids[pos] in only], dtype=np.intp)
        if matched.size == 0:
            return []
        order = matched[np.argsort(-totals[matched], kind="stable")][:limit]
        return [KeywordHit(self._ids[pos], float(totals[pos])) for pos in order]
