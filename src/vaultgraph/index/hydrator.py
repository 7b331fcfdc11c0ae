"""Fills in chunk text for results whose stored text was hollowed out."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from vaultgraph.models import SearchCandidate
from vaultgraph.utils.files import anchor_hash, anchor_hashes

LOGGER = logging.getLogger(__name__)

ContentLoader = Callable[[str], Optional[str]]

DRIFT_MARKER = "[content moved since indexing] "


class ResultHydrator:
    """Reload chunk text from source documents and realign it with the stored anchor.

    Documents can be edited after they were indexed. The stored anchor hash is
    used to slide a window of the original chunk length within
    ``search_range`` characters of the recorded offsets until the text matches
    again. Paths whose chunks cannot be realigned are collected in
    :attr:`drifted` so the caller can re-index them.
    """

    def __init__(self, content_loader: ContentLoader | None = None, *, search_range: int = 2000) -> None:
        self.content_loader = content_loader
        self.search_range = search_range
        self.drifted: set[str] = set()

    def realign(self, content: str, start: int, end: int, anchor: int) -> Optional[tuple[int, int]]:
        length = end - start
        if length <= 0:
            return None
        if anchor_hash(content[start:end]) == anchor:
            return start, end
        low = max(start - self.search_range, 0)
        high = min(start + self.search_range, len(content) - length)
        if high < low:
            return None
        window = content[low : high + length]
        offsets = np.arange(high - low + 1)
        matches = offsets[anchor_hashes(window, offsets, length) == anchor] + low
        if matches.size == 0:
            return None
        # nearest to the recorded offset, earlier one on ties
        best = int(matches[np.lexsort((matches, np.abs(matches - start)))[0]])
        return best, best + length

    def hydrate(self, candidates: Sequence[SearchCandidate]) -> List[SearchCandidate]:
        """Hydrate candidates lacking text in place; returns the ones still empty."""
        pending = [c for c in candidates if not c.is_hydrated and c.start is not None and c.end is not None]
        if not pending or self.content_loader is None:
            return [c for c in candidates if not c.is_hydrated]

        cache: Dict[str, Optional[str]] = {}
        for candidate in pending:
            if candidate.path not in cache:
                try:
                    cache[candidate.path] = self.content_loader(candidate.path)
                except OSError as exc:
                    LOGGER.warning("Could not load %s for hydration: %s", candidate.path, exc)
                    cache[candidate.path] = None
            content = cache[candidate.path]
            if not content:
                continue

            aligned = self.realign(content, candidate.start, candidate.end, candidate.anchor)
            if aligned is None:
                LOGGER.info("Chunk %s drifted beyond realignment range", candidate.chunk_id)
                self.drifted.add(candidate.path)
                candidate.text = DRIFT_MARKER + content[candidate.start : candidate.end]
                continue
            candidate.start, candidate.end = aligned
            candidate.text = content[aligned[0] : aligned[1]]

        return [c for c in candidates if not c.is_hydrated]

    def take_drifted(self) -> List[str]:
        drifted = sorted(self.drifted)
        self.drifted.clear()
        return drifted
