"""Hybrid search: parallel vector and keyword seeding with graph score propagation."""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from vaultgraph.config import IndexConfig
from vaultgraph.embedding.encoder import Embedder
from vaultgraph.graph.relationships import RelationshipGraph
from vaultgraph.index.hydrator import ResultHydrator
from vaultgraph.index.storage import ChunkHit, HybridIndex
from vaultgraph.ingestion.markdown_loader import default_title
from vaultgraph.models import CandidateOrigin, ScoredResult, SearchCandidate
from vaultgraph.utils.text import estimate_tokens

LOGGER = logging.getLogger(__name__)


def _candidate(hit: ChunkHit, score: float, origin: CandidateOrigin) -> SearchCandidate:
    return SearchCandidate(
        path=hit.path,
        score=score,
        origin=origin,
        chunk_id=hit.chunk_id,
        text=hit.text,
        start=hit.start,
        end=hit.end,
        anchor=hit.anchor,
    )


def calibrate(
    vector_hits: Sequence[ChunkHit],
    keyword_hits: Sequence[ChunkHit],
    *,
    hybrid_keyword_weight: float = 0.5,
    keyword_only_factor: float = 0.9,
) -> Dict[str, SearchCandidate]:
    """Blend bounded vector scores with locally normalised keyword scores, per chunk."""
    candidates: Dict[str, SearchCandidate] = {}
    for hit in vector_hits:
        candidate = _candidate(hit, hit.score, CandidateOrigin.VECTOR)
        candidate.vector_score = hit.score
        candidates[hit.chunk_id] = candidate

    max_keyword = max((hit.score for hit in keyword_hits), default=0.0)
    if max_keyword <= 0:
        return candidates

    for hit in keyword_hits:
        normalized = hit.score / max_keyword
        existing = candidates.get(hit.chunk_id)
        if existing is not None:
            existing.keyword_score = normalized
            existing.score = existing.vector_score + hybrid_keyword_weight * normalized
        else:
            candidate = _candidate(hit, keyword_only_factor * normalized, CandidateOrigin.KEYWORD)
            candidate.keyword_score = normalized
            candidates[hit.chunk_id] = candidate
    return candidates


def max_pool(candidates: Iterable[SearchCandidate]) -> Dict[str, SearchCandidate]:
    """Keep the best-scoring chunk of each document."""
    pooled: Dict[str, SearchCandidate] = {}
    for candidate in candidates:
        best = pooled.get(candidate.path)
        if best is None or candidate.score > best.score:
            pooled[candidate.path] = candidate
    return pooled


def propagated_score(seed_score: float, seed_degree: int, decay: float = 0.8) -> float:
    """Score handed to a one-hop neighbour, diluted by the seed's connectivity."""
    return seed_score * decay / max(1.0, math.log2(seed_degree + 1))


def _ranked(candidates: Iterable[SearchCandidate]) -> List[SearchCandidate]:
    return sorted(candidates, key=lambda c: (-c.score, c.path))


class SearchOrchestrator:
    """Runs the Seed, Expand, Score, Budget, Hydrate and Return stages of one query."""

    def __init__(
        self,
        index: HybridIndex,
        graph: RelationshipGraph,
        embedder: Embedder,
        config: IndexConfig,
        *,
        hydrator: ResultHydrator | None = None,
        title_for: Callable[[str], Optional[str]] | None = None,
    ) -> None:
        self.index = index
        self.graph = graph
        self.embedder = embedder
        self.config = config
        self.hydrator = hydrator or ResultHydrator(search_range=config.hydration_search_range)
        self._title_for = title_for
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="vaultgraph-seed")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # -- seed ------------------------------------------------------------

    def _vector_seed(self, query: str, limit: int, paths: Sequence[str] | None) -> List[ChunkHit]:
        vector = self.embedder.embed_query(query)
        return self.index.query_vector(
            vector, limit=limit, min_similarity=self.config.min_similarity, paths=paths
        )

    def _keyword_seed(self, query: str, limit: int, paths: Sequence[str] | None) -> List[ChunkHit]:
        return self.index.query_keyword(
            query, limit=limit, tolerance=self.config.fuzzy_tolerance, paths=paths
        )

    def seed(
        self,
        query: str,
        *,
        limit: int | None = None,
        paths: Sequence[str] | None = None,
        vector: bool = True,
        keyword: bool = True,
    ) -> tuple[List[ChunkHit], List[ChunkHit]]:
        """Run both modalities in parallel; a failing modality contributes nothing."""
        limit = limit or self.config.deep_search_limit
        futures = {}
        if vector:
            futures["vector"] = self._executor.submit(self._vector_seed, query, limit, paths)
        if keyword:
            futures["keyword"] = self._executor.submit(self._keyword_seed, query, limit, paths)

        results: Dict[str, List[ChunkHit]] = {"vector": [], "keyword": []}
        for name, future in futures.items():
            try:
                results[name] = future.result()
            except Exception:
                LOGGER.warning("%s sub-query failed for %r", name.capitalize(), query, exc_info=True)
        return results["vector"], results["keyword"]

    # -- expand ----------------------------------------------------------

    def expand(self, pooled: Dict[str, SearchCandidate]) -> Dict[str, SearchCandidate]:
        """Propagate seed scores to one-hop graph neighbours not already matched."""
        decay = self.config.weights.propagation_decay
        seeds = _ranked(pooled.values())[: self.config.expansion_seeds_limit]
        propagated: Dict[str, SearchCandidate] = {}

        for seed in seeds:
            degree = self.graph.degree(seed.path)
            if degree == 0:
                continue
            score = propagated_score(seed.score, degree, decay)
            neighbors = [
                n for n in self.graph.neighbors(seed.path) if n not in pooled and self.graph.is_retrievable(n)
            ][: self.config.max_neighbors_per_node]
            for neighbor in neighbors:
                best = propagated.get(neighbor)
                if best is None or score > best.score:
                    propagated[neighbor] = SearchCandidate(
                        path=neighbor, score=score, origin=CandidateOrigin.GRAPH, seed=seed.path
                    )
        return propagated

    # -- budget / hydrate / return --------------------------------------

    def _token_cost(self, candidate: SearchCandidate) -> int:
        if candidate.is_hydrated:
            return estimate_tokens(candidate.text, self.config.chars_per_token)
        return self.config.graph_candidate_token_estimate

    def budget(self, ranked: Sequence[SearchCandidate], limit: int) -> List[SearchCandidate]:
        """Accept candidates in rank order until the token budget or ``limit`` is reached."""
        accepted: List[SearchCandidate] = []
        used = 0
        for candidate in ranked:
            if len(accepted) >= limit:
                break
            cost = self._token_cost(candidate)
            if accepted and used + cost > self.config.payload_token_budget:
                break
            accepted.append(candidate)
            used += cost
        return accepted

    def hydrate(self, candidates: Sequence[SearchCandidate]) -> None:
        graph_only = [c for c in candidates if c.chunk_id is None]
        if graph_only:
            first = self.index.first_chunks([c.path for c in graph_only])
            for candidate in graph_only:
                hit = first.get(candidate.path)
                if hit is None:
                    continue
                candidate.chunk_id = hit.chunk_id
                candidate.text = hit.text
                candidate.start = hit.start
                candidate.end = hit.end
                candidate.anchor = hit.anchor
        self.hydrator.hydrate(candidates)

    def title(self, path: str) -> str:
        if self._title_for is not None:
            title = self._title_for(path)
            if title:
                return title
        document = self.index.get_document(path)
        if document is not None and document.title:
            return document.title
        return default_title(path)

    def finalize(self, candidates: Sequence[SearchCandidate], limit: int) -> List[ScoredResult]:
        """Globally re-normalise so scores land in ``[0, 1]`` without upscaling weak sets."""
        if not candidates:
            return []
        divisor = max(max(c.score for c in candidates), 1.0)
        results = [
            ScoredResult(
                path=c.path,
                title=self.title(c.path),
                excerpt=c.text,
                score=min(1.0, max(0.0, c.score / divisor)),
                start=c.start,
                end=c.end,
            )
            for c in candidates
        ]
        results.sort(key=lambda r: -r.score)
        return results[:limit]

    def _run(
        self,
        query: str,
        limit: int,
        *,
        paths: Sequence[str] | None = None,
        vector: bool = True,
        keyword: bool = True,
        expand: bool = True,
    ) -> List[ScoredResult]:
        if not query.strip() or limit <= 0:
            return []
        vector_hits, keyword_hits = self.seed(query, paths=paths, vector=vector, keyword=keyword)
        weights = self.config.weights
        candidates = calibrate(
            vector_hits,
            keyword_hits,
            hybrid_keyword_weight=weights.hybrid_keyword_weight,
            keyword_only_factor=weights.keyword_only_factor,
        )
        pooled = max_pool(candidates.values())
        if expand and pooled:
            pooled.update(self.expand(pooled))

        accepted = self.budget(_ranked(pooled.values()), limit)
        self.hydrate(accepted)
        LOGGER.debug(
            "Query %r: %d vector, %d keyword hits, %d accepted",
            query,
            len(vector_hits),
            len(keyword_hits),
            len(accepted),
        )
        return self.finalize(accepted, limit)

    def search(self, query: str, limit: int = 10) -> List[ScoredResult]:
        return self._run(query, limit)

    def keyword_search(self, query: str, limit: int = 10) -> List[ScoredResult]:
        return self._run(query, limit, vector=False, expand=False)

    def search_in_paths(self, query: str, paths: Sequence[str], limit: int = 10) -> List[ScoredResult]:
        if not paths:
            return []
        return self._run(query, limit, paths=list(paths), expand=False)

    def similar(self, path: str, limit: int = 10) -> List[ScoredResult]:
        """Documents closest to ``path`` by mean chunk vector."""
        vector = self.index.document_vector(path)
        if vector is None:
            return []
        hits = self.index.query_vector(
            vector,
            limit=self.config.deep_search_limit,
            min_similarity=self.config.min_similarity,
            exclude=[path],
        )
        pooled = max_pool(_candidate(hit, hit.score, CandidateOrigin.VECTOR) for hit in hits)
        accepted = self.budget(_ranked(pooled.values()), limit)
        self.hydrate(accepted)
        return self.finalize(accepted, limit)
