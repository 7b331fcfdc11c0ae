"""Indexing session: the explicit handle owning index, graph and configuration."""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional, Sequence

import numpy as np

from vaultgraph.config import IndexConfig
from vaultgraph.context.assembler import AssembledContext, ContextAssembler
from vaultgraph.embedding.encoder import Embedder
from vaultgraph.errors import (
    AuthenticationError,
    CircuitOpenError,
    RateLimitError,
    SnapshotError,
    WorkerCrashedError,
)
from vaultgraph.graph.relationships import Direction, RelationshipGraph
from vaultgraph.index.hydrator import ContentLoader, ResultHydrator
from vaultgraph.index.persistence import encode_snapshot, open_snapshot
from vaultgraph.index.search import SearchOrchestrator
from vaultgraph.index.storage import HybridIndex
from vaultgraph.ingestion.markdown_loader import (
    ParsedDocument,
    alias_keys,
    build_chunks,
    parse_document,
    tag_node_id,
)
from vaultgraph.models import Chunk, DocumentMetadata, EdgeSource, GraphNode, NodeKind, ScoredResult
from vaultgraph.utils.files import is_excluded, iter_markdown_paths, sha256_text
from vaultgraph.utils.links import normalize_path
from vaultgraph.utils.locks import KeyedLocks, ReadWriteLock

LOGGER = logging.getLogger(__name__)

EMBED_BATCH_SIZE = 32

# Failures of the embedding provider itself; retrying chunk by chunk cannot help.
_PROVIDER_ERRORS = (AuthenticationError, CircuitOpenError, RateLimitError, WorkerCrashedError)


@dataclass(slots=True)
class IndexStats:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    removed: int = 0
    processed_files: list[str] = field(default_factory=list)

    def increment(self, status: str, path: str) -> None:
        if status == "inserted":
            self.inserted += 1
        elif status == "updated":
            self.updated += 1
        elif status in ("skipped", "empty"):
            self.skipped += 1
        else:
            self.failed += 1
        self.processed_files.append(path)


def vault_loader(root: Path) -> ContentLoader:
    """Content loader reading vault-relative paths from ``root``."""
    root = Path(root)

    def load(path: str) -> Optional[str]:
        target = root / path
        if not target.is_file():
            return None
        return target.read_text(encoding="utf-8", errors="replace")

    return load


class IndexSession:
    """Owns one hybrid index, its relationship graph and the active configuration.

    Updates to the same document are serialised through per-path locks and
    share a reader/writer lock with queries; resets, snapshot loads and index
    clears take that lock exclusively.
    """

    def __init__(
        self,
        config: IndexConfig | None = None,
        embedder: Embedder | None = None,
        *,
        content_loader: ContentLoader | None = None,
    ) -> None:
        if embedder is None:
            raise ValueError("IndexSession requires an embedder")
        config = config or IndexConfig(embedding_model=embedder.model_name)
        if embedder.dimension != config.embedding_dimension:
            LOGGER.info(
                "Embedder reports dimension %d, overriding configured %d",
                embedder.dimension,
                config.embedding_dimension,
            )
            config = config.merged({"embedding_dimension": embedder.dimension})

        self.config = config
        self.embedder = embedder
        self.content_loader = content_loader
        self._rw = ReadWriteLock()
        self._path_locks = KeyedLocks()
        self._build()

    @classmethod
    def initialize(
        cls,
        config: IndexConfig | Mapping[str, Any] | None,
        embedder: Embedder,
        *,
        content_loader: ContentLoader | None = None,
    ) -> "IndexSession":
        if isinstance(config, Mapping):
            config = IndexConfig().merged(config)
        return cls(config, embedder, content_loader=content_loader)

    def _build(self) -> None:
        config = self.config
        self.index = HybridIndex(dimension=config.embedding_dimension, language=config.language)
        self.graph = RelationshipGraph(
            ontology_path=config.ontology_path,
            hub_min_degree=config.hub_min_degree,
            hub_penalty=config.hub_penalty,
            sibling_decay=config.sibling_decay,
        )
        self.hydrator = ResultHydrator(self.content_loader, search_range=config.hydration_search_range)
        self.orchestrator = SearchOrchestrator(
            self.index,
            self.graph,
            self.embedder,
            config,
            hydrator=self.hydrator,
            title_for=self._title_for,
        )
        self.assembler = ContextAssembler(
            config, text_loader=self.document_text, header_loader=self._headers_for
        )

    def close(self) -> None:
        self.orchestrator.close()
        self.index.close()

    def _title_for(self, path: str) -> Optional[str]:
        node = self.graph.node(path)
        return node.title if node is not None and node.title else None

    def _headers_for(self, path: str) -> List[str]:
        node = self.graph.node(path)
        return list(node.headers) if node is not None else []

    # -- write path ------------------------------------------------------

    def _embed_chunks(self, chunks: Sequence[Chunk]) -> tuple[List[Chunk], np.ndarray]:
        """Embed chunks in batches; a chunk that fails on its own is skipped."""
        kept: List[Chunk] = []
        vectors: List[np.ndarray] = []
        for start in range(0, len(chunks), EMBED_BATCH_SIZE):
            batch = list(chunks[start : start + EMBED_BATCH_SIZE])
            try:
                embedded = self.embedder.embed([chunk.embedding_text() for chunk in batch])
                kept.extend(batch)
                vectors.extend(np.asarray(embedded, dtype="float32"))
                continue
            except _PROVIDER_ERRORS:
                raise
            except Exception as exc:
                LOGGER.warning("Batch embedding failed (%s); retrying chunk by chunk", exc)

            for chunk in batch:
                try:
                    vectors.append(np.asarray(self.embedder.embed([chunk.embedding_text()])[0], dtype="float32"))
                    kept.append(chunk)
                except _PROVIDER_ERRORS:
                    raise
                except Exception as exc:
                    LOGGER.error("Skipping chunk %s: %s", chunk.id, exc)

        matrix = np.vstack(vectors) if vectors else np.zeros((0, self.config.embedding_dimension), dtype="float32")
        return kept, matrix

    def _link_document(self, parsed: ParsedDocument) -> None:
        config = self.config
        base_dir = posixpath.dirname(parsed.path)
        graph = self.graph
        graph.clear_outgoing(parsed.path)

        for reference in parsed.body_links:
            graph.add_edge(parsed.path, graph.resolve(reference, base_dir=base_dir), EdgeSource.BODY, config.body_edge_weight)
        for reference in parsed.frontmatter_links:
            graph.add_edge(
                parsed.path, graph.resolve(reference, base_dir=base_dir), EdgeSource.FRONTMATTER, config.frontmatter_edge_weight
            )
        for reference in parsed.semantic_refs:
            graph.add_edge(
                parsed.path, graph.resolve(reference, base_dir=base_dir), EdgeSource.SEMANTIC, config.semantic_edge_weight
            )
        for tag in parsed.tags:
            graph.add_edge(
                parsed.path, tag_node_id(tag), EdgeSource.SEMANTIC, config.semantic_edge_weight, target_kind=NodeKind.TAG
            )

    def update_file(
        self,
        path: str,
        content: str,
        mtime: float = 0.0,
        size: int | None = None,
        title: str | None = None,
        links: Sequence[str] = (),
    ) -> str:
        """Index one document; returns ``inserted``, ``updated``, ``skipped`` or ``empty``."""
        path = normalize_path(path)
        if is_excluded(path, self.config.excluded_folders):
            LOGGER.debug("Ignoring excluded document %s", path)
            return "skipped"

        digest = sha256_text(content)
        with self._rw.shared(), self._path_locks.hold(path):
            existing = self.index.get_document(path)
            if existing is not None and existing.sha256 == digest and path in self.graph:
                return "skipped"

            parsed = parse_document(
                path,
                content,
                title=title,
                semantic_properties=self.config.semantic_properties,
                extra_links=links,
            )
            chunks = build_chunks(
                parsed,
                max_chars=self.config.chunk_chars,
                overlap=self.config.chunk_overlap,
                header_properties=self.config.context_header_properties,
            )
            kept, vectors = self._embed_chunks(chunks)

            document = DocumentMetadata(
                path=path,
                title=parsed.title,
                sha256=digest,
                mtime=mtime,
                size=size if size is not None else len(content.encode("utf-8")),
            )
            status = self.index.upsert_document(document, kept, vectors)

            self.graph.add_or_update_node(
                GraphNode(
                    path=path,
                    kind=NodeKind.FILE,
                    mtime=mtime,
                    size=document.size,
                    hash=digest,
                    title=parsed.title,
                    headers=parsed.headers,
                )
            )
            self.graph.register_aliases(path, alias_keys(parsed))
            self._link_document(parsed)

        if not chunks:
            LOGGER.debug("Document %s has no indexable body", path)
            return "empty"
        LOGGER.debug("Indexed %s: %d chunks (%s)", path, len(kept), status)
        return status

    def delete_file(self, path: str) -> None:
        path = normalize_path(path)
        with self._rw.shared(), self._path_locks.hold(path):
            self.index.delete_by_path(path)
            if self.graph.in_degree(path) > 0:
                self.graph.demote(path)
            else:
                self.graph.remove_node(path)

    def rename_file(self, old_path: str, new_path: str) -> None:
        old_path, new_path = normalize_path(old_path), normalize_path(new_path)
        if old_path == new_path:
            return
        first, second = sorted((old_path, new_path))
        with self._rw.shared(), self._path_locks.hold(first), self._path_locks.hold(second):
            self.index.rename_document(old_path, new_path)
            self.graph.rename_node(old_path, new_path)

    def prune_orphans(self, paths: Iterable[str]) -> List[str]:
        """Drop indexed documents that are not in ``paths``."""
        keep = {normalize_path(path) for path in paths}
        removed = [path for path in self.index.paths() if path not in keep]
        removed += [
            node.path
            for node in self.graph.nodes(NodeKind.FILE)
            if node.path not in keep and node.path not in removed
        ]
        for path in removed:
            self.delete_file(path)
        if removed:
            LOGGER.info("Pruned %d orphaned documents", len(removed))
        return removed

    def update_alias_map(self, mapping: Mapping[str, str]) -> None:
        with self._rw.shared():
            self.graph.update_alias_map(mapping)

    # -- read path -------------------------------------------------------

    def search(self, query: str, limit: int = 10) -> List[ScoredResult]:
        with self._rw.shared():
            return self.orchestrator.search(query, limit)

    def keyword_search(self, query: str, limit: int = 10) -> List[ScoredResult]:
        with self._rw.shared():
            return self.orchestrator.keyword_search(query, limit)

    def search_in_paths(self, query: str, paths: Sequence[str], limit: int = 10) -> List[ScoredResult]:
        with self._rw.shared():
            return self.orchestrator.search_in_paths(query, [normalize_path(p) for p in paths], limit)

    def get_similar(self, path: str, limit: int = 10) -> List[ScoredResult]:
        with self._rw.shared():
            return self.orchestrator.similar(normalize_path(path), limit)

    def get_neighbors(
        self,
        path: str,
        *,
        direction: Direction = "both",
        mode: Literal["simple", "ontology"] = "simple",
        limit: int | None = None,
    ) -> List[ScoredResult]:
        """Direct neighbours score 1; ontology mode adds hub siblings with decayed scores."""
        path = normalize_path(path)
        with self._rw.shared():
            scores: Dict[str, float] = {
                neighbor: 1.0
                for neighbor in self.graph.neighbors(path, direction)
                if self.graph.is_retrievable(neighbor)
            }
            if mode == "ontology":
                for sibling, score in self.graph.siblings(path, direction=direction).items():
                    if self.graph.is_retrievable(sibling) and sibling not in scores:
                        scores[sibling] = score

            ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
            if limit is not None:
                ranked = ranked[:limit]
            first = self.index.first_chunks([p for p, _ in ranked])
            results = []
            for neighbor, score in ranked:
                hit = first.get(neighbor)
                results.append(
                    ScoredResult(
                        path=neighbor,
                        title=self.orchestrator.title(neighbor),
                        excerpt=hit.text if hit else "",
                        score=score,
                        start=hit.start if hit else None,
                        end=hit.end if hit else None,
                    )
                )
            return results

    def get_centrality(self, path: str) -> float:
        with self._rw.shared():
            return self.graph.centrality(normalize_path(path))

    def get_batch_centrality(self, paths: Sequence[str]) -> Dict[str, float]:
        with self._rw.shared():
            return {path: self.graph.centrality(normalize_path(path)) for path in paths}

    def get_batch_metadata(self, paths: Sequence[str]) -> Dict[str, dict]:
        with self._rw.shared():
            result = {}
            for path in paths:
                metadata = self.graph.metadata(normalize_path(path))
                if metadata is not None:
                    result[path] = metadata
            return result

    def get_file_states(self) -> Dict[str, dict]:
        with self._rw.shared():
            return self.graph.file_states()

    def document_text(self, path: str) -> Optional[str]:
        """Source text from the content loader, else rebuilt from stored chunk spans."""
        if self.content_loader is not None:
            try:
                text = self.content_loader(path)
            except OSError as exc:
                LOGGER.warning("Could not read %s: %s", path, exc)
                text = None
            if text:
                return text

        pieces: List[str] = []
        cursor = 0
        for hit in sorted(self.index.get_chunks(path), key=lambda h: h.start):
            if not hit.text or hit.end <= cursor:
                continue
            offset = max(cursor - hit.start, 0)
            pieces.append(hit.text[offset:])
            cursor = hit.end
        return "".join(pieces) or None

    def assemble_context(self, query: str, limit: int = 20, *, budget: int | None = None) -> AssembledContext:
        results = self.search(query, limit)
        with self._rw.shared():
            return self.assembler.assemble(results, query, budget=budget)

    def drifted_paths(self) -> List[str]:
        """Documents whose chunks no longer line up with their source; re-index them."""
        return self.hydrator.take_drifted()

    # -- state -----------------------------------------------------------

    def save_index(self, tier: Literal["hot", "cold"] = "hot") -> bytes:
        cold = tier == "cold"
        with self._rw.shared():
            return encode_snapshot(
                self.index, self.graph, self.config.model_identity, hollow=cold, compress=cold
            )

    def load_index(self, data: bytes) -> bool:
        """Replace the state with a snapshot; incompatible snapshots reset and return False."""
        with self._rw.exclusive():
            try:
                conn, info = open_snapshot(data, self.config.model_identity)
            except SnapshotError as exc:
                LOGGER.warning("Snapshot rejected: %s. Resetting index.", exc)
                self._reset_unlocked()
                return False

            try:
                self.index.restore(conn)
                self.graph.from_sqlite(conn)
            finally:
                conn.close()
        LOGGER.info(
            "Loaded %s snapshot: %d chunks, %d graph nodes",
            "cold" if info.hollow else "hot",
            self.index.chunk_count(),
            len(self.graph),
        )
        return True

    def update_config(self, partial: Mapping[str, Any]) -> IndexConfig:
        """Apply a partial config; changes to model identity or language start a fresh index."""
        new_config = self.config.merged(partial)
        with self._rw.exclusive():
            rebuild = (
                new_config.model_identity != self.config.model_identity
                or new_config.language != self.config.language
            )
            if rebuild:
                LOGGER.warning("Embedding model or language changed; index must be rebuilt")
                self.config = new_config
                self.orchestrator.close()
                self.index.close()
                self._build()
            else:
                self.orchestrator.config = new_config
                self.assembler.config = new_config
                self.hydrator.search_range = new_config.hydration_search_range
                self.graph.configure(
                    ontology_path=new_config.ontology_path,
                    hub_min_degree=new_config.hub_min_degree,
                    hub_penalty=new_config.hub_penalty,
                    sibling_decay=new_config.sibling_decay,
                )
                self.config = new_config
        return new_config

    def _reset_unlocked(self) -> None:
        self.index.clear()
        self.graph.clear()

    def full_reset(self) -> None:
        with self._rw.exclusive():
            self._reset_unlocked()
        LOGGER.info("Index and graph reset")

    def clear_index(self) -> None:
        """Drop all chunks but keep the graph."""
        with self._rw.exclusive():
            self.index.clear()

    def stats(self) -> dict:
        with self._rw.shared():
            return {
                "documents": len(self.index.paths()),
                "chunks": self.index.chunk_count(),
                "nodes": len(self.graph),
                "edges": self.graph.edge_count,
                "model": self.config.embedding_model,
                "dimension": self.config.embedding_dimension,
            }


def index_vault(
    session: IndexSession,
    root: Path,
    *,
    progress_callback: Callable[[int, int, str], None] | None = None,
) -> IndexStats:
    """Index every markdown file below ``root`` and prune documents that disappeared."""
    root = Path(root)
    files = list(iter_markdown_paths(root, excluded_folders=session.config.excluded_folders))
    if not files:
        LOGGER.warning("No markdown files found in %s", root)

    stats = IndexStats()
    seen: List[str] = []
    for position, file_path in enumerate(files, start=1):
        relative = file_path.relative_to(root).as_posix()
        seen.append(relative)
        if progress_callback is not None:
            progress_callback(position, len(files), relative)
        try:
            stat = file_path.stat()
            content = file_path.read_text(encoding="utf-8", errors="replace")
            status = session.update_file(relative, content, mtime=stat.st_mtime, size=stat.st_size)
            stats.increment(status, relative)
        except _PROVIDER_ERRORS:
            raise
        except Exception as exc:
            LOGGER.error("Failed to process %s: %s", relative, exc)
            stats.increment("failed", relative)

    stats.removed = len(session.prune_orphans(seen))
    return stats
