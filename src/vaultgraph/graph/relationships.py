"""Directed relationship graph of files, topics and tags."""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import threading
from typing import Dict, Iterable, List, Literal, Mapping, Optional, Sequence

import networkx as nx

from vaultgraph.models import EdgeSource, GraphEdge, GraphNode, NodeKind
from vaultgraph.utils.links import basename_key, normalize_path, resolve_reference

LOGGER = logging.getLogger(__name__)

Direction = Literal["both", "inbound", "outbound"]


def hub_sibling_score(hub_degree: int, decay: float = 0.25, *, penalty: bool = True) -> float:
    """Score given to a sibling reached through a hub with ``hub_degree`` inbound edges.

    The log divisor is floored at 1 so small hubs are never boosted above ``decay``.
    """
    if not penalty:
        return decay
    return decay / max(1.0, math.log10(hub_degree + 1))


class RelationshipGraph:
    """Typed, weighted document graph with an alias table for reference resolution."""

    def __init__(
        self,
        *,
        ontology_path: str = "Ontology",
        hub_min_degree: int = 5,
        hub_penalty: bool = True,
        sibling_decay: float = 0.25,
    ) -> None:
        self.ontology_path = normalize_path(ontology_path)
        self.hub_min_degree = hub_min_degree
        self.hub_penalty = hub_penalty
        self.sibling_decay = sibling_decay
        self._graph = nx.DiGraph()
        self._aliases: Dict[str, str] = {}
        self._lock = threading.RLock()

    def configure(
        self,
        *,
        ontology_path: str | None = None,
        hub_min_degree: int | None = None,
        hub_penalty: bool | None = None,
        sibling_decay: float | None = None,
    ) -> None:
        with self._lock:
            if ontology_path is not None:
                self.ontology_path = normalize_path(ontology_path)
            if hub_min_degree is not None:
                self.hub_min_degree = hub_min_degree
            if hub_penalty is not None:
                self.hub_penalty = hub_penalty
            if sibling_decay is not None:
                self.sibling_decay = sibling_decay

    def __len__(self) -> int:
        with self._lock:
            return self._graph.number_of_nodes()

    def __contains__(self, path: str) -> bool:
        with self._lock:
            return self._graph.has_node(path)

    @property
    def edge_count(self) -> int:
        with self._lock:
            return self._graph.number_of_edges()

    @property
    def aliases(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._aliases)

    # -- nodes -----------------------------------------------------------

    def node(self, path: str) -> Optional[GraphNode]:
        with self._lock:
            if not self._graph.has_node(path):
                return None
            attrs = dict(self._graph.nodes[path])
        return GraphNode(
            path=path,
            kind=NodeKind(attrs.get("kind", NodeKind.TOPIC.value)),
            mtime=attrs.get("mtime", 0.0),
            size=attrs.get("size", 0),
            hash=attrs.get("hash", ""),
            title=attrs.get("title", ""),
            headers=list(attrs.get("headers", [])),
        )

    def nodes(self, kind: NodeKind | None = None) -> List[GraphNode]:
        with self._lock:
            result = [self.node(path) for path in list(self._graph.nodes)]
        return [node for node in result if node is not None and (kind is None or node.kind is kind)]

    def is_retrievable(self, path: str) -> bool:
        with self._lock:
            if not self._graph.has_node(path):
                return False
            attrs = self._graph.nodes[path]
            return attrs.get("kind") == NodeKind.FILE.value and attrs.get("size", 0) > 0

    def add_or_update_node(self, node: GraphNode) -> None:
        with self._lock:
            self._graph.add_node(
                node.path,
                kind=node.kind.value,
                mtime=node.mtime,
                size=node.size,
                hash=node.hash,
                title=node.title,
                headers=list(node.headers),
            )

    def _ensure_placeholder(self, path: str, kind: NodeKind = NodeKind.TOPIC) -> None:
        if not self._graph.has_node(path):
            self._graph.add_node(
                path, kind=kind.value, mtime=0.0, size=0, hash="", title=basename_key(path), headers=[]
            )

    def remove_node(self, path: str) -> bool:
        with self._lock:
            if not self._graph.has_node(path):
                return False
            self._graph.remove_node(path)
            for key in [key for key, target in self._aliases.items() if target == path]:
                del self._aliases[key]
            return True

    def demote(self, path: str) -> None:
        """Turn a file node into a placeholder that keeps its inbound edges."""
        with self._lock:
            if not self._graph.has_node(path):
                return
            self._graph.remove_edges_from(list(self._graph.out_edges(path)))
            self._graph.nodes[path].update(
                kind=NodeKind.TOPIC.value, mtime=0.0, size=0, hash="", headers=[]
            )
            for key in [key for key, target in self._aliases.items() if target == path]:
                del self._aliases[key]

    def rename_node(self, old_path: str, new_path: str) -> bool:
        with self._lock:
            if not self._graph.has_node(old_path):
                return False
            if self._graph.has_node(new_path):
                self._merge_into(new_path, old_path)
            else:
                nx.relabel_nodes(self._graph, {old_path: new_path}, copy=False)
            old_key, new_key = basename_key(old_path), basename_key(new_path)
            for key, target in list(self._aliases.items()):
                if target == old_path:
                    if key == old_key:
                        del self._aliases[key]
                    else:
                        self._aliases[key] = new_path
            self._aliases[new_key] = new_path
            return True

    def _merge_into(self, target: str, source: str) -> None:
        """Re-point every edge of ``source`` to ``target`` and drop ``source``."""
        for predecessor in list(self._graph.predecessors(source)):
            if predecessor != target:
                data = self._graph.edges[predecessor, source]
                self._add_edge(predecessor, target, EdgeSource(data["origin"]), data["weight"])
        for successor in list(self._graph.successors(source)):
            if successor != target:
                data = self._graph.edges[source, successor]
                self._add_edge(target, successor, EdgeSource(data["origin"]), data["weight"])
        self._graph.remove_node(source)

    # -- aliases ---------------------------------------------------------

    def register_aliases(self, path: str, keys: Iterable[str]) -> None:
        """Point ``keys`` at ``path`` and absorb any placeholder already using them."""
        with self._lock:
            for key in keys:
                key = key.lower()
                if not key:
                    continue
                self._aliases[key] = path
                for candidate in list(self._graph.nodes):
                    if candidate == path:
                        continue
                    attrs = self._graph.nodes[candidate]
                    if attrs.get("kind") == NodeKind.FILE.value or attrs.get("size", 0) > 0:
                        continue
                    if basename_key(candidate) == key:
                        LOGGER.debug("Absorbing placeholder %s into %s", candidate, path)
                        self._merge_into(path, candidate)

    def update_alias_map(self, mapping: Mapping[str, str]) -> None:
        with self._lock:
            for key, target in mapping.items():
                self._aliases[key.lower()] = normalize_path(target)

    def resolve(self, reference: str, *, base_dir: str = "") -> str:
        with self._lock:
            return resolve_reference(
                reference, self._aliases, base_dir=base_dir, exists=self.is_retrievable
            )

    # -- edges -----------------------------------------------------------

    def _add_edge(self, source: str, target: str, origin: EdgeSource, weight: float) -> None:
        if self._graph.has_edge(source, target):
            data = self._graph.edges[source, target]
            if weight > data["weight"]:
                data["weight"] = weight
                data["origin"] = origin.value
            return
        self._graph.add_edge(source, target, origin=origin.value, weight=weight)

    def add_edge(
        self,
        source: str,
        target: str,
        origin: EdgeSource = EdgeSource.BODY,
        weight: float = 1.0,
        *,
        target_kind: NodeKind = NodeKind.TOPIC,
    ) -> None:
        """Idempotent: repeated references keep one edge with the strongest weight."""
        if not source or not target or source == target:
            return
        with self._lock:
            self._ensure_placeholder(source, NodeKind.FILE)
            self._ensure_placeholder(target, target_kind)
            self._add_edge(source, target, origin, weight)

    def clear_outgoing(self, path: str) -> None:
        with self._lock:
            if self._graph.has_node(path):
                self._graph.remove_edges_from(list(self._graph.out_edges(path)))

    def edges(self, path: str | None = None) -> List[GraphEdge]:
        with self._lock:
            if path is not None:
                items = list(self._graph.out_edges(path, data=True))
            else:
                items = list(self._graph.edges(data=True))
        return [
            GraphEdge(source=s, target=t, origin=EdgeSource(d["origin"]), weight=d["weight"])
            for s, t, d in items
        ]

    # -- traversal -------------------------------------------------------

    def neighbors(self, path: str, direction: Direction = "both") -> List[str]:
        with self._lock:
            if not self._graph.has_node(path):
                return []
            result: Dict[str, None] = {}
            if direction in ("both", "outbound"):
                result.update(dict.fromkeys(list(self._graph.successors(path))))
            if direction in ("both", "inbound"):
                result.update(dict.fromkeys(list(self._graph.predecessors(path))))
        result.pop(path, None)
        return list(result)

    def degree(self, path: str) -> int:
        with self._lock:
            return self._graph.degree(path) if self._graph.has_node(path) else 0

    def in_degree(self, path: str) -> int:
        with self._lock:
            return self._graph.in_degree(path) if self._graph.has_node(path) else 0

    def centrality(self, path: str) -> float:
        with self._lock:
            total = self._graph.number_of_nodes()
            if total <= 1 or not self._graph.has_node(path):
                return 0.0
            return self._graph.degree(path) / (total - 1)

    def batch_centrality(self, paths: Sequence[str]) -> Dict[str, float]:
        with self._lock:
            return {path: self.centrality(path) for path in paths}

    def is_hub(self, path: str) -> bool:
        with self._lock:
            if not self._graph.has_node(path):
                return False
            if self.ontology_path and path.startswith(self.ontology_path + "/"):
                return True
            return self._graph.in_degree(path) > self.hub_min_degree

    def siblings(self, path: str, *, direction: Direction = "both") -> Dict[str, float]:
        """Two-hop neighbours reached through hub nodes, with hub-penalised scores."""
        scores: Dict[str, float] = {}
        with self._lock:
            hubs = self.neighbors(path, direction)
            direct = set(hubs)
            for hub in hubs:
                if not self.is_hub(hub):
                    continue
                score = hub_sibling_score(
                    self._graph.in_degree(hub), self.sibling_decay, penalty=self.hub_penalty
                )
                for sibling in list(self._graph.predecessors(hub)):
                    if sibling == path or sibling in direct:
                        continue
                    if score > scores.get(sibling, 0.0):
                        scores[sibling] = score
        return scores

    def metadata(self, path: str) -> Optional[dict]:
        node = self.node(path)
        if node is None:
            return None
        return {"title": node.title or basename_key(path), "headers": list(node.headers)}

    def file_states(self) -> Dict[str, dict]:
        return {
            node.path: {"mtime": node.mtime, "hash": node.hash}
            for node in self.nodes(NodeKind.FILE)
        }

    def clear(self) -> None:
        with self._lock:
            self._graph.clear()
            self._aliases.clear()

    # -- persistence -----------------------------------------------------

    def to_sqlite(self, conn: sqlite3.Connection) -> None:
        """Write nodes, edges and aliases into tables of ``conn``."""
        with self._lock:
            conn.execute("DROP TABLE IF EXISTS graph_nodes")
            conn.execute("DROP TABLE IF EXISTS graph_edges")
            conn.execute("DROP TABLE IF EXISTS graph_aliases")
            conn.execute(
                """
                CREATE TABLE graph_nodes (
                    path TEXT PRIMARY KEY, kind TEXT NOT NULL, mtime REAL, size INTEGER,
                    hash TEXT, title TEXT, headers TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE graph_edges (
                    source TEXT NOT NULL, target TEXT NOT NULL, origin TEXT NOT NULL,
                    weight REAL NOT NULL, PRIMARY KEY (source, target)
                )
                """
            )
            conn.execute("CREATE TABLE graph_aliases (key TEXT PRIMARY KEY, path TEXT NOT NULL)")
            conn.executemany(
                "INSERT INTO graph_nodes VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        path,
                        attrs.get("kind", NodeKind.TOPIC.value),
                        attrs.get("mtime", 0.0),
                        attrs.get("size", 0),
                        attrs.get("hash", ""),
                        attrs.get("title", ""),
                        json.dumps(attrs.get("headers", [])),
                    )
                    for path, attrs in self._graph.nodes(data=True)
                ],
            )
            conn.executemany(
                "INSERT INTO graph_edges VALUES (?, ?, ?, ?)",
                [(s, t, d["origin"], d["weight"]) for s, t, d in self._graph.edges(data=True)],
            )
            conn.executemany("INSERT INTO graph_aliases VALUES (?, ?)", list(self._aliases.items()))
            conn.commit()

    def from_sqlite(self, conn: sqlite3.Connection) -> None:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        with self._lock:
            self.clear()
            if "graph_nodes" not in tables:
                return
            for path, kind, mtime, size, hash_, title, headers in conn.execute(
                "SELECT path, kind, mtime, size, hash, title, headers FROM graph_nodes ORDER BY rowid"
            ):
                self._graph.add_node(
                    path, kind=kind, mtime=mtime or 0.0, size=size or 0, hash=hash_ or "",
                    title=title or "", headers=json.loads(headers or "[]"),
                )
            for source, target, origin, weight in conn.execute(
                "SELECT source, target, origin, weight FROM graph_edges ORDER BY rowid"
            ):
                self._graph.add_edge(source, target, origin=origin, weight=weight)
            self._aliases.update(dict(conn.execute("SELECT key, path FROM graph_aliases")))
        LOGGER.debug("Loaded graph with %d nodes and %d edges", len(self), self.edge_count)
