"""Core vaultgraph data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union


class NodeKind(str, Enum):
    FILE = "file"
    TOPIC = "topic"
    TAG = "tag"


class EdgeSource(str, Enum):
    """Where a reference between two documents was found."""

    BODY = "body"
    FRONTMATTER = "frontmatter"
    SEMANTIC = "semantic"


class CandidateOrigin(str, Enum):
    VECTOR = "direct-vector"
    KEYWORD = "direct-keyword"
    GRAPH = "graph-propagated"


@dataclass(slots=True, frozen=True)
class TextProperty:
    """A scalar frontmatter value, already stripped of link decoration."""

    value: str

    def values(self) -> List[str]:
        return [self.value] if self.value else []


@dataclass(slots=True, frozen=True)
class ListProperty:
    """A list-valued frontmatter property."""

    items: tuple[str, ...]

    def values(self) -> List[str]:
        return [item for item in self.items if item]


FrontmatterProperty = Union[TextProperty, ListProperty]


@dataclass(slots=True)
class DocumentMetadata:
    """Minimal metadata describing a document."""

    path: str
    title: str
    sha256: str
    mtime: float
    size: int


@dataclass(slots=True)
class Chunk:
    """Bounded span of a document, the atomic indexed unit."""

    document_path: str
    index: int
    text: str
    start: int
    end: int
    context_header: str = ""
    anchor: int = 0
    created_at: float = 0.0
    embedding: Optional[List[float]] = None
    links: List[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return chunk_id(self.document_path, self.index)

    def embedding_text(self) -> str:
        if self.context_header:
            return f"{self.context_header}\n\n{self.text}"
        return self.text


def chunk_id(path: str, index: int) -> str:
    return f"{path}#{index}"


@dataclass(slots=True)
class GraphNode:
    path: str
    kind: NodeKind = NodeKind.FILE
    mtime: float = 0.0
    size: int = 0
    hash: str = ""
    title: str = ""
    headers: List[str] = field(default_factory=list)

    @property
    def is_retrievable(self) -> bool:
        return self.kind is NodeKind.FILE and self.size > 0


@dataclass(slots=True)
class GraphEdge:
    source: str
    target: str
    origin: EdgeSource = EdgeSource.BODY
    weight: float = 1.0


@dataclass(slots=True)
class SearchCandidate:
    """Per-query scored entity; never outlives the orchestrator call."""

    path: str
    score: float
    origin: CandidateOrigin
    chunk_id: Optional[str] = None
    text: str = ""
    start: Optional[int] = None
    end: Optional[int] = None
    anchor: int = 0
    seed: Optional[str] = None
    vector_score: float = 0.0
    keyword_score: float = 0.0

    @property
    def is_hydrated(self) -> bool:
        return bool(self.text)


@dataclass(slots=True)
class ScoredResult:
    path: str
    title: str
    excerpt: str
    score: float
    start: Optional[int] = None
    end: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "path": self.path,
            "title": self.title,
            "excerpt": self.excerpt,
            "score": self.score,
            "start": self.start,
            "end": self.end,
        }
