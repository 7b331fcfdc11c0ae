"""Application configuration defaults."""

from __future__ import annotations

import dataclasses
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping

from vaultgraph.embedding.encoder import DEFAULT_DIMENSION, DEFAULT_MODEL
from vaultgraph.errors import ConfigError


def _get_default_state_dir() -> Path:
    """Get the default state directory based on platform and execution context."""
    user_dir = Path.home() / ".vaultgraph"

    if getattr(sys, "frozen", False):
        return user_dir

    # When running from source, prefer local data/ if it exists
    local_dir = Path("data/vaultgraph")
    if local_dir.exists():
        return local_dir

    return user_dir


@dataclass(slots=True)
class ScoringWeights:
    """Blend constants used by the search orchestrator.

    These are tunable heuristics, not derived values.
    """

    hybrid_keyword_weight: float = 0.5
    keyword_only_factor: float = 0.9
    propagation_decay: float = 0.8


# annotation -> accepted runtime types for scalar and list fields
_FIELD_TYPES: Dict[str, tuple] = {
    "str": (str,),
    "int": (int,),
    "float": (int, float),
    "bool": (bool,),
    "List[str]": (list, tuple),
}


@dataclass(slots=True)
class IndexConfig:
    embedding_model: str = DEFAULT_MODEL
    embedding_dimension: int = DEFAULT_DIMENSION
    chunk_chars: int = 1000
    chunk_overlap: int = 100
    language: str = "en"
    fuzzy_tolerance: int = 2
    min_similarity: float = 0.5
    ontology_path: str = "Ontology"
    hub_min_degree: int = 5
    hub_penalty: bool = True
    sibling_decay: float = 0.25
    context_header_properties: List[str] = field(
        default_factory=lambda: ["title", "topics", "author", "status"]
    )
    semantic_properties: List[str] = field(
        default_factory=lambda: ["topics", "tags", "related", "up", "parent"]
    )
    excluded_folders: List[str] = field(default_factory=list)
    expansion_seeds_limit: int = 10
    max_neighbors_per_node: int = 5
    deep_search_limit: int = 100
    payload_token_budget: int = 4000
    graph_candidate_token_estimate: int = 200
    chars_per_token: int = 4
    hydration_search_range: int = 2000
    context_primary_threshold: float = 0.90
    context_supporting_threshold: float = 0.70
    context_structural_threshold: float = 0.35
    context_doc_cap_ratio: float = 0.10
    max_structural_docs: int = 5
    context_max_files: int = 100
    body_edge_weight: float = 1.0
    frontmatter_edge_weight: float = 1.5
    semantic_edge_weight: float = 1.25
    weights: ScoringWeights = field(default_factory=ScoringWeights)

    def __post_init__(self) -> None:
        self._check_types()
        if self.chunk_chars <= 0:
            raise ConfigError("chunk_chars must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_chars:
            raise ConfigError("chunk_overlap must be in [0, chunk_chars)")
        if self.embedding_dimension <= 0:
            raise ConfigError("embedding_dimension must be positive")
        if isinstance(self.weights, Mapping):
            try:
                self.weights = ScoringWeights(**self.weights)
            except TypeError as exc:
                raise ConfigError(f"Invalid scoring weights: {exc}") from exc
        if not isinstance(self.weights, ScoringWeights):
            raise ConfigError("weights must be a mapping of scoring weights")

    def _check_types(self) -> None:
        for f in dataclasses.fields(self):
            expected = _FIELD_TYPES.get(f.type)
            if expected is None:
                continue
            value = getattr(self, f.name)
            # bool is an int subclass
            wrong_bool = isinstance(value, bool) and f.type in ("int", "float")
            if wrong_bool or not isinstance(value, expected):
                raise ConfigError(f"{f.name} must be {f.type}, got {type(value).__name__}")
            if f.type == "List[str]" and not all(isinstance(item, str) for item in value):
                raise ConfigError(f"{f.name} must be a list of strings")

    @property
    def model_identity(self) -> tuple[str, int]:
        return (self.embedding_model, self.embedding_dimension)

    def merged(self, partial: Mapping[str, Any]) -> "IndexConfig":
        """Return a copy with ``partial`` applied on top of this config."""
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(partial) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

        changes: Dict[str, Any] = dict(partial)
        if isinstance(changes.get("weights"), Mapping):
            try:
                changes["weights"] = dataclasses.replace(self.weights, **changes["weights"])
            except TypeError as exc:
                raise ConfigError(f"Invalid scoring weights: {exc}") from exc
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(slots=True)
class AppConfig:
    state_dir: Path | None = None
    vault_path: Path | None = None
    model_name: str = DEFAULT_MODEL
    chunk_chars: int = 1000
    overlap: int = 100

    def __post_init__(self) -> None:
        if self.state_dir is None:
            self.state_dir = _get_default_state_dir()

    def resolve_state_dir(self, base_dir: Path | None = None) -> Path:
        if self.state_dir is None:
            self.state_dir = _get_default_state_dir()
        if Path(self.state_dir).is_absolute() or base_dir is None:
            return Path(self.state_dir)
        return base_dir / self.state_dir

    def hot_snapshot_path(self, base_dir: Path | None = None) -> Path:
        return self.resolve_state_dir(base_dir) / "index.hot.db"

    def cold_snapshot_path(self, base_dir: Path | None = None) -> Path:
        return self.resolve_state_dir(base_dir) / "index.cold.bin"

    def ladder_state_path(self, base_dir: Path | None = None) -> Path:
        return self.resolve_state_dir(base_dir) / "embedding-ladder.json"

    def index_config(self, **overrides: Any) -> IndexConfig:
        config = IndexConfig(
            embedding_model=self.model_name,
            chunk_chars=self.chunk_chars,
            chunk_overlap=self.overlap,
        )
        return config.merged(overrides) if overrides else config
