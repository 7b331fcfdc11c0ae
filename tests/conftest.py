"""Shared fixtures: a deterministic embedder and small session factories."""

from __future__ import annotations

import hashlib
import re
from typing import Iterable, List, Sequence

import numpy as np
import pytest

from vaultgraph.config import IndexConfig
from vaultgraph.index.indexer import IndexSession

_WORD_RE = re.compile(r"\w+")


class HashingEmbedder:
    """Bag-of-words vectors hashed into a fixed number of buckets."""

    def __init__(self, dimension: int = 64, model_name: str = "test-hashing") -> None:
        self.dimension = dimension
        self.model_name = model_name
        self.calls: List[List[str]] = []

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype="float32")
        for word in _WORD_RE.findall(text.lower()):
            digest = hashlib.md5(word.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "little") % self.dimension] += 1.0
        norm = float(np.linalg.norm(vector))
        return vector / norm if norm > 0 else vector

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        sentences = list(texts)
        self.calls.append(sentences)
        if not sentences:
            return np.zeros((0, self.dimension), dtype="float32")
        return np.vstack([self._vector(text) for text in sentences])

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed([text])[0]


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def config() -> IndexConfig:
    return IndexConfig(embedding_model="test-hashing", embedding_dimension=64, min_similarity=0.0)


@pytest.fixture
def session(config: IndexConfig, embedder: HashingEmbedder) -> IndexSession:
    session = IndexSession(config, embedder)
    yield session
    session.close()
