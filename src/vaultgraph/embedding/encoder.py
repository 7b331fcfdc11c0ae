"""Embedding model management."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Literal, Protocol, Sequence, runtime_checkable

import numpy as np

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_DIMENSION = 384

logger = logging.getLogger(__name__)


@runtime_checkable
class Embedder(Protocol):
    """Anything able to turn text into fixed-dimension vectors."""

    model_name: str
    dimension: int

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray: ...

    def embed_query(self, text: str) -> np.ndarray: ...


def mean_pool(vectors: np.ndarray, *, normalize: bool = True) -> np.ndarray:
    """Average window vectors into one chunk vector."""
    pooled = np.asarray(vectors, dtype="float32").mean(axis=0)
    if normalize:
        norm = float(np.linalg.norm(pooled))
        if norm > 0:
            pooled = pooled / norm
    return pooled.astype("float32", copy=False)


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    batch_size: int = 16
    normalize: bool = True
    device: str | None = None
    max_tokens: int | None = None


class EmbeddingModel:
    """Thin wrapper around `SentenceTransformer` for query and document embeddings.

    Texts longer than the model window are tokenized, decoded back into one
    sub-text per window, embedded separately and mean-pooled so every input
    still maps to exactly one vector.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        from sentence_transformers import SentenceTransformer

        self.config = config or EmbeddingConfig()
        self.model_name = self.config.model_name
        self._model = SentenceTransformer(self.model_name, device=self.config.device)
        self.dimension = int(self._model.get_sentence_embedding_dimension())
        self.max_tokens = self.config.max_tokens or int(self._model.max_seq_length)
        logger.info(
            "Loaded %s: %d dimensions, %d-token window, device %s",
            self.model_name,
            self.dimension,
            self.max_tokens,
            self.config.device or "auto",
        )

    def split_into_windows(self, text: str) -> List[str]:
        """Decode ``text`` back into sub-texts that each fit the model window."""
        tokenizer = self._model.tokenizer
        token_ids = tokenizer(text, add_special_tokens=False)["input_ids"]
        # Leave room for the [CLS]/[SEP] pair added at encode time.
        window = max(self.max_tokens - 2, 1)
        if len(token_ids) <= window:
            return [text]
        return [
            tokenizer.decode(token_ids[start : start + window], skip_special_tokens=True)
            for start in range(0, len(token_ids), window)
        ]

    def _encode(self, sentences: List[str]) -> np.ndarray:
        embeddings = self._model.encode(
            sentences,
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=self.config.normalize,
        )
        return np.asarray(embeddings, dtype="float32")

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return one float32 embedding per input text."""
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self.dimension), dtype="float32")

        windows: List[str] = []
        owners: List[int] = []
        for position, sentence in enumerate(sentences):
            for part in self.split_into_windows(sentence):
                windows.append(part)
                owners.append(position)

        encoded = self._encode(windows)
        if len(windows) == len(sentences):
            return encoded

        owner_index = np.asarray(owners)
        return np.vstack(
            [
                mean_pool(encoded[owner_index == position], normalize=self.config.normalize)
                for position in range(len(sentences))
            ]
        )

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed([text])[0]


def create_embedder(
    provider: Literal["local", "worker", "remote"] = "local",
    *,
    model_name: str = DEFAULT_MODEL,
    **options,
) -> Embedder:
    """Build the configured embedding provider."""
    if provider == "local":
        return EmbeddingModel(EmbeddingConfig(model_name=model_name, **options))
    if provider == "worker":
        from vaultgraph.embedding.worker import WorkerEmbedder

        return WorkerEmbedder(model_name=model_name, **options)
    if provider == "remote":
        from vaultgraph.embedding.remote import RemoteEmbeddingModel

        return RemoteEmbeddingModel(model_name=model_name, **options)
    raise ValueError(f"Unknown embedding provider: {provider}")
