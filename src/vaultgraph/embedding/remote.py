"""Embeddings from an OpenAI-compatible HTTP endpoint."""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, Iterable, List, Sequence

import httpx
import numpy as np

from vaultgraph.errors import AuthenticationError, EmbeddingError, RateLimitError

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
API_KEY_ENV = "VAULTGRAPH_EMBEDDING_API_KEY"

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class RemoteEmbeddingModel:
    """Remote embedder with exponential backoff on transient failures."""

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        *,
        dimension: int | None = None,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        batch_size: int = 64,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model_name = model_name
        self._dimension = dimension
        self._api_key = api_key or os.environ.get(API_KEY_ENV, "")
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = int(self._request(["dimension check"]).shape[1])
        return self._dimension

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _request(self, batch: List[str]) -> np.ndarray:
        body = {"model": self.model_name, "input": batch}
        last_error: EmbeddingError | None = None

        for attempt in range(self.max_retries + 1):
            if attempt:
                wait = self.backoff_base * 2 ** (attempt - 1)
                if isinstance(last_error, RateLimitError) and last_error.retry_after:
                    wait = max(wait, last_error.retry_after)
                LOGGER.warning(
                    "Embedding request failed (attempt %d/%d): %s. Retrying in %.1fs.",
                    attempt,
                    self.max_retries + 1,
                    last_error,
                    wait,
                )
                self._sleep(wait)

            try:
                response = self._client.post("/embeddings", headers=self._headers(), json=body)
            except httpx.TransportError as exc:
                last_error = EmbeddingError(f"Embedding request failed: {exc}")
                continue

            if response.status_code in (401, 403):
                raise AuthenticationError(
                    f"Embedding service rejected credentials ({response.status_code})"
                )
            if response.status_code == 429:
                last_error = RateLimitError(
                    "Embedding service rate limit exceeded", retry_after=_retry_after(response)
                )
                continue
            if response.status_code in _RETRYABLE_STATUS:
                last_error = EmbeddingError(f"Embedding service error {response.status_code}")
                continue
            if response.is_error:
                raise EmbeddingError(
                    f"Embedding request rejected ({response.status_code}): {response.text[:200]}"
                )

            data = sorted(response.json().get("data", []), key=lambda item: item.get("index", 0))
            if len(data) != len(batch):
                raise EmbeddingError(f"Expected {len(batch)} embeddings, received {len(data)}")
            return np.asarray([item["embedding"] for item in data], dtype="float32")

        assert last_error is not None
        raise last_error

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self._dimension or 0), dtype="float32")

        parts = [
            self._request(sentences[start : start + self.batch_size])
            for start in range(0, len(sentences), self.batch_size)
        ]
        vectors = np.vstack(parts)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        vectors = vectors / norms
        if self._dimension is None:
            self._dimension = int(vectors.shape[1])
        return vectors.astype("float32", copy=False)

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed([text])[0]

    def close(self) -> None:
        self._client.close()
