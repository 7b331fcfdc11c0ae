"""Tests for the HTTP embedding provider."""

from __future__ import annotations

import json
from typing import List

import httpx
import numpy as np
import pytest

from vaultgraph.embedding.remote import RemoteEmbeddingModel
from vaultgraph.errors import AuthenticationError, EmbeddingError, RateLimitError


def _embedding_response(request: httpx.Request, dimension: int = 3) -> httpx.Response:
    inputs = json.loads(request.content)["input"]
    data = [
        {"index": index, "embedding": [float(index + 1)] + [0.0] * (dimension - 1)}
        for index in range(len(inputs))
    ]
    # Out of order on purpose; the client sorts by index.
    return httpx.Response(200, json={"data": list(reversed(data))})


def _model(handler, **options) -> tuple[RemoteEmbeddingModel, List[float]]:
    sleeps: List[float] = []
    model = RemoteEmbeddingModel(
        "remote-model",
        api_key="secret",
        base_url="https://embeddings.test/v1",
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
        **options,
    )
    return model, sleeps


class TestRemoteEmbeddingModel:
    """Test RemoteEmbeddingModel class."""

    def test_embed_sorts_and_normalizes(self) -> None:
        """Should return one unit vector per input in input order."""
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _embedding_response(request)

        model, _ = _model(handler)
        vectors = model.embed(["a", "b"])

        assert vectors.shape == (2, 3)
        np.testing.assert_allclose(np.linalg.norm(vectors, axis=1), [1.0, 1.0], rtol=1e-6)
        assert seen[0].headers["Authorization"] == "Bearer secret"
        assert seen[0].url.path == "/v1/embeddings"
        assert model.dimension == 3

    def test_batches_requests(self) -> None:
        """Should split inputs into batches of batch_size."""
        sizes: List[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            sizes.append(len(json.loads(request.content)["input"]))
            return _embedding_response(request)

        model, _ = _model(handler, batch_size=2)
        vectors = model.embed(["a", "b", "c", "d", "e"])

        assert sizes == [2, 2, 1]
        assert vectors.shape == (5, 3)

    def test_retries_server_errors(self) -> None:
        """Should back off exponentially and succeed after transient failures."""
        responses = iter([500, 503])

        def handler(request: httpx.Request) -> httpx.Response:
            status = next(responses, None)
            if status is not None:
                return httpx.Response(status)
            return _embedding_response(request)

        model, sleeps = _model(handler, backoff_base=0.5)

        assert model.embed(["a"]).shape == (1, 3)
        assert sleeps == [0.5, 1.0]

    def test_rate_limit_honours_retry_after(self) -> None:
        """Should wait at least the server-provided retry-after value."""
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            if calls["count"] == 1:
                return httpx.Response(429, headers={"retry-after": "7"})
            return _embedding_response(request)

        model, sleeps = _model(handler)
        model.embed(["a"])

        assert sleeps == [7.0]

    def test_rate_limit_exhausted(self) -> None:
        """Should raise RateLimitError once retries run out."""
        model, sleeps = _model(lambda request: httpx.Response(429), max_retries=2)

        with pytest.raises(RateLimitError):
            model.embed(["a"])
        assert len(sleeps) == 2

    def test_authentication_not_retried(self) -> None:
        """Should fail immediately on rejected credentials."""
        model, sleeps = _model(lambda request: httpx.Response(401))

        with pytest.raises(AuthenticationError):
            model.embed(["a"])
        assert sleeps == []

    def test_transport_error_retried(self) -> None:
        """Should treat connection failures as transient."""
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            if calls["count"] == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return _embedding_response(request)

        model, sleeps = _model(handler)

        assert model.embed(["a"]).shape == (1, 3)
        assert sleeps == [1.0]

    def test_client_error_not_retried(self) -> None:
        """Should raise EmbeddingError for non-retryable client errors."""
        model, sleeps = _model(lambda request: httpx.Response(400, text="bad input"))

        with pytest.raises(EmbeddingError, match="400"):
            model.embed(["a"])
        assert sleeps == []

    def test_empty_input(self) -> None:
        """Should not call the service for an empty batch."""
        model, _ = _model(lambda request: pytest.fail("unexpected request"), dimension=3)

        assert model.embed([]).shape == (0, 3)
