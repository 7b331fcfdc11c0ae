"""Tests for the FastAPI web application."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from vaultgraph.errors import RateLimitError
from vaultgraph.index.indexer import IndexSession
from vaultgraph.index.persistence import PersistenceManager
from vaultgraph.web.app import create_app

CATS = "# Intro\nCats are mammals.\n# Diet\nCats eat meat."
DOGS = "# Dogs\nDogs bark at cats. See [[Cats]].\n"


@pytest.fixture
def client(session: IndexSession) -> TestClient:
    session.update_file("Cats.md", CATS)
    session.update_file("Dogs.md", DOGS)
    return TestClient(create_app(session))


class TestSearchEndpoints:
    """Tests for the search endpoints."""

    def test_search_empty_query(self, client: TestClient) -> None:
        """Returns 400 for a whitespace-only query."""
        response = client.post("/search", json={"query": "   "})
        assert response.status_code == 400
        assert "Empty query" in response.json()["detail"]

    def test_search_success(self, client: TestClient) -> None:
        """Returns ranked results with offsets."""
        response = client.post("/search", json={"query": "what do cats eat", "limit": 5})

        assert response.status_code == 200
        results = response.json()["results"]
        assert results[0]["path"] == "Cats.md"
        assert set(results[0]) == {"path", "title", "excerpt", "score", "start", "end"}

    def test_keyword_search(self, client: TestClient) -> None:
        """Returns keyword-only matches."""
        response = client.post("/keyword-search", json={"query": "bark"})

        assert [r["path"] for r in response.json()["results"]] == ["Dogs.md"]

    def test_search_in_paths(self, client: TestClient) -> None:
        """Restricts results to the given paths."""
        response = client.post("/search-in-paths", json={"query": "cats", "paths": ["Dogs.md"]})

        assert {r["path"] for r in response.json()["results"]} == {"Dogs.md"}

    def test_context(self, client: TestClient) -> None:
        """Returns an assembled context within budget."""
        response = client.post("/context", json={"query": "cats", "budget": 200})

        body = response.json()
        assert response.status_code == 200
        assert body["used_tokens"] <= 200
        assert body["items"]


class TestFileEndpoints:
    """Tests for the file mutation endpoints."""

    def test_put_file(self, client: TestClient) -> None:
        """Indexes a document and reports its status."""
        response = client.put("/files", json={"path": "Birds.md", "content": "Birds sing."})
        assert response.json() == {"status": "inserted"}

        again = client.put("/files", json={"path": "Birds.md", "content": "Birds sing."})
        assert again.json() == {"status": "skipped"}

    def test_put_file_embedding_failure(self, session: IndexSession) -> None:
        """Returns 503 when the embedding provider refuses."""
        session.embedder = MagicMock()
        session.embedder.embed.side_effect = RateLimitError("slow down", retry_after=1.0)
        client = TestClient(create_app(session))

        response = client.put("/files", json={"path": "A.md", "content": "Alpha."})

        assert response.status_code == 503

    def test_delete_file(self, client: TestClient) -> None:
        """Removes a document from the index."""
        response = client.delete("/files", params={"path": "Dogs.md"})

        assert response.json() == {"status": "ok"}
        assert client.get("/stats").json()["documents"] == 1

    def test_rename_file(self, client: TestClient) -> None:
        """Moves a document to its new path."""
        client.post("/files/rename", json={"old_path": "Dogs.md", "new_path": "Pets/Dogs.md"})

        response = client.post("/keyword-search", json={"query": "bark"})
        assert [r["path"] for r in response.json()["results"]] == ["Pets/Dogs.md"]


class TestGraphEndpoints:
    """Tests for the graph endpoints."""

    def test_neighbors(self, client: TestClient) -> None:
        """Returns inbound neighbours."""
        response = client.get("/neighbors", params={"path": "Cats.md", "direction": "inbound"})

        assert [r["path"] for r in response.json()["results"]] == ["Dogs.md"]

    def test_neighbors_rejects_bad_direction(self, client: TestClient) -> None:
        """Validates the direction parameter."""
        response = client.get("/neighbors", params={"path": "Cats.md", "direction": "sideways"})
        assert response.status_code == 422

    def test_centrality(self, client: TestClient) -> None:
        """Returns centrality for every requested path."""
        response = client.get("/centrality", params=[("path", "Cats.md"), ("path", "Missing.md")])

        assert response.json() == {"Cats.md": 1.0, "Missing.md": 0.0}

    def test_similar(self, client: TestClient) -> None:
        """Excludes the source document from similar results."""
        response = client.get("/similar", params={"path": "Cats.md"})

        assert "Cats.md" not in [r["path"] for r in response.json()["results"]]


class TestStateEndpoints:
    """Tests for configuration and snapshot endpoints."""

    def test_patch_config(self, client: TestClient) -> None:
        """Applies a partial configuration."""
        response = client.patch("/config", json={"hub_min_degree": 3})

        assert response.status_code == 200
        assert response.json()["hub_min_degree"] == 3

    def test_patch_config_unknown_key(self, client: TestClient) -> None:
        """Returns 400 for unknown keys."""
        response = client.patch("/config", json={"bogus": 1})

        assert response.status_code == 400
        assert "bogus" in response.json()["detail"]

    def test_save_without_persistence(self, client: TestClient) -> None:
        """Returns 409 when no snapshot location is configured."""
        assert client.post("/index/save").status_code == 409

    def test_save_with_persistence(self, tmp_path: Path, session: IndexSession) -> None:
        """Writes both snapshot tiers."""
        session.update_file("Cats.md", CATS)
        persistence = PersistenceManager(tmp_path / "hot.db", tmp_path / "cold.bin")
        client = TestClient(create_app(session, persistence=persistence))

        assert client.post("/index/save").json() == {"status": "ok"}
        assert persistence.hot_path.exists()

    def test_reset(self, client: TestClient) -> None:
        """Clears the index and graph."""
        client.post("/index/reset")

        stats = client.get("/stats").json()
        assert stats["documents"] == 0
        assert stats["nodes"] == 0
