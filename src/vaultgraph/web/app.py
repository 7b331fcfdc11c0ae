"""FastAPI application exposing an index session over HTTP."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Literal

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from vaultgraph.errors import ConfigError, EmbeddingError
from vaultgraph.index.indexer import IndexSession
from vaultgraph.index.persistence import PersistenceManager

LOGGER = logging.getLogger(__name__)

MAX_LIMIT = 50


class SearchPayload(BaseModel):
    query: str
    limit: int = 10


class PathSearchPayload(SearchPayload):
    paths: List[str]


class ContextPayload(SearchPayload):
    limit: int = 20
    budget: int | None = None


class FilePayload(BaseModel):
    path: str
    content: str
    mtime: float = 0.0
    size: int | None = None
    title: str | None = None
    links: List[str] = Field(default_factory=list)


class RenamePayload(BaseModel):
    old_path: str
    new_path: str


def _clean_query(payload: SearchPayload) -> tuple[str, int]:
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Empty query")
    return query, max(1, min(payload.limit, MAX_LIMIT))


def _results(results) -> dict[str, List[dict]]:
    return {"results": [result.to_dict() for result in results]}


def create_app(session: IndexSession, *, persistence: PersistenceManager | None = None) -> FastAPI:
    """Build the API around an already initialised session."""
    app = FastAPI(title="VaultGraph", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.session = session
    app.state.persistence = persistence

    @app.on_event("startup")
    async def startup_event() -> None:
        logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")

    @app.get("/stats")
    async def stats() -> dict[str, Any]:
        return await asyncio.to_thread(session.stats)

    @app.post("/search")
    async def search(payload: SearchPayload) -> dict[str, List[dict]]:
        query, limit = _clean_query(payload)
        return _results(await asyncio.to_thread(session.search, query, limit))

    @app.post("/keyword-search")
    async def keyword_search(payload: SearchPayload) -> dict[str, List[dict]]:
        query, limit = _clean_query(payload)
        return _results(await asyncio.to_thread(session.keyword_search, query, limit))

    @app.post("/search-in-paths")
    async def search_in_paths(payload: PathSearchPayload) -> dict[str, List[dict]]:
        query, limit = _clean_query(payload)
        return _results(await asyncio.to_thread(session.search_in_paths, query, payload.paths, limit))

    @app.post("/context")
    async def context(payload: ContextPayload) -> dict[str, Any]:
        query, limit = _clean_query(payload)
        assembled = await asyncio.to_thread(
            session.assemble_context, query, limit, budget=payload.budget
        )
        return assembled.to_dict()

    @app.put("/files")
    async def update_file(payload: FilePayload) -> dict[str, str]:
        try:
            status = await asyncio.to_thread(
                session.update_file,
                payload.path,
                payload.content,
                payload.mtime,
                payload.size,
                payload.title,
                payload.links,
            )
        except EmbeddingError as exc:
            LOGGER.error("Indexing %s failed: %s", payload.path, exc)
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"status": status}

    @app.delete("/files")
    async def delete_file(path: str = Query(...)) -> dict[str, str]:
        await asyncio.to_thread(session.delete_file, path)
        return {"status": "ok"}

    @app.post("/files/rename")
    async def rename_file(payload: RenamePayload) -> dict[str, str]:
        await asyncio.to_thread(session.rename_file, payload.old_path, payload.new_path)
        return {"status": "ok"}

    @app.get("/similar")
    async def similar(path: str, limit: int = 10) -> dict[str, List[dict]]:
        limit = max(1, min(limit, MAX_LIMIT))
        return _results(await asyncio.to_thread(session.get_similar, path, limit))

    @app.get("/neighbors")
    async def neighbors(
        path: str,
        direction: Literal["both", "inbound", "outbound"] = "both",
        mode: Literal["simple", "ontology"] = "simple",
        limit: int | None = None,
    ) -> dict[str, List[dict]]:
        results = await asyncio.to_thread(
            session.get_neighbors, path, direction=direction, mode=mode, limit=limit
        )
        return _results(results)

    @app.get("/centrality")
    async def centrality(path: List[str] = Query(...)) -> dict[str, float]:
        return await asyncio.to_thread(session.get_batch_centrality, path)

    @app.patch("/config")
    async def update_config(partial: dict[str, Any]) -> dict[str, Any]:
        try:
            config = await asyncio.to_thread(session.update_config, partial)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return config.to_dict()

    @app.post("/index/save")
    async def save_index() -> dict[str, str]:
        if persistence is None:
            raise HTTPException(status_code=409, detail="No snapshot location configured")
        await asyncio.to_thread(persistence.save, session)
        return {"status": "ok"}

    @app.post("/index/reset")
    async def reset_index() -> dict[str, str]:
        await asyncio.to_thread(session.full_reset)
        return {"status": "ok"}

    return app
