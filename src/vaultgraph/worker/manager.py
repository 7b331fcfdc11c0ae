"""Host side of the indexing worker: an asyncio client over a process pipe."""

from __future__ import annotations

import asyncio
import itertools
import logging
import multiprocessing as mp
from concurrent.futures import ThreadPoolExecutor
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

import numpy as np

from vaultgraph.config import IndexConfig
from vaultgraph.embedding.encoder import Embedder
from vaultgraph.errors import RemoteCallError, TaskDroppedError, WorkerError
from vaultgraph.worker.process import run_worker
from vaultgraph.worker.protocol import (
    CallMessage,
    EmbedRequest,
    EmbedResponse,
    ResultMessage,
    ShutdownMessage,
    decode,
    encode,
)

LOGGER = logging.getLogger(__name__)


class WorkerManager:
    """Runs an :class:`IndexSession` in a spawned process and proxies calls to it.

    Embedding stays in the host: the worker sends embed requests back over the
    pipe and the host answers them batch by batch, yielding to the event loop
    in between. Mutations of the same path are serialised; a mutation queued
    before a reset is dropped with :class:`TaskDroppedError`.
    """

    def __init__(
        self,
        embedder: Embedder,
        config: IndexConfig | None = None,
        *,
        vault_root: Path | None = None,
        embed_batch_size: int = 32,
        log_level: int = logging.WARNING,
        target: Callable[..., None] = run_worker,
    ) -> None:
        self.embedder = embedder
        self.config = config or IndexConfig(embedding_model=embedder.model_name)
        self.vault_root = vault_root
        self.embed_batch_size = embed_batch_size
        self._log_level = log_level
        self._target = target
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._path_locks: Dict[str, asyncio.Lock] = {}
        self._path_users: Dict[str, int] = {}
        self._session_id = 0
        self._process = None
        self._conn = None
        self._reader: Optional[asyncio.Task] = None
        self._embed_tasks: set[asyncio.Task] = set()
        self._recv_executor: Optional[ThreadPoolExecutor] = None

    @property
    def session_id(self) -> int:
        return self._session_id

    async def __aenter__(self) -> "WorkerManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        ctx = mp.get_context("spawn")
        parent_conn, child_conn = ctx.Pipe()
        self._process = ctx.Process(
            target=self._target, args=(child_conn, self._log_level), name="vaultgraph-indexer", daemon=True
        )
        self._process.start()
        child_conn.close()
        self._conn = parent_conn
        self._recv_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vaultgraph-recv")
        self._reader = asyncio.create_task(self._read_loop())
        LOGGER.info("Started indexing worker pid=%s", self._process.pid)

        dimension = await loop.run_in_executor(None, lambda: self.embedder.dimension)
        await self._initialize(dimension)

    async def _initialize(self, dimension: int) -> None:
        self._session_id += 1
        await self.call(
            "initialize",
            config=self.config.to_dict(),
            model_name=self.embedder.model_name,
            dimension=dimension,
            vault_root=str(self.vault_root) if self.vault_root else None,
        )

    async def close(self) -> None:
        if self._conn is None:
            return
        loop = asyncio.get_running_loop()
        try:
            self._conn.send(encode(ShutdownMessage()))
        except (BrokenPipeError, OSError):
            pass
        await loop.run_in_executor(None, self._process.join, 5)
        if self._process.is_alive():
            self._process.terminate()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._conn.close()
        self._conn = None
        if self._recv_executor is not None:
            self._recv_executor.shutdown(wait=False)
        LOGGER.info("Indexing worker stopped")

    # -- transport -------------------------------------------------------

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _read_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                raw = await loop.run_in_executor(self._recv_executor, self._conn.recv)
            except (EOFError, OSError):
                self._fail_pending(WorkerError("Indexing worker exited"))
                return
            message = decode(raw)
            if isinstance(message, ResultMessage):
                future = self._pending.pop(message.id, None)
                if future is not None and not future.done():
                    future.set_result(message)
            elif isinstance(message, EmbedRequest):
                task = asyncio.create_task(self._serve_embedding(message))
                self._embed_tasks.add(task)
                task.add_done_callback(self._embed_tasks.discard)
            else:
                LOGGER.debug("Ignoring unexpected %s message from worker", message.kind)

    async def _serve_embedding(self, request: EmbedRequest) -> None:
        loop = asyncio.get_running_loop()
        vectors: List[List[float]] = []
        try:
            for start in range(0, len(request.texts), self.embed_batch_size):
                batch = request.texts[start : start + self.embed_batch_size]
                embedded = await loop.run_in_executor(None, self.embedder.embed, batch)
                vectors.extend(np.asarray(embedded, dtype="float32").tolist())
                await asyncio.sleep(0)
            response = EmbedResponse(id=request.id, vectors=vectors)
        except Exception as exc:
            LOGGER.warning("Embedding request %d failed: %s", request.id, exc)
            response = EmbedResponse(id=request.id, error_type=type(exc).__name__, error=str(exc))
        self._conn.send(encode(response))

    async def call(self, method: str, **params: Any) -> Any:
        if self._conn is None:
            raise WorkerError("Indexing worker is not running")
        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        future = loop.create_future()
        self._pending[request_id] = future
        self._conn.send(encode(CallMessage(id=request_id, method=method, params=params)))
        message: ResultMessage = await future
        if not message.ok:
            raise RemoteCallError(method, message.error_type or "Error", message.error or "")
        return message.result

    @asynccontextmanager
    async def _hold_paths(self, paths: Sequence[str]) -> AsyncIterator[None]:
        """Lock every path in sorted order; locks nobody waits on are discarded."""
        keys = sorted(set(paths))
        for key in keys:
            self._path_locks.setdefault(key, asyncio.Lock())
            self._path_users[key] = self._path_users.get(key, 0) + 1
        try:
            async with AsyncExitStack() as stack:
                for key in keys:
                    await stack.enter_async_context(self._path_locks[key])
                yield
        finally:
            for key in keys:
                self._path_users[key] -= 1
                if not self._path_users[key]:
                    del self._path_users[key]
                    del self._path_locks[key]

    async def _mutate(self, paths: Sequence[str], method: str, **params: Any) -> Any:
        session = self._session_id
        async with self._hold_paths(paths):
            if session != self._session_id:
                raise TaskDroppedError(f"{method} for {', '.join(paths)} dropped after session reset")
            return await self.call(method, **params)

    # -- operations ------------------------------------------------------

    async def update_file(
        self,
        path: str,
        content: str,
        mtime: float = 0.0,
        size: int | None = None,
        title: str | None = None,
        links: Sequence[str] = (),
    ) -> str:
        return await self._mutate(
            [path], "update_file", path=path, content=content, mtime=mtime, size=size, title=title, links=list(links)
        )

    async def delete_file(self, path: str) -> None:
        await self._mutate([path], "delete_file", path=path)

    async def rename_file(self, old_path: str, new_path: str) -> None:
        await self._mutate([old_path, new_path], "rename_file", old_path=old_path, new_path=new_path)

    async def search(self, query: str, limit: int = 10) -> List[dict]:
        return await self.call("search", query=query, limit=limit)

    async def keyword_search(self, query: str, limit: int = 10) -> List[dict]:
        return await self.call("keyword_search", query=query, limit=limit)

    async def search_in_paths(self, query: str, paths: Sequence[str], limit: int = 10) -> List[dict]:
        return await self.call("search_in_paths", query=query, paths=list(paths), limit=limit)

    async def get_similar(self, path: str, limit: int = 10) -> List[dict]:
        return await self.call("get_similar", path=path, limit=limit)

    async def get_neighbors(self, path: str, **options: Any) -> List[dict]:
        return await self.call("get_neighbors", path=path, **options)

    async def get_centrality(self, path: str) -> float:
        return await self.call("get_centrality", path=path)

    async def get_batch_centrality(self, paths: Sequence[str]) -> Dict[str, float]:
        return await self.call("get_batch_centrality", paths=list(paths))

    async def assemble_context(self, query: str, limit: int = 20, budget: int | None = None) -> dict:
        return await self.call("assemble_context", query=query, limit=limit, budget=budget)

    async def save_index(self, tier: str = "hot") -> bytes:
        return await self.call("save_index", tier=tier)

    async def load_index(self, data: bytes) -> bool:
        return await self.call("load_index", data=data)

    async def update_config(self, partial: Dict[str, Any]) -> dict:
        result = await self.call("update_config", partial=partial)
        self.config = self.config.merged(partial)
        return result

    async def full_reset(self) -> None:
        self._session_id += 1
        await self.call("full_reset")
