"""Local inference in an isolated process, guarded by the degradation ladder."""

from __future__ import annotations

import itertools
import logging
import multiprocessing as mp
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Sequence

import numpy as np

from vaultgraph.embedding.degradation import DegradationLadder, ExecutionMode
from vaultgraph.embedding.encoder import DEFAULT_MODEL
from vaultgraph.errors import CircuitOpenError, EmbeddingError, WorkerCrashedError

LOGGER = logging.getLogger(__name__)


def apply_execution_mode(mode: ExecutionMode) -> None:
    """Pin thread count and CPU vector extensions before torch is imported."""
    if mode.threads is not None:
        for var in ("OMP_NUM_THREADS", "MKL_NUM_THREADS", "OPENBLAS_NUM_THREADS"):
            os.environ[var] = str(mode.threads)
        os.environ["TOKENIZERS_PARALLELISM"] = "false"
    if not mode.simd:
        os.environ["ATEN_CPU_CAPABILITY"] = "default"

    try:
        import torch
    except ImportError:
        return
    if mode.threads is not None:
        torch.set_num_threads(mode.threads)


def _worker_main(conn, model_name: str, mode_value: str, options: Dict[str, Any]) -> None:
    mode = ExecutionMode(mode_value)
    apply_execution_mode(mode)

    from vaultgraph.embedding.encoder import EmbeddingConfig, EmbeddingModel

    try:
        model = EmbeddingModel(EmbeddingConfig(model_name=model_name, **options))
    except Exception as exc:
        conn.send({"status": "error", "error": f"{type(exc).__name__}: {exc}"})
        return

    conn.send({"status": "ready", "dimension": model.dimension})
    while True:
        try:
            message = conn.recv()
        except EOFError:
            break
        if message.get("type") == "shutdown":
            break
        request_id = message.get("id")
        try:
            vectors = model.embed(message["texts"])
            conn.send({"id": request_id, "status": "success", "vectors": vectors})
        except Exception as exc:
            conn.send({"id": request_id, "status": "error", "error": f"{type(exc).__name__}: {exc}"})
    conn.close()


class WorkerHandle(Protocol):
    launched_at: float

    def wait_ready(self, timeout: float) -> int: ...

    def embed(self, texts: Sequence[str], timeout: float) -> np.ndarray: ...

    def is_alive(self) -> bool: ...

    def close(self) -> None: ...


class ProcessWorkerHandle:
    """A spawned inference process and its end of the pipe."""

    def __init__(self, process, conn) -> None:
        self._process = process
        self._conn = conn
        self._ids = itertools.count(1)
        self.launched_at = time.time()

    @classmethod
    def launch(cls, model_name: str, mode: ExecutionMode, options: Dict[str, Any]) -> "ProcessWorkerHandle":
        ctx = mp.get_context("spawn")
        parent_conn, child_conn = ctx.Pipe()
        process = ctx.Process(
            target=_worker_main,
            args=(child_conn, model_name, mode.value, options),
            name=f"vaultgraph-embedder-{mode.value}",
            daemon=True,
        )
        process.start()
        child_conn.close()
        LOGGER.info("Spawned embedding worker pid=%s mode=%s", process.pid, mode.value)
        return cls(process, parent_conn)

    def is_alive(self) -> bool:
        return self._process.is_alive()

    def _receive(self, timeout: float) -> dict:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise WorkerCrashedError(f"Embedding worker did not respond within {timeout:.1f}s")
            try:
                if self._conn.poll(min(remaining, 0.25)):
                    return self._conn.recv()
            except (EOFError, OSError) as exc:
                raise WorkerCrashedError(f"Embedding worker pipe closed: {exc}") from exc
            if not self._process.is_alive():
                raise WorkerCrashedError(
                    f"Embedding worker exited with code {self._process.exitcode}"
                )

    def wait_ready(self, timeout: float) -> int:
        message = self._receive(timeout)
        if message.get("status") != "ready":
            raise EmbeddingError(f"Embedding worker failed to load model: {message.get('error')}")
        return int(message["dimension"])

    def embed(self, texts: Sequence[str], timeout: float) -> np.ndarray:
        request_id = next(self._ids)
        try:
            self._conn.send({"id": request_id, "type": "embed", "texts": list(texts)})
        except (BrokenPipeError, OSError) as exc:
            raise WorkerCrashedError(f"Embedding worker pipe closed: {exc}") from exc
        while True:
            message = self._receive(timeout)
            if message.get("id") != request_id:
                LOGGER.debug("Discarding stale worker response %s", message.get("id"))
                continue
            if message.get("status") != "success":
                raise EmbeddingError(message.get("error") or "Unknown worker error")
            return np.asarray(message["vectors"], dtype="float32")

    def close(self) -> None:
        try:
            if self._process.is_alive():
                self._conn.send({"type": "shutdown"})
                self._process.join(timeout=2)
        except (BrokenPipeError, OSError):
            pass
        if self._process.is_alive():
            self._process.terminate()
        self._conn.close()


Launcher = Callable[[str, ExecutionMode, Dict[str, Any]], WorkerHandle]


class WorkerEmbedder:
    """Embedder that runs the model in a separate process and survives its crashes."""

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        *,
        ladder: DegradationLadder | None = None,
        state_path: Path | None = None,
        launcher: Launcher | None = None,
        request_timeout: float = 120.0,
        **options: Any,
    ) -> None:
        self.model_name = model_name
        self.ladder = ladder or DegradationLadder(state_path)
        self._launcher: Launcher = launcher or ProcessWorkerHandle.launch
        self._options = options
        self._request_timeout = request_timeout
        self._handle: Optional[WorkerHandle] = None
        self._dimension: Optional[int] = None

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._ensure_worker()
        return int(self._dimension)

    @property
    def mode(self) -> ExecutionMode:
        return self.ladder.mode

    def _ensure_worker(self) -> WorkerHandle:
        if self._handle is not None and self._handle.is_alive():
            return self._handle

        mode = self.ladder.next_mode()
        if mode is None:
            raise CircuitOpenError(
                "Local embedding suspended after repeated worker crashes",
                retry_at=self.ladder.retry_at,
            )

        handle = self._launcher(self.model_name, mode, self._options)
        try:
            self._dimension = handle.wait_ready(self.ladder.grace_seconds)
        except WorkerCrashedError:
            self.ladder.record_crash(handle.launched_at)
            handle.close()
            raise
        except EmbeddingError:
            handle.close()
            raise
        self._handle = handle
        return handle

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        sentences = list(texts)
        handle = self._ensure_worker()
        try:
            vectors = handle.embed(sentences, self._request_timeout)
        except WorkerCrashedError:
            LOGGER.error("Embedding worker crashed in mode %s", self.ladder.mode.value)
            self.ladder.record_crash(handle.launched_at)
            handle.close()
            self._handle = None
            raise
        self.ladder.record_stable(handle.launched_at)
        return vectors

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed([text])[0]

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
