"""Entry point of the indexing worker process."""

from __future__ import annotations

import itertools
import logging
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, Optional, Sequence

import numpy as np

from vaultgraph.errors import (
    AuthenticationError,
    EmbeddingError,
    RateLimitError,
    VaultGraphError,
    WorkerCrashedError,
    WorkerError,
)
from vaultgraph.index.indexer import IndexSession, vault_loader
from vaultgraph.worker.protocol import (
    METHODS,
    CallMessage,
    EmbedRequest,
    EmbedResponse,
    ResultMessage,
    ShutdownMessage,
    decode,
    encode,
)

LOGGER = logging.getLogger(__name__)

# Host failures that must abort the whole update rather than skip a chunk.
_HOST_ERRORS = {
    "RateLimitError": RateLimitError,
    "AuthenticationError": AuthenticationError,
    "WorkerCrashedError": WorkerCrashedError,
    "CircuitOpenError": WorkerCrashedError,
}


class Channel:
    """Worker end of the pipe, with a backlog for calls that arrive mid-request."""

    def __init__(self, conn) -> None:
        self._conn = conn
        self.backlog: Deque[Any] = deque()

    def send(self, message) -> None:
        self._conn.send(encode(message))

    def next_message(self):
        if self.backlog:
            return self.backlog.popleft()
        return decode(self._conn.recv())

    def wait_for_embedding(self, request_id: int) -> EmbedResponse:
        while True:
            message = decode(self._conn.recv())
            if isinstance(message, EmbedResponse) and message.id == request_id:
                return message
            self.backlog.append(message)


class HostEmbedder:
    """Embedder that asks the host process for vectors over the channel."""

    def __init__(self, channel: Channel, model_name: str, dimension: int) -> None:
        self._channel = channel
        self._ids = itertools.count(1)
        self.model_name = model_name
        self.dimension = dimension

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self.dimension), dtype="float32")
        request_id = next(self._ids)
        self._channel.send(EmbedRequest(id=request_id, texts=sentences))
        response = self._channel.wait_for_embedding(request_id)
        if response.error:
            error_cls = _HOST_ERRORS.get(response.error_type or "", EmbeddingError)
            raise error_cls(f"{response.error_type}: {response.error}")
        return np.asarray(response.vectors, dtype="float32")

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed([text])[0]


def _to_wire(value: Any) -> Any:
    if isinstance(value, list):
        return [_to_wire(item) for item in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


class WorkerRuntime:
    """Dispatches calls onto the session owned by this process."""

    def __init__(self, channel: Channel) -> None:
        self.channel = channel
        self.session: Optional[IndexSession] = None

    def initialize(
        self,
        config: Dict[str, Any],
        model_name: str,
        dimension: int,
        vault_root: str | None = None,
    ) -> bool:
        if self.session is not None:
            self.session.close()
        embedder = HostEmbedder(self.channel, model_name, dimension)
        loader = vault_loader(Path(vault_root)) if vault_root else None
        self.session = IndexSession.initialize(config, embedder, content_loader=loader)
        LOGGER.info("Worker session initialised for %s", model_name)
        return True

    def dispatch(self, method: str, params: Dict[str, Any]) -> Any:
        if method not in METHODS:
            raise WorkerError(f"Unknown method: {method}")
        if method == "initialize":
            return self.initialize(**params)
        if self.session is None:
            raise WorkerError("Worker session not initialised")
        handler: Callable[..., Any] = getattr(self.session, method)
        return _to_wire(handler(**params))

    def serve(self) -> None:
        while True:
            try:
                message = self.channel.next_message()
            except EOFError:
                break
            if isinstance(message, ShutdownMessage):
                break
            if not isinstance(message, CallMessage):
                LOGGER.debug("Ignoring unexpected %s message", message.kind)
                continue
            try:
                result = self.dispatch(message.method, message.params)
                reply = ResultMessage(id=message.id, result=result)
            except (VaultGraphError, ValueError, TypeError, KeyError, OSError) as exc:
                LOGGER.warning("%s failed: %s", message.method, exc)
                reply = ResultMessage(id=message.id, ok=False, error_type=type(exc).__name__, error=str(exc))
            except Exception as exc:
                LOGGER.error("%s raised unexpectedly", message.method, exc_info=True)
                reply = ResultMessage(id=message.id, ok=False, error_type=type(exc).__name__, error=str(exc))
            self.channel.send(reply)
        if self.session is not None:
            self.session.close()


def run_worker(conn, log_level: int = logging.WARNING) -> None:
    """Process target: serve calls until the host shuts the pipe."""
    logging.basicConfig(level=log_level, format="[%(levelname)s] %(message)s")
    WorkerRuntime(Channel(conn)).serve()
    conn.close()
