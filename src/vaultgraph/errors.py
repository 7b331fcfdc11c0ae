"""Exception hierarchy shared by the indexing and retrieval core."""

from __future__ import annotations


class VaultGraphError(Exception):
    """Base class for all vaultgraph errors."""


class ConfigError(VaultGraphError, ValueError):
    """Raised for unknown or invalid configuration values."""


class EmbeddingError(VaultGraphError):
    """Generic embedding failure after retries were exhausted."""


class RateLimitError(EmbeddingError):
    """The embedding service refused the request because of rate limiting."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AuthenticationError(EmbeddingError):
    """The embedding service rejected the configured credentials."""


class WorkerCrashedError(EmbeddingError):
    """The isolated inference process died or never became ready."""


class CircuitOpenError(EmbeddingError):
    """Local inference is suspended until the cooldown elapses."""

    def __init__(self, message: str, retry_at: float) -> None:
        super().__init__(message)
        self.retry_at = retry_at


class SnapshotError(VaultGraphError):
    """A serialized index snapshot could not be decoded."""


class ModelMismatchError(SnapshotError):
    """The snapshot was produced by a different embedding model or dimension."""


class WorkerError(VaultGraphError):
    """Failure on the host/worker message boundary."""


class TaskDroppedError(WorkerError):
    """A queued mutation was discarded because the worker session changed."""


class RemoteCallError(WorkerError):
    """An operation raised inside the worker process."""

    def __init__(self, method: str, error_type: str, message: str) -> None:
        super().__init__(f"{method} failed in worker: {error_type}: {message}")
        self.method = method
        self.error_type = error_type
