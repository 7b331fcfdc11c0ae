"""Binary snapshots of the index and graph, with hot and cold tiers.

A snapshot is a serialized SQLite image holding the chunk, document, graph
and meta tables, behind a four byte magic and a flags byte. The hot tier
keeps full chunk text and is written uncompressed for fast reloads. The cold
tier drops chunk text (it is re-read from the source documents on demand),
is vacuumed and zlib-compressed.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import zlib
from dataclasses import dataclass
from pathlib import Path

from vaultgraph.errors import ModelMismatchError, SnapshotError
from vaultgraph.graph.relationships import RelationshipGraph
from vaultgraph.index.storage import HybridIndex

LOGGER = logging.getLogger(__name__)

MAGIC = b"VGS1"
FORMAT_VERSION = "1"
FLAG_HOLLOW = 0x01
FLAG_COMPRESSED = 0x02


@dataclass(slots=True)
class SnapshotInfo:
    model: str
    dimension: int
    hollow: bool
    compressed: bool

    @property
    def identity(self) -> tuple[str, int]:
        return (self.model, self.dimension)


def encode_snapshot(
    index: HybridIndex,
    graph: RelationshipGraph,
    identity: tuple[str, int],
    *,
    hollow: bool = False,
    compress: bool = False,
) -> bytes:
    conn = index.export_connection(hollow=hollow)
    try:
        graph.to_sqlite(conn)
        model, dimension = identity
        conn.executemany(
            "INSERT OR REPLACE INTO meta(key, value) VALUES (?, ?)",
            [("model", model), ("dimension", str(dimension)), ("format_version", FORMAT_VERSION)],
        )
        conn.commit()
        if hollow or compress:
            conn.execute("VACUUM")
        image = conn.serialize()
    finally:
        conn.close()

    flags = (FLAG_HOLLOW if hollow else 0) | (FLAG_COMPRESSED if compress else 0)
    if compress:
        image = zlib.compress(image, 9)
    LOGGER.debug("Encoded %s snapshot of %d bytes", "cold" if hollow else "hot", len(image))
    return MAGIC + bytes([flags]) + image


def open_snapshot(
    data: bytes, expected_identity: tuple[str, int] | None = None
) -> tuple[sqlite3.Connection, SnapshotInfo]:
    """Decode a snapshot into an in-memory connection; raises :class:`SnapshotError`.

    With ``expected_identity`` a snapshot from another embedding model or
    dimension raises :class:`ModelMismatchError`.
    """
    if len(data) < len(MAGIC) + 1 or not data.startswith(MAGIC):
        raise SnapshotError("Not a vaultgraph snapshot")
    flags = data[len(MAGIC)]
    image = bytes(data[len(MAGIC) + 1 :])
    if flags & FLAG_COMPRESSED:
        try:
            image = zlib.decompress(image)
        except zlib.error as exc:
            raise SnapshotError(f"Corrupt snapshot payload: {exc}") from exc

    conn = sqlite3.connect(":memory:", check_same_thread=False)
    try:
        conn.deserialize(image)
        rows = dict(conn.execute("SELECT key, value FROM meta"))
    except sqlite3.DatabaseError as exc:
        conn.close()
        raise SnapshotError(f"Unreadable snapshot database: {exc}") from exc

    if "model" not in rows or "dimension" not in rows:
        conn.close()
        raise SnapshotError("Snapshot has no model identity")
    info = SnapshotInfo(
        model=rows["model"],
        dimension=int(rows["dimension"]),
        hollow=bool(flags & FLAG_HOLLOW),
        compressed=bool(flags & FLAG_COMPRESSED),
    )
    if expected_identity is not None and info.identity != tuple(expected_identity):
        conn.close()
        raise ModelMismatchError(
            f"Snapshot model {info.model}/{info.dimension} does not match "
            f"{expected_identity[0]}/{expected_identity[1]}"
        )
    return conn, info


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


class PersistenceManager:
    """Reads and writes the two snapshot tiers of a session."""

    def __init__(self, hot_path: Path, cold_path: Path) -> None:
        self.hot_path = Path(hot_path)
        self.cold_path = Path(cold_path)

    def save(self, session) -> None:
        _atomic_write(self.hot_path, session.save_index(tier="hot"))
        _atomic_write(self.cold_path, session.save_index(tier="cold"))
        LOGGER.info("Saved index snapshots to %s", self.hot_path.parent)

    def load(self, session) -> bool:
        """Load the freshest available tier; the cold tier is the fallback."""
        for path in (self.hot_path, self.cold_path):
            if not path.exists():
                continue
            if session.load_index(path.read_bytes()):
                LOGGER.info("Loaded index snapshot %s", path)
                return True
            LOGGER.warning("Discarded incompatible snapshot %s", path)
        return False

    def delete(self) -> None:
        for path in (self.hot_path, self.cold_path):
            path.unlink(missing_ok=True)
