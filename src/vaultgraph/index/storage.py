"""SQLite + numpy hybrid index."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np

from vaultgraph.index.keyword import KeywordIndex
from vaultgraph.models import Chunk, DocumentMetadata, chunk_id

LOGGER = logging.getLogger(__name__)

# stays below SQLITE_MAX_VARIABLE_NUMBER on older builds (999)
SQL_BATCH_SIZE = 500


@dataclass(slots=True)
class ChunkHit:
    """A stored chunk returned by one of the index queries."""

    chunk_id: str
    path: str
    index: int
    text: str
    start: int
    end: int
    anchor: int = 0
    title: str = ""
    score: float = 0.0


_CHUNK_COLUMNS = """
    c.id AS id,
    c.path AS path,
    c.chunk_index AS chunk_index,
    c.text AS text,
    c.start_offset AS start_offset,
    c.end_offset AS end_offset,
    c.anchor AS anchor,
    d.title AS title
"""


def _row_to_hit(row: sqlite3.Row, score: float = 0.0) -> ChunkHit:
    return ChunkHit(
        chunk_id=row["id"],
        path=row["path"],
        index=row["chunk_index"],
        text=row["text"],
        start=row["start_offset"],
        end=row["end_offset"],
        anchor=row["anchor"],
        title=row["title"] or "",
        score=score,
    )


def _batches(items: Sequence[str]) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), SQL_BATCH_SIZE):
        yield items[start : start + SQL_BATCH_SIZE]


def _normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype="float32").reshape(-1)
    norm = float(np.linalg.norm(vector))
    return vector / norm if norm > 0 else vector


class HybridIndex:
    """Chunks with their vectors and keyword terms, held in an in-memory SQLite image.

    Vector search is a dot product against a cached matrix of the normalised
    chunk embeddings. Keyword search goes through a :class:`KeywordIndex`
    rebuilt from the stored ``terms`` column, so a snapshot whose chunk text
    was hollowed out stays keyword-searchable.
    """

    def __init__(self, *, dimension: int, language: str = "en") -> None:
        self.dimension = dimension
        self.language = language
        self._lock = threading.RLock()
        self._conn = self._connect()
        self._ensure_schema()
        self._keyword = KeywordIndex(language=language)
        self._matrix: Optional[np.ndarray] = None
        self._matrix_ids: List[str] = []
        self._matrix_paths: List[str] = []

    @staticmethod
    def _connect() -> sqlite3.Connection:
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    path TEXT PRIMARY KEY,
                    title TEXT,
                    sha256 TEXT NOT NULL,
                    mtime REAL NOT NULL,
                    size INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id TEXT PRIMARY KEY,
                    path TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    start_offset INTEGER NOT NULL,
                    end_offset INTEGER NOT NULL,
                    context_header TEXT,
                    anchor INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL DEFAULT 0,
                    terms TEXT NOT NULL,
                    links TEXT,
                    embedding BLOB NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path)")
            conn.execute(
                "CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )

    def _invalidate(self) -> None:
        self._matrix = None

    def _insert_chunk(self, conn: sqlite3.Connection, chunk: Chunk, vector: np.ndarray) -> None:
        vector = np.asarray(vector, dtype="float32").reshape(-1)
        if vector.shape[0] != self.dimension:
            raise ValueError(
                f"Embedding dimension {vector.shape[0]} does not match index dimension {self.dimension}"
            )
        terms = self._keyword.analyze(chunk.embedding_text())
        conn.execute(
            """
            INSERT OR REPLACE INTO chunks(
                id, path, chunk_index, text, start_offset, end_offset, context_header,
                anchor, created_at, terms, links, embedding
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.id,
                chunk.document_path,
                chunk.index,
                chunk.text,
                chunk.start,
                chunk.end,
                chunk.context_header,
                chunk.anchor,
                chunk.created_at,
                " ".join(terms),
                json.dumps(chunk.links, ensure_ascii=True),
                sqlite3.Binary(vector.tobytes()),
            ),
        )
        self._keyword.add(chunk.id, terms)

    def _delete_chunks(self, conn: sqlite3.Connection, path: str) -> int:
        ids = [row["id"] for row in conn.execute("SELECT id FROM chunks WHERE path = ?", (path,))]
        conn.execute("DELETE FROM chunks WHERE path = ?", (path,))
        for cid in ids:
            self._keyword.remove(cid)
        return len(ids)

    def upsert_document(
        self,
        document: DocumentMetadata,
        chunks: Sequence[Chunk],
        embeddings: np.ndarray,
    ) -> str:
        """Replace every chunk of ``document``; returns ``inserted`` or ``updated``."""
        if embeddings.shape[0] != len(chunks):
            raise ValueError("Embeddings and chunks length mismatch")

        with self.transaction() as conn:
            existing = conn.execute(
                "SELECT 1 FROM documents WHERE path = ?", (document.path,)
            ).fetchone()
            self._delete_chunks(conn, document.path)
            conn.execute(
                """
                INSERT OR REPLACE INTO documents(path, title, sha256, mtime, size)
                VALUES (?, ?, ?, ?, ?)
                """,
                (document.path, document.title, document.sha256, document.mtime, document.size),
            )
            for chunk, vector in zip(chunks, embeddings):
                self._insert_chunk(conn, chunk, vector)
            self._invalidate()
        return "updated" if existing else "inserted"

    def upsert(self, chunk: Chunk) -> None:
        """Insert or replace a single chunk carrying its own embedding."""
        if chunk.embedding is None:
            raise ValueError(f"Chunk {chunk.id} has no embedding")
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO documents(path, title, sha256, mtime, size) VALUES (?, ?, '', 0, 0)",
                (chunk.document_path, chunk.document_path),
            )
            self._keyword.remove(chunk.id)
            self._insert_chunk(conn, chunk, np.asarray(chunk.embedding, dtype="float32"))
            self._invalidate()

    def delete_by_path(self, path: str) -> int:
        """Remove a document and all of its chunks; returns the number of chunks removed."""
        with self.transaction() as conn:
            removed = self._delete_chunks(conn, path)
            conn.execute("DELETE FROM documents WHERE path = ?", (path,))
            self._invalidate()
        return removed

    def rename_document(self, old_path: str, new_path: str) -> bool:
        with self.transaction() as conn:
            row = conn.execute("SELECT 1 FROM documents WHERE path = ?", (old_path,)).fetchone()
            if row is None:
                return False
            self._delete_chunks(conn, new_path)
            conn.execute("DELETE FROM documents WHERE path = ?", (new_path,))
            conn.execute("UPDATE documents SET path = ? WHERE path = ?", (new_path, old_path))
            rows = conn.execute(
                "SELECT id, chunk_index, terms FROM chunks WHERE path = ? ORDER BY rowid", (old_path,)
            ).fetchall()
            for row in rows:
                new_id = chunk_id(new_path, row["chunk_index"])
                conn.execute(
                    "UPDATE chunks SET id = ?, path = ? WHERE id = ?", (new_id, new_path, row["id"])
                )
                self._keyword.remove(row["id"])
                self._keyword.add(new_id, row["terms"].split())
            self._invalidate()
        return True

    def clear(self) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM chunks")
            conn.execute("DELETE FROM documents")
            self._keyword.clear()
            self._invalidate()

    def get_document(self, path: str) -> Optional[DocumentMetadata]:
        with self._lock:
            row = self._conn.execute(
                "SELECT path, title, sha256, mtime, size FROM documents WHERE path = ?", (path,)
            ).fetchone()
        if row is None:
            return None
        return DocumentMetadata(
            path=row["path"], title=row["title"] or "", sha256=row["sha256"],
            mtime=row["mtime"], size=row["size"],
        )

    def documents(self) -> List[DocumentMetadata]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT path, title, sha256, mtime, size FROM documents ORDER BY path"
            ).fetchall()
        return [
            DocumentMetadata(path=r["path"], title=r["title"] or "", sha256=r["sha256"], mtime=r["mtime"], size=r["size"])
            for r in rows
        ]

    def paths(self) -> List[str]:
        with self._lock:
            return [row["path"] for row in self._conn.execute("SELECT path FROM documents ORDER BY path")]

    def chunk_count(self, path: str | None = None) -> int:
        with self._lock:
            if path is None:
                return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            return self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE path = ?", (path,)
            ).fetchone()[0]

    def chunk_ids(self, path: str | None = None) -> List[str]:
        with self._lock:
            if path is None:
                rows = self._conn.execute("SELECT id FROM chunks ORDER BY rowid")
            else:
                rows = self._conn.execute(
                    "SELECT id FROM chunks WHERE path = ? ORDER BY chunk_index", (path,)
                )
            return [row["id"] for row in rows]

    def get_chunks(self, path: str) -> List[ChunkHit]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks c LEFT JOIN documents d ON d.path = c.path "
                "WHERE c.path = ? ORDER BY c.chunk_index",
                (path,),
            ).fetchall()
        return [_row_to_hit(row) for row in rows]

    def _fetch_hits(self, scored: Sequence[tuple[str, float]]) -> List[ChunkHit]:
        if not scored:
            return []
        ids = list(dict.fromkeys(cid for cid, _ in scored))
        by_id: Dict[str, sqlite3.Row] = {}
        with self._lock:
            for batch in _batches(ids):
                placeholders = ",".join("?" for _ in batch)
                rows = self._conn.execute(
                    f"SELECT {_CHUNK_COLUMNS} FROM chunks c LEFT JOIN documents d ON d.path = c.path "
                    f"WHERE c.id IN ({placeholders})",
                    list(batch),
                ).fetchall()
                by_id.update((row["id"], row) for row in rows)
        return [_row_to_hit(by_id[cid], score) for cid, score in scored if cid in by_id]

    def _ensure_matrix(self) -> np.ndarray:
        with self._lock:
            if self._matrix is None:
                rows = self._conn.execute(
                    "SELECT id, path, embedding FROM chunks ORDER BY rowid"
                ).fetchall()
                self._matrix_ids = [row["id"] for row in rows]
                self._matrix_paths = [row["path"] for row in rows]
                if rows:
                    matrix = np.vstack(
                        [np.frombuffer(row["embedding"], dtype="float32") for row in rows]
                    )
                    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
                    norms[norms == 0] = 1.0
                    self._matrix = matrix / norms
                else:
                    self._matrix = np.zeros((0, self.dimension), dtype="float32")
            return self._matrix

    def query_vector(
        self,
        vector: np.ndarray,
        *,
        limit: int = 10,
        min_similarity: float = 0.0,
        paths: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> List[ChunkHit]:
        """Chunks ranked by cosine similarity to ``vector``."""
        with self._lock:
            matrix = self._ensure_matrix()
            if matrix.shape[0] == 0 or limit <= 0:
                return []
            query = _normalize(vector)
            if query.shape[0] != matrix.shape[1]:
                raise ValueError(
                    f"Query dimension {query.shape[0]} does not match index dimension {matrix.shape[1]}"
                )
            scores = matrix @ query
            keep = scores >= min_similarity
            if paths is not None:
                allowed = set(paths)
                keep &= np.fromiter((p in allowed for p in self._matrix_paths), dtype=bool, count=len(scores))
            if exclude is not None:
                blocked = set(exclude)
                keep &= np.fromiter((p not in blocked for p in self._matrix_paths), dtype=bool, count=len(scores))
            candidates = np.flatnonzero(keep)
            order = candidates[np.argsort(-scores[candidates], kind="stable")][:limit]
            scored = [(self._matrix_ids[idx], float(scores[idx])) for idx in order]
        return self._fetch_hits(scored)

    def query_keyword(
        self,
        text: str,
        *,
        limit: int = 10,
        tolerance: int = 2,
        paths: Iterable[str] | None = None,
    ) -> List[ChunkHit]:
        """Chunks ranked by BM25 over stop-word stripped, fuzzily expanded query terms."""
        with self._lock:
            only = None
            if paths is not None:
                only = {cid for path in dict.fromkeys(paths) for cid in self.chunk_ids(path)}
            hits = self._keyword.query(text, limit=limit, tolerance=tolerance, only=only)
        return self._fetch_hits([(hit.chunk_id, hit.score) for hit in hits])

    def query_by_path_filter(self, paths: Iterable[str]) -> List[ChunkHit]:
        wanted = list(dict.fromkeys(paths))
        if not wanted:
            return []
        rows: List[sqlite3.Row] = []
        with self._lock:
            for batch in _batches(wanted):
                placeholders = ",".join("?" for _ in batch)
                rows.extend(
                    self._conn.execute(
                        f"SELECT {_CHUNK_COLUMNS} FROM chunks c LEFT JOIN documents d ON d.path = c.path "
                        f"WHERE c.path IN ({placeholders})",
                        list(batch),
                    ).fetchall()
                )
        rows.sort(key=lambda row: (row["path"], row["chunk_index"]))
        return [_row_to_hit(row) for row in rows]

    def first_chunks(self, paths: Iterable[str]) -> Dict[str, ChunkHit]:
        """The lowest-index chunk of each path, fetched in one query."""
        result: Dict[str, ChunkHit] = {}
        for hit in self.query_by_path_filter(paths):
            if hit.path not in result:
                result[hit.path] = hit
        return result

    def document_vector(self, path: str) -> Optional[np.ndarray]:
        """Mean of a document's chunk vectors, normalised."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT embedding FROM chunks WHERE path = ? ORDER BY chunk_index", (path,)
            ).fetchall()
        if not rows:
            return None
        matrix = np.vstack([np.frombuffer(row["embedding"], dtype="float32") for row in rows])
        return _normalize(matrix.mean(axis=0))

    def get_meta(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self.transaction() as conn:
            conn.execute("INSERT OR REPLACE INTO meta(key, value) VALUES (?, ?)", (key, value))

    def export_connection(self, *, hollow: bool = False) -> sqlite3.Connection:
        """Independent in-memory copy of the index tables, with chunk text dropped when hollow."""
        target = self._connect()
        with self._lock:
            self._conn.commit()
            self._conn.backup(target)
        if hollow:
            target.execute("UPDATE chunks SET text = ''")
            target.commit()
        return target

    def restore(self, source: sqlite3.Connection) -> None:
        """Replace the whole index with the tables held in ``source``."""
        with self._lock:
            source.backup(self._conn)
            self._ensure_schema()
            self._keyword.clear()
            for row in self._conn.execute("SELECT id, terms FROM chunks ORDER BY rowid"):
                self._keyword.add(row["id"], row["terms"].split())
            self._invalidate()
        LOGGER.info("Restored index with %d chunks", self.chunk_count())
