"""SQLite dual index: vector table + FTS5 keyword table.

Both sub-indices live in one SQLite database so every chunk write runs
inside a single transaction (or savepoint) spanning both tables. A chunk is
therefore present in both sub-indices or in neither. Vectors are stored as
float32 blobs and searched with numpy by cosine similarity.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from docsync.errors import ChunkNotFound, DimensionMismatch, IndexWriteFailed
from docsync.models import Chunk, FileFailure, FileRecord, SyncPhase, SyncState
from docsync.utils.text import build_keyword_query

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = "1"

# column weights for bm25(): content, section, heading_hierarchy, source_url, chunk_id
_BM25_WEIGHTS = "1.0, 2.0, 2.0, 0.5, 0.0"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS vector_chunks (
    id                INTEGER PRIMARY KEY,
    chunk_id          TEXT NOT NULL UNIQUE,
    file_id           TEXT NOT NULL,
    embedding         BLOB,
    heading_hierarchy TEXT NOT NULL DEFAULT '[]',
    section           TEXT NOT NULL DEFAULT '',
    content           TEXT NOT NULL,
    source_url        TEXT NOT NULL DEFAULT '',
    content_hash      TEXT NOT NULL,
    chunk_index       INTEGER NOT NULL,
    total_chunks      INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_vector_chunks_file ON vector_chunks(file_id);

CREATE VIRTUAL TABLE IF NOT EXISTS keyword_chunks USING fts5(
    content,
    section,
    heading_hierarchy,
    source_url,
    chunk_id UNINDEXED,
    tokenize = 'unicode61 remove_diacritics 2'
);

CREATE TABLE IF NOT EXISTS files (
    identifier      TEXT PRIMARY KEY,
    mtime           REAL NOT NULL,
    content_hash    TEXT NOT NULL,
    owned_chunk_ids TEXT NOT NULL DEFAULT '[]',
    source_url      TEXT NOT NULL DEFAULT '',
    display_path    TEXT NOT NULL DEFAULT '',
    indexed_at      TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS chunk_coords (
    chunk_id TEXT PRIMARY KEY,
    x        REAL NOT NULL,
    y        REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_state (
    profile_id      TEXT PRIMARY KEY,
    phase           TEXT NOT NULL,
    files_seen      INTEGER NOT NULL DEFAULT 0,
    files_processed INTEGER NOT NULL DEFAULT 0,
    files_skipped   INTEGER NOT NULL DEFAULT 0,
    files_failed    INTEGER NOT NULL DEFAULT 0,
    files_removed   INTEGER NOT NULL DEFAULT 0,
    last_run_at     REAL,
    last_error      TEXT,
    failures        TEXT NOT NULL DEFAULT '[]'
);
"""


class DualIndexStore:
    """Persistence layer for one profile's chunks, file records and sync state.

    Writes are serialised through a lock and each public write is one
    transaction. Readers take the same lock, so a query sees a chunk either
    before or after a write, never half of it.
    """

    def __init__(self, db_path: Path, *, dimension: int, provider_id: str = "") -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._vector_cache: Optional[Tuple[List[str], np.ndarray]] = None
        self._ensure_schema()
        self.configure_embedding(dimension, provider_id)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def dimension(self) -> int:
        return int(self._get_meta("embedding_dimension") or 0)

    @property
    def provider_id(self) -> str:
        return self._get_meta("embedding_provider") or ""

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            finally:
                self._vector_cache = None

    @contextmanager
    def _savepoint(self, conn: sqlite3.Connection, name: str) -> Iterator[None]:
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            conn.execute(f"ROLLBACK TO {name}")
            conn.execute(f"RELEASE {name}")
            raise
        conn.execute(f"RELEASE {name}")

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            for statement in SCHEMA_SQL.split(";\n"):
                if statement.strip():
                    conn.execute(statement)
            conn.execute(
                "INSERT OR IGNORE INTO meta(key, value) VALUES ('schema_version', ?)",
                (SCHEMA_VERSION,),
            )

    def _get_meta(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    @staticmethod
    def _set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute("INSERT OR REPLACE INTO meta(key, value) VALUES (?, ?)", (key, value))

    # Embedding configuration

    def configure_embedding(self, dimension: int, provider_id: str) -> bool:
        """Record the active provider; a change drops every stored vector.

        Returns True when the vectors were invalidated and a re-embed is needed.
        """
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        stored_dimension = self._get_meta("embedding_dimension")
        stored_provider = self._get_meta("embedding_provider")
        if stored_dimension is None:
            with self.transaction() as conn:
                self._set_meta(conn, "embedding_dimension", str(dimension))
                self._set_meta(conn, "embedding_provider", provider_id)
                self._set_meta(conn, "reembed_pending", "0")
            return False
        if int(stored_dimension) == dimension and (stored_provider or "") == provider_id:
            return False
        self.reset_vectors(dimension, provider_id)
        return True

    def reset_vectors(self, dimension: int, provider_id: str) -> None:
        """Drop all vectors and coordinates but keep keyword entries."""
        with self.transaction() as conn:
            conn.execute("UPDATE vector_chunks SET embedding = NULL")
            conn.execute("DELETE FROM chunk_coords")
            pending = conn.execute("SELECT COUNT(*) FROM vector_chunks").fetchone()[0] > 0
            self._set_meta(conn, "embedding_dimension", str(dimension))
            self._set_meta(conn, "embedding_provider", provider_id)
            self._set_meta(conn, "reembed_pending", "1" if pending else "0")
        LOGGER.warning(
            "Embedding provider changed to %s (dimension %d); vectors cleared",
            provider_id,
            dimension,
        )

    def vectors_ready(self) -> bool:
        return self._get_meta("reembed_pending") != "1"

    def chunks_missing_vectors(self, limit: int = 64) -> List[Chunk]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM vector_chunks WHERE embedding IS NULL ORDER BY id LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def set_embeddings(self, embeddings: Mapping[str, np.ndarray]) -> int:
        """Attach vectors to existing chunks; finishes a re-embed when none are missing."""
        updated = 0
        with self.transaction() as conn:
            for chunk_id, vector in embeddings.items():
                blob = self._vector_blob(vector)
                cursor = conn.execute(
                    "UPDATE vector_chunks SET embedding = ? WHERE chunk_id = ?", (blob, chunk_id)
                )
                updated += cursor.rowcount
            self._settle_reembed(conn)
        return updated

    def _settle_reembed(self, conn: sqlite3.Connection) -> None:
        """Clear ``reembed_pending`` once no stored chunk lacks a vector."""
        row = conn.execute("SELECT value FROM meta WHERE key = 'reembed_pending'").fetchone()
        if row is None or row["value"] != "1":
            return
        missing = conn.execute(
            "SELECT COUNT(*) FROM vector_chunks WHERE embedding IS NULL"
        ).fetchone()[0]
        if missing == 0:
            self._set_meta(conn, "reembed_pending", "0")
            LOGGER.info("Every chunk has a vector again; vector search resumed")

    def finish_reembed(self) -> bool:
        """Re-check the pending flag; returns True when vectors are ready."""
        with self.transaction() as conn:
            self._settle_reembed(conn)
        return self.vectors_ready()

    def _vector_blob(self, vector: Optional[np.ndarray]) -> Optional[sqlite3.Binary]:
        if vector is None:
            return None
        array = np.asarray(vector, dtype="float32").reshape(-1)
        if array.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, int(array.shape[0]))
        return sqlite3.Binary(array.tobytes())

    # Chunk writes

    def _write_vector(self, conn: sqlite3.Connection, chunk: Chunk, row_id: Optional[int]) -> int:
        cursor = conn.execute(
            """
            INSERT INTO vector_chunks(
                id, chunk_id, file_id, embedding, heading_hierarchy, section, content,
                source_url, content_hash, chunk_index, total_chunks
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row_id,
                chunk.chunk_id,
                chunk.file_id,
                self._vector_blob(chunk.embedding),
                chunk.heading_hierarchy_json(),
                chunk.section,
                chunk.content,
                chunk.source_url,
                chunk.content_hash,
                chunk.chunk_index,
                chunk.total_chunks,
            ),
        )
        return int(cursor.lastrowid)

    def _write_keyword(self, conn: sqlite3.Connection, row_id: int, chunk: Chunk) -> None:
        conn.execute(
            """
            INSERT INTO keyword_chunks(rowid, content, section, heading_hierarchy, source_url, chunk_id)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (row_id, chunk.content, chunk.section, chunk.heading_path, chunk.source_url, chunk.chunk_id),
        )

    def _delete_rows(self, conn: sqlite3.Connection, chunk_id: str) -> Optional[int]:
        row = conn.execute(
            "SELECT id FROM vector_chunks WHERE chunk_id = ?", (chunk_id,)
        ).fetchone()
        if row is None:
            return None
        conn.execute("DELETE FROM keyword_chunks WHERE rowid = ?", (row["id"],))
        conn.execute("DELETE FROM vector_chunks WHERE id = ?", (row["id"],))
        conn.execute("DELETE FROM chunk_coords WHERE chunk_id = ?", (chunk_id,))
        return int(row["id"])

    def _write_chunk(self, conn: sqlite3.Connection, chunk: Chunk) -> None:
        row_id = self._delete_rows(conn, chunk.chunk_id)
        row_id = self._write_vector(conn, chunk, row_id)
        self._write_keyword(conn, row_id, chunk)

    def upsert(self, chunk: Chunk) -> None:
        """Insert or replace one chunk in both sub-indices atomically."""
        try:
            with self.transaction() as conn:
                self._write_chunk(conn, chunk)
                self._settle_reembed(conn)
        except DimensionMismatch:
            raise
        except sqlite3.Error as exc:
            raise IndexWriteFailed(f"Failed to upsert chunk {chunk.chunk_id}: {exc}", [chunk.chunk_id]) from exc

    def delete(self, chunk_id: str) -> bool:
        """Remove one chunk from both sub-indices atomically."""
        try:
            with self.transaction() as conn:
                deleted = self._delete_rows(conn, chunk_id) is not None
                self._settle_reembed(conn)
                return deleted
        except sqlite3.Error as exc:
            raise IndexWriteFailed(f"Failed to delete chunk {chunk_id}: {exc}", [chunk_id]) from exc

    def bulk_upsert(self, chunks: Sequence[Chunk]) -> int:
        """Upsert many chunks in one transaction, each in its own savepoint.

        Chunks that fail are rolled back individually; the rest commit and
        :class:`IndexWriteFailed` lists the failed ids.
        """
        failed: List[str] = []
        written = 0
        with self.transaction() as conn:
            for chunk in chunks:
                try:
                    with self._savepoint(conn, "chunk_write"):
                        self._write_chunk(conn, chunk)
                    written += 1
                except (sqlite3.Error, DimensionMismatch) as exc:
                    LOGGER.warning("Rolled back chunk %s: %s", chunk.chunk_id, exc)
                    failed.append(chunk.chunk_id)
            self._settle_reembed(conn)
        if failed:
            raise IndexWriteFailed(f"{len(failed)} chunk(s) failed to upsert", failed)
        return written

    def bulk_delete(self, chunk_ids: Iterable[str]) -> int:
        deleted = 0
        with self.transaction() as conn:
            for chunk_id in chunk_ids:
                with self._savepoint(conn, "chunk_delete"):
                    if self._delete_rows(conn, chunk_id) is not None:
                        deleted += 1
            self._settle_reembed(conn)
        return deleted

    # File records

    def chunk_signatures(self, chunk_ids: Sequence[str]) -> Dict[str, Tuple[str, int, bool]]:
        """Map chunk id to ``(content_hash, total_chunks, has_vector)`` for stored chunks."""
        if not chunk_ids:
            return {}
        signatures: Dict[str, Tuple[str, int, bool]] = {}
        with self._lock:
            for start in range(0, len(chunk_ids), 500):
                batch = list(chunk_ids[start : start + 500])
                placeholders = ",".join("?" for _ in batch)
                rows = self._conn.execute(
                    f"""
                    SELECT chunk_id, content_hash, total_chunks, embedding IS NOT NULL AS has_vector
                    FROM vector_chunks WHERE chunk_id IN ({placeholders})
                    """,
                    batch,
                ).fetchall()
                for row in rows:
                    signatures[row["chunk_id"]] = (
                        row["content_hash"],
                        int(row["total_chunks"]),
                        bool(row["has_vector"]),
                    )
        return signatures

    def commit_file(
        self,
        record: FileRecord,
        chunks: Sequence[Chunk],
        *,
        unchanged_ids: Iterable[str] = (),
    ) -> Tuple[int, int]:
        """Replace a file's chunk set and its FileRecord in one transaction.

        Chunks listed in ``unchanged_ids`` are already stored identically and
        are left untouched. Returns ``(written, deleted)``.
        """
        keep = set(unchanged_ids)
        new_ids = [chunk.chunk_id for chunk in chunks]
        try:
            with self.transaction() as conn:
                previous = self._load_record(conn, record.identifier)
                stale = set(previous.chunk_ids) - set(new_ids) if previous else set()
                for chunk_id in sorted(stale):
                    self._delete_rows(conn, chunk_id)
                written = 0
                for chunk in chunks:
                    if chunk.chunk_id in keep:
                        continue
                    self._write_chunk(conn, chunk)
                    written += 1
                record.chunk_ids = new_ids
                self._write_record(conn, record)
                self._settle_reembed(conn)
        except DimensionMismatch:
            raise
        except sqlite3.Error as exc:
            raise IndexWriteFailed(
                f"Failed to commit {record.identifier}: {exc}", new_ids
            ) from exc
        return written, len(stale)

    def _write_record(self, conn: sqlite3.Connection, record: FileRecord) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO files(
                identifier, mtime, content_hash, owned_chunk_ids, source_url, display_path, indexed_at
            ) VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            """,
            (
                record.identifier,
                record.mtime,
                record.content_hash,
                json.dumps(record.chunk_ids),
                record.source_url,
                record.display_path,
            ),
        )

    @staticmethod
    def _record_from_row(row: sqlite3.Row) -> FileRecord:
        return FileRecord(
            identifier=row["identifier"],
            mtime=float(row["mtime"]),
            content_hash=row["content_hash"],
            chunk_ids=json.loads(row["owned_chunk_ids"] or "[]"),
            source_url=row["source_url"],
            display_path=row["display_path"],
        )

    def _load_record(self, conn: sqlite3.Connection, identifier: str) -> Optional[FileRecord]:
        row = conn.execute("SELECT * FROM files WHERE identifier = ?", (identifier,)).fetchone()
        return self._record_from_row(row) if row else None

    def get_file_record(self, identifier: str) -> Optional[FileRecord]:
        with self._lock:
            return self._load_record(self._conn, identifier)

    def list_file_records(self) -> Dict[str, FileRecord]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM files ORDER BY identifier").fetchall()
        return {row["identifier"]: self._record_from_row(row) for row in rows}

    def touch_file(self, identifier: str, mtime: float) -> None:
        """Record a new mtime for a file whose content hash did not change."""
        with self.transaction() as conn:
            conn.execute("UPDATE files SET mtime = ? WHERE identifier = ?", (mtime, identifier))

    def remove_file(self, identifier: str) -> int:
        """Delete every chunk a file owns, then its record. Returns chunks removed."""
        with self.transaction() as conn:
            record = self._load_record(conn, identifier)
            if record is None:
                return 0
            owned = set(record.chunk_ids)
            owned.update(
                row["chunk_id"]
                for row in conn.execute(
                    "SELECT chunk_id FROM vector_chunks WHERE file_id = ?", (identifier,)
                )
            )
            removed = sum(1 for chunk_id in sorted(owned) if self._delete_rows(conn, chunk_id) is not None)
            conn.execute("DELETE FROM files WHERE identifier = ?", (identifier,))
            self._settle_reembed(conn)
        return removed

    # Queries

    def keyword_search(self, query_text: str, *, limit: int = 20) -> List[Tuple[str, str]]:
        """Return ``(chunk_id, snippet)`` pairs ranked by bm25."""
        fts_query, _ = build_keyword_query(query_text)
        if not fts_query:
            return []
        try:
            with self._lock:
                rows = self._conn.execute(
                    f"""
                    SELECT
                        v.chunk_id AS chunk_id,
                        snippet(keyword_chunks, 0, '**', '**', '...', 24) AS snippet
                    FROM keyword_chunks
                    JOIN vector_chunks v ON v.id = keyword_chunks.rowid
                    WHERE keyword_chunks MATCH ?
                    ORDER BY bm25(keyword_chunks, {_BM25_WEIGHTS}), v.chunk_id
                    LIMIT ?
                    """,
                    (fts_query, limit),
                ).fetchall()
        except sqlite3.OperationalError as exc:
            LOGGER.warning("Keyword query %r failed: %s", fts_query, exc)
            return []
        return [(row["chunk_id"], row["snippet"]) for row in rows]

    def _load_vectors(self) -> Tuple[List[str], np.ndarray]:
        if self._vector_cache is None:
            rows = self._conn.execute(
                "SELECT chunk_id, embedding FROM vector_chunks WHERE embedding IS NOT NULL ORDER BY id"
            ).fetchall()
            dimension = self.dimension
            ids: List[str] = []
            vectors: List[np.ndarray] = []
            for row in rows:
                vector = np.frombuffer(row["embedding"], dtype="float32")
                if vector.shape[0] != dimension:
                    continue
                ids.append(row["chunk_id"])
                vectors.append(vector)
            matrix = np.vstack(vectors) if vectors else np.zeros((0, dimension), dtype="float32")
            self._vector_cache = (ids, matrix)
        return self._vector_cache

    def vector_search(self, embedding: np.ndarray, *, limit: int = 20) -> List[Tuple[str, float]]:
        """Return ``(chunk_id, cosine similarity)`` pairs, best first.

        Empty while a re-embed is pending; raises DimensionMismatch when the
        query vector does not match the active provider.
        """
        query = np.asarray(embedding, dtype="float32").reshape(-1)
        with self._lock:
            if query.shape[0] != self.dimension:
                raise DimensionMismatch(self.dimension, int(query.shape[0]))
            if not self.vectors_ready():
                return []
            ids, matrix = self._load_vectors()
        if not ids:
            return []

        norm = float(np.linalg.norm(query)) or 1.0
        row_norms = np.linalg.norm(matrix, axis=1)
        row_norms[row_norms == 0] = 1.0
        scores = (matrix @ query) / (row_norms * norm)

        if limit < len(scores):
            top_indices = np.argpartition(-scores, limit - 1)[:limit]
        else:
            top_indices = np.arange(len(scores))
        ordered = sorted(top_indices, key=lambda idx: (-float(scores[idx]), ids[idx]))
        return [(ids[idx], float(scores[idx])) for idx in ordered]

    def _row_to_chunk(self, row: sqlite3.Row, *, with_embedding: bool = False) -> Chunk:
        embedding = None
        if with_embedding and row["embedding"] is not None:
            embedding = np.frombuffer(row["embedding"], dtype="float32").copy()
        keys = row.keys()
        return Chunk(
            chunk_id=row["chunk_id"],
            content=row["content"],
            section=row["section"],
            heading_hierarchy=json.loads(row["heading_hierarchy"] or "[]"),
            chunk_index=int(row["chunk_index"]),
            total_chunks=int(row["total_chunks"]),
            source_url=row["source_url"],
            content_hash=row["content_hash"],
            file_id=row["file_id"],
            embedding=embedding,
            x=row["x"] if "x" in keys else None,
            y=row["y"] if "y" in keys else None,
        )

    def get_chunks(self, chunk_ids: Sequence[str], *, with_embedding: bool = False) -> Dict[str, Chunk]:
        if not chunk_ids:
            return {}
        chunks: Dict[str, Chunk] = {}
        with self._lock:
            for start in range(0, len(chunk_ids), 500):
                batch = list(chunk_ids[start : start + 500])
                placeholders = ",".join("?" for _ in batch)
                rows = self._conn.execute(
                    f"""
                    SELECT v.*, c.x AS x, c.y AS y
                    FROM vector_chunks v
                    LEFT JOIN chunk_coords c ON c.chunk_id = v.chunk_id
                    WHERE v.chunk_id IN ({placeholders})
                    """,
                    batch,
                ).fetchall()
                for row in rows:
                    chunks[row["chunk_id"]] = self._row_to_chunk(row, with_embedding=with_embedding)
        return chunks

    def chunks_for_file(self, identifier: str) -> List[Chunk]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM vector_chunks WHERE file_id = ? ORDER BY chunk_index",
                (identifier,),
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def chunk_range(
        self, document: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> List[Chunk]:
        """Chunks of one document by position; ``start`` and ``end`` are inclusive.

        ``document`` matches either the file identifier or the source url
        that search results carry.
        """
        low = 0 if start is None else max(0, start)
        high = -1 if end is None else end
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT v.*, c.x AS x, c.y AS y
                FROM vector_chunks v
                LEFT JOIN chunk_coords c ON c.chunk_id = v.chunk_id
                WHERE (v.file_id = ? OR v.source_url = ?)
                  AND v.chunk_index >= ?
                  AND (? < 0 OR v.chunk_index <= ?)
                ORDER BY v.chunk_index
                """,
                (document, document, low, high, high),
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def neighbors(self, chunk_id: str, *, limit: int = 10) -> List[Tuple[Chunk, float]]:
        """Nearest chunks to a stored chunk's vector, excluding the chunk itself.

        Raises ChunkNotFound for an unknown id; empty when the chunk has no
        vector yet or a re-embed is pending.
        """
        center = self.get_chunks([chunk_id], with_embedding=True).get(chunk_id)
        if center is None:
            raise ChunkNotFound(f"Chunk {chunk_id!r} not found")
        if center.embedding is None or center.embedding.shape[0] != self.dimension:
            return []
        hits = [
            (hit_id, score)
            for hit_id, score in self.vector_search(center.embedding, limit=limit + 1)
            if hit_id != chunk_id
        ][:limit]
        chunks = self.get_chunks([hit_id for hit_id, _ in hits])
        return [(chunks[hit_id], score) for hit_id, score in hits if hit_id in chunks]

    def all_embeddings(self) -> Tuple[List[str], np.ndarray]:
        with self._lock:
            ids, matrix = self._load_vectors()
        return list(ids), matrix.copy()

    # Coordinates

    def replace_coords(self, coords: Mapping[str, Tuple[float, float]]) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM chunk_coords")
            conn.executemany(
                """
                INSERT INTO chunk_coords(chunk_id, x, y)
                SELECT ?, ?, ? WHERE EXISTS (SELECT 1 FROM vector_chunks WHERE chunk_id = ?)
                """,
                [(chunk_id, float(x), float(y), chunk_id) for chunk_id, (x, y) in coords.items()],
            )

    def clear_coords(self) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM chunk_coords")

    def map_points(self, limit: int = 600) -> List[dict]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT v.chunk_id, v.source_url, v.section, v.heading_hierarchy,
                       v.chunk_index, v.total_chunks, c.x, c.y
                FROM chunk_coords c
                JOIN vector_chunks v ON v.chunk_id = c.chunk_id
                ORDER BY v.chunk_id
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            {
                "chunk_id": row["chunk_id"],
                "x": row["x"],
                "y": row["y"],
                "source_url": row["source_url"],
                "section": row["section"],
                "heading_hierarchy": " > ".join(json.loads(row["heading_hierarchy"] or "[]")),
                "chunk_index": row["chunk_index"],
                "total_chunks": row["total_chunks"],
            }
            for row in rows
        ]

    # Sync state

    def save_sync_state(self, state: SyncState) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_state(
                    profile_id, phase, files_seen, files_processed, files_skipped,
                    files_failed, files_removed, last_run_at, last_error, failures
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    state.profile_id,
                    state.phase.value,
                    state.files_seen,
                    state.files_processed,
                    state.files_skipped,
                    state.files_failed,
                    state.files_removed,
                    state.last_run_at,
                    state.last_error,
                    json.dumps([failure.to_dict() for failure in state.failures]),
                ),
            )

    def load_sync_state(self, profile_id: str) -> SyncState:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sync_state WHERE profile_id = ?", (profile_id,)
            ).fetchone()
        if row is None:
            return SyncState(profile_id=profile_id)
        return SyncState(
            profile_id=profile_id,
            phase=SyncPhase(row["phase"]),
            files_seen=row["files_seen"],
            files_processed=row["files_processed"],
            files_skipped=row["files_skipped"],
            files_failed=row["files_failed"],
            files_removed=row["files_removed"],
            last_run_at=row["last_run_at"],
            last_error=row["last_error"],
            failures=[FileFailure(**item) for item in json.loads(row["failures"] or "[]")],
        )

    # Maintenance

    def stats(self) -> dict:
        with self._lock:
            file_count = self._conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]
            chunk_count = self._conn.execute("SELECT COUNT(*) FROM vector_chunks").fetchone()[0]
            embedded = self._conn.execute(
                "SELECT COUNT(*) FROM vector_chunks WHERE embedding IS NOT NULL"
            ).fetchone()[0]
            keyword_count = self._conn.execute("SELECT COUNT(*) FROM keyword_chunks").fetchone()[0]
        return {
            "file_count": file_count,
            "chunk_count": chunk_count,
            "keyword_count": keyword_count,
            "embedded_count": embedded,
            "dimension": self.dimension,
            "provider_id": self.provider_id,
            "vectors_ready": self.vectors_ready(),
        }

    def clear_all(self) -> None:
        """Delete every chunk, file record and coordinate."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM keyword_chunks")
            conn.execute("DELETE FROM vector_chunks")
            conn.execute("DELETE FROM chunk_coords")
            conn.execute("DELETE FROM files")
            self._set_meta(conn, "reembed_pending", "0")
        LOGGER.info("Cleared all data in %s", self.db_path)


