"""SQLite storage backend for Cortex.

Provides durable persistence of :class:`Memory`, :class:`Edge` and
:class:`ExtractionCheckpoint` rows in a single SQLite file per scope, with a
FTS5 keyword index, whole-store snapshot/restore, and a cross-process lock
for multi-write units.  No external server is required.
"""

from __future__ import annotations

import contextlib
import json
import os
import re
import sqlite3
import struct
import threading
from collections.abc import Generator, Iterable, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from .errors import DuplicateEdge, StoreUnavailable
from .locking import DEFAULT_STALE_SECONDS, DEFAULT_WAIT_SECONDS, StoreLock
from .memory import (
    ACTIVE,
    ARCHIVED,
    PROJECT_SCOPE,
    Edge,
    ExtractionCheckpoint,
    Memory,
    make_summary,
    validate_scope,
)
from .similarity import cosine_similarity

# ---------------------------------------------------------------------------
# Default database locations
# ---------------------------------------------------------------------------

_DEFAULT_DIR = os.path.join(os.path.expanduser("~"), ".cortex")
_DEFAULT_GLOBAL_DB = os.path.join(_DEFAULT_DIR, "global.db")
_PROJECT_DIR_NAME = ".cortex"
_PROJECT_DB_NAME = "memories.db"

# Sentinel object to distinguish "not provided" from ``None`` in update calls.
_UNSET: Any = object()

# Statuses a query may surface (archived memories are revived on access).
SEARCHABLE_STATUSES: tuple[str, ...] = (ACTIVE, ARCHIVED)

# Project root marker files/directories.
_PROJECT_MARKERS = (
    ".git",
    "pyproject.toml",
    "Cargo.toml",
    "package.json",
    "go.mod",
    ".hg",
    "Makefile",
    _PROJECT_DIR_NAME,
)

_FTS_TOKEN = re.compile(r"\w+", re.UNICODE)


def _has_project_marker(directory: str) -> bool:
    """Check whether *directory* contains a recognised project marker."""
    return any(os.path.exists(os.path.join(directory, marker)) for marker in _PROJECT_MARKERS)


def detect_project_root(start: str | None = None) -> str | None:
    """Walk up from *start* (default: CWD) to the nearest project root.

    The ``CORTEX_PROJECT_ROOT`` environment variable wins when it names an
    existing directory.

    Returns:
        An absolute directory path, or ``None`` when no marker is found.
    """
    env_root = os.environ.get("CORTEX_PROJECT_ROOT")
    if env_root and os.path.isdir(env_root):
        return os.path.realpath(env_root)

    current = os.path.realpath(start or os.getcwd())
    while True:
        if _has_project_marker(current):
            return current
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent


def project_db_path(project_root: str) -> str:
    """Return the project-scope database path for *project_root*."""
    return os.path.join(project_root, _PROJECT_DIR_NAME, _PROJECT_DB_NAME)


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------


def _pack_embedding(embedding: Sequence[float] | None) -> bytes | None:
    """Pack a vector into a little-endian f32 blob (``None`` stays ``None``)."""
    if embedding is None or len(embedding) == 0:
        return None
    return struct.pack(f"<{len(embedding)}f", *embedding)


def _unpack_embedding(blob: bytes | None) -> list[float] | None:
    """Unpack a blob created by :func:`_pack_embedding`."""
    if blob is None:
        return None
    count = len(blob) // 4  # 4 bytes per float32
    return list(struct.unpack(f"<{count}f", blob))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def fts_query(text: str) -> str:
    """Turn free text into a safe FTS5 ``MATCH`` expression.

    Each word is quoted so that user punctuation can never be parsed as
    FTS syntax; terms are OR-ed and ``bm25`` does the ranking.
    """
    tokens = [t for t in _FTS_TOKEN.findall(text.lower()) if len(t) > 1]
    return " OR ".join(f'"{t}"' for t in dict.fromkeys(tokens))


# Columns that :meth:`MemoryStore.update` may change, mapped to encoders.
_UPDATABLE: dict[str, tuple[str, Any]] = {
    "content": ("content", str),
    "summary": ("summary", make_summary),
    "memory_type": ("memory_type", str),
    "confidence": ("confidence", lambda v: max(0.0, min(1.0, float(v)))),
    "priority": ("priority", lambda v: max(1, min(10, int(v)))),
    "pinned": ("pinned", lambda v: 1 if v else 0),
    "source_type": ("source_type", str),
    "source_session": ("source_session", lambda v: v),
    "source_context": ("source_context_json", lambda v: json.dumps(v or {}, ensure_ascii=False)),
    "tags": ("tags_json", lambda v: json.dumps(list(dict.fromkeys(v or [])), ensure_ascii=False)),
    "access_count": ("access_count", int),
    "last_accessed_at": ("last_accessed_at", _iso),
    "status": ("status", str),
    "low_confidence_since": ("low_confidence_since", _iso),
    "archived_at": ("archived_at", _iso),
    "embedding": ("embedding_blob", _pack_embedding),
    "local_embedding": ("local_embedding_blob", _pack_embedding),
}


class MemoryStore:
    """SQLite storage for one scope of memories.

    Each instance manages a single SQLite database file in WAL mode and
    uses per-thread connections to satisfy SQLite's threading constraints.

    Args:
        path: Path to the SQLite database file.  Parent directories are
            created automatically.  Defaults to ``~/.cortex/global.db``.
        scope: The scope whose memories live in this file.
        lock_wait: Bounded wait for the cross-process lock, in seconds.
        lock_stale: Age after which a held lock is broken, in seconds.

    Raises:
        StoreUnavailable: If the file cannot be opened or is not a valid
            SQLite database.
    """

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __init__(
        self,
        path: str | os.PathLike[str] | None = None,
        scope: str = PROJECT_SCOPE,
        lock_wait: float = DEFAULT_WAIT_SECONDS,
        lock_stale: float = DEFAULT_STALE_SECONDS,
    ) -> None:
        raw_path = str(path) if path is not None else _DEFAULT_GLOBAL_DB
        self._path = os.path.realpath(os.path.expanduser(raw_path))
        self.scope = validate_scope(scope)
        self._local = threading.local()
        self.lock = StoreLock(self._path + ".lock", wait_seconds=lock_wait, stale_seconds=lock_stale)

        parent = os.path.dirname(self._path)
        try:
            if parent:
                os.makedirs(parent, mode=0o700, exist_ok=True)
            from .migrations import ensure_schema

            conn = self._get_connection()
            self._schema_version = ensure_schema(conn)
        except (sqlite3.Error, OSError) as exc:
            self.close()
            raise StoreUnavailable(f"Cannot open memory store {self._path}: {exc}") from exc

    @property
    def path(self) -> str:
        return self._path

    @property
    def schema_version(self) -> int:
        return self._schema_version

    # ------------------------------------------------------------------
    # Connection management (per-thread)
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return (or create) a SQLite connection for the current thread."""
        conn: sqlite3.Connection | None = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._path, timeout=30.0)
            conn.row_factory = sqlite3.Row
            try:
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA foreign_keys=ON;")
                conn.execute("PRAGMA busy_timeout=30000;")
            except sqlite3.Error:
                conn.close()
                raise
            self._local.conn = conn
            self._local.tx_depth = 0
            self._local.commits = 0
        return conn

    @contextmanager
    def _cursor(self) -> Generator[sqlite3.Cursor, None, None]:
        """Yield a cursor; commit on success unless inside :meth:`transaction`."""
        conn = self._get_connection()
        cur = conn.cursor()
        in_tx = getattr(self._local, "tx_depth", 0) > 0
        changes = conn.total_changes
        try:
            yield cur
            if not in_tx:
                conn.commit()
                if conn.total_changes != changes:
                    self._local.commits += 1
        except Exception:
            if not in_tx:
                conn.rollback()
            raise
        finally:
            cur.close()

    @property
    def commit_count(self) -> int:
        """Writes committed by this thread's connection since it opened."""
        self._get_connection()
        return self._local.commits

    @contextmanager
    def transaction(self) -> Generator[MemoryStore, None, None]:
        """Run several writes as one ``BEGIN IMMEDIATE`` unit.

        Nested calls join the outer transaction.  Any exception rolls the
        whole unit back.
        """
        conn = self._get_connection()
        depth = getattr(self._local, "tx_depth", 0)
        if depth == 0:
            if conn.in_transaction:
                conn.commit()
            conn.execute("BEGIN IMMEDIATE")
        self._local.tx_depth = depth + 1
        try:
            yield self
        except BaseException:
            self._local.tx_depth = depth
            if depth == 0:
                conn.rollback()
            raise
        self._local.tx_depth = depth
        if depth == 0:
            conn.commit()
            self._local.commits += 1

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def insert(self, memory: Memory) -> str:
        """Insert a new memory row.

        Args:
            memory: The :class:`Memory` to persist.

        Returns:
            The memory's id.

        Raises:
            ValueError: If a memory with the same id exists, or if a
                ``code`` memory carries an embedding.
        """
        memory.scope = self.scope
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO memories
                        (id, content, summary, memory_type, scope,
                         embedding_blob, local_embedding_blob,
                         confidence, priority, pinned,
                         source_type, source_session, source_context_json,
                         tags_json, access_count, last_accessed_at, status,
                         created_at, updated_at, low_confidence_since, archived_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        memory.id,
                        memory.content,
                        memory.summary,
                        memory.memory_type,
                        memory.scope,
                        _pack_embedding(memory.embedding),
                        _pack_embedding(memory.local_embedding),
                        memory.confidence,
                        memory.priority,
                        1 if memory.pinned else 0,
                        memory.source_type,
                        memory.source_session,
                        json.dumps(memory.source_context, ensure_ascii=False),
                        json.dumps(memory.tags, ensure_ascii=False),
                        memory.access_count,
                        _iso(memory.last_accessed_at),
                        memory.status,
                        _iso(memory.created_at),
                        _iso(memory.updated_at),
                        _iso(memory.low_confidence_since),
                        _iso(memory.archived_at),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Cannot insert memory {memory.id}: {exc}") from exc
        return memory.id

    def update(self, memory_id: str, touch: bool = True, **fields: Any) -> bool:
        """Update specific fields of an existing memory.

        Embeddings follow replace semantics: passing ``embedding`` swaps
        the whole vector (``None`` clears it).

        Args:
            memory_id: The memory to update.
            touch: Refresh ``updated_at`` (default) unless ``updated_at``
                is passed explicitly.
            **fields: Column values keyed by :class:`Memory` attribute
                name.

        Returns:
            ``True`` if a row was updated, ``False`` if the id was not
            found.

        Raises:
            ValueError: On an unknown field, or an embedding for a
                ``code`` memory.
        """
        set_clauses: list[str] = []
        params: list[Any] = []

        explicit_updated_at = fields.pop("updated_at", _UNSET)
        for name, value in fields.items():
            column_spec = _UPDATABLE.get(name)
            if column_spec is None:
                raise ValueError(f"Unknown or read-only memory field {name!r}.")
            column, encode = column_spec
            set_clauses.append(f"{column} = ?")
            params.append(encode(value))

        if explicit_updated_at is not _UNSET:
            set_clauses.append("updated_at = ?")
            params.append(_iso(explicit_updated_at))
        elif touch:
            set_clauses.append("updated_at = ?")
            params.append(_utcnow().isoformat())

        if not set_clauses:
            return self.get(memory_id) is not None

        params.append(memory_id)
        sql = f"UPDATE memories SET {', '.join(set_clauses)} WHERE id = ?"
        try:
            with self._cursor() as cur:
                cur.execute(sql, params)
                return cur.rowcount > 0
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Cannot update memory {memory_id}: {exc}") from exc

    def get(self, memory_id: str) -> Memory | None:
        """Retrieve a single memory by id, or ``None``."""
        with self._cursor() as cur:
            cur.execute("SELECT * FROM memories WHERE id = ?", (memory_id,))
            row = cur.fetchone()
        if row is None:
            return None
        return self._row_to_memory(row)

    def get_many(self, memory_ids: Iterable[str]) -> list[Memory]:
        """Retrieve several memories, preserving the order of *memory_ids*."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._cursor() as cur:
            cur.execute(f"SELECT * FROM memories WHERE id IN ({placeholders})", ids)
            rows = {r["id"]: self._row_to_memory(r) for r in cur.fetchall()}
        return [rows[i] for i in ids if i in rows]

    def delete(self, memory_id: str) -> bool:
        """Hard-delete a memory (its edges cascade).  Used for pruning only."""
        with self._cursor() as cur:
            cur.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            return cur.rowcount > 0

    def list_active(
        self,
        memory_type: str | None = None,
        limit: int = 100_000,
    ) -> list[Memory]:
        """Return active memories, most recently updated first."""
        return self.list_by_status((ACTIVE,), memory_type=memory_type, limit=limit)

    def list_by_status(
        self,
        statuses: Sequence[str],
        memory_type: str | None = None,
        limit: int = 100_000,
    ) -> list[Memory]:
        """Return memories whose status is one of *statuses*."""
        placeholders = ", ".join("?" for _ in statuses)
        sql = f"SELECT * FROM memories WHERE status IN ({placeholders})"
        params: list[Any] = list(statuses)
        if memory_type is not None:
            sql += " AND memory_type = ?"
            params.append(memory_type)
        sql += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)
        with self._cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [self._row_to_memory(r) for r in rows]

    def find_by_file_path(
        self,
        file_path: str,
        memory_type: str = "code",
        status: str = ACTIVE,
    ) -> list[Memory]:
        """Return memories whose ``source_context.file_path`` equals *file_path*."""
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM memories
                WHERE json_extract(source_context_json, '$.file_path') = ?
                  AND memory_type = ? AND status = ?
                ORDER BY created_at ASC
                """,
                (file_path, memory_type, status),
            )
            rows = cur.fetchall()
        return [self._row_to_memory(r) for r in rows]

    def count(self, status: str | None = None) -> int:
        """Return the number of memories, optionally filtered by status."""
        with self._cursor() as cur:
            if status is None:
                cur.execute("SELECT COUNT(*) FROM memories")
            else:
                cur.execute("SELECT COUNT(*) FROM memories WHERE status = ?", (status,))
            result = cur.fetchone()
        return result[0] if result else 0

    def max_access_count(self) -> int:
        """Return the highest ``access_count`` among active memories."""
        with self._cursor() as cur:
            cur.execute("SELECT MAX(access_count) FROM memories WHERE status = ?", (ACTIVE,))
            row = cur.fetchone()
        return int(row[0] or 0) if row else 0

    def record_access(self, memory_id: str, now: datetime | None = None) -> bool:
        """Count a recall of *memory_id*.

        Increments ``access_count``, sets ``last_accessed_at`` and restores
        an archived memory to active with its low-confidence clock reset.
        """
        now = now or _utcnow()
        stamp = now.isoformat()
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE memories
                SET access_count = access_count + 1,
                    last_accessed_at = ?,
                    updated_at = ?,
                    status = CASE WHEN status = 'archived' THEN 'active' ELSE status END,
                    low_confidence_since = CASE WHEN status = 'archived'
                        THEN NULL ELSE low_confidence_since END,
                    archived_at = CASE WHEN status = 'archived' THEN NULL ELSE archived_at END
                WHERE id = ?
                """,
                (stamp, stamp, memory_id),
            )
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def vector_matches(
        self,
        vector: Sequence[float],
        kind: str = "remote",
        limit: int = 10,
        statuses: Sequence[str] = SEARCHABLE_STATUSES,
        min_similarity: float | None = None,
    ) -> list[tuple[Memory, float]]:
        """Rank memories by cosine similarity to *vector*.

        Only memories holding a vector of *kind* (``"remote"`` or
        ``"local"``) with the same dimensionality as *vector* take part.

        Returns:
            ``(memory, similarity)`` pairs, most similar first.
        """
        if not vector:
            return []
        column = self._embedding_column(kind)
        placeholders = ", ".join("?" for _ in statuses)
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT * FROM memories
                WHERE {column} IS NOT NULL
                  AND length({column}) = ?
                  AND status IN ({placeholders})
                """,
                [len(vector) * 4, *statuses],
            )
            rows = cur.fetchall()

        scored: list[tuple[Memory, float]] = []
        for row in rows:
            mem = self._row_to_memory(row)
            stored = mem.embedding if kind == "remote" else mem.local_embedding
            if stored is None:
                continue
            sim = cosine_similarity(vector, stored)
            if min_similarity is None or sim >= min_similarity:
                scored.append((mem, sim))
        scored.sort(key=lambda pair: (pair[1], pair[0].created_at), reverse=True)
        return scored[:limit]

    def search_by_vector(
        self,
        vector: Sequence[float],
        kind: str = "remote",
        limit: int = 10,
    ) -> list[Memory]:
        """Return memories ranked by descending cosine similarity to *vector*."""
        return [mem for mem, _ in self.vector_matches(vector, kind=kind, limit=limit)]

    def keyword_matches(
        self,
        query: str,
        limit: int = 10,
        statuses: Sequence[str] = SEARCHABLE_STATUSES,
    ) -> list[tuple[Memory, float]]:
        """Full-text search ranked by FTS5 ``bm25``.

        Returns:
            ``(memory, relevance)`` pairs where relevance is the negated
            bm25 rank (higher is better).
        """
        match = fts_query(query)
        if not match:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT m.*, bm25(memories_fts) AS fts_rank
                FROM memories_fts
                JOIN memories m ON m.rowid = memories_fts.rowid
                WHERE memories_fts MATCH ?
                  AND m.status IN ({placeholders})
                ORDER BY fts_rank
                LIMIT ?
                """,
                [match, *statuses, limit],
            )
            rows = cur.fetchall()
        return [(self._row_to_memory(r), -float(r["fts_rank"])) for r in rows]

    def search_by_keyword(self, query: str, limit: int = 10) -> list[Memory]:
        """Return memories matching *query*, best FTS5 relevance first."""
        return [mem for mem, _ in self.keyword_matches(query, limit=limit)]

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_edge(self, edge: Edge) -> Edge:
        """Insert an edge.

        Raises:
            DuplicateEdge: If (source, target, relation_type) already exists.
            ValueError: If either endpoint does not exist.
        """
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO edges
                        (source_id, target_id, relation_type, strength,
                         bidirectional, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        edge.source_id,
                        edge.target_id,
                        edge.relation_type,
                        edge.strength,
                        1 if edge.bidirectional else 0,
                        edge.status,
                        _iso(edge.created_at),
                    ),
                )
                edge.id = cur.lastrowid
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc).upper():
                raise DuplicateEdge(edge.source_id, edge.target_id, edge.relation_type) from exc
            raise ValueError(
                f"Edge endpoints must reference existing memories: {edge.key}"
            ) from exc
        return edge

    def edge_exists(
        self,
        source_id: str,
        target_id: str,
        relation_type: str,
        either_direction: bool = False,
    ) -> bool:
        """Check for an edge triple, optionally in either direction."""
        sql = "SELECT 1 FROM edges WHERE source_id = ? AND target_id = ? AND relation_type = ?"
        params: list[Any] = [source_id, target_id, relation_type]
        if either_direction:
            sql += " UNION SELECT 1 FROM edges WHERE source_id = ? AND target_id = ? AND relation_type = ?"
            params.extend([target_id, source_id, relation_type])
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone() is not None

    def get_edges(
        self,
        memory_id: str,
        direction: str = "both",
        relation_type: str | None = None,
        status: str | None = ACTIVE,
    ) -> list[Edge]:
        """Return edges touching *memory_id*.

        Args:
            memory_id: The memory whose edges to fetch.
            direction: ``"out"``, ``"in"`` or ``"both"``.
            relation_type: Optional relation filter.
            status: Edge status filter, ``None`` for all.
        """
        if direction == "out":
            where = "source_id = ?"
            params: list[Any] = [memory_id]
        elif direction == "in":
            where = "target_id = ?"
            params = [memory_id]
        elif direction == "both":
            where = "(source_id = ? OR target_id = ?)"
            params = [memory_id, memory_id]
        else:
            raise ValueError(f"Invalid edge direction {direction!r}.")
        if relation_type is not None:
            where += " AND relation_type = ?"
            params.append(relation_type)
        if status is not None:
            where += " AND status = ?"
            params.append(status)
        with self._cursor() as cur:
            cur.execute(f"SELECT * FROM edges WHERE {where} ORDER BY id", params)
            rows = cur.fetchall()
        return [self._row_to_edge(r) for r in rows]

    def list_edges(self, status: str | None = ACTIVE) -> list[Edge]:
        """Return all edges, optionally filtered by status."""
        with self._cursor() as cur:
            if status is None:
                cur.execute("SELECT * FROM edges ORDER BY id")
            else:
                cur.execute("SELECT * FROM edges WHERE status = ? ORDER BY id", (status,))
            rows = cur.fetchall()
        return [self._row_to_edge(r) for r in rows]

    def update_edge(
        self,
        edge_id: int,
        strength: float | None = None,
        status: str | None = None,
    ) -> bool:
        """Change an edge's strength and/or status."""
        set_clauses: list[str] = []
        params: list[Any] = []
        if strength is not None:
            set_clauses.append("strength = ?")
            params.append(max(0.0, min(1.0, float(strength))))
        if status is not None:
            set_clauses.append("status = ?")
            params.append(status)
        if not set_clauses:
            return False
        params.append(edge_id)
        with self._cursor() as cur:
            cur.execute(f"UPDATE edges SET {', '.join(set_clauses)} WHERE id = ?", params)
            return cur.rowcount > 0

    def in_degree_counts(self) -> dict[str, int]:
        """Count active incoming edges per memory in one pass.

        A bidirectional edge counts as incoming for both endpoints.
        """
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT target_id AS mid, COUNT(*) AS n FROM edges
                WHERE status = 'active' GROUP BY target_id
                UNION ALL
                SELECT source_id AS mid, COUNT(*) AS n FROM edges
                WHERE status = 'active' AND bidirectional = 1 GROUP BY source_id
                """
            )
            rows = cur.fetchall()
        counts: dict[str, int] = {}
        for row in rows:
            counts[row["mid"]] = counts.get(row["mid"], 0) + int(row["n"])
        return counts

    # ------------------------------------------------------------------
    # Extraction checkpoints
    # ------------------------------------------------------------------

    def get_checkpoint(self, session_id: str) -> ExtractionCheckpoint | None:
        """Return the extraction checkpoint for *session_id*, if any."""
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM extraction_checkpoints WHERE session_id = ?",
                (session_id,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return ExtractionCheckpoint(
            session_id=row["session_id"],
            cursor_position=row["cursor_position"],
            extracted_at=datetime.fromisoformat(row["extracted_at"]),
        )

    def save_checkpoint(self, checkpoint: ExtractionCheckpoint) -> None:
        """Insert or update (in place) the checkpoint of a session."""
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO extraction_checkpoints (session_id, cursor_position, extracted_at)
                VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    cursor_position = excluded.cursor_position,
                    extracted_at = excluded.extracted_at
                """,
                (
                    checkpoint.session_id,
                    checkpoint.cursor_position,
                    _iso(checkpoint.extracted_at),
                ),
            )

    # ------------------------------------------------------------------
    # Embedding backfill queue
    # ------------------------------------------------------------------

    def enqueue_backfill(self, memory_id: str) -> None:
        with self._cursor() as cur:
            cur.execute(
                "INSERT OR IGNORE INTO backfill_queue (memory_id, queued_at) VALUES (?, ?)",
                (memory_id, _utcnow().isoformat()),
            )

    def pending_backfill(self, limit: int = 100) -> list[Memory]:
        """Return queued memories that still lack an embedding."""
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT m.* FROM backfill_queue q
                JOIN memories m ON m.id = q.memory_id
                WHERE m.status IN ('active', 'archived') AND m.memory_type != 'code'
                ORDER BY q.queued_at
                LIMIT ?
                """,
                (limit,),
            )
            rows = cur.fetchall()
        return [self._row_to_memory(r) for r in rows]

    def clear_backfill(self, memory_id: str) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM backfill_queue WHERE memory_id = ?", (memory_id,))

    # ------------------------------------------------------------------
    # Metadata counters
    # ------------------------------------------------------------------

    def get_meta(self, key: str, default: str | None = None) -> str | None:
        with self._cursor() as cur:
            cur.execute("SELECT value FROM store_meta WHERE key = ?", (key,))
            row = cur.fetchone()
        return row["value"] if row else default

    def set_meta(self, key: str, value: Any) -> None:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO store_meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, str(value)),
            )

    def increment_meta(self, key: str, by: int = 1) -> int:
        """Increment an integer counter and return its new value."""
        with self.transaction():
            value = int(self.get_meta(key, "0") or 0) + by
            self.set_meta(key, value)
        return value

    # ------------------------------------------------------------------
    # Whole-store snapshot / restore
    # ------------------------------------------------------------------

    def snapshot(self, dest_path: str | None = None) -> str:
        """Write a point-in-time copy of the whole store.

        Uses SQLite's online backup API so the copy is consistent even
        while other readers are active.

        Returns:
            The snapshot file path.
        """
        if dest_path is None:
            stamp = _utcnow().strftime("%Y%m%dT%H%M%S%f")
            dest_path = f"{self._path}.checkpoint-{stamp}"
        conn = self._get_connection()
        if conn.in_transaction and getattr(self._local, "tx_depth", 0) == 0:
            conn.commit()
        dest = sqlite3.connect(dest_path)
        try:
            conn.backup(dest)
        finally:
            dest.close()
        return dest_path

    def restore(self, snapshot_path: str) -> None:
        """Atomically replace every row of this store with a snapshot's rows.

        Raises:
            StoreUnavailable: If the snapshot cannot be read.
        """
        if not os.path.isfile(snapshot_path):
            raise StoreUnavailable(f"Snapshot {snapshot_path} does not exist.")
        conn = self._get_connection()
        if conn.in_transaction:
            conn.rollback()
        self._local.tx_depth = 0
        try:
            conn.execute("ATTACH DATABASE ? AS snap", (snapshot_path,))
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Cannot read snapshot {snapshot_path}: {exc}") from exc
        try:
            with self.transaction():
                for table in (
                    "backfill_queue",
                    "edges",
                    "extraction_checkpoints",
                    "store_meta",
                    "memories",
                ):
                    conn.execute(f"DELETE FROM main.{table}")
                for table in (
                    "memories",
                    "edges",
                    "extraction_checkpoints",
                    "backfill_queue",
                    "store_meta",
                ):
                    conn.execute(f"INSERT INTO main.{table} SELECT * FROM snap.{table}")
        finally:
            conn.execute("DETACH DATABASE snap")

    def close(self) -> None:
        """Close the current thread's database connection, if open."""
        conn: sqlite3.Connection | None = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _embedding_column(kind: str) -> str:
        if kind == "remote":
            return "embedding_blob"
        if kind == "local":
            return "local_embedding_blob"
        raise ValueError(f"Invalid embedding kind {kind!r}. Must be 'remote' or 'local'.")

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        """Convert a database row into a :class:`Memory` instance."""
        return Memory(
            id=row["id"],
            content=row["content"],
            summary=row["summary"],
            memory_type=row["memory_type"],
            scope=row["scope"],
            embedding=_unpack_embedding(row["embedding_blob"]),
            local_embedding=_unpack_embedding(row["local_embedding_blob"]),
            confidence=row["confidence"],
            priority=row["priority"],
            pinned=bool(row["pinned"]),
            source_type=row["source_type"],
            source_session=row["source_session"],
            source_context=json.loads(row["source_context_json"]),
            tags=json.loads(row["tags_json"]),
            access_count=row["access_count"],
            last_accessed_at=_from_iso(row["last_accessed_at"]),
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            low_confidence_since=_from_iso(row["low_confidence_since"]),
            archived_at=_from_iso(row["archived_at"]),
        )

    @staticmethod
    def _row_to_edge(row: sqlite3.Row) -> Edge:
        return Edge(
            id=row["id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            relation_type=row["relation_type"],
            strength=row["strength"],
            bidirectional=bool(row["bidirectional"]),
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def __repr__(self) -> str:  # pragma: no cover
        return f"MemoryStore(path={self._path!r}, scope={self.scope!r})"


def remove_snapshot(path: str) -> None:
    """Delete a snapshot file and its WAL side files, ignoring missing ones."""
    for suffix in ("", "-wal", "-shm"):
        with contextlib.suppress(FileNotFoundError):
            os.remove(path + suffix)
