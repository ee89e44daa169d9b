"""Schema migration system for Cortex.

Uses SQLite's built-in ``PRAGMA user_version`` to track schema versions.
Migrations are additive-only -- no destructive changes are ever applied.

Usage::

    from cortex.migrations import ensure_schema

    conn = sqlite3.connect("memories.db")
    version = ensure_schema(conn)
"""

from __future__ import annotations

import logging
import sqlite3
from typing import NamedTuple

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Migration definition
# ---------------------------------------------------------------------------


class Migration(NamedTuple):
    """A single schema migration step.

    Attributes:
        version: The target schema version after this migration.
        description: Human-readable description of the change.
        statements: SQL statements to execute.
    """

    version: int
    description: str
    statements: list[str]


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_CORE_SCHEMA: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS memories (
        id                   TEXT PRIMARY KEY,
        content              TEXT    NOT NULL,
        summary              TEXT    NOT NULL,
        memory_type          TEXT    NOT NULL,
        scope                TEXT    NOT NULL DEFAULT 'project',
        embedding_blob       BLOB,
        local_embedding_blob BLOB,
        confidence           REAL    NOT NULL DEFAULT 0.7,
        priority             INTEGER NOT NULL DEFAULT 5,
        pinned               INTEGER NOT NULL DEFAULT 0,
        source_type          TEXT    NOT NULL DEFAULT 'manual',
        source_session       TEXT,
        source_context_json  TEXT    NOT NULL DEFAULT '{}',
        tags_json            TEXT    NOT NULL DEFAULT '[]',
        access_count         INTEGER NOT NULL DEFAULT 0,
        last_accessed_at     TEXT,
        status               TEXT    NOT NULL DEFAULT 'active',
        created_at           TEXT    NOT NULL,
        updated_at           TEXT    NOT NULL,
        low_confidence_since TEXT,
        archived_at          TEXT,
        CHECK (memory_type != 'code'
               OR (embedding_blob IS NULL AND local_embedding_blob IS NULL))
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_status ON memories (status);",
    "CREATE INDEX IF NOT EXISTS idx_memories_type ON memories (memory_type);",
    """
    CREATE TABLE IF NOT EXISTS edges (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        source_id     TEXT    NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
        target_id     TEXT    NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
        relation_type TEXT    NOT NULL,
        strength      REAL    NOT NULL DEFAULT 0.5,
        bidirectional INTEGER NOT NULL DEFAULT 0,
        status        TEXT    NOT NULL DEFAULT 'active',
        created_at    TEXT    NOT NULL,
        UNIQUE (source_id, target_id, relation_type)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_edges_target ON edges (target_id);",
    """
    CREATE TABLE IF NOT EXISTS extraction_checkpoints (
        session_id      TEXT PRIMARY KEY,
        cursor_position INTEGER NOT NULL DEFAULT 0,
        extracted_at    TEXT    NOT NULL
    );
    """,
]

_FTS_SCHEMA: list[str] = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
        content,
        summary,
        tags,
        content='memories',
        content_rowid='rowid'
    );
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
        INSERT INTO memories_fts(rowid, content, summary, tags)
        VALUES (new.rowid, new.content, new.summary, new.tags_json);
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, content, summary, tags)
        VALUES ('delete', old.rowid, old.content, old.summary, old.tags_json);
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE OF content, summary, tags_json
    ON memories BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, content, summary, tags)
        VALUES ('delete', old.rowid, old.content, old.summary, old.tags_json);
        INSERT INTO memories_fts(rowid, content, summary, tags)
        VALUES (new.rowid, new.content, new.summary, new.tags_json);
    END;
    """,
]

_AUX_SCHEMA: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS backfill_queue (
        memory_id TEXT PRIMARY KEY REFERENCES memories(id) ON DELETE CASCADE,
        queued_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS store_meta (
        key   TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
    """,
]

_FULL_SCHEMA: list[str] = _CORE_SCHEMA + _FTS_SCHEMA + _AUX_SCHEMA

# ---------------------------------------------------------------------------
# Migration list (incremental upgrades)
# ---------------------------------------------------------------------------

MIGRATIONS: list[Migration] = [
    Migration(
        version=1,
        description="Memories, edges and extraction checkpoints",
        statements=_CORE_SCHEMA,
    ),
    Migration(
        version=2,
        description="FTS5 keyword index over memories",
        statements=_FTS_SCHEMA
        + ["INSERT INTO memories_fts(memories_fts) VALUES ('rebuild');"],
    ),
    Migration(
        version=3,
        description="Embedding backfill queue and store metadata",
        statements=_AUX_SCHEMA,
    ),
]

LATEST_VERSION: int = MIGRATIONS[-1].version


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Read the current schema version (``0`` if never set)."""
    cur = conn.execute("PRAGMA user_version")
    row = cur.fetchone()
    return row[0] if row else 0


def ensure_schema(conn: sqlite3.Connection) -> int:
    """Ensure the database schema is up to date.

    A fresh database gets the full schema stamped at
    :data:`LATEST_VERSION`.  An existing database has every migration
    newer than its ``user_version`` applied in order, each inside its own
    transaction; a failed migration is rolled back and re-raised so the
    next open retries it.

    Args:
        conn: An open SQLite connection.

    Returns:
        The schema version after all migrations have been applied.
    """
    current = get_schema_version(conn)

    if current > LATEST_VERSION:
        logger.warning(
            "Database schema version (%d) is newer than this Cortex supports (%d). "
            "Skipping migrations.",
            current,
            LATEST_VERSION,
        )
        return current

    if current == 0 and not _table_exists(conn, "memories"):
        logger.debug("Fresh database detected -- creating schema at version %d", LATEST_VERSION)
        try:
            for stmt in _FULL_SCHEMA:
                conn.execute(stmt)
            conn.execute(f"PRAGMA user_version = {LATEST_VERSION}")
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return LATEST_VERSION

    for migration in MIGRATIONS:
        if migration.version <= current:
            continue
        logger.info("Applying migration v%d: %s", migration.version, migration.description)
        try:
            for stmt in migration.statements:
                conn.execute(stmt)
            conn.execute(f"PRAGMA user_version = {migration.version}")
            conn.commit()
            current = migration.version
        except Exception:
            conn.rollback()
            logger.exception("Migration v%d failed -- rolling back", migration.version)
            raise

    return current


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    cur = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
        (table_name,),
    )
    return cur.fetchone() is not None
