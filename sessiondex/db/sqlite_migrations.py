"""Database schema creation and versioning.

All CREATE TABLE statements for the session index.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("sessiondex.db")

SCHEMA_VERSION = 3

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Session metadata (one row per discovered transcript) ────────
CREATE TABLE IF NOT EXISTS sessions (
    session_id                TEXT PRIMARY KEY,
    project_name              TEXT NOT NULL DEFAULT '',
    project_path              TEXT NOT NULL,
    file_path                 TEXT NOT NULL UNIQUE,
    file_name                 TEXT NOT NULL DEFAULT '',
    file_size                 INTEGER NOT NULL DEFAULT 0,
    file_modified_time        INTEGER NOT NULL DEFAULT 0,
    content_hash              TEXT NOT NULL DEFAULT '',
    message_count             INTEGER NOT NULL DEFAULT 0,
    user_message_count        INTEGER NOT NULL DEFAULT 0,
    assistant_message_count   INTEGER NOT NULL DEFAULT 0,
    first_message_time        TEXT,
    last_message_time         TEXT,
    session_duration_seconds  INTEGER NOT NULL DEFAULT 0,
    is_valid                  INTEGER NOT NULL DEFAULT 1,
    is_empty                  INTEGER NOT NULL DEFAULT 0,
    discovered_at             TEXT NOT NULL,
    metadata_updated_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_path, last_message_time DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_last_message ON sessions(last_message_time DESC);

-- ── 2. Analysis cache (last successful analysis per session) ───────
CREATE TABLE IF NOT EXISTS session_analysis_cache (
    session_id            TEXT PRIMARY KEY REFERENCES sessions(session_id) ON DELETE CASCADE,
    project_path          TEXT NOT NULL DEFAULT '',
    file_path             TEXT NOT NULL DEFAULT '',
    file_modified_time    INTEGER NOT NULL DEFAULT 0,
    file_hash             TEXT NOT NULL DEFAULT '',
    title                 TEXT NOT NULL DEFAULT '',
    summary               TEXT NOT NULL DEFAULT '',
    analysis_model        TEXT NOT NULL DEFAULT '',
    analysis_timestamp    INTEGER NOT NULL,
    messages_analyzed     INTEGER NOT NULL DEFAULT 0,
    analysis_duration_ms  INTEGER NOT NULL DEFAULT 0,
    cache_version         INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_analysis_project ON session_analysis_cache(project_path);

-- ── 3. Continuation edges ──────────────────────────────────────────
CREATE TABLE IF NOT EXISTS session_continuations (
    child_session_id         TEXT PRIMARY KEY REFERENCES sessions(session_id) ON DELETE CASCADE,
    parent_session_id        TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    root_session_id          TEXT NOT NULL,
    continuation_order       INTEGER NOT NULL,
    is_active_continuation   INTEGER NOT NULL DEFAULT 0,
    child_started_timestamp  TEXT,
    created_at               TEXT NOT NULL,
    CHECK (child_session_id <> parent_session_id)
);

CREATE INDEX IF NOT EXISTS idx_continuations_parent ON session_continuations(parent_session_id, continuation_order);
CREATE INDEX IF NOT EXISTS idx_continuations_root ON session_continuations(root_session_id, continuation_order);

-- Forward references whose parent has not been discovered yet.
CREATE TABLE IF NOT EXISTS pending_continuations (
    child_session_id         TEXT PRIMARY KEY REFERENCES sessions(session_id) ON DELETE CASCADE,
    parent_session_id        TEXT NOT NULL,
    project_path             TEXT NOT NULL DEFAULT '',
    child_started_timestamp  TEXT,
    attempts                 INTEGER NOT NULL DEFAULT 1,
    detected_at              TEXT NOT NULL,
    last_attempt_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pending_parent ON pending_continuations(parent_session_id);

-- ── 4. Analysis runs (source of the read-derived daily quota) ──────
CREATE TABLE IF NOT EXISTS analysis_runs (
    id            TEXT PRIMARY KEY,
    session_id    TEXT NOT NULL,
    local_date    TEXT NOT NULL,
    status        TEXT NOT NULL,
    requested_at  TEXT NOT NULL,
    started_at    TEXT,
    finished_at   TEXT,
    duration_ms   INTEGER NOT NULL DEFAULT 0,
    error         TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_runs_date_status ON analysis_runs(local_date, status);
CREATE INDEX IF NOT EXISTS idx_runs_session ON analysis_runs(session_id, requested_at DESC);

-- ── 5. Settings overrides ──────────────────────────────────────────
CREATE TABLE IF NOT EXISTS app_settings (
    key         TEXT PRIMARY KEY,
    value_json  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
"""

_FTS_TABLE = """
CREATE VIRTUAL TABLE IF NOT EXISTS session_fts USING fts5(
    session_id,
    title,
    summary,
    project_path,
    file_name,
    tokenize='porter unicode61'
);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(str(row[1]) == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def _ensure_index(db: aiosqlite.Connection, ddl: str) -> None:
    await db.execute(ddl)


async def fts5_available(db: aiosqlite.Connection) -> bool:
    async with db.execute("SELECT sqlite_compileoption_used('ENABLE_FTS5')") as cur:
        row = await cur.fetchone()
    if row and row[0]:
        return True
    # Some builds load FTS5 without advertising the compile option.
    try:
        await db.execute("CREATE VIRTUAL TABLE IF NOT EXISTS temp._fts5_check USING fts5(x)")
        await db.execute("DROP TABLE IF EXISTS temp._fts5_check")
        return True
    except aiosqlite.OperationalError:
        return False


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)
    if not await fts5_available(db):
        raise RuntimeError("SQLite build lacks FTS5; full-text search cannot be maintained")
    await db.executescript(_FTS_TABLE)

    # Explicit table upgrades for databases created by earlier versions.
    await _ensure_column(db, "sessions", "user_message_count", "INTEGER NOT NULL DEFAULT 0")
    await _ensure_column(db, "sessions", "assistant_message_count", "INTEGER NOT NULL DEFAULT 0")
    await _ensure_column(db, "session_continuations", "root_session_id", "TEXT NOT NULL DEFAULT ''")
    await _ensure_index(db, "CREATE INDEX IF NOT EXISTS idx_continuations_root ON session_continuations(root_session_id, continuation_order)")

    # Project rows created before the FTS projection existed.
    await db.execute(
        """INSERT INTO session_fts (session_id, title, summary, project_path, file_name)
           SELECT s.session_id, COALESCE(a.title, ''), COALESCE(a.summary, ''), s.project_path, s.file_name
           FROM sessions s
           LEFT JOIN session_analysis_cache a ON a.session_id = s.session_id
           WHERE s.session_id NOT IN (SELECT session_id FROM session_fts)"""
    )

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
