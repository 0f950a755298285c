"""SQLite implementation of the analysis cache and analysis run log."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

import aiosqlite

from sessiondex import search
from sessiondex.cache_validity import CacheScope
from sessiondex.db.connection import transaction

logger = logging.getLogger("sessiondex.cache")

# Statuses that consume the daily quota.
QUOTA_STATUSES = ("queued", "running", "succeeded", "failed", "timeout")
OPEN_STATUSES = ("queued", "running")


class SqliteAnalysisCacheRepository:
    """Last successful analysis per session."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM session_analysis_cache WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def save(self, session_id: str, entry: dict) -> None:
        """Store a complete analysis and refresh the session's index row in one transaction."""
        async with transaction(self.db, "save_analysis", session_id):
            await self.db.execute(
                """INSERT OR REPLACE INTO session_analysis_cache (
                    session_id, project_path, file_path, file_modified_time, file_hash,
                    title, summary, analysis_model, analysis_timestamp,
                    messages_analyzed, analysis_duration_ms, cache_version
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    session_id,
                    entry.get("projectPath", ""),
                    entry.get("filePath", ""),
                    int(entry.get("fileModifiedTime", 0)),
                    entry["fileHash"],
                    entry.get("title") or "Untitled Session",
                    entry["summary"],
                    entry.get("model", ""),
                    int(entry.get("analysisTimestamp") or time.time()),
                    int(entry.get("messagesAnalyzed", 0)),
                    int(entry.get("durationMs", 0)),
                    int(entry.get("cacheVersion", 1)),
                ),
            )
            await search.reindex(self.db, session_id)

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM session_analysis_cache") as cur:
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def clear(self, scope: CacheScope | None = None) -> int:
        """Delete analysis rows in ``scope`` and return how many were removed.

        Session rows and continuation edges are never touched.
        """
        scope = scope or CacheScope()
        where = ""
        params: list = []
        if scope.project_path is not None:
            where = " WHERE project_path = ?"
            params.append(scope.project_path)
        if scope.session_ids is not None:
            if not scope.session_ids:
                return 0
            placeholders = ", ".join("?" for _ in scope.session_ids)
            where += (" AND" if where else " WHERE") + f" session_id IN ({placeholders})"
            params.extend(scope.session_ids)

        async with transaction(self.db, "clear_analysis_cache"):
            async with self.db.execute(
                f"SELECT session_id FROM session_analysis_cache{where}", params
            ) as cur:
                session_ids = [r[0] for r in await cur.fetchall()]
            if not session_ids:
                return 0
            await self.db.execute(f"DELETE FROM session_analysis_cache{where}", params)
            await search.reindex_many(self.db, session_ids)

        logger.info(f"Cleared {len(session_ids)} analysis cache row(s)")
        return len(session_ids)


class SqliteAnalysisRunRepository:
    """Every admitted analysis job; today's quota is counted from these rows."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def count_for_date(self, local_date: str) -> int:
        placeholders = ", ".join("?" for _ in QUOTA_STATUSES)
        async with self.db.execute(
            f"SELECT COUNT(*) FROM analysis_runs WHERE local_date = ? AND status IN ({placeholders})",
            (local_date, *QUOTA_STATUSES),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def insert(self, run_id: str, session_id: str, local_date: str, status: str = "queued") -> None:
        """Insert without committing; the admission decision owns the transaction."""
        await self.db.execute(
            """INSERT INTO analysis_runs (id, session_id, local_date, status, requested_at)
               VALUES (?, ?, ?, ?, ?)""",
            (run_id, session_id, local_date, status, datetime.now(timezone.utc).isoformat()),
        )

    async def mark_running(self, run_id: str) -> None:
        async with transaction(self.db, "mark_run_running"):
            await self.db.execute(
                "UPDATE analysis_runs SET status = 'running', started_at = ? WHERE id = ?",
                (datetime.now(timezone.utc).isoformat(), run_id),
            )

    async def finish(self, run_id: str, status: str, duration_ms: int = 0, error: str = "") -> None:
        async with transaction(self.db, "finish_run"):
            await self.db.execute(
                """UPDATE analysis_runs SET status = ?, finished_at = ?, duration_ms = ?, error = ?
                   WHERE id = ?""",
                (status, datetime.now(timezone.utc).isoformat(), duration_ms, error, run_id),
            )

    async def get(self, run_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM analysis_runs WHERE id = ?", (run_id,)) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def abandon_open_runs(self) -> int:
        """Runs left queued/running by a previous process can never settle; mark them cancelled."""
        placeholders = ", ".join("?" for _ in OPEN_STATUSES)
        async with transaction(self.db, "abandon_open_runs"):
            async with self.db.execute(
                f"""UPDATE analysis_runs SET status = 'cancelled', finished_at = ?, error = 'process restarted'
                    WHERE status IN ({placeholders})""",
                (datetime.now(timezone.utc).isoformat(), *OPEN_STATUSES),
            ) as cur:
                return cur.rowcount or 0

    async def history(self, days: int = 7) -> list[dict]:
        async with self.db.execute(
            """SELECT local_date,
                      SUM(CASE WHEN status IN ('succeeded', 'failed', 'timeout') THEN 1 ELSE 0 END) AS performed,
                      SUM(CASE WHEN status = 'succeeded' THEN 1 ELSE 0 END) AS succeeded,
                      SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                      SUM(CASE WHEN status = 'timeout' THEN 1 ELSE 0 END) AS timeouts,
                      SUM(CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END) AS cancelled
               FROM analysis_runs
               GROUP BY local_date
               ORDER BY local_date DESC
               LIMIT ?""",
            (max(1, days),),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]
