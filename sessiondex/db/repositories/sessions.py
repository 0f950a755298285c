"""SQLite implementation of SessionRepository."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from sessiondex import search
from sessiondex.cache_validity import consumable_analysis, is_valid
from sessiondex.db.connection import key_locks, transaction
from sessiondex.models import ProjectSummary, SessionSummary
from sessiondex.query_builder import ChainFilter, SessionQuery, build_count_query, build_session_query

UPSERT_INSERTED = "inserted"
UPSERT_UPDATED = "updated"
UPSERT_UNCHANGED = "unchanged"


class SqliteSessionRepository:
    """SQLite-backed session metadata with the FTS projection kept in the same transaction."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_file_state(self, session_id: str) -> dict | None:
        async with self.db.execute(
            """SELECT session_id, file_path, file_size, file_modified_time, content_hash, is_valid
               FROM sessions WHERE session_id = ?""",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def upsert_session(self, record: dict) -> str:
        """Insert or update one session row.

        A no-op returning ``"unchanged"`` when the stored modification time
        and size already match. Writes for one session id are serialized.
        """
        session_id = record["sessionId"]
        async with key_locks(self.db).hold(f"session:{session_id}"):
            existing = await self.get_file_state(session_id)
            if (
                existing
                and int(existing["file_modified_time"]) == int(record.get("fileModifiedTime", 0))
                and int(existing["file_size"]) == int(record.get("fileSize", 0))
            ):
                return UPSERT_UNCHANGED

            now = datetime.now(timezone.utc).isoformat()
            values = (
                record.get("projectName", ""),
                record["projectPath"],
                record["filePath"],
                record.get("fileName", ""),
                int(record.get("fileSize", 0)),
                int(record.get("fileModifiedTime", 0)),
                record.get("contentHash", ""),
                int(record.get("messageCount", 0)),
                int(record.get("userMessageCount", 0)),
                int(record.get("assistantMessageCount", 0)),
                record.get("firstMessageTime"),
                record.get("lastMessageTime"),
                int(record.get("sessionDurationSeconds", 0)),
                1 if record.get("isValid", True) else 0,
                1 if record.get("isEmpty", False) else 0,
            )
            async with transaction(self.db, "upsert_session", session_id):
                if existing:
                    # UPDATE rather than REPLACE keeps cache rows and edges attached.
                    await self.db.execute(
                        """UPDATE sessions SET
                            project_name = ?, project_path = ?, file_path = ?, file_name = ?,
                            file_size = ?, file_modified_time = ?, content_hash = ?,
                            message_count = ?, user_message_count = ?, assistant_message_count = ?,
                            first_message_time = ?, last_message_time = ?,
                            session_duration_seconds = ?, is_valid = ?, is_empty = ?,
                            metadata_updated_at = ?
                           WHERE session_id = ?""",
                        (*values, now, session_id),
                    )
                else:
                    await self.db.execute(
                        """INSERT INTO sessions (
                            project_name, project_path, file_path, file_name,
                            file_size, file_modified_time, content_hash,
                            message_count, user_message_count, assistant_message_count,
                            first_message_time, last_message_time,
                            session_duration_seconds, is_valid, is_empty,
                            session_id, discovered_at, metadata_updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (*values, session_id, now, now),
                    )
                await search.reindex(self.db, session_id)
            return UPSERT_UPDATED if existing else UPSERT_INSERTED

    async def mark_missing(self, file_path: str) -> str | None:
        """Flag the session of a deleted file as invalid; the row itself is kept."""
        async with self.db.execute(
            "SELECT session_id FROM sessions WHERE file_path = ?", (file_path,)
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        session_id = row["session_id"]
        async with key_locks(self.db).hold(f"session:{session_id}"):
            async with transaction(self.db, "mark_missing", session_id):
                await self.db.execute(
                    """UPDATE sessions SET is_valid = 0, file_modified_time = 0, metadata_updated_at = ?
                       WHERE session_id = ?""",
                    (datetime.now(timezone.utc).isoformat(), session_id),
                )
        return session_id

    async def get_row(self, session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def exists(self, session_id: str) -> bool:
        async with self.db.execute(
            "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)
        ) as cur:
            return await cur.fetchone() is not None

    async def get_session(self, session_id: str, cache_duration_days: int, now: float | None = None) -> SessionSummary | None:
        sql, params = build_session_query(
            SessionQuery(
                filters=(ChainFilter((session_id,)),),
                include_analysis=True,
                include_continuation_count=True,
                include_empty=True,
                limit=1,
            )
        )
        async with self.db.execute(sql, params) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        return self._row_to_summary(dict(row), cache_duration_days, now)

    async def list_sessions(
        self,
        query: SessionQuery,
        cache_duration_days: int,
        now: float | None = None,
    ) -> list[SessionSummary]:
        sql, params = build_session_query(query)
        async with self.db.execute(sql, params) as cur:
            rows = await cur.fetchall()
        moment = time.time() if now is None else now
        return [self._row_to_summary(dict(r), cache_duration_days, moment) for r in rows]

    async def count_sessions(self, query: SessionQuery) -> int:
        sql, params = build_count_query(query)
        async with self.db.execute(sql, params) as cur:
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM sessions") as cur:
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def list_projects(self) -> list[ProjectSummary]:
        async with self.db.execute(
            """SELECT project_path, MAX(project_name) AS project_name,
                      COUNT(*) AS session_count, MAX(last_message_time) AS most_recent
               FROM sessions
               WHERE is_valid = 1 AND is_empty = 0
               GROUP BY project_path
               ORDER BY most_recent DESC"""
        ) as cur:
            rows = await cur.fetchall()
        return [
            ProjectSummary(
                projectPath=r["project_path"],
                projectName=r["project_name"] or "",
                sessionCount=int(r["session_count"]),
                mostRecent=r["most_recent"],
            )
            for r in rows
        ]

    def _row_to_summary(self, row: dict[str, Any], cache_duration_days: int, now: float | None) -> SessionSummary:
        analyzed = is_valid(
            {"file_hash": row.get("analysis_fingerprint"), "analysis_timestamp": row.get("analysis_timestamp")},
            row.get("content_hash"),
            cache_duration_days,
            now,
        )
        analysis = consumable_analysis(row, cache_duration_days, now) if "analysis_title" in row else None
        stale = not analyzed and row.get("analysis_timestamp") is not None

        summary = SessionSummary(
            sessionId=row["session_id"],
            projectName=row.get("project_name") or "",
            projectPath=row.get("project_path") or "",
            filePath=row.get("file_path") or "",
            fileName=row.get("file_name") or "",
            fileSize=int(row.get("file_size") or 0),
            fileModifiedTime=int(row.get("file_modified_time") or 0),
            messageCount=int(row.get("message_count") or 0),
            firstMessageTime=row.get("first_message_time"),
            lastMessageTime=row.get("last_message_time"),
            sessionDurationSeconds=int(row.get("session_duration_seconds") or 0),
            isAnalyzed=analyzed,
            isValid=bool(row.get("is_valid", 1)),
            analysis=analysis,
            analysisStale=stale,
            rank=row.get("rank"),
        )
        if "continuation_count" in row:
            summary.parentSessionId = row.get("parent_session_id")
            summary.continuationOrder = row.get("continuation_order")
            active = row.get("is_active_continuation")
            summary.isActiveContinuation = None if active is None else bool(active)
            summary.continuationCount = int(row.get("continuation_count") or 0)
        return summary
