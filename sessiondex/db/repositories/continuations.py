"""SQLite storage for continuation edges and deferred (pending) links.

Write helpers here do not commit; the linker wraps each link decision in
one transaction.
"""
from __future__ import annotations

from datetime import datetime, timezone

import aiosqlite

MAX_CHAIN_DEPTH = 100


class SqliteContinuationRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_edge(self, child_session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM session_continuations WHERE child_session_id = ?",
            (child_session_id,),
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def find_root(self, session_id: str) -> str:
        """Walk parent edges upwards; stops on cycles or after MAX_CHAIN_DEPTH hops."""
        current = session_id
        visited = {current}
        for _ in range(MAX_CHAIN_DEPTH):
            edge = await self.get_edge(current)
            if not edge:
                return current
            parent = edge["parent_session_id"]
            if parent in visited:
                return current
            visited.add(parent)
            current = parent
        return current

    async def max_order(self, root_session_id: str) -> int:
        async with self.db.execute(
            "SELECT MAX(continuation_order) FROM session_continuations WHERE root_session_id = ?",
            (root_session_id,),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    async def insert_edge(
        self,
        child_session_id: str,
        parent_session_id: str,
        root_session_id: str,
        order: int,
        child_started_timestamp: str | None,
    ) -> None:
        await self.db.execute(
            """INSERT INTO session_continuations (
                child_session_id, parent_session_id, root_session_id,
                continuation_order, is_active_continuation, child_started_timestamp, created_at
            ) VALUES (?, ?, ?, ?, 0, ?, ?)""",
            (
                child_session_id,
                parent_session_id,
                root_session_id,
                order,
                child_started_timestamp,
                datetime.now(timezone.utc).isoformat(),
            ),
        )

    async def reroot(self, old_root: str, new_root: str, order_offset: int) -> None:
        """Move every edge of chain ``old_root`` under ``new_root``, shifting its orders."""
        await self.db.execute(
            """UPDATE session_continuations
               SET root_session_id = ?, continuation_order = continuation_order + ?
               WHERE root_session_id = ?""",
            (new_root, order_offset, old_root),
        )

    async def refresh_active(self, root_session_id: str) -> str | None:
        """Mark the highest-order edge of the chain active and every other edge inactive."""
        async with self.db.execute(
            """SELECT child_session_id FROM session_continuations
               WHERE root_session_id = ?
               ORDER BY continuation_order DESC
               LIMIT 1""",
            (root_session_id,),
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        head = row[0]
        await self.db.execute(
            """UPDATE session_continuations
               SET is_active_continuation = CASE WHEN child_session_id = ? THEN 1 ELSE 0 END
               WHERE root_session_id = ?""",
            (head, root_session_id),
        )
        return head

    async def chain_nodes(self, root_session_id: str) -> list[dict]:
        async with self.db.execute(
            """WITH RECURSIVE chain(session_id, parent_session_id, continuation_order,
                                    is_active, child_started_timestamp, depth) AS (
                   SELECT ?, NULL, 0, 0, NULL, 0
                   UNION ALL
                   SELECT c.child_session_id, c.parent_session_id, c.continuation_order,
                          c.is_active_continuation, c.child_started_timestamp, chain.depth + 1
                   FROM session_continuations c
                   JOIN chain ON c.parent_session_id = chain.session_id
                   WHERE chain.depth < ?
               )
               SELECT * FROM chain ORDER BY continuation_order, depth""",
            (root_session_id, MAX_CHAIN_DEPTH),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def active_edge_counts(self) -> dict[str, int]:
        """Active edges per chain root, for health checks."""
        async with self.db.execute(
            """SELECT root_session_id, SUM(is_active_continuation) AS active
               FROM session_continuations GROUP BY root_session_id"""
        ) as cur:
            return {r[0]: int(r[1] or 0) for r in await cur.fetchall()}

    # ── Deferred links ──────────────────────────────────────────────

    async def upsert_pending(
        self,
        child_session_id: str,
        parent_session_id: str,
        project_path: str,
        child_started_timestamp: str | None,
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO pending_continuations (
                child_session_id, parent_session_id, project_path,
                child_started_timestamp, attempts, detected_at, last_attempt_at
            ) VALUES (?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT(child_session_id) DO UPDATE SET
                parent_session_id = excluded.parent_session_id,
                project_path = excluded.project_path,
                child_started_timestamp = excluded.child_started_timestamp,
                attempts = pending_continuations.attempts + 1,
                last_attempt_at = excluded.last_attempt_at""",
            (child_session_id, parent_session_id, project_path, child_started_timestamp, now, now),
        )

    async def delete_pending(self, child_session_id: str) -> None:
        await self.db.execute(
            "DELETE FROM pending_continuations WHERE child_session_id = ?",
            (child_session_id,),
        )

    async def get_pending(self, child_session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM pending_continuations WHERE child_session_id = ?",
            (child_session_id,),
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def list_pending(self, parent_session_id: str | None = None) -> list[dict]:
        if parent_session_id:
            query = "SELECT * FROM pending_continuations WHERE parent_session_id = ? ORDER BY detected_at"
            params: tuple = (parent_session_id,)
        else:
            query = "SELECT * FROM pending_continuations ORDER BY detected_at"
            params = ()
        async with self.db.execute(query, params) as cur:
            return [dict(r) for r in await cur.fetchall()]
