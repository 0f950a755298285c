"""Continuation chain detection and linking.

When Claude Code compacts a conversation it starts a new transcript file and
copies the ``compact_boundary`` event into it. That event keeps the
*parent's* ``sessionId``, so a boundary whose ``sessionId`` differs from the
file's own id names the session this one continues.

Detection is a pure function over decoded events. Linking records the edge,
keeps chain order strictly increasing and leaves exactly one active edge
(the chain head) per chain.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

import aiosqlite

from sessiondex.db.connection import key_locks, transaction
from sessiondex.db.repositories.continuations import SqliteContinuationRepository
from sessiondex.errors import LinkRejected
from sessiondex.models import ContinuationChain, ContinuationNode

logger = logging.getLogger("sessiondex.links")

LINKED = "linked"
EXISTS = "exists"
DEFERRED = "deferred"
REJECTED = "rejected"


@dataclass(frozen=True)
class ContinuationRef:
    parent_session_id: str
    child_started_timestamp: str | None = None


def _is_compact_boundary(event: dict[str, Any]) -> bool:
    kind = event.get("type")
    return (kind == "system" and event.get("subtype") == "compact_boundary") or kind == "compact_boundary"


def detect_continuation(session_id: str, events: Iterable[dict[str, Any]]) -> ContinuationRef | None:
    """Parent reference carried by a transcript, if any. First boundary wins."""
    own_id = (session_id or "").lower()
    if not own_id:
        return None
    for event in events:
        if not isinstance(event, dict) or not _is_compact_boundary(event):
            continue
        event_session = event.get("sessionId")
        if not isinstance(event_session, str) or not event_session:
            continue
        if event_session.lower() == own_id:
            continue
        timestamp = event.get("timestamp")
        return ContinuationRef(
            parent_session_id=event_session.lower(),
            child_started_timestamp=timestamp if isinstance(timestamp, str) else None,
        )
    return None


class ContinuationLinker:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self.repo = SqliteContinuationRepository(db)

    async def _project_of(self, session_id: str) -> str | None:
        async with self.db.execute(
            "SELECT project_path FROM sessions WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else None

    async def link(self, child_session_id: str, ref: ContinuationRef) -> str:
        """Record ``child continues ref.parent_session_id``.

        Returns one of ``linked``, ``exists``, ``deferred`` or ``rejected``.
        """
        async with key_locks(self.db).hold("continuations"):
            result = await self._link_locked(child_session_id, ref)
        if result == LINKED:
            await self.resolve_pending(parent_session_id=child_session_id)
        return result

    async def _link_locked(self, child_session_id: str, ref: ContinuationRef) -> str:
        parent_id = ref.parent_session_id
        if await self.repo.get_edge(child_session_id):
            # A child has at most one parent edge.
            async with transaction(self.db, "link_continuation", child_session_id):
                await self.repo.delete_pending(child_session_id)
            return EXISTS

        child_project = await self._project_of(child_session_id)
        if child_project is None:
            raise ValueError(f"Unknown child session {child_session_id}")

        parent_project = await self._project_of(parent_id)
        if parent_project is None:
            async with transaction(self.db, "defer_continuation", child_session_id):
                await self.repo.upsert_pending(
                    child_session_id, parent_id, child_project, ref.child_started_timestamp
                )
            logger.info(f"Deferred continuation {parent_id} -> {child_session_id}: parent not discovered yet")
            return DEFERRED

        try:
            if parent_project != child_project:
                raise LinkRejected(child_session_id, parent_id, "parent belongs to a different project")
            new_root = await self.repo.find_root(parent_id)
            if new_root == child_session_id:
                raise LinkRejected(child_session_id, parent_id, "link would create a cycle")
        except LinkRejected as rejection:
            logger.warning(str(rejection))
            async with transaction(self.db, "reject_continuation", child_session_id):
                await self.repo.delete_pending(child_session_id)
            return REJECTED

        async with transaction(self.db, "link_continuation", child_session_id):
            order = await self.repo.max_order(new_root) + 1
            await self.repo.insert_edge(
                child_session_id, parent_id, new_root, order, ref.child_started_timestamp
            )
            # The child may already head its own sub-chain (linked while this
            # parent was still pending); it follows the new edge in order.
            await self.repo.reroot(child_session_id, new_root, order)
            await self.repo.refresh_active(new_root)
            await self.repo.delete_pending(child_session_id)

        logger.info(f"Linked continuation {parent_id} -> {child_session_id} (order {order}, root {new_root})")
        return LINKED

    async def resolve_pending(self, parent_session_id: str | None = None) -> dict[str, int]:
        """Re-attempt deferred links; only those whose parent now exists are retried."""
        stats = {LINKED: 0, REJECTED: 0, EXISTS: 0, DEFERRED: 0}
        pending = await self.repo.list_pending(parent_session_id)
        for item in pending:
            if await self._project_of(item["parent_session_id"]) is None:
                stats[DEFERRED] += 1
                continue
            ref = ContinuationRef(item["parent_session_id"], item["child_started_timestamp"])
            result = await self.link(item["child_session_id"], ref)
            stats[result] += 1
        if pending:
            logger.info(
                f"Pending continuations: {stats[LINKED]} linked, {stats[REJECTED]} rejected, "
                f"{stats[DEFERRED]} still waiting"
            )
        return stats

    async def get_chain(self, session_id: str) -> ContinuationChain | None:
        if await self._project_of(session_id) is None:
            return None

        edge = await self.repo.get_edge(session_id)
        root = edge["root_session_id"] if edge and edge.get("root_session_id") else await self.repo.find_root(session_id)
        rows = await self.repo.chain_nodes(root)

        nodes = [
            ContinuationNode(
                sessionId=r["session_id"],
                parentSessionId=r["parent_session_id"],
                order=int(r["continuation_order"] or 0),
                depth=int(r["depth"] or 0),
                isActive=bool(r["is_active"]),
                childStartedTimestamp=r["child_started_timestamp"],
            )
            for r in rows
        ]
        child_counts: dict[str, int] = {}
        for node in nodes:
            if node.parentSessionId:
                child_counts[node.parentSessionId] = child_counts.get(node.parentSessionId, 0) + 1

        active = next((n.sessionId for n in nodes if n.isActive), root)
        pending = await self.repo.get_pending(root)
        return ContinuationChain(
            rootSessionId=root,
            activeSessionId=active,
            sessions=nodes,
            totalSessions=len(nodes),
            maxDepth=max((n.depth for n in nodes), default=0),
            hasBranches=any(count > 1 for count in child_counts.values()),
            pendingParentId=pending["parent_session_id"] if pending else None,
        )
