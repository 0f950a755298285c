"""In-memory record of long-running work (syncs, bulk analysis).

Each operation gets an ``OP-<uuid>`` id and a mutable payload that callers
snapshot through deep copies. Only the newest ``max_history`` entries are kept.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("sessiondex.operations")

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OperationLog:
    def __init__(self, max_history: int = 40):
        self.max_history = max(1, max_history)
        self._lock = asyncio.Lock()
        # newest first
        self._ops: OrderedDict[str, dict[str, Any]] = OrderedDict()

    async def start(
        self,
        kind: str,
        scope: str = "all",
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        stamp = _now().isoformat()
        record = {
            "id": op_id,
            "kind": kind,
            "scope": scope,
            "trigger": trigger,
            "status": RUNNING,
            "phase": "queued",
            "message": "",
            "startedAt": stamp,
            "updatedAt": stamp,
            "finishedAt": "",
            "durationMs": 0,
            "progress": {},
            "counters": {},
            "stats": {},
            "metadata": dict(metadata or {}),
            "error": "",
        }
        async with self._lock:
            self._ops[op_id] = record
            self._ops.move_to_end(op_id, last=False)
            while len(self._ops) > self.max_history:
                self._ops.popitem(last=True)
        logger.info("Operation started [%s] %s (scope=%s trigger=%s)", op_id, kind, scope, trigger)
        return op_id

    async def update(
        self,
        op_id: str | None,
        *,
        phase: str | None = None,
        message: str | None = None,
        progress: dict[str, Any] | None = None,
        counters: dict[str, Any] | None = None,
        stats: dict[str, Any] | None = None,
    ) -> None:
        if not op_id:
            return
        note = ""
        async with self._lock:
            record = self._ops.get(op_id)
            if record is None:
                return
            if phase and phase != record["phase"]:
                record["phase"] = phase
                note = phase
            if message is not None:
                record["message"] = message
                if message:
                    note = f"{record['phase']}: {message}"
            for key, patch in (("progress", progress), ("counters", counters), ("stats", stats)):
                if patch:
                    record[key].update(patch)
            record["updatedAt"] = _now().isoformat()
        if note:
            logger.info("Operation update [%s] %s", op_id, note)

    async def finish(
        self,
        op_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        if not op_id:
            return
        ended = _now()
        async with self._lock:
            record = self._ops.get(op_id)
            if record is None:
                return
            record["status"] = status
            record["updatedAt"] = record["finishedAt"] = ended.isoformat()
            if stats:
                record["stats"].update(stats)
            if error:
                record["error"] = error
            started = datetime.fromisoformat(record["startedAt"])
            record["durationMs"] = max(0, int((ended - started).total_seconds() * 1000))

        if status == FAILED:
            logger.error("Operation failed [%s]: %s", op_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", op_id, status)

    async def get(self, op_id: str) -> dict[str, Any] | None:
        async with self._lock:
            record = self._ops.get(op_id)
            return copy.deepcopy(record) if record else None

    async def recent(self, limit: int = 20) -> list[dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(r) for r in list(self._ops.values())[: max(1, limit)]]

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            records = list(self._ops.values())
            active = [copy.deepcopy(r) for r in records if r["status"] == RUNNING]
            return {
                "activeOperationCount": len(active),
                "activeOperations": active,
                "recentOperations": [copy.deepcopy(r) for r in records[:5]],
                "trackedOperationCount": len(records),
            }
