import tempfile
import time
import types
import unittest
from pathlib import Path

from fastapi import BackgroundTasks, HTTPException

from sessiondex.db.connection import open_connection
from sessiondex.db.repositories.analysis_cache import SqliteAnalysisCacheRepository
from sessiondex.db.repositories.sessions import SqliteSessionRepository
from sessiondex.db.sqlite_migrations import run_migrations
from sessiondex.routers import cache as cache_router


class _FakeSyncEngine:
    def __init__(self, db, roots: list[Path]) -> None:
        self.db = db
        self.session_repo = SqliteSessionRepository(db)
        self.roots = roots
        self.started_ops: list[dict] = []
        self.sync_calls: list[dict] = []
        self.path_sync_calls: list[dict] = []

    async def discovery_roots(self):
        return self.roots

    async def is_watched_path(self, path):
        return any(root in path.parents for root in self.roots)

    async def get_observability_snapshot(self):
        return {"activeOperationCount": 1, "activeOperations": [{"id": "OP-1"}], "recentOperations": [], "trackedOperationCount": 1}

    async def list_operations(self, limit=20):
        return [{"id": "OP-1", "status": "running"}][:limit]

    async def get_operation(self, operation_id):
        if operation_id == "OP-404":
            return None
        return {"id": operation_id, "status": "completed"}

    async def start_operation(self, kind, scope="all", trigger="api", metadata=None):
        self.started_ops.append({"kind": kind, "scope": scope, "trigger": trigger, "metadata": metadata or {}})
        return "OP-STARTED"

    async def sync_all(self, force=False, operation_id=None, trigger="api"):
        self.sync_calls.append({"force": force, "operation_id": operation_id, "trigger": trigger})
        return {"operation_id": operation_id or "OP-FOREGROUND", "sessions_inserted": 1}

    async def sync_changed_files(self, changed_files, operation_id=None, trigger="watcher"):
        self.path_sync_calls.append({"changed_files": changed_files, "operation_id": operation_id, "trigger": trigger})
        return {"operation_id": operation_id or "", "sessions_found": len(changed_files)}


class CacheRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name).resolve()
        self.db = await open_connection(":memory:")
        await run_migrations(self.db)
        self.engine = _FakeSyncEngine(self.db, [self.root])

    async def asyncTearDown(self) -> None:
        await self.db.close()
        self.tmp.cleanup()

    def _request(self, engine=None):
        return types.SimpleNamespace(
            app=types.SimpleNamespace(
                state=types.SimpleNamespace(sync_engine=engine)
            )
        )

    async def _seed_analyzed(self, count: int) -> list[str]:
        sessions = SqliteSessionRepository(self.db)
        cache = SqliteAnalysisCacheRepository(self.db)
        ids = []
        for i in range(count):
            session_id = f"00000000-0000-4000-8000-{i:012d}"
            project = "/work/app" if i % 2 == 0 else "/work/api"
            await sessions.upsert_session({
                "sessionId": session_id,
                "projectPath": project,
                "filePath": f"/claude/{session_id}.jsonl",
                "fileSize": 10,
                "fileModifiedTime": 1,
                "contentHash": f"h{i}",
                "messageCount": 2,
            })
            await cache.save(session_id, {
                "projectPath": project,
                "filePath": f"/claude/{session_id}.jsonl",
                "fileHash": f"h{i}",
                "title": "t",
                "summary": "s",
                "analysisTimestamp": int(time.time()),
            })
            ids.append(session_id)
        return ids

    async def test_missing_engine_returns_503(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await cache_router.cache_status(self._request(None))
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_status_reports_roots_counts_and_operations(self) -> None:
        await self._seed_analyzed(3)
        payload = await cache_router.cache_status(self._request(self.engine))
        self.assertEqual(payload["discoveryRoots"], [str(self.root)])
        self.assertEqual(payload["sessionCount"], 3)
        self.assertEqual(payload["analysisCacheCount"], 3)
        self.assertEqual(payload["operations"]["activeOperationCount"], 1)
        self.assertEqual(payload["watcher"], "stopped")

    async def test_operations_list_and_lookup(self) -> None:
        listed = await cache_router.list_operations(self._request(self.engine), limit=5)
        self.assertEqual(listed["count"], 1)

        found = await cache_router.get_operation(self._request(self.engine), "OP-9")
        self.assertEqual(found["status"], "completed")
        with self.assertRaises(HTTPException) as ctx:
            await cache_router.get_operation(self._request(self.engine), "OP-404")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_background_sync_starts_operation_and_schedules_task(self) -> None:
        tasks = BackgroundTasks()
        payload = await cache_router.start_sync(
            self._request(self.engine), tasks, cache_router.SyncRequest(force=True, trigger="cli")
        )
        self.assertEqual(payload["mode"], "background")
        self.assertEqual(payload["operationId"], "OP-STARTED")
        self.assertEqual(self.engine.started_ops[0]["metadata"], {"force": True})
        self.assertEqual(len(tasks.tasks), 1)

        await tasks()
        self.assertEqual(self.engine.sync_calls, [{"force": True, "operation_id": "OP-STARTED", "trigger": "cli"}])

    async def test_foreground_sync_returns_stats(self) -> None:
        payload = await cache_router.start_sync(
            self._request(self.engine), BackgroundTasks(), cache_router.SyncRequest(background=False)
        )
        self.assertEqual(payload["mode"], "foreground")
        self.assertEqual(payload["operationId"], "OP-FOREGROUND")
        self.assertEqual(payload["stats"]["sessions_inserted"], 1)
        self.assertEqual(payload["operation"]["id"], "OP-FOREGROUND")

    async def test_sync_paths_resolves_under_roots(self) -> None:
        target = self.root / "-work-app" / "00000000-0000-4000-8000-000000000001.jsonl"
        body = cache_router.SyncPathsRequest(paths=[
            cache_router.ChangedPathSpec(path=str(target)),
            cache_router.ChangedPathSpec(path=str(target), changeType="deleted"),
        ])
        payload = await cache_router.sync_paths(self._request(self.engine), BackgroundTasks(), body)
        self.assertEqual(payload["mode"], "foreground")
        call = self.engine.path_sync_calls[0]
        self.assertEqual(call["changed_files"], [("modified", target), ("deleted", target)])
        self.assertEqual(call["trigger"], "api")

    async def test_sync_paths_rejects_relative_and_outside_paths(self) -> None:
        for raw in ("relative/file.jsonl", "/etc/00000000-0000-4000-8000-000000000001.jsonl"):
            body = cache_router.SyncPathsRequest(paths=[cache_router.ChangedPathSpec(path=raw)])
            with self.assertRaises(HTTPException) as ctx:
                await cache_router.sync_paths(self._request(self.engine), BackgroundTasks(), body)
            self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(self.engine.path_sync_calls, [])

    async def test_clear_all_then_scoped(self) -> None:
        ids = await self._seed_analyzed(4)

        payload = await cache_router.clear_cache(
            self._request(self.engine), cache_router.ClearCacheRequest(sessionIds=[ids[0].upper()])
        )
        self.assertEqual(payload, {"cleared": 1})

        payload = await cache_router.clear_cache(
            self._request(self.engine), cache_router.ClearCacheRequest(projectPath="/work/api")
        )
        self.assertEqual(payload["cleared"], 2)

        payload = await cache_router.clear_cache(self._request(self.engine), None)
        self.assertEqual(payload["cleared"], 1)
        self.assertEqual(await self.engine.session_repo.count(), 4)

    async def test_clear_with_empty_session_list_removes_nothing(self) -> None:
        await self._seed_analyzed(4)
        payload = await cache_router.clear_cache(
            self._request(self.engine), cache_router.ClearCacheRequest(sessionIds=[])
        )
        self.assertEqual(payload, {"cleared": 0})
        self.assertEqual(await SqliteAnalysisCacheRepository(self.db).count(), 4)


if __name__ == "__main__":
    unittest.main()
