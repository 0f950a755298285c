import time
import types
import unittest

from fastapi import HTTPException

from sessiondex.continuation import ContinuationLinker, ContinuationRef
from sessiondex.db.connection import open_connection
from sessiondex.db.repositories.analysis_cache import SqliteAnalysisCacheRepository
from sessiondex.db.repositories.sessions import SqliteSessionRepository
from sessiondex.db.sqlite_migrations import run_migrations
from sessiondex.routers import sessions as sessions_router
from sessiondex.settings import SettingsService

S1 = "00000000-0000-4000-8000-000000000001"
S2 = "00000000-0000-4000-8000-000000000002"
S3 = "00000000-0000-4000-8000-000000000003"


def _record(session_id: str, project: str, day: int, messages: int = 4) -> dict:
    return {
        "sessionId": session_id,
        "projectName": project.rsplit("/", 1)[-1],
        "projectPath": project,
        "filePath": f"/claude/projects/x/{session_id}.jsonl",
        "fileName": f"{session_id}.jsonl",
        "fileSize": 100,
        "fileModifiedTime": 1_700_000_000_000 + day,
        "contentHash": f"hash-{session_id}",
        "messageCount": messages,
        "firstMessageTime": f"2026-03-{day:02d}T09:00:00.000Z",
        "lastMessageTime": f"2026-03-{day:02d}T10:00:00.000Z",
        "isEmpty": messages == 0,
    }


class SessionsRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await open_connection(":memory:")
        await run_migrations(self.db)
        repo = SqliteSessionRepository(self.db)
        await repo.upsert_session(_record(S1, "/work/app", 1))
        await repo.upsert_session(_record(S2, "/work/app", 2))
        await repo.upsert_session(_record(S3, "/work/api", 3))
        await SqliteAnalysisCacheRepository(self.db).save(S2, {
            "projectPath": "/work/app",
            "filePath": f"/claude/projects/x/{S2}.jsonl",
            "fileHash": f"hash-{S2}",
            "title": "Migrate billing webhooks",
            "summary": "Moved webhook handlers to the queue.",
            "analysisTimestamp": int(time.time()),
        })
        self.linker = ContinuationLinker(self.db)
        await self.linker.link(S2, ContinuationRef(S1))
        self.request = types.SimpleNamespace(
            app=types.SimpleNamespace(
                state=types.SimpleNamespace(
                    db=self.db,
                    settings_service=SettingsService(self.db),
                    linker=self.linker,
                )
            )
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _list(self, **overrides):
        params = {
            "offset": 0,
            "limit": 50,
            "sort_by": None,
            "sort_order": "desc",
            "project": None,
            "date_from": None,
            "date_to": None,
            "analyzed": None,
            "include_empty": False,
        }
        params.update(overrides)
        return await sessions_router.list_sessions(self.request, **params)

    async def _search(self, q: str, **overrides):
        params = {
            "offset": 0,
            "limit": 50,
            "sort_by": None,
            "sort_order": "desc",
            "project": None,
            "date_from": None,
            "date_to": None,
        }
        params.update(overrides)
        return await sessions_router.search_sessions(self.request, q=q, **params)

    async def test_list_is_newest_first_with_analysis_and_continuations(self) -> None:
        page = await self._list()
        self.assertEqual(page.total, 3)
        self.assertEqual([s.sessionId for s in page.items], [S3, S2, S1])
        by_id = {s.sessionId: s for s in page.items}
        self.assertEqual(by_id[S2].analysis.title, "Migrate billing webhooks")
        self.assertEqual(by_id[S2].parentSessionId, S1)
        self.assertEqual(by_id[S1].continuationCount, 1)

    async def test_list_filters_by_project_date_and_analysis(self) -> None:
        page = await self._list(project="/work/app", sort_order="asc")
        self.assertEqual([s.sessionId for s in page.items], [S1, S2])

        page = await self._list(date_to="2026-03-02")
        self.assertEqual({s.sessionId for s in page.items}, {S1, S2})

        page = await self._list(analyzed=True)
        self.assertEqual([s.sessionId for s in page.items], [S2])

    async def test_edited_transcript_is_listed_as_unanalyzed(self) -> None:
        await SqliteSessionRepository(self.db).upsert_session({**_record(S2, "/work/app", 2), "fileSize": 200, "contentHash": "hash-edited"})

        self.assertEqual((await self._list(analyzed=True)).total, 0)
        page = await self._list(analyzed=False)
        self.assertEqual(page.total, 3)
        by_id = {s.sessionId: s for s in page.items}
        self.assertFalse(by_id[S2].isAnalyzed)
        self.assertTrue(by_id[S2].analysisStale)
        self.assertEqual((await self._search("webhooks")).total, 0)

    async def test_pagination_reports_total(self) -> None:
        page = await self._list(limit=1, offset=1)
        self.assertEqual((page.total, page.offset, page.limit), (3, 1, 1))
        self.assertEqual([s.sessionId for s in page.items], [S2])

    async def test_invalid_parameters_return_400(self) -> None:
        for overrides in ({"sort_by": "color"}, {"sort_order": "sideways"}, {"date_from": "03/01/2026"}, {"limit": 0}):
            with self.assertRaises(HTTPException) as ctx:
                await self._list(**overrides)
            self.assertEqual(ctx.exception.status_code, 400, overrides)

    async def test_search_ranks_analyzed_text_and_project_paths(self) -> None:
        page = await self._search("billing")
        self.assertEqual([s.sessionId for s in page.items], [S2])
        self.assertIsNotNone(page.items[0].rank)

        page = await self._search("api")
        self.assertEqual([s.sessionId for s in page.items], [S3])

        page = await self._search("AND OR NOT")
        self.assertEqual(page.total, 0)

    async def test_projects_are_grouped(self) -> None:
        projects = await sessions_router.list_projects(self.request)
        self.assertEqual({p.projectPath: p.sessionCount for p in projects}, {"/work/app": 2, "/work/api": 1})

    async def test_get_session_and_missing(self) -> None:
        session = await sessions_router.get_session(self.request, S2.upper())
        self.assertEqual(session.sessionId, S2)
        self.assertTrue(session.isAnalyzed)

        with self.assertRaises(HTTPException) as ctx:
            await sessions_router.get_session(self.request, "ffffffff-0000-4000-8000-000000000000")
        self.assertEqual(ctx.exception.status_code, 404)

        with self.assertRaises(HTTPException) as ctx:
            await sessions_router.get_session(self.request, "../etc/passwd")
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_chain_endpoint(self) -> None:
        chain = await sessions_router.get_session_chain(self.request, S1)
        self.assertEqual(chain.rootSessionId, S1)
        self.assertEqual(chain.activeSessionId, S2)
        self.assertEqual([n.sessionId for n in chain.sessions], [S1, S2])

        single = await sessions_router.get_session_chain(self.request, S3)
        self.assertEqual(single.totalSessions, 1)


if __name__ == "__main__":
    unittest.main()
