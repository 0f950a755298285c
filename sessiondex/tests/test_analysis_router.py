import asyncio
import types
import unittest

from fastapi import BackgroundTasks, HTTPException

from sessiondex.admission import IN_PROGRESS, NOT_FOUND, QUOTA_EXCEEDED, AnalysisOutcome, Denied, Queued
from sessiondex.errors import QuotaExceeded
from sessiondex.models import QuotaDay, QuotaStatus
from sessiondex.routers import analysis as analysis_router

SESSION = "00000000-0000-4000-8000-000000000001"


class _FakeAdmission:
    def __init__(self) -> None:
        self.denial: Denied | None = None
        self.cached = False
        self.bulk_calls: list[dict] = []
        self.cancelled: list[str] = []

    async def get_quota_status(self):
        return QuotaStatus(date="2026-03-10", used=3, limit=5, remaining=2, allowed=True)

    async def get_quota_history(self, days):
        return [QuotaDay(date="2026-03-10", performed=3, succeeded=2, failed=1)][:days]

    async def analyze_session(self, session_id, *, force=False, custom_instructions=""):
        if self.denial is not None:
            return self.denial
        status = "cached" if self.cached and not force else "succeeded"
        return AnalysisOutcome(session_id, "RUN-1", status, title="Title", summary=custom_instructions)

    async def has_valid_cache(self, session_id):
        return self.cached

    async def request_analysis(self, session_id, *, custom_instructions=""):
        if self.denial is not None:
            return self.denial
        job = asyncio.get_running_loop().create_future()
        job.set_result(None)
        return Queued(session_id, "RUN-2", 3, job)

    async def cancel(self, session_id):
        self.cancelled.append(session_id)
        return session_id == SESSION

    async def run_bulk(self, session_ids, on_progress=None, cancel_event=None, skip_cached=True):
        self.bulk_calls.append({"session_ids": session_ids, "skip_cached": skip_cached})
        for index, session_id in enumerate(session_ids, start=1):
            await on_progress({"current": index, "total": len(session_ids), "sessionId": session_id, "status": "success"})
        return {"total": len(session_ids), "completed": len(session_ids), "failed": 0, "skipped": 0, "cancelled": 0, "errors": []}


class _FakeSyncEngine:
    def __init__(self) -> None:
        self.updates: list[dict] = []
        self.finished: list[dict] = []

    async def start_operation(self, kind, scope="all", trigger="api", metadata=None):
        self.kind = kind
        self.metadata = metadata
        return "OP-BULK"

    async def update_operation(self, operation_id, **kwargs):
        self.updates.append({"id": operation_id, **kwargs})

    async def finish_operation(self, operation_id, *, status, stats=None, error=""):
        self.finished.append({"id": operation_id, "status": status, "stats": stats})


class AnalysisRouterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.admission = _FakeAdmission()
        self.engine = _FakeSyncEngine()
        self.request = types.SimpleNamespace(
            app=types.SimpleNamespace(
                state=types.SimpleNamespace(admission=self.admission, sync_engine=self.engine)
            )
        )

    async def test_quota_endpoints(self) -> None:
        status = await analysis_router.get_quota(self.request)
        self.assertEqual((status.used, status.remaining), (3, 2))
        history = await analysis_router.get_quota_history(self.request, days=7)
        self.assertEqual(history[0].failed, 1)

    async def test_waiting_request_returns_outcome(self) -> None:
        payload = await analysis_router.analyze_session(
            self.request, SESSION.upper(), analysis_router.AnalyzeRequest(customInstructions="focus on tests")
        )
        self.assertEqual(payload["sessionId"], SESSION)
        self.assertEqual(payload["status"], "succeeded")
        self.assertEqual(payload["summary"], "focus on tests")

    async def test_denials_map_to_http_status(self) -> None:
        cases = [
            (Denied(SESSION, QUOTA_EXCEEDED, "Daily limit reached (5/5)", QuotaExceeded(5, 5)), 429),
            (Denied(SESSION, IN_PROGRESS, "Analysis already in progress"), 409),
            (Denied(SESSION, NOT_FOUND, "not found"), 404),
        ]
        for denial, code in cases:
            self.admission.denial = denial
            for wait in (True, False):
                with self.assertRaises(HTTPException) as ctx:
                    await analysis_router.analyze_session(self.request, SESSION, analysis_router.AnalyzeRequest(wait=wait))
                self.assertEqual(ctx.exception.status_code, code)

    async def test_non_waiting_request_returns_queue_position(self) -> None:
        payload = await analysis_router.analyze_session(
            self.request, SESSION, analysis_router.AnalyzeRequest(wait=False)
        )
        self.assertEqual(payload, {"sessionId": SESSION, "runId": "RUN-2", "status": "queued", "position": 3})

    async def test_non_waiting_request_serves_cache(self) -> None:
        self.admission.cached = True
        payload = await analysis_router.analyze_session(
            self.request, SESSION, analysis_router.AnalyzeRequest(wait=False)
        )
        self.assertEqual(payload["status"], "cached")

    async def test_invalid_session_id_is_rejected(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await analysis_router.analyze_session(self.request, "bad id!", None)
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_cancel_single_analysis(self) -> None:
        payload = await analysis_router.cancel_analysis(self.request, SESSION)
        self.assertTrue(payload["cancelled"])
        with self.assertRaises(HTTPException) as ctx:
            await analysis_router.cancel_analysis(self.request, "00000000-0000-4000-8000-000000000009")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_bulk_runs_as_tracked_operation(self) -> None:
        tasks = BackgroundTasks()
        body = analysis_router.BulkAnalyzeRequest(sessionIds=[SESSION, SESSION.replace("1", "2")], skipCached=False)
        payload = await analysis_router.start_bulk_analysis(self.request, tasks, body)
        self.assertEqual(payload["operationId"], "OP-BULK")
        self.assertEqual(self.engine.kind, "bulk_analysis")
        self.assertIn("OP-BULK", self.request.app.state.bulk_cancel_events)

        await tasks()
        self.assertEqual(self.admission.bulk_calls[0]["skip_cached"], False)
        self.assertEqual(len(self.engine.updates), 2)
        self.assertEqual(self.engine.finished[0]["status"], "completed")
        self.assertEqual(self.engine.finished[0]["stats"]["completed"], 2)
        self.assertNotIn("OP-BULK", self.request.app.state.bulk_cancel_events)

    async def test_bulk_cancel_sets_event(self) -> None:
        event = asyncio.Event()
        self.request.app.state.bulk_cancel_events = {"OP-7": event}
        payload = await analysis_router.cancel_bulk_analysis(self.request, "OP-7")
        self.assertTrue(payload["cancelled"])
        self.assertTrue(event.is_set())
        with self.assertRaises(HTTPException) as ctx:
            await analysis_router.cancel_bulk_analysis(self.request, "OP-8")
        self.assertEqual(ctx.exception.status_code, 404)


if __name__ == "__main__":
    unittest.main()
