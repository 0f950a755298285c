"""Admission control for analysis jobs.

Every request passes two gates, in order:

1. the daily quota: today's admitted runs (queued, running or settled,
   cancelled excluded) are counted from ``analysis_runs`` in the same
   transaction that records the new run, so two near-simultaneous requests
   cannot both see the last free unit;
2. the concurrency ceiling: a free slot grants immediately, otherwise the
   request waits in a FIFO queue.

Slots are released when a job settles, whether it succeeded, failed, timed
out or was cancelled. Cancelled or timed-out jobs never write a cache entry.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Union

import aiosqlite

from sessiondex.analysis import AnalysisOptions, Analyzer, prepare_analysis_content
from sessiondex.cache_validity import is_valid
from sessiondex.db.connection import transaction
from sessiondex.db.repositories.analysis_cache import (
    SqliteAnalysisCacheRepository,
    SqliteAnalysisRunRepository,
)
from sessiondex.db.repositories.sessions import SqliteSessionRepository
from sessiondex.errors import AnalysisFailed, AnalysisTimeout, QuotaExceeded, SessionDexError
from sessiondex.models import QuotaDay, QuotaStatus
from sessiondex.parsers.sessions import content_fingerprint, parse_events
from sessiondex.settings import SettingsService

logger = logging.getLogger("sessiondex.admission")

QUOTA_EXCEEDED = "quota_exceeded"
IN_PROGRESS = "in_progress"
NOT_FOUND = "not_found"

SUCCEEDED = "succeeded"
FAILED = "failed"
TIMEOUT = "timeout"
CANCELLED = "cancelled"


def local_date_string() -> str:
    return datetime.now().strftime("%Y-%m-%d")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class AnalysisOutcome:
    session_id: str
    run_id: str
    status: str
    title: str = ""
    summary: str = ""
    error: str = ""
    duration_ms: int = 0
    timestamp: str = field(default_factory=_utc_now)

    @property
    def ok(self) -> bool:
        return self.status == SUCCEEDED

    def as_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "runId": self.run_id,
            "status": self.status,
            "title": self.title,
            "summary": self.summary,
            "error": self.error,
            "durationMs": self.duration_ms,
            "timestamp": self.timestamp,
        }


@dataclass
class Granted:
    session_id: str
    run_id: str
    job: "asyncio.Task[AnalysisOutcome]"
    status: str = "granted"


@dataclass
class Queued:
    session_id: str
    run_id: str
    position: int
    job: "asyncio.Task[AnalysisOutcome]"
    status: str = "queued"


@dataclass
class Denied:
    session_id: str
    reason: str
    message: str
    error: SessionDexError | None = None
    status: str = "denied"


AdmissionResult = Union[Granted, Queued, Denied]
ProgressCallback = Callable[[dict[str, Any]], Union[None, Awaitable[None]]]


@dataclass
class _Job:
    session_id: str
    run_id: str
    waiter: asyncio.Future | None
    custom_instructions: str = ""
    task: asyncio.Task | None = None
    holds_slot: bool = False
    started: bool = False
    cancel_requested: bool = False


class AdmissionController:
    def __init__(
        self,
        db: aiosqlite.Connection,
        analyzer: Analyzer,
        settings: SettingsService,
        today: Callable[[], str] = local_date_string,
    ):
        self.db = db
        self.analyzer = analyzer
        self.settings = settings
        self.today = today
        self.runs = SqliteAnalysisRunRepository(db)
        self.cache = SqliteAnalysisCacheRepository(db)
        self.sessions = SqliteSessionRepository(db)
        self._admission_lock = asyncio.Lock()
        self._jobs: dict[str, _Job] = {}
        self._waiters: deque[_Job] = deque()
        self._in_flight = 0
        self._max_concurrent = 1

    # ── Admission ───────────────────────────────────────────────────

    async def request_analysis(self, session_id: str, *, custom_instructions: str = "") -> AdmissionResult:
        async with self._admission_lock:
            if session_id in self._jobs:
                return Denied(session_id, IN_PROGRESS, "Analysis already in progress for this session")
            if not await self.sessions.exists(session_id):
                return Denied(session_id, NOT_FOUND, f"Session {session_id} not found")

            settings = await self.settings.get()
            self._max_concurrent = settings.maxConcurrentAnalyses
            local_date = self.today()
            run_id = f"RUN-{uuid.uuid4()}"

            async with transaction(self.db, "admit_analysis", session_id):
                used = await self.runs.count_for_date(local_date)
                admitted = used < settings.dailyAnalysisLimit
                if admitted:
                    await self.runs.insert(run_id, session_id, local_date, "queued")

            if not admitted:
                error = QuotaExceeded(used, settings.dailyAnalysisLimit)
                logger.info(f"Analysis denied for {session_id}: {error}")
                return Denied(session_id, QUOTA_EXCEEDED, str(error), error)

            job = _Job(session_id=session_id, run_id=run_id, waiter=None, custom_instructions=custom_instructions)
            immediate = self._in_flight < self._max_concurrent and not self._waiters
            if immediate:
                self._in_flight += 1
                job.holds_slot = True
            else:
                job.waiter = asyncio.get_running_loop().create_future()
                self._waiters.append(job)
            job.task = asyncio.create_task(self._run_job(job))
            self._jobs[session_id] = job

            if immediate:
                logger.info(f"Analysis granted for {session_id} [{run_id}] ({used + 1}/{settings.dailyAnalysisLimit} today)")
                return Granted(session_id, run_id, job.task)
            position = len(self._waiters)
            logger.info(f"Analysis queued for {session_id} [{run_id}] at position {position}")
            return Queued(session_id, run_id, position, job.task)

    def _pump(self) -> None:
        while self._waiters and self._in_flight < self._max_concurrent:
            job = self._waiters.popleft()
            if job.waiter is None or job.waiter.done():
                continue
            self._in_flight += 1
            job.holds_slot = True
            job.waiter.set_result(None)

    def _release_slot(self, job: _Job) -> None:
        if not job.holds_slot:
            return
        job.holds_slot = False
        self._in_flight = max(0, self._in_flight - 1)
        self._pump()

    # ── Job execution ───────────────────────────────────────────────

    async def _run_job(self, job: _Job) -> AnalysisOutcome:
        job.started = True
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        timeout_ms = 0
        try:
            if job.waiter is not None:
                await job.waiter
            started = time.monotonic()
            await self.runs.mark_running(job.run_id)
            settings = await self.settings.get()
            timeout_ms = settings.analysisTimeout
            entry = await asyncio.wait_for(
                self._analyze(job, settings.maxMessagesForAnalysis, timeout_ms),
                timeout=timeout_ms / 1000,
            )
            entry["durationMs"] = elapsed()
            await self.cache.save(job.session_id, entry)
            await self.runs.finish(job.run_id, SUCCEEDED, entry["durationMs"])
            logger.info(f"Analysis succeeded for {job.session_id} in {entry['durationMs']}ms")
            return AnalysisOutcome(
                job.session_id, job.run_id, SUCCEEDED,
                title=entry["title"], summary=entry["summary"], duration_ms=entry["durationMs"],
            )
        except asyncio.TimeoutError:
            error = AnalysisTimeout(job.session_id, timeout_ms)
            await self.runs.finish(job.run_id, TIMEOUT, elapsed(), str(error))
            logger.error(str(error))
            return AnalysisOutcome(job.session_id, job.run_id, TIMEOUT, error=str(error), duration_ms=elapsed())
        except asyncio.CancelledError:
            await self.runs.finish(job.run_id, CANCELLED, elapsed(), "cancelled")
            logger.info(f"Analysis cancelled for {job.session_id} [{job.run_id}]")
            if not job.cancel_requested:
                raise
            return AnalysisOutcome(job.session_id, job.run_id, CANCELLED, error="cancelled", duration_ms=elapsed())
        except (AnalysisFailed, OSError, aiosqlite.Error, SessionDexError) as e:
            await self.runs.finish(job.run_id, FAILED, elapsed(), str(e))
            logger.error(f"Analysis failed for {job.session_id}: {e}")
            return AnalysisOutcome(job.session_id, job.run_id, FAILED, error=str(e), duration_ms=elapsed())
        except Exception as e:
            # Analyzer plugins may raise anything; the run still has to settle.
            message = str(e) or type(e).__name__
            await self.runs.finish(job.run_id, FAILED, elapsed(), message)
            logger.exception(f"Analyzer crashed for {job.session_id}: {message}")
            return AnalysisOutcome(job.session_id, job.run_id, FAILED, error=message, duration_ms=elapsed())
        finally:
            if job.waiter is not None and not job.waiter.done():
                job.waiter.cancel()
            self._release_slot(job)
            if self._jobs.get(job.session_id) is job:
                self._jobs.pop(job.session_id, None)

    async def _analyze(self, job: _Job, max_messages: int, timeout_ms: int) -> dict[str, Any]:
        row = await self.sessions.get_row(job.session_id)
        if not row:
            raise AnalysisFailed(job.session_id, "session no longer exists")

        path = Path(row["file_path"])
        content = await asyncio.to_thread(path.read_bytes)
        events, _ = parse_events(content.decode("utf-8", errors="replace"))
        messages = prepare_analysis_content(events, max_messages)
        if not messages:
            raise AnalysisFailed(job.session_id, "no valid messages found for analysis")

        output = await self.analyzer.analyze(
            messages,
            AnalysisOptions(
                session_id=job.session_id,
                timeout_ms=timeout_ms,
                custom_instructions=job.custom_instructions,
            ),
        )
        stat = path.stat()
        return {
            "projectPath": row["project_path"],
            "filePath": row["file_path"],
            "fileModifiedTime": int(stat.st_mtime * 1000),
            "fileHash": content_fingerprint(content),
            "title": output.title,
            "summary": output.summary,
            "model": output.model,
            "analysisTimestamp": int(time.time()),
            "messagesAnalyzed": len(messages),
        }

    # ── Caller controls ─────────────────────────────────────────────

    async def cancel(self, session_id: str) -> bool:
        """Cancel a queued or running job; returns False when nothing was in flight."""
        job = self._jobs.get(session_id)
        if job is None or job.task is None or job.task.done():
            return False
        job.cancel_requested = True
        if job in self._waiters:
            self._waiters.remove(job)
        await self._ensure_started(job)
        job.task.cancel()
        await asyncio.gather(job.task, return_exceptions=True)
        return True

    async def shutdown(self) -> None:
        jobs = [j for j in self._jobs.values() if j.task is not None and not j.task.done()]
        for job in jobs:
            job.cancel_requested = True
            await self._ensure_started(job)
            job.task.cancel()
        if jobs:
            await asyncio.gather(*(j.task for j in jobs), return_exceptions=True)
        self._waiters.clear()

    @staticmethod
    async def _ensure_started(job: _Job) -> None:
        # A task cancelled before its first step never enters _run_job.
        while not job.started and not job.task.done():
            await asyncio.sleep(0)

    async def has_valid_cache(self, session_id: str) -> bool:
        row = await self.sessions.get_file_state(session_id)
        if not row:
            return False
        entry = await self.cache.get(session_id)
        settings = await self.settings.get()
        return is_valid(entry, row["content_hash"], settings.cacheDurationDays)

    async def analyze_session(
        self,
        session_id: str,
        *,
        force: bool = False,
        custom_instructions: str = "",
    ) -> AnalysisOutcome | Denied:
        """Serve a valid cached analysis, otherwise admit and await a new run.

        Cache hits never consume quota; ``force`` always goes through admission.
        """
        if not force:
            settings = await self.settings.get()
            summary = await self.sessions.get_session(session_id, settings.cacheDurationDays)
            if summary is not None and summary.analysis is not None:
                return AnalysisOutcome(
                    session_id, "", "cached",
                    title=summary.analysis.title, summary=summary.analysis.summary,
                )
        decision = await self.request_analysis(session_id, custom_instructions=custom_instructions)
        if isinstance(decision, Denied):
            return decision
        return await decision.job

    # ── Quota reporting ─────────────────────────────────────────────

    async def get_quota_status(self) -> QuotaStatus:
        settings = await self.settings.get()
        used = await self.runs.count_for_date(self.today())
        limit = settings.dailyAnalysisLimit
        return QuotaStatus(
            date=self.today(),
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            allowed=used < limit,
            inFlight=self._in_flight,
            queued=len(self._waiters),
            maxConcurrent=settings.maxConcurrentAnalyses,
        )

    async def get_quota_history(self, days: int = 7) -> list[QuotaDay]:
        rows = await self.runs.history(days)
        return [
            QuotaDay(
                date=r["local_date"],
                performed=int(r["performed"] or 0),
                succeeded=int(r["succeeded"] or 0),
                failed=int(r["failed"] or 0),
                timeouts=int(r["timeouts"] or 0),
                cancelled=int(r["cancelled"] or 0),
            )
            for r in rows
        ]

    # ── Bulk ────────────────────────────────────────────────────────

    async def run_bulk(
        self,
        session_ids: list[str],
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        skip_cached: bool = True,
    ) -> dict[str, Any]:
        """Analyze sessions one at a time through the normal admission path.

        Failures are collected per item; a quota denial skips the rest.
        """
        total = len(session_ids)
        result: dict[str, Any] = {
            "total": total,
            "completed": 0,
            "failed": 0,
            "skipped": 0,
            "cancelled": 0,
            "errors": [],
        }

        async def emit(index: int, session_id: str, status: str, **extra: Any) -> None:
            if on_progress is None:
                return
            payload = {"current": index, "total": total, "sessionId": session_id, "status": status, **extra}
            maybe = on_progress(payload)
            if inspect.isawaitable(maybe):
                await maybe

        def record_error(session_id: str, message: str) -> None:
            result["errors"].append({"sessionId": session_id, "error": message, "timestamp": _utc_now()})

        for index, session_id in enumerate(session_ids, start=1):
            if cancel_event is not None and cancel_event.is_set():
                result["cancelled"] += total - index + 1
                break

            if skip_cached and await self.has_valid_cache(session_id):
                result["skipped"] += 1
                await emit(index, session_id, "skipped", reason="cached")
                continue

            await emit(index, session_id, "analyzing")
            decision = await self.request_analysis(session_id)
            if isinstance(decision, Denied):
                if decision.reason == QUOTA_EXCEEDED:
                    remaining = total - index + 1
                    result["skipped"] += remaining
                    record_error(session_id, decision.message)
                    await emit(index, session_id, "skipped", reason=QUOTA_EXCEEDED)
                    logger.warning(f"Bulk analysis stopped by quota; {remaining} session(s) skipped")
                    break
                if decision.reason == IN_PROGRESS:
                    result["skipped"] += 1
                    await emit(index, session_id, "skipped", reason=IN_PROGRESS)
                    continue
                result["failed"] += 1
                record_error(session_id, decision.message)
                await emit(index, session_id, "failed", error=decision.message)
                continue

            outcome = await self._await_job(decision, cancel_event)
            if outcome.status == SUCCEEDED:
                result["completed"] += 1
                await emit(index, session_id, "success")
            elif outcome.status == CANCELLED:
                result["cancelled"] += total - index + 1
                await emit(index, session_id, "failed", error="cancelled")
                break
            else:
                result["failed"] += 1
                record_error(session_id, outcome.error)
                await emit(index, session_id, "failed", error=outcome.error)

        logger.info(
            f"Bulk analysis finished: {result['completed']} completed, {result['failed']} failed, "
            f"{result['skipped']} skipped, {result['cancelled']} cancelled of {total}"
        )
        return result

    async def _await_job(self, decision: Granted | Queued, cancel_event: asyncio.Event | None) -> AnalysisOutcome:
        if cancel_event is None:
            return await decision.job
        cancel_wait = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({decision.job, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            if decision.job not in done:
                await self.cancel(decision.session_id)
            return await decision.job
        finally:
            cancel_wait.cancel()
