"""Discovery and incremental sync engine.

Walks the discovery roots (``<root>/<project dir>/<uuid>.jsonl``), keeps the
session catalog current and links continuation chains. Work is reported as
observable in-memory operations.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from sessiondex import config
from sessiondex.continuation import DEFERRED, LINKED, REJECTED, ContinuationLinker, detect_continuation
from sessiondex.db.repositories.sessions import (
    UPSERT_INSERTED,
    UPSERT_UNCHANGED,
    UPSERT_UPDATED,
    SqliteSessionRepository,
)
from sessiondex.errors import SessionDexError
from sessiondex.operations import OperationLog
from sessiondex.parsers.sessions import parse_session_file
from sessiondex.paths import (
    get_discovery_roots,
    is_temp_project_dir,
    is_within,
    resolve_symlinks,
    session_id_from_filename,
    should_exclude,
)
from sessiondex.settings import SettingsService

logger = logging.getLogger("sessiondex.sync")

SKIPPED = "skipped"

_ITEM_ERRORS = (OSError, UnicodeError, ValueError, aiosqlite.Error, SessionDexError)


def _empty_stats() -> dict[str, Any]:
    return {
        "sessions_found": 0,
        "sessions_inserted": 0,
        "sessions_updated": 0,
        "sessions_skipped": 0,
        "sessions_missing": 0,
        "continuations_linked": 0,
        "continuations_deferred": 0,
        "continuations_rejected": 0,
        "auto_analysis_requested": 0,
        "errors": [],
        "duration_ms": 0,
        "operation_id": "",
    }


def list_session_files(roots: list[Path], exclude_paths: list[str]) -> list[Path]:
    """Every ``<uuid>.jsonl`` two levels below the roots, newest first."""
    found: list[Path] = []
    for root in roots:
        if not root.is_dir():
            continue
        for project_dir in root.iterdir():
            if not project_dir.is_dir():
                continue
            if is_temp_project_dir(project_dir.name) or should_exclude(project_dir, exclude_paths):
                continue
            for path in project_dir.glob("*.jsonl"):
                if session_id_from_filename(path) and path.is_file():
                    found.append(path)

    def _mtime(p: Path) -> float:
        try:
            return p.stat().st_mtime
        except OSError:
            return 0.0

    return sorted(found, key=_mtime, reverse=True)


class SyncEngine:
    """Incremental mtime/size based file → catalog synchronization."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        settings: SettingsService,
        linker: ContinuationLinker | None = None,
        admission: Any = None,
        primary_root: str = config.CLAUDE_PROJECTS_DIR,
    ):
        self.db = db
        self.settings = settings
        self.session_repo = SqliteSessionRepository(db)
        self.linker = linker or ContinuationLinker(db)
        self.admission = admission
        self.primary_root = primary_root
        self._sync_lock = asyncio.Lock()
        self.operations = OperationLog(max_history=40)

    async def discovery_roots(self) -> list[Path]:
        settings = await self.settings.get()
        return get_discovery_roots(
            self.primary_root,
            settings.additionalDiscoveryPaths,
            settings.excludePaths,
        )

    async def is_watched_path(self, path: Path) -> bool:
        """True when ``path`` lies under a discovery root and is not excluded."""
        settings = await self.settings.get()
        if should_exclude(path, settings.excludePaths):
            return False
        target = Path(path).resolve(strict=False)
        return any(is_within(target, resolve_symlinks(root)) for root in await self.discovery_roots())

    # ── Operations ──────────────────────────────────────────────────

    async def start_operation(
        self,
        kind: str,
        scope: str = "all",
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create an observable operation and return its ID."""
        return await self.operations.start(kind, scope, trigger, metadata)

    async def update_operation(self, operation_id: str | None, **changes: Any) -> None:
        await self.operations.update(operation_id, **changes)

    async def finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        await self.operations.finish(operation_id, status=status, stats=stats, error=error)

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        return await self.operations.recent(limit)

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        return await self.operations.get(operation_id)

    async def get_observability_snapshot(self) -> dict[str, Any]:
        return await self.operations.snapshot()

    # ── Full discovery ──────────────────────────────────────────────

    async def sync_all(
        self,
        force: bool = False,
        operation_id: str | None = None,
        trigger: str = "api",
    ) -> dict[str, Any]:
        """Discovery pass over every root.

        Per-file failures are logged and collected in ``errors``; they never
        abort the pass.
        """
        stats = _empty_stats()
        if not operation_id:
            operation_id = await self.operations.start("full_sync", "all", trigger, {"force": bool(force)})
        stats["operation_id"] = operation_id

        t0 = time.monotonic()
        try:
            async with self._sync_lock:
                settings = await self.settings.get()
                roots = await self.discovery_roots()
                await self.update_operation(
                    operation_id,
                    phase="discovery",
                    message=f"Scanning {len(roots)} discovery root(s)",
                )
                files = await asyncio.to_thread(list_session_files, roots, list(settings.excludePaths))
                stats["sessions_found"] = len(files)

                inserted: list[str] = []
                for index, path in enumerate(files, start=1):
                    session_id = await self._sync_file(path, force, stats)
                    if session_id:
                        inserted.append(session_id)
                    if index == len(files) or index % 25 == 0:
                        await self.update_operation(
                            operation_id,
                            phase="sessions",
                            message=f"Processed {index}/{len(files)} session file(s)",
                            progress={"processedFiles": index, "totalFiles": len(files)},
                            counters={
                                "sessionsInserted": stats["sessions_inserted"],
                                "sessionsUpdated": stats["sessions_updated"],
                                "sessionsSkipped": stats["sessions_skipped"],
                                "errors": len(stats["errors"]),
                            },
                        )

                await self.update_operation(operation_id, phase="continuations", message="Resolving deferred links")
                pending = await self.linker.resolve_pending()
                stats["continuations_linked"] += pending[LINKED]
                stats["continuations_rejected"] += pending[REJECTED]

                await self._auto_analyze(inserted, stats)

            stats["duration_ms"] = int((time.monotonic() - t0) * 1000)
            await self.update_operation(operation_id, phase="completed", message="Sync completed", stats=stats)
            await self.finish_operation(operation_id, status="completed", stats=stats)
            logger.info(
                f"Sync complete: {stats['sessions_found']} found, {stats['sessions_inserted']} new, "
                f"{stats['sessions_updated']} updated, {stats['sessions_skipped']} unchanged, "
                f"{len(stats['errors'])} error(s) in {stats['duration_ms']}ms"
            )
            return stats
        except Exception as exc:
            await self.finish_operation(operation_id, status="failed", stats=stats, error=str(exc))
            raise

    # ── Targeted sync ───────────────────────────────────────────────

    async def sync_changed_files(
        self,
        changed_files: list[tuple[str, Path]],
        operation_id: str | None = None,
        trigger: str = "watcher",
    ) -> dict[str, Any]:
        """Sync only specific changed files. Used by the file watcher and sync-paths.

        changed_files: list of (change_type, path) where change_type is 'modified'|'added'|'deleted'
        """
        stats = _empty_stats()
        if not operation_id and trigger != "watcher":
            operation_id = await self.operations.start(
                "sync_changed_files", "paths", trigger, {"changedCount": len(changed_files)}
            )
        should_finalize_operation = bool(operation_id)
        stats["operation_id"] = operation_id or ""

        t0 = time.monotonic()
        try:
            async with self._sync_lock:
                inserted: list[str] = []
                for index, (change_type, path) in enumerate(changed_files, start=1):
                    if path.suffix != ".jsonl" or not session_id_from_filename(path):
                        continue
                    stats["sessions_found"] += 1
                    if change_type == "deleted" or not path.exists():
                        if await self._mark_missing(path, stats):
                            stats["sessions_missing"] += 1
                    else:
                        session_id = await self._sync_file(path, False, stats)
                        if session_id:
                            inserted.append(session_id)

                    if operation_id and (index == len(changed_files) or index % 10 == 0):
                        await self.update_operation(
                            operation_id,
                            phase="changed-files",
                            message=f"Processed {index}/{len(changed_files)} changed file(s)",
                            progress={"processedChangedFiles": index, "totalChangedFiles": len(changed_files)},
                        )

                await self._auto_analyze(inserted, stats)

            stats["duration_ms"] = int((time.monotonic() - t0) * 1000)
            if should_finalize_operation:
                await self.finish_operation(operation_id, status="completed", stats=stats)
            return stats
        except Exception as exc:
            if should_finalize_operation:
                await self.finish_operation(operation_id, status="failed", stats=stats, error=str(exc))
            raise

    # ── Per-file pipeline ───────────────────────────────────────────

    async def _sync_file(self, path: Path, force: bool, stats: dict[str, Any]) -> Optional[str]:
        """Run one file through the pipeline; returns the session id when newly inserted."""
        try:
            result, session_id = await self._sync_single_session(path, force, stats)
        except _ITEM_ERRORS as e:
            logger.error(f"Failed to sync {path}: {e}")
            stats["errors"].append({"filePath": str(path), "error": str(e)})
            return None

        if result == UPSERT_INSERTED:
            stats["sessions_inserted"] += 1
            return session_id
        if result == UPSERT_UPDATED:
            stats["sessions_updated"] += 1
        else:
            stats["sessions_skipped"] += 1
        return None

    async def _sync_single_session(
        self, path: Path, force: bool, stats: dict[str, Any]
    ) -> tuple[str, Optional[str]]:
        session_id = session_id_from_filename(path)
        if not session_id:
            return SKIPPED, None

        stat = path.stat()
        if not force:
            state = await self.session_repo.get_file_state(session_id)
            if (
                state
                and int(state["file_modified_time"]) == int(stat.st_mtime * 1000)
                and int(state["file_size"]) == stat.st_size
            ):
                return UPSERT_UNCHANGED, session_id

        content = await asyncio.to_thread(path.read_bytes)
        parsed = parse_session_file(path, content)
        if parsed is None:
            return SKIPPED, None

        result = await self.session_repo.upsert_session(parsed.record.model_dump())
        if result == UPSERT_UNCHANGED and not force:
            return result, session_id

        ref = detect_continuation(session_id, parsed.events)
        if ref is not None:
            outcome = await self.linker.link(session_id, ref)
            if outcome == LINKED:
                stats["continuations_linked"] += 1
            elif outcome == DEFERRED:
                stats["continuations_deferred"] += 1
            elif outcome == REJECTED:
                stats["continuations_rejected"] += 1

        if result == UPSERT_INSERTED:
            # A newly discovered session may be the parent some child is waiting for.
            resolved = await self.linker.resolve_pending(parent_session_id=session_id)
            stats["continuations_linked"] += resolved[LINKED]
            stats["continuations_rejected"] += resolved[REJECTED]
        return result, session_id

    async def _mark_missing(self, path: Path, stats: dict[str, Any]) -> bool:
        try:
            return await self.session_repo.mark_missing(str(path)) is not None
        except _ITEM_ERRORS as e:
            logger.error(f"Failed to mark {path} missing: {e}")
            stats["errors"].append({"filePath": str(path), "error": str(e)})
            return False

    async def _auto_analyze(self, session_ids: list[str], stats: dict[str, Any]) -> None:
        if not session_ids or self.admission is None:
            return
        settings = await self.settings.get()
        if not settings.autoAnalyzeNewSessions:
            return
        for session_id in session_ids:
            decision = await self.admission.request_analysis(session_id)
            if getattr(decision, "status", "") == "denied":
                if getattr(decision, "reason", "") == "quota_exceeded":
                    logger.info("Auto-analysis stopped: daily quota reached")
                    break
                continue
            stats["auto_analysis_requested"] += 1
