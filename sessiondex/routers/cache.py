"""Catalog sync, operation tracking and analysis-cache maintenance API."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel, Field

from sessiondex.cache_validity import CacheScope
from sessiondex.db.file_watcher import file_watcher
from sessiondex.db.repositories.analysis_cache import SqliteAnalysisCacheRepository
from sessiondex.errors import StoreUnavailable

cache_router = APIRouter(prefix="/api/cache", tags=["cache"])


class SyncRequest(BaseModel):
    force: bool = False
    background: bool = True
    trigger: str = "api"


class ChangedPathSpec(BaseModel):
    path: str = Field(..., min_length=1)
    changeType: Literal["modified", "added", "deleted"] = "modified"


class SyncPathsRequest(BaseModel):
    paths: list[ChangedPathSpec]
    background: bool = False
    trigger: str = "api"


class ClearCacheRequest(BaseModel):
    projectPath: Optional[str] = None
    sessionIds: Optional[list[str]] = None


def _engine(request: Request):
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return engine


async def _watched_changes(engine, specs: list[ChangedPathSpec]) -> list[tuple[str, Path]]:
    changes: list[tuple[str, Path]] = []
    for spec in specs:
        candidate = Path(spec.path).expanduser()
        if not candidate.is_absolute():
            raise HTTPException(status_code=400, detail=f"Path must be absolute: {spec.path}")
        candidate = Path(os.path.normpath(candidate))
        if not await engine.is_watched_path(candidate):
            raise HTTPException(status_code=400, detail=f"Path outside discovery roots: {spec.path}")
        changes.append(("deleted" if spec.changeType == "deleted" else "modified", candidate))
    return changes


@cache_router.get("/status")
async def cache_status(request: Request):
    """Discovery roots, catalog and cache sizes, watcher state and live operations."""
    engine = _engine(request)
    roots = await engine.discovery_roots()
    return {
        "discoveryRoots": [str(r) for r in roots],
        "sessionCount": await engine.session_repo.count(),
        "analysisCacheCount": await SqliteAnalysisCacheRepository(engine.db).count(),
        "watcher": "running" if file_watcher.is_running else "stopped",
        "operations": await engine.get_observability_snapshot(),
    }


@cache_router.get("/operations")
async def list_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    items = await _engine(request).list_operations(limit=limit)
    return {"count": len(items), "items": items}


@cache_router.get("/operations/{operation_id}")
async def get_operation(request: Request, operation_id: str):
    found = await _engine(request).get_operation(operation_id)
    if found is None:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return found


@cache_router.post("/sync")
async def start_sync(request: Request, background_tasks: BackgroundTasks, body: SyncRequest):
    """Full discovery pass; runs after the response unless ``background`` is false."""
    engine = _engine(request)
    if not body.background:
        stats = await engine.sync_all(body.force, None, body.trigger)
        operation_id = stats.get("operation_id") or ""
        return {
            "mode": "foreground",
            "operationId": operation_id,
            "stats": stats,
            "operation": await engine.get_operation(operation_id) if operation_id else None,
        }

    operation_id = await engine.start_operation("full_sync", "all", body.trigger, {"force": body.force})
    background_tasks.add_task(engine.sync_all, body.force, operation_id, body.trigger)
    return {"mode": "background", "operationId": operation_id}


@cache_router.post("/sync-paths")
async def sync_paths(request: Request, background_tasks: BackgroundTasks, body: SyncPathsRequest):
    """Re-sync specific transcripts. Every path must lie under a discovery root."""
    engine = _engine(request)
    if not body.paths:
        raise HTTPException(status_code=400, detail="No paths given")
    changes = await _watched_changes(engine, body.paths)

    if not body.background:
        stats = await engine.sync_changed_files(changes, None, body.trigger)
        return {"mode": "foreground", "operationId": stats.get("operation_id") or "", "stats": stats}

    operation_id = await engine.start_operation("sync_changed_files", "paths", body.trigger, {"changedCount": len(changes)})
    background_tasks.add_task(engine.sync_changed_files, changes, operation_id, body.trigger)
    return {"mode": "background", "operationId": operation_id}


@cache_router.post("/clear")
async def clear_cache(request: Request, body: ClearCacheRequest | None = None):
    """Drop analysis rows (everything, one project or given sessions). Session metadata stays."""
    engine = _engine(request)
    body = body or ClearCacheRequest()
    scope = CacheScope(
        project_path=body.projectPath,
        session_ids=tuple(s.lower() for s in body.sessionIds) if body.sessionIds is not None else None,
    )
    try:
        removed = await SqliteAnalysisCacheRepository(engine.db).clear(scope)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"cleared": removed}
