"""Indexer settings API."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from sessiondex.db.file_watcher import file_watcher
from sessiondex.models import IndexerSettings

_DISCOVERY_KEYS = ("additionalDiscoveryPaths", "excludePaths")

settings_router = APIRouter(prefix="/api/settings", tags=["settings"])


def _get_settings_service(request: Request):
    service = getattr(request.app.state, "settings_service", None)
    if not service:
        raise HTTPException(status_code=503, detail="Settings not initialized")
    return service


@settings_router.get("", response_model=IndexerSettings)
async def get_settings(request: Request):
    return await _get_settings_service(request).get()


@settings_router.patch("", response_model=IndexerSettings)
async def update_settings(request: Request, patch: dict[str, Any]):
    """Apply a partial update. Invalid values are rejected and nothing is stored."""
    service = _get_settings_service(request)
    try:
        updated = await service.update(patch)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    sync_engine = getattr(request.app.state, "sync_engine", None)
    if sync_engine is not None and any(key in patch for key in _DISCOVERY_KEYS):
        await file_watcher.restart(sync_engine, await sync_engine.discovery_roots())
    return updated
