"""Analysis requests, bulk runs and quota reporting."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel, Field

from sessiondex.admission import IN_PROGRESS, NOT_FOUND, QUOTA_EXCEEDED, Denied
from sessiondex.models import QuotaDay, QuotaStatus
from sessiondex.paths import validate_session_id

logger = logging.getLogger("sessiondex.analysis")

analysis_router = APIRouter(prefix="/api/analysis", tags=["analysis"])

_DENIAL_STATUS = {QUOTA_EXCEEDED: 429, IN_PROGRESS: 409, NOT_FOUND: 404}


class AnalyzeRequest(BaseModel):
    force: bool = False
    wait: bool = True
    customInstructions: str = ""


class BulkAnalyzeRequest(BaseModel):
    sessionIds: list[str] = Field(..., min_length=1)
    skipCached: bool = True
    trigger: str = "api"


def _get_admission(request: Request):
    admission = getattr(request.app.state, "admission", None)
    if not admission:
        raise HTTPException(status_code=503, detail="Admission controller not initialized")
    return admission


def _bulk_registry(request: Request) -> dict[str, asyncio.Event]:
    registry = getattr(request.app.state, "bulk_cancel_events", None)
    if registry is None:
        registry = {}
        request.app.state.bulk_cancel_events = registry
    return registry


def _checked_session_id(session_id: str) -> str:
    if not validate_session_id(session_id):
        raise HTTPException(status_code=400, detail=f"Invalid session id: {session_id}")
    return session_id.lower()


def _raise_denied(decision: Denied) -> None:
    raise HTTPException(status_code=_DENIAL_STATUS.get(decision.reason, 400), detail=decision.message)


async def _run_bulk_operation(
    admission,
    sync_engine,
    operation_id: str,
    session_ids: list[str],
    skip_cached: bool,
    cancel_event: asyncio.Event,
    registry: dict[str, asyncio.Event],
) -> dict[str, Any]:
    async def on_progress(event: dict[str, Any]) -> None:
        if sync_engine is None:
            return
        await sync_engine.update_operation(
            operation_id,
            phase="analyzing",
            message=f"{event['status']} {event['sessionId']}",
            progress={"current": event["current"], "total": event["total"]},
        )

    try:
        result = await admission.run_bulk(
            session_ids, on_progress=on_progress, cancel_event=cancel_event, skip_cached=skip_cached
        )
    except Exception as exc:
        logger.error(f"Bulk analysis {operation_id} failed: {exc}")
        if sync_engine is not None:
            await sync_engine.finish_operation(operation_id, status="failed", error=str(exc))
        raise
    finally:
        registry.pop(operation_id, None)

    if sync_engine is not None:
        status = "cancelled" if cancel_event.is_set() else "completed"
        await sync_engine.finish_operation(operation_id, status=status, stats=result)
    return result


@analysis_router.get("/quota", response_model=QuotaStatus)
async def get_quota(request: Request):
    return await _get_admission(request).get_quota_status()


@analysis_router.get("/quota/history", response_model=list[QuotaDay])
async def get_quota_history(request: Request, days: int = Query(7, ge=1, le=90)):
    return await _get_admission(request).get_quota_history(days)


@analysis_router.post("/bulk")
async def start_bulk_analysis(request: Request, background_tasks: BackgroundTasks, body: BulkAnalyzeRequest):
    """Analyze many sessions one at a time in the background."""
    admission = _get_admission(request)
    session_ids = [_checked_session_id(s) for s in body.sessionIds]
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if sync_engine is not None:
        operation_id = await sync_engine.start_operation(
            "bulk_analysis", "sessions", trigger=body.trigger, metadata={"sessionCount": len(session_ids)}
        )
    else:
        operation_id = f"BULK-{len(_bulk_registry(request)) + 1}"

    cancel_event = asyncio.Event()
    registry = _bulk_registry(request)
    registry[operation_id] = cancel_event
    background_tasks.add_task(
        _run_bulk_operation,
        admission,
        sync_engine,
        operation_id,
        session_ids,
        body.skipCached,
        cancel_event,
        registry,
    )
    return {
        "status": "ok",
        "mode": "background",
        "message": f"Bulk analysis of {len(session_ids)} session(s) started",
        "operationId": operation_id,
    }


@analysis_router.post("/bulk/{operation_id}/cancel")
async def cancel_bulk_analysis(request: Request, operation_id: str):
    event = _bulk_registry(request).get(operation_id)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Bulk operation {operation_id} not found")
    event.set()
    logger.info(f"Cancellation requested for bulk analysis {operation_id}")
    return {"status": "ok", "operationId": operation_id, "cancelled": True}


@analysis_router.post("/{session_id}")
async def analyze_session(request: Request, session_id: str, body: AnalyzeRequest | None = None):
    """Serve a valid cached analysis or admit a new run.

    With ``wait`` the response carries the outcome; otherwise the admission
    decision (granted or queued) is returned immediately.
    """
    body = body or AnalyzeRequest()
    admission = _get_admission(request)
    session_id = _checked_session_id(session_id)

    if body.wait:
        result = await admission.analyze_session(
            session_id, force=body.force, custom_instructions=body.customInstructions
        )
        if isinstance(result, Denied):
            _raise_denied(result)
        return result.as_dict()

    if not body.force and await admission.has_valid_cache(session_id):
        result = await admission.analyze_session(session_id)
        return result.as_dict()

    decision = await admission.request_analysis(session_id, custom_instructions=body.customInstructions)
    if isinstance(decision, Denied):
        _raise_denied(decision)
    payload = {"sessionId": session_id, "runId": decision.run_id, "status": decision.status}
    if decision.status == "queued":
        payload["position"] = decision.position
    return payload


@analysis_router.post("/{session_id}/cancel")
async def cancel_analysis(request: Request, session_id: str):
    cancelled = await _get_admission(request).cancel(_checked_session_id(session_id))
    if not cancelled:
        raise HTTPException(status_code=404, detail=f"No analysis in progress for {session_id}")
    return {"status": "ok", "sessionId": session_id, "cancelled": True}
