"""Read API for indexed sessions, search and continuation chains."""
from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime

from fastapi import APIRouter, HTTPException, Query, Request

from sessiondex.cache_validity import fresh_since
from sessiondex.continuation import ContinuationLinker
from sessiondex.db.repositories.sessions import SqliteSessionRepository
from sessiondex.errors import InvalidQuery, StoreUnavailable
from sessiondex.models import ContinuationChain, PaginatedResponse, ProjectSummary, SessionSummary
from sessiondex.paths import validate_session_id
from sessiondex.query_builder import (
    AnalyzedFilter,
    DateRangeFilter,
    ProjectFilter,
    SearchTermFilter,
    SessionQuery,
)

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _get_db(request: Request):
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return db


async def _cache_days(request: Request) -> int:
    settings_service = getattr(request.app.state, "settings_service", None)
    if settings_service is None:
        raise HTTPException(status_code=503, detail="Settings not initialized")
    return (await settings_service.get()).cacheDurationDays


def _parse_bound(raw: str | None, name: str) -> date | datetime | None:
    if not raw:
        return None
    try:
        if len(raw) == 10:
            return date.fromisoformat(raw)
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {raw}")


def _build_query(
    *,
    project: str | None,
    date_from: str | None,
    date_to: str | None,
    analyzed: bool | None,
    q: str | None,
    sort_by: str | None,
    sort_order: str,
    include_empty: bool,
    offset: int,
    limit: int,
) -> SessionQuery:
    filters = []
    if project:
        filters.append(ProjectFilter(project))
    lower = _parse_bound(date_from, "date_from")
    upper = _parse_bound(date_to, "date_to")
    if lower is not None or upper is not None:
        filters.append(DateRangeFilter(lower, upper))
    if analyzed is not None:
        filters.append(AnalyzedFilter(analyzed))
    if q is not None:
        filters.append(SearchTermFilter(q))
    if sort_order not in ("asc", "desc"):
        raise HTTPException(status_code=400, detail=f"Invalid sort_order: {sort_order}")
    return SessionQuery(
        filters=tuple(filters),
        include_analysis=True,
        include_continuation_count=True,
        include_empty=include_empty,
        sort=sort_by or None,
        descending=sort_order == "desc",
        limit=limit,
        offset=offset,
    )


def _with_cache_cutoff(query: SessionQuery, cache_days: int) -> SessionQuery:
    cutoff = fresh_since(cache_days)
    filters = tuple(
        replace(item, fresh_since=cutoff) if isinstance(item, AnalyzedFilter) else item
        for item in query.filters
    )
    return replace(query, filters=filters)


async def _run_query(request: Request, query: SessionQuery) -> PaginatedResponse[SessionSummary]:
    repo = SqliteSessionRepository(_get_db(request))
    cache_days = await _cache_days(request)
    query = _with_cache_cutoff(query, cache_days)
    try:
        items = await repo.list_sessions(query, cache_days)
        total = await repo.count_sessions(query)
    except InvalidQuery as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return PaginatedResponse(items=items, total=total, offset=query.offset, limit=query.limit)


@sessions_router.get("", response_model=PaginatedResponse[SessionSummary])
async def list_sessions(
    request: Request,
    offset: int = 0,
    limit: int = 50,
    sort_by: str | None = Query(None, description="Sort key (last_message_time, message_count, ...)"),
    sort_order: str = "desc",
    project: str | None = Query(None, description="Exact project path"),
    date_from: str | None = Query(None, description="ISO date or timestamp lower bound on last activity"),
    date_to: str | None = Query(None, description="ISO date or timestamp upper bound on last activity"),
    analyzed: bool | None = Query(None, description="Only analyzed / unanalyzed sessions"),
    include_empty: bool = Query(False, description="Include sessions without messages"),
):
    """Return paginated sessions from the catalog."""
    query = _build_query(
        project=project, date_from=date_from, date_to=date_to, analyzed=analyzed, q=None,
        sort_by=sort_by, sort_order=sort_order, include_empty=include_empty,
        offset=offset, limit=limit,
    )
    return await _run_query(request, query)


@sessions_router.get("/search", response_model=PaginatedResponse[SessionSummary])
async def search_sessions(
    request: Request,
    q: str = Query(..., description="Free-text query over titles, summaries and project paths"),
    offset: int = 0,
    limit: int = 50,
    sort_by: str | None = None,
    sort_order: str = "desc",
    project: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
):
    """Full-text search ranked by relevance unless another sort is given."""
    query = _build_query(
        project=project, date_from=date_from, date_to=date_to, analyzed=None, q=q,
        sort_by=sort_by, sort_order=sort_order, include_empty=False,
        offset=offset, limit=limit,
    )
    return await _run_query(request, query)


@sessions_router.get("/projects", response_model=list[ProjectSummary])
async def list_projects(request: Request):
    repo = SqliteSessionRepository(_get_db(request))
    return await repo.list_projects()


@sessions_router.get("/{session_id}", response_model=SessionSummary)
async def get_session(request: Request, session_id: str):
    if not validate_session_id(session_id):
        raise HTTPException(status_code=400, detail=f"Invalid session id: {session_id}")
    repo = SqliteSessionRepository(_get_db(request))
    session = await repo.get_session(session_id.lower(), await _cache_days(request))
    if not session:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@sessions_router.get("/{session_id}/chain", response_model=ContinuationChain)
async def get_session_chain(request: Request, session_id: str):
    """Whole continuation chain the session belongs to (single node when unlinked)."""
    if not validate_session_id(session_id):
        raise HTTPException(status_code=400, detail=f"Invalid session id: {session_id}")
    linker = getattr(request.app.state, "linker", None) or ContinuationLinker(_get_db(request))
    chain = await linker.get_chain(session_id.lower())
    if chain is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return chain
