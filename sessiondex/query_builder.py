"""Parameterized read statements over sessions, analysis cache and the FTS index.

Filters are a closed set of typed variants. Column and ORDER BY identifiers
come from fixed tables in this module; every caller-supplied value is bound
as a parameter. Building is pure: the same ``SessionQuery`` always yields the
same statement and parameters.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Union

from sessiondex.errors import InvalidQuery
from sessiondex.search import sanitize_fts_query

MAX_LIMIT = 500
MAX_CHAIN_IDS = 900  # SQLite bound-parameter ceiling minus headroom


@dataclass(frozen=True)
class ProjectFilter:
    project_path: str


@dataclass(frozen=True)
class DateRangeFilter:
    """Bounds on last_message_time. A plain ``date`` for ``date_to`` includes that whole day."""
    date_from: date | datetime | None = None
    date_to: date | datetime | None = None


@dataclass(frozen=True)
class SearchTermFilter:
    term: str


@dataclass(frozen=True)
class ChainFilter:
    session_ids: tuple[str, ...]


@dataclass(frozen=True)
class AnalyzedFilter:
    """Sessions whose cached analysis still matches the transcript.

    ``fresh_since`` is the oldest acceptable analysis timestamp (unix
    seconds); None applies no age limit.
    """
    analyzed: bool
    fresh_since: int | None = None


SessionFilter = Union[ProjectFilter, DateRangeFilter, SearchTermFilter, ChainFilter, AnalyzedFilter]

SORT_COLUMNS: dict[str, str] = {
    "last_message_time": "m.last_message_time",
    "first_message_time": "m.first_message_time",
    "message_count": "m.message_count",
    "file_modified_time": "m.file_modified_time",
    "duration": "m.session_duration_seconds",
    "project_path": "m.project_path",
}
RELEVANCE = "relevance"
DEFAULT_SORT = "last_message_time"

_BASE_FIELDS = (
    "m.session_id",
    "m.project_name",
    "m.project_path",
    "m.file_path",
    "m.file_name",
    "m.file_size",
    "m.file_modified_time",
    "m.content_hash",
    "m.message_count",
    "m.first_message_time",
    "m.last_message_time",
    "m.session_duration_seconds",
    "m.is_valid",
    "a.file_hash AS analysis_fingerprint",
    "a.analysis_timestamp AS analysis_timestamp",
)
_ANALYSIS_FIELDS = (
    "a.title AS analysis_title",
    "a.summary AS analysis_summary",
    "a.analysis_model AS analysis_model",
    "a.messages_analyzed AS analysis_messages",
    "a.analysis_duration_ms AS analysis_duration_ms",
)
_ANALYSIS_JOIN = "LEFT JOIN session_analysis_cache a ON a.session_id = m.session_id"
_CONTINUATION_FIELDS = (
    "sc.parent_session_id AS parent_session_id",
    "sc.continuation_order AS continuation_order",
    "sc.is_active_continuation AS is_active_continuation",
    "(SELECT COUNT(*) FROM session_continuations cc WHERE cc.parent_session_id = m.session_id) AS continuation_count",
)
_CONTINUATION_JOIN = "LEFT JOIN session_continuations sc ON sc.child_session_id = m.session_id"


@dataclass(frozen=True)
class SessionQuery:
    filters: tuple[SessionFilter, ...] = ()
    include_analysis: bool = False
    include_continuation_count: bool = False
    include_empty: bool = False
    sort: str | None = None
    descending: bool = True
    limit: int = 50
    offset: int = 0

    def search_filter(self) -> SearchTermFilter | None:
        for item in self.filters:
            if isinstance(item, SearchTermFilter):
                return item
        return None

    def effective_sort(self) -> str:
        if self.sort:
            return self.sort
        return RELEVANCE if self.search_filter() else DEFAULT_SORT


@dataclass
class _Parts:
    where: list[str] = field(default_factory=list)
    params: list[Any] = field(default_factory=list)


def _iso_bound(value: date | datetime, *, upper: bool) -> str:
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        dt = dt.astimezone(timezone.utc)
    else:
        dt = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        if upper:
            dt = dt + timedelta(days=1)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def validate(query: SessionQuery) -> None:
    """Reject malformed queries before any statement is built."""
    seen: set[type] = set()
    for item in query.filters:
        kind = type(item)
        if kind not in (ProjectFilter, DateRangeFilter, SearchTermFilter, ChainFilter, AnalyzedFilter):
            raise InvalidQuery(f"Unsupported filter: {kind.__name__}")
        if kind in seen:
            raise InvalidQuery(f"Filter {kind.__name__} given more than once")
        seen.add(kind)

        if isinstance(item, ProjectFilter) and not item.project_path.strip():
            raise InvalidQuery("Project filter requires a project path")
        if isinstance(item, DateRangeFilter):
            if item.date_from is None and item.date_to is None:
                raise InvalidQuery("Date range filter requires at least one bound")
            if item.date_from is not None and item.date_to is not None:
                if _iso_bound(item.date_from, upper=False) > _iso_bound(item.date_to, upper=True):
                    raise InvalidQuery("Date range starts after it ends")
        if isinstance(item, ChainFilter):
            if not item.session_ids:
                raise InvalidQuery("Chain filter requires at least one session id")
            if len(item.session_ids) > MAX_CHAIN_IDS:
                raise InvalidQuery(f"Chain filter accepts at most {MAX_CHAIN_IDS} session ids")
        if isinstance(item, SearchTermFilter) and not isinstance(item.term, str):
            raise InvalidQuery("Search term must be text")

    sort = query.effective_sort()
    if sort != RELEVANCE and sort not in SORT_COLUMNS:
        raise InvalidQuery(f"Unknown sort key: {sort}")
    if sort == RELEVANCE and query.search_filter() is None:
        raise InvalidQuery("Relevance sort requires a search term")
    if query.limit <= 0 or query.limit > MAX_LIMIT:
        raise InvalidQuery(f"Limit must be between 1 and {MAX_LIMIT}")
    if query.offset < 0:
        raise InvalidQuery("Offset must not be negative")


def _where_parts(query: SessionQuery) -> _Parts:
    parts = _Parts()
    if not query.include_empty:
        parts.where.append("m.is_valid = 1")
        parts.where.append("m.is_empty = 0")

    for item in query.filters:
        if isinstance(item, SearchTermFilter):
            parts.where.append("session_fts MATCH ?")
            parts.params.append(sanitize_fts_query(item.term))
        elif isinstance(item, ProjectFilter):
            parts.where.append("m.project_path = ?")
            parts.params.append(item.project_path)
        elif isinstance(item, DateRangeFilter):
            if item.date_from is not None:
                parts.where.append("m.last_message_time >= ?")
                parts.params.append(_iso_bound(item.date_from, upper=False))
            if item.date_to is not None:
                # A date-only upper bound becomes the start of the next day.
                op = "<=" if isinstance(item.date_to, datetime) else "<"
                parts.where.append(f"m.last_message_time {op} ?")
                parts.params.append(_iso_bound(item.date_to, upper=True))
        elif isinstance(item, ChainFilter):
            placeholders = ", ".join("?" for _ in item.session_ids)
            parts.where.append(f"m.session_id IN ({placeholders})")
            parts.params.extend(item.session_ids)
        elif isinstance(item, AnalyzedFilter):
            clause = (
                "EXISTS (SELECT 1 FROM session_analysis_cache v"
                " WHERE v.session_id = m.session_id AND v.file_hash <> ''"
                " AND v.file_hash = m.content_hash AND v.analysis_timestamp > 0"
            )
            if item.fresh_since is not None:
                clause += " AND v.analysis_timestamp >= ?"
                parts.params.append(int(item.fresh_since))
            clause += ")"
            parts.where.append(clause if item.analyzed else f"NOT {clause}")
    return parts


def _from_clause(query: SessionQuery) -> str:
    if query.search_filter() is not None:
        return "FROM session_fts JOIN sessions m ON m.session_id = session_fts.session_id"
    return "FROM sessions m"


def _order_clause(query: SessionQuery) -> str:
    sort = query.effective_sort()
    if sort == RELEVANCE:
        return "ORDER BY session_fts.rank ASC, m.last_message_time DESC, m.session_id ASC"
    direction = "DESC" if query.descending else "ASC"
    column = SORT_COLUMNS[sort]
    return f"ORDER BY {column} {direction}, m.session_id ASC"


def build_session_query(query: SessionQuery) -> tuple[str, tuple[Any, ...]]:
    validate(query)

    fields = list(_BASE_FIELDS)
    joins = [_ANALYSIS_JOIN]
    if query.search_filter() is not None:
        fields.append("session_fts.rank AS rank")
    if query.include_analysis:
        fields.extend(_ANALYSIS_FIELDS)
    if query.include_continuation_count:
        fields.extend(_CONTINUATION_FIELDS)
        joins.append(_CONTINUATION_JOIN)

    parts = _where_parts(query)
    sql_lines = [f"SELECT {', '.join(fields)}", _from_clause(query), *joins]
    if parts.where:
        sql_lines.append("WHERE " + " AND ".join(parts.where))
    sql_lines.append(_order_clause(query))
    sql_lines.append("LIMIT ? OFFSET ?")

    params = (*parts.params, query.limit, query.offset)
    return "\n".join(sql_lines), params


def build_count_query(query: SessionQuery) -> tuple[str, tuple[Any, ...]]:
    validate(query)
    parts = _where_parts(query)
    sql_lines = ["SELECT COUNT(*)", _from_clause(query)]
    if parts.where:
        sql_lines.append("WHERE " + " AND ".join(parts.where))
    return "\n".join(sql_lines), tuple(parts.params)
