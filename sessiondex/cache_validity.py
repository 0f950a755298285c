"""Analysis cache validity rules.

A cached analysis is consumable only when the fingerprint captured at
analysis time still matches the transcript and the entry is younger than
the configured cache duration.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Mapping

from sessiondex.models import SessionAnalysis

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class CacheScope:
    """Which analysis rows a cache clear touches; both None means all of them."""
    project_path: str | None = None
    session_ids: tuple[str, ...] | None = None

    @property
    def is_global(self) -> bool:
        return self.project_path is None and self.session_ids is None


def is_cache_still_valid(timestamp: Any, cache_duration_days: int, now: float | None = None) -> bool:
    """Time check only. ``timestamp`` and ``now`` are unix seconds."""
    if timestamp is None:
        return False
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    if ts <= 0:
        return False
    if cache_duration_days <= 0:
        return True

    current = math.floor(time.time() if now is None else now)
    return current - ts <= cache_duration_days * SECONDS_PER_DAY


def fresh_since(cache_duration_days: int, now: float | None = None) -> int | None:
    """Oldest analysis timestamp still inside the cache duration; None when entries never expire."""
    if cache_duration_days <= 0:
        return None
    return math.floor(time.time() if now is None else now) - cache_duration_days * SECONDS_PER_DAY


def is_valid(
    entry: Mapping[str, Any] | None,
    current_fingerprint: str | None,
    cache_duration_days: int,
    now: float | None = None,
) -> bool:
    if not entry:
        return False
    stored = entry.get("file_hash") or ""
    if not stored or not current_fingerprint or stored != current_fingerprint:
        return False
    return is_cache_still_valid(entry.get("analysis_timestamp"), cache_duration_days, now)


def consumable_analysis(
    row: Mapping[str, Any],
    cache_duration_days: int,
    now: float | None = None,
) -> SessionAnalysis | None:
    """Analysis view of a joined session/cache row, or None when stale or absent.

    Expects ``content_hash`` (current fingerprint) and the cache columns
    aliased as ``analysis_*`` by the query builder.
    """
    entry = {
        "file_hash": row.get("analysis_fingerprint"),
        "analysis_timestamp": row.get("analysis_timestamp"),
    }
    if not is_valid(entry, row.get("content_hash"), cache_duration_days, now):
        return None
    return SessionAnalysis(
        title=row.get("analysis_title") or "",
        summary=row.get("analysis_summary") or "",
        model=row.get("analysis_model") or "",
        analyzedAt=int(row.get("analysis_timestamp") or 0),
        messagesAnalyzed=int(row.get("analysis_messages") or 0),
        durationMs=int(row.get("analysis_duration_ms") or 0),
    )
