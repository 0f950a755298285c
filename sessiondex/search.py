"""Full-text index maintenance and query sanitization.

The ``session_fts`` projection holds one row per session (identifier, file
name, project path and, when analyzed, title and summary). Every helper
here runs on the caller's connection without committing, so it joins the
transaction of the metadata write that triggered it.
"""
from __future__ import annotations

import logging
import re

import aiosqlite

logger = logging.getLogger("sessiondex.search")

MAX_QUERY_LENGTH = 200
NO_MATCH_SENTINEL = "invalid_query_that_matches_nothing"

_NEAR_RE = re.compile(r"\bNEAR\s*\(", re.IGNORECASE)
_OR_STAR_RE = re.compile(r"\bOR\s*\*", re.IGNORECASE)
_OPERATOR_WORD_RE = re.compile(r"\b(?:AND|OR|NOT|NEAR)\b", re.IGNORECASE)
_SPECIAL_CHARS_RE = re.compile(r"[\"'*():^+{}\[\]]")
_LEADING_MINUS_RE = re.compile(r"(^|\s)-+")
_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_fts_query(raw: str | None) -> str:
    """Strip FTS5 operator syntax from user input.

    Removes quoting, boolean operators, prefix/wildcard markers, grouping
    and column-filter punctuation. Input that sanitizes to nothing becomes a
    sentinel that matches no row, so an empty query never means "everything".
    """
    if not raw or not isinstance(raw, str):
        return NO_MATCH_SENTINEL

    cleaned = _NEAR_RE.sub(" ", raw)
    cleaned = _OR_STAR_RE.sub(" ", cleaned)
    cleaned = _SPECIAL_CHARS_RE.sub(" ", cleaned)
    cleaned = _OPERATOR_WORD_RE.sub(" ", cleaned)
    cleaned = _LEADING_MINUS_RE.sub(r"\1", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    cleaned = cleaned[:MAX_QUERY_LENGTH].strip()

    if not cleaned:
        logger.debug(f"Search query {raw!r} has no searchable terms")
        return NO_MATCH_SENTINEL
    return _quote_terms(cleaned)


def _quote_terms(cleaned: str) -> str:
    # Remaining punctuation such as '-' or '.' is not FTS5 bareword syntax;
    # quoting each term keeps it literal.
    return " ".join(f'"{term}"' for term in cleaned.split(" ") if term)


async def reindex(db: aiosqlite.Connection, session_id: str) -> bool:
    """Rebuild the index row of one session from the store.

    Analysis text is indexed only while its fingerprint matches the
    transcript, so a changed file stops matching on its stale title.

    Returns False (and leaves no row behind) when the session does not exist.
    """
    await db.execute("DELETE FROM session_fts WHERE session_id = ?", (session_id,))
    async with db.execute(
        """SELECT s.session_id, s.project_path, s.file_name,
                  COALESCE(a.title, '') AS title, COALESCE(a.summary, '') AS summary
           FROM sessions s
           LEFT JOIN session_analysis_cache a
             ON a.session_id = s.session_id AND a.file_hash <> '' AND a.file_hash = s.content_hash
           WHERE s.session_id = ?""",
        (session_id,),
    ) as cur:
        row = await cur.fetchone()
    if not row:
        return False
    await db.execute(
        """INSERT INTO session_fts (session_id, title, summary, project_path, file_name)
           VALUES (?, ?, ?, ?, ?)""",
        (row["session_id"], row["title"], row["summary"], row["project_path"], row["file_name"]),
    )
    return True


async def reindex_many(db: aiosqlite.Connection, session_ids: list[str]) -> int:
    count = 0
    for session_id in session_ids:
        if await reindex(db, session_id):
            count += 1
    return count


async def orphan_index_rows(db: aiosqlite.Connection) -> int:
    """Number of index rows without a session row; zero when the projection is healthy."""
    async with db.execute(
        """SELECT COUNT(*) FROM session_fts
           WHERE session_id NOT IN (SELECT session_id FROM sessions)"""
    ) as cur:
        row = await cur.fetchone()
    return int(row[0]) if row else 0
