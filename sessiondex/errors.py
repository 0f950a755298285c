"""Error taxonomy shared by the store, search, linker and admission layers."""
from __future__ import annotations


class SessionDexError(Exception):
    """Base class for all SessionDex errors."""


class StoreUnavailable(SessionDexError):
    """The metadata store is locked, busy or cannot be opened."""

    def __init__(self, operation: str, session_id: str = "", reason: str = ""):
        self.operation = operation
        self.session_id = session_id
        self.reason = reason
        target = f" for session {session_id}" if session_id else ""
        detail = f": {reason}" if reason else ""
        super().__init__(f"Store unavailable during {operation}{target}{detail}")


class QuotaExceeded(SessionDexError):
    def __init__(self, current: int, limit: int):
        self.current = current
        self.limit = limit
        super().__init__(f"Daily limit reached ({current}/{limit})")


class AnalysisFailed(SessionDexError):
    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(f"Analysis failed for session {session_id}: {message}")


class AnalysisTimeout(AnalysisFailed):
    def __init__(self, session_id: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(session_id, f"timed out after {timeout_ms}ms")


class InvalidQuery(SessionDexError):
    """Malformed filter combination, rejected before touching the store."""


class LinkRejected(SessionDexError):
    """A continuation reference that must not become an edge."""

    def __init__(self, child_session_id: str, parent_session_id: str, reason: str):
        self.child_session_id = child_session_id
        self.parent_session_id = parent_session_id
        self.reason = reason
        super().__init__(
            f"Continuation {parent_session_id} -> {child_session_id} rejected: {reason}"
        )
