"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .analysis_cache import SqliteAnalysisCacheRepository, SqliteAnalysisRunRepository
from .continuations import SqliteContinuationRepository
from .settings import SqliteSettingsRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteAnalysisCacheRepository",
    "SqliteAnalysisRunRepository",
    "SqliteContinuationRepository",
    "SqliteSettingsRepository",
]
