"""SessionDex Configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_list(name: str) -> list[str]:
    value = os.getenv(name)
    if not value:
        return []
    return [item.strip() for item in value.split(os.pathsep) if item.strip()]

# Project root (one level up from sessiondex/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Database
DB_PATH = Path(os.getenv("SESSIONDEX_DB_PATH", str(PROJECT_ROOT / "data" / "sessiondex.db")))

# Discovery
CLAUDE_PROJECTS_DIR = os.getenv("SESSIONDEX_CLAUDE_PROJECTS_DIR", "~/.claude/projects")
ADDITIONAL_DISCOVERY_PATHS = _env_list("SESSIONDEX_ADDITIONAL_DISCOVERY_PATHS")
EXCLUDE_PATHS = _env_list("SESSIONDEX_EXCLUDE_PATHS")
SETTINGS_FILE = Path(os.getenv("SESSIONDEX_SETTINGS_FILE", str(PROJECT_ROOT / "sessiondex.yaml")))

# Analysis admission
DAILY_ANALYSIS_LIMIT = _env_int("SESSIONDEX_DAILY_ANALYSIS_LIMIT", 20)
AUTO_ANALYZE_NEW_SESSIONS = _env_bool("SESSIONDEX_AUTO_ANALYZE", False)
CACHE_DURATION_DAYS = _env_int("SESSIONDEX_CACHE_DURATION_DAYS", 30)
MAX_CONCURRENT_ANALYSES = _env_int("SESSIONDEX_MAX_CONCURRENT_ANALYSES", 1)
ANALYSIS_TIMEOUT_MS = _env_int("SESSIONDEX_ANALYSIS_TIMEOUT_MS", 600_000)
MAX_MESSAGES_FOR_ANALYSIS = _env_int("SESSIONDEX_MAX_MESSAGES_FOR_ANALYSIS", 20)
ANALYZER_COMMAND = os.getenv("SESSIONDEX_ANALYZER_COMMAND", "session-viewer analyze")
ANALYSIS_MODEL = os.getenv("SESSIONDEX_ANALYSIS_MODEL", "claude-haiku-4-5-20251001")

# Startup sync tuning
STARTUP_SYNC_DELAY_SECONDS = _env_int("SESSIONDEX_STARTUP_SYNC_DELAY_SECONDS", 2)
WATCH_ENABLED = _env_bool("SESSIONDEX_WATCH_ENABLED", True)

# Server settings
HOST = os.getenv("SESSIONDEX_HOST", "127.0.0.1")
PORT = int(os.getenv("SESSIONDEX_PORT", "8000"))

# CORS
FRONTEND_ORIGIN = os.getenv("SESSIONDEX_FRONTEND_ORIGIN", "http://localhost:3000")
