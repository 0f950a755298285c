"""Indexer settings: defaults, env config, optional YAML file, persisted overrides."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import aiosqlite
import yaml
from pydantic import ValidationError

from sessiondex import config
from sessiondex.db.repositories.settings import SqliteSettingsRepository
from sessiondex.models import IndexerSettings

logger = logging.getLogger("sessiondex.settings")


def settings_from_config() -> dict[str, Any]:
    return {
        "dailyAnalysisLimit": config.DAILY_ANALYSIS_LIMIT,
        "autoAnalyzeNewSessions": config.AUTO_ANALYZE_NEW_SESSIONS,
        "cacheDurationDays": config.CACHE_DURATION_DAYS,
        "maxConcurrentAnalyses": config.MAX_CONCURRENT_ANALYSES,
        "analysisTimeout": config.ANALYSIS_TIMEOUT_MS,
        "maxMessagesForAnalysis": config.MAX_MESSAGES_FOR_ANALYSIS,
        "additionalDiscoveryPaths": list(config.ADDITIONAL_DISCOVERY_PATHS),
        "excludePaths": list(config.EXCLUDE_PATHS),
    }


def load_settings_file(path: Path) -> dict[str, Any]:
    """Read the optional YAML settings file; unknown keys are ignored."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load settings file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.error(f"Settings file {path} must contain a mapping")
        return {}
    known = set(IndexerSettings.model_fields)
    return {k: v for k, v in data.items() if k in known}


class SettingsService:
    """Resolved settings, cached in memory and refreshed on every update."""

    def __init__(self, db: aiosqlite.Connection, settings_file: Path | None = None):
        self.repo = SqliteSettingsRepository(db)
        self.settings_file = settings_file
        self._current: IndexerSettings | None = None

    async def load(self) -> IndexerSettings:
        merged: dict[str, Any] = settings_from_config()
        if self.settings_file is not None:
            merged.update(load_settings_file(self.settings_file))
        overrides = await self.repo.get_all()
        merged.update({k: v for k, v in overrides.items() if k in IndexerSettings.model_fields})
        try:
            self._current = IndexerSettings(**merged)
        except ValidationError as e:
            logger.error(f"Ignoring invalid persisted settings: {e}")
            self._current = IndexerSettings(**settings_from_config())
        return self._current

    async def get(self) -> IndexerSettings:
        if self._current is None:
            return await self.load()
        return self._current

    async def update(self, patch: dict[str, Any]) -> IndexerSettings:
        """Validate and persist a partial update; raises ValidationError/ValueError without writing."""
        unknown = set(patch) - set(IndexerSettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        current = await self.get()
        candidate = IndexerSettings(**{**current.model_dump(), **patch})
        await self.repo.set_many({k: getattr(candidate, k) for k in patch})
        self._current = candidate
        logger.info(f"Settings updated: {', '.join(sorted(patch))}")
        return candidate
