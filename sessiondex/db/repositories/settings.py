"""SQLite implementation of the settings override store."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from sessiondex.db.connection import transaction


class SqliteSettingsRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_all(self) -> dict[str, Any]:
        async with self.db.execute("SELECT key, value_json FROM app_settings") as cur:
            rows = await cur.fetchall()
        result: dict[str, Any] = {}
        for row in rows:
            try:
                result[row["key"]] = json.loads(row["value_json"])
            except json.JSONDecodeError:
                continue
        return result

    async def set_many(self, values: dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        async with transaction(self.db, "update_settings"):
            for key, value in values.items():
                await self.db.execute(
                    """INSERT INTO app_settings (key, value_json, updated_at) VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at""",
                    (key, json.dumps(value), now),
                )

    async def delete(self, key: str) -> None:
        async with transaction(self.db, "delete_setting"):
            await self.db.execute("DELETE FROM app_settings WHERE key = ?", (key,))
