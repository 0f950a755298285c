"""Watch the discovery roots with watchfiles and re-sync touched transcripts."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional

from watchfiles import Change, awatch

from sessiondex.paths import session_id_from_filename

logger = logging.getLogger("sessiondex.watcher")

_CHANGE_KINDS = {
    Change.added: "modified",
    Change.modified: "modified",
    Change.deleted: "deleted",
}


def classify_changes(changes: Iterable[tuple[Change, str]]) -> list[tuple[str, Path]]:
    """Keep ``<uuid>.jsonl`` transcripts only, as ``(change_type, path)`` sorted by path."""
    result = []
    for change, raw_path in changes:
        path = Path(raw_path)
        kind = _CHANGE_KINDS.get(change)
        if kind is None or path.suffix != ".jsonl" or not session_id_from_filename(path):
            continue
        result.append((kind, path))
    return sorted(result, key=lambda item: str(item[1]))


class FileWatcher:
    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, sync_engine, roots: list[Path]) -> None:
        if self.is_running:
            logger.warning("File watcher already running")
            return
        existing = [root for root in roots if root.exists()]
        if not existing:
            logger.warning("No discovery roots exist, file watcher not started")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(sync_engine, existing))
        logger.info(f"File watcher started for {len(existing)} root(s): {[str(r) for r in existing]}")

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.info("File watcher stopped")

    async def restart(self, sync_engine, roots: list[Path]) -> None:
        """Re-watch a new root set; a stopped watcher stays stopped."""
        if not self.is_running:
            return
        await self.stop()
        await self.start(sync_engine, roots)

    async def _run(self, sync_engine, roots: list[Path]) -> None:
        try:
            async for changes in awatch(*roots, stop_event=self._stop_event):
                touched = classify_changes(changes)
                if not touched:
                    continue
                logger.info(f"Detected {len(touched)} transcript change(s), syncing")
                try:
                    await sync_engine.sync_changed_files(touched)
                except Exception as e:
                    # A failed batch must not end the watch loop.
                    logger.error(f"Error syncing changed files: {e}")
        except OSError as e:
            logger.error(f"File watcher error: {e}")


file_watcher = FileWatcher()
