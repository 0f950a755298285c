"""SessionDex FastAPI backend: main application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessiondex import config
from sessiondex.admission import AdmissionController
from sessiondex.analysis import SubprocessAnalyzer
from sessiondex.continuation import ContinuationLinker
from sessiondex.db import connection, sqlite_migrations
from sessiondex.db.file_watcher import file_watcher
from sessiondex.db.repositories.analysis_cache import SqliteAnalysisRunRepository
from sessiondex.db.sync_engine import SyncEngine
from sessiondex.routers.analysis import analysis_router
from sessiondex.routers.cache import cache_router
from sessiondex.routers.sessions import sessions_router
from sessiondex.routers.settings import settings_router
from sessiondex.settings import SettingsService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("sessiondex")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("SessionDex backend starting up")

    # 1. Database + schema
    db = await connection.get_connection()
    await sqlite_migrations.run_migrations(db)
    abandoned = await SqliteAnalysisRunRepository(db).abandon_open_runs()
    if abandoned:
        logger.info(f"Marked {abandoned} unfinished analysis run(s) from a previous process as cancelled")

    # 2. Services
    settings_service = SettingsService(db, config.SETTINGS_FILE)
    await settings_service.load()
    linker = ContinuationLinker(db)
    admission = AdmissionController(db, SubprocessAnalyzer(), settings_service)
    sync = SyncEngine(db, settings_service, linker=linker, admission=admission)

    app.state.db = db
    app.state.settings_service = settings_service
    app.state.linker = linker
    app.state.admission = admission
    app.state.sync_engine = sync
    app.state.bulk_cancel_events = {}

    # 3. Initial discovery (background task)
    async def _run_startup_sync() -> None:
        delay = max(0, config.STARTUP_SYNC_DELAY_SECONDS)
        if delay > 0:
            await asyncio.sleep(delay)
        await sync.sync_all(trigger="startup")

    # Run startup sync in background so we don't block startup.
    app.state.sync_task = asyncio.create_task(_run_startup_sync())

    # 4. File watcher
    if config.WATCH_ENABLED:
        await file_watcher.start(sync, await sync.discovery_roots())

    yield

    logger.info("SessionDex backend shutting down")

    if hasattr(app.state, "sync_task"):
        app.state.sync_task.cancel()
        try:
            await app.state.sync_task
        except asyncio.CancelledError:
            pass

    for event in app.state.bulk_cancel_events.values():
        event.set()
    await file_watcher.stop()
    await admission.shutdown()
    await connection.close_connection()


app = FastAPI(
    title="SessionDex API",
    description="Local index, search and analysis cache for Claude Code session transcripts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)
app.include_router(analysis_router)
app.include_router(cache_router)
app.include_router(settings_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "watcher": "running" if file_watcher.is_running else "stopped",
    }


def run() -> None:
    uvicorn.run("sessiondex.main:app", host=config.HOST, port=config.PORT)
