from __future__ import annotations

import json
import logging
from dataclasses import fields
from typing import Any

from fastapi import Body, FastAPI
from fastapi.responses import StreamingResponse

from vaultsync.commands import (
    CommandContext,
    delete_current_record,
    resync_command,
    stream_sync,
    sync_command,
)
from vaultsync.core.errors import ConfigurationError
from vaultsync.core.scheduler import SyncScheduler
from vaultsync.core.settings import Settings, SyncSettings
from vaultsync.core.storage import init_db
from vaultsync.core.sync_job import reset_syncing_state
from vaultsync.core.template import DEFAULT_TEMPLATE
from vaultsync.core.vault import LocalVault

logger = logging.getLogger(__name__)

app = FastAPI(title="vaultsync")

_context: CommandContext | None = None
_scheduler: SyncScheduler | None = None


def get_context() -> CommandContext:
    assert _context is not None, "App not initialized"
    return _context


def init_app(settings: Settings | None = None) -> CommandContext:
    """Open the settings DB and vault, and repair a stale syncing flag."""
    global _context
    s = settings or Settings.from_env()
    store = init_db(s)
    sync_settings = SyncSettings.load(store)
    # Must run before any scheduled sync
    reset_syncing_state(sync_settings, store)
    _context = CommandContext(settings=sync_settings, vault=LocalVault(s.vault_path), store=store)
    return _context


async def _scheduled_sync() -> None:
    notices = await sync_command(get_context(), manual=False)
    for notice in notices:
        logger.info(notice)


@app.on_event("startup")
async def _startup() -> None:
    global _scheduler
    s = Settings.from_env()
    logging.basicConfig(level=s.log_level)
    context = init_app(s)
    _scheduler = SyncScheduler(_scheduled_sync)
    _scheduler.schedule(context.settings.frequency)
    _scheduler.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _scheduler is not None:
        _scheduler.shutdown()


@app.post("/sync")
async def api_sync():
    """Sync items changed since the last run."""
    return {"notices": await sync_command(get_context())}


@app.post("/resync")
async def api_resync():
    """Forget the last sync time and sync everything."""
    return {"notices": await resync_command(get_context())}


@app.post("/records/delete")
async def api_delete_record(path: str = Body(..., embed=True)):
    """Delete a synced note and its item in the remote library."""
    return {"notices": await delete_current_record(get_context(), path)}


@app.get("/sync/stream")
async def api_sync_stream():
    """SSE stream of a new sync run."""
    context = get_context()

    async def event_generator():
        """Generate SSE events from a sync run."""
        try:
            async for event in stream_sync(context):
                yield event.to_sse()
        except Exception as e:
            logger.exception("Sync stream failed")
            yield f"event: error\ndata: {json.dumps({'error': str(e)})}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/sync/runs")
def api_sync_runs(limit: int = 20):
    """Recent sync runs, newest first."""
    context = get_context()
    if context.store is None:
        return []
    return context.store.list_runs(limit)


def _public_settings(settings: SyncSettings) -> dict[str, Any]:
    data = settings.to_dict()
    data["api_key"] = "***" if settings.api_key else ""
    return data


@app.get("/settings")
def api_get_settings():
    return _public_settings(get_context().settings)


@app.put("/settings")
def api_put_settings(payload: dict[str, Any] = Body(...)):
    """Update sync settings. ``syncing`` cannot be set from outside."""
    context = get_context()
    current = context.settings
    payload.pop("syncing", None)
    # GET /settings masks the key; sending it back unchanged keeps it
    if payload.get("api_key") == "***":
        payload.pop("api_key")
    candidate = SyncSettings.from_dict({**current.to_dict(), **payload, "syncing": current.syncing})
    if not candidate.template.strip():
        candidate.template = DEFAULT_TEMPLATE
    # A new scope needs a full sync
    if candidate.filter != current.filter or candidate.custom_query != current.custom_query:
        candidate.sync_at = ""
    try:
        if candidate.api_key:
            candidate.validate()
    except ConfigurationError as e:
        return {"error": str(e)}

    frequency_changed = candidate.frequency != current.frequency
    for f in fields(SyncSettings):
        setattr(current, f.name, getattr(candidate, f.name))
    context.save_settings()

    if frequency_changed and _scheduler is not None:
        _scheduler.schedule(current.frequency)
    return {"success": True, "settings": _public_settings(current)}
