"""netv-play: FastAPI app that plays IPTV channels in VLC."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import argparse
import logging
import os

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from channels import ChannelStore
from util import is_valid_url

import settings
import vlc_command
import vlc_session


logging.basicConfig(
    level=os.environ.get("NETV_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)

_store: ChannelStore | None = None


def get_store() -> ChannelStore:
    """Channel store in the cache dir, opened on first use."""
    global _store
    if _store is None:
        settings.CACHE_DIR.mkdir(parents=True, exist_ok=True)
        _store = ChannelStore(settings.CACHE_DIR / "channels.db")
    return _store


@asynccontextmanager
async def lifespan(_app: FastAPI):
    vlc_command.init(settings.get_settings)
    get_store()
    log.info("netv-play started (cache=%s)", settings.CACHE_DIR)
    yield
    await vlc_session.shutdown()


app = FastAPI(title="netv-play", lifespan=lifespan)


class PlayRequest(BaseModel):
    channel_id: int
    record: bool = False
    record_path: str | None = None


class SettingsUpdate(BaseModel):
    recording_path: str | None = None
    vlc_path: str | None = None
    kill_grace_secs: float | None = Field(default=None, ge=0)


# =============================================================================
# Playback
# =============================================================================


@app.post("/play")
async def play(req: PlayRequest) -> dict[str, Any]:
    """Play a channel and wait until VLC exits or the session is stopped."""
    store = get_store()
    channel = store.get_channel(req.channel_id)
    if channel is None:
        raise HTTPException(404, "Channel not found")
    if not is_valid_url(channel.url):
        raise HTTPException(400, "Invalid channel URL: must be a stream URL")
    try:
        outcome = await vlc_session.play(
            channel,
            req.record,
            req.record_path,
            store=store,
        )
    except vlc_session.LaunchFailure as e:
        raise HTTPException(502, str(e)) from e
    except vlc_session.RuntimeFailure as e:
        raise HTTPException(500, str(e)) from e
    return {"ok": True, "outcome": outcome.value}


@app.post("/stop/{source_id}/{channel_id}")
async def stop(source_id: int, channel_id: int) -> dict[str, Any]:
    return {"ok": vlc_session.stop(source_id, channel_id)}


@app.get("/sessions")
async def list_sessions() -> list[dict[str, Any]]:
    return [
        {
            "source_id": s.source_id,
            "channel_id": s.channel_id,
            "pid": s.pid,
            "started": s.started,
        }
        for s in vlc_session.get_registry().sessions()
    ]


@app.get("/sources")
async def list_sources() -> list[dict[str, Any]]:
    registry = vlc_session.get_registry()
    return [
        {
            "id": src.id,
            "name": src.name,
            "max_streams": src.max_streams,
            "active_streams": registry.active_count(src.id),
        }
        for src in get_store().get_sources()
    ]


# =============================================================================
# Settings
# =============================================================================


@app.get("/settings")
async def get_settings() -> dict[str, Any]:
    return settings.get_settings()


@app.post("/settings")
async def update_settings(req: SettingsUpdate) -> dict[str, Any]:
    changes = req.model_dump(exclude_unset=True)
    updated = settings.update_settings(changes)
    if "vlc_path" in changes:
        vlc_command.reset_vlc_path()
    return updated


@app.get("/health")
async def health() -> dict[str, Any]:
    return {"ok": True, "sessions": len(vlc_session.get_registry().sessions())}


if __name__ == "__main__":
    import uvicorn

    parser = argparse.ArgumentParser(description="netv-play server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    uvicorn.run(app, host=args.host, port=args.port)
