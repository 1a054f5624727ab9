"""VLC command building and process launch."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import asyncio
import logging
import pathlib
import threading

from channels import Channel, ChannelHttpHeaders, Source
from settings import get_default_record_path
from util import get_bin


log = logging.getLogger(__name__)

VLC_BIN_NAME = "vlc"

# Recording file names sort chronologically: 2024-01-31-20-15-00.ts
RECORD_TIME_FORMAT = "%Y-%m-%d-%H-%M-%S"
RECORD_EXTENSION = ".ts"

# Module state
_load_settings: Callable[[], dict[str, Any]] = dict
_vlc_lock = threading.Lock()
_vlc_path: tuple[str, str] | None = None  # (configured name, resolved path)


class PlaybackError(Exception):
    """Base class for playback failures reported to the caller."""


class LaunchFailure(PlaybackError):
    """VLC could not be started: no URL, binary missing, or spawn failed."""


def init(load_settings: Callable[[], dict[str, Any]]) -> None:
    """Initialize module with settings loader."""
    global _load_settings
    _load_settings = load_settings


def get_settings() -> dict[str, Any]:
    """Get current settings."""
    return _load_settings()


# ===========================================================================
# Binary Lookup
# ===========================================================================


def get_vlc_path() -> str:
    """Resolve the VLC executable, once per configured name.

    Uses the `vlc_path` setting if present, otherwise looks up `vlc` on PATH.
    """
    global _vlc_path
    name = get_settings().get("vlc_path") or VLC_BIN_NAME
    if not isinstance(name, str):
        raise LaunchFailure(f"Invalid vlc_path setting: {name!r}")
    with _vlc_lock:
        if _vlc_path is not None and _vlc_path[0] == name:
            return _vlc_path[1]
        try:
            path = get_bin(name)
        except FileNotFoundError as e:
            raise LaunchFailure(f"VLC binary not found: {name}") from e
        _vlc_path = (name, path)
        log.info("Using VLC binary %s", path)
        return path


def reset_vlc_path() -> None:
    """Forget the resolved binary (after settings change)."""
    global _vlc_path
    with _vlc_lock:
        _vlc_path = None


# ===========================================================================
# Recording Path
# ===========================================================================


def get_file_name(now: datetime | None = None) -> str:
    """Recording file name from local time, e.g. 2024-01-31-20-15-00.ts."""
    now = now or datetime.now()
    return now.strftime(RECORD_TIME_FORMAT) + RECORD_EXTENSION


def resolve_record_path(record_path: str | None, settings: dict[str, Any]) -> str:
    """Pick the recording target: explicit path, configured dir, or system default dir.

    The explicit path is used as-is. Directories get a timestamped file name.
    Writability is left for VLC to report.
    """
    if record_path:
        return record_path
    directory = settings.get("recording_path")
    if directory and not isinstance(directory, str):
        raise LaunchFailure(f"Invalid recording_path setting: {directory!r}")
    if not directory:
        try:
            directory = get_default_record_path()
        except RuntimeError as e:
            raise LaunchFailure(f"Could not determine recording directory: {e}") from e
    return str(pathlib.Path(directory) / get_file_name())


# ===========================================================================
# Command Building
# ===========================================================================


def _build_header_args(headers: ChannelHttpHeaders | None, source: Source | None) -> list[str]:
    """Referrer from the channel only; user-agent from channel, then source."""
    headers = headers or ChannelHttpHeaders()
    args = []
    if headers.referrer:
        args.append(f"--http-referrer={headers.referrer}")
    user_agent = headers.user_agent or (source.stream_user_agent if source else None)
    if user_agent:
        args.append(f"--http-user-agent={user_agent}")
    return args


def build_vlc_args(
    channel: Channel,
    record: bool = False,
    record_path: str | None = None,
    source: Source | None = None,
    headers: ChannelHttpHeaders | None = None,
    settings: dict[str, Any] | None = None,
) -> list[str]:
    """Build VLC arguments. Order matters: URL, referrer, user-agent, sout."""
    if not channel.url:
        raise LaunchFailure(f"Channel {channel.id} has no stream URL")
    args = [channel.url]

    if headers is not None or source is not None:
        args.extend(_build_header_args(headers, source))

    if record:
        if settings is None:
            settings = get_settings()
        path = resolve_record_path(record_path, settings)
        args.append(f"--sout=#std{{access=file,mux=ts,dst={path}}}")

    return args


# ===========================================================================
# Launch
# ===========================================================================


async def spawn_vlc(args: list[str]) -> asyncio.subprocess.Process:
    """Start VLC with stdout captured (stderr merged in). Raises LaunchFailure."""
    cmd = [get_vlc_path(), *args]
    log.info("Starting vlc: %s", " ".join(cmd))
    try:
        return await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise LaunchFailure(f"Failed to start VLC: {e}") from e
