"""VLC playback session lifecycle management."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Protocol

import asyncio
import contextlib
import enum
import itertools
import logging
import threading
import time

from channels import Channel, ChannelHttpHeaders, Source
from vlc_command import LaunchFailure, PlaybackError, build_vlc_args, get_settings, spawn_vlc


log = logging.getLogger(__name__)

UNKNOWN_ERROR = "VLC encountered an unknown error"

# Seconds between SIGTERM and SIGKILL when stopping VLC
_DEFAULT_KILL_GRACE_SEC = 2.0

# Output kept for the failure message: the last lines, each cut to length
MAX_ERROR_LINES = 200
MAX_LINE_CHARS = 4096


# ===========================================================================
# Errors / Outcomes
# ===========================================================================


class RuntimeFailure(PlaybackError):
    """VLC exited with a non-zero status. Message is its captured output."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class AdmissionDenied(Exception):
    """Source quota could not be enforced. Logged only, never fatal."""


class RegistryBookkeepingFailure(Exception):
    """Session could not be recorded or forgotten. Logged only, never fatal."""


class PlayOutcome(enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ChannelLookup(Protocol):
    def get_source(self, source_id: int) -> Source | None: ...

    def get_channel_headers(self, channel_id: int) -> ChannelHttpHeaders | None: ...


# ===========================================================================
# Cancellation
# ===========================================================================


class CancellationController:
    """One-shot stop signal for a session, bound to the loop that created it.

    cancel() may be called from any thread and any number of times. A signal
    sent before anyone waits is kept, so it can't be lost.
    """

    def __init__(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._event = asyncio.Event()
        self._requested = False

    @property
    def cancelled(self) -> bool:
        return self._requested

    def cancel(self) -> None:
        """Request cancellation. Raises RuntimeError if the owning loop is closed."""
        self._requested = True
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._event.set()
        else:
            self._loop.call_soon_threadsafe(self._event.set)

    async def wait(self) -> None:
        await self._event.wait()


# ===========================================================================
# Session Registry
# ===========================================================================

_session_seq = itertools.count()


@dataclass(slots=True, eq=False)
class Session:
    source_id: int
    channel_id: int
    controller: CancellationController
    process: Any = None
    started: float = field(default_factory=time.time)  # wall clock, for display
    seq: int = field(default_factory=lambda: next(_session_seq))  # start order

    @property
    def key(self) -> tuple[int, int]:
        return (self.source_id, self.channel_id)

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)


class SessionRegistry:
    """What is currently playing, keyed by (source_id, channel_id).

    Every method takes the same lock, so all operations see one linear history.
    """

    def __init__(self) -> None:
        self._sessions: dict[tuple[int, int], Session] = {}
        self._lock = threading.Lock()

    def insert(
        self,
        source_id: int,
        channel_id: int,
        controller: CancellationController,
        process: Any = None,
    ) -> Session | None:
        """Register a session, returning the entry it displaced (if any)."""
        session = _new_session(source_id, channel_id, controller, process)
        with self._lock:
            previous = self._sessions.pop(session.key, None)
            self._sessions[session.key] = session
        return previous

    def insert_within_quota(
        self,
        source_id: int,
        channel_id: int,
        controller: CancellationController,
        process: Any,
        max_streams: int,
    ) -> tuple[Session | None, list[Session]]:
        """Register a session, evicting the oldest of its source to stay within max_streams.

        Returns (displaced entry for the same key, evicted entries). max_streams <= 0
        means unlimited.
        """
        session = _new_session(source_id, channel_id, controller, process)
        with self._lock:
            previous = self._sessions.pop(session.key, None)
            evicted = self._evict_locked(source_id, max_streams - 1) if max_streams > 0 else []
            self._sessions[session.key] = session
        return previous, evicted

    def evict_oldest(self, source_id: int, keep: int) -> list[Session]:
        """Remove the oldest sessions of a source until at most `keep` remain."""
        with self._lock:
            return self._evict_locked(source_id, keep)

    def _evict_locked(self, source_id: int, keep: int) -> list[Session]:
        sessions = sorted(
            (s for s in self._sessions.values() if s.source_id == source_id),
            key=lambda s: s.seq,
        )
        evicted = sessions[: max(len(sessions) - max(keep, 0), 0)]
        for s in evicted:
            del self._sessions[s.key]
        return evicted

    def remove(
        self,
        source_id: int,
        channel_id: int,
        controller: CancellationController | None = None,
    ) -> Session | None:
        """Forget a session. No-op if absent.

        With `controller`, only removes the entry owned by that controller, so a
        displaced session can't remove its replacement.
        """
        key = (source_id, channel_id)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return None
            if controller is not None and session.controller is not controller:
                return None
            return self._sessions.pop(key)

    def active_count(self, source_id: int) -> int:
        with self._lock:
            return sum(1 for s in self._sessions.values() if s.source_id == source_id)

    def lookup(self, source_id: int, channel_id: int) -> Session | None:
        with self._lock:
            return self._sessions.get((source_id, channel_id))

    def sessions(self, source_id: int | None = None) -> list[Session]:
        """Active sessions, oldest first."""
        with self._lock:
            sessions = [
                s for s in self._sessions.values() if source_id is None or s.source_id == source_id
            ]
        return sorted(sessions, key=lambda s: s.seq)

    def cancel(self, source_id: int, channel_id: int) -> bool:
        """Signal the session's controller. Returns False if nothing is playing."""
        session = self.lookup(source_id, channel_id)
        if session is None:
            return False
        session.controller.cancel()
        return True

    def clear(self) -> list[Session]:
        """Remove and return all sessions."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        return sorted(sessions, key=lambda s: s.seq)


def _new_session(
    source_id: int,
    channel_id: int,
    controller: CancellationController,
    process: Any,
) -> Session:
    if source_id is None or channel_id is None:
        raise RegistryBookkeepingFailure(
            f"Incomplete session key (source={source_id}, channel={channel_id})"
        )
    return Session(source_id, channel_id, controller, process)


# ===========================================================================
# Admission
# ===========================================================================


def _has_quota(source: Source) -> bool:
    return source.max_streams is not None and source.max_streams > 0


def _cancel_sessions(sessions: list[Session], reason: str) -> list[Session]:
    """Signal each session to stop. Returns the ones that couldn't be signalled."""
    failed = []
    for s in sessions:
        log.info("Stopping session %s:%s (%s)", s.source_id, s.channel_id, reason)
        try:
            s.controller.cancel()
        except RuntimeError as e:
            log.warning("Could not signal session %s:%s: %s", s.source_id, s.channel_id, e)
            failed.append(s)
    return failed


class AdmissionController:
    """Per-source stream quota. When a source is full, the oldest session is stopped."""

    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry

    def make_room(self, source: Source | None, channel_id: int) -> list[Session]:
        """Stop the oldest sessions of `source` so one more stream fits.

        Runs before VLC starts so the provider sees the old connection go away
        first. Raises AdmissionDenied if an evicted session can't be signalled.
        """
        if source is None or not _has_quota(source):
            return []
        evicted = self.registry.evict_oldest(source.id, source.max_streams - 1)
        if not evicted:
            return []
        log.info(
            "Source %s at limit (%d), stopping %d oldest session(s) for channel %s",
            source.id,
            source.max_streams,
            len(evicted),
            channel_id,
        )
        failed = _cancel_sessions(evicted, f"source {source.id} at limit")
        if failed:
            raise AdmissionDenied(
                f"Source {source.id} at capacity ({source.max_streams} streams), "
                f"{len(failed)} session(s) could not be stopped"
            )
        return evicted

    def admit(
        self,
        source: Source,
        channel_id: int,
        controller: CancellationController,
        process: Any,
    ) -> list[Session]:
        """Register a started session within quota. Returns the sessions it replaced."""
        max_streams = source.max_streams if _has_quota(source) else 0
        previous, evicted = self.registry.insert_within_quota(
            source.id, channel_id, controller, process, max_streams
        )
        if previous is not None:
            _cancel_sessions([previous], "replaced by new request")
        if evicted:
            _cancel_sessions(evicted, f"source {source.id} at limit")
        return ([previous] if previous is not None else []) + evicted


# ===========================================================================
# Monitoring
# ===========================================================================


def format_error(lines: list[str]) -> str:
    """Join VLC output lines into one message; no output gives a generic message."""
    if not lines:
        return UNKNOWN_ERROR
    return "\n".join(lines)


async def _read_line(stream: asyncio.StreamReader) -> bytes:
    """Next output line, cut to the reader limit. Returns b"" at EOF.

    Longer lines are still drained to their newline so VLC never blocks
    on a full pipe.
    """
    try:
        return await stream.readuntil(b"\n")
    except asyncio.IncompleteReadError as e:
        return e.partial
    except asyncio.LimitOverrunError as e:
        head = await stream.read(e.consumed)
    while True:
        try:
            await stream.readuntil(b"\n")
            break
        except asyncio.IncompleteReadError:
            break
        except asyncio.LimitOverrunError as e:
            await stream.read(e.consumed)
    return head


async def _read_output(stream: asyncio.StreamReader, label: str, lines: deque[str]) -> None:
    while True:
        line = await _read_line(stream)
        if not line:
            break
        text = line.decode(errors="replace").rstrip()
        if len(text) > MAX_LINE_CHARS:
            text = text[:MAX_LINE_CHARS] + "..."
        lines.append(text)
        level = logging.WARNING if "error" in text.lower() else logging.DEBUG
        log.log(level, "vlc:%s %s", label, text)


async def _kill_process(process: Any, grace: float) -> bool:
    """Stop VLC (SIGTERM, then SIGKILL after `grace` seconds). Returns False if already gone."""
    try:
        process.terminate()
    except ProcessLookupError:
        return False
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except TimeoutError:
        log.warning("vlc pid=%s ignored SIGTERM, killing", getattr(process, "pid", None))
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
    return True


async def monitor_session(
    process: Any,
    controller: CancellationController,
    label: str = "",
    kill_grace: float = _DEFAULT_KILL_GRACE_SEC,
) -> PlayOutcome:
    """Wait for VLC to exit or for cancellation, whichever comes first.

    Exit 0 -> COMPLETED. Other exits raise RuntimeFailure with the captured
    output. Cancellation stops the process and returns CANCELLED; it also wins
    if both happened by the time we look.
    """
    lines: deque[str] = deque(maxlen=MAX_ERROR_LINES)
    reader = None
    if process.stdout is not None:
        reader = asyncio.create_task(_read_output(process.stdout, label, lines))
    exited = asyncio.create_task(process.wait())
    cancelled = asyncio.create_task(controller.wait())
    try:
        await asyncio.wait({exited, cancelled}, return_when=asyncio.FIRST_COMPLETED)

        if cancelled.done():
            await _kill_process(process, kill_grace)
            log.info("vlc:%s cancelled", label)
            return PlayOutcome.CANCELLED

        returncode = exited.result()
        if returncode == 0:
            log.info("vlc:%s exited normally", label)
            return PlayOutcome.COMPLETED

        if reader is not None:
            await reader
            message = format_error(list(lines))
        else:
            message = UNKNOWN_ERROR
        log.error("vlc:%s failed (exit %s): %s", label, returncode, message)
        raise RuntimeFailure(message, returncode)
    finally:
        for task in (exited, cancelled):
            task.cancel()
        if reader is not None and not reader.done():
            reader.cancel()
        # Never leave VLC running unattended (e.g. this task was cancelled)
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()


# ===========================================================================
# Orchestration
# ===========================================================================

_registry = SessionRegistry()


def get_registry() -> SessionRegistry:
    """Process-wide session registry."""
    return _registry


def _get_kill_grace() -> float:
    try:
        return float(get_settings().get("kill_grace_secs", _DEFAULT_KILL_GRACE_SEC))
    except (TypeError, ValueError):
        return _DEFAULT_KILL_GRACE_SEC


def _resolve_source(channel: Channel, store: ChannelLookup) -> Source | None:
    if channel.source_id is None:
        return None
    try:
        return store.get_source(channel.source_id)
    except Exception as e:
        log.warning("Failed to fetch source with id %s: %s", channel.source_id, e)
        return None


def _resolve_headers(channel_id: int, store: ChannelLookup) -> ChannelHttpHeaders | None:
    try:
        return store.get_channel_headers(channel_id)
    except Exception as e:
        log.warning("Failed to fetch headers for channel %s: %s", channel_id, e)
        return None


async def play(
    channel: Channel,
    record: bool = False,
    record_path: str | None = None,
    *,
    store: ChannelLookup,
    registry: SessionRegistry | None = None,
) -> PlayOutcome:
    """Play a channel in VLC and wait until it ends.

    Returns COMPLETED or CANCELLED. Raises LaunchFailure if VLC can't be
    started and RuntimeFailure if it exits with an error.
    """
    registry = registry or _registry
    if channel.id is None:
        raise LaunchFailure("Channel has no id")

    source = _resolve_source(channel, store)
    headers = _resolve_headers(channel.id, store)
    args = build_vlc_args(channel, record, record_path, source, headers, get_settings())
    log.info("Playing %s with VLC (record=%s)", channel.url, record)

    admission = AdmissionController(registry)
    if source is not None:
        try:
            admission.make_room(source, channel.id)
        except Exception as e:
            log.warning("Admission check failed for source %s: %s", source.id, e)

    process = await spawn_vlc(args)
    controller = CancellationController()
    label = f"{source.id if source else '-'}:{channel.id}"

    try:
        if source is not None:
            try:
                admission.admit(source, channel.id, controller, process)
            except Exception as e:
                log.warning("Failed to register session %s: %s", label, e)
        return await monitor_session(process, controller, label, _get_kill_grace())
    finally:
        if source is not None:
            try:
                registry.remove(source.id, channel.id, controller)
            except Exception as e:
                log.warning("Failed to remove session %s: %s", label, e)


def stop(source_id: int, channel_id: int, registry: SessionRegistry | None = None) -> bool:
    """Stop a playing session. Returns False if it isn't playing."""
    registry = registry or _registry
    stopped = registry.cancel(source_id, channel_id)
    if stopped:
        log.info("Stop requested for session %s:%s", source_id, channel_id)
    return stopped


async def shutdown(registry: SessionRegistry | None = None) -> None:
    """Stop every session and kill its VLC for clean shutdown."""
    registry = registry or _registry
    sessions = registry.clear()
    _cancel_sessions(sessions, "shutdown")
    procs = [s.process for s in sessions if s.process is not None and s.process.returncode is None]
    if procs:
        grace = _get_kill_grace()
        await asyncio.gather(*(_kill_process(p, grace) for p in procs), return_exceptions=True)
        log.info("Shutdown: stopped %d vlc process(es)", len(procs))
