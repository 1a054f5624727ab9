"""Channel and source storage (SQLite)."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import logging
import sqlite3
import threading


log = logging.getLogger(__name__)


# =============================================================================
# Data Types
# =============================================================================


@dataclass(slots=True, frozen=True)
class Source:
    id: int
    name: str
    stream_user_agent: str | None = None
    max_streams: int | None = None  # None or <= 0 = unlimited


@dataclass(slots=True, frozen=True)
class Channel:
    id: int | None
    name: str
    url: str | None = None
    source_id: int | None = None


@dataclass(slots=True, frozen=True)
class ChannelHttpHeaders:
    referrer: str | None = None
    user_agent: str | None = None


# =============================================================================
# SQLite Storage
# =============================================================================


class ChannelStore:
    """Channel/source store backed by SQLite, one connection per thread."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._local = threading.local()
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS sources (
                id INTEGER PRIMARY KEY,
                name TEXT UNIQUE NOT NULL,
                stream_user_agent TEXT,
                max_streams INTEGER
            );
            CREATE TABLE IF NOT EXISTS channels (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                url TEXT,
                source_id INTEGER REFERENCES sources(id) ON DELETE CASCADE
            );
            CREATE TABLE IF NOT EXISTS channel_http_headers (
                channel_id INTEGER PRIMARY KEY REFERENCES channels(id) ON DELETE CASCADE,
                referrer TEXT,
                user_agent TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_channels_source ON channels(source_id);
        """)
        conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return conn

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # -------------------------------------------------------------------------
    # Sources
    # -------------------------------------------------------------------------

    def add_source(
        self,
        name: str,
        stream_user_agent: str | None = None,
        max_streams: int | None = None,
    ) -> Source:
        conn = self._get_conn()
        cur = conn.execute(
            "INSERT INTO sources (name, stream_user_agent, max_streams) VALUES (?, ?, ?)",
            (name, stream_user_agent, max_streams),
        )
        conn.commit()
        return Source(cur.lastrowid, name, stream_user_agent, max_streams)

    def get_source(self, source_id: int) -> Source | None:
        row = (
            self._get_conn()
            .execute(
                "SELECT id, name, stream_user_agent, max_streams FROM sources WHERE id = ?",
                (source_id,),
            )
            .fetchone()
        )
        return _row_to_source(row) if row else None

    def get_sources(self) -> list[Source]:
        rows = (
            self._get_conn()
            .execute("SELECT id, name, stream_user_agent, max_streams FROM sources ORDER BY name")
            .fetchall()
        )
        return [_row_to_source(row) for row in rows]

    # -------------------------------------------------------------------------
    # Channels
    # -------------------------------------------------------------------------

    def add_channel(self, name: str, url: str | None, source_id: int | None = None) -> Channel:
        conn = self._get_conn()
        cur = conn.execute(
            "INSERT INTO channels (name, url, source_id) VALUES (?, ?, ?)",
            (name, url, source_id),
        )
        conn.commit()
        return Channel(cur.lastrowid, name, url, source_id)

    def get_channel(self, channel_id: int) -> Channel | None:
        row = (
            self._get_conn()
            .execute("SELECT id, name, url, source_id FROM channels WHERE id = ?", (channel_id,))
            .fetchone()
        )
        if not row:
            return None
        return Channel(row["id"], row["name"], row["url"], row["source_id"])

    def set_channel_headers(
        self,
        channel_id: int,
        referrer: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Insert or replace the HTTP header overrides of a channel."""
        conn = self._get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO channel_http_headers (channel_id, referrer, user_agent) "
            "VALUES (?, ?, ?)",
            (channel_id, referrer, user_agent),
        )
        conn.commit()

    def get_channel_headers(self, channel_id: int) -> ChannelHttpHeaders | None:
        row = (
            self._get_conn()
            .execute(
                "SELECT referrer, user_agent FROM channel_http_headers WHERE channel_id = ?",
                (channel_id,),
            )
            .fetchone()
        )
        if not row:
            return None
        return ChannelHttpHeaders(referrer=row["referrer"], user_agent=row["user_agent"])


def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        name=row["name"],
        stream_user_agent=row["stream_user_agent"],
        max_streams=row["max_streams"],
    )
