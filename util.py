"""Shared utilities."""

from __future__ import annotations

import shutil
import urllib.parse


# Schemes VLC can open for IPTV streams
_STREAM_SCHEMES = ("http", "https", "rtsp", "rtp", "udp", "mms")


def get_bin(name: str) -> str:
    """Locate an executable on PATH. Raises FileNotFoundError if missing."""
    path = shutil.which(name)
    if not path:
        raise FileNotFoundError(f"{name} not found on PATH")
    return path


def is_valid_url(url: str | None) -> bool:
    """Check that url is a stream URL with a supported scheme and a host."""
    if not url:
        return False
    parsed = urllib.parse.urlparse(url)
    return parsed.scheme in _STREAM_SCHEMES and bool(parsed.netloc)
