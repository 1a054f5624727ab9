"""Settings storage: recording directory, VLC binary override."""

from __future__ import annotations

from typing import Any

import json
import logging
import pathlib
import threading


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
# Use old "cache" if it exists (backwards compat), otherwise ".cache"
_OLD_CACHE = APP_DIR / "cache"
CACHE_DIR = _OLD_CACHE if _OLD_CACHE.exists() else APP_DIR / ".cache"
SETTINGS_FILE = CACHE_DIR / "settings.json"

_DEFAULTS: dict[str, Any] = {
    "recording_path": None,
    "vlc_path": None,
    "kill_grace_secs": 2.0,
}

_settings_lock = threading.Lock()


def get_settings() -> dict[str, Any]:
    """Load settings from disk merged over defaults."""
    settings = dict(_DEFAULTS)
    with _settings_lock:
        if not SETTINGS_FILE.exists():
            return settings
        try:
            data = json.loads(SETTINGS_FILE.read_text())
        except (OSError, ValueError) as e:
            log.warning("Failed to read settings from %s: %s", SETTINGS_FILE, e)
            return settings
    if isinstance(data, dict):
        settings.update(data)
    return settings


def update_settings(changes: dict[str, Any]) -> dict[str, Any]:
    """Merge changes into the stored settings. Unknown keys are kept."""
    settings = get_settings()
    settings.update(changes)
    with _settings_lock:
        SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
        SETTINGS_FILE.write_text(json.dumps(settings, indent=2))
    return settings


def get_default_record_path() -> str:
    """Get the system default recording directory (~/Videos, else home).

    Raises RuntimeError if the home directory cannot be determined.
    """
    home = pathlib.Path.home()
    videos = home / "Videos"
    return str(videos if videos.is_dir() else home)
