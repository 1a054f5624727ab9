"""Tests for settings.py."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import json

import pytest

import settings


@pytest.fixture
def settings_file(tmp_path: Path):
    path = tmp_path / "settings.json"
    with patch("settings.SETTINGS_FILE", path):
        yield path


class TestGetSettings:
    def test_defaults_when_file_missing(self, settings_file):
        result = settings.get_settings()
        assert result["recording_path"] is None
        assert result["vlc_path"] is None
        assert result["kill_grace_secs"] == 2.0

    def test_file_values_override_defaults(self, settings_file):
        settings_file.write_text(json.dumps({"recording_path": "/rec"}))
        result = settings.get_settings()
        assert result["recording_path"] == "/rec"
        assert result["kill_grace_secs"] == 2.0

    def test_corrupt_file_falls_back_to_defaults(self, settings_file):
        settings_file.write_text("{not json")
        assert settings.get_settings()["recording_path"] is None


class TestUpdateSettings:
    def test_update_persists(self, settings_file):
        settings.update_settings({"vlc_path": "/opt/vlc/vlc"})
        assert json.loads(settings_file.read_text())["vlc_path"] == "/opt/vlc/vlc"
        assert settings.get_settings()["vlc_path"] == "/opt/vlc/vlc"

    def test_update_creates_parent_dir(self, tmp_path: Path):
        path = tmp_path / "nested" / "settings.json"
        with patch("settings.SETTINGS_FILE", path):
            settings.update_settings({"recording_path": "/rec"})
        assert path.exists()


class TestDefaultRecordPath:
    def test_prefers_videos_dir(self, tmp_path: Path):
        (tmp_path / "Videos").mkdir()
        with patch("settings.pathlib.Path.home", return_value=tmp_path):
            assert settings.get_default_record_path() == str(tmp_path / "Videos")

    def test_falls_back_to_home(self, tmp_path: Path):
        with patch("settings.pathlib.Path.home", return_value=tmp_path):
            assert settings.get_default_record_path() == str(tmp_path)

    def test_raises_when_home_unknown(self):
        with patch("settings.pathlib.Path.home", side_effect=RuntimeError("no home")):
            with pytest.raises(RuntimeError):
                settings.get_default_record_path()


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
