from __future__ import annotations

from pathlib import Path

import pytest

from scene_export.settings import get_settings


@pytest.fixture(autouse=True)
def _fresh_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults_match_required_capture_surface(monkeypatch, tmp_path: Path):
    for key in ("CAPTURE_VIEWPORT_WIDTH", "CAPTURE_VIEWPORT_HEIGHT", "CAPTURE_DEVICE_SCALE_FACTOR"):
        monkeypatch.delenv(key, raising=False)

    settings = get_settings(str(tmp_path / "missing.env"))

    assert settings.capture.viewport_width == 1920
    assert settings.capture.viewport_height == 1080
    assert settings.capture.device_scale_factor == 2


def test_environment_overrides(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("UI_APP_URL", "https://render.example.com/")
    monkeypatch.setenv("MAX_TIME_TO_RECORD", "15000")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "3")
    monkeypatch.setenv("EXPORT_TEMP_ROOT", str(tmp_path / "exports"))

    settings = get_settings(str(tmp_path / "missing.env"))

    assert settings.render.base_url == "https://render.example.com"
    assert settings.capture.max_duration_ms == 15000
    assert settings.rate_limit.max_requests == 3
    assert settings.storage.temp_root == tmp_path / "exports"


def test_env_file_is_read(monkeypatch, tmp_path: Path):
    monkeypatch.delenv("EXPORT_TTL_SECONDS", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("EXPORT_TTL_SECONDS=42\n")

    settings = get_settings(str(env_file))

    assert settings.storage.ttl_seconds == 42.0


def test_non_positive_limits_are_rejected(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "0")

    with pytest.raises(ValueError, match="RATE_LIMIT_WINDOW_MS"):
        get_settings(str(tmp_path / "missing.env"))
