"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "RenderSettings",
    "CaptureSettings",
    "RateLimitSettings",
    "StorageSettings",
    "ServerSettings",
    "TelemetrySettings",
    "Settings",
    "load_config",
    "get_settings",
]


@dataclass(frozen=True, slots=True)
class RenderSettings:
    """Where the external render target lives."""

    base_url: str


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """Browser surface, recording bounds and encoder knobs."""

    playwright_channel: str
    viewport_width: int
    viewport_height: int
    device_scale_factor: int
    navigation_timeout_ms: int
    max_duration_ms: int
    max_wait_ms: int
    max_fps: int
    ffmpeg_binary: str
    transcode_timeout_seconds: float


@dataclass(frozen=True, slots=True)
class RateLimitSettings:
    """Tumbling-window admission limits per client."""

    window_ms: int
    max_requests: int


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Filesystem layout and retention for export workspaces."""

    temp_root: Path
    ttl_seconds: float


@dataclass(frozen=True, slots=True)
class ServerSettings:
    host: str
    port: int
    log_level: str
    log_file: Path | None


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    """Port for the auxiliary Prometheus exporter (0 disables it)."""

    prometheus_port: int


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    render: RenderSettings
    capture: CaptureSettings
    rate_limit: RateLimitSettings
    storage: StorageSettings
    server: ServerSettings
    telemetry: TelemetrySettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the repository .env file.

    Process environment variables always win; a missing .env file simply
    means every value comes from the environment or its default.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _float(cfg: DecoupleConfig, key: str, *, default: float) -> float:
    return cfg(key, cast=float, default=default)


def _positive(name: str, value: int | float) -> None:
    if value <= 0:
        msg = f"{name} must be positive, got {value}"
        raise ValueError(msg)


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    render = RenderSettings(
        base_url=cfg("UI_APP_URL", default="http://localhost:3000").rstrip("/"),
    )
    capture = CaptureSettings(
        playwright_channel=cfg("PLAYWRIGHT_CHANNEL", default="chromium"),
        viewport_width=_int(cfg, "CAPTURE_VIEWPORT_WIDTH", default=1920),
        viewport_height=_int(cfg, "CAPTURE_VIEWPORT_HEIGHT", default=1080),
        device_scale_factor=_int(cfg, "CAPTURE_DEVICE_SCALE_FACTOR", default=2),
        navigation_timeout_ms=_int(cfg, "NAVIGATION_TIMEOUT_MS", default=30_000),
        max_duration_ms=_int(cfg, "MAX_TIME_TO_RECORD", default=10_000),
        max_wait_ms=_int(cfg, "MAX_PREROLL_WAIT_MS", default=30_000),
        max_fps=_int(cfg, "MAX_FPS", default=60),
        ffmpeg_binary=cfg("FFMPEG_BINARY", default="ffmpeg"),
        transcode_timeout_seconds=_float(cfg, "TRANSCODE_TIMEOUT_SECONDS", default=120.0),
    )
    rate_limit = RateLimitSettings(
        window_ms=_int(cfg, "RATE_LIMIT_WINDOW_MS", default=60_000),
        max_requests=_int(cfg, "RATE_LIMIT_MAX_REQUESTS", default=10),
    )
    storage = StorageSettings(
        temp_root=Path(cfg("EXPORT_TEMP_ROOT", default="temp")),
        ttl_seconds=_float(cfg, "EXPORT_TTL_SECONDS", default=300.0),
    )
    log_file = cfg("LOG_FILE", default="")
    server = ServerSettings(
        host=cfg("HOST", default="127.0.0.1"),
        port=_int(cfg, "PORT", default=8000),
        log_level=cfg("LOG_LEVEL", default="info").lower(),
        log_file=Path(log_file) if log_file else None,
    )
    telemetry = TelemetrySettings(
        prometheus_port=_int(cfg, "PROMETHEUS_PORT", default=0),
    )

    _positive("RATE_LIMIT_WINDOW_MS", rate_limit.window_ms)
    _positive("RATE_LIMIT_MAX_REQUESTS", rate_limit.max_requests)
    _positive("MAX_TIME_TO_RECORD", capture.max_duration_ms)
    _positive("MAX_FPS", capture.max_fps)
    _positive("EXPORT_TTL_SECONDS", storage.ttl_seconds)

    return Settings(
        env_path=env_path,
        render=render,
        capture=capture,
        rate_limit=rate_limit,
        storage=storage,
        server=server,
        telemetry=telemetry,
    )

