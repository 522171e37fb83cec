"""Playwright browser sessions that record the page through the DevTools screencast."""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from pathlib import Path
from typing import Any, Callable, Protocol

from playwright.async_api import (
    Browser,
    BrowserContext,
    CDPSession,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
)

from scene_export.errors import CaptureError, NavigationError
from scene_export.settings import CaptureSettings

LOGGER = logging.getLogger(__name__)


class BrowserSession(Protocol):
    """Capability contract the capture pipeline drives."""

    async def launch(self) -> None: ...

    async def navigate(self, url: str) -> None: ...

    async def start_capture(self, output_path: Path) -> None: ...

    async def stop_capture(self) -> None: ...

    async def close(self) -> None: ...


SessionFactory = Callable[[int], BrowserSession]


def frames_due(started_at: float, timestamp: float, fps: int, written: int) -> int:
    """How many copies of the current frame keep the output at a constant ``fps``."""

    return max(0, round((timestamp - started_at) * fps) - written)


def build_encoder_command(binary: str, output_path: Path, fps: int) -> list[str]:
    return [
        binary,
        "-y",
        "-loglevel",
        "error",
        "-f",
        "image2pipe",
        "-framerate",
        str(fps),
        "-c:v",
        "mjpeg",
        "-i",
        "-",
        "-c:v",
        "libx264",
        "-pix_fmt",
        "yuv420p",
        "-vf",
        "pad=ceil(iw/2)*2:ceil(ih/2)*2",
        "-r",
        str(fps),
        str(output_path),
    ]


class ScreencastRecorder:
    """Pipe screencast frames into an ffmpeg encoder at a constant frame rate.

    Chromium only emits a frame when the surface changes, so the last frame is
    repeated to fill the gaps between frame timestamps.
    """

    def __init__(
        self,
        page: Page,
        *,
        fps: int,
        ffmpeg_binary: str,
        max_width: int,
        max_height: int,
    ) -> None:
        self.page = page
        self.fps = fps
        self.ffmpeg_binary = ffmpeg_binary
        self.max_width = max_width
        self.max_height = max_height
        self._cdp: CDPSession | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._frames: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._writer: asyncio.Task[None] | None = None
        self._active = False
        self._started_at = 0.0
        self._written = 0
        self._pending: bytes | None = None

    async def start(self, output_path: Path) -> None:
        command = build_encoder_command(self.ffmpeg_binary, output_path, self.fps)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise CaptureError(f"Encoder binary {self.ffmpeg_binary} not found") from exc

        try:
            self._cdp = await self.page.context.new_cdp_session(self.page)
            self._cdp.on("Page.screencastFrame", self._on_frame)
            self._active = True
            self._started_at = time.time()
            self._writer = asyncio.create_task(self._drain_frames())
            await self._cdp.send(
                "Page.startScreencast",
                {
                    "format": "jpeg",
                    "quality": 90,
                    "maxWidth": self.max_width,
                    "maxHeight": self.max_height,
                    "everyNthFrame": 1,
                },
            )
        except PlaywrightError as exc:
            await self.abort()
            raise CaptureError(f"Unable to start screencast: {exc}") from exc

    async def stop(self) -> None:
        if self._process is None or self._cdp is None:
            raise CaptureError("Recorder was not started")
        stopped_at = time.time()
        self._active = False
        try:
            await self._cdp.send("Page.stopScreencast")
        except PlaywrightError as exc:
            LOGGER.warning("stopScreencast failed: %s", exc)
        self._frames.put_nowait(None)
        try:
            if self._writer is not None:
                await self._writer
            if self._pending is None:
                raise CaptureError("No frames were captured")
            await self._write(self._pending, max(1, frames_due(self._started_at, stopped_at, self.fps, self._written)))
        except (BrokenPipeError, ConnectionResetError, PlaywrightError) as exc:
            await self.abort()
            raise CaptureError(f"Recording could not be finalized: {exc}") from exc
        except CaptureError:
            await self.abort()
            raise

        _, stderr = await self._process.communicate()
        if self._process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
            raise CaptureError(f"Encoder failed with exit code {self._process.returncode}: {message}")
        LOGGER.debug("Encoded %d frames at %d fps", self._written, self.fps)

    async def abort(self) -> None:
        """Tear down the encoder without producing output."""

        self._active = False
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except (asyncio.CancelledError, Exception):  # noqa: BLE001 - abort path only
                pass
        if self._process is not None and self._process.returncode is None:
            self._process.kill()
            await self._process.wait()

    def _on_frame(self, params: dict[str, Any]) -> None:
        self._frames.put_nowait(params)

    async def _drain_frames(self) -> None:
        while True:
            params = await self._frames.get()
            if params is None:
                return
            if self._active and self._cdp is not None:
                await self._cdp.send("Page.screencastFrameAck", {"sessionId": params["sessionId"]})
            timestamp = (params.get("metadata") or {}).get("timestamp") or time.time()
            await self._emit(base64.b64decode(params["data"]), float(timestamp))

    async def _emit(self, frame: bytes, timestamp: float) -> None:
        if self._pending is not None:
            await self._write(self._pending, frames_due(self._started_at, timestamp, self.fps, self._written))
        self._pending = frame

    async def _write(self, frame: bytes, copies: int) -> None:
        if self._process is None or self._process.stdin is None:
            raise CaptureError("Encoder is not running")
        for _ in range(copies):
            self._process.stdin.write(frame)
            await self._process.stdin.drain()
        self._written += copies


class PlaywrightSession:
    """Headless Chromium with a fixed high-density surface."""

    def __init__(self, settings: CaptureSettings, *, fps: int) -> None:
        self.settings = settings
        self.fps = fps
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._recorder: ScreencastRecorder | None = None

    async def launch(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await _launch_browser(self._playwright, self.settings.playwright_channel)
        self._context = await self._browser.new_context(
            viewport={"width": self.settings.viewport_width, "height": self.settings.viewport_height},
            device_scale_factor=self.settings.device_scale_factor,
            locale="en-US",
        )
        self._page = await self._context.new_page()
        LOGGER.debug("Browser page initialized")

    async def navigate(self, url: str) -> None:
        page = self._require_page()
        try:
            await page.goto(url, wait_until="load", timeout=self.settings.navigation_timeout_ms)
        except PlaywrightError as exc:
            raise NavigationError(f"Navigation to render target failed: {exc}") from exc

    async def start_capture(self, output_path: Path) -> None:
        page = self._require_page()
        self._recorder = ScreencastRecorder(
            page,
            fps=self.fps,
            ffmpeg_binary=self.settings.ffmpeg_binary,
            max_width=self.settings.viewport_width * self.settings.device_scale_factor,
            max_height=self.settings.viewport_height * self.settings.device_scale_factor,
        )
        await self._recorder.start(output_path)

    async def stop_capture(self) -> None:
        if self._recorder is None:
            raise CaptureError("Capture was never started")
        recorder, self._recorder = self._recorder, None
        await recorder.stop()

    async def close(self) -> None:
        if self._recorder is not None:
            await self._recorder.abort()
            self._recorder = None
        for resource in (self._context, self._browser):
            if resource is None:
                continue
            try:
                await resource.close()
            except PlaywrightError as exc:
                LOGGER.warning("Error while closing browser resource: %s", exc)
        if self._playwright is not None:
            await self._playwright.stop()
        self._page = self._context = self._browser = self._playwright = None

    def _require_page(self) -> Page:
        if self._page is None:
            raise CaptureError("Browser session is not launched")
        return self._page


def playwright_session_factory(settings: CaptureSettings) -> SessionFactory:
    def _factory(fps: int) -> BrowserSession:
        return PlaywrightSession(settings, fps=fps)

    return _factory


_CHANNEL_ALIASES = {
    "cft": "chrome",
    "chrome-for-testing": "chrome",
}


async def _launch_browser(playwright: Playwright, channel: str) -> Browser:
    normalized = _normalize_channel(channel)
    LOGGER.debug("launching chromium", extra={"channel": normalized})
    if normalized == "chromium":
        return await playwright.chromium.launch(headless=True)
    return await playwright.chromium.launch(channel=normalized, headless=True)


def _normalize_channel(channel: str) -> str:
    if not channel:
        return "chromium"
    lowered = channel.strip().lower()
    return _CHANNEL_ALIASES.get(lowered, lowered)
