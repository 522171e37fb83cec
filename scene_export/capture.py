"""Capture pipeline: drive the browser, record for a fixed window, transcode."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

from scene_export import metrics
from scene_export.errors import ResourceUnavailable, TranscodeError
from scene_export.jobs import JobState
from scene_export.recorder import BrowserSession, SessionFactory
from scene_export.schemas import ExportFormat
from scene_export.transcode import Transcoder

LOGGER = logging.getLogger(__name__)

StateCallback = Callable[[JobState], None]
Sleep = Callable[[float], Awaitable[None]]


@asynccontextmanager
async def browser_session(factory: SessionFactory, fps: int) -> AsyncIterator[BrowserSession]:
    """Acquire a browser session and release it on every exit path."""

    session = factory(fps)
    try:
        await session.launch()
    except Exception as exc:
        LOGGER.exception("Browser launch failed")
        await session.close()
        raise ResourceUnavailable(f"Unable to launch browser: {exc}") from exc
    try:
        yield session
    finally:
        await session.close()
        LOGGER.debug("Browser closed")


class CapturePipeline:
    """Sequential navigate → record → (transcode) stages for one job."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        transcoder: Transcoder,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self._session_factory = session_factory
        self._transcoder = transcoder
        self._sleep = sleep or asyncio.sleep

    async def run(
        self,
        workspace: Path,
        render_url: str,
        duration_ms: int,
        fps: int,
        fmt: ExportFormat,
        on_state: StateCallback | None = None,
    ) -> Path:
        """Produce the artifact for ``fmt`` inside ``workspace`` and return its path."""

        notify = on_state or (lambda _state: None)
        recording = workspace / ExportFormat.VIDEO.artifact_name
        start = time.perf_counter()

        notify(JobState.CAPTURING)
        async with browser_session(self._session_factory, fps) as session:
            await session.navigate(render_url)
            LOGGER.info("Navigation complete")
            await session.start_capture(recording)
            await self._sleep(duration_ms / 1000)
            await session.stop_capture()
            LOGGER.info("Recording completed", extra={"output": str(recording)})

        artifact = recording
        if fmt is ExportFormat.IMAGE:
            notify(JobState.TRANSCODING)
            artifact = workspace / fmt.artifact_name
            succeeded = await self._transcoder.transcode(recording, artifact, fps)
            if not succeeded:
                raise TranscodeError(f"Unable to convert recording to {fmt.value}")
            LOGGER.info("GIF conversion completed", extra={"output": str(artifact)})

        metrics.observe_pipeline(fmt.value, time.perf_counter() - start)
        return artifact
