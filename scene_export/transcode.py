"""ffmpeg-backed conversion of recordings into derived formats."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol, Sequence

LOGGER = logging.getLogger(__name__)


class Transcoder(Protocol):
    async def transcode(self, input_path: Path, output_path: Path, frame_rate: int) -> bool: ...


def build_transcode_command(binary: str, input_path: Path, output_path: Path, frame_rate: int) -> list[str]:
    return [
        binary,
        "-y",
        "-loglevel",
        "error",
        "-i",
        str(input_path),
        "-r",
        str(frame_rate),
        "-qscale",
        "0",
        str(output_path),
    ]


class FfmpegTranscoder:
    """Run ffmpeg as a subprocess without blocking the event loop."""

    def __init__(self, binary: str = "ffmpeg", *, timeout_seconds: float = 120.0) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    async def transcode(self, input_path: Path, output_path: Path, frame_rate: int) -> bool:
        command = build_transcode_command(self.binary, input_path, output_path, frame_rate)
        LOGGER.info("Starting transcode", extra={"input": str(input_path), "output": str(output_path)})
        return await _run(command, timeout_seconds=self.timeout_seconds)


async def _run(command: Sequence[str], *, timeout_seconds: float) -> bool:
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        LOGGER.error("Transcoder binary %s not found", command[0])
        return False

    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        LOGGER.error("Transcode exceeded %.0fs and was killed", timeout_seconds)
        return False

    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
        LOGGER.error("Transcode failed with exit code %s: %s", process.returncode, message)
        return False
    return True
