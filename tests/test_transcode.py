from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from scene_export import transcode
from scene_export.transcode import FfmpegTranscoder, build_transcode_command


class _FakeProcess:
    def __init__(self, returncode: int, stderr: bytes = b"", delay: float = 0.0) -> None:
        self._final_returncode = returncode
        self.returncode: int | None = None
        self._stderr = stderr
        self._delay = delay
        self.killed = False

    async def communicate(self):
        await asyncio.sleep(self._delay)
        self.returncode = self._final_returncode
        return b"", self._stderr

    def kill(self) -> None:
        self.killed = True

    async def wait(self) -> int:
        self.returncode = -9
        return self.returncode


def _patch_exec(monkeypatch, process: _FakeProcess | None, seen: list[tuple[str, ...]]):
    async def fake_exec(*args, **kwargs):  # noqa: ANN002, ANN003
        seen.append(args)
        if process is None:
            raise FileNotFoundError(args[0])
        return process

    monkeypatch.setattr(transcode.asyncio, "create_subprocess_exec", fake_exec)


def test_command_matches_gif_conversion_flags(tmp_path: Path):
    command = build_transcode_command("ffmpeg", tmp_path / "output.mp4", tmp_path / "output.gif", 30)

    assert command[0] == "ffmpeg"
    assert command[command.index("-i") + 1] == str(tmp_path / "output.mp4")
    assert command[command.index("-r") + 1] == "30"
    assert command[command.index("-qscale") + 1] == "0"
    assert command[-1] == str(tmp_path / "output.gif")


@pytest.mark.asyncio
async def test_successful_transcode(monkeypatch, tmp_path: Path):
    seen: list[tuple[str, ...]] = []
    _patch_exec(monkeypatch, _FakeProcess(0), seen)

    ok = await FfmpegTranscoder("/opt/ffmpeg").transcode(tmp_path / "in.mp4", tmp_path / "out.gif", 15)

    assert ok is True
    assert seen[0][0] == "/opt/ffmpeg"


@pytest.mark.asyncio
async def test_non_zero_exit_is_failure(monkeypatch, tmp_path: Path, caplog):
    _patch_exec(monkeypatch, _FakeProcess(1, stderr=b"Invalid data found"), [])

    ok = await FfmpegTranscoder().transcode(tmp_path / "in.mp4", tmp_path / "out.gif", 15)

    assert ok is False
    assert "Invalid data found" in caplog.text


@pytest.mark.asyncio
async def test_missing_binary_is_failure(monkeypatch, tmp_path: Path):
    _patch_exec(monkeypatch, None, [])

    assert await FfmpegTranscoder("missing-ffmpeg").transcode(tmp_path / "a", tmp_path / "b", 10) is False


@pytest.mark.asyncio
async def test_timeout_kills_the_process(monkeypatch, tmp_path: Path):
    process = _FakeProcess(0, delay=1.0)
    _patch_exec(monkeypatch, process, [])

    ok = await FfmpegTranscoder(timeout_seconds=0.05).transcode(tmp_path / "a", tmp_path / "b", 10)

    assert ok is False
    assert process.killed
