from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from scene_export.jobs import ExportJob, JobRegistry, JobState, new_job_id
from scene_export.schemas import ExportFormat
from scene_export.workspace import WorkspaceManager


def _ready_job(workspaces: WorkspaceManager, *, fmt: ExportFormat = ExportFormat.VIDEO) -> ExportJob:
    job_id = new_job_id()
    workspace = workspaces.allocate(job_id)
    artifact = workspace / fmt.artifact_name
    artifact.write_bytes(b"artifact")
    return ExportJob(
        job_id=job_id,
        workspace=workspace,
        format=fmt,
        duration_ms=1000,
        fps=30,
        wait_ms=1000,
        state=JobState.CAPTURING,
        artifact=artifact,
    )


def test_job_ids_are_unique_and_opaque():
    ids = {new_job_id() for _ in range(1000)}

    assert len(ids) == 1000
    assert all(len(job_id) == 32 for job_id in ids)


@pytest.mark.asyncio
async def test_register_marks_ready_and_sets_expiry(tmp_path: Path):
    workspaces = WorkspaceManager(tmp_path)
    registry = JobRegistry(workspaces, ttl_seconds=60)
    job = _ready_job(workspaces)

    registry.register(job)

    assert job.job_id in registry
    assert job.state is JobState.READY
    assert job.registered_at is not None
    assert job.expires_at - job.registered_at == timedelta(seconds=60)
    assert job.created_at <= job.registered_at
    snapshot = registry.snapshot(job.job_id)
    assert snapshot["state"] == "READY"
    assert snapshot["registered_at"] == job.registered_at.isoformat()
    assert snapshot["artifact"] == "output.mp4"
    await registry.close()


@pytest.mark.asyncio
async def test_register_twice_is_rejected(tmp_path: Path):
    workspaces = WorkspaceManager(tmp_path)
    registry = JobRegistry(workspaces, ttl_seconds=60)
    job = _ready_job(workspaces)
    registry.register(job)

    with pytest.raises(ValueError):
        registry.register(job)
    await registry.close()


@pytest.mark.asyncio
async def test_download_reclaims_workspace_and_is_one_shot(tmp_path: Path):
    workspaces = WorkspaceManager(tmp_path)
    registry = JobRegistry(workspaces, ttl_seconds=60)
    job = _ready_job(workspaces)
    registry.register(job)

    claimed, target = registry.claim(job.job_id, "output.mp4")
    assert claimed is job
    assert target.read_bytes() == b"artifact"

    with pytest.raises(KeyError):
        registry.claim(job.job_id, "output.mp4")

    await registry.finish_delivery(job)

    assert job.state is JobState.DELIVERED
    assert not job.workspace.exists()
    with pytest.raises(KeyError):
        registry.claim(job.job_id, "output.mp4")
    await registry.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("relative", ["../escape.txt", "../../etc/passwd", "nested/../../escape.txt", "."])
async def test_claim_rejects_paths_outside_workspace(tmp_path: Path, relative: str):
    workspaces = WorkspaceManager(tmp_path / "temp")
    registry = JobRegistry(workspaces, ttl_seconds=60)
    job = _ready_job(workspaces)
    registry.register(job)
    (tmp_path / "temp" / "escape.txt").write_text("secret")

    with pytest.raises(FileNotFoundError):
        registry.claim(job.job_id, relative)

    # A rejected path does not consume the download
    assert job.job_id in registry
    await registry.close()


@pytest.mark.asyncio
async def test_claim_missing_file_is_not_found(tmp_path: Path):
    workspaces = WorkspaceManager(tmp_path)
    registry = JobRegistry(workspaces, ttl_seconds=60)
    job = _ready_job(workspaces)
    registry.register(job)

    with pytest.raises(FileNotFoundError):
        registry.claim(job.job_id, "output.gif")
    with pytest.raises(KeyError):
        registry.claim("unknown", "output.mp4")
    await registry.close()


@pytest.mark.asyncio
async def test_abandoned_job_expires_and_is_reclaimed(tmp_path: Path):
    workspaces = WorkspaceManager(tmp_path)
    registry = JobRegistry(workspaces, ttl_seconds=0.05)
    job = _ready_job(workspaces)
    registry.register(job)

    await asyncio.sleep(0.2)

    assert job.state is JobState.EXPIRED
    assert not job.workspace.exists()
    assert job.job_id not in registry
    with pytest.raises(KeyError):
        registry.claim(job.job_id, "output.mp4")


@pytest.mark.asyncio
async def test_timer_after_delivery_is_a_no_op(tmp_path: Path):
    workspaces = WorkspaceManager(tmp_path)
    registry = JobRegistry(workspaces, ttl_seconds=0.05)
    job = _ready_job(workspaces)
    registry.register(job)

    registry.claim(job.job_id, "output.mp4")
    await registry.finish_delivery(job)
    await asyncio.sleep(0.2)

    assert job.state is JobState.DELIVERED
    assert not job.workspace.exists()


@pytest.mark.asyncio
async def test_expiry_during_download_keeps_single_terminal_state(tmp_path: Path):
    workspaces = WorkspaceManager(tmp_path)
    registry = JobRegistry(workspaces, ttl_seconds=0.05)
    job = _ready_job(workspaces)
    registry.register(job)

    registry.claim(job.job_id, "output.mp4")
    await asyncio.sleep(0.2)
    assert job.state is JobState.EXPIRED
    assert not job.workspace.exists()

    await registry.finish_delivery(job)

    assert job.state is JobState.EXPIRED


@pytest.mark.asyncio
async def test_close_reclaims_outstanding_workspaces(tmp_path: Path):
    workspaces = WorkspaceManager(tmp_path)
    registry = JobRegistry(workspaces, ttl_seconds=60)
    waiting = _ready_job(workspaces)
    claimed = _ready_job(workspaces)
    registry.register(waiting)
    registry.register(claimed)
    registry.claim(claimed.job_id, "output.mp4")

    await registry.close()

    assert not waiting.workspace.exists()
    assert not claimed.workspace.exists()
    assert waiting.state is JobState.EXPIRED
    assert len(registry) == 0


def test_rejects_non_positive_ttl(tmp_path: Path):
    with pytest.raises(ValueError):
        JobRegistry(WorkspaceManager(tmp_path), ttl_seconds=0)
