"""Export job records plus the registry that hands out and expires artifacts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict
from uuid import uuid4

from scene_export import metrics
from scene_export.schemas import ExportFormat
from scene_export.workspace import WorkspaceManager

LOGGER = logging.getLogger(__name__)


class JobState(str, Enum):
    """Enumerated lifecycle states for an export job."""

    ADMITTED = "ADMITTED"
    CAPTURING = "CAPTURING"
    TRANSCODING = "TRANSCODING"
    READY = "READY"
    DELIVERED = "DELIVERED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({JobState.DELIVERED, JobState.EXPIRED, JobState.FAILED})


def new_job_id() -> str:
    """Return an unguessable job identifier (uuid4 draws from os.urandom)."""

    return uuid4().hex


@dataclass
class ExportJob:
    """One in-flight or completed export and the directory it owns."""

    job_id: str
    workspace: Path
    format: ExportFormat
    duration_ms: int
    fps: int
    wait_ms: int
    state: JobState = JobState.ADMITTED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    artifact: Path | None = None
    registered_at: datetime | None = None
    expires_at: datetime | None = None
    error: str | None = None
    reclaimed: bool = False

    def transition(self, state: JobState) -> None:
        if self.state.terminal:
            LOGGER.debug("Ignoring %s -> %s for job %s", self.state.value, state.value, self.job_id)
            return
        LOGGER.debug("Job %s: %s -> %s", self.job_id, self.state.value, state.value)
        self.state = state

    @property
    def artifact_name(self) -> str:
        return self.artifact.name if self.artifact else self.format.artifact_name

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.job_id,
            "state": self.state.value,
            "format": self.format.value,
            "duration_ms": self.duration_ms,
            "fps": self.fps,
            "wait_ms": self.wait_ms,
            "created_at": self.created_at.isoformat(),
            "registered_at": self.registered_at.isoformat() if self.registered_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "artifact": self.artifact_name,
            "error": self.error,
        }


class JobRegistry:
    """Live jobs awaiting download, each guarded by an abandonment timer.

    Every mutation of ``_jobs`` happens between awaits, so interleaved request
    handlers never observe a half-applied insert, claim or expiry. Reclamation
    is guarded by ``ExportJob.reclaimed``: whichever trigger fires first does
    the work and the other becomes a no-op.
    """

    def __init__(self, workspaces: WorkspaceManager, *, ttl_seconds: float = 300.0) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self.workspaces = workspaces
        self.ttl_seconds = ttl_seconds
        self._jobs: Dict[str, ExportJob] = {}
        self._claimed: Dict[str, ExportJob] = {}
        self._timers: Dict[str, asyncio.Task[None]] = {}

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def register(self, job: ExportJob) -> None:
        """Make ``job`` retrievable and start its abandonment timer."""

        if job.job_id in self._jobs or job.job_id in self._timers:
            raise ValueError(f"Job {job.job_id} is already registered")
        job.transition(JobState.READY)
        job.registered_at = datetime.now(timezone.utc)
        job.expires_at = job.registered_at + timedelta(seconds=self.ttl_seconds)
        self._jobs[job.job_id] = job
        self._timers[job.job_id] = asyncio.create_task(self._expire_after(job, self.ttl_seconds))
        LOGGER.info("Export %s ready; expires in %.0fs", job.job_id, self.ttl_seconds)

    def get(self, job_id: str) -> ExportJob:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise KeyError(f"Job {job_id} not found") from None

    def snapshot(self, job_id: str) -> Dict[str, Any]:
        return self.get(job_id).snapshot()

    def resolve_artifact(self, job_id: str, relative_path: str) -> Path:
        """Resolve ``relative_path`` strictly inside the job's workspace."""

        job = self.get(job_id)
        root = job.workspace.resolve()
        target = (root / relative_path).resolve()
        try:
            target.relative_to(root)
        except ValueError:
            raise FileNotFoundError(relative_path) from None
        if target == root or not target.is_file():
            raise FileNotFoundError(relative_path)
        return target

    def claim(self, job_id: str, relative_path: str) -> tuple[ExportJob, Path]:
        """Take the single download slot for ``job_id``.

        Raises KeyError for unknown or already claimed jobs and
        FileNotFoundError for paths that escape the workspace or do not exist;
        a failed lookup leaves the job retrievable.
        """

        target = self.resolve_artifact(job_id, relative_path)
        job = self._jobs.pop(job_id)
        self._claimed[job_id] = job
        LOGGER.info("Export %s claimed for download", job_id)
        return job, target

    async def finish_delivery(self, job: ExportJob) -> None:
        """Close out a download attempt, whether or not the stream completed."""

        job.transition(JobState.DELIVERED)
        self._claimed.pop(job.job_id, None)
        timer = self._timers.pop(job.job_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        await self._reclaim(job, trigger="download")

    async def close(self) -> None:
        """Cancel timers and reclaim every workspace still on disk."""

        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        pending = [*self._jobs.values(), *self._claimed.values()]
        self._jobs.clear()
        self._claimed.clear()
        for job in pending:
            job.transition(JobState.EXPIRED)
            await self._reclaim(job, trigger="shutdown")

    async def _expire_after(self, job: ExportJob, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(job.job_id, None)
        if job.state.terminal:
            return
        self._jobs.pop(job.job_id, None)
        self._claimed.pop(job.job_id, None)
        job.transition(JobState.EXPIRED)
        LOGGER.info("Export %s abandoned; reclaiming workspace", job.job_id)
        await self._reclaim(job, trigger="expiry")

    async def _reclaim(self, job: ExportJob, *, trigger: str) -> None:
        if job.reclaimed:
            return
        job.reclaimed = True
        removed = await asyncio.to_thread(self.workspaces.reclaim, job.workspace)
        if removed:
            metrics.record_reclaim(trigger)
