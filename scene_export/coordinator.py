"""End-to-end export flow: validate, admit, allocate, capture, register."""

from __future__ import annotations

import asyncio
import logging

from scene_export import metrics
from scene_export.capture import CapturePipeline
from scene_export.errors import DurationTooLong, InvalidExportRequest, RateLimited
from scene_export.jobs import ExportJob, JobRegistry, JobState, new_job_id
from scene_export.rate_limit import RateLimiter
from scene_export.schemas import ExportRequest
from scene_export.settings import CaptureSettings
from scene_export.workspace import WorkspaceManager

LOGGER = logging.getLogger(__name__)


def build_render_url(base_url: str, wait_ms: int, render_data: str) -> str:
    """Point the browser at the render target; ``render_data`` goes in verbatim."""

    return f"{base_url.rstrip('/')}/render?wait={wait_ms}#{render_data}"


class ExportCoordinator:
    """Compose admission, workspaces, the capture pipeline and the registry."""

    def __init__(
        self,
        *,
        render_base_url: str,
        limits: CaptureSettings,
        rate_limiter: RateLimiter,
        workspaces: WorkspaceManager,
        pipeline: CapturePipeline,
        registry: JobRegistry,
    ) -> None:
        self.render_base_url = render_base_url
        self.limits = limits
        self.rate_limiter = rate_limiter
        self.workspaces = workspaces
        self.pipeline = pipeline
        self.registry = registry

    def validate(self, request: ExportRequest) -> None:
        if request.duration > self.limits.max_duration_ms:
            raise DurationTooLong(request.duration, self.limits.max_duration_ms)
        if request.wait > self.limits.max_wait_ms:
            raise InvalidExportRequest(
                f"Wait is too long ({request.wait}ms > {self.limits.max_wait_ms}ms)"
            )
        if request.fps > self.limits.max_fps:
            raise InvalidExportRequest(f"fps must be at most {self.limits.max_fps}")

    async def create_export(self, request: ExportRequest, *, client_key: str) -> ExportJob:
        """Run an export to completion and register its artifact for download."""

        try:
            self.validate(request)
        except InvalidExportRequest:
            metrics.record_export("rejected")
            raise
        try:
            self.rate_limiter.enforce(client_key)
        except RateLimited:
            metrics.record_rate_limited()
            raise

        job_id = new_job_id()
        LOGGER.info(
            "Starting export process",
            extra={
                "job_id": job_id,
                "client": client_key,
                "format": request.format.value,
                "wait": request.wait,
                "duration": request.duration,
                "fps": request.fps,
            },
        )
        workspace = self.workspaces.allocate(job_id)
        job = ExportJob(
            job_id=job_id,
            workspace=workspace,
            format=request.format,
            duration_ms=request.duration,
            fps=request.fps,
            wait_ms=request.wait,
        )
        url = build_render_url(self.render_base_url, request.wait, request.render_data)
        try:
            job.artifact = await self.pipeline.run(
                workspace,
                url,
                request.duration,
                request.fps,
                request.format,
                on_state=job.transition,
            )
        except (Exception, asyncio.CancelledError) as exc:
            job.transition(JobState.FAILED)
            job.error = str(exc) or type(exc).__name__
            job.reclaimed = True
            if isinstance(exc, asyncio.CancelledError):
                LOGGER.warning("Export cancelled", extra={"job_id": job_id, "client": client_key})
            else:
                LOGGER.exception("Export failed", extra={"job_id": job_id, "client": client_key})
            # Reclaim completes even if the task is cancelled again.
            if await asyncio.shield(asyncio.to_thread(self.workspaces.reclaim, workspace)):
                metrics.record_reclaim("failure")
            metrics.record_export("failed")
            raise

        self.registry.register(job)
        metrics.record_export("ready")
        return job
