"""Entry point for the FastAPI application."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, BinaryIO

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import start_http_server
from prometheus_fastapi_instrumentator import Instrumentator

from scene_export.capture import CapturePipeline
from scene_export.coordinator import ExportCoordinator
from scene_export.errors import ExportError, InvalidExportRequest, RateLimited
from scene_export.jobs import ExportJob, JobRegistry
from scene_export.rate_limit import RateLimiter, client_key_for
from scene_export.recorder import playwright_session_factory
from scene_export.schemas import ExportCreatedResponse, ExportRequest
from scene_export.settings import Settings, get_settings
from scene_export.transcode import FfmpegTranscoder
from scene_export.workspace import WorkspaceManager

LOGGER = logging.getLogger(__name__)
_CHUNK_SIZE = 64 * 1024
_PROMETHEUS_EXPORTER_STARTED = False


def _start_prometheus_exporter(port: int) -> None:
    """Expose Prometheus metrics on the configured auxiliary port."""

    global _PROMETHEUS_EXPORTER_STARTED
    if _PROMETHEUS_EXPORTER_STARTED or port <= 0:
        return
    try:
        start_http_server(port)
    except OSError as exc:  # pragma: no cover - system dependent
        LOGGER.warning("Prometheus exporter failed to bind on port %s: %s", port, exc)
        return
    _PROMETHEUS_EXPORTER_STARTED = True
    LOGGER.info("Prometheus exporter listening on port %s", port)


def build_coordinator(settings: Settings, *, pipeline: CapturePipeline | None = None) -> ExportCoordinator:
    workspaces = WorkspaceManager(settings.storage.temp_root)
    pipeline = pipeline or CapturePipeline(
        session_factory=playwright_session_factory(settings.capture),
        transcoder=FfmpegTranscoder(
            settings.capture.ffmpeg_binary,
            timeout_seconds=settings.capture.transcode_timeout_seconds,
        ),
    )
    return ExportCoordinator(
        render_base_url=settings.render.base_url,
        limits=settings.capture,
        rate_limiter=RateLimiter.from_settings(settings.rate_limit),
        workspaces=workspaces,
        pipeline=pipeline,
        registry=JobRegistry(workspaces, ttl_seconds=settings.storage.ttl_seconds),
    )


def create_app(
    settings: Settings | None = None,
    *,
    coordinator: ExportCoordinator | None = None,
    instrument: bool = True,
) -> FastAPI:
    """Build the HTTP surface around a coordinator owned by this app instance."""

    active_settings = settings or get_settings()
    active_coordinator = coordinator or build_coordinator(active_settings)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        _start_prometheus_exporter(active_settings.telemetry.prometheus_port)
        await asyncio.to_thread(active_coordinator.workspaces.purge_orphans)
        yield
        # Reclaim whatever is still waiting for a download
        await active_coordinator.registry.close()

    app = FastAPI(title="Scene Export", lifespan=_lifespan)
    app.state.coordinator = active_coordinator
    app.state.settings = active_settings

    if instrument:
        instrumentator = Instrumentator(should_instrument_requests_inprogress=True)
        instrumentator.instrument(app)
        instrumentator.expose(app, include_in_schema=False, should_gzip=True)

    @app.exception_handler(InvalidExportRequest)
    async def _invalid_request(_: Request, exc: InvalidExportRequest) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})

    @app.exception_handler(RateLimited)
    async def _rate_limited(_: Request, exc: RateLimited) -> JSONResponse:
        headers = {
            "X-RateLimit-Limit": str(exc.stats["limit"]),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(exc.stats["reset"]),
            "Retry-After": str(exc.stats.get("retry_after", 1)),
        }
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"error": "Rate limit exceeded. Please try again later."},
            headers=headers,
        )

    @app.exception_handler(ExportError)
    async def _export_failed(_: Request, exc: ExportError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Export failed"})

    @app.get("/", tags=["health"])
    async def liveness() -> dict[str, str]:
        """Return a simple status useful for smoke tests."""

        return {"status": "ok"}

    @app.post(
        "/export",
        response_model=ExportCreatedResponse,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def create_export(payload: ExportRequest, request: Request) -> ExportCreatedResponse | JSONResponse:
        coordinator: ExportCoordinator = request.app.state.coordinator
        try:
            job = await coordinator.create_export(payload, client_key=client_key_for(request))
        except ExportError:
            raise
        except Exception:
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "Export failed"},
            )
        return ExportCreatedResponse(
            job_id=job.job_id,
            expires_in=int(coordinator.registry.ttl_seconds),
            artifact=job.artifact_name,
            download_url=f"/export/{job.job_id}/{job.artifact_name}",
        )

    @app.get("/export/{job_id}/{artifact_path:path}")
    async def download_export(job_id: str, artifact_path: str, request: Request) -> StreamingResponse:
        registry = request.app.state.coordinator.registry
        try:
            job, target = registry.claim(job_id, artifact_path)
        except (KeyError, FileNotFoundError) as exc:
            raise HTTPException(status_code=404, detail="Artifact not found") from exc
        try:
            handle = target.open("rb")
        except OSError as exc:
            await registry.finish_delivery(job)
            raise HTTPException(status_code=404, detail="Artifact not found") from exc

        return StreamingResponse(
            _stream_then_reclaim(registry, job, handle),
            media_type=job.format.media_type,
            headers={
                "Content-Disposition": f'attachment; filename="{target.name}"',
                "Content-Length": str(target.stat().st_size),
            },
        )

    return app


async def _stream_then_reclaim(registry: JobRegistry, job: ExportJob, handle: BinaryIO) -> AsyncIterator[bytes]:
    try:
        while True:
            chunk = await asyncio.to_thread(handle.read, _CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    except Exception:
        LOGGER.exception("Error sending file", extra={"job_id": job.job_id})
        raise
    finally:
        handle.close()
        # Shielded so a client disconnect cannot cancel the cleanup itself
        await asyncio.shield(registry.finish_delivery(job))


app = create_app()
