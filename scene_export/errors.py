"""Exception taxonomy for export requests and the capture pipeline."""

from __future__ import annotations

__all__ = [
    "ExportError",
    "InvalidExportRequest",
    "DurationTooLong",
    "RateLimited",
    "AllocationError",
    "PipelineError",
    "ResourceUnavailable",
    "NavigationError",
    "CaptureError",
    "TranscodeError",
]


class ExportError(Exception):
    """Base class for every failure surfaced by the export service."""


class InvalidExportRequest(ExportError):
    """Request parameters are out of range; rejected before allocation."""


class DurationTooLong(InvalidExportRequest):
    def __init__(self, duration_ms: int, max_duration_ms: int) -> None:
        super().__init__(f"Duration is too long ({duration_ms}ms > {max_duration_ms}ms)")
        self.duration_ms = duration_ms
        self.max_duration_ms = max_duration_ms


class RateLimited(ExportError):
    """Client exceeded its admission window."""

    def __init__(self, client_key: str, stats: dict[str, int]) -> None:
        super().__init__(f"Rate limit exceeded for {client_key}")
        self.client_key = client_key
        self.stats = stats


class AllocationError(ExportError):
    """Workspace storage could not be created."""


class PipelineError(ExportError):
    """A capture pipeline stage failed."""


class ResourceUnavailable(PipelineError):
    """The browser automation resource could not be acquired."""


class NavigationError(PipelineError):
    """The render target was unreachable or did not load in time."""


class CaptureError(PipelineError):
    """Screen recording could not be started or finalized."""


class TranscodeError(PipelineError):
    """Conversion of the recording into the requested format failed."""
