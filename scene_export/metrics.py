"""Prometheus counters and histograms for the export lifecycle."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

EXPORT_REQUESTS = Counter(
    "scene_export_requests_total",
    "Export requests by outcome",
    ["outcome"],
)
RATE_LIMIT_REJECTIONS = Counter(
    "scene_export_rate_limited_total",
    "Export requests rejected by the admission window",
)
WORKSPACE_RECLAIMS = Counter(
    "scene_export_workspace_reclaims_total",
    "Workspaces removed, labelled by the trigger that removed them",
    ["trigger"],
)
CAPTURE_SECONDS = Histogram(
    "scene_export_pipeline_seconds",
    "Wall-clock time spent in the capture pipeline",
    ["format"],
    buckets=(1, 2, 5, 10, 20, 30, 60, 120),
)


def record_export(outcome: str) -> None:
    EXPORT_REQUESTS.labels(outcome=outcome).inc()


def record_rate_limited() -> None:
    RATE_LIMIT_REJECTIONS.inc()


def record_reclaim(trigger: str) -> None:
    WORKSPACE_RECLAIMS.labels(trigger=trigger).inc()


def observe_pipeline(fmt: str, seconds: float) -> None:
    CAPTURE_SECONDS.labels(format=fmt).observe(max(0.0, seconds))
