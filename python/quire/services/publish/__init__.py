"""Publish pipeline: job registry, builder payload and the orchestrator."""

from quire.services.publish.orchestrator import PublishOrchestrator, fail_overdue_jobs
from quire.services.publish.payload import PayloadSource, build_payload, heading_tag
from quire.services.publish.registry import (
    ALLOWED_TRANSITIONS,
    JobRegistry,
    PublishJobRecord,
    parse_format,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "JobRegistry",
    "PayloadSource",
    "PublishJobRecord",
    "PublishOrchestrator",
    "build_payload",
    "fail_overdue_jobs",
    "heading_tag",
    "parse_format",
]
