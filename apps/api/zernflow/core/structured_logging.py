"""Structured logging helpers (PII-safe)."""

from typing import Any


def build_log_context(
    *,
    workspace_id: str | None = None,
    channel_id: str | None = None,
    job_id: str | None = None,
    job_type: str | None = None,
    flow_id: str | None = None,
    route: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict carrying ids only, never message content."""
    context: dict[str, Any] = {}
    if workspace_id:
        context["workspace_id"] = workspace_id
    if channel_id:
        context["channel_id"] = channel_id
    if job_id:
        context["job_id"] = job_id
    if job_type:
        context["job_type"] = job_type
    if flow_id:
        context["flow_id"] = flow_id
    if route:
        context["route"] = route
    return context
