"""
Pydantic models for reconciled task progress.

All models are frozen: a snapshot is produced once per reconciliation pass and
later changes (optimistic updates, server reconciliation) go through
``model_copy`` so that every cached value stays immutable.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from taskmonitor.core.step_status import StepStatusVariant

COMPACT_STEP_KEYS = ("status", "blocked_by_failure")
COMPACT_ERROR_KEYS = ("step", "error", "timestamp")


class CanonicalStep(BaseModel):
    """A step after status normalization and failure-cascade adjustment."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: StepStatusVariant = "pending"
    blocked_by_failure: bool = False


class TaskError(BaseModel):
    model_config = ConfigDict(frozen=True)

    step: str
    error: str
    timestamp: str | None = None


class TaskDetailFields(BaseModel):
    """Scalar task fields resolved by the detail projector (``None`` = unknown)."""

    model_config = ConfigDict(frozen=True)

    filename: str | None = None
    file_ext: str | None = None
    voice_language: str | None = None
    subtitle_language: str | None = None
    transcript_language: str | None = None
    voice_id: str | None = None
    podcast_host_voice: str | None = None
    podcast_guest_voice: str | None = None
    task_type: str | None = None


class ProgressSnapshot(BaseModel):
    """Fully reconciled, render-ready view of a task at one point in time."""

    model_config = ConfigDict(frozen=True)

    task_id: str | None = None
    upload_id: str | None = None
    status: str = "unknown"
    progress_percent: int = Field(default=0, ge=0, le=100)
    current_step: str | None = None
    steps: tuple[CanonicalStep, ...] = ()
    errors: tuple[TaskError, ...] = ()
    projected_fields: TaskDetailFields = Field(default_factory=TaskDetailFields)
    created_at: str | None = None
    updated_at: str | None = None

    def get_step(self, name: str) -> CanonicalStep | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    @property
    def failed_step(self) -> str | None:
        """Name of the first failed step in pipeline order, if any."""
        for step in self.steps:
            if step.status == "failed":
                return step.name
        return None

    def to_payload(self, view: str | None = None) -> dict[str, Any]:
        """Render the snapshot for UI clients.

        Steps are keyed by name in pipeline order. ``view="compact"`` keeps only
        the per-step status/blocked flags and the core error fields.
        """
        payload: dict[str, Any] = {
            "task_id": self.task_id,
            "upload_id": self.upload_id,
            "status": self.status,
            "progress": self.progress_percent,
            "current_step": self.current_step or "unknown",
            "steps": {
                step.name: step.model_dump(exclude={"name"}) for step in self.steps
            },
            "errors": [error.model_dump() for error in self.errors],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            **self.projected_fields.model_dump(),
        }
        if view != "compact":
            return payload

        compact = {key: value for key, value in payload.items() if value is not None}
        compact["steps"] = {
            name: {
                key: data[key] for key in COMPACT_STEP_KEYS if data.get(key) is not None
            }
            for name, data in payload["steps"].items()
        }
        compact["errors"] = [
            {key: entry[key] for key in COMPACT_ERROR_KEYS if entry.get(key) is not None}
            for entry in payload["errors"]
        ]
        return compact
