"""
Status normalization for steps and tasks.

Raw status strings only enter the rest of the engine through
:func:`normalize_step_status` (for steps) and :func:`normalize_task_status`
(for the task as a whole).
"""

from __future__ import annotations

from typing import Literal

StepStatusVariant = Literal[
    "pending", "processing", "completed", "failed", "cancelled", "skipped"
]

STEP_STATUS_VARIANTS: tuple[StepStatusVariant, ...] = (
    "pending",
    "processing",
    "completed",
    "failed",
    "cancelled",
    "skipped",
)

_STATUS_MAP: dict[str, StepStatusVariant] = {
    "completed": "completed",
    "complete": "completed",
    "success": "completed",
    "processing": "processing",
    "in_progress": "processing",
    "running": "processing",
    "failed": "failed",
    "error": "failed",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "skipped": "skipped",
    "queued": "pending",
    "waiting": "pending",
    "pending": "pending",
}

# Task-level statuses that keep a task under observation
ACTIVE_TASK_STATUSES = frozenset(
    {"processing", "queued", "pending", "failed", "uploaded", "cancelling"}
)
TERMINAL_TASK_STATUSES = frozenset({"completed", "cancelled"})


def _clean_str(value: object) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def normalize_step_status(status: object | None) -> StepStatusVariant:
    """Normalize a raw status string into the canonical set used by the UI."""
    key = _clean_str(status)
    if key is None:
        return "pending"
    return _STATUS_MAP.get(key.lower(), "pending")


def normalize_task_status(status: object | None) -> str:
    """Lower-case and trim a task status; missing values read as ``unknown``."""
    key = _clean_str(status)
    if key is None:
        return "unknown"
    return key.lower()
