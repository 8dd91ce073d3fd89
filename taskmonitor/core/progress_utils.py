"""
Progress and failure-cascade reconciliation.

Two independent computations over a task payload:

* a single 0-100 progress number picked from whichever source the backend
  filled in (explicit percentage, fraction, or step completion ratio), and
* the failure cascade: once a step is known to have failed, nothing after it
  in pipeline order may read as processing or completed, whatever a stale or
  retried payload claims.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from typing import Any

from taskmonitor.core.step_status import normalize_step_status
from taskmonitor.schemas.progress import CanonicalStep, TaskError

PROGRESS_FIELDS = ("completion_percentage", "progress")
UNKNOWN_STEP = "unknown_step"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp_percent(value: int) -> int:
    return max(0, min(100, value))


def normalize_progress_value(value: Any) -> int | None:
    """Convert a raw progress value to an integer percentage.

    Values above 1 are already percentages; values up to and including 1 are
    fractions (so ``1`` means 100%). Non-numeric, boolean and non-finite values
    yield ``None``.
    """
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if isinstance(value, int):
        # Arbitrarily large JSON integers never go through float
        return _clamp_percent(value if value > 1 else value * 100)
    if not math.isfinite(value):
        return None
    if value > 1:
        return _clamp_percent(_round_half_up(min(float(value), 100.0)))
    return _clamp_percent(_round_half_up(value * 100))


def compute_step_percentage(steps: Mapping[str, Any] | None) -> int:
    """Percentage of steps whose normalized status is ``completed``.

    Returns 0 for empty or missing step maps.
    """
    if not isinstance(steps, Mapping) or not steps:
        return 0
    completed = sum(
        1
        for step in steps.values()
        if isinstance(step, Mapping)
        and normalize_step_status(step.get("status")) == "completed"
    )
    return _clamp_percent(_round_half_up(100 * completed / len(steps)))


def compute_progress(
    task: Mapping[str, Any],
    state: Mapping[str, Any] | None,
    steps: Mapping[str, Any] | None,
) -> int:
    """Pick the progress number for a task.

    Explicit numeric fields on the task, then on its state, win over the step
    completion ratio; with neither the result is 0.
    """
    state = state if isinstance(state, Mapping) else {}
    for field in PROGRESS_FIELDS:
        for source in (task, state):
            normalized = normalize_progress_value(source.get(field))
            if normalized is not None:
                return normalized
    return compute_step_percentage(steps)


def normalize_errors(
    errors: Any,
    fallback_step: str | None = None,
    fallback_timestamp: str | None = None,
) -> list[TaskError]:
    """Turn a heterogeneous error log into ``TaskError`` entries.

    Plain strings are attributed to ``fallback_step``; mapping entries may use
    ``error`` or ``message``. Entries without any error text are dropped.
    """
    if not isinstance(errors, list):
        return []
    default_step = fallback_step or UNKNOWN_STEP
    normalized: list[TaskError] = []
    for entry in errors:
        if entry is None:
            continue
        if isinstance(entry, Mapping):
            step = entry.get("step")
            text = entry.get("error") or entry.get("message") or ""
            timestamp = entry.get("timestamp")
            normalized_entry = TaskError(
                step=str(step) if step else default_step,
                error=str(text),
                timestamp=str(timestamp) if timestamp else fallback_timestamp,
            )
        else:
            normalized_entry = TaskError(
                step=default_step, error=str(entry), timestamp=fallback_timestamp
            )
        if normalized_entry.error.strip():
            normalized.append(normalized_entry)
    return normalized


def find_failure_anchor(
    sorted_steps: Sequence[tuple[str, Any]], errors: Sequence[TaskError]
) -> str | None:
    """Locate the step a failure cascade starts from.

    The most recent error naming a step in the sequence wins; otherwise the
    first step (in pipeline order) whose status normalizes to ``failed``.
    """
    names = {name for name, _ in sorted_steps}
    for entry in reversed(errors):
        if entry.step in names:
            return entry.step
    for name, data in sorted_steps:
        raw_status = data.get("status") if isinstance(data, Mapping) else None
        if normalize_step_status(raw_status) == "failed":
            return name
    return None


def apply_failure_cascade(
    sorted_steps: Sequence[tuple[str, Any]], errors: Sequence[TaskError]
) -> tuple[CanonicalStep, ...]:
    """Produce canonical steps with the failure cascade applied.

    Steps before the anchor are never altered. The anchor is forced to
    ``failed``. Later steps are flagged as blocked (skipped steps excepted) and
    any that claim to be processing or completed are downgraded to pending.
    """
    anchor = find_failure_anchor(sorted_steps, errors)
    canonical: list[CanonicalStep] = []
    reached_anchor = False
    for name, data in sorted_steps:
        raw_status = data.get("status") if isinstance(data, Mapping) else None
        status = normalize_step_status(raw_status)
        if anchor is None or (not reached_anchor and name != anchor):
            canonical.append(CanonicalStep(name=name, status=status))
            continue
        if not reached_anchor:
            reached_anchor = True
            canonical.append(CanonicalStep(name=name, status="failed"))
            continue
        if status == "skipped":
            canonical.append(CanonicalStep(name=name, status=status))
            continue
        if status in ("processing", "completed"):
            status = "pending"
        canonical.append(
            CanonicalStep(name=name, status=status, blocked_by_failure=True)
        )
    return tuple(canonical)
