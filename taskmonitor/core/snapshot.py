"""
Progress snapshot assembly.

Turns one raw task record, as returned by the task API, into a
``ProgressSnapshot``:

    steps (located or inferred) -> sort -> cascade -> progress -> projection

The function is pure: equivalent input always yields an identical snapshot.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from loguru import logger

from taskmonitor.core.progress_utils import (
    apply_failure_cascade,
    compute_progress,
    normalize_errors,
)
from taskmonitor.core.projector import FILENAME_PLACEHOLDER, project_task_details
from taskmonitor.core.step_inference import infer_steps, resolve_task_type
from taskmonitor.core.step_order import sort_steps
from taskmonitor.core.step_status import normalize_task_status
from taskmonitor.schemas.progress import (
    CanonicalStep,
    ProgressSnapshot,
    TaskDetailFields,
)

# Keys some worker versions used instead of ``steps`` inside detailed_state
LEGACY_STEP_KEYS = ("processingSteps", "pipeline_steps", "workflow")


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def resolve_state(task: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the task's state record (``detailed_state`` preferred)."""
    return _mapping(task.get("detailed_state")) or _mapping(task.get("state"))


def extract_steps(
    task: Mapping[str, Any], state: Mapping[str, Any] | None = None
) -> dict[str, Any]:
    """Return the first non-empty step map found on the task, or ``{}``."""
    if state is None:
        state = resolve_state(task)
    detailed = _mapping(task.get("detailed_state"))
    candidates = [
        state.get("steps"),
        _mapping(task.get("state")).get("steps"),
        detailed.get("steps"),
        task.get("steps"),
        *(detailed.get(key) for key in LEGACY_STEP_KEYS),
    ]
    for candidate in candidates:
        if isinstance(candidate, Mapping) and candidate:
            return dict(candidate)
    return {}


def build_progress_snapshot(task: Mapping[str, Any] | None) -> ProgressSnapshot:
    """Reconcile a raw task record into a render-ready snapshot."""
    if not isinstance(task, Mapping):
        return ProgressSnapshot(
            projected_fields=TaskDetailFields(filename=FILENAME_PLACEHOLDER)
        )

    state = resolve_state(task)
    steps = extract_steps(task, state)
    if not steps:
        steps = infer_steps(task, state)

    created_at = _str_or_none(state.get("created_at")) or _str_or_none(
        task.get("created_at")
    )
    updated_at = (
        _str_or_none(state.get("updated_at"))
        or _str_or_none(task.get("updated_at"))
        or created_at
    )
    current_step = _str_or_none(state.get("current_step")) or _str_or_none(
        task.get("current_step")
    )
    raw_errors = state.get("errors")
    if not isinstance(raw_errors, list):
        raw_errors = task.get("errors")
    errors = normalize_errors(raw_errors, current_step, updated_at)

    canonical_steps = apply_failure_cascade(sort_steps(steps), errors)
    progress = compute_progress(task, state, steps)

    fields = project_task_details(task)
    if fields.task_type is None:
        fields = fields.model_copy(
            update={"task_type": resolve_task_type(task, state)}
        )
    else:
        fields = fields.model_copy(update={"task_type": fields.task_type.lower()})

    snapshot = ProgressSnapshot(
        task_id=_str_or_none(task.get("task_id")) or _str_or_none(task.get("id")),
        upload_id=_str_or_none(task.get("upload_id")),
        status=normalize_task_status(task.get("status") or state.get("status")),
        progress_percent=progress,
        current_step=current_step,
        steps=canonical_steps,
        errors=tuple(errors),
        projected_fields=fields,
        created_at=created_at,
        updated_at=updated_at,
    )
    logger.debug(
        f"Reconciled task {snapshot.task_id}: status={snapshot.status} "
        f"progress={snapshot.progress_percent} steps={len(snapshot.steps)}"
    )
    return snapshot


def with_status(snapshot: ProgressSnapshot, status: str) -> ProgressSnapshot:
    """Copy of ``snapshot`` carrying a new task status."""
    return snapshot.model_copy(update={"status": normalize_task_status(status)})


def reset_snapshot_from_step(
    snapshot: ProgressSnapshot, start_step: str | None
) -> ProgressSnapshot:
    """Optimistic view of a retry resuming at ``start_step``.

    Steps from ``start_step`` onward (pipeline order) go back to pending unless
    skipped, their errors are dropped and the task reads as processing. An
    unknown or missing step falls back to the failed step, then the first one.
    """
    names = [step.name for step in snapshot.steps]
    if start_step not in names:
        start_step = snapshot.failed_step or (names[0] if names else None)
    if start_step is None:
        return with_status(snapshot, "processing")

    start_index = names.index(start_step)
    reset_names: set[str] = set()
    steps: list[CanonicalStep] = []
    for index, step in enumerate(snapshot.steps):
        if index < start_index or step.status == "skipped":
            steps.append(step)
            continue
        reset_names.add(step.name)
        steps.append(CanonicalStep(name=step.name, status="pending"))

    errors = tuple(error for error in snapshot.errors if error.step not in reset_names)
    return snapshot.model_copy(
        update={
            "status": "processing",
            "current_step": start_step,
            "steps": tuple(steps),
            "errors": errors,
        }
    )
