"""
Task detail projection.

Where a scalar like the voice id lives depends on which API version, task type
and worker produced the record: ``voice_id`` at the top level, under
``kwargs``, inside ``task_config.video``, in a step's ``data``... Each field is
resolved independently by probing a prioritized path table against a fixed,
ordered list of candidate roots, then falling back to a bounded breadth-first
key search.
"""

from __future__ import annotations

import math
import posixpath
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from loguru import logger

from taskmonitor.core.step_order import sort_steps
from taskmonitor.schemas.progress import TaskDetailFields

MAX_SEARCH_DEPTH = 6
FILENAME_PLACEHOLDER = "Processing file"

# Sub-objects of a task/state record that carry run configuration
CONFIG_BAGS = ("kwargs", "task_kwargs", "config", "task_config", "settings")
NESTED_RESULT_KEYS = ("result", "output")
OBJECT_VALUE_KEYS = ("id", "voice_id", "value", "name")

# Paths are tried against every root in order; most specific first
FIELD_PATHS: dict[str, tuple[str, ...]] = {
    "filename": (
        "filename",
        "kwargs.filename",
        "upload.filename",
        "state.filename",
        "original_filename",
        "file_name",
        "file.name",
    ),
    "file_ext": (
        "file_ext",
        "kwargs.file_ext",
        "upload.file_ext",
        "state.file_ext",
        "file.ext",
    ),
    "voice_language": (
        "voice_language",
        "kwargs.voice_language",
        "task_config.voice_language",
        "config.voice.language",
        "task_config.video.voice_language",
        "settings.voice_language",
    ),
    "subtitle_language": (
        "subtitle_language",
        "kwargs.subtitle_language",
        "task_config.subtitle_language",
        "config.subtitles.language",
        "task_config.video.subtitle_language",
        "settings.subtitle_language",
    ),
    "transcript_language": (
        "transcript_language",
        "podcast_transcript_language",
        "kwargs.transcript_language",
        "task_config.transcript_language",
        "config.podcast.transcript_language",
        "task_config.podcast.transcript_language",
    ),
    "voice_id": (
        "voice_id",
        "kwargs.voice_id",
        "task_kwargs.voice_id",
        "config.voice.id",
        "config.voice_id",
        "task_config.voice_id",
        "task_config.video.voice_id",
        "settings.voice_id",
        "voice",
    ),
    "podcast_host_voice": (
        "podcast_host_voice",
        "kwargs.podcast_host_voice",
        "task_kwargs.podcast_host_voice",
        "task_config.podcast_host_voice",
        "config.podcast.host_voice",
        "task_config.podcast.host_voice",
        "host_voice",
        "voices.host",
        "voices.0",
    ),
    "podcast_guest_voice": (
        "podcast_guest_voice",
        "kwargs.podcast_guest_voice",
        "task_kwargs.podcast_guest_voice",
        "task_config.podcast_guest_voice",
        "config.podcast.guest_voice",
        "task_config.podcast.guest_voice",
        "guest_voice",
        "voices.guest",
        "voices.1",
    ),
    "task_type": (
        "task_type",
        "kwargs.task_type",
        "task_config.task_type",
    ),
}

# Key names accepted by the fallback search, compared case-insensitively
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "filename": ("filename", "file_name"),
    "file_ext": ("file_ext", "fileext", "file_extension"),
    "voice_language": ("voice_language", "voicelanguage"),
    "subtitle_language": ("subtitle_language", "subtitlelanguage"),
    "transcript_language": ("transcript_language", "transcriptlanguage"),
    "voice_id": ("voice_id", "voiceid"),
    "podcast_host_voice": ("podcast_host_voice", "host_voice", "hostvoice"),
    "podcast_guest_voice": ("podcast_guest_voice", "guest_voice", "guestvoice"),
    "task_type": ("task_type", "tasktype"),
}


def _mapping(value: Any) -> Mapping[str, Any] | None:
    return value if isinstance(value, Mapping) else None


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, str | bytes)


def candidate_roots(task: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    """Return the mappings searched for each field, highest priority first."""
    detailed = _mapping(task.get("detailed_state"))
    state = detailed or _mapping(task.get("state")) or {}

    roots: list[Mapping[str, Any]] = [state]
    for owner in (state, task):
        for bag in CONFIG_BAGS:
            sub = _mapping(owner.get(bag))
            if sub is not None:
                roots.append(sub)
    roots.append(task)
    if detailed is not None:
        roots.append(detailed)
    for owner in (state, task):
        for key in NESTED_RESULT_KEYS:
            sub = _mapping(owner.get(key))
            if sub is not None:
                roots.append(sub)

    steps = _mapping(state.get("steps")) or _mapping(task.get("steps"))
    for _name, step in sort_steps(steps):
        if not isinstance(step, Mapping):
            continue
        for key in ("data", "result"):
            sub = _mapping(step.get(key))
            if sub is not None:
                roots.append(sub)

    # The same object can be reachable several ways (state is often the task's
    # own detailed_state); keep the first occurrence only.
    unique: list[Mapping[str, Any]] = []
    seen: set[int] = set()
    for root in roots:
        if id(root) not in seen:
            seen.add(id(root))
            unique.append(root)
    return unique


def coerce_scalar(value: Any, _depth: int = 0) -> str | None:
    """Reduce a raw value to a display scalar.

    Strings are stripped, finite numbers stringified, sequences resolve to
    their first resolvable element and mappings to a conventional sub-key.
    """
    if _depth > MAX_SEARCH_DEPTH:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, int | float):
        if not math.isfinite(value):
            return None
        return str(int(value)) if float(value).is_integer() else str(value)
    if isinstance(value, Mapping):
        for key in OBJECT_VALUE_KEYS:
            if key in value:
                resolved = coerce_scalar(value[key], _depth + 1)
                if resolved is not None:
                    return resolved
        return None
    if _is_sequence(value):
        for item in value:
            resolved = coerce_scalar(item, _depth + 1)
            if resolved is not None:
                return resolved
    return None


def resolve_path(root: Any, path: str) -> Any:
    """Follow a dotted path; numeric segments index into sequences."""
    current = root
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return None
            current = current[segment]
        elif _is_sequence(current) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def _match_rank(key: str, aliases: Iterable[str]) -> int | None:
    lowered = key.lower()
    best: int | None = None
    for alias in aliases:
        if lowered == alias:
            return 0
        if lowered.startswith(alias):
            rank = 1
        elif alias in lowered:
            rank = 2
        else:
            continue
        best = rank if best is None else min(best, rank)
    return best


def search_keys(
    roots: Sequence[Any],
    aliases: Sequence[str],
    max_depth: int = MAX_SEARCH_DEPTH,
) -> str | None:
    """Breadth-first search for a key matching one of ``aliases``.

    Each level is scanned completely before descending. Within a level an
    exact key match beats a prefix match, which beats a substring match.
    Objects already visited are skipped.
    """
    visited: set[int] = set()
    level: list[Any] = list(roots)
    depth = 0
    while level and depth <= max_depth:
        matches: list[tuple[int, int, Any]] = []
        next_level: list[Any] = []
        for node in level:
            if id(node) in visited:
                continue
            visited.add(id(node))
            if isinstance(node, Mapping):
                children = node.items()
            elif _is_sequence(node):
                children = ((None, item) for item in node)
            else:
                continue
            for key, value in children:
                if isinstance(key, str):
                    rank = _match_rank(key, aliases)
                    if rank is not None:
                        matches.append((rank, len(matches), value))
                if isinstance(value, Mapping) or _is_sequence(value):
                    next_level.append(value)
        for _rank, _order, value in sorted(matches, key=lambda m: (m[0], m[1])):
            resolved = coerce_scalar(value)
            if resolved is not None:
                return resolved
        level = next_level
        depth += 1
    return None


def resolve_field(
    task: Mapping[str, Any],
    field: str,
    roots: Sequence[Mapping[str, Any]] | None = None,
) -> str | None:
    """Resolve one ``TaskDetailFields`` member; ``None`` when nothing matches."""
    if roots is None:
        roots = candidate_roots(task)
    for root in roots:
        for path in FIELD_PATHS.get(field, ()):
            resolved = coerce_scalar(resolve_path(root, path))
            if resolved is not None:
                return resolved
    aliases = FIELD_ALIASES.get(field)
    if not aliases:
        return None
    return search_keys(roots, aliases)


def _with_dot(ext: str) -> str:
    return ext if ext.startswith(".") else f".{ext}"


def resolve_filename(
    task: Mapping[str, Any],
    roots: Sequence[Mapping[str, Any]] | None = None,
) -> str:
    """Resolve a display filename; always returns something renderable."""
    if roots is None:
        roots = candidate_roots(task)
    found = resolve_field(task, "filename", roots)
    if found:
        return found

    for root in roots:
        file_path = coerce_scalar(resolve_path(root, "file_path"))
        if file_path:
            basename = posixpath.basename(file_path.replace("\\", "/"))
            if basename:
                return basename

    ext = resolve_field(task, "file_ext", roots)
    upload_id = coerce_scalar(task.get("upload_id")) or coerce_scalar(
        resolve_path(task, "kwargs.upload_id")
    )
    task_id = coerce_scalar(task.get("task_id")) or coerce_scalar(task.get("id"))
    if ext:
        for identifier in (upload_id, task_id):
            if identifier:
                return f"{identifier}{_with_dot(ext)}"
    for identifier in (upload_id, task_id):
        if identifier:
            return identifier
    return FILENAME_PLACEHOLDER


def project_task_details(task: Mapping[str, Any] | None) -> TaskDetailFields:
    """Resolve every detail field of a task record independently.

    Never raises: the caller must always be able to render a task it knows.
    """
    if not isinstance(task, Mapping):
        return TaskDetailFields(filename=FILENAME_PLACEHOLDER)
    try:
        roots = candidate_roots(task)
        values: dict[str, str | None] = {
            field: resolve_field(task, field, roots)
            for field in FIELD_PATHS
            if field != "filename"
        }
        values["filename"] = resolve_filename(task, roots)
        return TaskDetailFields(**values)
    except Exception as e:
        logger.warning(f"Detail projection failed for task {task.get('task_id')}: {e}")
        return TaskDetailFields(filename=FILENAME_PLACEHOLDER)
