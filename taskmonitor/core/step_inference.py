"""
Step inference for tasks whose step map has not been populated yet.

Freshly queued tasks (and some legacy rows) come back without ``steps``. The
set the worker *will* report is fully determined by the task configuration, so
it is rebuilt here from flags alone: source kind, requested outputs and the
languages involved.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from taskmonitor.configs.config import config


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def coerce_str(*values: Any) -> str | None:
    """Return the first non-blank string among ``values``."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def coerce_bool(default: bool, *values: Any) -> bool:
    """Return the first explicit boolean among ``values``.

    Real booleans and the strings ``"true"``/``"false"`` count as explicit;
    anything else is skipped. Falls back to ``default``.
    """
    for value in values:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "true":
                return True
            if normalized == "false":
                return False
    return default


@dataclass(frozen=True)
class InferenceFlags:
    is_pdf: bool
    generate_video: bool
    generate_podcast: bool
    generate_avatar: bool
    generate_subtitles: bool
    voice_language: str
    subtitle_language: str
    transcript_language: str | None


def resolve_inference_flags(
    task: Mapping[str, Any], state: Mapping[str, Any] | None = None
) -> InferenceFlags:
    """Collect the configuration flags that determine a task's step set."""
    state = _mapping(state)
    kwargs = _mapping(task.get("kwargs"))
    task_kwargs = _mapping(task.get("task_kwargs")) or _mapping(
        state.get("task_kwargs")
    )

    def flag(name: str, default: bool) -> bool:
        return coerce_bool(
            default,
            task.get(name),
            kwargs.get(name),
            task_kwargs.get(name),
            state.get(name),
        )

    source = (
        coerce_str(
            task.get("source"),
            task.get("source_type"),
            state.get("source_type"),
            state.get("source"),
            kwargs.get("source_type"),
            task.get("file_ext"),
            state.get("file_ext"),
            kwargs.get("file_ext"),
        )
        or ""
    ).lower()

    voice_language = (
        coerce_str(
            task.get("voice_language"),
            kwargs.get("voice_language"),
            task_kwargs.get("voice_language"),
            state.get("voice_language"),
        )
        or config.baseline_language
    )
    subtitle_language = (
        coerce_str(
            task.get("subtitle_language"),
            kwargs.get("subtitle_language"),
            task_kwargs.get("subtitle_language"),
            state.get("subtitle_language"),
        )
        or voice_language
    )
    transcript_language = coerce_str(
        kwargs.get("transcript_language"),
        task_kwargs.get("transcript_language"),
        state.get("podcast_transcript_language"),
    )

    return InferenceFlags(
        is_pdf=source in ("pdf", ".pdf"),
        generate_video=flag("generate_video", True),
        generate_podcast=flag("generate_podcast", False),
        generate_avatar=flag("generate_avatar", False),
        generate_subtitles=flag("generate_subtitles", True),
        voice_language=voice_language,
        subtitle_language=subtitle_language,
        transcript_language=transcript_language,
    )


def _pending() -> dict[str, Any]:
    return {"status": "pending", "data": None}


def infer_steps(
    task: Mapping[str, Any],
    state: Mapping[str, Any] | None = None,
    *,
    baseline_language: str | None = None,
) -> dict[str, dict[str, Any]]:
    """Synthesize the step map the backend would report for this configuration."""
    flags = resolve_inference_flags(task, state)
    baseline = (baseline_language or config.baseline_language).lower()
    voice = flags.voice_language.lower()
    subtitle = flags.subtitle_language.lower()

    step_names: list[str] = []
    if flags.is_pdf:
        step_names.append("segment_pdf_content")
        if flags.generate_video:
            step_names.append("revise_pdf_transcripts")
    else:
        step_names.extend(
            [
                "extract_slides",
                "convert_slides_to_images",
                "analyze_slide_images",
                "generate_transcripts",
                "revise_transcripts",
            ]
        )

    if voice != baseline:
        step_names.append("translate_voice_transcripts")
    if subtitle != baseline:
        step_names.append("translate_subtitle_transcripts")

    if flags.generate_video:
        if flags.is_pdf:
            step_names.extend(["generate_pdf_chapter_images", "generate_pdf_audio"])
            if flags.generate_subtitles:
                step_names.append("generate_pdf_subtitles")
        else:
            step_names.append("generate_audio")
            if flags.generate_avatar:
                step_names.append("generate_avatar_videos")
            if flags.generate_subtitles and voice != subtitle:
                step_names.append("generate_subtitle_transcripts")
            if flags.generate_subtitles:
                step_names.append("generate_subtitles")
        step_names.append("compose_video")

    if flags.generate_podcast:
        step_names.append("generate_podcast_script")
        if (
            flags.transcript_language
            and flags.transcript_language.lower() != baseline
        ):
            step_names.append("translate_podcast_script")
        step_names.extend(["generate_podcast_audio", "compose_podcast"])

    return {name: _pending() for name in step_names}


def _humanize_task_type(value: str) -> str:
    parts = [p for p in value.replace("-", "_").replace(" ", "_").split("_") if p]
    return " ".join(part[:1].upper() + part[1:] for part in parts) or "Task"


def resolve_task_type(
    task: Mapping[str, Any] | None, state: Mapping[str, Any] | None = None
) -> str:
    """Return ``video``, ``podcast``, ``both``, ``audio`` or ``unknown``.

    An explicit ``task_type`` wins; otherwise the output flags decide.
    """
    task = _mapping(task)
    state = _mapping(state)
    explicit = coerce_str(task.get("task_type"), state.get("task_type"))
    if explicit:
        return explicit.lower()

    kwargs = _mapping(task.get("kwargs"))

    def flag(name: str, default: bool) -> bool:
        return coerce_bool(default, task.get(name), kwargs.get(name), state.get(name))

    video = flag("generate_video", True)
    podcast = flag("generate_podcast", False)
    audio = flag("generate_audio", False)
    if podcast and video:
        return "both"
    if podcast:
        return "podcast"
    if video:
        return "video"
    if audio:
        return "audio"
    return "unknown"


def task_type_label(task_type: str | None) -> str:
    """Human-readable label for a task type key (``"both"`` -> ``"Both"``)."""
    return _humanize_task_type(task_type or "")
