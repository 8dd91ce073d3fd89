"""
Canonical ordering of pipeline steps.

Backends report step maps in whatever order they were created (translation
steps are appended after the fact, podcast steps after video steps, ...). The
UI always renders them in pipeline order defined here.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

DEFAULT_STEP_ORDER: tuple[str, ...] = (
    # Slide ingestion
    "extract_slides",
    "convert_slides_to_images",
    "analyze_slide_images",
    # PDF ingestion
    "segment_pdf_content",
    # Script generation & refinement
    "generate_transcripts",
    "revise_transcripts",
    "revise_pdf_transcripts",
    "generate_subtitle_transcripts",
    "generate_podcast_script",
    # Translation
    "translate_voice_transcripts",
    "translate_subtitle_transcripts",
    "translate_podcast_script",
    # Visual preparation
    "generate_pdf_chapter_images",
    # Audio generation
    "generate_audio",
    "generate_pdf_audio",
    "generate_podcast_audio",
    "generate_podcast_subtitles",
    "generate_avatar_videos",
    # Subtitle assets
    "generate_subtitles",
    "generate_pdf_subtitles",
    # Final assembly
    "compose_video",
    "compose_podcast",
    # Fallback for unknown / legacy step names
    "unknown",
)

_STEP_PRIORITY = {name: idx for idx, name in enumerate(DEFAULT_STEP_ORDER)}


def get_step_priority(step_name: str) -> int:
    """Return the sort priority of a step; unknown names sort after every known one."""
    return _STEP_PRIORITY.get(step_name, len(DEFAULT_STEP_ORDER))


def sort_steps(steps: Mapping[str, Any] | None) -> list[tuple[str, Any]]:
    """Return ``(name, data)`` pairs in pipeline order.

    ``sorted`` is stable, so steps sharing a priority (all unknown names) keep
    the order in which the mapping yielded them.
    """
    if not isinstance(steps, Mapping):
        return []
    return sorted(
        ((str(name), data) for name, data in steps.items()),
        key=lambda item: get_step_priority(item[0]),
    )
