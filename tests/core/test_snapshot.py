"""
Unit tests for progress snapshot assembly.
"""

import copy
import json

import pytest

from taskmonitor.configs.config import config
from taskmonitor.core.projector import FILENAME_PLACEHOLDER
from taskmonitor.core.snapshot import (
    build_progress_snapshot,
    extract_steps,
    reset_snapshot_from_step,
    with_status,
)

FAILED_TASK = {
    "task_id": "task-1",
    "upload_id": "upload-1",
    "status": "failed",
    "kwargs": {"filename": "deck.pptx", "voice_language": "english"},
    "state": {
        "current_step": "generate_audio",
        "created_at": "2024-05-01T10:00:00",
        "updated_at": "2024-05-01T10:05:00",
        "steps": {
            "compose_video": {"status": "completed"},
            "generate_audio": {"status": "error"},
            "extract_slides": {"status": "completed"},
            "generate_transcripts": {"status": "completed"},
            "generate_subtitles": {"status": "skipped"},
        },
        "errors": [{"step": "generate_audio", "error": "TTS quota exceeded"}],
    },
}


@pytest.fixture(autouse=True)
def english_baseline(monkeypatch):
    monkeypatch.setattr(config, "baseline_language", "english")


class TestBuildProgressSnapshot:
    def test_failed_task(self):
        snapshot = build_progress_snapshot(FAILED_TASK)

        assert snapshot.task_id == "task-1"
        assert snapshot.upload_id == "upload-1"
        assert snapshot.status == "failed"
        assert snapshot.current_step == "generate_audio"
        assert snapshot.created_at == "2024-05-01T10:00:00"
        assert [(s.name, s.status, s.blocked_by_failure) for s in snapshot.steps] == [
            ("extract_slides", "completed", False),
            ("generate_transcripts", "completed", False),
            ("generate_audio", "failed", False),
            ("generate_subtitles", "skipped", False),
            ("compose_video", "pending", True),
        ]
        assert snapshot.progress_percent == 60
        assert snapshot.errors[0].timestamp == "2024-05-01T10:05:00"
        assert snapshot.failed_step == "generate_audio"
        assert snapshot.projected_fields.filename == "deck.pptx"
        assert snapshot.projected_fields.task_type == "video"

    def test_queued_task_gets_inferred_steps(self):
        task = {
            "task_id": "task-2",
            "status": "queued",
            "source_type": "slides",
            "generate_video": True,
            "generate_podcast": False,
            "voice_language": "english",
            "subtitle_language": "english",
        }

        snapshot = build_progress_snapshot(task)

        assert [s.name for s in snapshot.steps] == [
            "extract_slides",
            "convert_slides_to_images",
            "analyze_slide_images",
            "generate_transcripts",
            "revise_transcripts",
            "generate_audio",
            "generate_subtitles",
            "compose_video",
        ]
        assert all(s.status == "pending" for s in snapshot.steps)
        assert snapshot.progress_percent == 0

    def test_progress_from_step_ratio(self):
        task = {
            "task_id": "task-3",
            "status": "processing",
            "detailed_state": {
                "steps": {
                    "extract_slides": {"status": "completed"},
                    "convert_slides_to_images": {"status": "completed"},
                    "analyze_slide_images": {"status": "completed"},
                    "generate_transcripts": {"status": "completed"},
                    "revise_transcripts": {"status": "processing"},
                }
            },
        }

        assert build_progress_snapshot(task).progress_percent == 80

    def test_explicit_task_type_is_lowercased(self):
        snapshot = build_progress_snapshot({"task_id": "t", "task_type": "Podcast"})

        assert snapshot.projected_fields.task_type == "podcast"

    def test_unknown_input(self):
        snapshot = build_progress_snapshot(None)

        assert snapshot.status == "unknown"
        assert snapshot.steps == ()
        assert snapshot.projected_fields.filename == FILENAME_PLACEHOLDER

    def test_oversized_progress_from_json_is_clamped(self):
        task = json.loads('{"task_id": "t", "progress": 1' + "0" * 400 + "}")

        assert build_progress_snapshot(task).progress_percent == 100

    def test_reconciliation_is_idempotent(self):
        first = build_progress_snapshot(FAILED_TASK)
        second = build_progress_snapshot(copy.deepcopy(FAILED_TASK))

        assert first == second
        assert first.model_dump_json() == second.model_dump_json()

    def test_input_is_not_mutated(self):
        original = copy.deepcopy(FAILED_TASK)

        build_progress_snapshot(FAILED_TASK)

        assert FAILED_TASK == original


def test_extract_steps_prefers_state_and_supports_legacy_keys():
    task = {
        "steps": {"compose_video": {}},
        "detailed_state": {"processingSteps": {"generate_audio": {}}},
    }

    assert list(extract_steps(task)) == ["compose_video"]
    assert list(extract_steps({"detailed_state": {"workflow": {"generate_audio": {}}}})) == [
        "generate_audio"
    ]
    assert extract_steps({}) == {}


class TestRetryReset:
    def test_reset_from_failed_step(self):
        snapshot = build_progress_snapshot(FAILED_TASK)

        reset = reset_snapshot_from_step(snapshot, None)

        assert reset.status == "processing"
        assert reset.current_step == "generate_audio"
        assert [(s.name, s.status, s.blocked_by_failure) for s in reset.steps] == [
            ("extract_slides", "completed", False),
            ("generate_transcripts", "completed", False),
            ("generate_audio", "pending", False),
            ("generate_subtitles", "skipped", False),
            ("compose_video", "pending", False),
        ]
        assert reset.errors == ()
        assert snapshot.status == "failed"

    def test_reset_from_earlier_step(self):
        snapshot = build_progress_snapshot(FAILED_TASK)

        reset = reset_snapshot_from_step(snapshot, "generate_transcripts")

        assert reset.get_step("extract_slides").status == "completed"
        assert reset.get_step("generate_transcripts").status == "pending"

    def test_unknown_step_falls_back_to_failed_step(self):
        snapshot = build_progress_snapshot(FAILED_TASK)

        assert reset_snapshot_from_step(snapshot, "nope").current_step == "generate_audio"

    def test_with_status(self):
        snapshot = build_progress_snapshot(FAILED_TASK)

        assert with_status(snapshot, "Cancelling").status == "cancelling"


class TestPayload:
    def test_full_payload(self):
        payload = build_progress_snapshot(FAILED_TASK).to_payload()

        assert list(payload["steps"]) == [
            "extract_slides",
            "generate_transcripts",
            "generate_audio",
            "generate_subtitles",
            "compose_video",
        ]
        assert payload["steps"]["compose_video"] == {
            "status": "pending",
            "blocked_by_failure": True,
        }
        assert payload["progress"] == 60
        assert payload["filename"] == "deck.pptx"
        assert payload["voice_id"] is None

    def test_compact_payload_drops_empty_values(self):
        payload = build_progress_snapshot(FAILED_TASK).to_payload("compact")

        assert "voice_id" not in payload
        assert payload["errors"] == [
            {
                "step": "generate_audio",
                "error": "TTS quota exceeded",
                "timestamp": "2024-05-01T10:05:00",
            }
        ]
        assert payload["steps"]["extract_slides"] == {
            "status": "completed",
            "blocked_by_failure": False,
        }
