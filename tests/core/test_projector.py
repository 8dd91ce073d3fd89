"""
Unit tests for task detail projection.
"""

from taskmonitor.core import projector
from taskmonitor.core.projector import (
    FILENAME_PLACEHOLDER,
    coerce_scalar,
    project_task_details,
    resolve_field,
    resolve_filename,
    resolve_path,
    search_keys,
)


class TestPathTable:
    def test_config_bag_beats_top_level(self):
        task = {"voice_id": "top", "kwargs": {"voice_id": "kw"}}

        assert resolve_field(task, "voice_id") == "kw"

    def test_state_beats_task(self):
        task = {"voice_language": "german", "detailed_state": {"voice_language": "french"}}

        assert resolve_field(task, "voice_language") == "french"

    def test_state_config_bag_beats_task_config_bag(self):
        task = {
            "config": {"voice_language": "german"},
            "state": {"config": {"voice_language": "french"}},
        }

        assert resolve_field(task, "voice_language") == "french"

    def test_nested_config_path(self):
        task = {"task_config": {"video": {"voice_id": "nova"}}}

        assert resolve_field(task, "voice_id") == "nova"

    def test_object_values_reduce_to_identifier(self):
        assert resolve_field({"voice": {"id": "alloy", "label": "Alloy"}}, "voice_id") == "alloy"

    def test_voice_list_positions(self):
        task = {"voices": ["host-a", "guest-b"]}

        assert resolve_field(task, "podcast_host_voice") == "host-a"
        assert resolve_field(task, "podcast_guest_voice") == "guest-b"

    def test_step_data_is_searched(self):
        task = {
            "state": {
                "steps": {
                    "generate_audio": {"status": "completed", "data": {"voice_id": "echo"}}
                }
            }
        }

        assert resolve_field(task, "voice_id") == "echo"


class TestFallbackSearch:
    def test_breadth_first_finds_deep_key(self):
        task = {"detailed_state": {"meta": {"deep": {"Voice_Language": "french"}}}}

        assert resolve_field(task, "voice_language") == "french"

    def test_exact_match_beats_prefix_beats_substring(self):
        roots = [
            {
                "extra": {
                    "my_voice_id_old": "substring",
                    "voice_id_v2": "prefix",
                    "voice_id": "exact",
                }
            }
        ]

        assert search_keys(roots, ("voice_id",)) == "exact"
        roots[0]["extra"].pop("voice_id")
        assert search_keys(roots, ("voice_id",)) == "prefix"

    def test_search_depth_is_bounded(self):
        shallow = {"voice_id": "deep"}
        for _ in range(2):
            shallow = {"n": shallow}
        deep = {"voice_id": "deep"}
        for _ in range(10):
            deep = {"n": deep}

        assert resolve_field({"wrapper": shallow}, "voice_id") == "deep"
        assert resolve_field({"wrapper": deep}, "voice_id") is None

    def test_cycles_terminate(self):
        loop: dict = {"items": []}
        loop["self"] = loop
        loop["items"].append(loop)

        fields = project_task_details({"task_id": "t1", "loop": loop})

        assert fields.filename == "t1"
        assert fields.voice_id is None


class TestFilename:
    def test_explicit_filename(self):
        assert resolve_filename({"kwargs": {"filename": "deck.pptx"}}) == "deck.pptx"

    def test_file_path_basename(self):
        assert resolve_filename({"file_path": "/tmp/uploads/deck.pptx"}) == "deck.pptx"
        assert resolve_filename({"file_path": "C:\\uploads\\report.pdf"}) == "report.pdf"

    def test_identifier_with_extension(self):
        assert resolve_filename({"upload_id": "u1", "file_ext": "pdf"}) == "u1.pdf"
        assert resolve_filename({"task_id": "t1", "file_ext": ".pptx"}) == "t1.pptx"

    def test_bare_identifiers_then_placeholder(self):
        assert resolve_filename({"upload_id": "u1", "task_id": "t1"}) == "u1"
        assert resolve_filename({"task_id": "t9"}) == "t9"
        assert resolve_filename({}) == FILENAME_PLACEHOLDER


class TestProjectTaskDetails:
    def test_projects_every_field_independently(self):
        task = {
            "task_id": "t1",
            "kwargs": {
                "filename": "talk.pdf",
                "file_ext": ".pdf",
                "voice_language": "english",
                "subtitle_language": "spanish",
                "transcript_language": "japanese",
                "voice_id": "alloy",
                "podcast_host_voice": "echo",
                "podcast_guest_voice": "nova",
                "task_type": "both",
            },
        }

        fields = project_task_details(task)

        assert fields.model_dump() == {
            "filename": "talk.pdf",
            "file_ext": ".pdf",
            "voice_language": "english",
            "subtitle_language": "spanish",
            "transcript_language": "japanese",
            "voice_id": "alloy",
            "podcast_host_voice": "echo",
            "podcast_guest_voice": "nova",
            "task_type": "both",
        }

    def test_missing_fields_are_none(self):
        fields = project_task_details({"task_id": "t1"})

        assert fields.voice_id is None
        assert fields.subtitle_language is None
        assert fields.filename == "t1"

    def test_non_mapping_input(self):
        assert project_task_details(None).filename == FILENAME_PLACEHOLDER

    def test_never_raises(self, monkeypatch):
        def boom(task):
            raise RuntimeError("unexpected shape")

        monkeypatch.setattr(projector, "candidate_roots", boom)

        fields = project_task_details({"task_id": "t1"})

        assert fields.filename == FILENAME_PLACEHOLDER
        assert fields.voice_id is None


def test_coerce_scalar():
    assert coerce_scalar(3.0) == "3"
    assert coerce_scalar(2.5) == "2.5"
    assert coerce_scalar(True) is None
    assert coerce_scalar([None, " ", "x"]) == "x"
    assert coerce_scalar({"value": "v"}) == "v"
    assert coerce_scalar(float("nan")) is None


def test_resolve_path_indexes_sequences():
    root = {"voices": ["a", "b"]}

    assert resolve_path(root, "voices.1") == "b"
    assert resolve_path(root, "voices.5") is None
    assert resolve_path(root, "voices.host") is None
