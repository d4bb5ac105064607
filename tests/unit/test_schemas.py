"""
Unit tests for render request, result and progress schemas.
"""

import json

import pytest
from pydantic import ValidationError

from reelworker.schemas.progress import ProgressState
from reelworker.schemas.render import RenderRequest


class TestRenderRequest:
    """Tests for request validation."""

    def test_defaults(self):
        request = RenderRequest(project_id="p1", scenes=[{"duration": 2}])
        assert request.engine == "local-composite"
        assert request.plan_id == "free"
        assert request.force is False
        assert request.job_id.startswith("render-")
        assert request.scenes[0].camera == "static"
        assert request.scenes[0].transition == "cut"

    def test_total_duration(self):
        request = RenderRequest(project_id="p1", scenes=[{"duration": 2.5}, {"duration": 4}])
        assert request.total_duration == 6.5

    @pytest.mark.parametrize("duration", [0.5, 12.5])
    def test_scene_duration_bounds(self, duration):
        with pytest.raises(ValidationError):
            RenderRequest(project_id="p1", scenes=[{"duration": duration}])

    def test_unknown_camera_rejected(self):
        with pytest.raises(ValidationError):
            RenderRequest(project_id="p1", scenes=[{"duration": 2, "camera": "orbit"}])

    def test_empty_scene_list_rejected(self):
        with pytest.raises(ValidationError):
            RenderRequest(project_id="p1", scenes=[])

    @pytest.mark.parametrize("project_id", ["../etc", "a/b", "", "-lead"])
    def test_project_id_must_be_a_safe_prefix(self, project_id):
        with pytest.raises(ValidationError):
            RenderRequest(project_id=project_id, scenes=[{"duration": 2}])

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            RenderRequest(project_id="p1", scenes=[{"duration": 2}], colour="red")

    def test_request_is_immutable(self):
        request = RenderRequest(project_id="p1", scenes=[{"duration": 2}])
        with pytest.raises(ValidationError):
            request.force = True

    def test_blank_refs_become_none(self):
        request = RenderRequest(project_id="p1", scenes=[{"duration": 2}], music_ref="  ")
        assert request.music_ref is None


class TestProgressState:
    """Tests for progress snapshots."""

    def test_terminal_flags(self):
        assert ProgressState(job_id="j").is_terminal is False
        assert ProgressState(job_id="j", done=True).is_terminal is True
        assert ProgressState(job_id="j", error={"code": "X"}).is_terminal is True

    def test_sse_frame(self):
        frame = ProgressState(job_id="j", progress=40, stage="composing").to_sse()
        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        payload = json.loads(frame[len("data: "):])
        assert payload["progress"] == 40
        assert payload["stage"] == "composing"
