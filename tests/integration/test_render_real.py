"""
Real Render Pipeline Integration Tests

Runs the orchestrator end-to-end with real FFmpeg encodes on generated
media: solid-color scene images, a sine-tone narration and music bed, and
an SRT caption track.

Requirements:
- ffmpeg and ffprobe must be in PATH (tests are skipped otherwise)
"""

import shutil
import subprocess
from pathlib import Path

import pytest

from reelworker.tasks.progress import ProgressReporter
from reelworker.tasks.render import RenderOrchestrator
from tests.conftest import SAMPLE_SRT, png_bytes
from tests.utils.ffprobe import probe_video, verify_duration

pytestmark = [
    pytest.mark.integration,
    pytest.mark.slow,
    pytest.mark.skipif(
        not (shutil.which("ffmpeg") and shutil.which("ffprobe")),
        reason="ffmpeg/ffprobe not available",
    ),
]


def ffmpeg_has_filter(name: str) -> bool:
    listing = subprocess.run(
        ["ffmpeg", "-hide_banner", "-filters"], capture_output=True, text=True
    ).stdout
    return any(line.split()[1:2] == [name] for line in listing.splitlines() if line.strip())


def write_tone(path: Path, seconds: float, frequency: int) -> None:
    subprocess.run(
        [
            "ffmpeg", "-y", "-v", "error",
            "-f", "lavfi", "-i", f"sine=frequency={frequency}:duration={seconds}",
            "-c:a", "pcm_s16le", str(path),
        ],
        check=True,
    )


@pytest.fixture
def media_project(store):
    project_id = "real-1"
    colors = [(220, 60, 60), (60, 220, 60), (60, 60, 220)]
    for index, color in enumerate(colors):
        store.write(f"{project_id}/scene-{index}-img.png", png_bytes(size=(320, 180), color=color))
    store.write(f"{project_id}/captions.srt", SAMPLE_SRT.encode("utf-8"))
    write_tone(store.path_for(f"{project_id}/narration.wav"), 5.0, 440)
    write_tone(store.path_for(f"{project_id}/music.wav"), 2.0, 220)
    return project_id


@pytest.fixture
def orchestrator(store, settings):
    return RenderOrchestrator(store, ProgressReporter(flush_interval=0.0), settings=settings)


class TestRenderRealPipeline:
    """Integration tests for the render pipeline with real FFmpeg."""

    def test_render_with_narration_music_and_captions(self, orchestrator, store, media_project):
        if not ffmpeg_has_filter("subtitles"):
            pytest.skip("ffmpeg built without libass")
        """Three scenes with motion, transitions, captions, ducked music.

        Expected:
            - Duration equals the sum of the scenes (7s) +-300ms
            - Output has video + audio streams at the plan-clamped size
        """
        request = {
            "project_id": media_project,
            "scenes": [
                {"duration": 2, "camera": "zoom-in"},
                {"duration": 3, "camera": "pan-right", "transition": "fade"},
                {"duration": 2, "transition": "dissolve"},
            ],
            "narration_ref": f"{media_project}/narration.wav",
            "captions_ref": f"{media_project}/captions.srt",
            "music_ref": f"{media_project}/music.wav",
            "resolution": {"width": 640, "height": 360},
            "export_preset": "youtube",
            "plan_id": "plus",
        }
        result = orchestrator.run(request)

        output = store.path_for(result.artifact_ref)
        info = probe_video(output)
        assert info.has_video and info.has_audio
        assert (info.width, info.height) == (640, 360)
        assert verify_duration(output, 7000)

    def test_silent_render_and_cache_hit(self, orchestrator, store, media_project):
        """No audio inputs yields a silent track; a repeat is served from cache."""
        request = {
            "project_id": media_project,
            "scenes": [{"duration": 1}, {"duration": 2, "camera": "zoom-out"}],
            "resolution": {"width": 854, "height": 480},
            "plan_id": "plus",
        }
        first = orchestrator.run(dict(request, job_id="silent-a"))
        info = probe_video(store.path_for(first.artifact_ref))
        assert info.has_audio
        assert (info.width, info.height) == (854, 480)
        assert verify_duration(store.path_for(first.artifact_ref), 3000)

        second = orchestrator.run(dict(request, job_id="silent-b"))
        assert second.cached is True
        assert second.manifest_hash == first.manifest_hash
