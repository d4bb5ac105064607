"""
Root conftest for reelworker tests.

Provides an asset store on a temporary directory, image helpers, test
settings, and a fake FFmpeg runner that writes its output file instead of
encoding.
"""

import io
from pathlib import Path
from typing import Callable, List, Optional

import pytest
from PIL import Image

from reelworker.config import Settings
from reelworker.tasks.errors import FFmpegCancelled, FFmpegError
from reelworker.tasks.storage import LocalAssetStore


def png_bytes(size=(64, 36), color=(200, 40, 40)) -> bytes:
    """Encode a solid-color PNG."""
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


SAMPLE_SRT = """1
00:00:00,500 --> 00:00:02,000
Hello there

2
00:00:02,500 --> 00:00:05,500
This cue spans two scenes

3
00:00:06,000 --> 00:00:07,000
Last line
"""


class FakeFFmpeg:
    """
    Stand-in for run_ffmpeg_with_progress.

    Records each command and writes a few bytes to its output path (the last
    argument). ``fail_when`` decides per command whether to raise FFmpegError.
    """

    def __init__(self, fail_when: Optional[Callable[[List[str]], bool]] = None):
        self.commands: List[List[str]] = []
        self.fail_when = fail_when

    def __call__(
        self,
        cmd,
        total_duration_ms=0,
        progress_callback=None,
        timeout_seconds=0,
        cancel_event=None,
    ):
        self.commands.append(list(cmd))
        if cancel_event is not None and cancel_event.is_set():
            raise FFmpegCancelled("cancelled")
        if self.fail_when is not None and self.fail_when(cmd):
            raise FFmpegError("FFmpeg failed with code 1: simulated failure")
        if progress_callback:
            progress_callback(50, "Rendering: 50%")
        Path(cmd[-1]).write_bytes(b"\x00\x00\x00\x18ftypmp42fake-video")
        if progress_callback:
            progress_callback(100, "Complete")

    def outputs(self) -> List[str]:
        return [Path(cmd[-1]).name for cmd in self.commands]


@pytest.fixture
def store(tmp_path) -> LocalAssetStore:
    return LocalAssetStore(str(tmp_path / "store"))


@pytest.fixture
def settings(tmp_path) -> Settings:
    work_root = tmp_path / "work"
    work_root.mkdir()
    return Settings(
        storage_path=str(tmp_path / "store"),
        work_root=str(work_root),
        fal_api_key=None,
        retry_max=2,
        retry_base_delay=0.0,
        progress_flush_interval=0.0,
        database_url="sqlite://",
    )


@pytest.fixture
def fake_ffmpeg() -> FakeFFmpeg:
    return FakeFFmpeg()


@pytest.fixture
def project(store):
    """A three-scene project with images, narration and captions."""
    project_id = "proj-1"
    for index in range(3):
        store.write(f"{project_id}/scene-{index}-a1b2.png", png_bytes(color=(index * 60, 80, 120)))
    store.write(f"{project_id}/narration.mp3", b"ID3fake-narration-audio")
    store.write(f"{project_id}/captions.srt", SAMPLE_SRT.encode("utf-8"))
    return project_id
