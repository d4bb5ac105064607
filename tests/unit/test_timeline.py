"""
Unit tests for the timeline assembler.
"""

from pathlib import Path

import pytest

from reelworker.tasks.errors import CompositionFailure
from reelworker.tasks.motion_engine.compose import SceneSegment
from reelworker.tasks.plans import resolve_export_preset
from reelworker.tasks.timeline import (
    TimelineAssembler,
    build_audio_filter,
    build_concat_command,
    build_fade_out,
    build_mux_command,
    timeline_duration,
)
from tests.conftest import FakeFFmpeg


def make_segments(work_dir, durations=(3, 4.5, 2)):
    segments = []
    for index, duration in enumerate(durations):
        path = Path(work_dir) / f"part_{index}.mp4"
        path.write_bytes(b"seg")
        segments.append(SceneSegment(index, str(path), duration, False, False))
    return segments


class TestAudioFilter:
    """Tests for the audio mixing graph."""

    def test_narration_and_music_ducks_music(self):
        graph = build_audio_filter(9.5, narration_index=1, music_index=2)
        assert "[1:a]loudnorm=I=-16:TP=-1.5:LRA=11" in graph
        assert "asplit=2[narr][key]" in graph
        assert "[bed][key]sidechaincompress=threshold=0.05:ratio=6:attack=5:release=300[ducked]" in graph
        assert "amix=inputs=2:duration=first:dropout_transition=2" in graph
        assert graph.endswith("[aout]")

    def test_narration_only(self):
        graph = build_audio_filter(6, narration_index=1, music_index=None)
        assert graph.startswith("[1:a]loudnorm")
        assert "apad,atrim=0:6" in graph
        assert "sidechaincompress" not in graph

    def test_music_only(self):
        graph = build_audio_filter(6, narration_index=None, music_index=1)
        assert graph.startswith("[1:a]")
        assert "volume=0.8" in graph

    def test_silent_track(self):
        assert build_audio_filter(4, None, None).startswith("anullsrc=r=44100:cl=stereo,atrim=0:4")

    def test_fade_out_last_second(self):
        assert build_fade_out(9.5) == "afade=t=out:st=8.5:d=1"
        assert build_fade_out(1) == "afade=t=out:st=0.5:d=0.5"


class TestCommands:
    """Tests for concat and mux commands."""

    def test_concat_stream_copy(self):
        cmd = build_concat_command("/w/list.txt", "/w/out.mp4")
        assert cmd[cmd.index("-c") + 1] == "copy"
        assert cmd[-2:] == ["-an", "/w/out.mp4"]

    def test_concat_reencode(self):
        cmd = build_concat_command("/w/list.txt", "/w/out.mp4", resolve_export_preset("youtube"))
        assert "-c" not in cmd
        assert "libx264" in cmd

    def test_mux_with_narration_and_music(self):
        cmd = build_mux_command(
            "/w/v.mp4", "/w/final.mp4", 9.5, resolve_export_preset(None),
            narration_path="/a/n.mp3", music_path="/a/m.mp3",
        )
        assert cmd[cmd.index("-stream_loop") + 3] == "/a/m.mp3"
        assert cmd[cmd.index("-c:v") + 1] == "copy"
        assert cmd[cmd.index("-t") + 1] == "9.5"
        assert "[aout]" in cmd
        assert "[2:a]" in cmd[cmd.index("-filter_complex") + 1]

    def test_mux_music_only_uses_index_one(self):
        cmd = build_mux_command("/w/v.mp4", "/w/f.mp4", 5, resolve_export_preset(None), music_path="/a/m.mp3")
        assert cmd[cmd.index("-filter_complex") + 1].startswith("[1:a]")


class TestTimelineAssembler:
    """Tests for assembling segments into the final video."""

    def test_duration_is_sum_of_scenes(self, tmp_path):
        assert timeline_duration(make_segments(tmp_path)) == 9.5

    def test_assemble_stream_copy(self, tmp_path):
        runner = FakeFFmpeg()
        segments = make_segments(tmp_path)
        progress = []
        timeline = TimelineAssembler(resolve_export_preset(None), runner=runner).assemble(
            list(reversed(segments)), str(tmp_path), narration_path="/a/n.mp3",
            on_progress=lambda p, m: progress.append(p),
        )
        assert timeline.used_stream_copy is True
        assert timeline.duration == 9.5
        assert Path(timeline.path).name == "final_movie.mp4"
        assert runner.outputs() == ["video_concat.mp4", "final_movie.mp4"]

        listing = (tmp_path / "concat_list.txt").read_text().splitlines()
        assert [Path(line.split("'")[1]).name for line in listing] == [
            "part_0.mp4", "part_1.mp4", "part_2.mp4",
        ]
        assert progress[0] == 0 and progress[-1] == 100
        assert progress == sorted(progress)

    def test_reencode_fallback(self, tmp_path):
        runner = FakeFFmpeg(fail_when=lambda cmd: "concat" in cmd and "copy" in cmd)
        timeline = TimelineAssembler(resolve_export_preset(None), runner=runner).assemble(
            make_segments(tmp_path), str(tmp_path)
        )
        assert timeline.used_stream_copy is False
        assert len(runner.commands) == 3

    def test_mux_failure(self, tmp_path):
        runner = FakeFFmpeg(fail_when=lambda cmd: "-filter_complex" in cmd)
        with pytest.raises(CompositionFailure, match="Audio mux failed"):
            TimelineAssembler(resolve_export_preset(None), runner=runner).assemble(
                make_segments(tmp_path), str(tmp_path)
            )

    def test_no_segments(self, tmp_path):
        with pytest.raises(CompositionFailure):
            TimelineAssembler(resolve_export_preset(None), runner=FakeFFmpeg()).assemble([], str(tmp_path))
