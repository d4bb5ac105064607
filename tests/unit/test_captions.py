"""
Unit tests for SRT parsing, per-scene slicing and formatting.
"""

from reelworker.tasks.captions import (
    CaptionCue,
    format_srt,
    format_timestamp,
    parse_srt,
    slice_for_scene,
)
from tests.conftest import SAMPLE_SRT


class TestParseSrt:
    """Tests for SRT parsing."""

    def test_parse_sample(self):
        cues = parse_srt(SAMPLE_SRT)
        assert len(cues) == 3
        assert cues[0] == CaptionCue(start=0.5, end=2.0, text="Hello there")
        assert cues[1].start == 2.5
        assert cues[1].end == 5.5

    def test_bom_and_crlf(self):
        text = "\ufeff1\r\n00:00:01,000 --> 00:00:02,000\r\nHi\r\n\r\n"
        cues = parse_srt(text)
        assert cues == [CaptionCue(start=1.0, end=2.0, text="Hi")]

    def test_index_line_optional_and_dot_millis(self):
        cues = parse_srt("00:00:01.250 --> 00:00:03.5\nLine one\nLine two")
        assert len(cues) == 1
        assert cues[0].start == 1.25
        assert cues[0].end == 3.5
        assert cues[0].text == "Line one\nLine two"

    def test_blocks_without_timing_are_skipped(self):
        assert parse_srt("1\nnot a timing line\nText") == []

    def test_empty_input(self):
        assert parse_srt("") == []


class TestSliceForScene:
    """Tests for cutting the cues of one scene window."""

    def test_first_scene_window(self):
        cues = slice_for_scene(parse_srt(SAMPLE_SRT), offset=0.0, duration=4.0)
        assert [c.text for c in cues] == ["Hello there", "This cue spans two scenes"]
        assert cues[1].start == 2.5
        assert cues[1].end == 4.0

    def test_cue_rebased_into_second_scene(self):
        cues = slice_for_scene(parse_srt(SAMPLE_SRT), offset=4.0, duration=4.0)
        assert [c.text for c in cues] == ["This cue spans two scenes", "Last line"]
        assert cues[0].start == 0.0
        assert cues[0].end == 1.5
        assert cues[1].start == 2.0
        assert cues[1].end == 3.0

    def test_cue_ending_at_window_start_is_excluded(self):
        cues = [CaptionCue(start=0.0, end=4.0, text="before")]
        assert slice_for_scene(cues, offset=4.0, duration=2.0) == []

    def test_empty_window(self):
        assert slice_for_scene(parse_srt(SAMPLE_SRT), offset=20.0, duration=3.0) == []


class TestFormatSrt:
    """Tests for SRT serialization."""

    def test_format_timestamp(self):
        assert format_timestamp(3723.456) == "01:02:03,456"
        assert format_timestamp(-1) == "00:00:00,000"

    def test_format_renumbers(self):
        text = format_srt([CaptionCue(2.0, 3.0, "b"), CaptionCue(4.0, 5.5, "c")])
        assert text == (
            "1\n00:00:02,000 --> 00:00:03,000\nb\n\n"
            "2\n00:00:04,000 --> 00:00:05,500\nc\n"
        )

    def test_format_empty(self):
        assert format_srt([]) == ""

    def test_formatted_text_parses_back(self):
        cues = slice_for_scene(parse_srt(SAMPLE_SRT), offset=4.0, duration=4.0)
        assert parse_srt(format_srt(cues)) == cues
