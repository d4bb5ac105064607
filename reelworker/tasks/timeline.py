"""
Timeline Assembler

Concatenates composed scene segments in order, then muxes narration and
optional background music into the final artifact.

Audio graph by available tracks:
- narration + music: music is ducked under narration with sidechain
  compression, then mixed
- narration only: loudness-normalized and padded to the timeline
- music only: level-reduced music bed
- neither: a silent track (anullsrc)

Every track is trimmed to the timeline duration (the sum of the scene
durations) and faded out over the last second.
"""

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .errors import (
    CompositionFailure,
    FFmpegCancelled,
    FFmpegError,
    FFmpegTimeout,
    RenderCancelled,
)
from .ffmpeg_runner import run_ffmpeg_with_progress
from .motion_engine.compose import SceneSegment
from .plans import EncodeProfile

logger = logging.getLogger(__name__)

FADE_OUT_SECONDS = 1.0
AUDIO_SAMPLE_RATE = 44100
AUDIO_FORMAT = f"aresample={AUDIO_SAMPLE_RATE},aformat=sample_fmts=fltp:channel_layouts=stereo"
LOUDNORM = "loudnorm=I=-16:TP=-1.5:LRA=11"
DUCKING = "sidechaincompress=threshold=0.05:ratio=6:attack=5:release=300"
MUSIC_BED_VOLUME = 0.35
MUSIC_ONLY_VOLUME = 0.8

StageProgressCallback = Callable[[int, str], None]


@dataclass(frozen=True)
class AssembledTimeline:
    """The muxed final video in the job's working directory."""

    path: str
    duration: float
    used_stream_copy: bool


def timeline_duration(segments: Sequence[SceneSegment]) -> float:
    """Total duration: the sum of the scene durations."""
    return round(sum(segment.duration for segment in segments), 3)


def _fmt(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".")


def build_fade_out(duration: float) -> str:
    fade = min(FADE_OUT_SECONDS, duration / 2.0)
    start = max(0.0, duration - fade)
    return f"afade=t=out:st={_fmt(start)}:d={_fmt(fade)}"


def build_audio_filter(
    duration: float,
    narration_index: Optional[int],
    music_index: Optional[int],
) -> str:
    """
    Build the filter_complex producing ``[aout]``.

    Args:
        duration: Timeline duration in seconds
        narration_index: FFmpeg input index of narration, or None
        music_index: FFmpeg input index of music, or None

    Returns:
        filter_complex string
    """
    trim = f"atrim=0:{_fmt(duration)},asetpts=PTS-STARTPTS"
    fade = build_fade_out(duration)

    if narration_index is not None and music_index is not None:
        return (
            f"[{narration_index}:a]{LOUDNORM},{AUDIO_FORMAT},apad,{trim},asplit=2[narr][key];"
            f"[{music_index}:a]{AUDIO_FORMAT},volume={MUSIC_BED_VOLUME},{trim}[bed];"
            f"[bed][key]{DUCKING}[ducked];"
            f"[narr][ducked]amix=inputs=2:duration=first:dropout_transition=2,{fade}[aout]"
        )
    if narration_index is not None:
        return f"[{narration_index}:a]{LOUDNORM},{AUDIO_FORMAT},apad,{trim},{fade}[aout]"
    if music_index is not None:
        return (
            f"[{music_index}:a]{AUDIO_FORMAT},volume={MUSIC_ONLY_VOLUME},"
            f"apad,{trim},{fade}[aout]"
        )
    return f"anullsrc=r={AUDIO_SAMPLE_RATE}:cl=stereo,{trim}[aout]"


def write_concat_list(segments: Sequence[SceneSegment], list_path: str) -> str:
    """Write an FFmpeg concat demuxer list in scene order."""
    lines = []
    for segment in sorted(segments, key=lambda s: s.scene_index):
        escaped = segment.path.replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    Path(list_path).write_text("\n".join(lines) + "\n", encoding="utf-8")
    return list_path


def build_concat_command(
    list_path: str, output_path: str, profile: Optional[EncodeProfile] = None
) -> List[str]:
    """
    Concat demuxer command; stream copy unless a profile is given.
    """
    cmd = ["ffmpeg", "-y", "-f", "concat", "-safe", "0", "-i", list_path]
    if profile is None:
        cmd += ["-c", "copy"]
    else:
        cmd += profile.video_args()
    cmd += ["-an", output_path]
    return cmd


def build_mux_command(
    video_path: str,
    output_path: str,
    duration: float,
    profile: EncodeProfile,
    narration_path: Optional[str] = None,
    music_path: Optional[str] = None,
) -> List[str]:
    """
    Mux the concatenated video with the mixed audio track.

    Video is stream-copied; audio is encoded per the profile.
    """
    cmd = ["ffmpeg", "-y", "-i", video_path]
    narration_index = None
    music_index = None
    next_index = 1
    if narration_path:
        cmd += ["-i", narration_path]
        narration_index = next_index
        next_index += 1
    if music_path:
        cmd += ["-stream_loop", "-1", "-i", music_path]
        music_index = next_index

    cmd += [
        "-filter_complex", build_audio_filter(duration, narration_index, music_index),
        "-map", "0:v:0",
        "-map", "[aout]",
        "-c:v", "copy",
        *profile.audio_args(),
        "-t", _fmt(duration),
        "-movflags", "+faststart",
        output_path,
    ]
    return cmd


class TimelineAssembler:
    """
    Assemble segments and audio into the final video.

    Usage:
        assembler = TimelineAssembler(profile)
        timeline = assembler.assemble(segments, work_dir, narration_path=narr)
    """

    def __init__(
        self,
        profile: EncodeProfile,
        timeout_seconds: int = 900,
        runner: Callable[..., None] = run_ffmpeg_with_progress,
    ):
        self.profile = profile
        self.timeout_seconds = timeout_seconds
        self._run = runner

    def assemble(
        self,
        segments: Sequence[SceneSegment],
        work_dir: str,
        narration_path: Optional[str] = None,
        music_path: Optional[str] = None,
        on_progress: Optional[StageProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AssembledTimeline:
        """
        Concatenate segments and mux audio.

        Args:
            segments: Composed segments (any order; sorted by scene index)
            work_dir: Job working directory
            narration_path: Local narration audio, if any
            music_path: Local music audio, if any
            on_progress: Called with (percent 0-100, message)
            cancel_event: Aborts the encode when set

        Returns:
            AssembledTimeline

        Raises:
            CompositionFailure: If concat or mux fails
            RenderCancelled: If cancel_event is set
        """
        if not segments:
            raise CompositionFailure("No segments to assemble", stage="assembling")

        report = on_progress or (lambda _p, _m: None)
        duration = timeline_duration(segments)
        duration_ms = int(duration * 1000)

        list_path = write_concat_list(segments, os.path.join(work_dir, "concat_list.txt"))
        concat_path = os.path.join(work_dir, "video_concat.mp4")
        final_path = os.path.join(work_dir, "final_movie.mp4")

        report(0, f"Concatenating {len(segments)} scenes")
        used_copy = True
        try:
            self._execute(build_concat_command(list_path, concat_path), duration_ms, None, cancel_event)
        except (FFmpegError, FFmpegTimeout) as e:
            logger.warning(f"Stream-copy concat failed, re-encoding: {e}")
            used_copy = False
            try:
                self._execute(
                    build_concat_command(list_path, concat_path, self.profile),
                    duration_ms,
                    lambda p, _m: report(p // 2, "Re-encoding timeline"),
                    cancel_event,
                )
            except (FFmpegError, FFmpegTimeout) as e2:
                raise CompositionFailure(
                    f"Concatenation failed: {e2}", stage="assembling"
                ) from e2

        report(50, "Mixing audio")
        mux_cmd = build_mux_command(
            concat_path,
            final_path,
            duration,
            self.profile,
            narration_path=narration_path,
            music_path=music_path,
        )
        logger.info(
            f"Muxing {_fmt(duration)}s timeline: narration={'yes' if narration_path else 'no'}, "
            f"music={'yes' if music_path else 'no'}"
        )
        try:
            self._execute(
                mux_cmd,
                duration_ms,
                lambda p, _m: report(50 + p // 2, "Mixing audio"),
                cancel_event,
            )
        except (FFmpegError, FFmpegTimeout) as e:
            raise CompositionFailure(f"Audio mux failed: {e}", stage="assembling") from e

        output = Path(final_path)
        if not output.exists() or output.stat().st_size == 0:
            raise CompositionFailure("Final output missing or empty", stage="assembling")

        report(100, "Timeline assembled")
        return AssembledTimeline(path=final_path, duration=duration, used_stream_copy=used_copy)

    def _execute(
        self,
        cmd: List[str],
        duration_ms: int,
        progress: Optional[Callable[[int, str], None]],
        cancel_event: Optional[threading.Event],
    ) -> None:
        logger.info(f"FFmpeg command: {' '.join(cmd[:12])}...")
        try:
            self._run(
                cmd,
                total_duration_ms=duration_ms,
                progress_callback=progress,
                timeout_seconds=self.timeout_seconds,
                cancel_event=cancel_event,
            )
        except FFmpegCancelled as e:
            raise RenderCancelled("Assembly cancelled", stage="assembling") from e
