"""
FFmpeg Filter Templates for Scene Segments

Builds FFmpeg filter expressions and full commands that turn a scene's
motion clip or still image into a fixed-duration, silent segment at the
target resolution.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..plans import EncodeProfile
from .presets import CameraPreset

logger = logging.getLogger(__name__)

# Seconds of fade-in from black applied for each transition mode
TRANSITION_FADE_SECONDS = {
    "cut": 0.0,
    "fade": 0.5,
    "dissolve": 0.25,
}

SUBTITLE_STYLE = (
    "Fontsize=18,PrimaryColour=&HFFFFFF&,OutlineColour=&H000000&,"
    "BorderStyle=3,Outline=1,Shadow=1,MarginV=40"
)

WATERMARK_TEXT = "reelworker"


@dataclass
class RenderConfig:
    """Output settings shared by every segment of one render."""

    width: int = 1920
    height: int = 1080
    fps: int = 30

    @property
    def size(self) -> str:
        return f"{self.width}x{self.height}"


# =============================================================================
# Filter Expression Builders
# =============================================================================


def build_zoom_expression(preset: CameraPreset, total_frames: int) -> str:
    """
    Build FFmpeg zoompan zoom expression.

    Linear interpolation from start_zoom to end_zoom over total_frames.

    Formula: z='if(eq(on,1),{sz},{sz}+(({ez}-{sz})/{frames})*on)'
    """
    sz = preset.start_zoom
    ez = preset.end_zoom
    if sz == ez:
        return f"{sz}"
    return f"if(eq(on,1),{sz},{sz}+(({ez}-{sz})/{total_frames})*on)"


def build_pan_x_expression(preset: CameraPreset, total_frames: int) -> str:
    """
    Build FFmpeg zoompan x (horizontal pan) expression.

    The crop window starts centered, drifts by up to half the horizontal
    slack following sin(PI*on/frames), and returns to center on the last
    frame, so the window never leaves the frame.

    Formula: x='(iw-iw/zoom)/2{+|-}((iw-iw/zoom)/2)*sin(PI*on/{frames})'
    """
    center = "(iw-iw/zoom)/2"
    if preset.pan_direction == 0:
        return center
    sign = "+" if preset.pan_direction > 0 else "-"
    return f"{center}{sign}((iw-iw/zoom)/2)*sin(PI*on/{total_frames})"


def build_pan_y_expression() -> str:
    """Vertical position: always centered."""
    return "(ih-ih/zoom)/2"


def build_fit_filter(config: RenderConfig) -> str:
    """
    Letterbox to the target size without distortion.

    Used for motion clips and static images.
    """
    return (
        f"scale={config.width}:{config.height}:"
        f"force_original_aspect_ratio=decrease,"
        f"pad={config.width}:{config.height}:(ow-iw)/2:(oh-ih)/2:black,"
        f"setsar=1,fps={config.fps}"
    )


def build_motion_filter(preset: CameraPreset, duration_sec: float, config: RenderConfig) -> str:
    """
    Build the zoompan filter chain animating a still image.

    The image is first scaled and cropped to twice the output size, which
    gives the zoom enough headroom for sharp output.

    Args:
        preset: Camera preset to apply
        duration_sec: Scene duration in seconds
        config: Output settings

    Returns:
        Filter string for FFmpeg -vf
    """
    if preset.is_static:
        return build_fit_filter(config)

    total_frames = max(1, int(round(duration_sec * config.fps)))
    zoom_expr = build_zoom_expression(preset, total_frames)
    x_expr = build_pan_x_expression(preset, total_frames)
    y_expr = build_pan_y_expression()

    work_w = config.width * 2
    work_h = config.height * 2

    return (
        f"scale={work_w}:{work_h}:force_original_aspect_ratio=increase,"
        f"crop={work_w}:{work_h},"
        f"zoompan=z='{zoom_expr}':"
        f"x='{x_expr}':"
        f"y='{y_expr}':"
        f"d={total_frames}:"
        f"s={config.size}:"
        f"fps={config.fps},"
        f"setsar=1"
    )


def build_transition_filter(transition: str) -> Optional[str]:
    """Fade-in from black for the scene's entry transition, or None for a cut."""
    seconds = TRANSITION_FADE_SECONDS.get(transition, 0.0)
    if seconds <= 0:
        return None
    return f"fade=t=in:st=0:d={seconds}"


def escape_filter_path(path: str) -> str:
    """Quote a file path for use as a filter option value."""
    return "'" + path.replace("\\", "/").replace("'", "'\\''") + "'"


def build_subtitles_filter(srt_path: str) -> str:
    """Burn an SRT file with high-contrast outlined text above the lower safe area."""
    return f"subtitles={escape_filter_path(srt_path)}:force_style='{SUBTITLE_STYLE}'"


def build_watermark_filter(text: str = WATERMARK_TEXT) -> str:
    """Unobtrusive bottom-right text watermark."""
    return (
        f"drawtext=text='{text}':fontcolor=white@0.6:fontsize=24:"
        f"box=1:boxcolor=black@0.4:boxborderw=5:x=w-tw-10:y=h-th-10"
    )


def build_scene_filter(
    base_filter: str,
    transition: str = "cut",
    srt_path: Optional[str] = None,
    watermark: bool = False,
) -> str:
    """
    Chain the scene filters in output order.

    Order: source fit/motion, transition fade, captions, watermark, pixel format.
    """
    parts = [base_filter]
    fade = build_transition_filter(transition)
    if fade:
        parts.append(fade)
    if srt_path:
        parts.append(build_subtitles_filter(srt_path))
    if watermark:
        parts.append(build_watermark_filter())
    parts.append("format=yuv420p")
    return ",".join(parts)


# =============================================================================
# Full Command Builders
# =============================================================================


def build_image_segment_command(
    image_path: str,
    output_path: str,
    duration_sec: float,
    video_filter: str,
    config: RenderConfig,
    profile: EncodeProfile,
) -> List[str]:
    """
    Build FFmpeg command rendering a still image into a silent segment.

    Args:
        image_path: Path to the source image
        output_path: Path for output MP4
        duration_sec: Segment duration in seconds
        video_filter: Complete -vf chain
        config: Output settings
        profile: Encode profile of the render

    Returns:
        List of command arguments for subprocess
    """
    return [
        "ffmpeg",
        "-y",
        "-loop", "1",
        "-framerate", str(config.fps),
        "-i", image_path,
        "-t", _seconds(duration_sec),
        "-vf", video_filter,
        "-r", str(config.fps),
        *profile.video_args(),
        "-an",
        output_path,
    ]


def build_clip_segment_command(
    clip_path: str,
    output_path: str,
    duration_sec: float,
    video_filter: str,
    config: RenderConfig,
    profile: EncodeProfile,
) -> List[str]:
    """
    Build FFmpeg command trimming or looping a motion clip to the scene duration.

    The clip is looped indefinitely on input and cut at the scene duration,
    so clips shorter than the scene repeat and longer clips are trimmed.
    """
    return [
        "ffmpeg",
        "-y",
        "-stream_loop", "-1",
        "-i", clip_path,
        "-t", _seconds(duration_sec),
        "-vf", video_filter,
        "-r", str(config.fps),
        *profile.video_args(),
        "-an",
        output_path,
    ]


def _seconds(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".")
