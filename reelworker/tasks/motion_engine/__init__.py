"""
Motion Engine for Scene Segments

Turns each scene's motion clip, or its still image animated with a
Ken Burns style camera preset, into a silent segment using FFmpeg.

Usage:
    from reelworker.tasks.motion_engine import (
        SceneCompositor,
        RenderConfig,
        get_camera_preset,
    )

    compositor = SceneCompositor(RenderConfig(width=1280, height=720, fps=30), profile)
    segment = compositor.compose(0, scene, image_path="scene-0.png", work_dir="/tmp/job")
"""

from .compose import SceneCompositor, SceneSegment
from .ffmpeg_templates import (
    RenderConfig,
    build_motion_filter,
    build_scene_filter,
)
from .presets import CAMERA_PRESETS, CameraPreset, get_camera_preset

__all__ = [
    # Presets
    "CameraPreset",
    "CAMERA_PRESETS",
    "get_camera_preset",
    # FFmpeg
    "RenderConfig",
    "build_motion_filter",
    "build_scene_filter",
    # Composition
    "SceneCompositor",
    "SceneSegment",
]
