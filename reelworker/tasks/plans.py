"""
Plan limits and export-preset encode profiles.

The plan resolver decides the resolution ceiling, scene limit and watermark
policy for a subscription tier. The export preset decides how every video
encode step of a render is parameterized. Both are resolved once, at the
start of a render.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..schemas.render import Resolution

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanLimits:
    """Render limits and feature flags of one subscription tier."""

    plan_id: str
    max_width: int
    max_height: int
    max_scenes: int
    watermark: bool = False


PLANS: Dict[str, PlanLimits] = {
    "free": PlanLimits("free", 854, 480, max_scenes=3, watermark=True),
    "plus": PlanLimits("plus", 1280, 720, max_scenes=8),
    "pro": PlanLimits("pro", 1920, 1080, max_scenes=15),
    "studio": PlanLimits("studio", 3840, 2160, max_scenes=50),
}

DEFAULT_PLAN = "free"


class PlanResolver:
    """
    Plan/tier lookup.

    Unknown plan ids resolve to the free tier. A custom table may be passed
    for deployments with different tiers.
    """

    def __init__(self, plans: Optional[Dict[str, PlanLimits]] = None):
        self.plans = plans or PLANS

    def resolve(self, plan_id: Optional[str]) -> PlanLimits:
        plan = self.plans.get((plan_id or "").lower())
        if plan is None:
            logger.debug(f"Unknown plan {plan_id!r}, using {DEFAULT_PLAN}")
            plan = self.plans.get(DEFAULT_PLAN) or next(iter(self.plans.values()))
        return plan


def _even(value: float) -> int:
    return max(2, int(round(value / 2.0)) * 2)


def clamp_resolution(requested: Optional[Resolution], plan: PlanLimits) -> Resolution:
    """
    Clamp a requested resolution to the plan ceiling.

    The aspect ratio is preserved: the width is reduced first, then the
    height if it still exceeds the ceiling. Both dimensions are rounded to
    even numbers as required by yuv420p encoding.

    Args:
        requested: Requested output size, or None for the plan ceiling
        plan: Limits of the owner's plan

    Returns:
        Resolution within the ceiling
    """
    if requested is None:
        return Resolution(width=_even(plan.max_width), height=_even(plan.max_height))

    width = float(requested.width)
    height = float(requested.height)
    aspect = width / height

    if width > plan.max_width:
        width = float(plan.max_width)
        height = width / aspect
    if height > plan.max_height:
        height = float(plan.max_height)
        width = height * aspect

    return Resolution(width=_even(width), height=_even(height))


@dataclass(frozen=True)
class EncodeProfile:
    """
    Encoder parameters applied to every video encode step of one render.

    Attributes:
        preset_id: Export preset this profile was resolved from
        x264_preset: libx264 speed preset
        crf: Constant rate factor
        profile: H.264 profile, or None to let the encoder choose
        level: H.264 level, or None
        maxrate: Rate cap (e.g. "10000k"), or None
        bufsize: VBV buffer size, or None
        bitrate: Target bitrate, or None (CRF still governs quality)
        audio_bitrate: AAC bitrate used by the final mux
    """

    preset_id: str
    x264_preset: str = "medium"
    crf: int = 22
    profile: Optional[str] = None
    level: Optional[str] = None
    bitrate: Optional[str] = None
    maxrate: Optional[str] = None
    bufsize: Optional[str] = None
    audio_bitrate: str = "192k"

    def video_args(self) -> List[str]:
        """FFmpeg output arguments for the video stream."""
        args = [
            "-c:v", "libx264",
            "-preset", self.x264_preset,
            "-crf", str(self.crf),
            "-pix_fmt", "yuv420p",
        ]
        if self.profile:
            args.extend(["-profile:v", self.profile])
        if self.level:
            args.extend(["-level", self.level])
        if self.bitrate:
            args.extend(["-b:v", self.bitrate])
        if self.maxrate:
            args.extend(["-maxrate", self.maxrate])
        if self.bufsize:
            args.extend(["-bufsize", self.bufsize])
        args.extend(["-movflags", "+faststart"])
        return args

    def audio_args(self) -> List[str]:
        return ["-c:a", "aac", "-b:a", self.audio_bitrate]


EXPORT_PRESETS: Dict[str, EncodeProfile] = {
    "youtube": EncodeProfile(
        preset_id="youtube",
        x264_preset="slow",
        crf=18,
        profile="high",
        level="4.1",
        bitrate="8000k",
        maxrate="10000k",
        bufsize="20000k",
    ),
    "tiktok": EncodeProfile(
        preset_id="tiktok",
        x264_preset="medium",
        crf=20,
        profile="main",
        level="4.0",
        bitrate="5000k",
        maxrate="6000k",
        bufsize="12000k",
    ),
    "square": EncodeProfile(
        preset_id="square",
        x264_preset="medium",
        crf=22,
        profile="main",
        level="3.1",
        bitrate="4000k",
        maxrate="5000k",
        bufsize="10000k",
    ),
    "custom": EncodeProfile(preset_id="custom"),
}

DEFAULT_EXPORT_PRESET = "custom"


def resolve_export_preset(preset_id: Optional[str]) -> EncodeProfile:
    """
    Resolve an export preset id to its encode profile.

    Unknown ids fall back to the custom profile; the returned
    ``preset_id`` reflects the fallback.
    """
    key = (preset_id or DEFAULT_EXPORT_PRESET).lower()
    profile = EXPORT_PRESETS.get(key)
    if profile is None:
        logger.warning(f"Unknown export preset {preset_id!r}, using {DEFAULT_EXPORT_PRESET}")
        profile = EXPORT_PRESETS[DEFAULT_EXPORT_PRESET]
    return profile
