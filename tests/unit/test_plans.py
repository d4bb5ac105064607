"""
Unit tests for plan limits, resolution clamping and export presets.
"""

from reelworker.schemas.render import Resolution
from reelworker.tasks.plans import (
    EXPORT_PRESETS,
    PLANS,
    PlanLimits,
    PlanResolver,
    clamp_resolution,
    resolve_export_preset,
)


class TestPlanResolver:
    """Tests for plan lookup."""

    def test_known_plan(self):
        assert PlanResolver().resolve("pro").max_width == 1920

    def test_lookup_is_case_insensitive(self):
        assert PlanResolver().resolve("PLUS").plan_id == "plus"

    def test_unknown_plan_falls_back_to_free(self):
        plan = PlanResolver().resolve("enterprise-gold")
        assert plan.plan_id == "free"
        assert plan.watermark is True

    def test_none_falls_back_to_free(self):
        assert PlanResolver().resolve(None).plan_id == "free"

    def test_custom_table(self):
        plans = {"only": PlanLimits("only", 640, 360, max_scenes=1)}
        assert PlanResolver(plans).resolve("anything").plan_id == "only"

    def test_only_free_plan_has_watermark(self):
        assert [p.plan_id for p in PLANS.values() if p.watermark] == ["free"]


class TestClampResolution:
    """Tests for clamping requested sizes to the plan ceiling."""

    def test_none_gives_ceiling(self):
        res = clamp_resolution(None, PLANS["plus"])
        assert (res.width, res.height) == (1280, 720)

    def test_within_ceiling_unchanged(self):
        res = clamp_resolution(Resolution(width=1280, height=720), PLANS["pro"])
        assert (res.width, res.height) == (1280, 720)

    def test_landscape_clamped_preserving_aspect(self):
        res = clamp_resolution(Resolution(width=1920, height=1080), PLANS["free"])
        assert res.width == 854
        assert res.height == 480

    def test_portrait_clamped_by_height(self):
        res = clamp_resolution(Resolution(width=1080, height=1920), PLANS["plus"])
        assert res.height == 720
        assert res.width == 404
        assert res.width % 2 == 0

    def test_dimensions_are_even(self):
        res = clamp_resolution(Resolution(width=1001, height=777), PLANS["studio"])
        assert res.width % 2 == 0
        assert res.height % 2 == 0


class TestExportPresets:
    """Tests for export preset encode profiles."""

    def test_youtube_profile_args(self):
        args = EXPORT_PRESETS["youtube"].video_args()
        assert args[:2] == ["-c:v", "libx264"]
        assert "-profile:v" in args and "high" in args
        assert args[args.index("-b:v") + 1] == "8000k"
        assert args[args.index("-maxrate") + 1] == "10000k"
        assert args[-2:] == ["-movflags", "+faststart"]

    def test_custom_profile_has_no_rate_caps(self):
        args = EXPORT_PRESETS["custom"].video_args()
        assert "-maxrate" not in args
        assert "-profile:v" not in args

    def test_audio_args(self):
        assert EXPORT_PRESETS["tiktok"].audio_args() == ["-c:a", "aac", "-b:a", "192k"]

    def test_unknown_preset_falls_back_to_custom(self):
        assert resolve_export_preset("imax").preset_id == "custom"

    def test_none_resolves_to_custom(self):
        assert resolve_export_preset(None).preset_id == "custom"

    def test_preset_lookup_is_case_insensitive(self):
        assert resolve_export_preset("Square").preset_id == "square"
