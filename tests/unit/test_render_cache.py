"""
Unit tests for manifest fingerprints and the render cache index.
"""

import os
import time

import pytest

from reelworker.schemas.render import RenderRequest, Resolution
from reelworker.tasks.assets import ResolvedAsset, ResolvedAssets
from reelworker.tasks.plans import PLANS, resolve_export_preset
from reelworker.tasks.render_cache import RenderCache, build_manifest, compute_key


def make_assets(images=("aa", "bb"), narration="nn", music=None, captions="cc") -> ResolvedAssets:
    return ResolvedAssets(
        scene_images=[ResolvedAsset(f"p/scene-{i}-x.png", f"/s/{i}.png", fp) for i, fp in enumerate(images)],
        narration=ResolvedAsset("p/n.mp3", "/s/n.mp3", narration) if narration else None,
        music=ResolvedAsset("p/m.mp3", "/s/m.mp3", music) if music else None,
        captions=ResolvedAsset("p/c.srt", "/s/c.srt", captions) if captions else None,
    )


def make_key(request_overrides=None, assets=None, plan="pro", preset="youtube",
             resolution=(1280, 720), fps=30, clip_acquisition=False) -> str:
    data = {
        "project_id": "p",
        "scenes": [{"duration": 4, "camera": "zoom-in"}, {"duration": 5, "transition": "fade"}],
    }
    data.update(request_overrides or {})
    manifest = build_manifest(
        RenderRequest(**data),
        resolution=Resolution(width=resolution[0], height=resolution[1]),
        profile=resolve_export_preset(preset),
        plan=PLANS[plan],
        assets=assets or make_assets(),
        fps=fps,
        clip_acquisition=clip_acquisition,
    )
    return compute_key(manifest)


class TestManifestFingerprint:
    """Tests for cache key determinism and sensitivity."""

    def test_key_is_sha256_hex(self):
        key = make_key()
        assert len(key) == 64
        int(key, 16)

    def test_identical_inputs_same_key(self):
        assert make_key() == make_key()

    def test_job_and_project_ids_do_not_affect_key(self):
        assert make_key({"job_id": "a", "project_id": "one"}) == make_key(
            {"job_id": "b", "project_id": "two"}
        )

    def test_force_flag_does_not_affect_key(self):
        assert make_key({"force": True}) == make_key()

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"assets": make_assets(images=("aa", "bX"))},
            {"assets": make_assets(narration="other")},
            {"assets": make_assets(music="mm")},
            {"assets": make_assets(captions=None)},
            {"plan": "free"},
            {"preset": "tiktok"},
            {"resolution": (854, 480)},
            {"fps": 24},
            {"clip_acquisition": True},
            {"request_overrides": {"engine": "remote-clip"}},
            {"request_overrides": {"scenes": [{"duration": 4}, {"duration": 5, "transition": "fade"}]}},
        ],
    )
    def test_output_affecting_change_changes_key(self, kwargs):
        assert make_key(**kwargs) != make_key()

    def test_canonical_json_is_compact_and_sorted(self):
        manifest = build_manifest(
            RenderRequest(project_id="p", scenes=[{"duration": 2}]),
            resolution=Resolution(width=640, height=360),
            profile=resolve_export_preset("custom"),
            plan=PLANS["free"],
            assets=make_assets(images=("aa",)),
            fps=30,
            clip_acquisition=False,
        )
        text = manifest.canonical_json()
        assert " " not in text
        assert text.index('"clip_acquisition"') < text.index('"engine"') < text.index('"v"')


class TestRenderCache:
    """Tests for the cache index over the asset store."""

    def test_miss_then_hit(self, store):
        cache = RenderCache(store)
        key = "f" * 64
        assert cache.fetch(key) is None
        assert cache.has(key) is False

        store.write("p/movie.mp4", b"video-bytes")
        ref = cache.store(key, "p/movie.mp4")
        assert ref == f"cache/render/{key}.mp4"
        assert cache.fetch(key) == ref
        assert store.size(ref) == len(b"video-bytes")

    def test_store_missing_artifact_raises(self, store):
        with pytest.raises(OSError):
            RenderCache(store).store("a" * 64, "p/none.mp4")

    def test_custom_namespace(self, store):
        cache = RenderCache(store, namespace="/renders/", extension=".webm")
        assert cache.ref_for("abc") == "renders/abc.webm"

    def test_delete(self, store):
        cache = RenderCache(store)
        store.write("p/movie.mp4", b"v")
        cache.store("b" * 64, "p/movie.mp4")
        assert cache.delete("b" * 64) is True
        assert cache.fetch("b" * 64) is None

    def test_cleanup_old_and_stats(self, store):
        cache = RenderCache(store)
        store.write("p/movie.mp4", b"v" * 2048)
        old_ref = cache.store("1" * 64, "p/movie.mp4")
        cache.store("2" * 64, "p/movie.mp4")
        old_time = time.time() - 10 * 24 * 3600
        os.utime(store.path_for(old_ref), (old_time, old_time))

        stats = cache.stats()
        assert stats["total_entries"] == 2
        assert stats["oldest_hours"] >= 239

        assert cache.cleanup_old(max_age_hours=168) == 1
        assert cache.fetch("1" * 64) is None
        assert cache.fetch("2" * 64) is not None
        assert cache.stats()["total_entries"] == 1
