"""
Render Cache Management

Content-addressed cache of finished renders. The key is the SHA-256 of the
canonical serialization of a RenderManifest; entries live in the Asset
Store under ``{namespace}/{fingerprint}.{ext}``.

The cache is advisory: lookups never raise for a miss, and write-back
failures are reported to the caller to log.
"""

import logging
import time
from typing import Optional

from ..schemas.render import (
    MANIFEST_VERSION,
    InputFingerprints,
    ManifestScene,
    RenderManifest,
    RenderRequest,
    Resolution,
)
from .assets import ResolvedAssets
from .plans import EncodeProfile, PlanLimits
from .storage import AssetStore

logger = logging.getLogger(__name__)


def build_manifest(
    request: RenderRequest,
    resolution: Resolution,
    profile: EncodeProfile,
    plan: PlanLimits,
    assets: ResolvedAssets,
    fps: int,
    clip_acquisition: bool,
) -> RenderManifest:
    """
    Derive the manifest of a render from its request and resolved inputs.

    Args:
        request: Validated render request
        resolution: Output size after plan clamping
        profile: Resolved export-preset profile
        plan: Owner's plan limits (decides the watermark)
        assets: Resolved input assets
        fps: Output frame rate
        clip_acquisition: Whether scenes may use acquired motion clips

    Returns:
        RenderManifest covering every output-affecting parameter
    """
    return RenderManifest(
        v=MANIFEST_VERSION,
        engine=request.engine,
        resolution=resolution,
        fps=fps,
        export_preset=profile.preset_id,
        watermark=plan.watermark,
        clip_acquisition=clip_acquisition,
        scenes=[
            ManifestScene(
                duration=scene.duration,
                camera=scene.camera,
                transition=scene.transition,
            )
            for scene in request.scenes
        ],
        input_fingerprints=InputFingerprints(
            images=[image.fingerprint for image in assets.scene_images],
            narration_audio=assets.narration.fingerprint if assets.narration else None,
            music=assets.music.fingerprint if assets.music else None,
            captions=assets.captions.fingerprint if assets.captions else None,
        ),
    )


def compute_key(manifest: RenderManifest) -> str:
    """
    Generate the deterministic cache key for a manifest.

    Returns:
        SHA-256 hash string (64 characters)
    """
    return manifest.fingerprint()


class RenderCache:
    """
    Cache index for finished renders.

    Usage:
        cache = RenderCache(asset_store)
        key = compute_key(manifest)
        cached_ref = cache.fetch(key)
        if cached_ref:
            asset_store.copy(cached_ref, f"{project_id}/movie.mp4")
        else:
            ...render...
            cache.store(key, f"{project_id}/movie.mp4")
    """

    def __init__(self, store: AssetStore, namespace: str = "cache/render", extension: str = "mp4"):
        self.asset_store = store
        self.namespace = namespace.strip("/")
        self.extension = extension.lstrip(".")

    def ref_for(self, fingerprint: str) -> str:
        return f"{self.namespace}/{fingerprint}.{self.extension}"

    def has(self, fingerprint: str) -> bool:
        return self.asset_store.exists(self.ref_for(fingerprint))

    def fetch(self, fingerprint: str) -> Optional[str]:
        """
        Get the cached artifact reference if it exists.

        Returns:
            Storage reference of the cached artifact, None on a miss
        """
        ref = self.ref_for(fingerprint)
        if self.asset_store.exists(ref):
            logger.debug(f"Render cache hit: {fingerprint[:16]}...")
            return ref
        return None

    def store(self, fingerprint: str, artifact_ref: str) -> str:
        """
        Copy a published artifact into the cache.

        The copy is atomic, so concurrent writers of the same fingerprint
        converge on one complete entry.

        Raises:
            OSError: If the copy fails
        """
        ref = self.ref_for(fingerprint)
        self.asset_store.copy(artifact_ref, ref)
        logger.info(f"Render cached: {fingerprint[:16]}... -> {ref}")
        return ref

    def delete(self, fingerprint: str) -> bool:
        deleted = self.asset_store.delete(self.ref_for(fingerprint))
        if deleted:
            logger.debug(f"Deleted render cache entry: {fingerprint[:16]}...")
        return deleted

    def cleanup_old(self, max_age_hours: int = 168) -> int:
        """
        Remove cache entries older than max_age_hours.

        Args:
            max_age_hours: Maximum age in hours (default 7 days)

        Returns:
            Number of entries removed
        """
        cutoff_time = time.time() - max_age_hours * 3600
        removed = 0

        for ref in self._entries():
            try:
                if self.asset_store.mtime(ref) < cutoff_time:
                    self.asset_store.delete(ref)
                    removed += 1
            except OSError as e:
                logger.warning(f"Failed to clean up {ref}: {e}")

        if removed > 0:
            logger.info(f"Render cache cleanup: removed {removed} old entries")
        return removed

    def stats(self) -> dict:
        """
        Get cache statistics.

        Returns:
            Dict with total_entries, total_size_mb, oldest_hours
        """
        total_entries = 0
        total_size = 0
        oldest_mtime = time.time()

        for ref in self._entries():
            try:
                total_size += self.asset_store.size(ref)
                oldest_mtime = min(oldest_mtime, self.asset_store.mtime(ref))
                total_entries += 1
            except OSError:
                continue

        oldest_hours = (time.time() - oldest_mtime) / 3600 if total_entries > 0 else 0
        return {
            "total_entries": total_entries,
            "total_size_mb": round(total_size / (1024 * 1024), 2),
            "oldest_hours": round(oldest_hours, 1),
        }

    def _entries(self):
        suffix = f".{self.extension}"
        return [ref for ref in self.asset_store.list_prefix(f"{self.namespace}/") if ref.endswith(suffix)]
