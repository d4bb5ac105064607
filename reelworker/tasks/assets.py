"""
Asset Resolver

Maps a render request's logical inputs (scene images, narration, captions,
music) to local paths and content fingerprints through the Asset Store.

Scene images are uploaded by the image generator as
``{project_id}/scene-{index}-{suffix}.{ext}``; the first matching file in
name order is the scene's source image.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from PIL import Image, UnidentifiedImageError

from ..schemas.render import RenderRequest
from .errors import AssetUnresolved
from .storage import AssetNotFound, AssetStore

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")


@dataclass(frozen=True)
class ResolvedAsset:
    """A resolved input: storage reference, local path and checksum."""

    ref: str
    path: str
    fingerprint: str


@dataclass
class ResolvedAssets:
    """All resolved inputs of one render."""

    scene_images: List[ResolvedAsset] = field(default_factory=list)
    narration: Optional[ResolvedAsset] = None
    captions: Optional[ResolvedAsset] = None
    music: Optional[ResolvedAsset] = None


def scene_image_prefix(project_id: str, scene_index: int) -> str:
    return f"{project_id}/scene-{scene_index}-"


class AssetResolver:
    """
    Resolve every input a render needs.

    Missing scene images, narration or captions are fatal (AssetUnresolved).
    A missing music track only drops the music bed.
    """

    def __init__(self, store: AssetStore, verify_images: bool = True):
        self.store = store
        self.verify_images = verify_images

    def resolve(self, request: RenderRequest) -> ResolvedAssets:
        """
        Resolve the inputs of a render request.

        Args:
            request: Validated render request

        Returns:
            ResolvedAssets with one image per scene

        Raises:
            AssetUnresolved: If a required input cannot be located
        """
        assets = ResolvedAssets()
        for index in range(len(request.scenes)):
            assets.scene_images.append(self.resolve_scene_image(request.project_id, index))

        if request.narration_ref:
            assets.narration = self._resolve_required(request.narration_ref, "narration")
        if request.captions_ref:
            assets.captions = self._resolve_required(request.captions_ref, "captions")
        if request.music_ref:
            try:
                assets.music = self._resolve(request.music_ref)
            except (AssetNotFound, ValueError) as e:
                logger.warning(
                    f"Music track {request.music_ref} unavailable, rendering without music: {e}"
                )

        logger.info(
            f"Resolved assets for {request.project_id}: {len(assets.scene_images)} images, "
            f"narration={'yes' if assets.narration else 'no'}, "
            f"captions={'yes' if assets.captions else 'no'}, "
            f"music={'yes' if assets.music else 'no'}"
        )
        return assets

    def resolve_scene_image(self, project_id: str, scene_index: int) -> ResolvedAsset:
        prefix = scene_image_prefix(project_id, scene_index)
        candidates = [
            ref for ref in self.store.list_prefix(prefix)
            if ref.lower().endswith(IMAGE_EXTENSIONS)
        ]
        if not candidates:
            raise AssetUnresolved(
                f"No source image for scene {scene_index}",
                stage="initializing",
                details={"scene": scene_index, "prefix": prefix},
            )

        asset = self._resolve(candidates[0])
        if self.verify_images:
            self._verify_image(asset, scene_index)
        return asset

    def _resolve_required(self, ref: str, kind: str) -> ResolvedAsset:
        try:
            return self._resolve(ref)
        except (AssetNotFound, ValueError) as e:
            raise AssetUnresolved(
                f"Required {kind} asset not found: {ref}",
                stage="initializing",
                details={"asset": kind, "ref": ref},
            ) from e

    def _resolve(self, ref: str) -> ResolvedAsset:
        path, fingerprint = self.store.resolve(ref)
        return ResolvedAsset(ref=ref, path=path, fingerprint=fingerprint)

    @staticmethod
    def _verify_image(asset: ResolvedAsset, scene_index: int) -> None:
        try:
            with Image.open(asset.path) as img:
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise AssetUnresolved(
                f"Source image for scene {scene_index} is not a readable image",
                stage="initializing",
                details={"scene": scene_index, "ref": asset.ref},
            ) from e
