"""
Pydantic schemas for the render worker.
"""

from .progress import ProgressState
from .render import (
    MANIFEST_VERSION,
    CameraMotion,
    Engine,
    InputFingerprints,
    ManifestScene,
    RenderManifest,
    RenderRequest,
    RenderResult,
    Resolution,
    SceneSpec,
    Transition,
)

__all__ = [
    "MANIFEST_VERSION",
    "CameraMotion",
    "Engine",
    "InputFingerprints",
    "ManifestScene",
    "ProgressState",
    "RenderManifest",
    "RenderRequest",
    "RenderResult",
    "Resolution",
    "SceneSpec",
    "Transition",
]
