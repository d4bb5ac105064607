"""
Pydantic schemas for render jobs.

Includes the immutable render request submitted by callers, the derived
manifest that is hashed into the render cache key, and the result returned
when a render finishes.
"""

import hashlib
import json
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

CameraMotion = Literal["static", "zoom-in", "zoom-out", "pan-left", "pan-right"]
Transition = Literal["cut", "fade", "dissolve"]
Engine = Literal["local-composite", "remote-clip"]

# Bump whenever a field that affects rendered output is added to the manifest,
# so that entries written by older workers miss instead of colliding.
MANIFEST_VERSION = 2


# --- Request Schemas ---


class SceneSpec(BaseModel):
    """One storyboard scene."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    duration: float = Field(
        ..., ge=1, le=12, description="Scene duration in seconds (1-12)"
    )
    camera: CameraMotion = Field(
        default="static", description="Camera motion synthesized for still images"
    )
    transition: Transition = Field(
        default="cut", description="How the scene enters from the previous one"
    )
    prompt: Optional[str] = Field(
        None,
        max_length=2000,
        description="Optional text prompt for remote motion-clip generation",
    )


class Resolution(BaseModel):
    """Target frame size in pixels."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    width: int = Field(..., ge=16, le=7680)
    height: int = Field(..., ge=16, le=4320)

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


def _new_job_id() -> str:
    return f"render-{uuid.uuid4().hex}"


class RenderRequest(BaseModel):
    """Immutable render request (one render attempt)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    project_id: str = Field(
        ...,
        min_length=1,
        max_length=128,
        pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$",
        description="Project identifier; also the storage prefix of its assets",
    )
    scenes: List[SceneSpec] = Field(..., min_length=1)
    narration_ref: Optional[str] = Field(
        None, description="Storage reference of the narration track"
    )
    captions_ref: Optional[str] = Field(
        None, description="Storage reference of the SRT caption track"
    )
    music_ref: Optional[str] = Field(
        None, description="Storage reference of the background music track"
    )
    resolution: Optional[Resolution] = Field(
        None, description="Requested output size; clamped to the plan ceiling"
    )
    export_preset: str = Field(default="custom", description="Export preset id")
    engine: Engine = Field(default="local-composite")
    auto_clips: bool = Field(
        default=True,
        description="Acquire motion clips for the local compositor when remote generation is configured",
    )
    clip_models: Optional[List[str]] = Field(
        None, description="Override of the ordered candidate model list"
    )
    plan_id: str = Field(default="free", description="Subscription plan id of the owner")
    force: bool = Field(
        default=False,
        description="Ignore the render cache and regenerate cached scene clips",
    )
    job_id: str = Field(
        default_factory=_new_job_id,
        min_length=1,
        max_length=200,
        description="Idempotency key correlating the request with its progress stream",
    )

    @field_validator("narration_ref", "captions_ref", "music_ref")
    @classmethod
    def _strip_empty(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def total_duration(self) -> float:
        return sum(scene.duration for scene in self.scenes)


# --- Manifest Schemas ---


class ManifestScene(BaseModel):
    """Render-affecting subset of a scene."""

    model_config = ConfigDict(frozen=True)

    duration: float
    camera: CameraMotion
    transition: Transition


class InputFingerprints(BaseModel):
    """Content fingerprints of every input that reaches pixels or audio."""

    model_config = ConfigDict(frozen=True)

    images: List[str]
    narration_audio: Optional[str] = None
    music: Optional[str] = None
    captions: Optional[str] = None


class RenderManifest(BaseModel):
    """
    Canonical description of a render's output.

    Field order is fixed by this definition. Identifiers that do not change
    the produced bytes (job id, project id, prompts) never enter the manifest.
    """

    model_config = ConfigDict(frozen=True)

    v: int = MANIFEST_VERSION
    engine: Engine
    resolution: Resolution
    fps: int
    export_preset: str
    watermark: bool
    clip_acquisition: bool
    scenes: List[ManifestScene]
    input_fingerprints: InputFingerprints

    def canonical_json(self) -> str:
        """Serialize with stable key order and no insignificant whitespace."""
        return json.dumps(
            self.model_dump(mode="json"),
            sort_keys=True,
            separators=(",", ":"),
        )

    def fingerprint(self) -> str:
        """SHA-256 of the canonical serialization (64 hex characters)."""
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()


# --- Result Schemas ---


class RenderResult(BaseModel):
    """Outcome of a successful render."""

    job_id: str
    project_id: str
    artifact_ref: str = Field(..., description="Storage reference of the final video")
    manifest_hash: str
    cached: bool = False
    duration_seconds: float
    file_size: int
    clip_scenes: List[int] = Field(
        default_factory=list, description="Scene indexes composed from motion clips"
    )
    fallback_scenes: List[int] = Field(
        default_factory=list,
        description="Scene indexes composed from the still image with camera motion",
    )
