"""
Render error taxonomy.

Every failure that crosses a stage boundary is converted into a RenderError
carrying a stable code, a human-readable message, a retryable flag and the
stage that produced it. The orchestrator persists ``to_dict()`` as the error
of the terminal progress snapshot.
"""

from typing import Any, Dict, Optional


class RenderError(Exception):
    """Base class for classified render failures."""

    code = "RENDER_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.details = details or {}
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.stage:
            data["stage"] = self.stage
        if self.details:
            data["details"] = self.details
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class InvalidRequest(RenderError):
    """The request failed validation or exceeds plan limits."""

    code = "INVALID_REQUEST"


class AssetUnresolved(RenderError):
    """A required scene image, narration or caption input is missing."""

    code = "ASSET_UNRESOLVED"


class ClipGenerationFailed(RenderError):
    """
    Remote generation failed for a scene on every candidate model.

    Never fatal on its own; recorded on the scene outcome and the scene
    falls back to its still image.
    """

    code = "CLIP_GENERATION_FAILED"
    retryable = True


class CompositionFailure(RenderError):
    """A scene render or the final assembly failed."""

    code = "COMPOSITION_FAILURE"
    retryable = True


class PublishFailure(RenderError):
    """The final artifact could not be written to storage."""

    code = "PUBLISH_FAILURE"
    retryable = True


class RenderCancelled(RenderError):
    """The job was cancelled before it finished."""

    code = "RENDER_CANCELLED"
    retryable = True


class InternalRenderError(RenderError):
    """An unexpected exception escaped a stage."""

    code = "INTERNAL"
    retryable = True


class FFmpegTimeout(Exception):
    """Raised when FFmpeg exceeds the allowed timeout."""

    pass


class FFmpegError(Exception):
    """Raised when FFmpeg fails with a non-zero exit code."""

    pass


class FFmpegCancelled(Exception):
    """Raised when an FFmpeg run is cancelled by the caller."""

    pass
