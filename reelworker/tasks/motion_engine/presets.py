"""
Camera Motion Presets for Still Images

Maps each scene camera mode to the zoom and pan parameters used when a
scene has no motion clip and its still image is animated instead.
"""

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class CameraPreset:
    """
    Ken Burns style motion for one camera mode.

    Attributes:
        name: Camera mode (static, zoom-in, zoom-out, pan-left, pan-right)
        start_zoom: Initial zoom level (1.0 = 100%)
        end_zoom: Final zoom level
        pan_direction: -1 pans left, 1 pans right, 0 keeps the frame centered
        description: Human-readable description
    """

    name: str
    start_zoom: float = 1.0
    end_zoom: float = 1.0
    pan_direction: int = 0
    description: str = ""

    @property
    def is_static(self) -> bool:
        return self.start_zoom == self.end_zoom == 1.0 and self.pan_direction == 0

    def validate(self) -> bool:
        """Validate preset parameters are within valid ranges."""
        if not (1.0 <= self.start_zoom <= 2.0):
            return False
        if not (1.0 <= self.end_zoom <= 2.0):
            return False
        if self.pan_direction not in (-1, 0, 1):
            return False
        if self.pan_direction and min(self.start_zoom, self.end_zoom) <= 1.0:
            # A pan needs zoom headroom to move the crop window
            return False
        return True


CAMERA_PRESETS: Dict[str, CameraPreset] = {
    "static": CameraPreset(name="static", description="No motion, letterboxed to fit"),
    "zoom-in": CameraPreset(
        name="zoom-in",
        start_zoom=1.0,
        end_zoom=1.3,
        description="Centered zoom in",
    ),
    "zoom-out": CameraPreset(
        name="zoom-out",
        start_zoom=1.3,
        end_zoom=1.0,
        description="Centered zoom out",
    ),
    "pan-left": CameraPreset(
        name="pan-left",
        start_zoom=1.1,
        end_zoom=1.1,
        pan_direction=-1,
        description="Horizontal drift to the left and back",
    ),
    "pan-right": CameraPreset(
        name="pan-right",
        start_zoom=1.1,
        end_zoom=1.1,
        pan_direction=1,
        description="Horizontal drift to the right and back",
    ),
}


def get_camera_preset(camera: str) -> CameraPreset:
    """
    Get the preset for a camera mode.

    Unknown modes map to static.
    """
    return CAMERA_PRESETS.get(camera, CAMERA_PRESETS["static"])
