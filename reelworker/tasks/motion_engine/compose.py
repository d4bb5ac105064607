"""
Scene Compositor

Renders each scene into a silent, fixed-duration segment at the target
resolution: from the scene's motion clip when one was acquired, otherwise
from its still image with the requested camera motion. Optional caption
slices are burned in, and the watermark is applied when the plan requires it.
"""

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from ...schemas.render import SceneSpec
from ..captions import CaptionCue, format_srt
from ..errors import (
    CompositionFailure,
    FFmpegCancelled,
    FFmpegError,
    FFmpegTimeout,
    RenderCancelled,
)
from ..ffmpeg_runner import run_ffmpeg_with_progress
from ..plans import EncodeProfile
from .ffmpeg_templates import (
    RenderConfig,
    build_clip_segment_command,
    build_fit_filter,
    build_image_segment_command,
    build_motion_filter,
    build_scene_filter,
)
from .presets import get_camera_preset

logger = logging.getLogger(__name__)

SceneProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class SceneSegment:
    """A composed scene segment, owned by one render."""

    scene_index: int
    path: str
    duration: float
    from_clip: bool
    captions_burned: bool


class SceneCompositor:
    """
    Compose scene segments with one encode profile.

    Usage:
        compositor = SceneCompositor(RenderConfig(1280, 720, 30), profile)
        segment = compositor.compose(
            0, scene, image_path="/data/p/scene-0-a.png", clip_path=None,
            captions=[], work_dir="/tmp/job",
        )
    """

    def __init__(
        self,
        config: RenderConfig,
        profile: EncodeProfile,
        watermark: bool = False,
        timeout_seconds: int = 300,
        runner: Callable[..., None] = run_ffmpeg_with_progress,
    ):
        self.config = config
        self.profile = profile
        self.watermark = watermark
        self.timeout_seconds = timeout_seconds
        self._run = runner

    def compose(
        self,
        scene_index: int,
        scene: SceneSpec,
        image_path: str,
        work_dir: str,
        clip_path: Optional[str] = None,
        captions: Sequence[CaptionCue] = (),
        on_progress: Optional[SceneProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SceneSegment:
        """
        Render one scene to a silent segment of exactly ``scene.duration``.

        When burning captions fails, the scene is rendered once more
        without them before giving up.

        Args:
            scene_index: Position of the scene in the timeline
            scene: Scene parameters
            image_path: Local path of the scene's still image
            work_dir: Job working directory for intermediates
            clip_path: Local path of the motion clip, if acquired
            captions: Scene-local caption cues
            on_progress: Called with (scene_index, percent)
            cancel_event: Aborts the encode when set

        Returns:
            SceneSegment

        Raises:
            CompositionFailure: If the segment cannot be rendered
            RenderCancelled: If cancel_event is set
        """
        output_path = os.path.join(work_dir, f"part_{scene_index}.mp4")
        srt_path = None
        if captions:
            srt_path = os.path.join(work_dir, f"scene_{scene_index}.srt")
            Path(srt_path).write_text(format_srt(captions), encoding="utf-8")

        attempts: List[Optional[str]] = [srt_path, None] if srt_path else [None]
        last_error: Optional[Exception] = None

        for subtitles in attempts:
            cmd = self._build_command(scene, image_path, clip_path, output_path, subtitles)
            source = "clip" if clip_path else f"image/{scene.camera}"
            logger.info(
                f"Composing scene {scene_index}: {source}, {scene.duration}s "
                f"@ {self.config.size}, captions={'on' if subtitles else 'off'}"
            )
            try:
                self._run(
                    cmd,
                    total_duration_ms=int(scene.duration * 1000),
                    progress_callback=self._progress_adapter(scene_index, on_progress),
                    timeout_seconds=self.timeout_seconds,
                    cancel_event=cancel_event,
                )
            except FFmpegCancelled as e:
                raise RenderCancelled(
                    f"Scene {scene_index} composition cancelled", stage="composing"
                ) from e
            except (FFmpegError, FFmpegTimeout) as e:
                last_error = e
                if subtitles:
                    logger.warning(
                        f"Scene {scene_index} with captions failed, retrying without captions: {e}"
                    )
                continue

            output = Path(output_path)
            if not output.exists() or output.stat().st_size == 0:
                last_error = FFmpegError(f"Output file missing or empty: {output_path}")
                continue

            if on_progress:
                on_progress(scene_index, 100)
            return SceneSegment(
                scene_index=scene_index,
                path=output_path,
                duration=scene.duration,
                from_clip=clip_path is not None,
                captions_burned=subtitles is not None,
            )

        raise CompositionFailure(
            f"Scene {scene_index} composition failed: {last_error}",
            stage="composing",
            details={"scene": scene_index},
        ) from last_error

    def _build_command(
        self,
        scene: SceneSpec,
        image_path: str,
        clip_path: Optional[str],
        output_path: str,
        srt_path: Optional[str],
    ) -> List[str]:
        if clip_path:
            base = build_fit_filter(self.config)
        else:
            base = build_motion_filter(get_camera_preset(scene.camera), scene.duration, self.config)

        vf = build_scene_filter(
            base,
            transition=scene.transition,
            srt_path=srt_path,
            watermark=self.watermark,
        )

        if clip_path:
            return build_clip_segment_command(
                clip_path, output_path, scene.duration, vf, self.config, self.profile
            )
        return build_image_segment_command(
            image_path, output_path, scene.duration, vf, self.config, self.profile
        )

    @staticmethod
    def _progress_adapter(
        scene_index: int, on_progress: Optional[SceneProgressCallback]
    ) -> Optional[Callable[[int, str], None]]:
        if on_progress is None:
            return None

        def callback(percent: int, _message: str) -> None:
            # 100 is reported once the output has been verified
            on_progress(scene_index, min(percent, 99))

        return callback
