"""
Clip Acquirer

Obtains a short motion clip per scene: a previously stored clip at
``{project_id}/clips/scene-{index}.{ext}``, or a new one generated by the
remote service by trying each candidate model in order. A scene for which
every candidate fails simply has no clip; the compositor then animates the
still image instead.

Scenes are acquired in parallel on a bounded thread pool so the number of
in-flight remote requests stays under the service's rate limits.
"""

import logging
import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from ...schemas.render import SceneSpec
from ..assets import ResolvedAsset
from ..errors import ClipGenerationFailed, RenderCancelled
from ..storage import AssetNotFound, AssetStore
from .client import ClipAttempt, RemoteClipClient

logger = logging.getLogger(__name__)

SceneProgressCallback = Callable[[int, int], None]

CLIP_SOURCE_CACHE = "cache"
CLIP_SOURCE_REMOTE = "remote"


@dataclass(frozen=True)
class SceneClip:
    """A motion clip available for one scene."""

    scene_index: int
    ref: str
    path: str
    source: str
    model: Optional[str] = None


@dataclass
class ClipOutcome:
    """Result of acquiring one scene: a clip, or the reason there is none."""

    scene_index: int
    clip: Optional[SceneClip] = None
    attempts: List[ClipAttempt] = field(default_factory=list)
    error: Optional[ClipGenerationFailed] = None

    @property
    def ok(self) -> bool:
        return self.clip is not None


def clip_ref(project_id: str, scene_index: int, extension: str = "mp4") -> str:
    return f"{project_id}/clips/scene-{scene_index}.{extension}"


class ClipAcquirer:
    """
    Acquire per-scene motion clips.

    Args:
        store: Asset store holding project clips
        client: Remote generation client, or None when remote generation
            is unavailable (only stored clips are used)
        models: Ordered candidate model ids
        concurrency: Maximum scenes acquired in parallel
        clip_max_seconds: Longest clip requested from the service
        extension: Clip container extension
    """

    def __init__(
        self,
        store: AssetStore,
        client: Optional[RemoteClipClient] = None,
        models: Sequence[str] = (),
        concurrency: int = 2,
        clip_max_seconds: int = 8,
        extension: str = "mp4",
    ):
        self.store = store
        self.client = client
        self.models = list(models)
        self.concurrency = max(1, concurrency)
        self.clip_max_seconds = clip_max_seconds
        self.extension = extension

    @property
    def remote_enabled(self) -> bool:
        return self.client is not None and bool(self.models)

    def cached_clip(self, project_id: str, scene_index: int) -> Optional[SceneClip]:
        """Return the stored clip for a scene, if any."""
        ref = clip_ref(project_id, scene_index, self.extension)
        if not self.store.exists(ref):
            return None
        try:
            path, _ = self.store.resolve(ref)
        except AssetNotFound:
            return None
        return SceneClip(scene_index=scene_index, ref=ref, path=path, source=CLIP_SOURCE_CACHE)

    def list_cached(self, project_id: str) -> List[str]:
        """References of all stored clips of a project."""
        suffix = f".{self.extension}"
        return [
            ref for ref in self.store.list_prefix(f"{project_id}/clips/scene-")
            if ref.endswith(suffix)
        ]

    def acquire(
        self,
        project_id: str,
        scene_index: int,
        image: ResolvedAsset,
        duration_seconds: float,
        work_dir: str,
        models: Optional[Sequence[str]] = None,
        force: bool = False,
        prompt: Optional[str] = None,
        on_progress: Optional[SceneProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ClipOutcome:
        """
        Acquire the clip of one scene.

        Returns the stored clip unless ``force`` is set; otherwise tries each
        candidate model in order and stores the first success.

        Returns:
            ClipOutcome; failures are carried in ``error``, never raised

        Raises:
            RenderCancelled: If cancel_event is set
        """
        report = on_progress or (lambda _i, _p: None)
        ref = clip_ref(project_id, scene_index, self.extension)

        if not force:
            cached = self.cached_clip(project_id, scene_index)
            if cached is not None:
                logger.info(f"Scene {scene_index}: using stored clip {ref}")
                report(scene_index, 100)
                return ClipOutcome(scene_index=scene_index, clip=cached)
        elif self.store.delete(ref):
            logger.info(f"Scene {scene_index}: invalidated stored clip {ref}")

        candidates = list(models if models is not None else self.models)
        if self.client is None or not candidates:
            report(scene_index, 100)
            return ClipOutcome(
                scene_index=scene_index,
                error=ClipGenerationFailed(
                    "Remote clip generation unavailable",
                    stage="clip-acquisition",
                    details={"scene": scene_index},
                ),
            )

        seconds = int(min(self.clip_max_seconds, max(1, math.ceil(duration_seconds))))
        outcome = ClipOutcome(scene_index=scene_index)
        report(scene_index, 5)

        for position, model in enumerate(candidates):
            if cancel_event is not None and cancel_event.is_set():
                raise RenderCancelled("Clip acquisition cancelled", stage="clip-acquisition")

            dest_path = os.path.join(work_dir, f"remote_clip_{scene_index}_{position}.{self.extension}")
            attempt = self.client.attempt(
                model,
                image_path=image.path,
                duration_seconds=seconds,
                dest_path=dest_path,
                prompt=prompt,
                cancel_event=cancel_event,
            )
            outcome.attempts.append(attempt)

            if attempt.ok and attempt.path:
                self.store.put_file(ref, attempt.path)
                path, _ = self.store.resolve(ref)
                outcome.clip = SceneClip(
                    scene_index=scene_index,
                    ref=ref,
                    path=path,
                    source=CLIP_SOURCE_REMOTE,
                    model=model,
                )
                logger.info(
                    f"Scene {scene_index}: generated clip with {model} "
                    f"in {attempt.elapsed:.1f}s"
                )
                report(scene_index, 100)
                return outcome

            logger.warning(f"Scene {scene_index}: candidate {model} failed: {attempt.error}")
            report(scene_index, 5 + int(90 * (position + 1) / len(candidates)))

        outcome.error = ClipGenerationFailed(
            f"All {len(candidates)} candidate models failed for scene {scene_index}",
            stage="clip-acquisition",
            details={
                "scene": scene_index,
                "attempts": [
                    {"model": a.model, "error": a.error, "timed_out": a.timed_out}
                    for a in outcome.attempts
                ],
            },
        )
        report(scene_index, 100)
        return outcome

    def acquire_all(
        self,
        project_id: str,
        scenes: Sequence[SceneSpec],
        images: Sequence[ResolvedAsset],
        work_dir: str,
        models: Optional[Sequence[str]] = None,
        force: bool = False,
        on_progress: Optional[SceneProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[int, ClipOutcome]:
        """
        Acquire clips for every scene with bounded concurrency.

        A failure in one scene never aborts the others: unexpected errors are
        recorded as that scene's ClipGenerationFailed.

        If this thread is interrupted (an RQ job timeout, for instance), the
        cancel event is set so running scenes stop at their next check, and
        scenes not yet started are dropped without waiting.

        Returns:
            Mapping of scene index to outcome, for every scene

        Raises:
            RenderCancelled: If cancel_event is set during acquisition
        """
        outcomes: Dict[int, ClipOutcome] = {}
        cancelled: Optional[RenderCancelled] = None

        logger.info(
            f"Acquiring clips for {len(scenes)} scenes of {project_id} "
            f"(concurrency={self.concurrency}, remote={'on' if self.remote_enabled else 'off'})"
        )

        stop = cancel_event if cancel_event is not None else threading.Event()
        executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="clip-acquire"
        )
        try:
            futures = {
                executor.submit(
                    self.acquire,
                    project_id,
                    index,
                    images[index],
                    scene.duration,
                    work_dir,
                    models,
                    force,
                    scene.prompt,
                    on_progress,
                    stop,
                ): index
                for index, scene in enumerate(scenes)
            }
            for future in as_completed(futures):
                index = futures[future]
                try:
                    outcomes[index] = future.result()
                except RenderCancelled as e:
                    cancelled = e
                except Exception as e:
                    logger.error(f"Scene {index}: clip acquisition crashed: {e}", exc_info=True)
                    outcomes[index] = ClipOutcome(
                        scene_index=index,
                        error=ClipGenerationFailed(
                            f"Clip acquisition error: {e}",
                            stage="clip-acquisition",
                            details={"scene": index},
                        ),
                    )
                    if on_progress:
                        on_progress(index, 100)
        except BaseException:
            # Job timeout or interrupt: stop in-flight scenes, drop queued ones
            stop.set()
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

        if cancelled is not None:
            raise cancelled

        generated = sum(1 for o in outcomes.values() if o.ok)
        logger.info(f"Clip acquisition done: {generated}/{len(scenes)} scenes have clips")
        return outcomes
