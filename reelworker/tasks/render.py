"""
Render Task for the Render Worker

Turns a RenderRequest into a finished video:

    initializing -> (cache hit: done)
                 | clip-acquisition -> composing -> assembling -> uploading -> done
    any stage -> failed

Progress bands per stage:
- initializing: 0-10
- clip-acquisition: 10-75
- composing: 75-88
- assembling: 88-92
- uploading: 92-100

The per-job working directory is removed on every exit path. Failures are
classified as RenderError subclasses, persisted on the terminal progress
snapshot and recorded in the job ledger before being re-raised.

Per-scene percentages: when clips are acquired, acquisition fills 0-50 and
composition 50-100; otherwise composition fills 0-100.

Job timeout: settings.render_timeout (RENDER_JOB_TIMEOUT)
"""

import logging
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError
from rq.timeouts import JobTimeoutException
from sqlalchemy.exc import SQLAlchemyError

from ..config import Settings, get_settings
from ..schemas.render import RenderRequest, RenderResult, Resolution
from .assets import AssetResolver, ResolvedAssets
from .captions import CaptionCue, parse_srt, slice_for_scene
from .clips.acquirer import ClipAcquirer, ClipOutcome
from .clips.client import RemoteClipClient
from .errors import (
    AssetUnresolved,
    InternalRenderError,
    InvalidRequest,
    PublishFailure,
    RenderCancelled,
    RenderError,
)
from .ffmpeg_runner import run_ffmpeg_with_progress
from .jobs import JobLedger
from .motion_engine.compose import SceneCompositor, SceneSegment
from .motion_engine.ffmpeg_templates import RenderConfig
from .plans import EncodeProfile, PlanResolver, clamp_resolution, resolve_export_preset
from .progress import ProgressReporter
from .render_cache import RenderCache, build_manifest, compute_key
from .retry import call_with_retry
from .storage import AssetStore
from .timeline import TimelineAssembler

logger = logging.getLogger(__name__)

STAGE_INITIALIZING = "initializing"
STAGE_CLIP_ACQUISITION = "clip-acquisition"
STAGE_COMPOSING = "composing"
STAGE_ASSEMBLING = "assembling"
STAGE_UPLOADING = "uploading"
STAGE_DONE = "done"
STAGE_FAILED = "failed"

STAGE_BANDS = {
    STAGE_INITIALIZING: (0, 10),
    STAGE_CLIP_ACQUISITION: (10, 75),
    STAGE_COMPOSING: (75, 88),
    STAGE_ASSEMBLING: (88, 92),
    STAGE_UPLOADING: (92, 100),
}


def band(stage: str, fraction: float) -> int:
    """Map a 0-1 fraction of a stage onto the overall percentage."""
    low, high = STAGE_BANDS[stage]
    fraction = max(0.0, min(1.0, fraction))
    return int(low + (high - low) * fraction)


class BillingHooks:
    """
    Credit reservation callbacks around a render.

    ``on_reserved`` runs before any work starts; ``on_settled`` runs exactly
    once after the render finished or failed. The default implementation
    does nothing.
    """

    def on_reserved(self, request: RenderRequest) -> None:
        pass

    def on_settled(
        self, request: RenderRequest, success: bool, error: Optional[RenderError] = None
    ) -> None:
        pass


def parse_request(raw: Union[RenderRequest, Mapping[str, Any]]) -> RenderRequest:
    """
    Validate a raw request.

    Raises:
        InvalidRequest: With the validation messages in ``details``
    """
    if isinstance(raw, RenderRequest):
        return raw
    try:
        return RenderRequest.model_validate(raw)
    except ValidationError as e:
        errors = [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        raise InvalidRequest(
            f"Invalid render request: {len(errors)} validation error(s)",
            stage=STAGE_INITIALIZING,
            details={"errors": errors},
        ) from e


class RenderOrchestrator:
    """
    Sequence the render stages for one request at a time per job id.

    Collaborators are injected; ``create_orchestrator`` wires the production
    defaults. Distinct renders may run concurrently on separate threads
    sharing one orchestrator.

    Usage:
        orchestrator = RenderOrchestrator(store, reporter)
        result = orchestrator.run(request)
    """

    def __init__(
        self,
        store: AssetStore,
        reporter: ProgressReporter,
        settings: Optional[Settings] = None,
        acquirer: Optional[ClipAcquirer] = None,
        plan_resolver: Optional[PlanResolver] = None,
        ledger: Optional[JobLedger] = None,
        billing: Optional[BillingHooks] = None,
        runner=run_ffmpeg_with_progress,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.reporter = reporter
        self.plans = plan_resolver or PlanResolver()
        self.ledger = ledger
        self.billing = billing or BillingHooks()
        self.resolver = AssetResolver(store)
        self.cache = RenderCache(
            store,
            namespace=self.settings.cache_namespace,
            extension=self.settings.output_extension,
        )
        self.acquirer = acquirer or ClipAcquirer(
            store,
            client=build_remote_client(self.settings),
            models=self.settings.clip_model_list,
            concurrency=self.settings.clip_concurrency,
            clip_max_seconds=self.settings.clip_max_seconds,
            extension=self.settings.output_extension,
        )
        self._run_ffmpeg = runner
        # Remote client built here rather than handed in with an acquirer
        self._owns_client = acquirer is None

    def close(self) -> None:
        """Release the remote clip client this orchestrator created."""
        client = self.acquirer.client
        if self._owns_client and client is not None:
            client.close()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        raw_request: Union[RenderRequest, Mapping[str, Any]],
        cancel_event: Optional[threading.Event] = None,
    ) -> RenderResult:
        """
        Render a request to a final artifact.

        Args:
            raw_request: RenderRequest or its dict form
            cancel_event: Aborts the render at the next checkpoint when set; also
                set by the orchestrator when the render is interrupted, which
                stops clip generation still running on worker threads

        Returns:
            RenderResult referencing the published artifact

        Raises:
            RenderError: Classified failure (already persisted as the
                job's terminal progress snapshot)
        """
        try:
            request = parse_request(raw_request)
        except InvalidRequest as e:
            job_id = raw_request.get("job_id") if isinstance(raw_request, Mapping) else None
            if isinstance(job_id, str) and job_id:
                self.reporter.update(
                    job_id, stage=STAGE_FAILED, message=e.message, error=e.to_dict()
                )
            raise
        job_id = request.job_id
        if cancel_event is None:
            cancel_event = threading.Event()

        plan = self.plans.resolve(request.plan_id)
        if len(request.scenes) > plan.max_scenes:
            error = InvalidRequest(
                f"Plan '{plan.plan_id}' allows at most {plan.max_scenes} scenes, "
                f"got {len(request.scenes)}",
                stage=STAGE_INITIALIZING,
                details={"max_scenes": plan.max_scenes, "scenes": len(request.scenes)},
            )
            self.reporter.update(
                job_id, stage=STAGE_FAILED, message=error.message, error=error.to_dict()
            )
            raise error

        if self.ledger is not None and not request.force:
            previous = self._ledger_call(self.ledger.completed_result, job_id)
            if previous is not None:
                logger.info(f"Job {job_id} already complete, returning recorded result")
                self.reporter.update(
                    job_id,
                    stage=STAGE_DONE,
                    message="Render already complete",
                    cached=previous.cached,
                    done=True,
                )
                return previous

        logger.info(
            f"Starting render job={job_id} project={request.project_id} "
            f"scenes={len(request.scenes)} engine={request.engine} force={request.force}"
        )

        self.billing.on_reserved(request)
        if self.ledger is not None:
            self._ledger_call(self.ledger.start, request)

        work_dir: Optional[str] = None
        stage = STAGE_INITIALIZING
        try:
            self._report(request, STAGE_INITIALIZING, 0, "Validating request")
            self.reporter.update(job_id, scene_count=len(request.scenes))

            resolution = clamp_resolution(request.resolution, plan)
            profile = resolve_export_preset(request.export_preset)
            acquire_clips = self._clip_acquisition_enabled(request)

            self._report(request, STAGE_INITIALIZING, 3, "Resolving assets")
            assets = self.resolver.resolve(request)

            manifest = build_manifest(
                request,
                resolution=resolution,
                profile=profile,
                plan=plan,
                assets=assets,
                fps=self.settings.fps,
                clip_acquisition=acquire_clips,
            )
            fingerprint = compute_key(manifest)
            output_ref = f"{request.project_id}/movie.{self.settings.output_extension}"
            logger.info(
                f"Job {job_id}: manifest {fingerprint[:16]}... "
                f"{resolution} preset={profile.preset_id} watermark={plan.watermark}"
            )
            self._report(request, STAGE_INITIALIZING, 8, "Checking render cache")

            if not request.force:
                result = self._try_cached(request, fingerprint, output_ref)
                if result is not None:
                    self._settle_success(request, result)
                    return result

            self._check_cancel(cancel_event, stage)
            work_dir = tempfile.mkdtemp(prefix="reelworker-", dir=self.settings.work_root)

            stage = STAGE_CLIP_ACQUISITION
            clips = self._acquire_clips(request, assets, work_dir, acquire_clips, cancel_event)

            stage = STAGE_COMPOSING
            self._check_cancel(cancel_event, stage)
            segments = self._compose(
                request, assets, clips, work_dir, resolution, profile, plan.watermark,
                cancel_event, scene_base=50 if acquire_clips else 0,
            )

            stage = STAGE_ASSEMBLING
            self._check_cancel(cancel_event, stage)
            self._report(request, STAGE_ASSEMBLING, band(STAGE_ASSEMBLING, 0), "Assembling timeline")
            assembler = TimelineAssembler(
                profile, timeout_seconds=self.settings.assemble_timeout, runner=self._run_ffmpeg
            )
            timeline = assembler.assemble(
                segments,
                work_dir,
                narration_path=assets.narration.path if assets.narration else None,
                music_path=assets.music.path if assets.music else None,
                on_progress=lambda p, m: self._report(
                    request, STAGE_ASSEMBLING, band(STAGE_ASSEMBLING, p / 100.0), m
                ),
                cancel_event=cancel_event,
            )

            stage = STAGE_UPLOADING
            self._check_cancel(cancel_event, stage)
            self._report(request, STAGE_UPLOADING, band(STAGE_UPLOADING, 0), "Publishing video")
            self._publish(output_ref, timeline.path)
            self._report(request, STAGE_UPLOADING, band(STAGE_UPLOADING, 0.6), "Updating render cache")
            self._write_back(fingerprint, output_ref)

            result = RenderResult(
                job_id=job_id,
                project_id=request.project_id,
                artifact_ref=output_ref,
                manifest_hash=fingerprint,
                cached=False,
                duration_seconds=timeline.duration,
                file_size=self.store.size(output_ref),
                clip_scenes=sorted(i for i, o in clips.items() if o.ok),
                fallback_scenes=[
                    i for i in range(len(request.scenes)) if not (i in clips and clips[i].ok)
                ],
            )
            self._settle_success(request, result)
            return result

        except RenderError as e:
            if e.stage is None:
                e.stage = stage
            self._settle_failure(request, e)
            raise
        except JobTimeoutException as e:
            cancel_event.set()
            error = RenderCancelled(f"Render exceeded job timeout: {e}", stage=stage)
            self._settle_failure(request, error)
            raise error from e
        except Exception as e:
            cancel_event.set()
            logger.error(f"Job {job_id}: unexpected error in {stage}: {e}", exc_info=True)
            error = InternalRenderError(f"{type(e).__name__}: {e}", stage=stage)
            self._settle_failure(request, error)
            raise error from e
        except BaseException:
            cancel_event.set()
            raise
        finally:
            if work_dir is not None:
                shutil.rmtree(work_dir, ignore_errors=True)
                logger.debug(f"Job {job_id}: removed working directory {work_dir}")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _clip_acquisition_enabled(self, request: RenderRequest) -> bool:
        if request.engine == "remote-clip":
            return True
        return request.auto_clips and self.acquirer.remote_enabled

    def _try_cached(
        self, request: RenderRequest, fingerprint: str, output_ref: str
    ) -> Optional[RenderResult]:
        cached_ref = self.cache.fetch(fingerprint)
        if cached_ref is None and self.settings.trust_existing_output and self.store.exists(output_ref):
            logger.info(f"Job {request.job_id}: reusing existing output {output_ref}")
            return self._cached_result(request, fingerprint, output_ref)
        if cached_ref is None:
            logger.info(f"Job {request.job_id}: render cache miss")
            return None

        logger.info(f"Job {request.job_id}: render cache hit {fingerprint[:16]}...")
        try:
            call_with_retry(
                lambda: self.store.copy(cached_ref, output_ref),
                attempts=self.settings.retry_max,
                base_delay=self.settings.retry_base_delay,
                retry_on=(OSError,),
                description=f"copy cached render to {output_ref}",
            )
        except OSError as e:
            raise PublishFailure(
                f"Failed to publish cached render: {e}", stage=STAGE_UPLOADING
            ) from e
        return self._cached_result(request, fingerprint, output_ref)

    def _cached_result(
        self, request: RenderRequest, fingerprint: str, output_ref: str
    ) -> RenderResult:
        return RenderResult(
            job_id=request.job_id,
            project_id=request.project_id,
            artifact_ref=output_ref,
            manifest_hash=fingerprint,
            cached=True,
            duration_seconds=request.total_duration,
            file_size=self.store.size(output_ref),
        )

    def _acquire_clips(
        self,
        request: RenderRequest,
        assets: ResolvedAssets,
        work_dir: str,
        acquire_clips: bool,
        cancel_event: Optional[threading.Event],
    ) -> Dict[int, ClipOutcome]:
        if not acquire_clips:
            logger.info(f"Job {request.job_id}: clip acquisition disabled, using still images")
            self._report(
                request,
                STAGE_CLIP_ACQUISITION,
                band(STAGE_CLIP_ACQUISITION, 1.0),
                "Using still images with camera motion",
            )
            return {}

        self._report(
            request, STAGE_CLIP_ACQUISITION, band(STAGE_CLIP_ACQUISITION, 0), "Acquiring motion clips"
        )
        scene_count = len(request.scenes)
        scene_percent: Dict[int, int] = {}
        lock = threading.Lock()

        def on_scene(index: int, percent: int) -> None:
            with lock:
                scene_percent[index] = max(scene_percent.get(index, 0), percent)
                mean = sum(scene_percent.values()) / (100.0 * scene_count)
            self.reporter.update(
                request.job_id,
                progress=band(STAGE_CLIP_ACQUISITION, mean),
                stage=STAGE_CLIP_ACQUISITION,
                message=f"Acquiring motion clip for scene {index + 1}/{scene_count}",
                scene=index,
                scene_percent=percent // 2,
            )

        outcomes = self.acquirer.acquire_all(
            request.project_id,
            request.scenes,
            assets.scene_images,
            work_dir,
            models=request.clip_models,
            force=request.force,
            on_progress=on_scene,
            cancel_event=cancel_event,
        )
        failed = sorted(i for i, o in outcomes.items() if not o.ok)
        if failed:
            logger.info(f"Job {request.job_id}: scenes {failed} fall back to still images")
        return outcomes

    def _compose(
        self,
        request: RenderRequest,
        assets: ResolvedAssets,
        clips: Dict[int, ClipOutcome],
        work_dir: str,
        resolution: Resolution,
        profile: EncodeProfile,
        watermark: bool,
        cancel_event: Optional[threading.Event],
        scene_base: int = 0,
    ) -> List[SceneSegment]:
        compositor = SceneCompositor(
            RenderConfig(width=resolution.width, height=resolution.height, fps=self.settings.fps),
            profile,
            watermark=watermark,
            timeout_seconds=self.settings.scene_timeout,
            runner=self._run_ffmpeg,
        )
        cues = self._load_captions(assets)
        scene_count = len(request.scenes)
        segments: List[SceneSegment] = []
        offset = 0.0

        for index, scene in enumerate(request.scenes):
            self._check_cancel(cancel_event, STAGE_COMPOSING)
            outcome = clips.get(index)
            clip_path = outcome.clip.path if outcome is not None and outcome.clip else None
            scene_cues = slice_for_scene(cues, offset, scene.duration) if cues else []

            def on_scene(i: int, percent: int, _index=index) -> None:
                fraction = (_index + percent / 100.0) / scene_count
                self.reporter.update(
                    request.job_id,
                    progress=band(STAGE_COMPOSING, fraction),
                    stage=STAGE_COMPOSING,
                    message=f"Composing scene {i + 1}/{scene_count}",
                    scene=i,
                    scene_percent=scene_base + (percent * (100 - scene_base)) // 100,
                )

            segments.append(
                compositor.compose(
                    index,
                    scene,
                    image_path=assets.scene_images[index].path,
                    work_dir=work_dir,
                    clip_path=clip_path,
                    captions=scene_cues,
                    on_progress=on_scene,
                    cancel_event=cancel_event,
                )
            )
            offset += scene.duration

        return segments

    def _load_captions(self, assets: ResolvedAssets) -> List[CaptionCue]:
        if assets.captions is None:
            return []
        try:
            text = Path(assets.captions.path).read_text(encoding="utf-8-sig")
        except (OSError, UnicodeDecodeError) as e:
            raise AssetUnresolved(
                f"Caption track unreadable: {assets.captions.ref}",
                stage=STAGE_INITIALIZING,
                details={"ref": assets.captions.ref},
            ) from e
        cues = parse_srt(text)
        if not cues:
            logger.warning(f"Caption track {assets.captions.ref} has no cues")
        return cues

    def _publish(self, output_ref: str, local_path: str) -> None:
        try:
            call_with_retry(
                lambda: self.store.put_file(output_ref, local_path),
                attempts=self.settings.retry_max,
                base_delay=self.settings.retry_base_delay,
                retry_on=(OSError,),
                description=f"publish {output_ref}",
            )
        except OSError as e:
            raise PublishFailure(
                f"Failed to publish {output_ref}: {e}", stage=STAGE_UPLOADING
            ) from e
        logger.info(f"Published {output_ref}")

    def _write_back(self, fingerprint: str, output_ref: str) -> None:
        try:
            self.cache.store(fingerprint, output_ref)
        except OSError as e:
            logger.warning(f"Render cache write-back failed for {fingerprint[:16]}...: {e}")

    # ------------------------------------------------------------------
    # Reporting and settlement
    # ------------------------------------------------------------------

    def _report(self, request: RenderRequest, stage: str, progress: int, message: str) -> None:
        self.reporter.update(request.job_id, progress=progress, stage=stage, message=message)

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event], stage: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RenderCancelled("Render cancelled", stage=stage)

    def _settle_success(self, request: RenderRequest, result: RenderResult) -> None:
        scenes = {} if result.cached else {i: 100 for i in range(len(request.scenes))}
        for index, percent in scenes.items():
            self.reporter.update(request.job_id, scene=index, scene_percent=percent)
        self.reporter.update(
            request.job_id,
            stage=STAGE_DONE,
            message="Render served from cache" if result.cached else "Render complete",
            cached=result.cached,
            done=True,
        )
        if self.ledger is not None:
            self._ledger_call(self.ledger.complete, request.job_id, result)
        self._settle_billing(request, True, None)
        logger.info(
            f"Render complete job={request.job_id}: {result.artifact_ref} "
            f"size={result.file_size} duration={result.duration_seconds}s cached={result.cached}"
        )

    def _settle_failure(self, request: RenderRequest, error: RenderError) -> None:
        logger.error(f"Render failed job={request.job_id}: {error.code} {error.message}")
        self.reporter.update(
            request.job_id,
            stage=STAGE_FAILED,
            message=error.message,
            error=error.to_dict(),
        )
        if self.ledger is not None:
            self._ledger_call(self.ledger.fail, request.job_id, error)
        self._settle_billing(request, False, error)

    def _settle_billing(
        self, request: RenderRequest, success: bool, error: Optional[RenderError]
    ) -> None:
        try:
            self.billing.on_settled(request, success, error)
        except Exception:
            logger.exception(f"Billing settlement hook failed for job {request.job_id}")

    @staticmethod
    def _ledger_call(fn, *args):
        try:
            return fn(*args)
        except SQLAlchemyError as e:
            logger.warning(f"Job ledger update failed: {e}")
            return None


# ============================================================================
# Wiring
# ============================================================================


def build_remote_client(settings: Settings) -> Optional[RemoteClipClient]:
    """Remote clip client, or None when no API key is configured."""
    if not settings.remote_generation_enabled:
        return None
    return RemoteClipClient(
        api_key=settings.fal_api_key,
        base_url=settings.fal_queue_url,
        poll_interval=settings.clip_poll_interval,
        timeout=settings.clip_timeout,
        retry_max=settings.retry_max,
        retry_base_delay=settings.retry_base_delay,
    )


def create_orchestrator(settings: Optional[Settings] = None) -> RenderOrchestrator:
    """
    Build an orchestrator wired to the worker's production collaborators:
    local asset store, Redis progress, SQL job ledger.
    """
    from ..db import get_session_factory
    from ..queues import get_redis_connection
    from .progress import RedisProgressBus, RedisProgressStore
    from .storage import LocalAssetStore

    settings = settings or get_settings()
    redis = get_redis_connection()
    reporter = ProgressReporter(
        store=RedisProgressStore(redis, expiry_seconds=settings.progress_expiry_seconds),
        bus=RedisProgressBus(redis),
        flush_interval=settings.progress_flush_interval,
    )
    try:
        ledger: Optional[JobLedger] = JobLedger(get_session_factory())
    except SQLAlchemyError as e:
        logger.warning(f"Job ledger unavailable, rendering without it: {e}")
        ledger = None

    return RenderOrchestrator(
        store=LocalAssetStore(settings.storage_path),
        reporter=reporter,
        settings=settings,
        ledger=ledger,
    )


def enqueue_render(request: Union[RenderRequest, Mapping[str, Any]]):
    """
    Enqueue a render job with the configured timeout.

    The RQ job id is the request's job id, so progress and job status share
    one identifier.

    Args:
        request: RenderRequest or its dict form

    Returns:
        RQ Job instance

    Raises:
        InvalidRequest: If the request fails validation
    """
    from ..queues import render_queue

    request = parse_request(request)
    return render_queue.enqueue(
        render_video,
        request.model_dump(mode="json"),
        job_id=request.job_id,
        job_timeout=get_settings().render_timeout,
    )


# ============================================================================
# Main Task Function
# ============================================================================


def render_video(request_data: Dict[str, Any]) -> dict:
    """
    RQ task to render a video from a request dict.

    Args:
        request_data: RenderRequest in dict form

    Returns:
        RenderResult as a JSON-compatible dict

    Raises:
        RenderError: Classified failure
    """
    orchestrator = create_orchestrator()
    try:
        result = orchestrator.run(request_data)
    finally:
        orchestrator.close()
    return result.model_dump(mode="json")
