"""
Progress Reporter

Accepts stage/percentage/per-scene updates for render jobs, fans every
update out to live subscribers, and persists the latest snapshot so that
reconnecting clients and restarted workers can pick up where a job left off.

Two backends are provided for each side:
- Persistence: RedisProgressStore (hash per job, merged field writes)
  and InMemoryProgressStore
- Live fan-out: RedisProgressBus (pub/sub channel per job) and
  InMemoryProgressBus

Durable writes are throttled per job (at most one per flush interval) and
always flushed on terminal states. Live fan-out is never throttled.
"""

import json
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from redis import Redis
from redis.exceptions import RedisError

from ..schemas.progress import ProgressState

logger = logging.getLogger(__name__)

PROGRESS_KEY_PREFIX = "reelworker:progress"
SCENE_FIELD_PREFIX = "scene:"

# Progress below this is too early for a meaningful ETA
ETA_MIN_PROGRESS = 5


def get_progress_key(job_id: str) -> str:
    """Get the Redis key for a job's progress."""
    return f"{PROGRESS_KEY_PREFIX}:{job_id}"


def get_events_channel(job_id: str) -> str:
    """Get the Redis pub/sub channel for a job's live updates."""
    return f"{PROGRESS_KEY_PREFIX}:{job_id}:events"


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


# ============================================================================
# Persistence
# ============================================================================


class ProgressStore(ABC):
    """Durable latest-snapshot storage keyed by job id."""

    @abstractmethod
    def upsert(self, job_id: str, state: ProgressState, replace: bool = False) -> None:
        """Merge ``state`` into the stored snapshot, or overwrite it when ``replace``."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[ProgressState]:
        ...


class InMemoryProgressStore(ProgressStore):
    """Process-local store for single-process use and tests."""

    def __init__(self):
        self._states: Dict[str, ProgressState] = {}
        self._lock = threading.Lock()

    def upsert(self, job_id: str, state: ProgressState, replace: bool = False) -> None:
        with self._lock:
            previous = None if replace else self._states.get(job_id)
            if previous is not None:
                per_scene = dict(previous.per_scene)
                per_scene.update(state.per_scene)
                state = state.model_copy(update={"per_scene": per_scene})
            self._states[job_id] = state

    def get(self, job_id: str) -> Optional[ProgressState]:
        with self._lock:
            return self._states.get(job_id)


class RedisProgressStore(ProgressStore):
    """
    Redis hash per job.

    Each top-level field and each per-scene percentage (``scene:{i}``) is
    its own hash field, so HSET merges rather than replaces. A replacing
    write deletes the hash first, dropping scene fields of an earlier run.
    The write and its expiry run in one pipeline.
    """

    def __init__(self, redis: Redis, expiry_seconds: int = 86400):
        self.redis = redis
        self.expiry_seconds = expiry_seconds

    def upsert(self, job_id: str, state: ProgressState, replace: bool = False) -> None:
        mapping: Dict[str, str] = {
            "job_id": state.job_id,
            "progress": str(state.progress),
            "stage": state.stage,
            "message": state.message,
            "eta_seconds": "" if state.eta_seconds is None else f"{state.eta_seconds:.1f}",
            "scene_count": "" if state.scene_count is None else str(state.scene_count),
            "current_scene": "" if state.current_scene is None else str(state.current_scene),
            "cached": "1" if state.cached else "0",
            "done": "1" if state.done else "0",
            "error": json.dumps(state.error) if state.error else "",
            "updated_at": f"{state.updated_at:.3f}",
        }
        for index, percent in state.per_scene.items():
            mapping[f"{SCENE_FIELD_PREFIX}{index}"] = str(percent)

        key = get_progress_key(job_id)
        pipe = self.redis.pipeline()
        if replace:
            pipe.delete(key)
        pipe.hset(key, mapping=mapping)
        pipe.expire(key, self.expiry_seconds)
        pipe.execute()

    def get(self, job_id: str) -> Optional[ProgressState]:
        raw = self.redis.hgetall(get_progress_key(job_id))
        if not raw:
            return None
        data = {_text(k): _text(v) for k, v in raw.items()}
        return self._decode(job_id, data)

    def delete(self, job_id: str) -> bool:
        return self.redis.delete(get_progress_key(job_id)) > 0

    @staticmethod
    def _decode(job_id: str, data: Dict[str, str]) -> ProgressState:
        per_scene = {}
        for name, value in data.items():
            if name.startswith(SCENE_FIELD_PREFIX):
                per_scene[int(name[len(SCENE_FIELD_PREFIX):])] = int(value)

        def optional_int(name: str) -> Optional[int]:
            value = data.get(name)
            return int(value) if value else None

        eta = data.get("eta_seconds")
        error = data.get("error")
        return ProgressState(
            job_id=data.get("job_id") or job_id,
            progress=int(data.get("progress") or 0),
            stage=data.get("stage", ""),
            message=data.get("message", ""),
            eta_seconds=float(eta) if eta else None,
            per_scene=per_scene,
            scene_count=optional_int("scene_count"),
            current_scene=optional_int("current_scene"),
            cached=data.get("cached") == "1",
            done=data.get("done") == "1",
            error=json.loads(error) if error else None,
            updated_at=float(data.get("updated_at") or 0.0),
        )


# ============================================================================
# Live fan-out
# ============================================================================


class Subscription(ABC):
    """A live feed of snapshots for one job."""

    @abstractmethod
    def get(self, timeout: float) -> Optional[ProgressState]:
        """Next snapshot, or None if none arrived within ``timeout``."""

    @abstractmethod
    def close(self) -> None:
        ...


class ProgressBus(ABC):
    @abstractmethod
    def publish(self, job_id: str, state: ProgressState) -> None:
        ...

    @abstractmethod
    def subscribe(self, job_id: str) -> Subscription:
        ...


class _QueueSubscription(Subscription):
    def __init__(self, bus: "InMemoryProgressBus", job_id: str):
        self._bus = bus
        self._job_id = job_id
        self.queue: "queue.Queue[ProgressState]" = queue.Queue()

    def get(self, timeout: float) -> Optional[ProgressState]:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._bus._remove(self._job_id, self)


class InMemoryProgressBus(ProgressBus):
    """Process-local pub/sub with one unbounded queue per subscriber."""

    def __init__(self):
        self._subscribers: Dict[str, List[_QueueSubscription]] = {}
        self._lock = threading.Lock()

    def publish(self, job_id: str, state: ProgressState) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(job_id, ()))
        for subscription in subscribers:
            subscription.queue.put(state)

    def subscribe(self, job_id: str) -> Subscription:
        subscription = _QueueSubscription(self, job_id)
        with self._lock:
            self._subscribers.setdefault(job_id, []).append(subscription)
        return subscription

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))

    def _remove(self, job_id: str, subscription: _QueueSubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(job_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(job_id, None)


class _RedisSubscription(Subscription):
    def __init__(self, redis: Redis, channel: str):
        self._pubsub = redis.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(channel)

    def get(self, timeout: float) -> Optional[ProgressState]:
        deadline = time.monotonic() + timeout
        while True:
            remaining = max(0.0, deadline - time.monotonic())
            message = self._pubsub.get_message(timeout=remaining)
            if message and message.get("type") == "message":
                return ProgressState.model_validate_json(_text(message["data"]))
            if time.monotonic() >= deadline:
                return None

    def close(self) -> None:
        self._pubsub.close()


class RedisProgressBus(ProgressBus):
    """Redis pub/sub channel per job carrying JSON snapshots."""

    def __init__(self, redis: Redis):
        self.redis = redis

    def publish(self, job_id: str, state: ProgressState) -> None:
        self.redis.publish(get_events_channel(job_id), state.model_dump_json())

    def subscribe(self, job_id: str) -> Subscription:
        return _RedisSubscription(self.redis, get_events_channel(job_id))


# ============================================================================
# Reporter
# ============================================================================


@dataclass
class _JobProgress:
    state: ProgressState
    started_at: float
    last_flush: float = 0.0
    dirty: bool = False
    # First write of a run that did not resume a persisted snapshot
    fresh: bool = True
    lock: threading.Lock = field(default_factory=threading.Lock)


class ProgressReporter:
    """
    Merge progress updates per job and distribute them.

    Thread-safe: scene workers of one render may report concurrently.
    Within a job, ``progress`` never decreases. When the first update for a
    job id arrives in this process and a non-terminal snapshot was persisted
    by an earlier process, that snapshot becomes the baseline.

    Usage:
        reporter = ProgressReporter(RedisProgressStore(redis), RedisProgressBus(redis))
        reporter.update(job_id, progress=10, stage="clip-acquisition")
        reporter.update(job_id, scene=0, scene_percent=100)
        reporter.update(job_id, progress=100, stage="done", done=True)
    """

    def __init__(
        self,
        store: Optional[ProgressStore] = None,
        bus: Optional[ProgressBus] = None,
        flush_interval: float = 0.9,
    ):
        self.store = store or InMemoryProgressStore()
        self.bus = bus or InMemoryProgressBus()
        self.flush_interval = flush_interval
        self._jobs: Dict[str, _JobProgress] = {}
        self._lock = threading.Lock()

    def update(
        self,
        job_id: str,
        *,
        progress: Optional[int] = None,
        stage: Optional[str] = None,
        message: Optional[str] = None,
        scene: Optional[int] = None,
        scene_percent: Optional[int] = None,
        scene_count: Optional[int] = None,
        cached: Optional[bool] = None,
        done: bool = False,
        error: Optional[Dict[str, Any]] = None,
    ) -> ProgressState:
        """
        Apply an update to a job's progress.

        Args:
            job_id: Job identifier
            progress: Overall percentage; clamped to 0-100 and to the
                current value so it never moves backwards
            stage: Orchestrator stage name
            message: Human-readable message
            scene: Scene index for a per-scene update
            scene_percent: Percentage for ``scene``
            scene_count: Number of scenes in the render
            cached: Whether the result came from the render cache
            done: Mark the job finished (forces progress to 100)
            error: Structured error; marks the job failed

        Returns:
            The merged snapshot
        """
        job = self._job(job_id)
        now = time.time()

        with job.lock:
            current = job.state
            changes: Dict[str, Any] = {"updated_at": now}

            if progress is not None:
                clamped = max(0, min(100, int(progress)))
                changes["progress"] = max(current.progress, clamped)
            if done:
                changes["progress"] = 100
                changes["done"] = True
            if stage is not None:
                changes["stage"] = stage
            if message is not None:
                changes["message"] = message
            if scene_count is not None:
                changes["scene_count"] = scene_count
            if cached is not None:
                changes["cached"] = cached
            if error is not None:
                changes["error"] = error

            if scene is not None:
                per_scene = dict(current.per_scene)
                percent = max(0, min(100, int(scene_percent or 0)))
                per_scene[scene] = max(per_scene.get(scene, 0), percent)
                changes["per_scene"] = per_scene
                changes["current_scene"] = scene

            new_progress = changes.get("progress", current.progress)
            changes["eta_seconds"] = self._estimate_eta(
                job.started_at, now, new_progress, done or error is not None
            )

            state = current.model_copy(update=changes)
            job.state = state
            job.dirty = True

            terminal = state.is_terminal
            should_flush = terminal or (now - job.last_flush) >= self.flush_interval
            if should_flush:
                self._persist(job_id, job, now)

        self._publish(job_id, state)

        if terminal:
            with self._lock:
                if self._jobs.get(job_id) is job:
                    del self._jobs[job_id]

        return state

    def flush(self, job_id: str) -> None:
        """Persist a job's pending snapshot immediately."""
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            return
        with job.lock:
            if job.dirty:
                self._persist(job_id, job, time.time())

    def snapshot(self, job_id: str) -> Optional[ProgressState]:
        """Latest snapshot: live state in this process, else the persisted one."""
        with self._lock:
            job = self._jobs.get(job_id)
        if job is not None:
            with job.lock:
                return job.state
        try:
            return self.store.get(job_id)
        except RedisError as e:
            logger.warning(f"Failed to load progress for {job_id}: {e}")
            return None

    def subscribe(
        self,
        job_id: str,
        idle_timeout: float = 1.0,
        max_wait: Optional[float] = None,
    ) -> Iterator[ProgressState]:
        """
        Follow a job's progress.

        Yields the latest snapshot immediately (when one exists), then every
        update until the job is done or failed. Closing the iterator only
        detaches the subscriber; the render itself is unaffected.

        Args:
            job_id: Job identifier
            idle_timeout: Seconds to wait for a live event before re-reading
                the persisted snapshot (covers events published before
                the subscription or by another process)
            max_wait: Stop after this many seconds without reaching a
                terminal state; None waits indefinitely
        """
        subscription = self.bus.subscribe(job_id)
        try:
            started = time.monotonic()
            last_seen = self.snapshot(job_id)
            if last_seen is not None:
                yield last_seen
                if last_seen.is_terminal:
                    return

            while max_wait is None or time.monotonic() - started < max_wait:
                state = subscription.get(idle_timeout)
                if state is None:
                    state = self.snapshot(job_id)
                    if state is None or (
                        last_seen is not None and state.updated_at <= last_seen.updated_at
                    ):
                        continue
                elif last_seen is not None and state.updated_at < last_seen.updated_at:
                    continue
                last_seen = state
                yield state
                if state.is_terminal:
                    return
        finally:
            subscription.close()

    def _job(self, job_id: str) -> _JobProgress:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                return job

        baseline = None
        try:
            persisted = self.store.get(job_id)
        except RedisError as e:
            logger.warning(f"Failed to load progress baseline for {job_id}: {e}")
            persisted = None
        if persisted is not None and not persisted.is_terminal:
            logger.info(
                f"Resuming progress for {job_id} from persisted snapshot "
                f"({persisted.progress}% at {persisted.stage})"
            )
            baseline = persisted

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                job = _JobProgress(
                    state=baseline or ProgressState(job_id=job_id),
                    started_at=time.time(),
                    fresh=baseline is None,
                )
                self._jobs[job_id] = job
            return job

    def _persist(self, job_id: str, job: _JobProgress, now: float) -> None:
        try:
            if job.fresh:
                self.store.upsert(job_id, job.state, replace=True)
                job.fresh = False
            else:
                self.store.upsert(job_id, job.state)
            job.dirty = False
            job.last_flush = now
        except RedisError as e:
            logger.warning(f"Failed to persist progress for {job_id}: {e}")

    def _publish(self, job_id: str, state: ProgressState) -> None:
        try:
            self.bus.publish(job_id, state)
        except RedisError as e:
            logger.warning(f"Failed to publish progress for {job_id}: {e}")

    @staticmethod
    def _estimate_eta(
        started_at: float, now: float, progress: int, terminal: bool
    ) -> Optional[float]:
        if terminal:
            return 0.0
        if progress < ETA_MIN_PROGRESS or progress >= 100:
            return None
        elapsed = now - started_at
        return round(elapsed * (100 - progress) / progress, 1)
