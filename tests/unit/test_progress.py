"""
Unit tests for the progress reporter, stores and buses.
"""

import json
import threading
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from reelworker.schemas.progress import ProgressState
from reelworker.tasks.progress import (
    InMemoryProgressBus,
    InMemoryProgressStore,
    ProgressReporter,
    RedisProgressBus,
    RedisProgressStore,
    get_events_channel,
    get_progress_key,
)


@pytest.fixture
def reporter():
    return ProgressReporter(flush_interval=0.0)


class TestProgressReporter:
    """Tests for merging and distributing progress updates."""

    def test_progress_is_monotonic(self, reporter):
        reporter.update("j1", progress=40, stage="composing")
        state = reporter.update("j1", progress=20)
        assert state.progress == 40
        assert state.stage == "composing"

    def test_progress_is_clamped(self, reporter):
        assert reporter.update("j1", progress=250).progress == 100
        assert reporter.update("j2", progress=-5).progress == 0

    def test_done_forces_full_progress(self, reporter):
        state = reporter.update("j1", progress=30, done=True)
        assert state.progress == 100
        assert state.done is True
        assert state.eta_seconds == 0.0

    def test_per_scene_entries_merge_independently(self, reporter):
        reporter.update("j1", scene=0, scene_percent=50)
        reporter.update("j1", scene=1, scene_percent=20)
        state = reporter.update("j1", scene=0, scene_percent=30)
        assert state.per_scene == {0: 50, 1: 20}
        assert state.current_scene == 0

    def test_concurrent_scene_updates(self, reporter):
        def worker(index):
            for percent in range(0, 101, 10):
                reporter.update("j1", scene=index, scene_percent=percent)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert reporter.snapshot("j1").per_scene == {0: 100, 1: 100, 2: 100, 3: 100}

    def test_eta_needs_minimum_progress(self, reporter):
        assert reporter.update("j1", progress=2).eta_seconds is None
        assert reporter.update("j1", progress=50).eta_seconds is not None

    def test_error_is_terminal(self, reporter):
        state = reporter.update("j1", stage="failed", error={"code": "INTERNAL"})
        assert state.is_terminal
        assert reporter.store.get("j1").error == {"code": "INTERNAL"}

    def test_persistence_is_throttled(self):
        store = MagicMock()
        store.get.return_value = None
        reporter = ProgressReporter(store=store, flush_interval=3600)
        reporter.update("j1", progress=10)
        reporter.update("j1", progress=20)
        reporter.update("j1", progress=30)
        assert store.upsert.call_count == 1

        reporter.update("j1", done=True)
        assert store.upsert.call_count == 2
        assert store.upsert.call_args[0][1].done is True

    def test_flush_persists_pending_state(self):
        store = InMemoryProgressStore()
        reporter = ProgressReporter(store=store, flush_interval=3600)
        reporter.update("j1", progress=10)
        reporter.update("j1", progress=60)
        assert store.get("j1").progress == 10
        reporter.flush("j1")
        assert store.get("j1").progress == 60

    def test_every_update_is_published(self):
        bus = InMemoryProgressBus()
        reporter = ProgressReporter(bus=bus, flush_interval=3600)
        subscription = bus.subscribe("j1")
        for p in (10, 20, 30):
            reporter.update("j1", progress=p)
        seen = [subscription.get(0.1).progress for _ in range(3)]
        assert seen == [10, 20, 30]

    def test_persisted_snapshot_becomes_baseline(self):
        store = InMemoryProgressStore()
        store.upsert("j1", ProgressState(job_id="j1", progress=55, stage="composing"))
        reporter = ProgressReporter(store=store, flush_interval=0.0)
        state = reporter.update("j1", progress=30, message="resumed")
        assert state.progress == 55
        assert state.stage == "composing"

    def test_terminal_snapshot_is_not_a_baseline(self):
        store = InMemoryProgressStore()
        store.upsert("j1", ProgressState(job_id="j1", progress=100, done=True))
        reporter = ProgressReporter(store=store, flush_interval=0.0)
        state = reporter.update("j1", progress=5, stage="initializing")
        assert state.progress == 5
        assert state.done is False

    def test_rerun_with_fewer_scenes_drops_stale_scene_entries(self):
        store = InMemoryProgressStore()
        first = ProgressReporter(store=store, flush_interval=0.0)
        for index in range(3):
            first.update("j1", scene=index, scene_percent=100)
        first.update("j1", done=True)

        second = ProgressReporter(store=store, flush_interval=0.0)
        second.update("j1", progress=5, scene_count=1)
        second.update("j1", scene=0, scene_percent=40)
        assert store.get("j1").per_scene == {0: 40}

    def test_resumed_run_keeps_persisted_scene_entries(self):
        store = InMemoryProgressStore()
        store.upsert("j1", ProgressState(job_id="j1", progress=50, per_scene={0: 100, 1: 30}))
        reporter = ProgressReporter(store=store, flush_interval=0.0)
        reporter.update("j1", scene=1, scene_percent=60)
        assert store.get("j1").per_scene == {0: 100, 1: 60}

    def test_redis_failures_do_not_raise(self):
        store = MagicMock()
        store.get.side_effect = RedisConnectionError("down")
        store.upsert.side_effect = RedisConnectionError("down")
        bus = MagicMock()
        bus.publish.side_effect = RedisConnectionError("down")
        reporter = ProgressReporter(store=store, bus=bus, flush_interval=0.0)

        state = reporter.update("j1", progress=10)
        assert state.progress == 10
        reporter.update("j1", done=True)


class TestSubscribe:
    """Tests for following a job's progress."""

    def test_snapshot_of_finished_job(self, reporter):
        reporter.update("j1", progress=100, stage="done", done=True)
        states = list(reporter.subscribe("j1", idle_timeout=0.05))
        assert len(states) == 1
        assert states[0].done

    def test_live_updates_until_terminal(self, reporter):
        reporter.update("j1", progress=10, stage="initializing")
        stream = reporter.subscribe("j1", idle_timeout=0.05, max_wait=5)
        first = next(stream)
        assert first.progress == 10

        def produce():
            reporter.update("j1", progress=50, stage="composing")
            reporter.update("j1", stage="done", done=True)

        threading.Thread(target=produce).start()
        rest = list(stream)
        assert rest[-1].done
        assert [s.progress for s in rest] == sorted(s.progress for s in rest)

    def test_unknown_job_stops_at_max_wait(self, reporter):
        assert list(reporter.subscribe("nobody", idle_timeout=0.01, max_wait=0.05)) == []

    def test_closing_subscription_detaches(self):
        bus = InMemoryProgressBus()
        reporter = ProgressReporter(bus=bus, flush_interval=0.0)
        reporter.update("j1", progress=10)
        stream = reporter.subscribe("j1", idle_timeout=0.01)
        next(stream)
        assert bus.subscriber_count("j1") == 1
        stream.close()
        assert bus.subscriber_count("j1") == 0
        assert reporter.update("j1", progress=20).progress == 20


class TestRedisProgressStore:
    """Tests for the Redis hash encoding."""

    def test_upsert_writes_hash_and_expiry_in_pipeline(self):
        redis = MagicMock()
        pipe = redis.pipeline.return_value
        store = RedisProgressStore(redis, expiry_seconds=60)
        state = ProgressState(
            job_id="j1", progress=42, stage="composing", per_scene={0: 100, 2: 30},
            error={"code": "X"},
        )
        store.upsert("j1", state)

        key = get_progress_key("j1")
        mapping = pipe.hset.call_args.kwargs["mapping"]
        assert pipe.hset.call_args.args == (key,)
        assert mapping["progress"] == "42"
        assert mapping["scene:0"] == "100"
        assert mapping["scene:2"] == "30"
        assert json.loads(mapping["error"]) == {"code": "X"}
        pipe.expire.assert_called_once_with(key, 60)
        pipe.execute.assert_called_once()
        pipe.delete.assert_not_called()

    def test_replacing_upsert_clears_hash_first(self):
        redis = MagicMock()
        pipe = redis.pipeline.return_value
        RedisProgressStore(redis).upsert(
            "j1", ProgressState(job_id="j1", per_scene={0: 10}), replace=True
        )
        key = get_progress_key("j1")
        assert [c[0] for c in pipe.method_calls[:2]] == ["delete", "hset"]
        pipe.delete.assert_called_once_with(key)

    def test_get_decodes_bytes(self):
        redis = MagicMock()
        redis.hgetall.return_value = {
            b"job_id": b"j1",
            b"progress": b"75",
            b"stage": b"assembling",
            b"message": b"",
            b"eta_seconds": b"12.5",
            b"scene_count": b"3",
            b"current_scene": b"",
            b"cached": b"0",
            b"done": b"0",
            b"error": b"",
            b"updated_at": b"1700000000.000",
            b"scene:1": b"60",
        }
        state = RedisProgressStore(redis).get("j1")
        assert state.progress == 75
        assert state.eta_seconds == 12.5
        assert state.scene_count == 3
        assert state.current_scene is None
        assert state.per_scene == {1: 60}
        assert state.error is None

    def test_get_missing(self):
        redis = MagicMock()
        redis.hgetall.return_value = {}
        assert RedisProgressStore(redis).get("j1") is None


class TestRedisProgressBus:
    """Tests for the Redis pub/sub bus."""

    def test_publish_json(self):
        redis = MagicMock()
        RedisProgressBus(redis).publish("j1", ProgressState(job_id="j1", progress=5))
        channel, payload = redis.publish.call_args.args
        assert channel == get_events_channel("j1")
        assert json.loads(payload)["progress"] == 5

    def test_subscription_decodes_messages(self):
        redis = MagicMock()
        pubsub = redis.pubsub.return_value
        pubsub.get_message.return_value = {
            "type": "message",
            "data": ProgressState(job_id="j1", progress=33).model_dump_json().encode(),
        }
        subscription = RedisProgressBus(redis).subscribe("j1")
        pubsub.subscribe.assert_called_once_with(get_events_channel("j1"))
        assert subscription.get(0.1).progress == 33
        subscription.close()
        pubsub.close.assert_called_once()
