"""
Render Worker Queue Definitions

A single queue carries render jobs:
- reelworker:render - one job per render request
"""

from typing import Optional

from redis import Redis
from rq import Queue

from .config import get_settings

RENDER_QUEUE_NAME = "reelworker:render"

# Redis connection singleton
_redis_connection: Optional[Redis] = None


def get_redis_connection() -> Redis:
    """
    Get or create a Redis connection from settings.redis_url.

    Returns:
        Redis: A Redis connection instance (bytes responses, as RQ expects)
    """
    global _redis_connection

    if _redis_connection is None:
        _redis_connection = Redis.from_url(get_settings().redis_url, decode_responses=False)

    return _redis_connection


class _LazyQueue:
    """Lazy queue wrapper that initializes on first access."""

    def __init__(self, name: str):
        self._name = name
        self._queue: Optional[Queue] = None

    def _get_queue(self) -> Queue:
        if self._queue is None:
            self._queue = Queue(self._name, connection=get_redis_connection())
        return self._queue

    def __getattr__(self, name):
        return getattr(self._get_queue(), name)

    def enqueue(self, *args, **kwargs):
        return self._get_queue().enqueue(*args, **kwargs)


render_queue = _LazyQueue(RENDER_QUEUE_NAME)

# All queues in priority order for worker initialization
ALL_QUEUES = [RENDER_QUEUE_NAME]
