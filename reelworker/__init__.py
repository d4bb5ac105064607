"""
Reelworker Render Worker Package

RQ-based worker that turns a project's scene images, narration, captions
and optional music into a finished video, with a content-addressed render
cache, remote motion-clip acquisition and live progress reporting.
"""

from .queues import (
    get_redis_connection,
    render_queue,
    ALL_QUEUES,
)

from .tasks import (
    render_video,
    enqueue_render,
)

__version__ = "0.1.0"

__all__ = [
    # Queues
    "get_redis_connection",
    "render_queue",
    "ALL_QUEUES",
    # Tasks
    "render_video",
    "enqueue_render",
]
