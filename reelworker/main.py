"""
Reelworker Worker Entry Point

Starts the RQ worker that processes render jobs.

Usage:
    python -m reelworker.main [--burst] [--name NAME]

Environment Variables:
    REDIS_URL: Redis connection URL (default: redis://localhost:6379/0)
    STORAGE_PATH: Root of the asset store
    RENDER_WORK_ROOT: Parent directory of per-job working directories
    LOG_LEVEL: Logging level (default: INFO)
"""

import argparse
import logging
import os
import socket
import sys
from pathlib import Path
from typing import List, Optional

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Worker
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, get_settings
from .db import get_engine
from .queues import ALL_QUEUES, get_redis_connection
from .tasks.ffmpeg_runner import validate_ffmpeg_available

logger = logging.getLogger("reelworker.worker")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def default_worker_name() -> str:
    """RQ worker names must be unique per Redis; host and pid make them so."""
    return f"reelworker-{socket.gethostname()}-{os.getpid()}"


def create_worker(connection: Redis, name: Optional[str] = None) -> Worker:
    """
    Create an RQ worker that listens to the render queue.

    Args:
        connection: Redis connection instance
        name: Worker name (default: host and pid based)

    Returns:
        Worker: Configured RQ worker instance
    """
    queues = [Queue(queue_name, connection=connection) for queue_name in ALL_QUEUES]
    return Worker(queues=queues, connection=connection, name=name or default_worker_name())


def preflight(settings: Settings) -> List[str]:
    """
    Check what a render needs before taking jobs.

    Returns:
        Human-readable problems; empty when the worker can start
    """
    problems = []
    if not validate_ffmpeg_available():
        problems.append("ffmpeg/ffprobe not found on PATH")

    for label, directory in (("storage", settings.storage_path), ("work root", settings.work_root)):
        path = Path(directory)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            problems.append(f"{label} directory {path} unusable: {e}")
            continue
        if not os.access(path, os.W_OK):
            problems.append(f"{label} directory {path} is not writable")

    return problems


def start_worker(burst: bool = False, name: Optional[str] = None) -> None:
    """
    Check prerequisites, connect to Redis and run the RQ worker.

    Blocks until the worker is terminated (or the queue drains in burst mode).
    """
    settings = get_settings()
    logger.info("Starting reelworker worker...")

    problems = preflight(settings)
    for problem in problems:
        logger.error(problem)
    if problems:
        sys.exit(1)

    try:
        connection = get_redis_connection()
        connection.ping()
    except RedisError as e:
        logger.error(f"Failed to connect to Redis at {settings.redis_url}: {e}")
        sys.exit(1)
    logger.info("Successfully connected to Redis")

    try:
        get_engine()
    except SQLAlchemyError as e:
        logger.warning(f"Job ledger database unavailable, continuing without it: {e}")

    worker = create_worker(connection, name=name)
    logger.info(f"Worker {worker.name} listening on queues: {', '.join(ALL_QUEUES)}")

    try:
        worker.work(burst=burst, with_scheduler=False)
    except KeyboardInterrupt:
        logger.info("Worker shutdown requested")

    logger.info("Worker stopped")


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the worker module."""
    parser = argparse.ArgumentParser(prog="reelworker-worker", description="Run the render worker")
    parser.add_argument("--burst", action="store_true", help="Exit once the queue is empty")
    parser.add_argument("--name", default=None, help="Worker name (default: host-pid)")
    args = parser.parse_args(argv)

    configure_logging(get_settings().log_level)
    start_worker(burst=args.burst, name=args.name)


if __name__ == "__main__":
    main()
