"""
Command line interface for reelworker.

Usage:
    reelworker render request.json [--storage PATH] [--redis]
    reelworker enqueue request.json
    reelworker progress JOB_ID [--max-wait SECONDS]
    reelworker cache stats|cleanup|delete|clips [--storage PATH]
"""

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

from .config import get_settings
from .tasks.errors import RenderError

logger = logging.getLogger("reelworker.cli")


def _load_request(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def _print_state(state) -> None:
    line = f"[{state.progress:3d}%] {state.stage}"
    if state.message:
        line += f": {state.message}"
    if state.eta_seconds is not None and not state.is_terminal:
        line += f" (eta {state.eta_seconds:.0f}s)"
    print(line, file=sys.stderr, flush=True)


def _cmd_render(args: argparse.Namespace) -> int:
    from .tasks.progress import ProgressReporter
    from .tasks.render import RenderOrchestrator, create_orchestrator, parse_request
    from .tasks.storage import LocalAssetStore

    settings = get_settings()
    if args.storage:
        settings = settings.model_copy(update={"storage_path": str(args.storage)})

    if args.redis:
        orchestrator = create_orchestrator(settings)
    else:
        orchestrator = RenderOrchestrator(
            store=LocalAssetStore(settings.storage_path),
            reporter=ProgressReporter(flush_interval=settings.progress_flush_interval),
            settings=settings,
        )

    request = parse_request(_load_request(args.request))
    watcher = threading.Thread(
        target=lambda: [_print_state(s) for s in orchestrator.reporter.subscribe(request.job_id)],
        name="progress-watch",
        daemon=True,
    )
    watcher.start()

    try:
        result = orchestrator.run(request)
    finally:
        orchestrator.close()
        watcher.join(timeout=2.0)

    print(result.model_dump_json(indent=2))
    return 0


def _cmd_enqueue(args: argparse.Namespace) -> int:
    from .tasks.render import enqueue_render

    job = enqueue_render(_load_request(args.request))
    print(job.id)
    return 0


def _cmd_progress(args: argparse.Namespace) -> int:
    from .queues import get_redis_connection
    from .tasks.progress import ProgressReporter, RedisProgressBus, RedisProgressStore

    settings = get_settings()
    redis = get_redis_connection()
    reporter = ProgressReporter(
        store=RedisProgressStore(redis, expiry_seconds=settings.progress_expiry_seconds),
        bus=RedisProgressBus(redis),
    )

    last = None
    for state in reporter.subscribe(args.job_id, max_wait=args.max_wait):
        last = state
        if args.json:
            print(state.model_dump_json(), flush=True)
        else:
            _print_state(state)

    if last is None:
        print(f"No progress recorded for {args.job_id}", file=sys.stderr)
        return 1
    return 1 if last.error else 0


def _cmd_cache(args: argparse.Namespace) -> int:
    from .tasks.clips.acquirer import ClipAcquirer
    from .tasks.render_cache import RenderCache
    from .tasks.storage import LocalAssetStore

    settings = get_settings()
    store = LocalAssetStore(str(args.storage) if args.storage else settings.storage_path)

    if args.action == "clips":
        acquirer = ClipAcquirer(store, extension=settings.output_extension)
        for ref in acquirer.list_cached(args.project_id):
            print(ref)
        return 0

    cache = RenderCache(
        store,
        namespace=settings.cache_namespace,
        extension=settings.output_extension,
    )
    if args.action == "stats":
        print(json.dumps(cache.stats(), indent=2))
    elif args.action == "cleanup":
        removed = cache.cleanup_old(max_age_hours=args.max_age_hours)
        print(f"Removed {removed} cached renders older than {args.max_age_hours}h")
    elif args.action == "delete":
        if not cache.delete(args.fingerprint):
            print(f"No cached render for {args.fingerprint}", file=sys.stderr)
            return 1
        print(f"Deleted {args.fingerprint}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reelworker",
        description="Render scene images, narration and captions into a video.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    render = sub.add_parser("render", help="Render a request in this process")
    render.add_argument("request", type=Path, metavar="PATH", help="RenderRequest JSON file")
    render.add_argument(
        "--storage",
        type=Path,
        metavar="PATH",
        help="Asset store root (default: STORAGE_PATH)",
    )
    render.add_argument(
        "--redis",
        action="store_true",
        help="Report progress to Redis and record the job in the database",
    )
    render.set_defaults(func=_cmd_render)

    enqueue = sub.add_parser("enqueue", help="Enqueue a request for the worker")
    enqueue.add_argument("request", type=Path, metavar="PATH", help="RenderRequest JSON file")
    enqueue.set_defaults(func=_cmd_enqueue)

    progress = sub.add_parser("progress", help="Follow the progress of a job")
    progress.add_argument("job_id", help="Render job id")
    progress.add_argument(
        "--max-wait",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Stop following after this many seconds",
    )
    progress.add_argument("--json", action="store_true", help="Print raw snapshots")
    progress.set_defaults(func=_cmd_progress)

    cache = sub.add_parser("cache", help="Inspect and prune stored renders and clips")
    cache.add_argument(
        "--storage",
        type=Path,
        metavar="PATH",
        help="Asset store root (default: STORAGE_PATH)",
    )
    actions = cache.add_subparsers(dest="action", required=True)
    actions.add_parser("stats", help="Count and size of cached renders")
    cleanup = actions.add_parser("cleanup", help="Remove cached renders older than a cutoff")
    cleanup.add_argument(
        "--max-age-hours",
        type=int,
        default=168,
        metavar="HOURS",
        help="Age above which renders are removed (default: 168)",
    )
    delete = actions.add_parser("delete", help="Remove one cached render")
    delete.add_argument("fingerprint", help="Render fingerprint")
    clips = actions.add_parser("clips", help="List stored motion clips of a project")
    clips.add_argument("project_id", help="Project id")
    cache.set_defaults(func=_cmd_cache)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    try:
        code = args.func(args)
    except RenderError as e:
        print(f"ERROR: {e.code}: {e.message}", file=sys.stderr)
        sys.exit(2 if e.retryable else 1)
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
