"""
FFmpeg Runner with Timeout and Cancellation Enforcement

Runs FFmpeg commands with:
- Progress tracking via -progress pipe:1
- Strict timeout enforcement
- Cooperative cancellation through a threading.Event
- Process group management for clean termination
- Detailed error reporting
"""

import logging
import os
import queue
import re
import shutil
import signal
import subprocess
import threading
import time
from typing import Callable, List, Optional

from rq.timeouts import BaseTimeoutException

from .errors import FFmpegCancelled, FFmpegError, FFmpegTimeout

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

TIME_US_PATTERN = re.compile(r"out_time_us=(\d+)")
TIME_MS_PATTERN = re.compile(r"out_time_ms=(\d+)")
TIME_STR_PATTERN = re.compile(r"out_time=(\d+):(\d+):(\d+)\.(\d+)")
PROGRESS_PATTERN = re.compile(r"progress=(\w+)")

# Seconds between timeout/cancel checks while waiting for output
POLL_INTERVAL = 0.25
STDERR_TAIL_CHARS = 2000

_EOF = object()


def run_ffmpeg_with_progress(
    cmd: List[str],
    total_duration_ms: int,
    progress_callback: Optional[ProgressCallback] = None,
    timeout_seconds: int = 1800,
    cancel_event: Optional[threading.Event] = None,
) -> None:
    """
    Run one FFmpeg command to completion.

    FFmpeg runs in its own process group with ``-progress pipe:1`` appended.
    Its progress lines are read on a helper thread so the timeout and
    ``cancel_event`` are checked even while FFmpeg prints nothing; either
    one kills the whole process group. Percentages reported to
    ``progress_callback`` stay below 100 until FFmpeg exits cleanly.

    Args:
        cmd: FFmpeg command as list of arguments (without -progress)
        total_duration_ms: Expected output duration in milliseconds
        progress_callback: Function called with (percent, message)
        timeout_seconds: Maximum allowed runtime in seconds
        cancel_event: Optional event; when set the run is aborted

    Raises:
        FFmpegTimeout: If FFmpeg exceeds the timeout
        FFmpegCancelled: If cancel_event was set before FFmpeg finished
        FFmpegError: If FFmpeg fails with non-zero exit code
    """
    if cancel_event is not None and cancel_event.is_set():
        raise FFmpegCancelled("FFmpeg run cancelled before start")

    cmd_with_progress = cmd + ["-progress", "pipe:1", "-stats_period", "0.5"]

    logger.info(
        f"Starting FFmpeg with timeout={timeout_seconds}s, duration={total_duration_ms}ms"
    )
    logger.debug(f"FFmpeg command: {' '.join(cmd_with_progress)}")

    # preexec_fn=os.setsid puts ffmpeg in its own process group
    process = subprocess.Popen(
        cmd_with_progress,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        universal_newlines=True,
        preexec_fn=os.setsid,
    )

    lines: "queue.Queue[object]" = queue.Queue()
    stderr_chunks: List[str] = []
    stdout_reader = threading.Thread(
        target=_pump_lines, args=(process.stdout, lines), daemon=True
    )
    stderr_reader = threading.Thread(
        target=_drain, args=(process.stderr, stderr_chunks), daemon=True
    )
    stdout_reader.start()
    stderr_reader.start()

    start_time = time.time()
    last_percent = 0

    try:
        while True:
            elapsed = time.time() - start_time
            if elapsed > timeout_seconds:
                logger.warning(
                    f"FFmpeg timeout after {elapsed:.1f}s (limit: {timeout_seconds}s)"
                )
                _kill_process_group(process)
                raise FFmpegTimeout(
                    f"FFmpeg exceeded timeout of {timeout_seconds} seconds"
                )

            if cancel_event is not None and cancel_event.is_set():
                logger.info("FFmpeg run cancelled, killing process group")
                _kill_process_group(process)
                raise FFmpegCancelled("FFmpeg run cancelled")

            try:
                item = lines.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is _EOF:
                break

            line = str(item).strip()
            progress_match = PROGRESS_PATTERN.search(line)
            if progress_match and progress_match.group(1) == "end":
                logger.debug("FFmpeg signaled completion")
                continue

            current_ms = parse_progress_time(line)
            if current_ms is not None and total_duration_ms > 0:
                percent = min(99, int((current_ms / total_duration_ms) * 100))
                if percent > last_percent:
                    last_percent = percent
                    if progress_callback:
                        progress_callback(percent, f"Rendering: {percent}%")

        try:
            return_code = process.wait(timeout=30)
        except subprocess.TimeoutExpired:
            logger.warning("FFmpeg cleanup timeout, killing process")
            _kill_process_group(process)
            raise FFmpegTimeout("FFmpeg process cleanup timed out")

        stderr_reader.join(timeout=5)
        if return_code != 0:
            stderr_output = "".join(stderr_chunks)
            error_msg = f"FFmpeg failed with code {return_code}"
            if stderr_output:
                error_msg += f": {stderr_output[-STDERR_TAIL_CHARS:]}"
            logger.error(error_msg)
            raise FFmpegError(error_msg)

        elapsed = time.time() - start_time
        logger.info(f"FFmpeg completed successfully in {elapsed:.1f}s")
        if progress_callback:
            progress_callback(100, "Complete")

    except (FFmpegTimeout, FFmpegError, FFmpegCancelled):
        raise

    except BaseTimeoutException:
        logger.warning("Job timeout while FFmpeg was running, killing process group")
        _kill_process_group(process)
        raise

    except Exception as e:
        logger.error(f"Unexpected error during FFmpeg execution: {e}", exc_info=True)
        _kill_process_group(process)
        raise FFmpegError(f"FFmpeg error: {str(e)}") from e


def parse_progress_time(line: str) -> Optional[int]:
    """
    Output position in milliseconds from one ``-progress`` line, or None.

    ``out_time_us`` is preferred. ``out_time_ms`` carries microseconds as well
    in current FFmpeg builds. ``out_time`` (HH:MM:SS.ffffff) is the fallback.
    """
    for pattern in (TIME_US_PATTERN, TIME_MS_PATTERN):
        match = pattern.search(line)
        if match:
            return int(match.group(1)) // 1000

    match = TIME_STR_PATTERN.search(line)
    if match is None:
        return None
    hours, minutes, seconds, fraction = match.groups()
    micros = int(fraction.ljust(6, "0")[:6])
    return (int(hours) * 3600 + int(minutes) * 60 + int(seconds)) * 1000 + micros // 1000


def _pump_lines(stream, sink: "queue.Queue[object]") -> None:
    try:
        for line in stream:
            sink.put(line)
    finally:
        sink.put(_EOF)


def _drain(stream, chunks: List[str]) -> None:
    for line in stream:
        chunks.append(line)
        # Keep memory bounded on chatty encodes
        if len(chunks) > 400:
            del chunks[:200]


def _kill_process_group(process: subprocess.Popen) -> None:
    """
    Kill FFmpeg process and its entire process group.

    Uses SIGKILL to ensure immediate termination.

    Args:
        process: The subprocess.Popen instance to kill
    """
    try:
        pgid = os.getpgid(process.pid)
        logger.info(f"Killing FFmpeg process group {pgid}")
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        logger.debug("Process already terminated")
    except OSError as e:
        logger.warning(f"Error killing process group: {e}")
        try:
            process.kill()
        except OSError:
            logger.debug("Process kill fallback failed", exc_info=True)
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning(f"FFmpeg process {process.pid} did not exit after SIGKILL")


def validate_ffmpeg_available() -> bool:
    """
    Check if FFmpeg and FFprobe are on PATH and working.

    Returns:
        True if FFmpeg is available, False otherwise
    """
    if not shutil.which("ffmpeg") or not shutil.which("ffprobe"):
        return False
    try:
        result = subprocess.run(
            ["ffmpeg", "-version"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"FFmpeg not available: {e}")
        return False
