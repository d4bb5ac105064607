"""
SRT caption handling.

Parses the project's full caption track, cuts the slice that overlaps one
scene's time window (re-based to scene-local time), and formats it back to
SRT for burning into that scene's segment.
"""

import re
from dataclasses import dataclass
from typing import List, Sequence

TIMING_PATTERN = re.compile(
    r"(\d{1,2}):(\d{2}):(\d{2})[,.](\d{1,3})\s*-->\s*(\d{1,2}):(\d{2}):(\d{2})[,.](\d{1,3})"
)
BLOCK_SEPARATOR = re.compile(r"\r?\n\s*\r?\n")

# Shortest cue kept after clamping to the scene window
MIN_CUE_SECONDS = 0.01


@dataclass(frozen=True)
class CaptionCue:
    """One subtitle cue; times in seconds."""

    start: float
    end: float
    text: str


def _to_seconds(hours: str, minutes: str, seconds: str, millis: str) -> float:
    return (
        int(hours) * 3600
        + int(minutes) * 60
        + int(seconds)
        + int(millis.ljust(3, "0")) / 1000.0
    )


def parse_srt(text: str) -> List[CaptionCue]:
    """
    Parse SRT text into cues.

    Blocks without a valid timing line are skipped. The numeric index line
    is optional.

    Args:
        text: Raw SRT file contents

    Returns:
        Cues in file order
    """
    cues: List[CaptionCue] = []
    for block in BLOCK_SEPARATOR.split((text or "").lstrip("\ufeff").strip()):
        lines = [line.rstrip() for line in block.strip().splitlines()]
        for idx, line in enumerate(lines):
            match = TIMING_PATTERN.search(line)
            if match:
                start = _to_seconds(*match.group(1, 2, 3, 4))
                end = _to_seconds(*match.group(5, 6, 7, 8))
                body = "\n".join(lines[idx + 1:]).strip()
                if body and end > start:
                    cues.append(CaptionCue(start=start, end=end, text=body))
                break
    return cues


def slice_for_scene(
    cues: Sequence[CaptionCue], offset: float, duration: float
) -> List[CaptionCue]:
    """
    Cut the cues that intersect ``[offset, offset + duration)``.

    Returned cues are re-based to scene-local time and clamped to the scene.

    Args:
        cues: Full-timeline cues
        offset: Scene start on the timeline, in seconds
        duration: Scene duration in seconds

    Returns:
        Scene-local cues (possibly empty)
    """
    window_end = offset + duration
    result = []
    for cue in cues:
        if cue.end <= offset or cue.start >= window_end:
            continue
        start = max(0.0, cue.start - offset)
        end = max(MIN_CUE_SECONDS, min(duration, cue.end - offset))
        result.append(CaptionCue(start=round(start, 3), end=round(end, 3), text=cue.text))
    return result


def format_timestamp(seconds: float) -> str:
    """Format seconds as an SRT timestamp (HH:MM:SS,mmm)."""
    total_ms = int(round(max(0.0, seconds) * 1000))
    hours, rem = divmod(total_ms, 3600000)
    minutes, rem = divmod(rem, 60000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def format_srt(cues: Sequence[CaptionCue]) -> str:
    """Serialize cues to SRT, renumbering from 1."""
    blocks = [
        f"{i}\n{format_timestamp(cue.start)} --> {format_timestamp(cue.end)}\n{cue.text}"
        for i, cue in enumerate(cues, start=1)
    ]
    return "\n\n".join(blocks) + "\n" if blocks else ""
