"""
Motion clip acquisition: remote generation client and per-scene acquirer.
"""

from .acquirer import ClipAcquirer, ClipOutcome, SceneClip, clip_ref
from .client import ClipAttempt, RemoteClipClient, extract_video_url

__all__ = [
    "ClipAcquirer",
    "ClipAttempt",
    "ClipOutcome",
    "RemoteClipClient",
    "SceneClip",
    "clip_ref",
    "extract_video_url",
]
