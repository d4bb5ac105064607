"""
Pydantic schema for render progress snapshots.
"""

import json
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ProgressState(BaseModel):
    """Latest known progress of one render job."""

    job_id: str
    progress: int = Field(0, ge=0, le=100, description="Progress percentage (0-100)")
    stage: str = Field("", description="Current orchestrator stage")
    message: str = Field("", description="Human-readable progress message")
    eta_seconds: Optional[float] = Field(None, description="Estimated seconds remaining")
    per_scene: Dict[int, int] = Field(
        default_factory=dict, description="Per-scene completion percentage"
    )
    scene_count: Optional[int] = None
    current_scene: Optional[int] = None
    cached: bool = False
    done: bool = False
    error: Optional[Dict[str, Any]] = Field(
        None, description="Structured error when the job failed"
    )
    updated_at: float = Field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.done or self.error is not None

    def to_sse(self) -> str:
        """Encode as a server-sent-events data frame."""
        return f"data: {json.dumps(self.model_dump(mode='json'))}\n\n"
