"""
Render Worker Tasks

This module exports the background task functions for the RQ worker.

Tasks:
- render_video: Render a RenderRequest to {project_id}/movie.mp4

Enqueue helpers (use these for proper timeout handling):
- enqueue_render: Enqueue a render with settings.render_timeout
"""

from .render import (
    RenderOrchestrator,
    BillingHooks,
    create_orchestrator,
    render_video,
    enqueue_render,
)
from .errors import (
    RenderError,
    InvalidRequest,
    AssetUnresolved,
    ClipGenerationFailed,
    CompositionFailure,
    PublishFailure,
    RenderCancelled,
    InternalRenderError,
)

__all__ = [
    # Orchestration
    "RenderOrchestrator",
    "BillingHooks",
    "create_orchestrator",
    # Task functions
    "render_video",
    # Enqueue helpers
    "enqueue_render",
    # Errors
    "RenderError",
    "InvalidRequest",
    "AssetUnresolved",
    "ClipGenerationFailed",
    "CompositionFailure",
    "PublishFailure",
    "RenderCancelled",
    "InternalRenderError",
]
