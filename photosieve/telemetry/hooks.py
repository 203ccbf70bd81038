"""Hook name constants for the telemetry system.

Centralizes hook names so the registry, the orchestrator and tests
reference constants, not magic strings.
"""

from __future__ import annotations

# Pipeline hooks
HOOK_PIPELINE_START: str = "on_pipeline_start"
HOOK_LAYER_COMPLETE: str = "on_layer_complete"
HOOK_PIPELINE_COMPLETE: str = "on_pipeline_complete"
HOOK_PIPELINE_ERROR: str = "on_pipeline_error"
HOOK_PIPELINE_CANCELLED: str = "on_pipeline_cancelled"

# Lifecycle hooks
HOOK_ACTIVATE: str = "on_activate"
HOOK_DEACTIVATE: str = "on_deactivate"

# All hooks in invocation order (lifecycle first, then pipeline)
ALL_HOOKS: list[str] = [
    HOOK_ACTIVATE,
    HOOK_PIPELINE_START,
    HOOK_LAYER_COMPLETE,
    HOOK_PIPELINE_COMPLETE,
    HOOK_PIPELINE_ERROR,
    HOOK_PIPELINE_CANCELLED,
    HOOK_DEACTIVATE,
]
