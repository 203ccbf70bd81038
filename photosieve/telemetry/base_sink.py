"""BaseTelemetrySink abstract class and TelemetryContext dataclass.

Defines the sink contract for pipeline telemetry.  Sinks subclass
BaseTelemetrySink and override the hooks they care about.  Hooks use
keyword-only arguments so new parameters can be added without breaking
existing sinks.  Sinks are purely observational: return values are
ignored and exceptions never reach the pipeline.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from photosieve.models.fingerprint import LayerStats


@dataclass
class TelemetryContext:
    """Context object passed to all pipeline hooks."""

    run_id: str
    metadata: dict[str, Any] | None = field(default=None)


class BaseTelemetrySink(ABC):
    """Abstract base class for telemetry sinks.

    Class Variables:
        api_version: Protocol version for future compatibility checks.
    """

    api_version: int = 1

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique sink name. Must be implemented by subclasses."""
        ...

    @property
    def description(self) -> str:
        return ""

    # ------------------------------------------------------------------
    # Pipeline hooks (keyword-only arguments)
    # ------------------------------------------------------------------

    def on_pipeline_start(self, *, context: TelemetryContext, photo_count: int) -> None:
        """Called once a run has been accepted and before any layer runs."""

    def on_layer_complete(self, *, context: TelemetryContext, stats: LayerStats) -> None:
        """Called after each enabled layer with its input/output counts."""

    def on_pipeline_complete(
        self, *, context: TelemetryContext, summary: dict[str, Any]
    ) -> None:
        """Called when a run completes.

        *summary* carries ``duration_ms``, ``photo_count``, ``groups``,
        ``filtered_groups`` and ``comparisons``.
        """

    def on_pipeline_error(self, *, context: TelemetryContext, error: str) -> None:
        """Called when a run fails."""

    def on_pipeline_cancelled(self, *, context: TelemetryContext) -> None:
        """Called when a run is cancelled by the user."""

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    def on_activate(self) -> None:
        """Called when the sink is registered."""

    def on_deactivate(self) -> None:
        """Called when the sink is being shut down."""
