"""Built-in sink that writes a readable trace of each run to the log."""

from __future__ import annotations

import logging
from typing import Any

from photosieve.models.fingerprint import LayerStats
from photosieve.telemetry.base_sink import BaseTelemetrySink, TelemetryContext

logger = logging.getLogger(__name__)


class LoggingTelemetrySink(BaseTelemetrySink):
    """Logs start, per-layer and summary lines and keeps the last run's stats."""

    def __init__(self) -> None:
        self._run_id: str | None = None
        self._photo_count = 0
        self._layers: list[LayerStats] = []
        self._summary: dict[str, Any] = {}
        self._outcome: str | None = None

    @property
    def name(self) -> str:
        return "logging"

    @property
    def description(self) -> str:
        return "Writes pipeline progress to the photosieve log"

    def on_pipeline_start(self, *, context: TelemetryContext, photo_count: int) -> None:
        self._run_id = context.run_id
        self._photo_count = photo_count
        self._layers = []
        self._summary = {}
        self._outcome = None
        logger.info(
            "Starting similarity analysis %s for %d photos", context.run_id, photo_count
        )

    def on_layer_complete(self, *, context: TelemetryContext, stats: LayerStats) -> None:
        self._layers.append(stats)
        logger.info(
            "%s | %s: %d → %d (%d%% filtered) in %.0fms",
            stats.layer,
            stats.operation,
            stats.input_count,
            stats.output_count,
            stats.filtered_pct,
            stats.duration_ms,
        )

    def on_pipeline_complete(
        self, *, context: TelemetryContext, summary: dict[str, Any]
    ) -> None:
        self._summary = dict(summary)
        self._outcome = "completed"

        photo_count = summary.get("photo_count", self._photo_count)
        brute_force = photo_count * (photo_count - 1) // 2
        comparisons = summary.get("comparisons", 0)
        saved = 0 if brute_force == 0 else round((1 - comparisons / brute_force) * 100)
        logger.info(
            "Analysis %s complete in %.0fms: %d groups (%d above confidence), "
            "%d pairwise comparisons vs %d brute force (%d%% saved)",
            context.run_id,
            summary.get("duration_ms", 0.0),
            summary.get("groups", 0),
            summary.get("filtered_groups", 0),
            comparisons,
            brute_force,
            saved,
        )

    def on_pipeline_error(self, *, context: TelemetryContext, error: str) -> None:
        self._outcome = "failed"
        logger.error("Analysis %s failed: %s", context.run_id, error)

    def on_pipeline_cancelled(self, *, context: TelemetryContext) -> None:
        self._outcome = "cancelled"
        logger.info("Analysis %s cancelled by user", context.run_id)

    def get_stats(self) -> dict[str, Any]:
        """Return the recorded trace of the most recent run."""
        return {
            "run_id": self._run_id,
            "photo_count": self._photo_count,
            "outcome": self._outcome,
            "layers": [
                {
                    "layer": s.layer,
                    "operation": s.operation,
                    "input_count": s.input_count,
                    "output_count": s.output_count,
                    "filtered_pct": s.filtered_pct,
                    "duration_ms": s.duration_ms,
                }
                for s in self._layers
            ],
            "summary": dict(self._summary),
        }
