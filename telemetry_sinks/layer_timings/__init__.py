"""Example sink that accumulates per-layer timings across runs.

Drop a package like this one into the telemetry sink directory
(``PHOTOSIEVE_TELEMETRY_DIR``) and it is discovered at start-up.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from photosieve.models.fingerprint import LayerStats
from photosieve.telemetry.base_sink import BaseTelemetrySink, TelemetryContext

logger = logging.getLogger(__name__)


class LayerTimingSink(BaseTelemetrySink):
    """Keeps total milliseconds and call counts per layer."""

    def __init__(self) -> None:
        self.total_ms: dict[str, float] = defaultdict(float)
        self.calls: dict[str, int] = defaultdict(int)

    @property
    def name(self) -> str:
        return "layer_timings"

    @property
    def description(self) -> str:
        return "Accumulates per-layer durations across analysis runs"

    def on_layer_complete(self, *, context: TelemetryContext, stats: LayerStats) -> float:
        self.total_ms[stats.layer] += stats.duration_ms
        self.calls[stats.layer] += 1
        return self.total_ms[stats.layer]

    def average_ms(self, layer: str) -> float:
        calls = self.calls.get(layer, 0)
        return self.total_ms[layer] / calls if calls else 0.0

    def on_deactivate(self) -> None:
        for layer, calls in self.calls.items():
            logger.info(
                "Layer %s: %d calls, %.0fms average", layer, calls, self.average_ms(layer)
            )
