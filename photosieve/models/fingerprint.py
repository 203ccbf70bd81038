"""Per-layer records produced inside a single pipeline run.

These never leave the process, so they are plain dataclasses rather than
pydantic models; embeddings stay as numpy arrays.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np


@dataclass(frozen=True)
class ContentFingerprint:
    """SHA-256 of a photo's raw image bytes."""

    photo_id: str
    hash_hex: str


@dataclass(frozen=True)
class PerceptualFingerprint:
    """Difference hash of a photo, hex encoded (4 bits per digit)."""

    photo_id: str
    hash_hex: str
    source_url: str


@dataclass
class VisualFeatureVector:
    """L2-normalized embedding from the feature model."""

    photo_id: str
    embedding: np.ndarray
    image_url: str
    extraction_time_ms: float


@dataclass
class LayerStats:
    """Input/output summary of one layer, reported to telemetry sinks."""

    layer: str
    operation: str
    input_count: int
    output_count: int
    duration_ms: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def filtered_pct(self) -> int:
        if self.input_count <= 0:
            return 0
        return round((1 - self.output_count / self.input_count) * 100)
