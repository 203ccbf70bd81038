"""Pydantic models for pipeline options, run state and results."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from photosieve.config import Settings
from photosieve.models.photo import Photo
from photosieve.models.similarity import SimilarityGroup, SimilarityScore

RunStatus = Literal["idle", "running", "completed", "cancelled", "failed"]


class PipelineOptions(BaseModel):
    """Typed per-run configuration.

    Defaults mirror :class:`~photosieve.config.Settings`; use
    :meth:`from_settings` to pick up environment overrides.
    """

    enable_content_fingerprint: bool = True
    enable_perceptual_fingerprint: bool = True
    enable_visual_features: bool = True
    enable_metadata_proximity: bool = True
    enable_semantic_fallback: bool = True

    similarity_threshold: float = Field(0.98, ge=-1.0, le=1.0)
    """Cosine similarity at or above which two embeddings are grouped."""

    confidence_threshold: float = Field(0.85, ge=0.0, le=1.0)
    """Groups below this confidence are kept in ``all_groups`` only."""

    perceptual_threshold: float = Field(0.85, ge=0.0, le=1.0)
    semantic_threshold: float = Field(0.7, ge=0.0, le=1.0)
    hash_size: int = Field(8, ge=2, le=64)
    batch_size: int = Field(3, ge=1)
    batch_delay: float = Field(0.1, ge=0.0)
    """Seconds to pause between concurrent batches."""

    fallback_sample_size: int = Field(15, ge=2)
    image_uri_preference: list[str] = Field(
        default_factory=lambda: ["web", "original", "thumbnail"]
    )

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> PipelineOptions:
        values = {
            "similarity_threshold": settings.similarity_threshold,
            "confidence_threshold": settings.confidence_threshold,
            "perceptual_threshold": settings.perceptual_threshold,
            "semantic_threshold": settings.semantic_threshold,
            "hash_size": settings.hash_size,
            "batch_size": settings.batch_size,
            "batch_delay": settings.batch_delay,
            "fallback_sample_size": settings.fallback_sample_size,
            "image_uri_preference": list(settings.image_uri_preference),
        }
        values.update(overrides)
        return cls(**values)


class PipelineRunState(BaseModel):
    """Immutable snapshot of the orchestrator's run state.

    Statuses:
    - ``idle``: nothing has run since start-up or the last clear.
    - ``running``: layers are executing.
    - ``completed``: all layers finished; groups and matrix are populated.
    - ``cancelled``: stopped by the user; ``error`` holds the cancel message.
    - ``failed``: input error or a layer raised; ``error`` holds the message.
    """

    model_config = {"frozen": True}

    run_id: str | None = None
    status: RunStatus = "idle"
    is_analyzing: bool = False
    progress: float = Field(0.0, ge=0.0, le=100.0)
    error: str | None = None
    all_groups: list[SimilarityGroup] = Field(default_factory=list)
    filtered_groups: list[SimilarityGroup] = Field(default_factory=list)
    similarity_matrix: dict[str, dict[str, SimilarityScore]] = Field(
        default_factory=dict
    )

    @property
    def similarity_groups(self) -> list[SimilarityGroup]:
        return self.filtered_groups


class AnalysisResult(BaseModel):
    """Structured outcome of :meth:`SimilarityService.analyze`."""

    success: bool
    error: str | None = None
    groups: list[SimilarityGroup] = Field(default_factory=list)
    all_groups: list[SimilarityGroup] = Field(default_factory=list)
    state: PipelineRunState


class AnalyzeRequest(BaseModel):
    """Request body for ``POST /analysis``."""

    photos: list[Photo]
    options: PipelineOptions | None = None


class AnalyzeResponse(BaseModel):
    """Response returned when an analysis run is accepted."""

    status: str
    message: str
    photo_count: int


class RunProgress(BaseModel):
    """Progress update for an analysis run (used in SSE streaming)."""

    run_id: str | None = None
    status: RunStatus = "idle"
    progress: float = 0.0
    error: str | None = None
    groups_found: int = 0
