"""Pydantic models for pairwise similarity scores and similarity groups."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from photosieve.models.photo import Photo


class GroupType(str, Enum):
    """Why the photos in a group are considered redundant."""

    EXACT_DUPLICATES = "exact_duplicates"
    RETRY_SHOTS = "retry_shots"
    ANGLE_VARIATIONS = "angle_variations"
    INCREMENTAL_PROGRESS = "incremental_progress"
    REDUNDANT_DOCUMENTATION = "redundant_documentation"


class SimilarityScore(BaseModel):
    """Five independent sub-scores for a pair of photos plus their combination.

    How ``overall_similarity`` is derived depends on the layer that produced
    the score (see the stage weights in ``photosieve.services.scoring``).
    """

    visual_similarity: float = Field(ge=0.0, le=1.0)
    content_similarity: float = Field(ge=0.0, le=1.0)
    temporal_proximity: float = Field(ge=0.0, le=1.0)
    spatial_proximity: float = Field(ge=0.0, le=1.0)
    semantic_similarity: float = Field(ge=0.0, le=1.0)
    overall_similarity: float = Field(ge=0.0, le=1.0)


class SimilarityGroup(BaseModel):
    """Two or more photos judged redundant with one another."""

    id: str
    photos: list[Photo] = Field(min_length=2)
    representative_score: SimilarityScore
    group_type: GroupType
    confidence: float = Field(ge=0.0, le=1.0)

    @property
    def photo_ids(self) -> list[str]:
        return [p.id for p in self.photos]
