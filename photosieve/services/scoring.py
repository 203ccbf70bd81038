"""Pair scoring, group classification and group construction.

Stage weights:

========================  =================  ===========================  ==========
Stage                     visual             overall                      confidence
========================  =================  ===========================  ==========
content fingerprint       1.0                1.0                          1.0
perceptual fingerprint    mean dHash sim     = visual                     0.9
visual features           mean cosine        0.8 v + 0.1 t + 0.1 s        = overall
semantic fallback         0.7                0.7                          0.7
========================  =================  ===========================  ==========
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence

from photosieve.models.photo import Photo
from photosieve.models.similarity import GroupType, SimilarityGroup, SimilarityScore
from photosieve.services.metadata_proximity import (
    content_similarity,
    spatial_proximity,
    temporal_proximity,
)
from photosieve.services.semantic_similarity import semantic_similarity

EXACT_CONFIDENCE = 1.0
PERCEPTUAL_CONFIDENCE = 0.9
FALLBACK_SCORE = 0.7

VISUAL_WEIGHT = 0.8
TEMPORAL_WEIGHT = 0.1
SPATIAL_WEIGHT = 0.1


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def score_pair(
    photo1: Photo,
    photo2: Photo,
    visual: float,
    overall: float | None = None,
) -> SimilarityScore:
    """Build a full score for a pair given its visual similarity.

    Metadata sub-scores are computed here.  When *overall* is omitted the
    visual-feature weighting is applied.
    """
    visual = clamp01(visual)
    temporal = temporal_proximity(photo1, photo2)
    spatial = spatial_proximity(photo1, photo2)
    if overall is None:
        overall = (
            VISUAL_WEIGHT * visual
            + TEMPORAL_WEIGHT * temporal
            + SPATIAL_WEIGHT * spatial
        )
    return SimilarityScore(
        visual_similarity=visual,
        content_similarity=clamp01(content_similarity(photo1, photo2)),
        temporal_proximity=temporal,
        spatial_proximity=spatial,
        semantic_similarity=clamp01(
            semantic_similarity(
                photo1.tags, photo2.tags, photo1.description, photo2.description
            )
        ),
        overall_similarity=clamp01(overall),
    )


def average_scores(scores: Sequence[SimilarityScore]) -> SimilarityScore:
    """Field-wise mean of *scores* (the realized edges of one group)."""
    if not scores:
        raise ValueError("Cannot average an empty list of scores")
    n = len(scores)
    return SimilarityScore(
        visual_similarity=clamp01(sum(s.visual_similarity for s in scores) / n),
        content_similarity=clamp01(sum(s.content_similarity for s in scores) / n),
        temporal_proximity=clamp01(sum(s.temporal_proximity for s in scores) / n),
        spatial_proximity=clamp01(sum(s.spatial_proximity for s in scores) / n),
        semantic_similarity=clamp01(sum(s.semantic_similarity for s in scores) / n),
        overall_similarity=clamp01(sum(s.overall_similarity for s in scores) / n),
    )


def classify_group_type(score: SimilarityScore) -> GroupType:
    """Name the kind of redundancy from the metadata sub-scores."""
    if score.temporal_proximity > 0.8 and score.spatial_proximity > 0.8:
        return GroupType.RETRY_SHOTS
    if score.spatial_proximity > 0.7 and score.temporal_proximity > 0.5:
        return GroupType.ANGLE_VARIATIONS
    if score.content_similarity > 0.8 and score.temporal_proximity > 0.3:
        return GroupType.INCREMENTAL_PROGRESS
    return GroupType.REDUNDANT_DOCUMENTATION


def make_group(
    photos: list[Photo],
    representative: SimilarityScore,
    group_type: GroupType,
    confidence: float,
) -> SimilarityGroup:
    return SimilarityGroup(
        id=str(uuid.uuid4()),
        photos=photos,
        representative_score=representative,
        group_type=group_type,
        confidence=clamp01(confidence),
    )
