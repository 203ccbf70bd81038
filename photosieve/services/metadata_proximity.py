"""Temporal and spatial proximity scoring from capture metadata.

Both scores are monotonic step functions so that nearby captures land in
the same bucket regardless of small clock or GPS jitter.  Missing data is
never estimated: a photo without a timestamp or coordinate scores 0.0
against everything.
"""

from __future__ import annotations

import logging
import math

from photosieve.models.photo import Photo

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0

# (upper bound in minutes, score); first bound the difference is below wins
TEMPORAL_STEPS: list[tuple[float, float]] = [
    (1.0, 0.98),
    (5.0, 0.95),
    (15.0, 0.85),
    (60.0, 0.6),
    (240.0, 0.3),
    (1440.0, 0.1),
]
TEMPORAL_FLOOR = 0.05

# (upper bound in metres, score)
SPATIAL_STEPS: list[tuple[float, float]] = [
    (10.0, 0.98),
    (50.0, 0.92),
    (100.0, 0.6),
    (500.0, 0.4),
    (1000.0, 0.2),
]
SPATIAL_FLOOR = 0.0

# Candidate widening thresholds (score space, not raw units)
CLOSE_IN_TIME = 0.85  # < 15 minutes
CLOSE_IN_SPACE = 0.92  # < 50 metres
NEAR_IDENTICAL_TIME = 0.98  # < 1 minute


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def temporal_proximity(photo1: Photo, photo2: Photo) -> float:
    """Score how close two captures are in time (1.0 = same instant)."""
    if photo1.captured_at is None or photo2.captured_at is None:
        return 0.0

    diff_minutes = abs(
        (photo1.captured_at - photo2.captured_at).total_seconds()
    ) / 60.0
    if diff_minutes == 0:
        return 1.0
    for bound, score in TEMPORAL_STEPS:
        if diff_minutes < bound:
            return score
    return TEMPORAL_FLOOR


def spatial_proximity(photo1: Photo, photo2: Photo) -> float:
    """Score how close two captures are in space using their first GPS fix."""
    c1, c2 = photo1.primary_coordinate, photo2.primary_coordinate
    if c1 is None or c2 is None:
        return 0.0
    if c1.latitude == c2.latitude and c1.longitude == c2.longitude:
        return 1.0

    distance = haversine_m(c1.latitude, c1.longitude, c2.latitude, c2.longitude)
    for bound, score in SPATIAL_STEPS:
        if distance < bound:
            return score
    return SPATIAL_FLOOR


def content_similarity(photo1: Photo, photo2: Photo) -> float:
    """Same-project / same-creator heuristic."""
    same_project = (
        1.0 if photo1.project_id and photo1.project_id == photo2.project_id else 0.0
    )
    same_creator = (
        0.8 if photo1.creator_id and photo1.creator_id == photo2.creator_id else 0.3
    )
    return same_project * 0.6 + same_creator * 0.4


def is_likely_duplicate_pair(photo1: Photo, photo2: Photo) -> bool:
    """Coarse metadata test: same project and captured together."""
    if not photo1.project_id or photo1.project_id != photo2.project_id:
        return False
    temporal = temporal_proximity(photo1, photo2)
    if temporal >= NEAR_IDENTICAL_TIME:
        return True
    return (
        temporal >= CLOSE_IN_TIME
        and spatial_proximity(photo1, photo2) >= CLOSE_IN_SPACE
    )


def find_likely_duplicate_candidates(photos: list[Photo]) -> list[Photo]:
    """Return every photo that forms a likely-duplicate pair, in input order."""
    flagged: set[str] = set()
    n = len(photos)
    for i in range(n):
        for j in range(i + 1, n):
            if is_likely_duplicate_pair(photos[i], photos[j]):
                flagged.add(photos[i].id)
                flagged.add(photos[j].id)

    candidates = [p for p in photos if p.id in flagged]
    logger.debug(
        "Metadata pass flagged %d of %d photos", len(candidates), n
    )
    return candidates
