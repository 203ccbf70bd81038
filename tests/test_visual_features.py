"""Tests for embedding normalization, cosine similarity and visual grouping."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from conftest import FakeFeatureExtractor, make_photo, noise_image, save_png, unit_vector
from photosieve.models.fingerprint import VisualFeatureVector
from photosieve.services.visual_features import (
    VisualFeatureService,
    cosine_similarity,
    l2_normalize,
)


def _vec(photo_id: str, values: list[float]) -> VisualFeatureVector:
    return VisualFeatureVector(
        photo_id=photo_id,
        embedding=l2_normalize(np.asarray(values)),
        image_url=f"{photo_id}.png",
        extraction_time_ms=0.0,
    )


def test_l2_normalize() -> None:
    assert np.linalg.norm(l2_normalize(np.array([3.0, 4.0]))) == pytest.approx(1.0)
    assert np.all(l2_normalize(np.zeros(3)) == 0.0)


def test_cosine_similarity_bounds() -> None:
    a = np.array([0.2, 0.5, -0.1])
    assert cosine_similarity(a, a) == pytest.approx(1.0)
    assert cosine_similarity(a, -a) == pytest.approx(-1.0)
    assert -1.0 <= cosine_similarity(a, np.array([1.0, 0.0, 0.0])) <= 1.0


def test_cosine_similarity_shape_mismatch() -> None:
    with pytest.raises(ValueError):
        cosine_similarity(np.ones(3), np.ones(4))


async def test_batch_extract_normalizes_and_isolates_failures(
    storage, tmp_path: Path
) -> None:
    extractor = FakeFeatureExtractor()
    service = VisualFeatureService(storage, extractor, batch_size=2, batch_delay=0.0)
    inputs = [
        (make_photo(f"p{i}"), save_png(noise_image(i), tmp_path / f"{i}.png"))
        for i in range(3)
    ]
    inputs.append((make_photo("broken"), str(tmp_path / "missing.png")))

    done: list[tuple[int, int]] = []
    features = await service.batch_extract(
        inputs, on_batch_done=lambda d, t: done.append((d, t))
    )

    assert sorted(features) == ["p0", "p1", "p2"]
    for vector in features.values():
        assert np.linalg.norm(vector.embedding) == pytest.approx(1.0, abs=1e-5)
    assert done == [(2, 4), (4, 4)]
    assert extractor.stats.features_extracted == 3
    assert extractor.is_loaded


def test_find_visual_similarities_greedy(storage) -> None:
    service = VisualFeatureService(storage, FakeFeatureExtractor())
    features = [
        _vec("a", unit_vector(1.0)),
        _vec("b", unit_vector(0.995)),
        _vec("c", unit_vector(0.0)),
        _vec("d", unit_vector(0.99)),
    ]

    groups = service.find_visual_similarities(features, threshold=0.98)

    assert len(groups) == 1
    members, average = groups[0]
    assert [m.photo_id for m in members] == ["a", "b", "d"]
    assert average == pytest.approx((0.995 + 0.99) / 2, abs=1e-5)
    assert service.extractor.stats.comparisons_performed == 3


def test_naive_threshold_groups_unrelated_shots(storage) -> None:
    service = VisualFeatureService(storage, FakeFeatureExtractor())
    features = [_vec("a", unit_vector(1.0)), _vec("b", unit_vector(0.85))]

    assert len(service.find_visual_similarities(features, threshold=0.8)) == 1
    assert service.find_visual_similarities(features, threshold=0.98) == []
