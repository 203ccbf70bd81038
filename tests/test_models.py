"""Tests for photo, score and option models."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from conftest import make_photo
from photosieve.config import Settings
from photosieve.models.photo import ImageURI, Photo
from photosieve.models.pipeline import PipelineOptions, PipelineRunState
from photosieve.models.similarity import GroupType, SimilarityGroup, SimilarityScore


class TestPhoto:
    def test_image_url_preference(self) -> None:
        photo = Photo(
            id="p",
            uris=[
                ImageURI(type="thumbnail", uri="t.jpg"),
                ImageURI(type="original", uri="o.jpg"),
            ],
            photo_url="legacy.jpg",
        )
        assert photo.image_url() == "o.jpg"
        assert photo.image_url(["thumbnail", "web"]) == "t.jpg"
        assert photo.image_url(["web"]) == "legacy.jpg"
        assert Photo(id="bare").image_url() is None

    def test_naive_timestamps_assumed_utc(self) -> None:
        photo = Photo(id="p", captured_at=datetime(2024, 5, 1, 9, 0))
        assert photo.captured_at.tzinfo == timezone.utc

    def test_epoch_seconds_accepted(self) -> None:
        photo = Photo(id="p", captured_at=1714554000)
        assert photo.captured_at == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def test_frozen(self) -> None:
        photo = make_photo("p")
        with pytest.raises(ValidationError):
            photo.id = "q"

    def test_invalid_latitude(self) -> None:
        with pytest.raises(ValidationError):
            Photo.model_validate({"id": "p", "coordinates": [{"latitude": 91, "longitude": 0}]})


def test_scores_are_bounded() -> None:
    with pytest.raises(ValidationError):
        SimilarityScore(
            visual_similarity=1.2,
            content_similarity=0.0,
            temporal_proximity=0.0,
            spatial_proximity=0.0,
            semantic_similarity=0.0,
            overall_similarity=0.0,
        )


def test_group_needs_two_photos() -> None:
    score = SimilarityScore(
        visual_similarity=1.0,
        content_similarity=1.0,
        temporal_proximity=1.0,
        spatial_proximity=1.0,
        semantic_similarity=1.0,
        overall_similarity=1.0,
    )
    with pytest.raises(ValidationError):
        SimilarityGroup(
            id="g",
            photos=[make_photo("a")],
            representative_score=score,
            group_type=GroupType.EXACT_DUPLICATES,
            confidence=1.0,
        )


def test_options_from_settings() -> None:
    settings = Settings(similarity_threshold=0.995, batch_size=5, device="cpu")
    options = PipelineOptions.from_settings(settings, confidence_threshold=0.5)
    assert options.similarity_threshold == 0.995
    assert options.batch_size == 5
    assert options.confidence_threshold == 0.5
    assert options.enable_semantic_fallback


def test_initial_state_is_idle() -> None:
    state = PipelineRunState()
    assert state.status == "idle"
    assert not state.is_analyzing
    assert state.similarity_groups == []
