"""Tests for dHash computation, Hamming similarity and greedy grouping."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from conftest import gradient_image, make_photo, noise_image, save_png
from photosieve.models.fingerprint import PerceptualFingerprint
from photosieve.services.batching import AnalysisCancelledError, CancellationToken
from photosieve.services.perceptual_hash import (
    PerceptualHasher,
    compute_dhash,
    find_perceptual_similarities,
    hamming_distance,
    hash_similarity,
    visualize_hash,
)


def _fp(photo_id: str, hash_hex: str) -> PerceptualFingerprint:
    return PerceptualFingerprint(photo_id=photo_id, hash_hex=hash_hex, source_url=f"{photo_id}.png")


class TestDhash:
    def test_hash_length_follows_hash_size(self) -> None:
        image = noise_image(1)
        assert len(compute_dhash(image, 8)) == 16
        assert len(compute_dhash(image, 16)) == 64

    def test_same_image_same_hash(self) -> None:
        assert compute_dhash(noise_image(7)) == compute_dhash(noise_image(7))

    def test_opposite_gradients_disagree(self) -> None:
        forward = compute_dhash(gradient_image((40, 30)))
        backward = compute_dhash(gradient_image((41, 30), reverse=True))
        assert hash_similarity(forward, backward) < 0.5


class TestHammingSimilarity:
    def test_distance_counts_bits(self) -> None:
        assert hamming_distance("ff", "0f") == 4
        assert hamming_distance("f0", "0f") == 8
        assert hamming_distance("a5", "a5") == 0

    def test_length_mismatch_raises(self) -> None:
        with pytest.raises(ValueError, match="same length"):
            hamming_distance("fff", "ff")

    def test_similarity_range(self) -> None:
        assert hash_similarity("ffff", "ffff") == 1.0
        assert hash_similarity("ffff", "0000") == 0.0
        assert hash_similarity("ff", "0f") == 0.5

    def test_visualize_hash(self) -> None:
        assert visualize_hash("f0", hash_size=4) == "████\n░░░░"


class TestPerceptualGrouping:
    def test_seed_absorbs_everything_close_to_it(self) -> None:
        fps = [_fp("a", "ffff"), _fp("b", "fffe"), _fp("c", "0000"), _fp("d", "fffc")]
        groups = find_perceptual_similarities(fps, threshold=0.85)

        assert len(groups) == 1
        members, edges = groups[0]
        assert [m.photo_id for m in members] == ["a", "b", "d"]
        assert edges == [pytest.approx(15 / 16), pytest.approx(14 / 16)]

    def test_grouping_depends_on_input_order(self) -> None:
        x, y, z = _fp("x", "0003"), _fp("y", "0001"), _fp("z", "0000")

        forward = find_perceptual_similarities([x, y, z], threshold=0.9)
        assert [[m.photo_id for m in g] for g, _ in forward] == [["x", "y"]]

        reordered = find_perceptual_similarities([y, x, z], threshold=0.9)
        assert [[m.photo_id for m in g] for g, _ in reordered] == [["y", "x", "z"]]

    def test_no_photo_in_two_groups(self) -> None:
        fps = [_fp(str(i), h) for i, h in enumerate(["ffff", "fffe", "fffc", "0000", "0001", "8000"])]
        groups = find_perceptual_similarities(fps, threshold=0.85)
        ids = [m.photo_id for members, _ in groups for m in members]
        assert len(ids) == len(set(ids))
        assert all(len(members) >= 2 for members, _ in groups)

    def test_cancelled_token_stops_grouping(self) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelledError):
            find_perceptual_similarities([_fp("a", "ff"), _fp("b", "ff")], token=token)


class TestPerceptualHasher:
    async def test_failures_are_skipped(self, storage, tmp_path: Path) -> None:
        url = save_png(noise_image(5), tmp_path / "ok.png")
        photos = [
            (make_photo("ok", url), url),
            (make_photo("missing"), str(tmp_path / "missing.png")),
        ]
        hasher = PerceptualHasher(storage, batch_size=2, batch_delay=0.0)

        fingerprints = await hasher.batch_fingerprint(photos)

        assert [fp.photo_id for fp in fingerprints] == ["ok"]
        assert fingerprints[0].hash_hex == compute_dhash(noise_image(5))
        assert fingerprints[0].source_url == url


def test_group_seed_hash_logged_at_debug(caplog) -> None:
    with caplog.at_level(logging.DEBUG, logger="photosieve.services.perceptual_hash"):
        find_perceptual_similarities([_fp("a", "ff00"), _fp("b", "ff01")], threshold=0.9)

    assert "████\n████\n░░░░\n░░░░" in caplog.text
