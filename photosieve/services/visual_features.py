"""Visual feature layer: batched embedding extraction and cosine comparison.

Pooled CNN features give a high baseline similarity for any two photos of
similar subject matter, so "same shot" only starts around 0.98.  The
default grouping threshold is calibrated for that, not for the naive
0.8-means-similar intuition.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

import numpy as np

from photosieve.models.fingerprint import VisualFeatureVector
from photosieve.models.photo import Photo
from photosieve.repositories.storage import StorageBackend
from photosieve.services.batching import CancellationToken, run_in_batches
from photosieve.services.feature_extractor import FeatureExtractor

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.98
EPSILON = 1e-8


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """Scale *vector* to unit length; a zero vector is returned unchanged."""
    vector = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector
    return vector / norm


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity clamped to ``[-1, 1]``."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError("Feature vectors must have the same length")
    denom = np.sqrt(np.dot(a, a) + EPSILON) * np.sqrt(np.dot(b, b) + EPSILON)
    similarity = float(np.dot(a, b) / denom)
    return max(-1.0, min(1.0, similarity))


class VisualFeatureService:
    """Extracts and compares embeddings for photos.

    The extractor is injected and shared; this service may trigger the
    lazy load but never disposes the model.  Callers that process a run
    should hold a reference with ``extractor.acquire()`` / ``release()``.
    """

    def __init__(
        self,
        storage: StorageBackend,
        extractor: FeatureExtractor,
        batch_size: int = 3,
        batch_delay: float = 0.1,
    ) -> None:
        self.storage = storage
        self.extractor = extractor
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    async def extract_features(self, photo: Photo, url: str) -> VisualFeatureVector:
        """Fetch, preprocess and embed one photo."""
        start = time.perf_counter()
        image = await self.storage.load_image(url)
        raw = await asyncio.to_thread(self.extractor.infer, image)
        embedding = l2_normalize(raw)
        elapsed_ms = (time.perf_counter() - start) * 1000

        stats = self.extractor.stats
        stats.total_extraction_time_ms += elapsed_ms
        stats.features_extracted += 1

        logger.debug(
            "Features extracted for %s: %d dims in %.0fms",
            photo.id,
            embedding.shape[0],
            elapsed_ms,
        )
        return VisualFeatureVector(
            photo_id=photo.id,
            embedding=embedding,
            image_url=url,
            extraction_time_ms=elapsed_ms,
        )

    async def batch_extract(
        self,
        photos_with_urls: list[tuple[Photo, str]],
        token: CancellationToken | None = None,
        on_batch_done: Callable[[int, int], None] | None = None,
    ) -> dict[str, VisualFeatureVector]:
        """Embed every ``(photo, url)``; failures are logged and excluded."""
        if not photos_with_urls:
            return {}
        start = time.perf_counter()
        await asyncio.to_thread(self.extractor.ensure_loaded)

        results = await run_in_batches(
            photos_with_urls,
            lambda pair: self.extract_features(*pair),
            batch_size=self.batch_size,
            delay=self.batch_delay,
            token=token,
            label="visual-features",
            describe=lambda pair: pair[0].id,
            on_batch_done=on_batch_done,
        )
        features = {vec.photo_id: vec for _, vec in results}

        logger.info(
            "Batch extraction complete: %d ok, %d failed in %.0fms",
            len(features),
            len(photos_with_urls) - len(features),
            (time.perf_counter() - start) * 1000,
        )
        return features

    def compare(self, a: VisualFeatureVector, b: VisualFeatureVector) -> float:
        start = time.perf_counter()
        similarity = cosine_similarity(a.embedding, b.embedding)
        stats = self.extractor.stats
        stats.total_comparison_time_ms += (time.perf_counter() - start) * 1000
        stats.comparisons_performed += 1
        return similarity

    def find_visual_similarities(
        self,
        features: list[VisualFeatureVector],
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        token: CancellationToken | None = None,
    ) -> list[tuple[list[VisualFeatureVector], float]]:
        """Greedy seed grouping; returns ``(members, average_similarity)``."""
        groups: list[tuple[list[VisualFeatureVector], float]] = []
        processed: set[str] = set()

        for i, seed in enumerate(features):
            if seed.photo_id in processed:
                continue
            if token is not None:
                token.raise_if_cancelled()

            members = [seed]
            total = 0.0
            processed.add(seed.photo_id)

            for other in features[i + 1 :]:
                if other.photo_id in processed:
                    continue
                similarity = self.compare(seed, other)
                if similarity >= threshold:
                    members.append(other)
                    total += similarity
                    processed.add(other.photo_id)

            if len(members) > 1:
                groups.append((members, total / (len(members) - 1)))

        logger.info(
            "Visual grouping: %d groups covering %d photos",
            len(groups),
            sum(len(m) for m, _ in groups),
        )
        return groups
