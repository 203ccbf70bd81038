"""Difference-hash (dHash) fingerprints for near-duplicate detection.

The image is shrunk to an ``(N+1) x N`` grayscale grid; each pixel is
compared with its right-hand neighbour and the resulting ``N*N`` bits are
packed row-major into hex, four bits per digit.  Recompression and small
edits flip only a few bits, so similarity is measured by Hamming distance.
"""

from __future__ import annotations

import logging
import math

import imagehash
from PIL import Image

from photosieve.models.fingerprint import PerceptualFingerprint
from photosieve.models.photo import Photo
from photosieve.repositories.storage import StorageBackend
from photosieve.services.batching import CancellationToken, run_in_batches

logger = logging.getLogger(__name__)

DEFAULT_HASH_SIZE = 8

# Construction-site photos share a lot of structure, so this sits well
# above the usual near-duplicate cut-off.
DEFAULT_PERCEPTUAL_THRESHOLD = 0.85


def compute_dhash(image: Image.Image, hash_size: int = DEFAULT_HASH_SIZE) -> str:
    """Return the dHash of *image* as a hex string of ``hash_size**2 / 4`` digits."""
    return str(imagehash.dhash(image, hash_size=hash_size))


def hamming_distance(hash1: str, hash2: str) -> int:
    """Number of differing bits between two equal-length hex hashes."""
    if len(hash1) != len(hash2):
        raise ValueError("Hashes must be the same length")
    return bin(int(hash1, 16) ^ int(hash2, 16)).count("1")


def hash_similarity(hash1: str, hash2: str) -> float:
    """``1 - distance / (len * 4)``: 1.0 for identical hashes."""
    max_distance = len(hash1) * 4
    if max_distance == 0:
        return 0.0
    return 1.0 - hamming_distance(hash1, hash2) / max_distance


def visualize_hash(hash_hex: str, hash_size: int = DEFAULT_HASH_SIZE) -> str:
    """Render a hash as a block grid, one row per line (debugging aid)."""
    bits = "".join(bin(int(h, 16))[2:].zfill(4) for h in hash_hex)
    rows = [bits[i : i + hash_size] for i in range(0, len(bits), hash_size)]
    return "\n".join(
        row.replace("0", "░").replace("1", "█") for row in rows
    )


class PerceptualHasher:
    """Computes dHashes for photos in small concurrent batches."""

    def __init__(
        self,
        storage: StorageBackend,
        hash_size: int = DEFAULT_HASH_SIZE,
        batch_size: int = 3,
        batch_delay: float = 0.05,
    ) -> None:
        self.storage = storage
        self.hash_size = hash_size
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    async def fingerprint(self, photo: Photo, url: str) -> PerceptualFingerprint:
        image = await self.storage.load_image(url)
        return PerceptualFingerprint(
            photo_id=photo.id,
            hash_hex=compute_dhash(image, self.hash_size),
            source_url=url,
        )

    async def batch_fingerprint(
        self,
        photos_with_urls: list[tuple[Photo, str]],
        token: CancellationToken | None = None,
    ) -> list[PerceptualFingerprint]:
        """Fingerprint every ``(photo, url)``; failures are logged and skipped."""
        results = await run_in_batches(
            photos_with_urls,
            lambda pair: self.fingerprint(*pair),
            batch_size=self.batch_size,
            delay=self.batch_delay,
            token=token,
            label="perceptual-hash",
            describe=lambda pair: pair[0].id,
        )
        fingerprints = [fp for _, fp in results]
        logger.info(
            "Calculated %d/%d perceptual hashes",
            len(fingerprints),
            len(photos_with_urls),
        )
        return fingerprints


def find_perceptual_similarities(
    fingerprints: list[PerceptualFingerprint],
    threshold: float = DEFAULT_PERCEPTUAL_THRESHOLD,
    token: CancellationToken | None = None,
) -> list[tuple[list[PerceptualFingerprint], list[float]]]:
    """Greedy seed clustering over fingerprints.

    Each unprocessed fingerprint seeds a group and absorbs every later
    unprocessed fingerprint whose similarity *to the seed* reaches
    *threshold*.  Returns ``(members, edge_similarities)`` for groups of
    two or more, where ``edge_similarities[k]`` is the seed's similarity
    to ``members[k + 1]``.
    """
    groups: list[tuple[list[PerceptualFingerprint], list[float]]] = []
    processed: set[str] = set()

    for i, seed in enumerate(fingerprints):
        if seed.photo_id in processed:
            continue
        if token is not None:
            token.raise_if_cancelled()

        members = [seed]
        edges: list[float] = []
        processed.add(seed.photo_id)

        for other in fingerprints[i + 1 :]:
            if other.photo_id in processed:
                continue
            similarity = hash_similarity(seed.hash_hex, other.hash_hex)
            if similarity >= threshold:
                members.append(other)
                edges.append(similarity)
                processed.add(other.photo_id)
                logger.debug(
                    "Grouped %s with %s (dHash similarity %.3f)",
                    other.photo_id,
                    seed.photo_id,
                    similarity,
                )

        if len(members) > 1:
            groups.append((members, edges))
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "dHash of group seed %s:\n%s",
                    seed.photo_id,
                    visualize_hash(seed.hash_hex, math.isqrt(len(seed.hash_hex) * 4)),
                )

    logger.info("Found %d perceptual similarity groups", len(groups))
    return groups
