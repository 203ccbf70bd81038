"""SHA-256 content fingerprints for exact (byte-identical) duplicate detection."""

from __future__ import annotations

import hashlib
import logging
from collections import defaultdict

from photosieve.models.fingerprint import ContentFingerprint
from photosieve.models.photo import Photo
from photosieve.repositories.storage import StorageBackend
from photosieve.services.batching import CancellationToken, run_in_batches

logger = logging.getLogger(__name__)


def compute_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ContentFingerprinter:
    """Fetches image bytes and hashes them in small concurrent batches."""

    def __init__(
        self,
        storage: StorageBackend,
        batch_size: int = 3,
        batch_delay: float = 0.1,
    ) -> None:
        self.storage = storage
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    async def hash_url(self, url: str) -> str:
        data = await self.storage.read_bytes(url)
        return compute_sha256(data)

    async def hash_urls(
        self,
        urls: list[str | None],
        token: CancellationToken | None = None,
    ) -> dict[str, str]:
        """Map each resolvable URL to its SHA-256.

        Empty entries are skipped; URLs that fail to fetch are left out of
        the map (the photo is then treated as unique).
        """
        unique_urls = list(dict.fromkeys(u for u in urls if u))
        logger.info("Hashing %d image URLs", len(unique_urls))

        results = await run_in_batches(
            unique_urls,
            self.hash_url,
            batch_size=self.batch_size,
            delay=self.batch_delay,
            token=token,
            label="content-hash",
            describe=str,
        )
        hashes = {url: digest for url, digest in results}
        logger.info("Generated %d/%d hashes", len(hashes), len(unique_urls))
        return hashes


def fingerprint_photos(
    photos: list[Photo], url_hashes: dict[str, str], url_for: dict[str, str]
) -> list[ContentFingerprint]:
    """Attach to each photo the hash of its resolved URL.

    *url_for* maps photo id to the URL that was hashed.  Photos without a
    URL or whose fetch failed get no fingerprint, so they never match.
    """
    fingerprints = []
    for photo in photos:
        url = url_for.get(photo.id)
        digest = url_hashes.get(url) if url else None
        if digest:
            fingerprints.append(ContentFingerprint(photo_id=photo.id, hash_hex=digest))
    return fingerprints


def find_exact_duplicates(
    photos: list[Photo], url_hashes: dict[str, str], url_for: dict[str, str]
) -> list[list[Photo]]:
    """Group photos whose content fingerprints are equal.

    Groups keep the input order of their members and are ordered by first
    appearance.
    """
    by_id = {p.id: p for p in photos}
    by_hash: dict[str, list[Photo]] = defaultdict(list)
    for fingerprint in fingerprint_photos(photos, url_hashes, url_for):
        by_hash[fingerprint.hash_hex].append(by_id[fingerprint.photo_id])

    groups = [members for members in by_hash.values() if len(members) > 1]
    logger.info("Found %d exact duplicate groups", len(groups))
    return groups
