"""Caption providers for the semantic fallback layer.

Two backends share one interface:

- :class:`HttpCaptionClient` posts the photo URL to an external captioning
  service.
- :class:`VLMCaptioner` captions locally with Moondream2, loaded on demand
  (not at startup) via the transformers library so that it never competes
  with the feature model for memory unless the fallback actually runs.

Both are fault tolerant: any failure yields ``None`` and the photo simply
drops out of the fallback.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable

import httpx
from PIL import Image
from transformers import AutoModelForCausalLM
from transformers.dynamic_module_utils import get_class_from_dynamic_module

from photosieve.models.photo import Photo
from photosieve.repositories.storage import StorageBackend
from photosieve.services.batching import CancellationToken, run_in_batches

logger = logging.getLogger(__name__)

MOONDREAM_ID = "vikhyatk/moondream2"
MOONDREAM_REVISION = "2025-01-09"
CAPTION_PROMPT = (
    "Describe what this construction site photo shows in one sentence. "
    "Mention the trade or building element if visible."
)


class CaptionProvider(ABC):
    """Anything that can turn a photo URL into a short description."""

    @abstractmethod
    async def generate_description(self, photo_url: str, photo_id: str) -> str | None:
        ...

    async def aclose(self) -> None:
        """Release network clients or models held by the provider."""


class HttpCaptionClient(CaptionProvider):
    """Calls an external captioning endpoint.

    Request body is ``{"photoUrl": ..., "photoId": ...}``; the response
    must be JSON with a ``description`` field.
    """

    def __init__(
        self,
        endpoint: str | None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self._timeout = timeout
        self._http = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def generate_description(self, photo_url: str, photo_id: str) -> str | None:
        if not self.endpoint:
            logger.debug("No caption endpoint configured; skipping %s", photo_id)
            return None

        try:
            response = await self._client().post(
                self.endpoint,
                json={"photoUrl": photo_url, "photoId": photo_id},
            )
            response.raise_for_status()
            description = response.json().get("description")
        except (httpx.HTTPError, ValueError, AttributeError):
            logger.warning("Caption request failed for %s", photo_id, exc_info=True)
            return None

        if not isinstance(description, str) or not description.strip():
            return None
        return description.strip()

    async def aclose(self) -> None:
        if self._http is not None and self._owns_client:
            await self._http.aclose()
        self._http = None


class VLMCaptioner(CaptionProvider):
    """Local captioning with Moondream2."""

    def __init__(self, storage: StorageBackend, device: str = "cpu") -> None:
        self.storage = storage
        self._device = device
        self._model: AutoModelForCausalLM | None = None
        self._lock = threading.Lock()

    def load_model(self) -> None:
        """Load Moondream2 via transformers.

        Uses ``trust_remote_code=True`` as required by Moondream2's custom
        architecture, and patches ``all_tied_weights_keys`` for newer
        transformers releases.
        """
        logger.info("Loading Moondream2 VLM on device: %s", self._device)

        cls = get_class_from_dynamic_module(
            "hf_moondream.HfMoondream",
            MOONDREAM_ID,
            revision=MOONDREAM_REVISION,
        )
        if not hasattr(cls, "all_tied_weights_keys"):
            cls.all_tied_weights_keys = {}

        self._model = AutoModelForCausalLM.from_pretrained(
            MOONDREAM_ID,
            revision=MOONDREAM_REVISION,
            trust_remote_code=True,
            device_map={"": self._device},
        )
        logger.info("Moondream2 loaded on %s", self._device)

    def _ensure_model(self) -> None:
        with self._lock:
            if self._model is None:
                self.load_model()

    def describe_image(self, image: Image.Image) -> str:
        """Run the caption prompt against one image (blocking)."""
        self._ensure_model()
        assert self._model is not None

        encoded = self._model.encode_image(image)
        result = self._model.query(encoded, CAPTION_PROMPT)
        return result["answer"].strip()

    async def generate_description(self, photo_url: str, photo_id: str) -> str | None:
        try:
            image = await self.storage.load_image(photo_url)
            description = await asyncio.to_thread(self.describe_image, image)
        except Exception:
            logger.warning("VLM caption failed for %s", photo_id, exc_info=True)
            return None
        return description or None

    async def aclose(self) -> None:
        self._model = None


async def batch_generate_descriptions(
    provider: CaptionProvider,
    photos_with_urls: list[tuple[Photo, str]],
    *,
    batch_size: int = 3,
    delay: float = 0.1,
    token: CancellationToken | None = None,
    on_batch_done: Callable[[int, int], None] | None = None,
) -> list[tuple[str, str]]:
    """Caption every ``(photo, url)``; returns ``(photo_id, description)`` in input order."""
    results = await run_in_batches(
        photos_with_urls,
        lambda pair: provider.generate_description(pair[1], pair[0].id),
        batch_size=batch_size,
        delay=delay,
        token=token,
        label="caption",
        describe=lambda pair: pair[0].id,
        on_batch_done=on_batch_done,
    )
    descriptions = [(photo.id, text) for (photo, _), text in results]
    logger.info(
        "Generated %d/%d descriptions", len(descriptions), len(photos_with_urls)
    )
    return descriptions
