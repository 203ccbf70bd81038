"""Shared pytest fixtures for photosieve tests."""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import numpy as np
import pytest
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from PIL import Image

from photosieve.config import Settings
from photosieve.models.fingerprint import LayerStats
from photosieve.models.photo import Coordinate, ImageURI, Photo
from photosieve.repositories.storage import StorageBackend
from photosieve.routers import analysis
from photosieve.services.caption_service import CaptionProvider
from photosieve.services.feature_extractor import FeatureExtractor, FeatureModelUnavailableError
from photosieve.services.similarity_service import SimilarityService
from photosieve.telemetry.base_sink import BaseTelemetrySink, TelemetryContext
from photosieve.telemetry.registry import TelemetryRegistry

BASE_TIME = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)
BASE_LAT = 37.7749
BASE_LON = -122.4194


# ------------------------------------------------------------------
# Images
# ------------------------------------------------------------------


def gradient_image(size: tuple[int, int], reverse: bool = False) -> Image.Image:
    """Horizontal grayscale gradient; *reverse* flips it right-to-left."""
    width, height = size
    row = np.linspace(0, 255, width).astype(np.uint8)
    if reverse:
        row = row[::-1]
    pixels = np.tile(row, (height, 1))
    return Image.fromarray(np.stack([pixels] * 3, axis=-1), "RGB")


def noise_image(seed: int, size: int = 32) -> Image.Image:
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(size, size, 3), dtype=np.uint8)
    return Image.fromarray(pixels, "RGB")


def save_png(image: Image.Image, path: Path) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    image.save(path, "PNG")
    return str(path)


# ------------------------------------------------------------------
# Photos
# ------------------------------------------------------------------


def make_photo(
    photo_id: str,
    url: str | None = None,
    *,
    minutes: float | None = 0.0,
    lat: float | None = BASE_LAT,
    lon: float | None = BASE_LON,
    project_id: str | None = "proj-1",
    creator_id: str | None = "user-1",
    description: str | None = None,
    tags: list[str] | None = None,
) -> Photo:
    """Build a photo captured *minutes* after a fixed base time."""
    return Photo(
        id=photo_id,
        captured_at=None if minutes is None else BASE_TIME + timedelta(minutes=minutes),
        coordinates=[] if lat is None or lon is None else [Coordinate(latitude=lat, longitude=lon)],
        uris=[ImageURI(type="web", uri=url)] if url else [],
        description=description,
        tags=tags or [],
        project_id=project_id,
        creator_id=creator_id,
    )


def unit_vector(cosine_to_first: float, dim: int = 64) -> list[float]:
    """Unit vector whose cosine with ``e_0`` is *cosine_to_first*."""
    vector = [0.0] * dim
    vector[0] = cosine_to_first
    vector[1] = float(np.sqrt(max(0.0, 1.0 - cosine_to_first**2)))
    return vector


# ------------------------------------------------------------------
# Collaborator fakes
# ------------------------------------------------------------------


class FakeFeatureExtractor(FeatureExtractor):
    """Embeds images without a real model.

    Images whose size appears in *vectors_by_size* get that vector; all
    others get a random vector seeded by their pixel data, so distinct
    images are nearly orthogonal and identical images match exactly.
    """

    def __init__(
        self,
        vectors_by_size: dict[tuple[int, int], list[float]] | None = None,
        dim: int = 64,
        on_infer: Callable[[], None] | None = None,
        fail_load: bool = False,
    ) -> None:
        super().__init__()
        self.vectors_by_size = vectors_by_size or {}
        self.dim = dim
        self.on_infer = on_infer
        self.fail_load = fail_load
        self.load_calls = 0
        self.unload_calls = 0
        self.infer_calls = 0

    @property
    def model_name(self) -> str:
        return "fake"

    def _load(self) -> None:
        self.load_calls += 1
        if self.fail_load:
            raise FeatureModelUnavailableError("Could not load any pretrained feature model")

    def _unload(self) -> None:
        self.unload_calls += 1

    def _infer(self, image: Image.Image) -> np.ndarray:
        self.infer_calls += 1
        if self.on_infer is not None:
            self.on_infer()
        if image.size in self.vectors_by_size:
            return np.asarray(self.vectors_by_size[image.size], dtype=np.float32)
        seed = int.from_bytes(hashlib.sha256(image.tobytes()).digest()[:8], "little")
        return np.random.default_rng(seed).normal(size=self.dim).astype(np.float32)


class FakeCaptioner(CaptionProvider):
    """Returns canned descriptions by photo id; ``None`` for unknown ids."""

    def __init__(
        self,
        descriptions: dict[str, str] | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.descriptions = descriptions or {}
        self.failing = failing or set()
        self.calls: list[str] = []

    async def generate_description(self, photo_url: str, photo_id: str) -> str | None:
        self.calls.append(photo_id)
        if photo_id in self.failing:
            raise RuntimeError(f"caption backend exploded for {photo_id}")
        return self.descriptions.get(photo_id)


class RecordingSink(BaseTelemetrySink):
    """Records every hook invocation as ``(hook_name, kwargs)``."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    @property
    def name(self) -> str:
        return "recording"

    def on_pipeline_start(self, *, context: TelemetryContext, photo_count: int) -> None:
        self.events.append(("on_pipeline_start", {"photo_count": photo_count}))

    def on_layer_complete(self, *, context: TelemetryContext, stats: LayerStats) -> None:
        self.events.append(("on_layer_complete", {"stats": stats}))

    def on_pipeline_complete(
        self, *, context: TelemetryContext, summary: dict[str, Any]
    ) -> None:
        self.events.append(("on_pipeline_complete", {"summary": summary}))

    def on_pipeline_error(self, *, context: TelemetryContext, error: str) -> None:
        self.events.append(("on_pipeline_error", {"error": error}))

    def on_pipeline_cancelled(self, *, context: TelemetryContext) -> None:
        self.events.append(("on_pipeline_cancelled", {}))

    @property
    def hook_names(self) -> list[str]:
        return [name for name, _ in self.events]

    @property
    def layers(self) -> list[str]:
        return [
            payload["stats"].layer
            for name, payload in self.events
            if name == "on_layer_complete"
        ]


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture()
def settings() -> Settings:
    """Settings with no inter-batch pause and no caption backend."""
    return Settings(batch_delay=0.0, caption_backend="none", device="cpu")


@pytest.fixture()
async def storage() -> StorageBackend:
    backend = StorageBackend()
    yield backend
    await backend.aclose()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def telemetry(sink: RecordingSink) -> TelemetryRegistry:
    registry = TelemetryRegistry()
    registry.register_sink(sink)
    return registry


@pytest.fixture()
def build_service(
    storage: StorageBackend, telemetry: TelemetryRegistry, settings: Settings
) -> Callable[..., SimilarityService]:
    """Factory for a SimilarityService wired with fakes."""

    def _build(
        extractor: FeatureExtractor | None = None,
        captioner: CaptionProvider | None = None,
    ) -> SimilarityService:
        return SimilarityService(
            storage=storage,
            extractor=extractor or FakeFeatureExtractor(),
            captioner=captioner,
            telemetry=telemetry,
            settings=settings,
        )

    return _build


@pytest.fixture()
def retry_pair(tmp_path: Path) -> list[Photo]:
    """Two shots 2 seconds apart at one spot whose embeddings have cosine 0.999.

    The images are opposite gradients so their dHashes disagree on every bit.
    """
    url_a = save_png(gradient_image((40, 30)), tmp_path / "retry" / "a.png")
    url_b = save_png(gradient_image((41, 30), reverse=True), tmp_path / "retry" / "b.png")
    return [
        make_photo("retry-a", url_a, minutes=0.0),
        make_photo("retry-b", url_b, minutes=2 / 60),
    ]


@pytest.fixture()
def retry_extractor() -> FakeFeatureExtractor:
    return FakeFeatureExtractor(
        vectors_by_size={(40, 30): unit_vector(1.0), (41, 30): unit_vector(0.999)}
    )


def build_test_app(service: SimilarityService) -> FastAPI:
    """Create a FastAPI test app serving *service*."""
    test_app = FastAPI()

    test_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @test_app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    test_app.state.similarity_service = service
    test_app.include_router(analysis.router)
    return test_app


@pytest.fixture()
async def app_client(
    build_service: Callable[..., SimilarityService],
    retry_extractor: FakeFeatureExtractor,
) -> httpx.AsyncClient:
    """Yield a client for a test app wired with fake collaborators."""
    test_app = build_test_app(build_service(extractor=retry_extractor))
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=test_app),
        base_url="http://testserver",
    ) as client:
        yield client
