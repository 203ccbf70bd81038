"""photosieve FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from photosieve.config import Settings, get_settings
from photosieve.repositories.storage import StorageBackend
from photosieve.services.caption_service import (
    CaptionProvider,
    HttpCaptionClient,
    VLMCaptioner,
)
from photosieve.services.feature_extractor import get_feature_extractor
from photosieve.services.similarity_service import SimilarityService
from photosieve.telemetry.logging_sink import LoggingTelemetrySink
from photosieve.telemetry.registry import TelemetryRegistry

logger = logging.getLogger(__name__)


def build_captioner(settings: Settings, storage: StorageBackend) -> CaptionProvider | None:
    """Create the caption provider selected by ``caption_backend``."""
    if settings.caption_backend == "http":
        return HttpCaptionClient(settings.caption_endpoint, timeout=settings.http_timeout)
    if settings.caption_backend == "vlm":
        return VLMCaptioner(storage=storage, device=settings.device)
    if settings.caption_backend != "none":
        logger.warning(
            "Unknown caption backend '%s'; semantic fallback disabled",
            settings.caption_backend,
        )
    return None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application startup and shutdown.

    On startup:
    - Create StorageBackend, the caption provider and TelemetryRegistry.
    - Register the logging sink and discover sinks from the configured directory.
    - Wire the SimilarityService with the process-wide feature extractor
      (model loaded on first analysis, NOT at startup).
    - Store all services on app.state for dependency injection.

    On shutdown:
    - Shut down the telemetry registry.
    - Dispose the feature model and close network clients.
    """
    settings = get_settings()

    # Storage
    storage = StorageBackend(timeout=settings.http_timeout)
    app.state.storage = storage

    # Caption provider for the semantic fallback
    captioner = build_captioner(settings, storage)

    # Telemetry
    telemetry_registry = TelemetryRegistry()
    telemetry_registry.register_sink(LoggingTelemetrySink())
    discovered = telemetry_registry.discover_sinks(settings.telemetry_dir)
    if discovered:
        logger.info("Loaded telemetry sinks: %s", ", ".join(discovered))
    app.state.telemetry_registry = telemetry_registry

    # Similarity pipeline
    extractor = get_feature_extractor()
    similarity_service = SimilarityService(
        storage=storage,
        extractor=extractor,
        captioner=captioner,
        telemetry=telemetry_registry,
        settings=settings,
    )
    app.state.similarity_service = similarity_service

    yield

    # Shutdown
    similarity_service.cancel()
    telemetry_registry.shutdown()
    extractor.dispose()
    if captioner is not None:
        await captioner.aclose()
    await storage.aclose()


app = FastAPI(
    title="photosieve",
    description="Cascading duplicate and near-duplicate photo detection",
    version="0.1.0",
    lifespan=lifespan,
)

# In Docker behind a reverse proxy (same origin): no CORS needed.
# In local dev: allow the frontend dev server origin.
settings = get_settings()
if not settings.behind_proxy:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Router includes
from photosieve.routers import analysis  # noqa: E402

app.include_router(analysis.router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "ok"}
