"""photosieve application configuration using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

import torch
from pydantic_settings import BaseSettings


def _detect_device() -> str:
    """Auto-detect best available device (MPS > CUDA > CPU)."""
    if torch.backends.mps.is_available():
        return "mps"
    if torch.cuda.is_available():
        return "cuda"
    return "cpu"


class Settings(BaseSettings):
    """photosieve application settings.

    All fields can be overridden via environment variables with
    the PHOTOSIEVE_ prefix (e.g., PHOTOSIEVE_SIMILARITY_THRESHOLD).
    List fields take JSON (``PHOTOSIEVE_FEATURE_MODEL_FALLBACKS='["resnet-50"]'``).
    """

    host: str = "0.0.0.0"
    port: int = 8000
    behind_proxy: bool = False  # Set PHOTOSIEVE_BEHIND_PROXY=true in Docker
    telemetry_dir: Path = Path("telemetry_sinks")

    # Visual feature model
    feature_model: str = "mobilenet-v2"
    feature_model_fallbacks: list[str] = ["resnet-50"]
    device: str = _detect_device()

    # Caption collaborator: "http" (external service), "vlm" (local Moondream2) or "none"
    caption_backend: str = "http"
    caption_endpoint: str | None = None
    http_timeout: float = 30.0

    # Pipeline defaults (overridable per run through PipelineOptions)
    similarity_threshold: float = 0.98
    confidence_threshold: float = 0.85
    perceptual_threshold: float = 0.85
    semantic_threshold: float = 0.7
    hash_size: int = 8
    batch_size: int = 3
    batch_delay: float = 0.1
    fallback_sample_size: int = 15
    image_uri_preference: list[str] = ["web", "original", "thumbnail"]

    model_config = {
        "env_prefix": "PHOTOSIEVE_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings (singleton)."""
    return Settings()
