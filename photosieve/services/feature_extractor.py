"""Pretrained visual feature extraction (Hugging Face Transformers).

A single process-wide model is loaded lazily the first time an embedding
is requested, then kept in memory and shared by every pipeline run.
Callers hold a reference (:meth:`FeatureExtractor.acquire` /
:meth:`FeatureExtractor.release`) for the duration of a run; the model is
only unloaded by an explicit :meth:`FeatureExtractor.dispose` once no
references remain.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache

import numpy as np
import torch
from PIL import Image
from transformers import AutoImageProcessor, AutoModel

from photosieve.config import _detect_device, get_settings

logger = logging.getLogger(__name__)

# Map model short names to HuggingFace model IDs and extraction family.
# "pooled" family: model(**inputs).pooler_output, flattened (conv backbones)
# "cls" family: model(**inputs).last_hidden_state[:, 0, :] (ViT backbones)
MODEL_REGISTRY: dict[str, dict[str, str]] = {
    "mobilenet-v2": {"hf_id": "google/mobilenet_v2_1.0_224", "family": "pooled"},
    "resnet-50": {"hf_id": "microsoft/resnet-50", "family": "pooled"},
    "dinov2-small": {"hf_id": "facebook/dinov2-small", "family": "cls"},
}


class FeatureModelUnavailableError(RuntimeError):
    """No model in the configured load chain could be loaded."""


@dataclass
class ExtractionStats:
    """Running timings for model load, extraction and comparison."""

    model_load_time_ms: float = 0.0
    total_extraction_time_ms: float = 0.0
    total_comparison_time_ms: float = 0.0
    features_extracted: int = 0
    comparisons_performed: int = 0

    @property
    def average_extraction_time_ms(self) -> float:
        if not self.features_extracted:
            return 0.0
        return self.total_extraction_time_ms / self.features_extracted

    @property
    def average_comparison_time_ms(self) -> float:
        if not self.comparisons_performed:
            return 0.0
        return self.total_comparison_time_ms / self.comparisons_performed


class FeatureExtractor(ABC):
    """Reference-counted embedding model.

    Subclasses implement :meth:`_load`, :meth:`_unload` and :meth:`_infer`;
    the base class owns the lifecycle bookkeeping.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._refs = 0
        self._loaded = False
        self.stats = ExtractionStats()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def ref_count(self) -> int:
        return self._refs

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...

    @abstractmethod
    def _load(self) -> None:
        ...

    @abstractmethod
    def _unload(self) -> None:
        ...

    @abstractmethod
    def _infer(self, image: Image.Image) -> np.ndarray:
        ...

    def acquire(self) -> None:
        with self._lock:
            self._refs += 1

    def release(self) -> None:
        with self._lock:
            if self._refs == 0:
                logger.warning("release() called on %s with no references", self.model_name)
                return
            self._refs -= 1

    def ensure_loaded(self) -> None:
        """Load the model if it has not been loaded yet."""
        with self._lock:
            if self._loaded:
                return
            start = time.perf_counter()
            self._load()
            self._loaded = True
            self.stats.model_load_time_ms = (time.perf_counter() - start) * 1000

    def infer(self, image: Image.Image) -> np.ndarray:
        """Return the raw (unnormalized) 1-D embedding for *image*."""
        self.ensure_loaded()
        return np.asarray(self._infer(image), dtype=np.float32).reshape(-1)

    def dispose(self) -> bool:
        """Unload the model if nobody holds a reference; return whether it did."""
        with self._lock:
            if self._refs > 0:
                logger.warning(
                    "Not disposing %s: %d reference(s) still held",
                    self.model_name,
                    self._refs,
                )
                return False
            if self._loaded:
                self._unload()
                self._loaded = False
                logger.info("Feature model %s disposed", self.model_name)
            return True

    def reset_stats(self) -> None:
        """Clear timings, keeping the model load time."""
        self.stats = ExtractionStats(model_load_time_ms=self.stats.model_load_time_ms)


class TransformersFeatureExtractor(FeatureExtractor):
    """Embedding extractor backed by a pretrained transformers vision model.

    *model_name* is tried first, then each entry of *fallbacks* in order.
    Only one model is ever resident; embeddings from different models are
    not comparable, so the loaded name is fixed until :meth:`dispose`.
    """

    def __init__(
        self,
        model_name: str = "mobilenet-v2",
        fallbacks: list[str] | None = None,
        device: str | None = None,
    ) -> None:
        super().__init__()
        self._requested = model_name
        self._fallbacks = list(fallbacks or [])
        self._device_name = device
        self._model: AutoModel | None = None
        self._processor: AutoImageProcessor | None = None
        self._device: torch.device | None = None
        self._model_name: str = ""
        self._family: str = ""

    @property
    def model_name(self) -> str:
        return self._model_name or self._requested

    def _load(self) -> None:
        """Walk the load chain until one pretrained model loads."""
        chain = [self._requested] + [m for m in self._fallbacks if m != self._requested]
        errors: list[str] = []

        for name in chain:
            model_info = MODEL_REGISTRY.get(name)
            if model_info is None:
                errors.append(f"{name}: unknown model")
                logger.warning(
                    "Unknown feature model '%s'. Available: %s",
                    name,
                    list(MODEL_REGISTRY.keys()),
                )
                continue

            hf_model_id = model_info["hf_id"]
            logger.info("Loading feature model: %s (%s)", name, hf_model_id)
            try:
                processor = AutoImageProcessor.from_pretrained(hf_model_id)
                model = AutoModel.from_pretrained(hf_model_id)
            except Exception as e:
                errors.append(f"{name}: {e}")
                logger.warning("Feature model %s failed to load", name, exc_info=True)
                continue

            self._device = torch.device(self._device_name or _detect_device())
            model.eval()
            model.to(self._device)
            self._processor = processor
            self._model = model
            self._family = model_info["family"]
            self._model_name = name
            logger.info(
                "Feature model loaded: %s (%s) on %s",
                name,
                self._family,
                self._device,
            )
            return

        raise FeatureModelUnavailableError(
            "Could not load any pretrained feature model: " + "; ".join(errors)
        )

    def _unload(self) -> None:
        self._model = None
        self._processor = None
        self._model_name = ""
        if self._device is not None and self._device.type == "cuda":
            torch.cuda.empty_cache()

    def _infer(self, image: Image.Image) -> np.ndarray:
        assert self._model is not None and self._processor is not None

        # The processor resizes/centre-crops to the model's input resolution
        # and normalizes with the model's mean/std.
        inputs = self._processor(images=image, return_tensors="pt").to(self._device)
        with torch.no_grad():
            outputs = self._model(**inputs)
            if self._family == "pooled":
                features = outputs.pooler_output.reshape(outputs.pooler_output.shape[0], -1)
            else:
                features = outputs.last_hidden_state[:, 0, :]
        return features[0].cpu().numpy()


@lru_cache
def get_feature_extractor() -> FeatureExtractor:
    """Return the process-wide feature extractor (singleton)."""
    settings = get_settings()
    return TransformersFeatureExtractor(
        model_name=settings.feature_model,
        fallbacks=settings.feature_model_fallbacks,
        device=settings.device,
    )
