"""
Inference engine interface.

An engine owns one loaded model and turns a flat input tensor into a flat,
feature-major output buffer. Concrete runtimes live in `injury_kit.backends`;
the pipeline only ever talks to this interface, so a fallback engine can be
swapped in without touching downstream code.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import numpy as np

from .config import ModelConfig
from .errors import DetectionError, InferenceFailure, ModelUnavailable, SizeMismatch

LOG = logging.getLogger(__name__)


class InferenceEngine(ABC):
    name = "engine"

    def __init__(self, config: ModelConfig = ModelConfig()):
        self.config = config
        self.load_ms = 0.0

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        ...

    @abstractmethod
    def _load(self, model_asset: Any) -> None:
        """Create the runtime session. Raise `ModelUnavailable` on failure."""

    @abstractmethod
    def _forward(self, blob: np.ndarray) -> np.ndarray:
        """Run the model on a (1, 3, H, W) float32 blob and return its sole output."""

    def close(self) -> None:
        """Release the runtime session, if any."""

    def load_model(self, model_asset: Any = None) -> None:
        start = time.perf_counter()
        try:
            self._load(model_asset)
        except ModelUnavailable:
            raise
        except Exception as exc:
            raise ModelUnavailable(f"{self.name}: failed to load model {model_asset!r}: {exc}") from exc
        self.load_ms = (time.perf_counter() - start) * 1000.0
        LOG.info("%s: model loaded in %.0f ms", self.name, self.load_ms)

    def ensure_loaded(self, model_asset: Any = None) -> float:
        """
        Load the model unless it already is. Returns the time spent loading,
        0.0 when nothing had to be done.

        Not locked: callers must not race two first calls.
        """

        if self.is_loaded:
            return 0.0
        self.load_model(model_asset)
        return self.load_ms

    def run_inference(self, tensor: np.ndarray) -> np.ndarray:
        """
        Forward pass on a flat `1 * 3 * H * W` tensor; returns the flat output.
        """

        if not self.is_loaded:
            raise ModelUnavailable(f"{self.name}: model not loaded, call load_model() first")

        flat = np.asarray(tensor, dtype=np.float32).ravel()
        expected = self.config.input_tensor_length
        if flat.size != expected:
            raise SizeMismatch(
                f"Input tensor size mismatch: got {flat.size}, expected {expected}",
                expected=expected,
                actual=int(flat.size),
            )

        blob = flat.reshape(self.config.input_shape)

        start = time.perf_counter()
        try:
            output = self._forward(blob)
        except DetectionError:
            raise
        except Exception as exc:
            raise InferenceFailure(f"{self.name}: forward pass failed: {exc}") from exc
        elapsed_ms = (time.perf_counter() - start) * 1000.0

        if output is None:
            raise InferenceFailure(f"{self.name}: model returned no output")
        output = np.asarray(output, dtype=np.float32)

        if tuple(output.shape) != self.config.output_shape:
            LOG.warning(
                "%s: output shape mismatch, expected %s got %s",
                self.name,
                list(self.config.output_shape),
                list(output.shape),
            )

        LOG.debug("%s: inference took %.1f ms, output shape %s", self.name, elapsed_ms, list(output.shape))
        return output.ravel()
