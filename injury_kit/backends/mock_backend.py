from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np

from ..config import BOX_FEATURES, ModelConfig
from ..inference import InferenceEngine


@dataclass(frozen=True)
class CannedDetection:
    """A detection in model pixel space (center form) that the mock will emit."""

    x: float
    y: float
    width: float
    height: float
    class_id: int
    confidence: float


def build_output(detections: Sequence[CannedDetection], config: ModelConfig) -> np.ndarray:
    """
    Feature-major output buffer of shape `config.output_shape` holding
    `detections` in the first prediction slots; every other slot is all zeros.
    """

    if len(detections) > config.num_predictions:
        raise ValueError(f"{len(detections)} detections do not fit in {config.num_predictions} predictions")

    rows = np.zeros((config.num_features, config.num_predictions), dtype=np.float32)
    for slot, det in enumerate(detections):
        if not 0 <= det.class_id < config.num_classes:
            raise ValueError(f"class_id {det.class_id} out of range for {config.num_classes} classes")
        rows[0:BOX_FEATURES, slot] = (det.x, det.y, det.width, det.height)
        rows[BOX_FEATURES + det.class_id, slot] = det.confidence
    return rows[None, ...]


def default_detections(config: ModelConfig) -> Sequence[CannedDetection]:
    # One box over x in [0.1, 0.5], y in [0.15, 0.6] of the input.
    x1, y1 = 0.1 * config.input_width, 0.15 * config.input_height
    x2, y2 = 0.5 * config.input_width, 0.6 * config.input_height
    return (
        CannedDetection(
            x=(x1 + x2) / 2,
            y=(y1 + y2) / 2,
            width=x2 - x1,
            height=y2 - y1,
            class_id=0,
            confidence=0.85,
        ),
    )


class MockEngine(InferenceEngine):
    """
    Fallback detector for platforms without a native runtime.

    Ignores its input and always returns the same canned detections, laid out
    exactly like a real model's output so downstream code cannot tell the
    difference.
    """

    name = "mock"

    def __init__(self, config: ModelConfig = ModelConfig(), detections: Optional[Sequence[CannedDetection]] = None):
        super().__init__(config)
        self.detections = tuple(default_detections(config) if detections is None else detections)
        self._output = build_output(self.detections, config)
        self._loaded = False
        self.load_calls = 0
        self.calls = 0

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def _load(self, model_asset: Any) -> None:
        self.load_calls += 1
        self._loaded = True

    def _forward(self, blob: np.ndarray) -> np.ndarray:
        self.calls += 1
        return self._output.copy()

    def close(self) -> None:
        self._loaded = False
