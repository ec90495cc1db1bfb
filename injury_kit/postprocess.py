from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np

from .config import BOX_FEATURES, ModelConfig
from .errors import SizeMismatch
from .nms import nms
from .types import BoundingBox, Detection, PreprocessResult

LOG = logging.getLogger(__name__)


class OutputView:
    """
    Read access to a flat, feature-major detector output.

    The model emits `[1, num_features, num_predictions]`; flattened, the value
    of feature `f` for prediction `i` sits at `f * num_predictions + i`. All
    index arithmetic on raw output goes through this class.
    """

    def __init__(self, raw, num_features: int, num_predictions: Optional[int] = None):
        if num_features <= 0:
            raise ValueError("num_features must be > 0")
        flat = np.asarray(raw, dtype=np.float32).ravel()
        if num_predictions is None:
            # Infer the anchor count from the buffer itself.
            num_predictions = max(1, flat.size // num_features)

        expected = num_features * num_predictions
        if flat.size != expected:
            raise SizeMismatch(
                f"Output length mismatch: got {flat.size}, expected {expected} "
                f"({num_features} features x {num_predictions} predictions)",
                expected=expected,
                actual=int(flat.size),
            )

        self.num_features = num_features
        self.num_predictions = num_predictions
        self._rows = flat.reshape(num_features, num_predictions)

    @staticmethod
    def index(feature: int, prediction: int, num_predictions: int) -> int:
        return feature * num_predictions + prediction

    def value(self, feature: int, prediction: int) -> float:
        return float(self._rows[feature, prediction])

    def feature(self, feature: int) -> np.ndarray:
        """All predictions of one feature, shape (num_predictions,)."""
        return self._rows[feature]

    def features(self, start: int, stop: int) -> np.ndarray:
        """Feature rows [start, stop), shape (stop - start, num_predictions)."""
        return self._rows[start:stop]


def parse_output(raw, config: ModelConfig) -> List[Detection]:
    """
    Decode a raw output buffer into candidate detections in model pixel space.

    Each prediction takes its best class (lowest index on ties) and is kept
    when that probability is at least `config.confidence_threshold`.
    Candidates come back in prediction order.
    """

    view = OutputView(raw, config.num_features, config.num_predictions)

    class_scores = view.features(BOX_FEATURES, config.num_features)
    class_ids = np.argmax(class_scores, axis=0)
    scores = class_scores[class_ids, np.arange(view.num_predictions)]

    keep = np.flatnonzero(scores >= config.confidence_threshold)
    if keep.size == 0:
        LOG.debug("No predictions above confidence %.2f", config.confidence_threshold)
        return []

    cx = view.feature(0)
    cy = view.feature(1)
    w = view.feature(2)
    h = view.feature(3)

    detections: List[Detection] = []
    for i in keep:
        class_id = int(class_ids[i])
        detections.append(
            Detection(
                box=BoundingBox(x=float(cx[i]), y=float(cy[i]), width=float(w[i]), height=float(h[i])),
                class_id=class_id,
                class_name=config.class_name(class_id),
                confidence=float(min(1.0, max(0.0, scores[i]))),
            )
        )

    LOG.debug("%d of %d predictions above confidence %.2f", len(detections), view.num_predictions, config.confidence_threshold)
    return detections


def _xyxy(detections: Sequence[Detection]) -> np.ndarray:
    return np.array([d.as_xyxy() for d in detections], dtype=np.float64).reshape(-1, 4)


def apply_nms(detections: Sequence[Detection], iou_threshold: float = 0.45, max_detections: Optional[int] = None) -> List[Detection]:
    """
    Class-agnostic non-maximum suppression, highest confidence first.
    """

    if not detections:
        return []

    scores = np.array([d.confidence for d in detections], dtype=np.float64)
    keep = nms(_xyxy(detections), scores, iou_threshold, max_detections=max_detections)
    return [detections[i] for i in keep]


def scale_detections(detections: Sequence[Detection], prep: PreprocessResult) -> List[Detection]:
    """
    Map boxes from letterboxed model space back onto the original image and
    clamp them to `[0, original_width] x [0, original_height]`.
    """

    out: List[Detection] = []
    for det in detections:
        x1, y1, x2, y2 = det.as_xyxy()
        x1 = (x1 - prep.pad_x) / prep.scale
        x2 = (x2 - prep.pad_x) / prep.scale
        y1 = (y1 - prep.pad_y) / prep.scale
        y2 = (y2 - prep.pad_y) / prep.scale

        # Model outputs can overshoot the image a little.
        x1 = min(max(x1, 0.0), float(prep.original_width))
        x2 = min(max(x2, x1), float(prep.original_width))
        y1 = min(max(y1, 0.0), float(prep.original_height))
        y2 = min(max(y2, y1), float(prep.original_height))

        out.append(
            Detection(
                box=BoundingBox.from_corners(x1, y1, x2, y2),
                class_id=det.class_id,
                class_name=det.class_name,
                confidence=det.confidence,
            )
        )
    return out


def postprocess(raw, prep: PreprocessResult, config: ModelConfig) -> List[Detection]:
    """
    parse -> NMS -> scale.

    NMS runs in model space, before the letterbox is inverted.
    """

    candidates = parse_output(raw, config)
    kept = apply_nms(candidates, config.iou_threshold, max_detections=config.max_detections)
    LOG.debug("NMS kept %d of %d candidates (iou=%.2f)", len(kept), len(candidates), config.iou_threshold)
    return scale_detections(kept, prep)


class Postprocessor:
    """`postprocess` bound to one `ModelConfig`."""

    def __init__(self, config: ModelConfig):
        self.config = config

    def process(self, raw, prep: PreprocessResult) -> List[Detection]:
        return postprocess(raw, prep, self.config)
