from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple

import cv2
import numpy as np

from .errors import AnnotationFailure
from .types import Detection

# BGR, as OpenCV draws.
HIGH_CONFIDENCE_COLOR: Tuple[int, int, int] = (0, 255, 0)
MEDIUM_CONFIDENCE_COLOR: Tuple[int, int, int] = (0, 165, 255)
LOW_CONFIDENCE_COLOR: Tuple[int, int, int] = (0, 0, 255)

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.5


@dataclass(frozen=True)
class AnnotationResult:
    image_bytes: bytes
    width: int
    height: int
    detections_drawn: int


def color_for_confidence(confidence: float) -> Tuple[int, int, int]:
    if confidence >= HIGH_CONFIDENCE:
        return HIGH_CONFIDENCE_COLOR
    if confidence >= MEDIUM_CONFIDENCE:
        return MEDIUM_CONFIDENCE_COLOR
    return LOW_CONFIDENCE_COLOR


def format_label(detection: Detection) -> str:
    """Overlay text for callers that render labels themselves, e.g. "cut 78%"."""

    return f"{detection.class_name} {detection.confidence * 100:.0f}%"


def draw_detections(image_bgr: np.ndarray, detections: Iterable[Detection], *, box_thickness: int = 3) -> np.ndarray:
    """
    Draw one rectangle per detection on a copy of `image_bgr` and return it.

    Boxes are colored by confidence tier. No text is drawn; labels are left to
    the caller, who has class and confidence on each `Detection`.
    """

    if image_bgr is None or not hasattr(image_bgr, "shape"):
        raise TypeError("image_bgr must be a NumPy array (BGR).")
    if image_bgr.ndim != 3 or image_bgr.shape[2] != 3:
        raise ValueError(f"Expected image shape (H, W, 3), got {getattr(image_bgr, 'shape', None)}")

    out = image_bgr.copy()
    h, w = out.shape[:2]

    for det in detections:
        x1, y1, x2, y2 = det.as_xyxy()
        x1i = int(np.clip(round(x1), 0, w - 1))
        y1i = int(np.clip(round(y1), 0, h - 1))
        x2i = int(np.clip(round(x2), 0, w - 1))
        y2i = int(np.clip(round(y2), 0, h - 1))

        cv2.rectangle(out, (x1i, y1i), (x2i, y2i), color_for_confidence(det.confidence), thickness=box_thickness)

    return out


def annotate(
    original_image: np.ndarray,
    detections: Iterable[Detection],
    *,
    encoding: str = ".jpg",
    box_thickness: int = 3,
) -> AnnotationResult:
    """Draw `detections` on a copy of `original_image` and encode it (JPEG by default)."""

    detections = list(detections)
    vis = draw_detections(original_image, detections, box_thickness=box_thickness)

    try:
        ok, buf = cv2.imencode(encoding, vis)
    except cv2.error as e:
        raise AnnotationFailure(f"Could not encode annotated image as {encoding}: {e}") from e
    if not ok:
        raise AnnotationFailure(f"Could not encode annotated image as {encoding}")

    h, w = vis.shape[:2]
    return AnnotationResult(image_bytes=buf.tobytes(), width=w, height=h, detections_drawn=len(detections))
