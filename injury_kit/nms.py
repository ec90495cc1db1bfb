from __future__ import annotations

from typing import Optional

import numpy as np

from .types import BoundingBox, BoundingBoxCorners


def centre_to_corners(box: BoundingBox) -> BoundingBoxCorners:
    return box.corners


def calculate_iou(box_a: BoundingBox, box_b: BoundingBox) -> float:
    """
    Intersection over union of two center-form boxes, 0.0 when the union is empty.
    """

    a = box_a.corners
    b = box_b.corners

    inter_w = max(0.0, min(a.x2, b.x2) - max(a.x1, b.x1))
    inter_h = max(0.0, min(a.y2, b.y2) - max(a.y1, b.y1))
    inter = inter_w * inter_h

    union = box_a.area + box_b.area - inter
    if union <= 0:
        return 0.0
    return inter / union


def pairwise_iou(box: np.ndarray, others: np.ndarray) -> np.ndarray:
    """IoU of one xyxy box (4,) against many (N, 4); 0 where the union is empty."""

    xx1 = np.maximum(box[0], others[:, 0])
    yy1 = np.maximum(box[1], others[:, 1])
    xx2 = np.minimum(box[2], others[:, 2])
    yy2 = np.minimum(box[3], others[:, 3])

    inter = np.maximum(0.0, xx2 - xx1) * np.maximum(0.0, yy2 - yy1)
    area = max(0.0, box[2] - box[0]) * max(0.0, box[3] - box[1])
    areas = np.maximum(0.0, others[:, 2] - others[:, 0]) * np.maximum(0.0, others[:, 3] - others[:, 1])
    union = area + areas - inter

    iou = np.zeros_like(inter, dtype=np.float64)
    np.divide(inter, union, out=iou, where=union > 0)
    return iou


def nms(boxes: np.ndarray, scores: np.ndarray, iou_threshold: float, max_detections: Optional[int] = None) -> np.ndarray:
    """
    Greedy NumPy NMS. Expects boxes (N, 4) in xyxy and scores (N,).

    Candidates are visited by descending score; equal scores keep their input
    order. A candidate is suppressed when its IoU with an already kept box is
    strictly greater than `iou_threshold`. Returns kept indices, best first.
    """

    if boxes.size == 0:
        return np.empty((0,), dtype=np.int64)

    boxes = np.asarray(boxes, dtype=np.float64)
    order = np.argsort(-np.asarray(scores, dtype=np.float64), kind="stable")
    keep = []

    while order.size > 0:
        if max_detections is not None and len(keep) >= max_detections:
            break
        i = order[0]
        keep.append(i)

        iou = pairwise_iou(boxes[i], boxes[order[1:]])
        order = order[1:][iou <= iou_threshold]

    return np.array(keep, dtype=np.int64)
