from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np

ImageSource = Union[str, Path, bytes, bytearray, memoryview, np.ndarray]


@dataclass(frozen=True)
class BoundingBoxCorners:
    x1: float
    y1: float
    x2: float
    y2: float


@dataclass(frozen=True)
class BoundingBox:
    """
    Box in center form (the detector's native layout).

    Corners are always computed from the center form, never stored.
    """

    x: float
    y: float
    width: float
    height: float

    @property
    def corners(self) -> BoundingBoxCorners:
        half_w = self.width / 2
        half_h = self.height / 2
        return BoundingBoxCorners(
            x1=self.x - half_w,
            y1=self.y - half_h,
            x2=self.x + half_w,
            y2=self.y + half_h,
        )

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    @classmethod
    def from_corners(cls, x1: float, y1: float, x2: float, y2: float) -> "BoundingBox":
        return cls(x=(x1 + x2) / 2, y=(y1 + y2) / 2, width=x2 - x1, height=y2 - y1)


@dataclass(frozen=True)
class Detection:
    box: BoundingBox
    class_id: int
    class_name: str
    confidence: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")
        if self.class_id < 0:
            raise ValueError(f"class_id must be >= 0, got {self.class_id}")

    @property
    def box_corners(self) -> BoundingBoxCorners:
        return self.box.corners

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        c = self.box.corners
        return c.x1, c.y1, c.x2, c.y2


@dataclass(frozen=True)
class PreprocessResult:
    """
    Letterboxed tensor plus what is needed to map boxes back to the source.

    `tensor` is flat float32, planar RGB, length `3 * input_height * input_width`.
    """

    tensor: np.ndarray
    original_width: int
    original_height: int
    scale: float
    pad_x: float
    pad_y: float
    input_width: int = 640
    input_height: int = 640

    def __post_init__(self) -> None:
        if self.scale <= 0:
            raise ValueError("scale must be > 0")
        if not (0 <= self.pad_x < self.input_width and 0 <= self.pad_y < self.input_height):
            raise ValueError(f"padding out of range: ({self.pad_x}, {self.pad_y})")


@dataclass(frozen=True)
class StageTiming:
    preprocess_ms: float = 0.0
    inference_ms: float = 0.0
    postprocess_ms: float = 0.0
    visualization_ms: float = 0.0
    total_ms: float = 0.0


@dataclass(frozen=True)
class ImageDetectionResult:
    """
    Outcome for one input image, success or failure.

    Use `succeeded` / `failed` rather than building one by hand.
    """

    index: int
    source: str
    success: bool
    detections: Tuple[Detection, ...] = ()
    annotated_image: Optional[bytes] = None
    image_width: int = 0
    image_height: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    timing: StageTiming = field(default_factory=StageTiming)

    @classmethod
    def succeeded(
        cls,
        index: int,
        source: str,
        detections,
        *,
        annotated_image: Optional[bytes] = None,
        image_width: int = 0,
        image_height: int = 0,
        timing: StageTiming = StageTiming(),
    ) -> "ImageDetectionResult":
        return cls(
            index=index,
            source=source,
            success=True,
            detections=tuple(detections),
            annotated_image=annotated_image,
            image_width=image_width,
            image_height=image_height,
            timing=timing,
        )

    @classmethod
    def failed(
        cls,
        index: int,
        source: str,
        error: BaseException,
        *,
        timing: StageTiming = StageTiming(),
    ) -> "ImageDetectionResult":
        return cls(
            index=index,
            source=source,
            success=False,
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            timing=timing,
        )


@dataclass(frozen=True)
class DetectionSummary:
    by_class: Dict[str, int] = field(default_factory=dict)
    total_count: int = 0
    highest_confidence: Optional[Detection] = None
    highest_confidence_image_index: Optional[int] = None
    average_confidence: float = 0.0


@dataclass(frozen=True)
class PipelineResult:
    results: Tuple[ImageDetectionResult, ...]
    total_detections: int
    successful_images: int
    failed_images: int
    summary: DetectionSummary
    run_id: str = ""
    model_load_ms: float = 0.0
    total_processing_ms: float = 0.0
    # Inputs dropped because the run exceeded `max_images`.
    truncated_images: int = 0


@dataclass(frozen=True)
class PipelineProgress:
    stage: str
    index: int
    total: int
    percent_complete: int
    message: str = ""
