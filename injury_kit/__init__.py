"""
On-device injury detection for photographs.

Letterbox preprocessing, a pluggable inference engine (ONNX Runtime or a
canned fallback), YOLO-style output decoding with NMS, box annotation, and a
multi-image pipeline that isolates per-image failures. Built on NumPy and
OpenCV; onnxruntime is only imported when an ONNX model is loaded.
"""

from .config import ModelConfig, PipelineConfig, load_model_config, load_pipeline_config
from .context import format_detection_context, has_analyzable_images
from .errors import (
    AnnotationFailure,
    DetectionError,
    InferenceFailure,
    InvalidImage,
    ModelUnavailable,
    SizeMismatch,
    StageTimeout,
)
from .inference import InferenceEngine
from .letterbox import compute_letterbox, letterbox
from .metadata import load_class_names
from .nms import calculate_iou, centre_to_corners, nms
from .pipeline import DetectionPipeline, aggregate_results, run_pipeline
from .postprocess import OutputView, Postprocessor, apply_nms, parse_output, postprocess, scale_detections
from .preprocess import load_image, preprocess_image
from .runtime import load_pipeline
from .types import (
    BoundingBox,
    BoundingBoxCorners,
    Detection,
    DetectionSummary,
    ImageDetectionResult,
    PipelineProgress,
    PipelineResult,
    PreprocessResult,
    StageTiming,
)
from .visualize import annotate, draw_detections

__all__ = [
    "ModelConfig",
    "PipelineConfig",
    "load_model_config",
    "load_pipeline_config",
    "format_detection_context",
    "has_analyzable_images",
    "AnnotationFailure",
    "DetectionError",
    "InferenceFailure",
    "InvalidImage",
    "ModelUnavailable",
    "SizeMismatch",
    "StageTimeout",
    "InferenceEngine",
    "compute_letterbox",
    "letterbox",
    "load_class_names",
    "calculate_iou",
    "centre_to_corners",
    "nms",
    "DetectionPipeline",
    "aggregate_results",
    "run_pipeline",
    "OutputView",
    "Postprocessor",
    "apply_nms",
    "parse_output",
    "postprocess",
    "scale_detections",
    "load_image",
    "preprocess_image",
    "load_pipeline",
    "BoundingBox",
    "BoundingBoxCorners",
    "Detection",
    "DetectionSummary",
    "ImageDetectionResult",
    "PipelineProgress",
    "PipelineResult",
    "PreprocessResult",
    "StageTiming",
    "annotate",
    "draw_detections",
]
