from __future__ import annotations

import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple, Union

DEFAULT_CLASS_NAMES: Tuple[str, ...] = (
    "1st degree burn",
    "2nd degree burn",
    "3rd degree burn",
    "Rashes",
    "abrasion",
    "bruise",
    "cut",
    "frostbite",
)

# Box channels (cx, cy, w, h) that precede the class probabilities in the output.
BOX_FEATURES = 4


@dataclass(frozen=True)
class ModelConfig:
    """
    Fixed geometry of the detector.

    The output layout of the loaded model must match: `4 + num_classes` feature
    rows by `num_predictions` anchors. Swapping the model means updating this
    config in lockstep.
    """

    input_width: int = 640
    input_height: int = 640
    class_names: Tuple[str, ...] = DEFAULT_CLASS_NAMES
    confidence_threshold: float = 0.5
    iou_threshold: float = 0.45
    # 80*80 + 40*40 + 20*20 anchors for a 640x640 input.
    num_predictions: int = 8400
    max_detections: int = 300

    def __post_init__(self) -> None:
        object.__setattr__(self, "class_names", tuple(str(n) for n in self.class_names))
        if self.input_width <= 0 or self.input_height <= 0:
            raise ValueError("input_width and input_height must be > 0")
        if not self.class_names:
            raise ValueError("class_names must not be empty")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be in [0, 1]")
        if not 0.0 <= self.iou_threshold <= 1.0:
            raise ValueError("iou_threshold must be in [0, 1]")
        if self.num_predictions <= 0:
            raise ValueError("num_predictions must be > 0")
        if self.max_detections <= 0:
            raise ValueError("max_detections must be > 0")

    @property
    def num_classes(self) -> int:
        return len(self.class_names)

    @property
    def num_features(self) -> int:
        return BOX_FEATURES + self.num_classes

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        return (1, 3, self.input_height, self.input_width)

    @property
    def input_tensor_length(self) -> int:
        return 3 * self.input_height * self.input_width

    @property
    def output_shape(self) -> Tuple[int, int, int]:
        return (1, self.num_features, self.num_predictions)

    @property
    def expected_output_length(self) -> int:
        return self.num_features * self.num_predictions

    def class_name(self, class_id: int) -> str:
        if 0 <= class_id < self.num_classes:
            return self.class_names[class_id]
        return f"class_{class_id}"

    def with_thresholds(
        self,
        confidence_threshold: Optional[float] = None,
        iou_threshold: Optional[float] = None,
    ) -> "ModelConfig":
        return replace(
            self,
            confidence_threshold=self.confidence_threshold if confidence_threshold is None else confidence_threshold,
            iou_threshold=self.iou_threshold if iou_threshold is None else iou_threshold,
        )


@dataclass(frozen=True)
class PipelineConfig:
    # None disables the per-image budget.
    image_timeout_s: Optional[float] = 30.0
    max_images: int = 10
    continue_on_error: bool = True
    skip_visualization: bool = False
    pad_color: Tuple[int, int, int] = (114, 114, 114)
    annotation_format: str = ".jpg"
    box_thickness: int = 3

    def __post_init__(self) -> None:
        if self.image_timeout_s is not None and self.image_timeout_s <= 0:
            raise ValueError("image_timeout_s must be > 0 (or None)")
        if self.max_images < 1:
            raise ValueError("max_images must be >= 1")
        if len(self.pad_color) != 3:
            raise ValueError("pad_color must have 3 channels")
        if not self.annotation_format.startswith("."):
            raise ValueError("annotation_format must be an extension such as '.jpg'")
        if self.box_thickness < 1:
            raise ValueError("box_thickness must be >= 1")


def _require_number(payload: Dict[str, Any], key: str) -> float:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return int(value)


def _require_bool(payload: Dict[str, Any], key: str) -> bool:
    value = payload[key]
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean")
    return value


def _read_json_object(path: Union[str, Path], kind: str) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{kind} not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid {kind} JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"{kind} must be a JSON object")
    return payload


def _reject_unknown(payload: Dict[str, Any], allowed: Sequence[str], kind: str) -> None:
    unknown = sorted(set(payload.keys()) - set(allowed))
    if unknown:
        raise ValueError(f"Unknown {kind} keys: {unknown}")


def load_model_config(path: Union[str, Path]) -> ModelConfig:
    payload = _read_json_object(path, "model config")
    _reject_unknown(
        payload,
        (
            "input_width",
            "input_height",
            "class_names",
            "confidence_threshold",
            "iou_threshold",
            "num_predictions",
            "max_detections",
        ),
        "model config",
    )

    kwargs: Dict[str, Any] = {}
    for key in ("input_width", "input_height", "num_predictions", "max_detections"):
        if key in payload:
            kwargs[key] = _require_int(payload, key)
    for key in ("confidence_threshold", "iou_threshold"):
        if key in payload:
            kwargs[key] = _require_number(payload, key)
    if "class_names" in payload:
        names = payload["class_names"]
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise ValueError("class_names must be a list of strings")
        kwargs["class_names"] = tuple(names)

    return ModelConfig(**kwargs)


def load_pipeline_config(path: Union[str, Path]) -> PipelineConfig:
    payload = _read_json_object(path, "pipeline config")
    _reject_unknown(
        payload,
        (
            "image_timeout_s",
            "max_images",
            "continue_on_error",
            "skip_visualization",
            "pad_color",
            "annotation_format",
            "box_thickness",
        ),
        "pipeline config",
    )

    kwargs: Dict[str, Any] = {}
    if "image_timeout_s" in payload:
        kwargs["image_timeout_s"] = None if payload["image_timeout_s"] is None else _require_number(payload, "image_timeout_s")
    for key in ("max_images", "box_thickness"):
        if key in payload:
            kwargs[key] = _require_int(payload, key)
    for key in ("continue_on_error", "skip_visualization"):
        if key in payload:
            kwargs[key] = _require_bool(payload, key)
    if "pad_color" in payload:
        color = payload["pad_color"]
        if not isinstance(color, list) or len(color) != 3 or not all(isinstance(c, int) and 0 <= c <= 255 for c in color):
            raise ValueError("pad_color must be a list of three integers in [0, 255]")
        kwargs["pad_color"] = tuple(color)
    if "annotation_format" in payload:
        fmt = payload["annotation_format"]
        if not isinstance(fmt, str):
            raise ValueError("annotation_format must be a string")
        kwargs["annotation_format"] = fmt

    return PipelineConfig(**kwargs)
