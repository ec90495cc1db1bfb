"""
Image loading and tensor preparation.

Pipeline per image: decode -> letterbox -> BGR to RGB -> [0, 1] float32 ->
HWC to CHW -> flatten to `1 * 3 * H * W`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple
from urllib.parse import urlparse
from urllib.request import url2pathname

import cv2
import numpy as np

from .errors import InvalidImage, SizeMismatch
from .letterbox import letterbox
from .types import ImageSource, PreprocessResult

LOG = logging.getLogger(__name__)


def describe_source(source: ImageSource) -> str:
    """Short, log-friendly name for an image source."""

    if isinstance(source, (str, Path)):
        return str(source)
    if isinstance(source, np.ndarray):
        return f"<ndarray {'x'.join(str(d) for d in source.shape)}>"
    if isinstance(source, (bytes, bytearray, memoryview)):
        return f"<{type(source).__name__} {len(source)} bytes>"
    return f"<{type(source).__name__}>"


def _as_bgr(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.ndim == 3 and image.shape[2] == 1:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if image.ndim == 3 and image.shape[2] == 3:
        return image
    raise InvalidImage(f"Expected image shape (H, W), (H, W, 3) or (H, W, 4), got {image.shape}")


def _path_from_source(source) -> Path:
    text = str(source)
    if text.startswith("file://"):
        return Path(url2pathname(urlparse(text).path))
    return Path(text)


def load_image(source: ImageSource) -> np.ndarray:
    """
    Decode `source` into a BGR uint8 array (OpenCV layout).

    Accepts a filesystem path, a `file://` URI, encoded image bytes, or an
    already decoded array (grayscale, BGR or BGRA). Encoded images are decoded
    upright: EXIF orientation is applied, so boxes line up with the photo as
    the user sees it. Raises `InvalidImage` when nothing decodable with a
    non-zero area comes out.
    """

    if isinstance(source, np.ndarray):
        image = source
    elif isinstance(source, (bytes, bytearray, memoryview)):
        buf = np.frombuffer(source, dtype=np.uint8)
        if buf.size == 0:
            raise InvalidImage("Image buffer is empty")
        image = cv2.imdecode(buf, cv2.IMREAD_COLOR)
        if image is None:
            raise InvalidImage("Could not decode image bytes")
    elif isinstance(source, (str, Path)):
        path = _path_from_source(source)
        if not path.is_file():
            raise InvalidImage(f"Image not found: {path}")
        image = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if image is None:
            raise InvalidImage(f"Could not decode image at path: {path}")
    else:
        raise InvalidImage(f"Unsupported image source type: {type(source).__name__}")

    if image.size == 0 or image.shape[0] == 0 or image.shape[1] == 0:
        raise InvalidImage(f"Image has zero area: {describe_source(source)}")
    if image.dtype != np.uint8:
        if image.dtype == np.uint16:
            image = (image // 257).astype(np.uint8)
        else:
            raise InvalidImage(f"Unsupported image dtype: {image.dtype}")

    return _as_bgr(image)


def normalize_pixels(pixels: np.ndarray) -> np.ndarray:
    """uint8 [0, 255] -> float32 [0, 1]."""

    return pixels.astype(np.float32) / 255.0


def hwc_to_chw(data: np.ndarray) -> np.ndarray:
    """(H, W, C) interleaved -> (C, H, W) planar."""

    if data.ndim != 3:
        raise ValueError(f"Expected (H, W, C) array, got shape {data.shape}")
    return np.ascontiguousarray(np.transpose(data, (2, 0, 1)))


def preprocess_image(
    image: ImageSource,
    target_size: Tuple[int, int] = (640, 640),
    pad_color: Tuple[int, int, int] = (114, 114, 114),
) -> PreprocessResult:
    """
    Letterbox `image` into `target_size` (width, height) and build the flat
    planar RGB float32 tensor the detector expects.
    """

    bgr = load_image(image)
    orig_h, orig_w = bgr.shape[:2]
    target_w, target_h = target_size

    padded, params = letterbox(bgr, new_shape=(target_w, target_h), color=pad_color)

    rgb = padded[:, :, ::-1]
    tensor = hwc_to_chw(normalize_pixels(rgb)).ravel()

    expected = 3 * target_w * target_h
    if tensor.size != expected:
        raise SizeMismatch(
            f"Letterboxed tensor has {tensor.size} values, expected {expected}",
            expected=expected,
            actual=int(tensor.size),
        )

    LOG.debug(
        "Preprocessed %dx%d -> %dx%d (scale=%.4f, pad=(%.1f, %.1f))",
        orig_w,
        orig_h,
        target_w,
        target_h,
        params.scale,
        params.pad_x,
        params.pad_y,
    )

    return PreprocessResult(
        tensor=tensor,
        original_width=orig_w,
        original_height=orig_h,
        scale=params.scale,
        pad_x=params.pad_x,
        pad_y=params.pad_y,
        input_width=target_w,
        input_height=target_h,
    )
