from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np

from .errors import InvalidImage


@dataclass(frozen=True)
class LetterboxParams:
    scale: float
    new_width: int
    new_height: int
    # Offset of the resized image inside the target; only the shorter axis is non-zero.
    pad_x: float
    pad_y: float


def compute_letterbox(src_width: int, src_height: int, target_width: int = 640, target_height: int = 640) -> LetterboxParams:
    """
    Scale that fits (src_width, src_height) inside the target while keeping
    the aspect ratio, and the padding that centers the result.
    """

    if src_width <= 0 or src_height <= 0:
        raise InvalidImage(f"Image has zero area ({src_width}x{src_height})")

    scale = min(target_width / src_width, target_height / src_height)
    new_width = min(target_width, max(1, int(round(src_width * scale))))
    new_height = min(target_height, max(1, int(round(src_height * scale))))

    return LetterboxParams(
        scale=scale,
        new_width=new_width,
        new_height=new_height,
        pad_x=(target_width - new_width) / 2,
        pad_y=(target_height - new_height) / 2,
    )


def letterbox(
    image: np.ndarray,
    new_shape: Tuple[int, int] = (640, 640),
    color: Tuple[int, int, int] = (114, 114, 114),
) -> Tuple[np.ndarray, LetterboxParams]:
    """
    Resize `image` (H, W, 3) to fit `new_shape` (width, height) and pad the rest.

    Returns:
        padded: image of exactly `new_shape`
        params: scale and (left/top) padding, for mapping boxes back
    """

    h, w = image.shape[:2]
    target_w, target_h = new_shape
    params = compute_letterbox(w, h, target_w, target_h)

    if (w, h) != (params.new_width, params.new_height):
        image = cv2.resize(image, (params.new_width, params.new_height), interpolation=cv2.INTER_LINEAR)

    # Odd leftovers go to the bottom/right side.
    top, bottom = int(round(params.pad_y - 0.1)), int(round(params.pad_y + 0.1))
    left, right = int(round(params.pad_x - 0.1)), int(round(params.pad_x + 0.1))
    padded = cv2.copyMakeBorder(image, top, bottom, left, right, cv2.BORDER_CONSTANT, value=color)

    return padded, params
