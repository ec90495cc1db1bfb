"""
Error taxonomy for the detection pipeline.

Per-image errors (everything except `ModelUnavailable`) are caught by the
pipeline and recorded on the image's result. `ModelUnavailable` aborts a run.
"""

from __future__ import annotations


class DetectionError(Exception):
    """Base class for all injury_kit errors."""


class InvalidImage(DetectionError, ValueError):
    """The image source could not be decoded or has zero area."""


class SizeMismatch(DetectionError, ValueError):
    """A tensor or output buffer does not have the length the config implies."""

    def __init__(self, message: str, *, expected: int, actual: int):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ModelUnavailable(DetectionError, RuntimeError):
    """The inference runtime or the model could not be initialized."""


class InferenceFailure(DetectionError, RuntimeError):
    """The runtime rejected a forward pass."""


class StageTimeout(DetectionError, TimeoutError):
    """
    An image exceeded its time budget.

    The underlying call is abandoned, not cancelled: it may still be running.
    """

    def __init__(self, message: str, *, timeout_s: float):
        super().__init__(message)
        self.timeout_s = timeout_s


class AnnotationFailure(DetectionError, RuntimeError):
    """The annotated image could not be encoded."""
