"""
Inference engines for injury_kit.

`OnnxRuntimeEngine` imports onnxruntime lazily, so pre/post-processing and the
mock engine work without any inference runtime installed.
"""

from __future__ import annotations

from .mock_backend import CannedDetection, MockEngine, build_output
from .onnxruntime_backend import OnnxRuntimeBackendConfig, OnnxRuntimeEngine

__all__ = [
    "CannedDetection",
    "MockEngine",
    "build_output",
    "OnnxRuntimeBackendConfig",
    "OnnxRuntimeEngine",
]
