from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence, Union

from .backends.mock_backend import MockEngine
from .backends.onnxruntime_backend import OnnxRuntimeBackendConfig, OnnxRuntimeEngine
from .config import ModelConfig, PipelineConfig
from .pipeline import DetectionPipeline

PathLike = Union[str, Path]

BACKENDS = ("onnxruntime", "mock")


def resolve_model_path(path: PathLike, root: Optional[PathLike] = None) -> Path:
    """
    Absolute paths are returned as-is; relative ones are resolved against
    `root`, or the current directory when no root is given.
    """

    p = Path(path).expanduser()
    if p.is_absolute():
        return p
    base = Path(root).expanduser().resolve() if root is not None else Path.cwd()
    return (base / p).resolve()


def infer_backend(model_path: Optional[PathLike]) -> str:
    if model_path is None:
        raise ValueError("A model path is required unless backend='mock'.")
    suffix = Path(model_path).suffix.lower()
    if suffix == ".onnx":
        return "onnxruntime"
    raise ValueError(f"Could not infer backend from extension '{suffix}'. Pass backend=... explicitly.")


def load_pipeline(
    model_path: Optional[PathLike] = None,
    *,
    backend: Optional[str] = None,
    root: Optional[PathLike] = None,
    model_config: ModelConfig = ModelConfig(),
    pipeline_config: PipelineConfig = PipelineConfig(),
    onnx_providers: Optional[Sequence[str]] = None,
    onnx_input_name: Optional[str] = None,
    onnx_output_name: Optional[str] = None,
    preload: bool = False,
) -> DetectionPipeline:
    """
    Build a `DetectionPipeline` for a model on disk.

        pipe = load_pipeline("models/injuries.onnx")
        result = pipe.run(["photo1.jpg", "photo2.jpg"])

    The model is loaded on the first `run` (or right away with `preload=True`).

    Args:
        model_path: path to the detector; relative paths resolve against `root` (or cwd)
        backend: "onnxruntime" (default for .onnx) or "mock" for the canned fallback detector
        onnx_providers: execution providers handed to ONNX Runtime unchanged
    """

    chosen = (backend or infer_backend(model_path)).lower()

    if chosen == "mock":
        pipeline = DetectionPipeline(MockEngine(model_config), None, pipeline_config=pipeline_config)
    elif chosen == "onnxruntime":
        if model_path is None:
            raise ValueError("backend='onnxruntime' needs a model path")
        engine = OnnxRuntimeEngine(
            model_config,
            OnnxRuntimeBackendConfig(
                providers=onnx_providers,
                input_name=onnx_input_name,
                output_name=onnx_output_name,
            ),
        )
        pipeline = DetectionPipeline(engine, resolve_model_path(model_path, root), pipeline_config=pipeline_config)
    else:
        raise ValueError(f"Unsupported backend: {backend!r} (choose from {', '.join(BACKENDS)})")

    if preload:
        pipeline.ensure_model()
    return pipeline
