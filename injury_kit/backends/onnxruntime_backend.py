from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np

from ..config import ModelConfig
from ..errors import InferenceFailure, ModelUnavailable
from ..inference import InferenceEngine
from ..metadata import parse_names_metadata

LOG = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class OnnxRuntimeBackendConfig:
    """
    Configuration for ONNX Runtime inference.

    - providers: ORT execution providers, passed through as given
      (e.g. ["CoreMLExecutionProvider", "CPUExecutionProvider"]); None lets ORT decide
    - input_name/output_name: override auto-selected I/O names if needed
    - intra_op_num_threads: 0 keeps the ORT default
    """

    providers: Optional[Sequence[str]] = None
    input_name: Optional[str] = None
    output_name: Optional[str] = None
    intra_op_num_threads: int = 0


class OnnxRuntimeEngine(InferenceEngine):
    """
    Detector served by ONNX Runtime.

    Expects a (1, 3, H, W) float32 blob and returns the primary output
    flattened. `onnxruntime` is imported on first load, so the rest of the
    package works without it installed.
    """

    name = "onnxruntime"

    def __init__(
        self,
        config: ModelConfig = ModelConfig(),
        backend_cfg: OnnxRuntimeBackendConfig = OnnxRuntimeBackendConfig(),
    ):
        super().__init__(config)
        self.backend_cfg = backend_cfg
        self.session = None
        self.model_path: Optional[Path] = None
        self.input_name: Optional[str] = None
        self.output_name: Optional[str] = None
        self.model_class_names: Optional[Tuple[str, ...]] = None

    @property
    def is_loaded(self) -> bool:
        return self.session is not None

    @property
    def providers_in_use(self) -> Sequence[str]:
        if self.session is None:
            return ()
        return tuple(self.session.get_providers())

    def _load(self, model_asset: Any) -> None:
        try:
            import onnxruntime as ort  # type: ignore
        except ImportError as e:
            raise ModelUnavailable(
                "onnxruntime is not available on this platform. Install it with `pip install onnxruntime`."
            ) from e

        if model_asset is None:
            raise ModelUnavailable("No model path given to the onnxruntime engine")
        model_path = Path(model_asset)
        if not model_path.is_file():
            raise ModelUnavailable(f"Model file not found: {model_path}")

        sess_opts = ort.SessionOptions()
        if self.backend_cfg.intra_op_num_threads > 0:
            sess_opts.intra_op_num_threads = self.backend_cfg.intra_op_num_threads
        providers = list(self.backend_cfg.providers) if self.backend_cfg.providers is not None else None

        try:
            session = ort.InferenceSession(str(model_path), sess_options=sess_opts, providers=providers)
        except Exception as e:
            raise ModelUnavailable(f"Could not create an ONNX Runtime session for {model_path}: {e}") from e

        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if not inputs or not outputs:
            raise ModelUnavailable(f"Model {model_path} has no inputs or no outputs")

        self.session = session
        self.model_path = model_path
        self.input_name = self.backend_cfg.input_name or inputs[0].name
        self.output_name = self.backend_cfg.output_name or outputs[0].name
        if len(outputs) > 1 and self.backend_cfg.output_name is None:
            LOG.warning("Model has %d outputs, using the first one (%s)", len(outputs), self.output_name)

        self._check_model_layout(inputs[0].shape)
        LOG.info(
            "ONNX Runtime session for %s: input=%s output=%s providers=%s",
            model_path.name,
            self.input_name,
            self.output_name,
            list(self.providers_in_use),
        )

    def _check_model_layout(self, input_shape) -> None:
        # Dynamic dims come back as strings or None; only compare fixed ones.
        expected = self.config.input_shape
        if input_shape is not None and len(input_shape) == len(expected):
            for got, want in zip(input_shape, expected):
                if isinstance(got, int) and got != want:
                    LOG.warning("Model input shape %s does not match config %s", list(input_shape), list(expected))
                    break

        meta = self.session.get_modelmeta()
        custom = getattr(meta, "custom_metadata_map", None) or {}
        self.model_class_names = parse_names_metadata(custom.get("names"))
        if self.model_class_names is not None and len(self.model_class_names) != self.config.num_classes:
            LOG.warning(
                "Model metadata lists %d classes but config has %d; output layout will not match",
                len(self.model_class_names),
                self.config.num_classes,
            )

    def _forward(self, blob: np.ndarray) -> np.ndarray:
        outputs = self.session.run([self.output_name], {self.input_name: blob})
        if not outputs:
            raise InferenceFailure(f"Output tensor {self.output_name!r} missing from results")
        return outputs[0]

    def close(self) -> None:
        self.session = None
