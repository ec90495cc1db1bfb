"""
Multi-image detection pipeline.

    images -> ensure model loaded (once, fatal on failure)
           -> for each image, one at a time:
                  load -> preprocess -> infer -> postprocess -> annotate
              failures become failed ImageDetectionResults
           -> aggregate into a PipelineResult

The inference engine is injected; the pipeline holds no module-level state.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from .config import ModelConfig, PipelineConfig
from .errors import DetectionError, ModelUnavailable, StageTimeout
from .inference import InferenceEngine
from .postprocess import postprocess
from .preprocess import describe_source, load_image, preprocess_image
from .types import (
    Detection,
    DetectionSummary,
    ImageDetectionResult,
    ImageSource,
    PipelineProgress,
    PipelineResult,
    StageTiming,
)
from .visualize import annotate

LOG = logging.getLogger(__name__)

ProgressCallback = Callable[[PipelineProgress], None]

STAGE_LOADING_MODEL = "loading_model"
STAGE_IMAGE_COMPLETE = "image_complete"
STAGE_COMPLETE = "complete"

T = TypeVar("T")


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def _new_run_id() -> str:
    return f"run_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def run_with_timeout(fn: Callable[[], T], timeout_s: Optional[float], label: str = "call") -> T:
    """
    Run `fn` on a daemon thread and wait at most `timeout_s` seconds.

    On timeout `StageTimeout` is raised and the call is abandoned: Python
    cannot interrupt it, so it keeps running (and holding its memory) in the
    background until it returns on its own. Its result is discarded. The
    thread is a daemon, so a hung call never keeps the process alive.
    """

    if timeout_s is None:
        return fn()

    future: Future = Future()

    def _target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    threading.Thread(target=_target, name=f"injury-kit {label}", daemon=True).start()
    try:
        return future.result(timeout=timeout_s)
    except FutureTimeoutError:
        if future.done():
            # fn itself raised a TimeoutError.
            raise
        raise StageTimeout(
            f"{label} exceeded {timeout_s:g}s and was abandoned (it may still be running)",
            timeout_s=timeout_s,
        ) from None


def aggregate_results(
    results: Sequence[ImageDetectionResult],
    *,
    run_id: str = "",
    model_load_ms: float = 0.0,
    total_processing_ms: float = 0.0,
    truncated_images: int = 0,
) -> PipelineResult:
    """
    Combine per-image results into one `PipelineResult`.

    Only successful images contribute detections. `by_class` keeps first-seen
    order; the highest-confidence detection is the first one reaching the max.
    """

    by_class: Dict[str, int] = {}
    total = 0
    confidence_sum = 0.0
    highest: Optional[Detection] = None
    highest_index: Optional[int] = None

    for result in results:
        if not result.success:
            continue
        for det in result.detections:
            by_class[det.class_name] = by_class.get(det.class_name, 0) + 1
            total += 1
            confidence_sum += det.confidence
            if highest is None or det.confidence > highest.confidence:
                highest = det
                highest_index = result.index

    successful = sum(1 for r in results if r.success)

    return PipelineResult(
        results=tuple(results),
        total_detections=total,
        successful_images=successful,
        failed_images=len(results) - successful,
        summary=DetectionSummary(
            by_class=by_class,
            total_count=total,
            highest_confidence=highest,
            highest_confidence_image_index=highest_index,
            average_confidence=confidence_sum / total if total else 0.0,
        ),
        run_id=run_id,
        model_load_ms=model_load_ms,
        total_processing_ms=total_processing_ms,
        truncated_images=truncated_images,
    )


class DetectionPipeline:
    """
    Runs the detector over a batch of images, strictly one image at a time.

    Per-image errors never escape `run`; they are recorded on that image's
    result. Only a model that cannot be loaded aborts the run, with
    `ModelUnavailable`.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        model_asset: Any = None,
        *,
        pipeline_config: PipelineConfig = PipelineConfig(),
    ):
        self.engine = engine
        self.model_asset = model_asset
        self.pipeline_config = pipeline_config

    @property
    def model_config(self) -> ModelConfig:
        return self.engine.config

    def ensure_model(self) -> float:
        """Load the model once; returns load time in ms (0.0 if already loaded)."""

        try:
            return self.engine.ensure_loaded(self.model_asset)
        except ModelUnavailable:
            raise
        except Exception as exc:
            raise ModelUnavailable(f"Detection model could not be loaded: {exc}") from exc

    def close(self) -> None:
        self.engine.close()

    def run(
        self,
        images: Iterable[ImageSource],
        *,
        confidence_threshold: Optional[float] = None,
        iou_threshold: Optional[float] = None,
        skip_visualization: Optional[bool] = None,
        progress: Optional[ProgressCallback] = None,
        run_id: Optional[str] = None,
    ) -> PipelineResult:
        images = list(images)
        if not images:
            raise ValueError("No images provided to pipeline")

        run_id = run_id or _new_run_id()
        cfg = self.pipeline_config
        model_config = self.model_config.with_thresholds(confidence_threshold, iou_threshold)
        if skip_visualization is None:
            skip_visualization = cfg.skip_visualization

        truncated = 0
        if len(images) > cfg.max_images:
            truncated = len(images) - cfg.max_images
            LOG.warning("[%s] %d images given, limiting to the first %d", run_id, len(images), cfg.max_images)
            images = images[: cfg.max_images]

        total = len(images)
        started = time.perf_counter()
        LOG.info(
            "[%s] Detecting on %d image(s) (conf=%.2f, iou=%.2f, engine=%s)",
            run_id,
            total,
            model_config.confidence_threshold,
            model_config.iou_threshold,
            self.engine.name,
        )

        self._emit(progress, STAGE_LOADING_MODEL, 0, total, "Loading detection model")
        try:
            model_load_ms = self.ensure_model()
        except ModelUnavailable as exc:
            LOG.error("[%s] Pipeline aborted, model unavailable: %s", run_id, exc)
            raise

        results: List[ImageDetectionResult] = []
        for index, source in enumerate(images):
            result = self._process_one(index, total, source, model_config, skip_visualization, run_id)
            results.append(result)
            self._emit(
                progress,
                STAGE_IMAGE_COMPLETE,
                index,
                total,
                f"Processed image {index + 1} of {total}",
            )
            if not result.success and not cfg.continue_on_error:
                LOG.warning("[%s] Stopping after failed image %d (continue_on_error=False)", run_id, index + 1)
                break

        pipeline_result = aggregate_results(
            results,
            run_id=run_id,
            model_load_ms=model_load_ms,
            total_processing_ms=_elapsed_ms(started),
            truncated_images=truncated,
        )

        LOG.info(
            "[%s] Done in %.0f ms: %d/%d image(s) analyzed, %d detection(s) %s",
            run_id,
            pipeline_result.total_processing_ms,
            pipeline_result.successful_images,
            len(results),
            pipeline_result.total_detections,
            pipeline_result.summary.by_class,
        )
        self._emit(progress, STAGE_COMPLETE, total, total, "Detection complete")
        return pipeline_result

    def process_image(self, image: ImageSource, **kwargs) -> ImageDetectionResult:
        return self.run([image], **kwargs).results[0]

    def has_detections(self, image: ImageSource) -> bool:
        return self.run([image], skip_visualization=True).total_detections > 0

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _process_one(
        self,
        index: int,
        total: int,
        source: ImageSource,
        model_config: ModelConfig,
        skip_visualization: bool,
        run_id: str,
    ) -> ImageDetectionResult:
        label = f"image {index + 1}/{total}"
        name = describe_source(source)
        started = time.perf_counter()

        try:
            return run_with_timeout(
                lambda: self._detect(index, source, name, model_config, skip_visualization),
                self.pipeline_config.image_timeout_s,
                label,
            )
        except DetectionError as exc:
            LOG.warning("[%s] %s (%s) failed: %s: %s", run_id, label, name, type(exc).__name__, exc)
            error: BaseException = exc
        except Exception as exc:
            LOG.exception("[%s] %s (%s) failed unexpectedly", run_id, label, name)
            error = exc

        return ImageDetectionResult.failed(index, name, error, timing=StageTiming(total_ms=_elapsed_ms(started)))

    def _detect(
        self,
        index: int,
        source: ImageSource,
        name: str,
        model_config: ModelConfig,
        skip_visualization: bool,
    ) -> ImageDetectionResult:
        cfg = self.pipeline_config
        started = time.perf_counter()

        t = time.perf_counter()
        image = load_image(source)
        prep = preprocess_image(
            image,
            target_size=(model_config.input_width, model_config.input_height),
            pad_color=cfg.pad_color,
        )
        preprocess_ms = _elapsed_ms(t)

        t = time.perf_counter()
        raw = self.engine.run_inference(prep.tensor)
        inference_ms = _elapsed_ms(t)

        t = time.perf_counter()
        detections = postprocess(raw, prep, model_config)
        postprocess_ms = _elapsed_ms(t)

        annotated: Optional[bytes] = None
        visualization_ms = 0.0
        if not skip_visualization:
            t = time.perf_counter()
            annotated = annotate(
                image,
                detections,
                encoding=cfg.annotation_format,
                box_thickness=cfg.box_thickness,
            ).image_bytes
            visualization_ms = _elapsed_ms(t)

        timing = StageTiming(
            preprocess_ms=preprocess_ms,
            inference_ms=inference_ms,
            postprocess_ms=postprocess_ms,
            visualization_ms=visualization_ms,
            total_ms=_elapsed_ms(started),
        )
        LOG.debug(
            "%s: %d detection(s) [pre %.1f ms, infer %.1f ms, post %.1f ms, viz %.1f ms]",
            name,
            len(detections),
            preprocess_ms,
            inference_ms,
            postprocess_ms,
            visualization_ms,
        )

        return ImageDetectionResult.succeeded(
            index,
            name,
            detections,
            annotated_image=annotated,
            image_width=prep.original_width,
            image_height=prep.original_height,
            timing=timing,
        )

    @staticmethod
    def _emit(progress: Optional[ProgressCallback], stage: str, index: int, total: int, message: str) -> None:
        if progress is None:
            return
        if stage == STAGE_LOADING_MODEL:
            percent = 5
        elif stage == STAGE_COMPLETE:
            percent = 100
        else:
            percent = int(round(10 + ((index + 1) / max(total, 1)) * 85))
        try:
            progress(PipelineProgress(stage=stage, index=index, total=total, percent_complete=percent, message=message))
        except Exception:
            # Listener errors never abort the run.
            LOG.exception("Progress callback failed at stage %s (%d/%d); continuing", stage, index + 1, total)


def run_pipeline(
    images: Iterable[ImageSource],
    engine: InferenceEngine,
    model_asset: Any = None,
    *,
    pipeline_config: PipelineConfig = PipelineConfig(),
    progress: Optional[ProgressCallback] = None,
    confidence_threshold: Optional[float] = None,
    iou_threshold: Optional[float] = None,
) -> PipelineResult:
    """One-shot convenience around `DetectionPipeline(...).run(...)`."""

    pipeline = DetectionPipeline(engine, model_asset, pipeline_config=pipeline_config)
    return pipeline.run(
        images,
        confidence_threshold=confidence_threshold,
        iou_threshold=iou_threshold,
        progress=progress,
    )
