import os
import subprocess
import sys
import tempfile
import textwrap
import threading
import time
import unittest
from pathlib import Path

import cv2
import numpy as np

from injury_kit.backends import CannedDetection, MockEngine
from injury_kit.config import ModelConfig, PipelineConfig
from injury_kit.context import NOTHING_DETECTED, UNABLE_TO_ANALYZE, format_detection_context
from injury_kit.errors import ModelUnavailable, StageTimeout
from injury_kit.pipeline import (
    STAGE_COMPLETE,
    STAGE_IMAGE_COMPLETE,
    STAGE_LOADING_MODEL,
    DetectionPipeline,
    aggregate_results,
    run_pipeline,
    run_with_timeout,
)
from injury_kit.runtime import infer_backend, load_pipeline, resolve_model_path
from injury_kit.types import BoundingBox, Detection, ImageDetectionResult


def _jpeg(width: int = 200, height: int = 100, value: int = 80) -> bytes:
    ok, buf = cv2.imencode(".jpg", np.full((height, width, 3), value, dtype=np.uint8))
    assert ok
    return buf.tobytes()


def _det(name: str, confidence: float, class_id: int = 0) -> Detection:
    return Detection(box=BoundingBox(50, 50, 20, 20), class_id=class_id, class_name=name, confidence=confidence)


class _SlowEngine(MockEngine):
    def __init__(self, delay_s: float):
        super().__init__()
        self.delay_s = delay_s

    def _forward(self, blob):
        time.sleep(self.delay_s)
        return super()._forward(blob)


class _UnloadableEngine(MockEngine):
    def _load(self, model_asset):
        raise RuntimeError("runtime not supported on this device")


class TestDetectionPipeline(unittest.TestCase):
    def test_one_bad_image_does_not_sink_the_run(self) -> None:
        engine = MockEngine()
        result = run_pipeline([_jpeg(), b"not an image", _jpeg(120, 160)], engine)

        self.assertEqual(len(result.results), 3)
        self.assertEqual(result.successful_images, 2)
        self.assertEqual(result.failed_images, 1)

        bad = result.results[1]
        self.assertFalse(bad.success)
        self.assertTrue(bad.error)
        self.assertEqual(bad.error_type, "InvalidImage")
        self.assertEqual(bad.detections, ())

        good = result.results[0]
        self.assertTrue(good.success)
        self.assertEqual((good.image_width, good.image_height), (200, 100))
        self.assertTrue(good.annotated_image.startswith(b"\xff\xd8"))
        self.assertEqual(result.total_detections, 2)
        self.assertEqual(result.summary.by_class, {"1st degree burn": 2})
        self.assertEqual([r.index for r in result.results], [0, 1, 2])
        self.assertTrue(result.run_id.startswith("run_"))

    def test_detections_stay_inside_the_image(self) -> None:
        result = run_pipeline([_jpeg(200, 100), _jpeg(90, 300)], MockEngine())
        for r in result.results:
            for det in r.detections:
                c = det.box_corners
                self.assertTrue(0 <= c.x1 <= c.x2 <= r.image_width)
                self.assertTrue(0 <= c.y1 <= c.y2 <= r.image_height)

    def test_nothing_detected_is_distinct_from_unable_to_analyze(self) -> None:
        empty = run_pipeline([_jpeg(), _jpeg()], MockEngine(detections=()))
        self.assertEqual(empty.successful_images, 2)
        self.assertEqual(empty.total_detections, 0)
        self.assertIsNone(empty.summary.highest_confidence)
        self.assertEqual(empty.summary.average_confidence, 0.0)
        text = format_detection_context(empty)
        self.assertIn(NOTHING_DETECTED, text)
        self.assertNotIn(UNABLE_TO_ANALYZE, text)

        broken = run_pipeline([b"x", b"y"], MockEngine())
        self.assertEqual(broken.successful_images, 0)
        text = format_detection_context(broken)
        self.assertIn(UNABLE_TO_ANALYZE, text)
        self.assertNotIn(NOTHING_DETECTED, text)

    def test_model_failure_aborts_the_run(self) -> None:
        pipeline = DetectionPipeline(_UnloadableEngine())
        with self.assertRaises(ModelUnavailable):
            pipeline.run([_jpeg()])

    def test_empty_input_rejected(self) -> None:
        with self.assertRaises(ValueError):
            DetectionPipeline(MockEngine()).run([])

    def test_model_loaded_once_across_runs(self) -> None:
        engine = MockEngine()
        pipeline = DetectionPipeline(engine)
        first = pipeline.run([_jpeg()])
        second = pipeline.run([_jpeg(), _jpeg()])
        self.assertEqual(engine.load_calls, 1)
        self.assertEqual(engine.calls, 3)
        self.assertGreaterEqual(first.model_load_ms, 0.0)
        self.assertEqual(second.model_load_ms, 0.0)

    def test_max_images_truncates_with_warning(self) -> None:
        pipeline = DetectionPipeline(MockEngine(), pipeline_config=PipelineConfig(max_images=2, image_timeout_s=None))
        with self.assertLogs("injury_kit.pipeline", level="WARNING"):
            result = pipeline.run([_jpeg()] * 5)
        self.assertEqual(len(result.results), 2)
        self.assertEqual(result.truncated_images, 3)

    def test_timeout_marks_image_failed(self) -> None:
        pipeline = DetectionPipeline(_SlowEngine(0.5), pipeline_config=PipelineConfig(image_timeout_s=0.05))
        result = pipeline.run([_jpeg()], skip_visualization=True)
        self.assertEqual(result.successful_images, 0)
        self.assertEqual(result.results[0].error_type, "StageTimeout")

    def test_stop_on_first_failure(self) -> None:
        pipeline = DetectionPipeline(MockEngine(), pipeline_config=PipelineConfig(continue_on_error=False))
        result = pipeline.run([_jpeg(), b"broken", _jpeg()])
        self.assertEqual(len(result.results), 2)
        self.assertEqual(result.successful_images, 1)
        self.assertFalse(result.results[1].success)

    def test_progress_events(self) -> None:
        events = []
        run_pipeline([_jpeg(), _jpeg(), _jpeg()], MockEngine(), progress=events.append)

        self.assertEqual(
            [e.stage for e in events],
            [STAGE_LOADING_MODEL, STAGE_IMAGE_COMPLETE, STAGE_IMAGE_COMPLETE, STAGE_IMAGE_COMPLETE, STAGE_COMPLETE],
        )
        percents = [e.percent_complete for e in events]
        self.assertEqual(percents[0], 5)
        self.assertEqual(percents[-2], 95)
        self.assertEqual(percents[-1], 100)
        self.assertEqual(percents, sorted(percents))
        self.assertEqual([e.index for e in events[1:4]], [0, 1, 2])

    def test_failing_progress_callback_keeps_results(self) -> None:
        calls = []

        def listener(event) -> None:
            calls.append(event.stage)
            raise RuntimeError("ui went away")

        with self.assertLogs("injury_kit.pipeline", level="ERROR") as logs:
            result = run_pipeline([_jpeg(), _jpeg()], MockEngine(), progress=listener)
        self.assertEqual(result.successful_images, 2)
        self.assertEqual(len(calls), 4)
        self.assertTrue(any("Progress callback failed" in line for line in logs.output))

    def test_threshold_and_visualization_overrides(self) -> None:
        pipeline = DetectionPipeline(MockEngine())
        self.assertEqual(pipeline.run([_jpeg()], confidence_threshold=0.9).total_detections, 0)

        result = pipeline.process_image(_jpeg(), skip_visualization=True)
        self.assertTrue(result.success)
        self.assertIsNone(result.annotated_image)
        self.assertEqual(result.timing.visualization_ms, 0.0)

    def test_has_detections(self) -> None:
        self.assertTrue(DetectionPipeline(MockEngine()).has_detections(_jpeg()))
        self.assertFalse(DetectionPipeline(MockEngine(detections=())).has_detections(_jpeg()))

    def test_file_paths_and_arrays(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "arm.jpg"
        path.write_bytes(_jpeg())

        result = run_pipeline([str(path), np.zeros((50, 50, 3), dtype=np.uint8)], MockEngine())
        self.assertEqual(result.successful_images, 2)
        self.assertEqual(result.results[0].source, str(path))
        self.assertEqual(result.results[1].source, "<ndarray 50x50x3>")

    def test_extreme_aspect_ratio_images_succeed(self) -> None:
        strips = [np.full((1, 1500, 3), 100, dtype=np.uint8), np.full((1500, 1, 3), 100, dtype=np.uint8)]
        result = run_pipeline(strips, MockEngine())
        self.assertEqual(result.successful_images, 2)
        for r in result.results:
            for det in r.detections:
                c = det.box_corners
                self.assertTrue(0 <= c.x1 <= c.x2 <= r.image_width)
                self.assertTrue(0 <= c.y1 <= c.y2 <= r.image_height)

    def test_unsupported_source_type_is_a_per_image_failure(self) -> None:
        result = run_pipeline([12345, _jpeg()], MockEngine())
        self.assertEqual(result.results[0].source, "<int>")
        self.assertEqual(result.results[0].error_type, "InvalidImage")
        self.assertEqual(result.successful_images, 1)


class TestAggregateResults(unittest.TestCase):
    def test_by_class_and_highest_confidence(self) -> None:
        results = [
            ImageDetectionResult.succeeded(0, "a.jpg", [_det("cut", 0.9, 6), _det("cut", 0.6, 6)]),
            ImageDetectionResult.failed(1, "b.jpg", ValueError("undecodable")),
            ImageDetectionResult.succeeded(2, "c.jpg", [_det("bruise", 0.95, 5)]),
        ]
        result = aggregate_results(results)
        self.assertEqual(result.summary.by_class, {"cut": 2, "bruise": 1})
        self.assertEqual(result.summary.highest_confidence.class_name, "bruise")
        self.assertEqual(result.summary.highest_confidence_image_index, 2)
        self.assertAlmostEqual(result.summary.average_confidence, (0.9 + 0.6 + 0.95) / 3)
        self.assertEqual(result.total_detections, 3)
        self.assertEqual(result.summary.total_count, 3)
        self.assertEqual((result.successful_images, result.failed_images), (2, 1))

    def test_first_of_equal_confidences_wins(self) -> None:
        results = [
            ImageDetectionResult.succeeded(0, "a", [_det("cut", 0.8)]),
            ImageDetectionResult.succeeded(1, "b", [_det("bruise", 0.8)]),
        ]
        self.assertEqual(aggregate_results(results).summary.highest_confidence.class_name, "cut")


class TestRunWithTimeout(unittest.TestCase):
    def test_returns_value(self) -> None:
        self.assertEqual(run_with_timeout(lambda: 42, 1.0), 42)
        self.assertEqual(run_with_timeout(lambda: 42, None), 42)

    def test_propagates_errors(self) -> None:
        def boom():
            raise KeyError("x")

        with self.assertRaises(KeyError):
            run_with_timeout(boom, 1.0)

    def test_timeout(self) -> None:
        with self.assertRaises(StageTimeout) as ctx:
            run_with_timeout(lambda: time.sleep(0.5), 0.05, "slow call")
        self.assertEqual(ctx.exception.timeout_s, 0.05)
        self.assertIsInstance(ctx.exception, TimeoutError)

    def test_abandoned_call_runs_on_a_daemon_thread(self) -> None:
        release = threading.Event()
        self.addCleanup(release.set)
        with self.assertRaises(StageTimeout):
            run_with_timeout(release.wait, 0.05, "hung call")
        workers = [t for t in threading.enumerate() if t.name == "injury-kit hung call"]
        self.assertTrue(workers)
        self.assertTrue(all(t.daemon for t in workers))

    def test_process_exits_promptly_after_timeout(self) -> None:
        script = textwrap.dedent(
            """
            import time

            import numpy as np

            from injury_kit.backends import MockEngine
            from injury_kit.config import PipelineConfig
            from injury_kit.pipeline import DetectionPipeline


            class HungEngine(MockEngine):
                def _forward(self, blob):
                    time.sleep(60)
                    return super()._forward(blob)


            pipeline = DetectionPipeline(HungEngine(), pipeline_config=PipelineConfig(image_timeout_s=0.2))
            result = pipeline.run([np.zeros((32, 32, 3), dtype=np.uint8)], skip_visualization=True)
            print(result.results[0].error_type, flush=True)
            print("returned", time.monotonic(), flush=True)
            """
        )
        repo_root = str(Path(__file__).resolve().parents[1])
        env = dict(os.environ)
        env["PYTHONPATH"] = repo_root + os.pathsep + env.get("PYTHONPATH", "")

        proc = subprocess.run(
            [sys.executable, "-c", script],
            cwd=repo_root,
            env=env,
            capture_output=True,
            text=True,
            timeout=50,
        )
        exited_at = time.monotonic()

        self.assertEqual(proc.returncode, 0, proc.stderr)
        lines = proc.stdout.splitlines()
        self.assertEqual(lines[0], "StageTimeout")
        returned_at = float(lines[1].split()[1])
        self.assertLess(exited_at - returned_at, 10.0)


class TestRuntime(unittest.TestCase):
    def test_mock_backend(self) -> None:
        pipeline = load_pipeline(backend="mock", model_config=ModelConfig(), preload=True)
        self.assertIsInstance(pipeline.engine, MockEngine)
        self.assertTrue(pipeline.engine.is_loaded)

    def test_backend_inference(self) -> None:
        self.assertEqual(infer_backend("models/injuries.ONNX"), "onnxruntime")
        with self.assertRaises(ValueError):
            infer_backend("models/injuries.tflite")
        with self.assertRaises(ValueError):
            infer_backend(None)
        with self.assertRaises(ValueError):
            load_pipeline("model.onnx", backend="coreml")

    def test_missing_onnx_model(self) -> None:
        pipeline = load_pipeline("does/not/exist.onnx")
        with self.assertRaises(ModelUnavailable):
            pipeline.run([_jpeg()])
        with self.assertRaises(ModelUnavailable):
            load_pipeline("does/not/exist.onnx", preload=True)

    def test_resolve_model_path(self) -> None:
        self.assertEqual(resolve_model_path("/abs/model.onnx"), Path("/abs/model.onnx"))
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        root = Path(tmpdir.name).resolve()
        self.assertEqual(resolve_model_path("m/model.onnx", root), root / "m" / "model.onnx")

    def test_custom_canned_detections(self) -> None:
        engine = MockEngine(detections=[CannedDetection(x=320, y=320, width=64, height=64, class_id=6, confidence=0.7)])
        result = run_pipeline([_jpeg(640, 640)], engine)
        (det,) = result.results[0].detections
        self.assertEqual(det.class_name, "cut")
        self.assertEqual(det.as_xyxy(), (288.0, 288.0, 352.0, 352.0))


if __name__ == "__main__":
    unittest.main()
