import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

import cv2
import numpy as np

REPO_ROOT = Path(__file__).resolve().parents[1]
SCRIPT = REPO_ROOT / "Scripts" / "detect_injuries.py"


def _run_cli(*args: str) -> subprocess.CompletedProcess:
    env = dict(os.environ)
    env["PYTHONPATH"] = str(REPO_ROOT) + os.pathsep + env.get("PYTHONPATH", "")
    return subprocess.run(
        [sys.executable, str(SCRIPT), *args],
        cwd=str(REPO_ROOT),
        env=env,
        capture_output=True,
        text=True,
        timeout=120,
    )


class TestDetectInjuriesCli(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.tmp = Path(tmpdir.name)
        self.image_path = self.tmp / "arm.png"
        ok, buf = cv2.imencode(".png", np.full((48, 64, 3), 90, dtype=np.uint8))
        assert ok
        self.image_path.write_bytes(buf.tobytes())

    def _assert_config_error(self, proc: subprocess.CompletedProcess) -> None:
        self.assertEqual(proc.returncode, 2, proc.stderr)
        self.assertIn("ERROR:", proc.stdout)
        self.assertNotIn("Traceback", proc.stderr)

    def test_mock_backend_prints_summary(self) -> None:
        proc = _run_cli(str(self.image_path), "--backend", "mock", "--no-progress", "--json")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertIn('"successful_images": 1', proc.stdout)

    def test_missing_model_config_file(self) -> None:
        proc = _run_cli(
            str(self.image_path),
            "--backend",
            "mock",
            "--no-progress",
            "--model-config",
            str(self.tmp / "missing.json"),
        )
        self._assert_config_error(proc)

    def test_invalid_model_config_json(self) -> None:
        bad = self.tmp / "model.json"
        bad.write_text("{not json", encoding="utf-8")
        proc = _run_cli(str(self.image_path), "--backend", "mock", "--no-progress", "--model-config", str(bad))
        self._assert_config_error(proc)

    def test_invalid_pipeline_config_value(self) -> None:
        bad = self.tmp / "pipeline.json"
        bad.write_text('{"max_images": 0}', encoding="utf-8")
        proc = _run_cli(str(self.image_path), "--backend", "mock", "--no-progress", "--pipeline-config", str(bad))
        self._assert_config_error(proc)

    def test_missing_metadata_file(self) -> None:
        proc = _run_cli(
            str(self.image_path),
            "--backend",
            "mock",
            "--no-progress",
            "--metadata",
            str(self.tmp / "metadata.yaml"),
        )
        self._assert_config_error(proc)

    def test_metadata_without_names(self) -> None:
        meta = self.tmp / "metadata.yaml"
        meta.write_text("task: detect\nimgsz: [640, 640]\n", encoding="utf-8")
        proc = _run_cli(str(self.image_path), "--backend", "mock", "--no-progress", "--metadata", str(meta))
        self._assert_config_error(proc)

    def test_out_of_range_override(self) -> None:
        proc = _run_cli(str(self.image_path), "--backend", "mock", "--no-progress", "--max-images", "0")
        self._assert_config_error(proc)


if __name__ == "__main__":
    unittest.main()
