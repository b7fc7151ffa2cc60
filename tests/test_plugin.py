"""
Tests for the host-facing AprilTagDetector object.
"""

import json
import os
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from tagbridge.plugin import AprilTagDetector  # type: ignore
from tagbridge.utils import get_config  # type: ignore
from tagbridge.video import VideoFileSource  # type: ignore
from synthetic import CAMERA_MATRIX, blank_frame, flat_marker_frame

FLAT_MATRIX = [v for row in CAMERA_MATRIX for v in row]


class TestCalibrationSetters(unittest.TestCase):
    """Calibration and marker size accessors."""

    def setUp(self):
        self.detector = AprilTagDetector(get_config())
        self.addCleanup(self.detector.close)

    def test_uncalibrated_by_default(self):
        self.assertEqual(self.detector.get_camera_matrix(), [])
        self.assertEqual(self.detector.get_distortion_coefficients(), [])
        self.assertAlmostEqual(self.detector.get_marker_size(), 0.05)
        self.assertFalse(self.detector.pipeline.estimator.is_calibrated)

    def test_set_camera_matrix(self):
        self.detector.set_camera_matrix(FLAT_MATRIX)
        self.assertEqual(self.detector.get_camera_matrix(), FLAT_MATRIX)
        # Still no distortion coefficients.
        self.assertFalse(self.detector.pipeline.estimator.is_calibrated)

        self.detector.set_distortion_coefficients([0.1, -0.2, 0.0, 0.0])
        self.assertEqual(self.detector.get_distortion_coefficients(), [0.1, -0.2, 0.0, 0.0])
        self.assertTrue(self.detector.pipeline.estimator.is_calibrated)

    def test_wrong_lengths_are_ignored(self):
        self.detector.set_camera_matrix(FLAT_MATRIX)
        self.detector.set_distortion_coefficients([0.0, 0.0, 0.0, 0.0])

        self.detector.set_camera_matrix([1.0] * 8)
        self.detector.set_distortion_coefficients([0.0] * 5)

        self.assertEqual(self.detector.get_camera_matrix(), FLAT_MATRIX)
        self.assertEqual(self.detector.get_distortion_coefficients(), [0.0, 0.0, 0.0, 0.0])

    def test_set_marker_size(self):
        self.detector.set_marker_size(0.1)
        self.assertAlmostEqual(self.detector.get_marker_size(), 0.1)

        self.detector.set_marker_size(-1.0)
        self.assertAlmostEqual(self.detector.get_marker_size(), 0.1)

    def test_calibration_from_config(self):
        config = get_config()
        config["pose"]["camera_matrix"] = CAMERA_MATRIX
        detector = AprilTagDetector(config)
        self.assertEqual(detector.get_camera_matrix(), FLAT_MATRIX)
        self.assertEqual(detector.get_distortion_coefficients(), [0.0, 0.0, 0.0, 0.0])


class TestLoadCameraParameters(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.detector = AprilTagDetector(get_config())

    def test_load_valid_file(self):
        path = Path(self.tmpdir.name) / "camera_parameters.json"
        path.write_text(
            json.dumps({"calibration": {"camera_matrix": CAMERA_MATRIX, "dist_coeffs": [[0.1], [-0.2], [0.0], [0.0]]}}),
            encoding="utf-8",
        )
        self.assertTrue(self.detector.load_camera_parameters(str(path)))
        self.assertEqual(self.detector.get_camera_matrix(), FLAT_MATRIX)
        self.assertEqual(self.detector.get_distortion_coefficients(), [0.1, -0.2, 0.0, 0.0])
        self.assertTrue(self.detector.pipeline.estimator.is_calibrated)

    def test_missing_file(self):
        self.assertFalse(self.detector.load_camera_parameters(str(Path(self.tmpdir.name) / "missing.json")))
        self.assertEqual(self.detector.get_camera_matrix(), [])

    def test_invalid_file_keeps_previous_values(self):
        self.detector.set_camera_matrix(FLAT_MATRIX)
        path = Path(self.tmpdir.name) / "bad.json"
        path.write_text(json.dumps({"calibration": {"camera_matrix": [[1, 2, 3]]}}), encoding="utf-8")

        self.assertFalse(self.detector.load_camera_parameters(str(path)))
        self.assertEqual(self.detector.get_camera_matrix(), FLAT_MATRIX)

    def test_from_config_file(self):
        config_path = Path(self.tmpdir.name) / "tagbridge.toml"
        config_path.write_text('[pose]\nmarker_size = 0.08\n\n[detector]\ndictionary = "apriltag_25h9"\n', encoding="utf-8")
        detector = AprilTagDetector.from_config_file(str(config_path))
        self.assertAlmostEqual(detector.get_marker_size(), 0.08)
        self.assertEqual(detector.pipeline.detector.dictionary_name, "apriltag_25h9")


class TestCameraLifecycle(unittest.TestCase):
    """Camera lifecycle with a replayed frame source."""

    def setUp(self):
        config = get_config()
        config["pose"]["camera_matrix"] = CAMERA_MATRIX
        self.frames = [flat_marker_frame(marker_ids=(11,))] * 3
        self.created = []
        self.detector = AprilTagDetector(config, source_factory=self.make_source)
        self.addCleanup(self.detector.close)

    def make_source(self, camera_config):
        source = VideoFileSource(camera_config, frames=self.frames)
        self.created.append(source)
        return source

    def test_start_requires_initialize(self):
        self.assertFalse(self.detector.start_camera())

    def test_detections_after_start(self):
        self.assertTrue(self.detector.initialize_camera())
        self.assertTrue(self.detector.start_camera())
        self.assertTrue(self.detector.pipeline.wait_for_frames(3, timeout=5.0))

        detections = self.detector.get_latest_detections()
        self.assertEqual([d["id"] for d in detections], [11])
        self.assertEqual(len(detections[0]["rvec"]), 3)
        self.assertEqual(len(detections[0]["tvec"]), 3)
        self.assertEqual(len(detections[0]["corners"]), 4)
        self.assertTrue(detections[0]["pose_valid"])

        self.assertEqual(self.detector.get_stats()["frames_processed"], 3)

    def test_initialize_while_running(self):
        self.assertTrue(self.detector.initialize_camera())
        self.assertTrue(self.detector.start_camera())
        self.assertFalse(self.detector.initialize_camera())
        self.assertFalse(self.detector.start_camera())

    def test_stop_is_idempotent(self):
        self.assertTrue(self.detector.initialize_camera())
        self.assertTrue(self.detector.start_camera())
        self.detector.stop_camera()
        self.detector.stop_camera()

        self.assertFalse(self.detector.camera_running)
        self.assertIsNone(self.detector.source)
        self.assertFalse(self.created[0].is_running)

    def test_restart_after_stop(self):
        self.assertTrue(self.detector.initialize_camera())
        self.assertTrue(self.detector.start_camera())
        self.detector.stop_camera()

        self.assertTrue(self.detector.initialize_camera())
        self.assertTrue(self.detector.start_camera())
        self.assertEqual(len(self.created), 2)

    def test_invalid_camera_config(self):
        def broken_factory(camera_config):
            raise ValueError("Unknown capture backend: firewire")

        detector = AprilTagDetector(get_config(), source_factory=broken_factory)
        self.assertFalse(detector.initialize_camera())
        self.assertIsNone(detector.source)

    def test_context_manager(self):
        with AprilTagDetector(get_config(), source_factory=self.make_source) as detector:
            self.assertTrue(detector.initialize_camera())
            self.assertTrue(detector.start_camera())
        self.assertFalse(detector.camera_running)

    def test_no_markers(self):
        self.frames = [blank_frame()]
        self.assertTrue(self.detector.initialize_camera())
        self.assertTrue(self.detector.start_camera())
        self.assertTrue(self.detector.pipeline.wait_for_frames(1, timeout=5.0))
        self.assertEqual(self.detector.get_latest_detections(), [])


if __name__ == "__main__":
    unittest.main()
