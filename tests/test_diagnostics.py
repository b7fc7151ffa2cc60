"""
Tests for capture diagnostics.
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from tagbridge.diagnostics import OrientationProbe, annotate_frame, run_diagnostics  # type: ignore
from tagbridge.frames import flip_horizontal  # type: ignore
from tagbridge.marker_detect import MarkerDetector  # type: ignore
from tagbridge.pose import PoseEstimator  # type: ignore
from tagbridge.video import VideoFileSource  # type: ignore
from synthetic import CAMERA_MATRIX, blank_frame, flat_marker_frame


class TestOrientationProbe(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.output_dir = Path(self.tmpdir.name) / "debug"

        self.estimator = PoseEstimator({"camera_matrix": CAMERA_MATRIX})
        self.estimator.initialize()
        self.probe = OrientationProbe(MarkerDetector(), self.estimator, output_dir=str(self.output_dir), save_every=1)

    def test_marker_found_as_captured(self):
        result = self.probe.process(flat_marker_frame(marker_ids=(7,)), sequence=0)
        self.assertEqual(result.normal_ids, [7])
        self.assertNotIn(7, result.flipped_ids)
        self.assertTrue((self.output_dir / "detected_frame_0_normal.jpg").exists())

    def test_mirrored_marker_found_when_flipped(self):
        mirrored = flip_horizontal(flat_marker_frame(marker_ids=(7,)))
        result = self.probe.process(mirrored, sequence=0)

        self.assertNotIn(7, result.normal_ids)
        self.assertEqual(result.flipped_ids, [7])
        self.assertTrue((self.output_dir / "detected_frame_0_flipped.jpg").exists())

        summary = self.probe.summary()
        self.assertEqual(summary["frames"], 1)
        self.assertEqual(summary["frames_with_markers_flipped"], 1)
        self.assertIn(7, summary["marker_ids"])
        self.assertTrue(summary["recommend_flip"])

    def test_debug_frames_saved(self):
        probe = OrientationProbe(MarkerDetector(), self.estimator, output_dir=str(self.output_dir), save_every=10)
        for sequence in range(12):
            probe.process(blank_frame(), sequence)

        saved = sorted(p.name for p in self.output_dir.iterdir())
        self.assertEqual(
            saved,
            [
                "debug_frame_0_flipped.jpg",
                "debug_frame_0_normal.jpg",
                "debug_frame_10_flipped.jpg",
                "debug_frame_10_normal.jpg",
            ],
        )

    def test_nothing_found(self):
        result = self.probe.process(blank_frame(), sequence=3)
        self.assertFalse(result.found)
        self.assertFalse(self.probe.summary()["recommend_flip"])

    def test_without_output_dir(self):
        probe = OrientationProbe(MarkerDetector(), self.estimator)
        self.assertTrue(probe.process(flat_marker_frame(marker_ids=(2,)), sequence=0).found)
        self.assertIsNone(probe.output_dir)


class TestAnnotateFrame(unittest.TestCase):

    def test_annotation_is_color_copy(self):
        frame = flat_marker_frame(marker_ids=(4,))
        estimator = PoseEstimator({"camera_matrix": CAMERA_MATRIX})
        estimator.initialize()
        detections = MarkerDetector().detect(frame)
        poses = [estimator.estimate_marker_pose(d) for d in detections]

        annotated = annotate_frame(frame, detections, poses, estimator.calibration)
        self.assertEqual(annotated.shape, frame.shape + (3,))
        self.assertTrue(np.any(annotated[:, :, 0] != annotated[:, :, 1]))
        # The input frame is untouched.
        self.assertEqual(frame.ndim, 2)

    def test_no_detections(self):
        annotated = annotate_frame(blank_frame(), [])
        self.assertEqual(annotated.shape[2], 3)


class TestRunDiagnostics(unittest.TestCase):

    def setUp(self):
        estimator = PoseEstimator({})
        estimator.initialize()
        self.probe = OrientationProbe(MarkerDetector(), estimator)

    def test_stops_after_max_frames(self):
        frames = [flat_marker_frame(marker_ids=(1,))] * 5
        source = VideoFileSource({"loop_video": True}, frames=frames)
        summary = run_diagnostics(source, self.probe, max_frames=3, timeout=5.0)

        self.assertEqual(summary["frames"], 3)
        self.assertEqual(summary["frames_with_markers_normal"], 3)
        self.assertEqual(summary["marker_ids"], [1])
        self.assertFalse(summary["recommend_flip"])
        self.assertFalse(source.is_running)

    def test_short_source(self):
        source = VideoFileSource({}, frames=[blank_frame(), blank_frame()])
        summary = run_diagnostics(source, self.probe, max_frames=30, timeout=5.0)
        self.assertEqual(summary["frames"], 2)

    def test_source_fails_to_start(self):
        with self.assertRaises(RuntimeError):
            run_diagnostics(VideoFileSource({}, frames=[]), self.probe)

    def test_failing_frames_still_count(self):
        class FailingProbe(OrientationProbe):
            def process(self, frame, sequence):
                raise ValueError("bad frame")

        probe = FailingProbe(MarkerDetector(), PoseEstimator({}))
        source = VideoFileSource({"loop_video": True}, frames=[blank_frame()])
        summary = run_diagnostics(source, probe, max_frames=3)

        self.assertEqual(summary["frames"], 0)
        self.assertFalse(source.is_running)


if __name__ == "__main__":
    unittest.main()
