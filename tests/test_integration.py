"""
Integration tests for the TAGBRIDGE pipeline.

Runs capture, detection, pose estimation and UDP publishing end to end on
synthetic marker footage, both from in-memory frames and from a recorded
video file.
"""

from __future__ import annotations

import json
import os
import socket
import sys
from typing import List

import cv2
import numpy as np
import pytest

# Add src directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from tagbridge.calibration import calibration_from_flat, save_camera_parameters
from tagbridge.main import main
from tagbridge.plugin import AprilTagDetector
from tagbridge.publisher import DetectionPublisher
from tagbridge.utils import get_config
from tagbridge.video import VideoFileSource
from synthetic import CAMERA_MATRIX, DIST_COEFFS, flat_marker_frame, posed_marker_frame

TRUE_RVEC = np.array([2.95, -0.1, 0.0])
TRUE_TVEC = np.array([-0.03, 0.02, 0.6])


class SyntheticFootage:
    """Generates marker footage for replay."""

    @staticmethod
    def posed_sequence(num_frames: int = 10, marker_id: int = 21) -> List[np.ndarray]:
        frame = posed_marker_frame(marker_id, TRUE_RVEC, TRUE_TVEC)
        return [frame.copy() for _ in range(num_frames)]

    @staticmethod
    def save_as_video(frames: List[np.ndarray], output_path: str, fps: int = 30) -> bool:
        """Save grayscale frames as an MJPG video. Returns False if no writer is available."""
        h, w = frames[0].shape[:2]
        fourcc = cv2.VideoWriter_fourcc(*"MJPG")
        writer = cv2.VideoWriter(output_path, fourcc, fps, (w, h))
        if not writer.isOpened():
            return False

        for frame in frames:
            writer.write(cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR))

        writer.release()
        return True


@pytest.fixture
def calibrated_config():
    config = get_config()
    config["pose"]["camera_matrix"] = CAMERA_MATRIX
    config["pose"]["dist_coeffs"] = DIST_COEFFS
    return config


@pytest.fixture
def receiver():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


@pytest.fixture
def recorded_video(tmp_path):
    path = tmp_path / "markers.avi"
    frames = [flat_marker_frame(marker_ids=(3, 8), side_pixels=140)] * 10
    if not SyntheticFootage.save_as_video(frames, str(path)):
        pytest.skip("No MJPG video writer available")
    return path


@pytest.fixture
def calibration_file(tmp_path):
    path = tmp_path / "camera_parameters.json"
    flat = [v for row in CAMERA_MATRIX for v in row]
    save_camera_parameters(calibration_from_flat(flat, DIST_COEFFS), path)
    return path


class TestEndToEnd:
    """Frames in, poses out over UDP."""

    def test_poses_published_over_udp(self, calibrated_config, receiver):
        frames = SyntheticFootage.posed_sequence(num_frames=10)
        detector = AprilTagDetector(
            calibrated_config,
            source_factory=lambda camera_config: VideoFileSource(camera_config, frames=frames),
        )
        publisher = DetectionPublisher(detector.get_latest_detections, "127.0.0.1", receiver.getsockname()[1])

        try:
            assert detector.initialize_camera()
            assert detector.start_camera()
            assert detector.pipeline.wait_for_frames(10, timeout=5.0)
            assert publisher.publish_once()
        finally:
            publisher.close()
            detector.close()

        data, _ = receiver.recvfrom(65536)
        payload = json.loads(data)
        assert [d["id"] for d in payload["detections"]] == [21]

        detection = payload["detections"][0]
        assert detection["pose_valid"]
        assert np.linalg.norm(np.array(detection["tvec"]) - TRUE_TVEC) < 0.015
        assert len(detection["corners"]) == 4

    def test_marker_leaving_view_clears_detections(self, calibrated_config):
        frames = SyntheticFootage.posed_sequence(num_frames=3)
        frames.append(np.full_like(frames[0], 255))
        detector = AprilTagDetector(
            calibrated_config,
            source_factory=lambda camera_config: VideoFileSource(camera_config, frames=frames),
        )
        with detector:
            assert detector.initialize_camera()
            assert detector.start_camera()
            assert detector.pipeline.wait_for_frames(4, timeout=5.0)
            assert detector.get_latest_detections() == []
            assert detector.get_stats()["marker_counts"] == {21: 3}


class TestVideoReplay:
    """Replay of recorded footage through the default source factory."""

    def test_recorded_video(self, calibrated_config, recorded_video):
        calibrated_config["camera"]["backend"] = "file"
        calibrated_config["camera"]["video_path"] = str(recorded_video)

        with AprilTagDetector(calibrated_config) as detector:
            assert detector.initialize_camera()
            assert detector.start_camera()
            assert detector.source.wait(timeout=10.0)
            stats = detector.get_stats()

        assert stats["frames_processed"] == 10
        assert stats["marker_counts"] == {3: 10, 8: 10}

    def test_cli_detection_run(self, recorded_video, calibration_file):
        with pytest.raises(SystemExit) as exc:
            main([
                "--video", str(recorded_video),
                "--calibration", str(calibration_file),
                "--no-publish",
                "--max-frames", "5",
            ])
        assert exc.value.code == 0

    def test_cli_diagnostics(self, recorded_video, tmp_path, capsys):
        output_dir = tmp_path / "debug"
        with pytest.raises(SystemExit) as exc:
            main([
                "--diagnose",
                "--video", str(recorded_video),
                "--output-dir", str(output_dir),
                "--max-frames", "3",
            ])
        assert exc.value.code == 0

        summary = json.loads(capsys.readouterr().out)
        assert summary["frames"] == 3
        assert summary["marker_ids"] == [3, 8]
        assert (output_dir / "debug_frame_0_normal.jpg").exists()
        assert (output_dir / "detected_frame_0_normal.jpg").exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
