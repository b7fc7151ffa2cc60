"""
Capture diagnostics.

Runs detection on a short burst of frames in both the captured and the
horizontally mirrored orientation, logs what was found, and saves raw and
annotated frames so a mis-mounted or mirrored sensor is easy to spot.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np

from .calibration import CalibrationData
from .frames import flip_horizontal
from .marker_detect import MarkerDetection, MarkerDetector
from .pose import PoseEstimator, PoseResult
from .utils import create_directory
from .video import FrameSource

LOGGER = logging.getLogger(__name__)


def annotate_frame(
    frame: np.ndarray,
    detections: Sequence[MarkerDetection],
    poses: Optional[Sequence[PoseResult]] = None,
    calibration: Optional[CalibrationData] = None,
    axis_length: float = 0.02,
) -> np.ndarray:
    """Draw marker outlines, ids and pose axes on a BGR copy of ``frame``."""
    annotated = cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR) if frame.ndim == 2 else frame.copy()
    if not detections:
        return annotated

    corners = [d.corners.reshape(1, 4, 2).astype(np.float32) for d in detections]
    ids = np.array([[d.marker_id] for d in detections], dtype=np.int32)
    cv2.aruco.drawDetectedMarkers(annotated, corners, ids)

    if calibration is not None and poses:
        for pose in poses:
            if pose.success:
                cv2.drawFrameAxes(
                    annotated,
                    calibration.camera_matrix,
                    calibration.dist_coeffs,
                    pose.rotation_vector,
                    pose.translation_vector,
                    axis_length,
                )
    return annotated


@dataclass
class OrientationResult:
    sequence: int
    normal_ids: List[int] = field(default_factory=list)
    flipped_ids: List[int] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.normal_ids or self.flipped_ids)


class OrientationProbe:
    """Tries detection on each frame as captured and mirrored."""

    def __init__(
        self,
        detector: MarkerDetector,
        estimator: PoseEstimator,
        output_dir: Optional[str] = None,
        save_every: int = 10,
        axis_length: float = 0.02,
    ):
        self.detector = detector
        self.estimator = estimator
        self.output_dir = Path(output_dir) if output_dir else None
        self.save_every = save_every
        self.axis_length = axis_length
        self.results: List[OrientationResult] = []

        if self.output_dir is not None:
            create_directory(self.output_dir)

    def process(self, frame: np.ndarray, sequence: int) -> OrientationResult:
        flipped = flip_horizontal(frame)

        if self.output_dir is not None and self.save_every and sequence % self.save_every == 0:
            cv2.imwrite(str(self.output_dir / f"debug_frame_{sequence}_normal.jpg"), frame)
            cv2.imwrite(str(self.output_dir / f"debug_frame_{sequence}_flipped.jpg"), flipped)
            LOGGER.info("Saved debug frames for sequence %d", sequence)

        result = OrientationResult(
            sequence=sequence,
            normal_ids=self._test_detection(frame, sequence, "normal"),
            flipped_ids=self._test_detection(flipped, sequence, "flipped"),
        )
        if not result.found:
            height, width = frame.shape[:2]
            LOGGER.info(
                "Frame %d (%dx%d): No markers detected (tried both orientations)", sequence, width, height
            )
        self.results.append(result)
        return result

    def _test_detection(self, frame: np.ndarray, sequence: int, orientation: str) -> List[int]:
        detections = self.detector.detect(frame)
        if not detections:
            return []

        LOGGER.info("Frame %d (%s): detected %d markers", sequence, orientation, len(detections))
        poses = [self.estimator.estimate_marker_pose(d) for d in detections]
        for pose in poses:
            LOGGER.info("  Marker ID: %d rvec: %s tvec: %s", pose.marker_id, pose.rvec_list(), pose.tvec_list())

        if self.output_dir is not None:
            marked = annotate_frame(frame, detections, poses, self.estimator.calibration, self.axis_length)
            cv2.imwrite(str(self.output_dir / f"detected_frame_{sequence}_{orientation}.jpg"), marked)

        return [d.marker_id for d in detections]

    def summary(self) -> Dict:
        normal = sum(1 for r in self.results if r.normal_ids)
        flipped = sum(1 for r in self.results if r.flipped_ids)
        return {
            "frames": len(self.results),
            "frames_with_markers_normal": normal,
            "frames_with_markers_flipped": flipped,
            "marker_ids": sorted({i for r in self.results for i in r.normal_ids + r.flipped_ids}),
            "recommend_flip": flipped > normal,
        }


def run_diagnostics(
    source: FrameSource,
    probe: OrientationProbe,
    max_frames: int = 30,
    timeout: Optional[float] = None,
) -> Dict:
    """Feed up to ``max_frames`` frames from ``source`` through ``probe``.

    Raises:
        RuntimeError: If the source cannot be started
    """
    done = threading.Event()
    processed = 0

    def on_frame(frame: np.ndarray, sequence: int, timestamp: float):
        nonlocal processed
        if processed >= max_frames:
            return
        try:
            probe.process(frame, sequence)
        except Exception:
            LOGGER.exception("Diagnostics failed on frame %d", sequence)
        processed += 1
        if processed >= max_frames:
            done.set()

    if not source.start(on_frame):
        raise RuntimeError(f"Failed to start {source.name} capture")

    LOGGER.info("Capturing %d frames for marker detection...", max_frames)
    started = time.monotonic()
    try:
        while not done.wait(0.1):
            if source.finished.is_set() or source.last_error is not None:
                break
            if timeout is not None and time.monotonic() - started > timeout:
                LOGGER.warning("Diagnostics timed out after %d frames", processed)
                break
    finally:
        source.stop()

    summary = probe.summary()
    LOGGER.info("Diagnostics completed: %s", summary)
    return summary
