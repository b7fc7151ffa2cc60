"""
Host-facing detector object.

``AprilTagDetector`` is the adapter a host application's scripting layer
drives: load calibration, open the camera, start it, and poll
``get_latest_detections()`` once per host frame. Every method returns a bool
or plain Python containers and reports failures through logging, since host
scripts have no exception channel.
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from .calibration import (
    CalibrationData,
    CalibrationError,
    coeffs_from_flat,
    load_camera_parameters,
    matrix_from_flat,
)
from .pipeline import DetectionPipeline
from .utils import get_config
from .video import FrameSource, create_source

LOGGER = logging.getLogger(__name__)


class AprilTagDetector:
    """Camera plus AprilTag detection exposed as a pollable object."""

    def __init__(
        self,
        config: Optional[Dict] = None,
        source_factory: Optional[Callable[[Dict], FrameSource]] = None,
    ):
        self.config = config or get_config()
        self.pipeline = DetectionPipeline.from_config(self.config)
        self.pipeline.detector.initialize()
        self.pipeline.estimator.initialize()

        self._source_factory = source_factory or create_source
        self.source: Optional[FrameSource] = None
        self.camera_running = False

        calibration = self.pipeline.estimator.calibration
        self._camera_matrix: Optional[np.ndarray] = calibration.camera_matrix if calibration else None
        self._dist_coeffs: Optional[np.ndarray] = calibration.dist_coeffs if calibration else None

        LOGGER.info("AprilTagDetector created successfully")

    @classmethod
    def from_config_file(cls, config_path: str, **kwargs) -> "AprilTagDetector":
        return cls(get_config(config_path), **kwargs)

    # ------------------------------------------------------------------ #
    # Calibration
    # ------------------------------------------------------------------ #
    def load_camera_parameters(self, path: str) -> bool:
        """Load intrinsics from a JSON or TOML camera parameter file."""
        try:
            calibration = load_camera_parameters(path)
        except (FileNotFoundError, CalibrationError) as e:
            LOGGER.error("Failed to load camera parameters: %s", e)
            return False

        self._camera_matrix = calibration.camera_matrix
        self._dist_coeffs = calibration.dist_coeffs
        self._apply_calibration()
        LOGGER.info("Camera parameters loaded successfully")
        return True

    def set_camera_matrix(self, matrix: Sequence[float]):
        """Set intrinsics from 9 row-major values; other lengths are ignored."""
        try:
            self._camera_matrix = matrix_from_flat(list(matrix))
        except (CalibrationError, TypeError, ValueError) as e:
            LOGGER.error("Camera matrix must have 9 numeric elements: %s", e)
            return
        self._apply_calibration()

    def set_distortion_coefficients(self, coeffs: Sequence[float]):
        """Set the 4 distortion coefficients (k1, k2, p1, p2); other lengths are ignored."""
        try:
            self._dist_coeffs = coeffs_from_flat(list(coeffs))
        except (CalibrationError, TypeError, ValueError) as e:
            LOGGER.error("Distortion coefficients must have 4 numeric elements: %s", e)
            return
        self._apply_calibration()

    def set_marker_size(self, size: float):
        """Set the printed marker side length in meters."""
        try:
            self.pipeline.estimator.set_marker_size(size)
        except ValueError as e:
            LOGGER.error("%s", e)

    def get_camera_matrix(self) -> List[float]:
        if self._camera_matrix is None:
            return []
        return [float(v) for v in self._camera_matrix.reshape(-1)]

    def get_distortion_coefficients(self) -> List[float]:
        if self._dist_coeffs is None:
            return []
        return [float(v) for v in self._dist_coeffs.reshape(-1)]

    def get_marker_size(self) -> float:
        return self.pipeline.estimator.marker_size

    def _apply_calibration(self):
        # Poses need both halves of the calibration.
        if self._camera_matrix is None or self._dist_coeffs is None:
            self.pipeline.estimator.set_calibration(None)
            return
        self.pipeline.estimator.set_calibration(
            CalibrationData(camera_matrix=self._camera_matrix, dist_coeffs=self._dist_coeffs)
        )

    # ------------------------------------------------------------------ #
    # Camera lifecycle
    # ------------------------------------------------------------------ #
    def initialize_camera(self) -> bool:
        """Open and configure the capture source."""
        if self.camera_running:
            LOGGER.warning("Camera already running")
            return False

        if self.source is not None:
            self.source.stop()
            self.source = None

        try:
            source = self._source_factory(self.config.get("camera", {}))
        except ValueError as e:
            LOGGER.error("Invalid camera configuration: %s", e)
            return False

        initialize = getattr(source, "initialize", None)
        if initialize is not None and not initialize():
            LOGGER.error("Camera initialization failed")
            return False

        self.pipeline.attach(source)
        self.source = source
        LOGGER.info("Camera initialized successfully")
        return True

    def start_camera(self) -> bool:
        """Start capture; frames are processed as they arrive."""
        if self.source is None or self.camera_running:
            return False

        if not self.pipeline.start():
            return False

        self.camera_running = True
        LOGGER.info("Camera started")
        return True

    def stop_camera(self):
        """Stop capture and release the camera. Safe to call repeatedly."""
        if self.camera_running:
            self.pipeline.stop()
            self.camera_running = False
        elif self.source is not None:
            self.source.stop()

        if self.source is not None:
            self.source = None
            LOGGER.info("Camera stopped")

    def close(self):
        self.stop_camera()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # ------------------------------------------------------------------ #
    # Polling
    # ------------------------------------------------------------------ #
    def get_latest_detections(self) -> List[Dict]:
        """Detections from the most recent frame.

        Each entry has ``id``, ``rvec`` and ``tvec`` (3 floats each, zero when
        no pose could be estimated) and ``corners`` (4 ``[x, y]`` pairs).
        """
        return self.pipeline.get_latest_detections()

    def get_stats(self) -> Dict:
        return self.pipeline.stats()
