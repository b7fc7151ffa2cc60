"""
Marker pose estimation module.

Provides utilities for estimating the pose of detected square fiducials
relative to the camera, plus temporal smoothing so a host application sees
stable marker transforms.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

import cv2
import numpy as np

from .calibration import CalibrationData, calibration_from_flat, load_camera_parameters
from .marker_detect import MarkerDetection

LOGGER = logging.getLogger(__name__)

DEFAULT_MARKER_SIZE = 0.05  # meters


@dataclass
class PoseResult:
    """Structured container for pose estimation output."""

    success: bool
    marker_id: int = -1
    rotation_vector: Optional[np.ndarray] = None
    translation_vector: Optional[np.ndarray] = None
    rotation_matrix: Optional[np.ndarray] = None
    reprojection_error: Optional[float] = None
    timestamp: Optional[float] = None
    is_smoothed: bool = False

    def as_matrix(self) -> Optional[np.ndarray]:
        """Return the 4x4 transformation matrix if pose is valid."""
        if not self.success or self.rotation_matrix is None or self.translation_vector is None:
            return None
        transform = np.eye(4, dtype=np.float64)
        transform[:3, :3] = self.rotation_matrix
        transform[:3, 3] = self.translation_vector.flatten()
        return transform

    def rvec_list(self):
        if self.rotation_vector is None:
            return [0.0, 0.0, 0.0]
        return [float(v) for v in self.rotation_vector.flatten()]

    def tvec_list(self):
        if self.translation_vector is None:
            return [0.0, 0.0, 0.0]
        return [float(v) for v in self.translation_vector.flatten()]

    def copy(self) -> PoseResult:
        """Create a copy of this pose result."""
        return PoseResult(
            success=self.success,
            marker_id=self.marker_id,
            rotation_vector=self.rotation_vector.copy() if self.rotation_vector is not None else None,
            translation_vector=self.translation_vector.copy() if self.translation_vector is not None else None,
            rotation_matrix=self.rotation_matrix.copy() if self.rotation_matrix is not None else None,
            reprojection_error=self.reprojection_error,
            timestamp=self.timestamp,
            is_smoothed=self.is_smoothed,
        )


@dataclass
class PoseFilterConfig:
    """Configuration for pose filtering and smoothing."""

    enable_smoothing: bool = True
    smoothing_alpha: float = 0.3  # EMA factor (0 = max smooth, 1 = no smooth)
    enable_outlier_rejection: bool = False
    max_translation_jump: float = 0.5  # Max allowed jump in meters
    max_rotation_jump: float = 1.0  # Max allowed rotation change in radians
    max_consecutive_rejections: int = 5  # Then the new pose is accepted as a real move
    stale_after: float = 1.0  # Seconds a marker may go unseen before its state is dropped

    @classmethod
    def from_dict(cls, config: Optional[Dict]) -> PoseFilterConfig:
        config = config or {}
        defaults = cls()
        return cls(
            enable_smoothing=config.get("enable_smoothing", defaults.enable_smoothing),
            smoothing_alpha=config.get("smoothing_alpha", defaults.smoothing_alpha),
            enable_outlier_rejection=config.get("enable_outlier_rejection", defaults.enable_outlier_rejection),
            max_translation_jump=config.get("max_translation_jump", defaults.max_translation_jump),
            max_rotation_jump=config.get("max_rotation_jump", defaults.max_rotation_jump),
            max_consecutive_rejections=config.get(
                "max_consecutive_rejections", defaults.max_consecutive_rejections
            ),
            stale_after=config.get("stale_after", defaults.stale_after),
        )


class PoseFilter:
    """
    Temporal filter for a single marker's pose.

    Exponential moving average over rotation and translation vectors, with
    optional rejection of sudden jumps.
    """

    def __init__(self, config: Optional[PoseFilterConfig] = None):
        self.config = config or PoseFilterConfig()
        self.smoothed_pose: Optional[PoseResult] = None
        self._ema_rotation: Optional[np.ndarray] = None
        self._ema_translation: Optional[np.ndarray] = None
        self._rejections = 0

    def reset(self):
        """Reset filter state."""
        self.smoothed_pose = None
        self._ema_rotation = None
        self._ema_translation = None
        self._rejections = 0

    def filter(self, pose: PoseResult) -> PoseResult:
        """Apply filtering to a pose estimate.

        Args:
            pose: Raw pose estimate

        Returns:
            Filtered/smoothed pose
        """
        if not pose.success:
            return pose

        if self.config.enable_outlier_rejection and self.smoothed_pose and self._is_outlier(pose):
            self._rejections += 1
            if self._rejections <= self.config.max_consecutive_rejections:
                LOGGER.debug("Pose for marker %d rejected as outlier", pose.marker_id)
                return self.smoothed_pose.copy()
            LOGGER.debug("Marker %d moved, reseeding filter", pose.marker_id)
            self.reset()

        self._rejections = 0

        if not self.config.enable_smoothing:
            self.smoothed_pose = pose.copy()
            return self.smoothed_pose

        self.smoothed_pose = self._apply_ema_filter(pose)
        return self.smoothed_pose

    def _is_outlier(self, pose: PoseResult) -> bool:
        """Check if pose jumps too far from the smoothed state."""
        if pose.translation_vector is None or self.smoothed_pose.translation_vector is None:
            return False

        t_diff = np.linalg.norm(pose.translation_vector - self.smoothed_pose.translation_vector)
        if t_diff > self.config.max_translation_jump:
            LOGGER.debug("Translation jump: %.3f > %.3f", t_diff, self.config.max_translation_jump)
            return True

        if pose.rotation_vector is not None and self.smoothed_pose.rotation_vector is not None:
            r_diff = np.linalg.norm(pose.rotation_vector - self.smoothed_pose.rotation_vector)
            if r_diff > self.config.max_rotation_jump:
                LOGGER.debug("Rotation jump: %.3f > %.3f", r_diff, self.config.max_rotation_jump)
                return True

        return False

    def _apply_ema_filter(self, pose: PoseResult) -> PoseResult:
        """Apply exponential moving average smoothing."""
        alpha = self.config.smoothing_alpha

        if pose.rotation_vector is None or pose.translation_vector is None:
            return pose.copy()

        if self._ema_rotation is None:
            self._ema_rotation = pose.rotation_vector.copy()
            self._ema_translation = pose.translation_vector.copy()
        else:
            self._ema_rotation = alpha * pose.rotation_vector + (1 - alpha) * self._ema_rotation
            self._ema_translation = alpha * pose.translation_vector + (1 - alpha) * self._ema_translation

        R_smoothed, _ = cv2.Rodrigues(self._ema_rotation)

        return PoseResult(
            success=True,
            marker_id=pose.marker_id,
            rotation_vector=self._ema_rotation.copy(),
            translation_vector=self._ema_translation.copy(),
            rotation_matrix=R_smoothed,
            reprojection_error=pose.reprojection_error,
            timestamp=pose.timestamp,
            is_smoothed=True,
        )


class MarkerPoseFilter:
    """Keeps one :class:`PoseFilter` per marker id."""

    def __init__(self, config: Optional[PoseFilterConfig] = None):
        self.config = config or PoseFilterConfig()
        self._filters: Dict[int, PoseFilter] = {}
        self._last_seen: Dict[int, float] = {}

    @property
    def tracked_ids(self):
        return sorted(self._filters)

    def reset(self):
        self._filters.clear()
        self._last_seen.clear()

    def filter(self, pose: PoseResult, now: Optional[float] = None) -> PoseResult:
        if not pose.success:
            return pose
        now = time.monotonic() if now is None else now
        pose_filter = self._filters.get(pose.marker_id)
        if pose_filter is None:
            pose_filter = PoseFilter(self.config)
            self._filters[pose.marker_id] = pose_filter
        self._last_seen[pose.marker_id] = now
        return pose_filter.filter(pose)

    def prune(self, now: Optional[float] = None) -> None:
        """Forget markers that have not been seen for ``stale_after`` seconds."""
        now = time.monotonic() if now is None else now
        for marker_id in [m for m, seen in self._last_seen.items() if now - seen > self.config.stale_after]:
            del self._filters[marker_id]
            del self._last_seen[marker_id]


class PoseEstimator:
    """
    Estimates the pose of square markers from their image corners.

    Calibration comes from a file (``calibration_file``), inline
    ``camera_matrix``/``dist_coeffs`` config, or :meth:`set_calibration`.
    Without calibration no pose is attempted.
    """

    def __init__(self, config: Optional[Dict] = None):
        self.config = config or {}
        self.marker_size: float = float(self.config.get("marker_size", DEFAULT_MARKER_SIZE))
        self.calibration: Optional[CalibrationData] = None
        self.initialized = False

    # ------------------------------------------------------------------ #
    # Initialization / calibration
    # ------------------------------------------------------------------ #
    def initialize(self) -> bool:
        """Load calibration data and prepare estimator."""
        self.calibration = self._load_calibration(self.config)
        self.initialized = True
        if self.calibration is None:
            LOGGER.warning("Pose estimator has no calibration; poses will not be estimated")
        else:
            LOGGER.info("Pose estimator initialized with calibration matrix:\n%s", self.calibration.camera_matrix)
        return True

    @staticmethod
    def _load_calibration(config: Dict) -> Optional[CalibrationData]:
        """Load calibration data from config or external file."""
        calibration_file = config.get("calibration_file")
        if calibration_file:
            return load_camera_parameters(calibration_file)

        matrix = config.get("camera_matrix")
        if matrix is None:
            return None

        coeffs = config.get("dist_coeffs") or [0.0, 0.0, 0.0, 0.0]
        return calibration_from_flat(
            np.asarray(matrix, dtype=np.float64).reshape(-1).tolist(),
            np.asarray(coeffs, dtype=np.float64).reshape(-1).tolist(),
        )

    @property
    def is_calibrated(self) -> bool:
        return self.calibration is not None

    def set_calibration(self, calibration: Optional[CalibrationData]):
        self.calibration = calibration
        self.initialized = True

    def set_marker_size(self, size: float):
        if size <= 0:
            raise ValueError(f"Marker size must be positive, got {size}")
        self.marker_size = float(size)

    def marker_object_points(self) -> np.ndarray:
        """Marker corners in the marker frame, matching the detector's corner order."""
        half = self.marker_size / 2.0
        return np.array(
            [
                [-half, half, 0.0],
                [half, half, 0.0],
                [half, -half, 0.0],
                [-half, -half, 0.0],
            ],
            dtype=np.float64,
        )

    # ------------------------------------------------------------------ #
    # Marker pose estimation
    # ------------------------------------------------------------------ #
    def estimate_marker_pose(
        self,
        detection: MarkerDetection,
        timestamp: Optional[float] = None,
    ) -> PoseResult:
        """Estimate a marker's pose relative to the camera.

        Args:
            detection: Detected marker with its four corners
            timestamp: Capture time to carry on the result

        Returns:
            PoseResult; ``success`` is False without calibration or when the
            solver does not converge
        """
        if not self.initialized:
            self.initialize()

        if self.calibration is None:
            return PoseResult(success=False, marker_id=detection.marker_id, timestamp=timestamp)

        object_points = self.marker_object_points()
        image_points = detection.corners.astype(np.float64).reshape(4, 2)

        ok, rvec, tvec = cv2.solvePnP(
            object_points,
            image_points,
            self.calibration.camera_matrix,
            self.calibration.dist_coeffs,
            flags=cv2.SOLVEPNP_IPPE_SQUARE,
        )
        if not ok:
            LOGGER.debug("Pose solve failed for marker %d", detection.marker_id)
            return PoseResult(success=False, marker_id=detection.marker_id, timestamp=timestamp)

        rotation_matrix, _ = cv2.Rodrigues(rvec)
        return PoseResult(
            success=True,
            marker_id=detection.marker_id,
            rotation_vector=rvec.reshape(3, 1),
            translation_vector=tvec.reshape(3, 1),
            rotation_matrix=rotation_matrix,
            reprojection_error=self._reprojection_error(object_points, rvec, tvec, image_points),
            timestamp=timestamp,
        )

    # ------------------------------------------------------------------ #
    # Utility helpers
    # ------------------------------------------------------------------ #
    def _reprojection_error(
        self,
        object_points: np.ndarray,
        rvec: np.ndarray,
        tvec: np.ndarray,
        image_points: np.ndarray,
    ) -> float:
        projected, _ = cv2.projectPoints(
            object_points,
            rvec,
            tvec,
            self.calibration.camera_matrix,
            self.calibration.dist_coeffs,
        )
        projected = projected.reshape(-1, 2)
        error = np.linalg.norm(projected - image_points, axis=1).mean()
        return float(error)

    def project_points(
        self, points_3d: np.ndarray, pose: PoseResult
    ) -> Optional[np.ndarray]:
        """Project 3D points in the marker frame into the image."""
        if self.calibration is None:
            return None
        if not pose or not pose.success or pose.rotation_vector is None or pose.translation_vector is None:
            return None
        image_points, _ = cv2.projectPoints(
            points_3d,
            pose.rotation_vector,
            pose.translation_vector,
            self.calibration.camera_matrix,
            self.calibration.dist_coeffs,
        )
        return image_points.reshape(-1, 2)

    def project_axes(self, pose: PoseResult, axis_length: float = 0.05) -> Optional[np.ndarray]:
        """Project canonical XYZ axes for visualisation."""
        axes = np.array(
            [
                [0.0, 0.0, 0.0],
                [axis_length, 0.0, 0.0],
                [0.0, axis_length, 0.0],
                [0.0, 0.0, axis_length],
            ],
            dtype=np.float64,
        )
        return self.project_points(axes, pose)

    def decompose_pose(self, pose: PoseResult) -> Optional[Dict]:
        """Decompose pose into interpretable components.

        Returns:
            Dictionary with:
            - euler_angles: (roll, pitch, yaw) in degrees
            - position: (x, y, z) translation
            - distance: distance from camera
        """
        if not pose.success or pose.rotation_matrix is None or pose.translation_vector is None:
            return None

        R = pose.rotation_matrix
        sy = np.sqrt(R[0, 0] ** 2 + R[1, 0] ** 2)
        singular = sy < 1e-6

        if not singular:
            roll = np.arctan2(R[2, 1], R[2, 2])
            pitch = np.arctan2(-R[2, 0], sy)
            yaw = np.arctan2(R[1, 0], R[0, 0])
        else:
            roll = np.arctan2(-R[1, 2], R[1, 1])
            pitch = np.arctan2(-R[2, 0], sy)
            yaw = 0

        t = pose.translation_vector.flatten()

        return {
            "euler_angles": (float(np.degrees(roll)), float(np.degrees(pitch)), float(np.degrees(yaw))),
            "position": (float(t[0]), float(t[1]), float(t[2])),
            "distance": float(np.linalg.norm(t)),
        }

