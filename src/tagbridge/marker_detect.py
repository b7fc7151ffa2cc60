"""
Marker detection module.

This module handles detection of AprilTag and ArUco fiducials through the
OpenCV ``aruco`` detector.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import cv2
import numpy as np

LOGGER = logging.getLogger(__name__)

DEFAULT_DICTIONARY = "apriltag_36h11"

_DICT_NAME_TO_ATTR = {
    "apriltag_16h5": "DICT_APRILTAG_16h5",
    "apriltag_25h9": "DICT_APRILTAG_25h9",
    "apriltag_36h10": "DICT_APRILTAG_36h10",
    "apriltag_36h11": "DICT_APRILTAG_36h11",
    "aruco_original": "DICT_ARUCO_ORIGINAL",
    "4x4_50": "DICT_4X4_50",
    "4x4_100": "DICT_4X4_100",
    "4x4_250": "DICT_4X4_250",
    "4x4_1000": "DICT_4X4_1000",
    "5x5_50": "DICT_5X5_50",
    "5x5_100": "DICT_5X5_100",
    "5x5_250": "DICT_5X5_250",
    "5x5_1000": "DICT_5X5_1000",
    "6x6_50": "DICT_6X6_50",
    "6x6_100": "DICT_6X6_100",
    "6x6_250": "DICT_6X6_250",
    "6x6_1000": "DICT_6X6_1000",
}


def dictionary_id(name: str) -> int:
    """Resolve a dictionary name such as ``apriltag_36h11`` to its OpenCV constant."""
    key = name.lower()
    if key not in _DICT_NAME_TO_ATTR:
        raise ValueError(
            f"Unsupported dictionary: '{name}'. Choose one of: {sorted(_DICT_NAME_TO_ATTR)}"
        )
    return getattr(cv2.aruco, _DICT_NAME_TO_ATTR[key])


@dataclass
class MarkerDetection:
    """A single detected marker: its id and four image corners (4x2, clockwise from top-left)."""

    marker_id: int
    corners: np.ndarray

    def corners_as_list(self) -> List[List[float]]:
        return [[float(x), float(y)] for x, y in self.corners]


class MarkerDetector:
    """Handles marker detection in video frames."""

    def __init__(self, config=None):
        """Initialize marker detector.

        Args:
            config: Detector configuration dictionary with ``dictionary`` and
                optional ``parameters`` overrides for ``cv2.aruco.DetectorParameters``
        """
        self.config = config or {}
        self.dictionary_name = self.config.get("dictionary", DEFAULT_DICTIONARY)
        self.parameter_overrides: Dict = self.config.get("parameters") or {}

        # Fail fast on an unknown family, before any camera is opened.
        self.dict_enum = dictionary_id(self.dictionary_name)

        self.aruco_dict = None
        self.params = None
        self.detector: Optional[cv2.aruco.ArucoDetector] = None
        self.initialized = False

    def initialize(self):
        """Set up the dictionary, parameters and detector."""
        self.aruco_dict = cv2.aruco.getPredefinedDictionary(self.dict_enum)
        self.params = cv2.aruco.DetectorParameters()
        for key, value in self.parameter_overrides.items():
            if not hasattr(self.params, key):
                raise ValueError(f"Unknown detector parameter: {key}")
            setattr(self.params, key, value)
        self.detector = cv2.aruco.ArucoDetector(self.aruco_dict, self.params)
        self.initialized = True
        LOGGER.info("Marker detector initialized with dictionary %s", self.dictionary_name)
        return True

    def detect(self, frame) -> List[MarkerDetection]:
        """Detect markers in the given frame.

        Args:
            frame: Grayscale or BGR image

        Returns:
            list[MarkerDetection]: Detections in the order OpenCV reports them
        """
        if not self.initialized:
            self.initialize()

        if frame is None or frame.size == 0:
            return []

        corners, ids, _ = self.detector.detectMarkers(frame)
        if ids is None or len(ids) == 0:
            return []

        LOGGER.debug("Detected %d markers", len(ids))
        return [
            MarkerDetection(
                marker_id=int(marker_id),
                corners=np.asarray(marker_corners, dtype=np.float32).reshape(4, 2),
            )
            for marker_id, marker_corners in zip(ids.flatten(), corners)
        ]

    def get_marker_corners(self, marker: MarkerDetection) -> np.ndarray:
        """Extract corner coordinates from detected marker."""
        return marker.corners

    def get_marker_id(self, marker: MarkerDetection) -> int:
        """Extract ID from detected marker."""
        return marker.marker_id
