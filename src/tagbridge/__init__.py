"""
TAGBRIDGE - AprilTag pose reporting for host applications.

This package provides functionality for:
- Callback-driven camera capture (libcamera via picamera2, OpenCV, video files)
- Pixel-format conversion of camera buffers
- AprilTag/ArUco marker detection
- Marker pose estimation and smoothing
- A pollable detector object and UDP publishing for a host game engine
"""

from .calibration import (
    CalibrationData,
    CalibrationError,
    load_camera_parameters,
    save_camera_parameters,
)
from .frames import UnsupportedFrameError, frame_from_buffer, to_grayscale
from .marker_detect import MarkerDetection, MarkerDetector
from .pose import MarkerPoseFilter, PoseEstimator, PoseFilter, PoseFilterConfig, PoseResult
from .video import FrameSource, LibcameraSource, OpenCVSource, VideoFileSource, create_source
from .pipeline import Detection, DetectionPipeline, PipelineConfig
from .plugin import AprilTagDetector
from .publisher import DetectionPublisher

__version__ = "0.1.0"

__all__ = [
    # Calibration
    "CalibrationData",
    "CalibrationError",
    "load_camera_parameters",
    "save_camera_parameters",
    # Frames
    "UnsupportedFrameError",
    "frame_from_buffer",
    "to_grayscale",
    # Detection & pose
    "MarkerDetection",
    "MarkerDetector",
    "MarkerPoseFilter",
    "PoseEstimator",
    "PoseFilter",
    "PoseFilterConfig",
    "PoseResult",
    # Capture
    "FrameSource",
    "LibcameraSource",
    "OpenCVSource",
    "VideoFileSource",
    "create_source",
    # Pipeline & host
    "Detection",
    "DetectionPipeline",
    "PipelineConfig",
    "AprilTagDetector",
    "DetectionPublisher",
]
