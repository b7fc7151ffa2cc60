"""
Detection pipeline.

Frames arrive from a capture source callback and are processed as they come:
marker detection, pose estimation, EMA smoothing. The result list for the most
recent frame replaces the previous one under a single lock, and a polling
consumer copies it out with :meth:`DetectionPipeline.get_latest_detections`.

A supervisor thread restarts the capture source when it reports an error or
stops delivering frames.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from .marker_detect import MarkerDetector
from .pose import MarkerPoseFilter, PoseEstimator, PoseFilterConfig
from .video import FrameSource

LOGGER = logging.getLogger(__name__)


@dataclass
class Detection:
    """A published marker result."""

    marker_id: int
    rvec: List[float]
    tvec: List[float]
    corners: List[List[float]]
    pose_valid: bool = False
    sequence: int = 0
    timestamp: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "id": self.marker_id,
            "rvec": list(self.rvec),
            "tvec": list(self.tvec),
            "corners": [list(c) for c in self.corners],
            "pose_valid": self.pose_valid,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
        }


@dataclass
class PipelineConfig:
    """Supervision settings for the capture loop."""

    frame_timeout: float = 2.0  # 0 disables the stall check
    max_restarts: int = 0  # 0 = unlimited
    restart_delay: float = 1.0
    supervise_interval: float = 0.5

    @classmethod
    def from_dict(cls, config: Optional[Dict]) -> PipelineConfig:
        config = config or {}
        defaults = cls()
        return cls(
            frame_timeout=config.get("frame_timeout", defaults.frame_timeout),
            max_restarts=config.get("max_restarts", defaults.max_restarts),
            restart_delay=config.get("restart_delay", defaults.restart_delay),
            supervise_interval=config.get("supervise_interval", defaults.supervise_interval),
        )


@dataclass
class PipelineStats:
    frames_processed: int = 0
    frames_with_markers: int = 0
    frame_errors: int = 0
    restarts: int = 0
    fps: float = 0.0
    last_error: Optional[str] = None
    marker_counts: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "frames_processed": self.frames_processed,
            "frames_with_markers": self.frames_with_markers,
            "frame_errors": self.frame_errors,
            "restarts": self.restarts,
            "fps": self.fps,
            "last_error": self.last_error,
            "marker_counts": dict(self.marker_counts),
        }


class DetectionPipeline:
    """Runs detection on every captured frame and republishes the latest results."""

    def __init__(
        self,
        detector: MarkerDetector,
        estimator: PoseEstimator,
        pose_filter: Optional[MarkerPoseFilter] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.detector = detector
        self.estimator = estimator
        self.pose_filter = pose_filter
        self.config = config or PipelineConfig()

        self.source: Optional[FrameSource] = None

        self._lock = threading.Lock()
        self._frame_ready = threading.Condition(self._lock)
        self._latest: List[Detection] = []
        self._stats = PipelineStats()
        self._last_frame_clock: Optional[float] = None

        self._stop_event = threading.Event()
        self._supervisor: Optional[threading.Thread] = None
        self._running = False

    @classmethod
    def from_config(cls, config: Dict) -> DetectionPipeline:
        """Build detector, estimator and smoothing from a full configuration dict."""
        detector = MarkerDetector(config.get("detector"))
        estimator = PoseEstimator(config.get("pose"))
        pose_filter = MarkerPoseFilter(PoseFilterConfig.from_dict(config.get("pose_filter")))
        return cls(detector, estimator, pose_filter, PipelineConfig.from_dict(config.get("pipeline")))

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------ #
    # Frame processing
    # ------------------------------------------------------------------ #
    def process_frame(
        self,
        frame: np.ndarray,
        sequence: int = 0,
        timestamp: Optional[float] = None,
    ) -> List[Detection]:
        """Detect markers in ``frame``, estimate and smooth poses, and publish them.

        The published list always reflects the most recent frame, so a frame
        without markers publishes an empty list.
        """
        timestamp = time.time() if timestamp is None else timestamp
        now = time.monotonic()

        results: List[Detection] = []
        for marker in self.detector.detect(frame):
            pose = self.estimator.estimate_marker_pose(marker, timestamp)
            if self.pose_filter is not None:
                pose = self.pose_filter.filter(pose, now)
            results.append(
                Detection(
                    marker_id=marker.marker_id,
                    rvec=pose.rvec_list(),
                    tvec=pose.tvec_list(),
                    corners=marker.corners_as_list(),
                    pose_valid=pose.success,
                    sequence=sequence,
                    timestamp=timestamp,
                )
            )

        if self.pose_filter is not None:
            self.pose_filter.prune(now)

        with self._lock:
            self._latest = results
            self._update_stats(results, now)
            self._frame_ready.notify_all()

        return results

    def _update_stats(self, results: List[Detection], now: float):
        stats = self._stats
        stats.frames_processed += 1
        if results:
            stats.frames_with_markers += 1
        for detection in results:
            stats.marker_counts[detection.marker_id] = stats.marker_counts.get(detection.marker_id, 0) + 1

        if self._last_frame_clock is not None:
            dt = now - self._last_frame_clock
            if dt > 0:
                instant = 1.0 / dt
                stats.fps = instant if stats.fps == 0.0 else 0.9 * stats.fps + 0.1 * instant
        self._last_frame_clock = now

    def _on_frame(self, frame: np.ndarray, sequence: int, timestamp: float):
        """Capture callback; errors are recorded so the capture thread keeps running."""
        try:
            self.process_frame(frame, sequence, timestamp)
        except Exception as e:
            with self._lock:
                self._stats.frame_errors += 1
                self._stats.last_error = str(e)
            LOGGER.exception("Processing frame %d failed", sequence)

    # ------------------------------------------------------------------ #
    # Shared state
    # ------------------------------------------------------------------ #
    def get_latest_detections(self) -> List[Dict]:
        """Return a copy of the most recent frame's detections."""
        with self._lock:
            return [d.to_dict() for d in self._latest]

    def stats(self) -> Dict:
        with self._lock:
            return self._stats.to_dict()

    def wait_for_frames(self, count: int, timeout: Optional[float] = None) -> bool:
        """Block until at least ``count`` frames have been processed."""
        with self._frame_ready:
            return self._frame_ready.wait_for(lambda: self._stats.frames_processed >= count, timeout)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def attach(self, source: FrameSource):
        if self._running:
            raise RuntimeError("Cannot change source while running")
        self.source = source

    def start(self) -> bool:
        if self._running:
            return False
        if self.source is None:
            LOGGER.error("No capture source attached")
            return False

        if not self.detector.initialized:
            self.detector.initialize()
        if not self.estimator.initialized:
            self.estimator.initialize()

        if not self.source.start(self._on_frame):
            LOGGER.error("Failed to start %s capture", self.source.name)
            return False

        self._running = True
        self._stop_event.clear()
        self._supervisor = threading.Thread(target=self._supervise, name="capture-supervisor", daemon=True)
        self._supervisor.start()
        LOGGER.info("Detection pipeline started with %s capture", self.source.name)
        return True

    def stop(self):
        self._stop_event.set()
        if self._supervisor is not None and self._supervisor is not threading.current_thread():
            self._supervisor.join(timeout=5.0)
        self._supervisor = None
        if self.source is not None:
            self.source.stop()
        if self.pose_filter is not None:
            self.pose_filter.reset()
        if self._running:
            LOGGER.info("Detection pipeline stopped")
        self._running = False

    def _supervise(self):
        while not self._stop_event.wait(self.config.supervise_interval):
            reason = self._failure_reason()
            if reason is None:
                continue
            if not self._restart(reason):
                return

    def _failure_reason(self) -> Optional[str]:
        source = self.source
        if source.finished.is_set():
            return None
        if source.last_error is not None:
            return f"capture error: {source.last_error}"
        if not source.is_running:
            return "capture stopped"
        if self.config.frame_timeout and source.last_frame_time is not None:
            idle = time.monotonic() - source.last_frame_time
            if idle > self.config.frame_timeout:
                return f"no frame for {idle:.1f}s"
        return None

    def _restart(self, reason: str) -> bool:
        """Restart the capture source. Returns False once restarts are exhausted."""
        with self._lock:
            restarts = self._stats.restarts
            self._stats.last_error = reason

        if self.config.max_restarts and restarts >= self.config.max_restarts:
            LOGGER.error("Capture failed (%s); giving up after %d restarts", reason, restarts)
            return False

        LOGGER.warning("Restarting %s capture: %s", self.source.name, reason)
        self.source.stop()
        if self._stop_event.wait(self.config.restart_delay):
            return False

        started = self.source.start(self._on_frame)
        with self._lock:
            self._stats.restarts += 1
        if not started:
            LOGGER.error("Capture restart %d failed", restarts + 1)
        return True
