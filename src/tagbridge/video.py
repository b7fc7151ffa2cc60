"""
Video input sources.

Each source delivers grayscale frames to a callback as they arrive. The
libcamera source is driven by picamera2's request-completed callback; the
OpenCV and file sources run a reader thread that calls the same callback.
"""

import importlib
import importlib.util
import logging
import platform
import threading
import time
from typing import Callable, List, Optional, Sequence

import cv2
import numpy as np

from .frames import UnsupportedFrameError, flip_horizontal, frame_from_buffer, to_grayscale

FrameCallback = Callable[[np.ndarray, int, float], None]


class FrameSource:
    """Base class for callback-driven frame sources."""

    name = "source"

    def __init__(self, config=None):
        self.config = config or {}
        self.logger = logging.getLogger(__name__)
        self.flip = self.config.get('flip_horizontal', False)

        self._callback: Optional[FrameCallback] = None
        self._running = False
        self._sequence = 0

        self.frames_delivered = 0
        self.last_frame_time: Optional[float] = None
        self.last_error: Optional[BaseException] = None
        # Set when a finite source has nothing more to deliver.
        self.finished = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, callback: FrameCallback) -> bool:
        """Start delivering frames to ``callback``.

        Returns:
            bool: True if the source started, False otherwise
        """
        raise NotImplementedError

    def stop(self):
        """Stop delivering frames and release the device."""
        raise NotImplementedError

    def _reset_state(self, callback: FrameCallback):
        self._callback = callback
        self.last_error = None
        self.last_frame_time = time.monotonic()
        self.finished.clear()

    def _deliver(self, frame: np.ndarray, sequence: Optional[int] = None, timestamp: Optional[float] = None):
        if self.flip:
            frame = flip_horizontal(frame)
        if sequence is None:
            sequence = self._sequence
        self._sequence = sequence + 1
        self.frames_delivered += 1
        self.last_frame_time = time.monotonic()
        callback = self._callback
        if callback is not None:
            callback(frame, sequence, time.time() if timestamp is None else timestamp)


def libcamera_available() -> bool:
    """Return True if the picamera2 bindings can be imported."""
    return importlib.util.find_spec("picamera2") is not None


def list_cameras() -> List[dict]:
    """List cameras known to libcamera (empty when picamera2 is not installed)."""
    if not libcamera_available():
        return []
    picamera2 = importlib.import_module("picamera2")
    return list(picamera2.Picamera2.global_camera_info())


class LibcameraSource(FrameSource):
    """libcamera capture through picamera2.

    A single stream is configured at the requested size and format with a
    fixed exposure. Each completed request is mapped in place, converted to
    grayscale and forwarded; picamera2 recycles the buffers once the callback
    returns.
    """

    name = "libcamera"

    def __init__(self, config=None, camera_factory=None, mapped_array=None):
        super().__init__(config)
        self.camera_id = self.config.get('camera_id', 0)
        self.width = self.config.get('width', 1200)
        self.height = self.config.get('height', 800)
        self.pixel_format = self.config.get('pixel_format', 'YUV420')
        self.exposure_time_us = self.config.get('exposure_time_us', 5000)
        self.buffer_count = self.config.get('buffer_count', 4)

        self._camera_factory = camera_factory
        self._mapped_array = mapped_array
        self.picam2 = None
        self.stride: Optional[int] = None

    def initialize(self) -> bool:
        """Open and configure the camera.

        Returns:
            bool: True if initialization successful, False otherwise
        """
        if self._running:
            self.logger.warning("Camera already running")
            return False

        self.cleanup()

        if self._camera_factory is None or self._mapped_array is None:
            if not libcamera_available():
                self.last_error = RuntimeError("picamera2 is not installed")
                self.logger.error("picamera2 is not installed; install the 'libcamera' extra")
                return False
            picamera2 = importlib.import_module("picamera2")
            self._camera_factory = self._camera_factory or picamera2.Picamera2
            self._mapped_array = self._mapped_array or picamera2.MappedArray

        try:
            self.picam2 = self._camera_factory(self.camera_id)
            controls = {}
            if self.exposure_time_us:
                controls["ExposureTime"] = int(self.exposure_time_us)
            camera_config = self.picam2.create_video_configuration(
                main={"size": (self.width, self.height), "format": self.pixel_format},
                buffer_count=self.buffer_count,
                controls=controls,
            )
            self.picam2.configure(camera_config)

            stream = self.picam2.stream_configuration("main")
            self.width, self.height = stream["size"]
            self.pixel_format = stream.get("format", self.pixel_format)
            self.stride = stream.get("stride")
        except Exception as e:
            # picamera2 reports device and configuration failures with assorted exception types.
            self.last_error = e
            self.logger.error("Failed to initialize camera %s: %s", self.camera_id, e)
            self.cleanup()
            return False

        self.logger.info(
            "Configuration: %sx%s %s (stride %s)", self.width, self.height, self.pixel_format, self.stride
        )
        return True

    def start(self, callback: FrameCallback) -> bool:
        if self._running:
            return False
        if self.picam2 is None and not self.initialize():
            return False

        self._reset_state(callback)
        self.picam2.post_callback = self._request_complete
        self._running = True
        try:
            self.picam2.start()
        except Exception as e:
            self.last_error = e
            self.logger.error("Failed to start camera: %s", e)
            self.picam2.post_callback = None
            self._running = False
            return False

        self.logger.info("Camera started")
        return True

    def _request_complete(self, request):
        """Map the completed buffer, convert it and forward the frame."""
        if not self._running:
            return

        try:
            with self._mapped_array(request, "main") as mapped:
                if mapped.array is None or mapped.array.size == 0:
                    return
                frame = frame_from_buffer(mapped.array, self.width, self.height, self.pixel_format, self.stride)
                self._deliver(frame)
        except UnsupportedFrameError as e:
            self.logger.warning("%s", e)
        except Exception as e:
            # Runs on the picamera2 event thread; nothing may propagate into it.
            self.last_error = e
            self.logger.exception("Failed to process completed request")

    def stop(self):
        if self._running and self.picam2 is not None:
            try:
                self.picam2.stop()
            finally:
                self.picam2.post_callback = None
                self._running = False
        self.cleanup()
        self.logger.info("Camera stopped")

    def cleanup(self):
        if self.picam2 is not None:
            self.picam2.close()
            self.picam2 = None


class OpenCVSource(FrameSource):
    """Capture through ``cv2.VideoCapture`` with a reader thread."""

    name = "opencv"

    def __init__(self, config=None):
        super().__init__(config)
        self.cap: Optional[cv2.VideoCapture] = None

        self.camera_id = self.config.get('camera_id', 0)
        self.width = self.config.get('width', 640)
        self.height = self.config.get('height', 480)
        self.fps = self.config.get('fps', 30)

        self.backend_priority = self._resolve_backend_priority(self.config.get('backend_priority'))
        self.selected_backend: Optional[int] = None

        self.max_init_attempts = self.config.get('init_attempts', 10)
        self.max_read_failures = self.config.get('max_read_failures', 30)

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @staticmethod
    def _resolve_backend_priority(user_priority: Optional[List[int]]) -> List[int]:
        """Determine backend priority order based on platform and config."""
        if user_priority:
            return user_priority

        system = platform.system()
        backends: List[int] = []

        def add_backend(name: str):
            value = getattr(cv2, name, None)
            if value is not None:
                backends.append(value)

        if system == 'Darwin':
            add_backend('CAP_AVFOUNDATION')
        elif system == 'Windows':
            add_backend('CAP_DSHOW')
            add_backend('CAP_MSMF')
        else:
            add_backend('CAP_V4L2')
            add_backend('CAP_GSTREAMER')

        add_backend('CAP_ANY')
        return backends or [cv2.CAP_ANY]

    @staticmethod
    def _backend_name(backend: Optional[int]) -> str:
        """Return human-readable name for backend constant."""
        if backend is None:
            return "Unknown"

        for attr in dir(cv2):
            if attr.startswith("CAP_") and getattr(cv2, attr) == backend:
                return attr
        return f"Backend({backend})"

    def initialize(self) -> bool:
        """Initialize video capture.

        Returns:
            bool: True if initialization successful, False otherwise
        """
        self.cleanup()

        for backend in self.backend_priority:
            self.logger.info(
                "Attempting to initialize camera %s using backend %s",
                self.camera_id,
                self._backend_name(backend),
            )
            cap = cv2.VideoCapture(self.camera_id, backend)

            if not cap.isOpened():
                self.logger.warning(
                    "Failed to open camera %s with backend %s",
                    self.camera_id,
                    self._backend_name(backend),
                )
                cap.release()
                continue

            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
            cap.set(cv2.CAP_PROP_FPS, self.fps)

            test_frame = self._warmup_camera(cap)
            if test_frame is None:
                self.logger.warning(
                    "Camera opened but failed to provide frames (backend %s)",
                    self._backend_name(backend),
                )
                cap.release()
                continue

            self.cap = cap
            self.selected_backend = backend
            info = self.get_frame_info()
            self.logger.info(
                "Camera initialized with backend %s: %sx%s @ %sfps",
                info['backend'],
                info['width'],
                info['height'],
                info['fps'],
            )
            return True

        self.last_error = RuntimeError(f"Unable to open camera {self.camera_id}")
        self.logger.error(
            "Unable to initialize camera %s with available backends: %s",
            self.camera_id,
            [self._backend_name(b) for b in self.backend_priority],
        )
        return False

    def _warmup_camera(self, cap: cv2.VideoCapture) -> Optional[np.ndarray]:
        """Capture a few frames to allow camera to warm up."""
        for attempt in range(1, self.max_init_attempts + 1):
            ret, frame = cap.read()
            if ret and frame is not None and frame.size > 0:
                if frame.mean() == 0:
                    self.logger.debug("Warmup frame %s captured but appears black; retrying...", attempt)
                    continue
                return frame
        return None

    def get_frame_info(self):
        """Get information about the current video stream."""
        if self.cap is None:
            return {}

        return {
            'width': int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            'height': int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            'fps': int(self.cap.get(cv2.CAP_PROP_FPS)),
            'backend': self._backend_name(self.selected_backend),
        }

    def start(self, callback: FrameCallback) -> bool:
        if self._running:
            return False
        if (self.cap is None or not self.cap.isOpened()) and not self.initialize():
            return False

        self._reset_state(callback)
        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._read_loop, name="opencv-capture", daemon=True)
        self._thread.start()
        return True

    def _read_loop(self):
        failures = 0
        try:
            while not self._stop_event.is_set():
                ret, frame = self.cap.read()
                if not ret or frame is None:
                    failures += 1
                    if failures >= self.max_read_failures:
                        self.last_error = RuntimeError("Camera stopped delivering frames")
                        self.logger.error("Camera %s stopped delivering frames", self.camera_id)
                        break
                    time.sleep(0.01)
                    continue

                failures = 0
                try:
                    gray = to_grayscale(frame)
                except UnsupportedFrameError as e:
                    self.logger.warning("%s", e)
                    continue
                self._deliver(gray)
        except Exception as e:
            self.last_error = e
            self.logger.exception("Capture thread for camera %s failed", self.camera_id)
        finally:
            self._running = False

    def stop(self):
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None
        self._running = False
        self.cleanup()

    def cleanup(self):
        """Clean up video resources."""
        if self.cap is not None:
            self.cap.release()
            self.cap = None
            self.logger.info("Video source cleaned up")


class VideoFileSource(FrameSource):
    """Replays a video file or an in-memory frame sequence."""

    name = "file"

    def __init__(self, config=None, frames: Optional[Sequence[np.ndarray]] = None):
        super().__init__(config)
        self.video_path = self.config.get('video_path')
        self.loop = self.config.get('loop_video', False)
        # 0 replays as fast as frames can be processed.
        self.fps = self.config.get('playback_fps', 0)
        self.frames = list(frames) if frames is not None else None

        if self.frames is None and not self.video_path:
            raise ValueError("VideoFileSource needs a video_path or frames")

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self, callback: FrameCallback) -> bool:
        if self._running:
            return False

        reader = self._open()
        if reader is None:
            return False

        self._reset_state(callback)
        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._play, args=(reader,), name="file-replay", daemon=True)
        self._thread.start()
        return True

    def _open(self):
        if self.frames is not None:
            if not self.frames:
                self.logger.error("No frames to replay")
                return None
            return iter(self.frames)

        cap = cv2.VideoCapture(self.video_path)
        if not cap.isOpened():
            self.last_error = RuntimeError(f"Failed to open video file: {self.video_path}")
            self.logger.error("Failed to open video file: %s", self.video_path)
            cap.release()
            return None
        self.logger.info("Video file loaded: %s", self.video_path)
        return cap

    def _next_frame(self, reader):
        if isinstance(reader, cv2.VideoCapture):
            ret, frame = reader.read()
            return frame if ret else None
        return next(reader, None)

    def _rewind(self, reader):
        if isinstance(reader, cv2.VideoCapture):
            reader.set(cv2.CAP_PROP_POS_FRAMES, 0)
            return reader
        return iter(self.frames)

    def _play(self, reader):
        interval = 1.0 / self.fps if self.fps else 0.0
        try:
            while not self._stop_event.is_set():
                frame = self._next_frame(reader)
                if frame is None:
                    if not self.loop:
                        break
                    reader = self._rewind(reader)
                    continue
                try:
                    gray = to_grayscale(frame)
                except UnsupportedFrameError as e:
                    self.logger.warning("%s", e)
                    continue
                self._deliver(gray)
                if interval:
                    self._stop_event.wait(interval)
        except Exception as e:
            self.last_error = e
            self.logger.exception("Replay failed")
        finally:
            if isinstance(reader, cv2.VideoCapture):
                reader.release()
            # Set before clearing _running; a stopped, unfinished source counts as failed.
            if self.last_error is None:
                self.finished.set()
            self._running = False

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the sequence has been fully delivered."""
        return self.finished.wait(timeout)

    def stop(self):
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None
        self._running = False


def create_source(config=None) -> FrameSource:
    """Build a frame source from the ``camera`` configuration section.

    ``backend`` is one of ``libcamera``, ``opencv``, ``file`` or ``auto``.
    ``auto`` replays ``video_path`` when set, otherwise uses libcamera when a
    camera is listed there and falls back to OpenCV.
    """
    config = config or {}
    backend = str(config.get('backend', 'auto')).lower()
    logger = logging.getLogger(__name__)

    if backend == 'auto':
        if config.get('video_path'):
            backend = 'file'
        elif list_cameras():
            backend = 'libcamera'
        else:
            backend = 'opencv'
        logger.info("Selected %s capture backend", backend)

    if backend == 'libcamera':
        return LibcameraSource(config)
    if backend == 'opencv':
        return OpenCVSource(config)
    if backend == 'file':
        return VideoFileSource(config)
    raise ValueError(f"Unknown capture backend: {backend}")
