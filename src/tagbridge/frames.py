"""
Pixel-format conversion for captured camera buffers.

Every frame handed to the detector is a 2-D ``uint8`` grayscale image. Camera
buffers arrive as raw bytes (8-bit or 16-bit monochrome, a YUV luma plane, or
packed RGB), decoded frames arrive as numpy arrays from OpenCV.
"""

from __future__ import annotations

from typing import Optional, Union

import cv2
import numpy as np

MONO8_FORMATS = {"R8", "GREY", "Y8", "MONO8"}
# Significant bits per 16-bit sample; R10 and R12 samples are right-aligned.
MONO16_FORMATS = {"R16": 16, "Y16": 16, "MONO16": 16, "R10": 10, "R12": 12}
YUV_FORMATS = {"YUV420", "YVU420", "NV12", "NV21", "YUYV"}

# picamera2 names packed formats by their DRM fourcc, so "RGB888" is B,G,R in memory.
PACKED_FORMATS = {
    "RGB888": (3, cv2.COLOR_BGR2GRAY),
    "BGR888": (3, cv2.COLOR_RGB2GRAY),
    "XRGB8888": (4, cv2.COLOR_BGRA2GRAY),
    "XBGR8888": (4, cv2.COLOR_RGBA2GRAY),
}

BufferLike = Union[bytes, bytearray, memoryview, np.ndarray]


class UnsupportedFrameError(ValueError):
    """Raised when a buffer does not match any supported layout."""


def normalize_format(pixel_format: Optional[str]) -> Optional[str]:
    if pixel_format is None:
        return None
    return str(pixel_format).strip().upper()


def frame_from_buffer(
    buffer: BufferLike,
    width: int,
    height: int,
    pixel_format: Optional[str] = None,
    stride: Optional[int] = None,
) -> np.ndarray:
    """Convert a raw camera buffer into a grayscale ``uint8`` frame.

    Args:
        buffer: Raw plane data (bytes-like or numpy array)
        width: Frame width in pixels
        height: Frame height in pixels
        pixel_format: libcamera/picamera2 format name; when omitted the
            layout is inferred from the buffer size (8-bit or 16-bit mono)
        stride: Bytes per row when the buffer is padded

    Returns:
        np.ndarray: ``height x width`` grayscale image

    Raises:
        UnsupportedFrameError: If the buffer size does not match the format
    """
    data = _as_bytes(buffer)
    fmt = normalize_format(pixel_format)

    if fmt in PACKED_FORMATS:
        channels, code = PACKED_FORMATS[fmt]
        packed = _rows(data, width * channels, height, stride)
        return cv2.cvtColor(packed.reshape(height, width, channels), code)

    if fmt in YUV_FORMATS:
        if fmt == "YUYV":
            packed = _rows(data, width * 2, height, stride)
            return np.ascontiguousarray(packed[:, 0::2])
        # Planar and semi-planar YUV start with the full-resolution luma plane.
        return _rows(data, width, height, stride)

    if fmt in MONO16_FORMATS:
        return _convert_16bit(_rows(data, width * 2, height, stride), width, height, MONO16_FORMATS[fmt])

    if fmt is not None and fmt not in MONO8_FORMATS:
        raise UnsupportedFrameError(f"Unsupported pixel format: {pixel_format}")

    if stride is not None and stride > width:
        # Unnamed rows at least twice the width wide carry 16-bit samples.
        if fmt is None and stride >= width * 2 and data.size >= stride * (height - 1) + width * 2:
            return _convert_16bit(_rows(data, width * 2, height, stride), width, height)
        return _rows(data, width, height, stride)

    expected_8bit = width * height
    expected_16bit = expected_8bit * 2
    if data.size == expected_8bit:
        return data.reshape(height, width).copy()
    if data.size == expected_16bit:
        return _convert_16bit(data, width, height)

    raise UnsupportedFrameError(
        f"Unexpected frame size: {data.size} expected 8bit: {expected_8bit} or 16bit: {expected_16bit}"
    )


def to_grayscale(frame: np.ndarray) -> np.ndarray:
    """Convert a decoded frame (gray, BGR, BGRA or 16-bit) to ``uint8`` gray."""
    if frame is None or frame.size == 0:
        raise UnsupportedFrameError("Empty frame")

    if frame.ndim == 3 and frame.shape[2] == 1:
        frame = frame[:, :, 0]

    if frame.ndim == 2:
        if frame.dtype == np.uint8:
            return frame
        if frame.dtype == np.uint16:
            return cv2.convertScaleAbs(frame, alpha=1.0 / 256.0)
        raise UnsupportedFrameError(f"Unsupported frame dtype: {frame.dtype}")

    if frame.ndim == 3 and frame.dtype == np.uint8:
        if frame.shape[2] == 3:
            return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        if frame.shape[2] == 4:
            return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)

    raise UnsupportedFrameError(f"Unsupported frame shape: {frame.shape} ({frame.dtype})")


def flip_horizontal(frame: np.ndarray) -> np.ndarray:
    """Mirror a frame around its vertical axis."""
    return cv2.flip(frame, 1)


def _as_bytes(buffer: BufferLike) -> np.ndarray:
    if isinstance(buffer, np.ndarray):
        return np.ascontiguousarray(buffer).view(np.uint8).reshape(-1)
    return np.frombuffer(buffer, dtype=np.uint8)


def _rows(data: np.ndarray, row_bytes: int, height: int, stride: Optional[int]) -> np.ndarray:
    """Return ``height`` rows of ``row_bytes`` each, dropping stride padding."""
    pitch = stride if stride is not None else row_bytes
    if pitch < row_bytes:
        raise UnsupportedFrameError(f"Stride {pitch} is smaller than row size {row_bytes}")
    needed = pitch * (height - 1) + row_bytes
    if data.size < needed:
        raise UnsupportedFrameError(f"Unexpected frame size: {data.size} expected at least {needed}")
    if data.size < pitch * height:
        # The final row may omit its padding.
        data = np.concatenate([data, np.zeros(pitch * height - data.size, dtype=np.uint8)])
    rows = data[: pitch * height].reshape(height, pitch)
    return rows[:, :row_bytes].copy()


def _convert_16bit(data: np.ndarray, width: int, height: int, bits: int = 16) -> np.ndarray:
    frame16 = np.ascontiguousarray(data).view("<u2").reshape(height, width)
    return cv2.convertScaleAbs(frame16, alpha=1.0 / (1 << (bits - 8)))
