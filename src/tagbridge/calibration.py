"""
Camera calibration parameters.

Loads intrinsics from the JSON layout written next to a host project
(``{"calibration": {"camera_matrix": [[...]*3], "dist_coeffs": [[k1], [k2], [p1], [p2]]}}``)
or from a TOML file with ``camera_matrix``/``dist_coeffs`` keys.
"""

from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence

import numpy as np

LOGGER = logging.getLogger(__name__)

NUM_DIST_COEFFS = 4


class CalibrationError(ValueError):
    """Raised when camera parameters are missing or malformed."""


@dataclass
class CalibrationData:
    """Container for camera calibration parameters."""

    camera_matrix: np.ndarray
    dist_coeffs: np.ndarray

    def matrix_as_list(self) -> List[float]:
        """Return the camera matrix as 9 floats, row-major."""
        return [float(v) for v in self.camera_matrix.reshape(-1)]

    def coeffs_as_list(self) -> List[float]:
        """Return the distortion coefficients as a flat list."""
        return [float(v) for v in self.dist_coeffs.reshape(-1)]

    def to_dict(self) -> Dict[str, Any]:
        """Return the JSON-ready ``calibration`` document."""
        return {
            "calibration": {
                "camera_matrix": self.camera_matrix.tolist(),
                "dist_coeffs": [[v] for v in self.coeffs_as_list()],
            }
        }


def default_calibration() -> CalibrationData:
    """Placeholder intrinsics for a 1200x800 sensor, to be replaced by a real calibration."""
    return CalibrationData(
        camera_matrix=np.array(
            [
                [800.0, 0.0, 600.0],
                [0.0, 800.0, 400.0],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        ),
        dist_coeffs=np.array([[0.1], [-0.2], [0.0], [0.0]], dtype=np.float64),
    )


def calibration_from_flat(matrix: Sequence[float], coeffs: Sequence[float]) -> CalibrationData:
    """Build calibration data from a flat 9-element matrix and 4 coefficients."""
    return CalibrationData(
        camera_matrix=matrix_from_flat(matrix),
        dist_coeffs=coeffs_from_flat(coeffs),
    )


def matrix_from_flat(matrix: Sequence[float]) -> np.ndarray:
    if len(matrix) != 9:
        raise CalibrationError(f"Camera matrix must have 9 elements, got {len(matrix)}")
    return np.array([float(v) for v in matrix], dtype=np.float64).reshape(3, 3)


def coeffs_from_flat(coeffs: Sequence[float]) -> np.ndarray:
    if len(coeffs) != NUM_DIST_COEFFS:
        raise CalibrationError(
            f"Distortion coefficients must have {NUM_DIST_COEFFS} elements, got {len(coeffs)}"
        )
    return np.array([float(v) for v in coeffs], dtype=np.float64).reshape(-1, 1)


def parse_json_calibration(data: Any) -> CalibrationData:
    """Parse the ``{"calibration": {...}}`` document.

    The matrix must be 3 rows of 3 numbers and the coefficients exactly four
    one-element lists.
    """
    if not isinstance(data, dict) or "calibration" not in data:
        raise CalibrationError("JSON missing 'calibration' section")

    calibration = data["calibration"]
    if not isinstance(calibration, dict) or "camera_matrix" not in calibration or "dist_coeffs" not in calibration:
        raise CalibrationError("JSON missing camera_matrix or dist_coeffs")

    rows = calibration["camera_matrix"]
    if not isinstance(rows, list) or len(rows) != 3:
        raise CalibrationError("Invalid camera matrix structure")

    matrix: List[float] = []
    for row in rows:
        if not isinstance(row, list) or len(row) != 3:
            raise CalibrationError("Invalid camera matrix row size")
        matrix.extend(_as_float(v) for v in row)

    coeff_rows = calibration["dist_coeffs"]
    if not isinstance(coeff_rows, list) or len(coeff_rows) != NUM_DIST_COEFFS:
        raise CalibrationError("Invalid distortion coefficients size")

    coeffs: List[float] = []
    for coeff in coeff_rows:
        if not isinstance(coeff, list) or len(coeff) != 1:
            raise CalibrationError("Invalid distortion coefficient format")
        coeffs.append(_as_float(coeff[0]))

    return CalibrationData(camera_matrix=matrix_from_flat(matrix), dist_coeffs=coeffs_from_flat(coeffs))


def parse_toml_calibration(data: Dict[str, Any]) -> CalibrationData:
    """Parse TOML camera parameters, top level or under ``[calibration]``."""
    section = data.get("calibration", data)
    if not isinstance(section, dict) or "camera_matrix" not in section or "dist_coeffs" not in section:
        raise CalibrationError("TOML missing camera_matrix or dist_coeffs")

    matrix = _flatten(section["camera_matrix"])
    coeffs = _flatten(section["dist_coeffs"])
    if len(matrix) != 9 or len(coeffs) != NUM_DIST_COEFFS:
        raise CalibrationError("Invalid camera parameters size")

    return CalibrationData(camera_matrix=matrix_from_flat(matrix), dist_coeffs=coeffs_from_flat(coeffs))


def load_camera_parameters(path: str | Path) -> CalibrationData:
    """Load calibration from a ``.json`` or ``.toml`` file.

    Raises:
        FileNotFoundError: If the file does not exist
        CalibrationError: If the content is malformed
    """
    calib_path = Path(path)
    if not calib_path.exists():
        raise FileNotFoundError(f"Calibration file not found: {path}")

    suffix = calib_path.suffix.lower()
    try:
        if suffix == ".json":
            with calib_path.open("r", encoding="utf-8") as f:
                calibration = parse_json_calibration(json.load(f))
        elif suffix == ".toml":
            with calib_path.open("rb") as f:
                calibration = parse_toml_calibration(tomllib.load(f))
        else:
            raise CalibrationError(f"Unsupported calibration format: {calib_path.suffix}")
    except json.JSONDecodeError as e:
        raise CalibrationError(f"Failed to parse JSON: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise CalibrationError(f"Failed to parse TOML: {e}") from e

    LOGGER.info("Camera parameters loaded from %s", calib_path)
    return calibration


def save_camera_parameters(calibration: CalibrationData, path: str | Path) -> None:
    """Write calibration in the JSON layout read by :func:`load_camera_parameters`."""
    calib_path = Path(path)
    with calib_path.open("w", encoding="utf-8") as f:
        json.dump(calibration.to_dict(), f, indent=4)
    LOGGER.info("Camera parameters saved to %s", calib_path)


def _flatten(values: Any) -> List[float]:
    if isinstance(values, (list, tuple)):
        flat: List[float] = []
        for v in values:
            flat.extend(_flatten(v))
        return flat
    return [_as_float(values)]


def _as_float(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise CalibrationError(f"Expected a number, got {value!r}")
    return float(value)
