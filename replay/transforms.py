"""SE3 transform utilities.  T_A_B converts points FROM B INTO A."""

from __future__ import annotations

from typing import Sequence

import numpy as np


def matrix_from_row_major(values: Sequence[float]) -> np.ndarray:
    """Build a 4×4 float64 matrix from 16 row-major values (parquet layout)."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size != 16:
        raise ValueError(f"Expected 16 row-major values for a 4x4 transform, got {arr.size}")
    return arr.reshape(4, 4)


def yaw_from_rotation(T: np.ndarray) -> float:
    """Yaw of T's rotation block about Z, relative to the parent X axis.

    atan2(R[1, 0], R[0, 0]): the azimuth correction applied to every column of
    a spinning sensor's range image.
    """
    return float(np.arctan2(T[1, 0], T[0, 0]))


def is_valid_se3(T: np.ndarray, atol: float = 1e-8) -> bool:
    """Check if T is a valid 4×4 SE3 matrix."""
    if T.shape != (4, 4):
        return False
    if not np.allclose(T[3, :], [0, 0, 0, 1], atol=atol):
        return False
    R = T[:3, :3]
    if not np.allclose(R @ R.T, np.eye(3), atol=atol):
        return False
    if abs(np.linalg.det(R) - 1.0) > atol:
        return False
    return True


def yaw_matrix(yaw: float, x: float = 0.0, y: float = 0.0, z: float = 0.0) -> np.ndarray:
    """4×4 SE3 for a pure Z rotation plus translation (sensor mount on a flat roof)."""
    cy, sy = np.cos(yaw), np.sin(yaw)
    T = np.eye(4, dtype=np.float64)
    T[:2, :2] = [[cy, -sy], [sy, cy]]
    T[:3, 3] = [x, y, z]
    return T
