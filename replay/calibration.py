"""LiDAR calibration: extrinsics + beam inclinations, parsed once per dataset."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, Iterator, Mapping

import numpy as np

from .transforms import matrix_from_row_major, yaw_from_rotation

COL_LASER_NAME = "key.laser_name"
COL_EXTRINSIC = "[LiDARCalibrationComponent].extrinsic.transform"
COL_BEAM_VALUES = "[LiDARCalibrationComponent].beam_inclination.values"
COL_BEAM_MIN = "[LiDARCalibrationComponent].beam_inclination.min"
COL_BEAM_MAX = "[LiDARCalibrationComponent].beam_inclination.max"


class LidarName(IntEnum):
    TOP = 1
    FRONT = 2
    SIDE_LEFT = 3
    SIDE_RIGHT = 4
    REAR = 5


def laser_label(laser_name: int) -> str:
    """'TOP', 'FRONT', ... for the known lasers, the raw number otherwise."""
    try:
        return LidarName(int(laser_name)).name
    except ValueError:
        return str(laser_name)


@dataclass(frozen=True, eq=False)
class LidarCalibration:
    laser_name: int
    extrinsic: np.ndarray                        # (4, 4) float64, sensor -> vehicle
    beam_inclination_values: np.ndarray | None   # (H,) ascending, or None = uniform
    beam_inclination_min: float | None
    beam_inclination_max: float | None

    @property
    def azimuth_correction(self) -> float:
        """Sensor yaw in the vehicle frame; shifts the column -> azimuth mapping."""
        return yaw_from_rotation(self.extrinsic)


def parse_lidar_calibration(row: Mapping[str, object]) -> LidarCalibration:
    """Parse one lidar_calibration row. Raises ValueError on a missing field."""
    if row.get(COL_LASER_NAME) is None:
        raise ValueError(f"Calibration row is missing {COL_LASER_NAME!r}")
    if row.get(COL_EXTRINSIC) is None:
        raise ValueError(f"Calibration for laser {row[COL_LASER_NAME]} is missing the extrinsic")

    values = row.get(COL_BEAM_VALUES)
    beam_values = None
    if values is not None and len(values) > 0:
        beam_values = np.asarray(values, dtype=np.float64)
    beam_min = row.get(COL_BEAM_MIN)
    beam_max = row.get(COL_BEAM_MAX)
    if beam_values is None and (beam_min is None or beam_max is None):
        raise ValueError(
            f"Calibration for laser {row[COL_LASER_NAME]} has neither beam inclination "
            f"values nor a min/max pair"
        )

    return LidarCalibration(
        laser_name=int(row[COL_LASER_NAME]),
        extrinsic=matrix_from_row_major(row[COL_EXTRINSIC]),
        beam_inclination_values=beam_values,
        beam_inclination_min=None if beam_min is None else float(beam_min),
        beam_inclination_max=None if beam_max is None else float(beam_max),
    )


class CalibrationSet:
    """Read-only laser_name -> LidarCalibration lookup.

    get() returns None for a sensor without calibration; callers branch on it.
    """

    def __init__(self, calibrations: Iterable[LidarCalibration] = ()):
        self._by_laser: dict[int, LidarCalibration] = {}
        for calib in calibrations:
            self._by_laser[calib.laser_name] = calib

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, object]]) -> CalibrationSet:
        return cls(parse_lidar_calibration(row) for row in rows)

    def get(self, laser_name: int) -> LidarCalibration | None:
        return self._by_laser.get(int(laser_name))

    def copy(self) -> CalibrationSet:
        """Deep copy, so each worker holds its own arrays."""
        return CalibrationSet(
            LidarCalibration(
                laser_name=c.laser_name,
                extrinsic=c.extrinsic.copy(),
                beam_inclination_values=(
                    None if c.beam_inclination_values is None else c.beam_inclination_values.copy()
                ),
                beam_inclination_min=c.beam_inclination_min,
                beam_inclination_max=c.beam_inclination_max,
            )
            for c in self._by_laser.values()
        )

    def laser_names(self) -> list[int]:
        return sorted(self._by_laser)

    def __iter__(self) -> Iterator[LidarCalibration]:
        return iter(self._by_laser[k] for k in sorted(self._by_laser))

    def __len__(self) -> int:
        return len(self._by_laser)

    def __contains__(self, laser_name: object) -> bool:
        return laser_name in self._by_laser


def compute_inclinations(height: int, calib: LidarCalibration) -> np.ndarray:
    """Beam inclination (radians) per range-image row, row 0 = top of image.

    Explicit values are stored ascending (min -> max), so they are reversed.
    Otherwise rows are interpolated linearly from max (row 0) to min (last row).
    """
    values = calib.beam_inclination_values
    if values is not None and values.shape[0] == height:
        return values[::-1].astype(np.float64)

    if calib.beam_inclination_min is None or calib.beam_inclination_max is None:
        raise ValueError(
            f"Laser {calib.laser_name}: {0 if values is None else values.shape[0]} beam "
            f"inclination values for a {height}-row image and no min/max to interpolate"
        )
    t = np.arange(height, dtype=np.float64) / (height - 1) if height > 1 else np.zeros(height)
    return calib.beam_inclination_max * (1.0 - t) + calib.beam_inclination_min * t


def compute_azimuths(width: int, az_correction: float) -> np.ndarray:
    """Azimuth (radians) per range-image column.

    ratio = (width - col - 0.5) / width, azimuth = (2 * ratio - 1) * pi - az_correction.
    Column 0 sits just below +pi, i.e. the image starts behind the sensor.
    """
    col = np.arange(width, dtype=np.float64)
    ratio = (width - col - 0.5) / width
    return (ratio * 2.0 - 1.0) * math.pi - az_correction
