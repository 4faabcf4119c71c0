"""Range image -> vehicle-frame point cloud (sequential backend).

Math, per pixel (row, col):
    x = range * cos(inclination[row]) * cos(azimuth[col])
    y = range * cos(inclination[row]) * sin(azimuth[col])
    z = range * sin(inclination[row])
then the calibration extrinsic maps sensor frame -> vehicle frame.

Pixels with range <= 0 are dropped. Output rows are
[x, y, z, intensity, range, elongation], float32, in pixel-scan order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Mapping

import numpy as np

from .calibration import (
    CalibrationSet,
    LidarCalibration,
    compute_azimuths,
    compute_inclinations,
    laser_label,
)
from .numba_kernels import POINT_STRIDE, range_image_to_points

LOG = logging.getLogger(__name__)

# Channel layout of a Waymo range image pixel.
CH_RANGE = 0
CH_INTENSITY = 1
CH_ELONGATION = 2
MIN_CHANNELS = 3


class ScanShapeError(ValueError):
    """Range scan buffer length does not match its declared shape."""


@dataclass(frozen=True, eq=False)
class RangeScan:
    shape: tuple[int, int, int]   # (height, width, channels)
    values: np.ndarray            # (H * W * C,) float32, contiguous

    def __post_init__(self):
        if len(self.shape) != 3:
            raise ScanShapeError(f"Range scan shape must be (height, width, channels), got {self.shape}")
        height, width, channels = (int(s) for s in self.shape)
        if height <= 0 or width <= 0:
            raise ScanShapeError(f"Range scan has an empty image: {height}x{width}")
        if channels < MIN_CHANNELS:
            raise ScanShapeError(
                f"Range scan needs at least {MIN_CHANNELS} channels "
                f"(range, intensity, elongation), got {channels}"
            )
        values = np.ascontiguousarray(np.asarray(self.values).reshape(-1), dtype=np.float32)
        if values.size != height * width * channels:
            raise ScanShapeError(
                f"Range scan buffer has {values.size} values but shape "
                f"{height}x{width}x{channels} needs {height * width * channels}"
            )
        # Frozen dataclass: normalise fields through object.__setattr__.
        object.__setattr__(self, "shape", (height, width, channels))
        object.__setattr__(self, "values", values)

    @property
    def height(self) -> int:
        return self.shape[0]

    @property
    def width(self) -> int:
        return self.shape[1]

    @property
    def channels(self) -> int:
        return self.shape[2]

    def channel(self, index: int) -> np.ndarray:
        """(H, W) view of one channel."""
        return self.values.reshape(self.shape)[:, :, index]


@dataclass(frozen=True, eq=False)
class PointCloud:
    points: np.ndarray   # (N, POINT_STRIDE) float32, vehicle frame

    def __post_init__(self):
        if self.points.ndim != 2 or self.points.shape[1] != POINT_STRIDE:
            raise ValueError(f"PointCloud expects (N, {POINT_STRIDE}) rows, got {self.points.shape}")

    @classmethod
    def empty(cls) -> PointCloud:
        return cls(np.zeros((0, POINT_STRIDE), dtype=np.float32))

    @property
    def count(self) -> int:
        return int(self.points.shape[0])

    @property
    def buffer(self) -> np.ndarray:
        """Flat [x, y, z, intensity, range, elongation, ...] view, length count * 6."""
        return self.points.reshape(-1)

    @property
    def xyz(self) -> np.ndarray:
        return self.points[:, :3]

    @property
    def intensity(self) -> np.ndarray:
        return self.points[:, 3]


@dataclass
class MultiSensorResult:
    merged: PointCloud
    per_sensor: dict[int, PointCloud] = field(default_factory=dict)


def _trig_tables(scan: RangeScan, calib: LidarCalibration) -> tuple[np.ndarray, ...]:
    # One cos/sin per row and per column instead of per pixel.
    inclinations = compute_inclinations(scan.height, calib)
    azimuths = compute_azimuths(scan.width, calib.azimuth_correction)
    return (
        np.cos(inclinations).astype(np.float32),
        np.sin(inclinations).astype(np.float32),
        np.cos(azimuths).astype(np.float32),
        np.sin(azimuths).astype(np.float32),
    )


def convert_range_image(scan: RangeScan, calib: LidarCalibration) -> PointCloud:
    """Convert one sensor's range image into a vehicle-frame point cloud."""
    cos_inc, sin_inc, cos_az, sin_az = _trig_tables(scan, calib)
    out = np.empty((scan.height * scan.width, POINT_STRIDE), dtype=np.float32)
    n = range_image_to_points(
        scan.values, scan.height, scan.width, scan.channels,
        cos_inc, sin_inc, cos_az, sin_az,
        np.ascontiguousarray(calib.extrinsic[:3, :4]),
        out,
    )
    # Copy the valid prefix so the worst-case buffer can be released.
    return PointCloud(out[:n].copy())


def merge_clouds(clouds: list[PointCloud]) -> PointCloud:
    """Concatenate clouds in the given order; no deduplication across sensors."""
    if not clouds:
        return PointCloud.empty()
    return PointCloud(np.concatenate([c.points for c in clouds], axis=0))


def convert_all_sensors(
    scans: Mapping[int, RangeScan],
    calibrations: CalibrationSet,
    convert_fn: Callable[[RangeScan, LidarCalibration], PointCloud] = convert_range_image,
) -> MultiSensorResult:
    """Convert every sensor's scan of one frame and merge them.

    A sensor without calibration is skipped with a warning; the rest of the
    frame still converts.
    """
    per_sensor: dict[int, PointCloud] = {}
    for laser_name, scan in scans.items():
        calib = calibrations.get(laser_name)
        if calib is None:
            LOG.warning("No calibration for laser %s, skipping its scan", laser_label(laser_name))
            continue
        per_sensor[laser_name] = convert_fn(scan, calib)

    return MultiSensorResult(merged=merge_clouds(list(per_sensor.values())), per_sensor=per_sensor)
