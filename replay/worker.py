"""Decode workers: one row group in, per-frame results out.

A lidar worker owns its own open lidar file and its own copy of the
calibrations, so several workers can decode different row groups at once with
nothing shared between them except the (thread-safe) converter.

A camera worker only decompresses: JPEG bytes are passed through undecoded.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from .calibration import CalibrationSet
from .converter import LidarConverter
from .parquet_io import (
    COMPONENT_CAMERA_IMAGE,
    COMPONENT_LIDAR,
    ParquetComponent,
    group_images_by_timestamp,
    group_rows_by_timestamp,
    read_camera_unit,
    read_lidar_unit,
)
from .range_image import PointCloud

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class FrameResult:
    timestamp: int
    merged: PointCloud
    sensor_clouds: dict[int, PointCloud]
    convert_ms: float
    backend: str


@dataclass(frozen=True, eq=False)
class UnitResult:
    unit_index: int
    frames: tuple[FrameResult, ...]
    decode_ms: float      # parquet read + row decode
    convert_ms: float     # sum over frames

    @property
    def num_frames(self) -> int:
        return len(self.frames)


class DecodeWorker:
    def __init__(self, source: str | Path, calibrations: CalibrationSet, converter: LidarConverter):
        self.source = Path(source)
        self.calibrations = calibrations.copy()
        self.converter = converter
        self._lidar: ParquetComponent | None = None

    def open(self) -> int:
        """Open the lidar file (footer only) and return its row-group count."""
        self._lidar = ParquetComponent.open(COMPONENT_LIDAR, self.source)
        return self._lidar.num_row_groups

    def decode_unit(self, unit_index: int) -> UnitResult:
        """Decode one row group and convert every frame found in it.

        Errors (I/O, out-of-range unit, malformed scan) propagate to the caller.
        """
        if self._lidar is None:
            raise RuntimeError("DecodeWorker.decode_unit called before open()")

        t0 = time.perf_counter()
        rows = read_lidar_unit(self._lidar, unit_index)
        groups = group_rows_by_timestamp(rows)
        decode_ms = (time.perf_counter() - t0) * 1000.0

        frames = []
        convert_ms = 0.0
        for timestamp, scans in groups.items():
            converted = self.converter.convert(scans, self.calibrations)
            convert_ms += converted.elapsed_ms
            frames.append(FrameResult(
                timestamp=timestamp,
                merged=converted.result.merged,
                sensor_clouds=converted.result.per_sensor,
                convert_ms=converted.elapsed_ms,
                backend=converted.backend,
            ))

        LOG.debug(
            "unit %d: %d rows, %d frames, decode %.1f ms, convert %.1f ms",
            unit_index, len(rows), len(frames), decode_ms, convert_ms,
        )
        return UnitResult(
            unit_index=unit_index,
            frames=tuple(frames),
            decode_ms=decode_ms,
            convert_ms=convert_ms,
        )


@dataclass(frozen=True, eq=False)
class CameraFrameResult:
    timestamp: int
    images: dict[int, bytes]    # camera_name -> JPEG


@dataclass(frozen=True, eq=False)
class CameraUnitResult:
    unit_index: int
    frames: tuple[CameraFrameResult, ...]
    decode_ms: float

    @property
    def num_frames(self) -> int:
        return len(self.frames)


class CameraDecodeWorker:
    def __init__(self, source: str | Path):
        self.source = Path(source)
        self._camera: ParquetComponent | None = None

    def open(self) -> int:
        self._camera = ParquetComponent.open(COMPONENT_CAMERA_IMAGE, self.source)
        return self._camera.num_row_groups

    def decode_unit(self, unit_index: int) -> CameraUnitResult:
        if self._camera is None:
            raise RuntimeError("CameraDecodeWorker.decode_unit called before open()")

        t0 = time.perf_counter()
        rows = read_camera_unit(self._camera, unit_index)
        frames = tuple(
            CameraFrameResult(timestamp=ts, images=images)
            for ts, images in group_images_by_timestamp(rows).items()
        )
        decode_ms = (time.perf_counter() - t0) * 1000.0
        LOG.debug("camera unit %d: %d images, %d frames, %.1f ms",
                  unit_index, len(rows), len(frames), decode_ms)
        return CameraUnitResult(unit_index=unit_index, frames=frames, decode_ms=decode_ms)
