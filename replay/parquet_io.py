"""Parquet access for Waymo Open Dataset v2 component files.

Each component (vehicle_pose, lidar_calibration, lidar, lidar_box,
camera_image) is one parquet file per segment:
<data_dir>/<component>/<segment_id>.parquet.

Small components are read whole. The lidar and camera_image components are
read one row group at a time: a row group is decompressed in full anyway, so
reading all of its rows costs the same as reading one frame.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Iterable, Mapping

import numpy as np
import pyarrow as pa
import pyarrow.parquet as pq

from .range_image import RangeScan
from .transforms import matrix_from_row_major

# -- Column names --
COL_TIMESTAMP = "key.frame_timestamp_micros"
COL_LASER_NAME = "key.laser_name"
COL_RANGE_SHAPE = "[LiDARComponent].range_image_return1.shape"
COL_RANGE_VALUES = "[LiDARComponent].range_image_return1.values"
COL_POSE_TRANSFORM = "[VehiclePoseComponent].world_from_vehicle.transform"
COL_CAMERA_NAME = "key.camera_name"
COL_CAMERA_IMAGE = "[CameraImageComponent].image"

LIDAR_COLUMNS = [COL_TIMESTAMP, COL_LASER_NAME, COL_RANGE_SHAPE, COL_RANGE_VALUES]
CAMERA_COLUMNS = [COL_TIMESTAMP, COL_CAMERA_NAME, COL_CAMERA_IMAGE]

# -- Components --
COMPONENT_VEHICLE_POSE = "vehicle_pose"
COMPONENT_LIDAR_CALIBRATION = "lidar_calibration"
COMPONENT_LIDAR = "lidar"
COMPONENT_LIDAR_BOX = "lidar_box"
COMPONENT_CAMERA_IMAGE = "camera_image"
REQUIRED_COMPONENTS = (COMPONENT_VEHICLE_POSE, COMPONENT_LIDAR_CALIBRATION, COMPONENT_LIDAR)
OPTIONAL_COMPONENTS = (COMPONENT_LIDAR_BOX, COMPONENT_CAMERA_IMAGE)


class CameraName(IntEnum):
    FRONT = 1
    FRONT_LEFT = 2
    FRONT_RIGHT = 3
    SIDE_LEFT = 4
    SIDE_RIGHT = 5


def camera_label(camera_name: int) -> str:
    try:
        return CameraName(int(camera_name)).name
    except ValueError:
        return str(camera_name)


@dataclass(frozen=True)
class RowGroupSpan:
    row_start: int
    row_end: int
    num_rows: int


@dataclass(frozen=True)
class LidarRow:
    timestamp: int
    laser_name: int
    scan: RangeScan


@dataclass(frozen=True)
class CameraRow:
    timestamp: int
    camera_name: int
    image: bytes     # encoded JPEG, passed through untouched


class ParquetComponent:
    """One opened component file. Opening reads the footer only."""

    def __init__(self, component: str, path: str | Path):
        self.component = component
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"{component} file not found: {self.path}")
        self._file = pq.ParquetFile(str(self.path))

        # Row-group boundaries in global row numbers.
        spans = []
        offset = 0
        for i in range(self._file.metadata.num_row_groups):
            n = self._file.metadata.row_group(i).num_rows
            spans.append(RowGroupSpan(row_start=offset, row_end=offset + n, num_rows=n))
            offset += n
        self.row_groups: tuple[RowGroupSpan, ...] = tuple(spans)
        self.num_rows = offset

    @classmethod
    def open(cls, component: str, path: str | Path) -> ParquetComponent:
        return cls(component, path)

    @property
    def num_row_groups(self) -> int:
        return len(self.row_groups)

    def read_all_rows(self, columns: list[str] | None = None) -> list[dict]:
        """Read the whole file as row dicts. Meant for the small components."""
        return self._file.read(columns=columns).to_pylist()

    def read_row_group(self, index: int, columns: list[str] | None = None) -> pa.Table:
        if not 0 <= index < self.num_row_groups:
            raise IndexError(
                f"{self.component}: row group {index} out of range (0..{self.num_row_groups - 1})"
            )
        return self._file.read_row_group(index, columns=columns)


def component_path(data_dir: str | Path, component: str, segment_id: str) -> Path:
    return Path(data_dir) / component / f"{segment_id}.parquet"


def dataset_sources(data_dir: str | Path, segment_id: str) -> dict[str, Path]:
    """Paths of every known component for one segment (existing or not)."""
    return {
        component: component_path(data_dir, component, segment_id)
        for component in REQUIRED_COMPONENTS + OPTIONAL_COMPONENTS
    }


def _list_column(column: pa.ChunkedArray, dtype) -> list[np.ndarray | None]:
    """Split a list<...> column into one numpy view per row.

    Slices the flat child buffer by the list offsets instead of going through
    Python lists, which matters for ~170K floats per range image.
    """
    arr = column.combine_chunks() if column.num_chunks != 1 else column.chunk(0)
    if len(arr) == 0:
        return []
    offsets = arr.offsets.to_numpy()
    flat = arr.values.to_numpy(zero_copy_only=False).astype(dtype, copy=False)
    valid = arr.is_valid().to_numpy(zero_copy_only=False)
    return [
        flat[offsets[i]:offsets[i + 1]] if valid[i] else None
        for i in range(len(arr))
    ]


def read_lidar_unit(lidar: ParquetComponent, unit_index: int) -> list[LidarRow]:
    """Decode one lidar row group into typed rows.

    Raises ScanShapeError for a row whose range image does not match its shape.
    """
    table = lidar.read_row_group(unit_index, columns=LIDAR_COLUMNS)
    timestamps = table.column(COL_TIMESTAMP).to_numpy()
    lasers = table.column(COL_LASER_NAME).to_numpy()
    shapes = _list_column(table.column(COL_RANGE_SHAPE), np.int64)
    values = _list_column(table.column(COL_RANGE_VALUES), np.float32)

    rows = []
    for i in range(table.num_rows):
        shape = () if shapes[i] is None else tuple(int(s) for s in shapes[i])
        scan_values = np.zeros(0, dtype=np.float32) if values[i] is None else values[i]
        rows.append(LidarRow(
            timestamp=int(timestamps[i]),
            laser_name=int(lasers[i]),
            scan=RangeScan(shape=shape, values=scan_values),
        ))
    return rows


def group_rows_by_timestamp(rows: Iterable[LidarRow]) -> dict[int, dict[int, RangeScan]]:
    """timestamp -> {laser_name: scan}, in first-seen timestamp order."""
    groups: dict[int, dict[int, RangeScan]] = {}
    for row in rows:
        groups.setdefault(row.timestamp, {})[row.laser_name] = row.scan
    return groups


def read_camera_unit(camera: ParquetComponent, unit_index: int) -> list[CameraRow]:
    """Decode one camera_image row group. Rows without an image are skipped."""
    table = camera.read_row_group(unit_index, columns=CAMERA_COLUMNS)
    timestamps = table.column(COL_TIMESTAMP).to_numpy()
    names = table.column(COL_CAMERA_NAME).to_numpy()
    images = table.column(COL_CAMERA_IMAGE).to_pylist()
    return [
        CameraRow(timestamp=int(timestamps[i]), camera_name=int(names[i]), image=bytes(images[i]))
        for i in range(table.num_rows)
        if images[i]
    ]


def group_images_by_timestamp(rows: Iterable[CameraRow]) -> dict[int, dict[int, bytes]]:
    """timestamp -> {camera_name: jpeg}, in first-seen timestamp order."""
    groups: dict[int, dict[int, bytes]] = {}
    for row in rows:
        groups.setdefault(row.timestamp, {})[row.camera_name] = row.image
    return groups


def group_index_by(rows: Iterable[Mapping], column: str) -> dict[object, list[Mapping]]:
    """Index rows by one column value for O(1) lookup (1:N)."""
    index: dict[object, list[Mapping]] = defaultdict(list)
    for row in rows:
        index[row[column]].append(row)
    return dict(index)


def pose_matrix(row: Mapping) -> np.ndarray | None:
    """world_from_vehicle 4×4 from a vehicle_pose row, or None if absent."""
    values = row.get(COL_POSE_TRANSFORM)
    if values is None:
        return None
    return matrix_from_row_major(values)
