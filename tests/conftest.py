"""Shared fixtures: CUDA simulator and synthetic Waymo v2 segments."""

import os

# Must be set before numba is imported anywhere so the CUDA kernels run
# on the simulator when no GPU is present.
os.environ.setdefault("NUMBA_ENABLE_CUDASIM", "1")

from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from replay.transforms import yaw_matrix

SEGMENT_ID = "synthetic_segment_0001"
T0_MICROS = 1_500_000_000_000_000
FRAME_STEP_MICROS = 100_000
SCAN_SHAPE = (4, 8, 4)   # height, width, channels
LASERS = (1, 2, 3, 4, 5)
CAMERAS = (1, 2, 3, 4, 5)

# Sensor mounts: (yaw, x, y, z) on the vehicle roof.
MOUNTS = {
    1: (0.0, 1.43, 0.0, 2.18),
    2: (0.0, 4.07, 0.0, 0.69),
    3: (np.pi / 2, 3.25, 1.03, 0.98),
    4: (-np.pi / 2, 3.25, -1.03, 0.98),
    5: (np.pi, -1.15, 0.0, 0.46),
}
TOP_BEAM_VALUES = [-0.30, -0.15, 0.0, 0.05]   # ascending, len == height


@dataclass
class SyntheticSegment:
    data_dir: Path
    segment_id: str
    timestamps: list
    num_frames: int
    rows_per_group: int
    shape: tuple = SCAN_SHAPE
    camera_rows_per_group: int | None = None    # None: no camera_image component

    @property
    def frames_per_unit(self) -> int:
        return self.rows_per_group // len(LASERS)

    @property
    def points_per_frame(self) -> int:
        return len(LASERS) * valid_points_per_scan(self.shape)

    def component_path(self, component: str) -> Path:
        return self.data_dir / component / f"{self.segment_id}.parquet"

    def jpeg(self, frame: int, camera: int) -> bytes:
        return make_jpeg(frame, camera)


def make_scan_values(frame: int, laser: int, shape=SCAN_SHAPE) -> np.ndarray:
    """Range image with column 0 invalid (-1) and every other pixel in 5..11 m."""
    h, w, c = shape
    img = np.zeros((h, w, c), dtype=np.float32)
    rows, cols = np.meshgrid(np.arange(h), np.arange(w), indexing="ij")
    img[:, :, 0] = 5.0 + ((rows + cols + frame + laser) % 7)
    img[:, 0, 0] = -1.0
    img[:, :, 1] = 0.25 * laser
    img[:, :, 2] = 0.1
    img[:, :, 3] = 1.0
    return img.reshape(-1)


def make_jpeg(frame: int, camera: int) -> bytes:
    """Stand-in JPEG payload: SOI marker, an id, EOI marker."""
    return b"\xff\xd8" + f"frame{frame}:cam{camera}".encode() + b"\xff\xd9"


def valid_points_per_scan(shape=SCAN_SHAPE) -> int:
    return shape[0] * (shape[1] - 1)


def _calibration_table() -> pa.Table:
    extrinsics, values, mins, maxs = [], [], [], []
    for laser in LASERS:
        yaw, x, y, z = MOUNTS[laser]
        extrinsics.append(yaw_matrix(yaw, x, y, z).reshape(-1).tolist())
        values.append(TOP_BEAM_VALUES if laser == 1 else None)
        mins.append(-0.3 if laser != 1 else None)
        maxs.append(0.05 if laser != 1 else None)
    return pa.table({
        "key.segment_context_name": [SEGMENT_ID] * len(LASERS),
        "key.laser_name": pa.array(list(LASERS), type=pa.int8()),
        "[LiDARCalibrationComponent].extrinsic.transform": pa.array(extrinsics, type=pa.list_(pa.float64())),
        "[LiDARCalibrationComponent].beam_inclination.values": pa.array(values, type=pa.list_(pa.float64())),
        "[LiDARCalibrationComponent].beam_inclination.min": pa.array(mins, type=pa.float64()),
        "[LiDARCalibrationComponent].beam_inclination.max": pa.array(maxs, type=pa.float64()),
    })


def _pose_table(timestamps) -> pa.Table:
    poses = [yaw_matrix(0.01 * i, 2.0 * i, 0.0, 0.0).reshape(-1).tolist() for i in range(len(timestamps))]
    return pa.table({
        "key.segment_context_name": [SEGMENT_ID] * len(timestamps),
        "key.frame_timestamp_micros": pa.array(timestamps, type=pa.int64()),
        "[VehiclePoseComponent].world_from_vehicle.transform": pa.array(poses, type=pa.list_(pa.float64())),
    })


def _lidar_table(timestamps, shape) -> pa.Table:
    ts_col, laser_col, shapes, values = [], [], [], []
    for i, ts in enumerate(timestamps):
        for laser in LASERS:
            ts_col.append(ts)
            laser_col.append(laser)
            shapes.append(list(shape))
            values.append(make_scan_values(i, laser, shape))
    return pa.table({
        "key.segment_context_name": [SEGMENT_ID] * len(ts_col),
        "key.frame_timestamp_micros": pa.array(ts_col, type=pa.int64()),
        "key.laser_name": pa.array(laser_col, type=pa.int8()),
        "[LiDARComponent].range_image_return1.shape": pa.array(shapes, type=pa.list_(pa.int32())),
        "[LiDARComponent].range_image_return1.values": pa.array(
            [v.tolist() for v in values], type=pa.list_(pa.float32())
        ),
    })


def _camera_table(timestamps) -> pa.Table:
    rows = [(i, ts, cam) for i, ts in enumerate(timestamps) for cam in CAMERAS]
    return pa.table({
        "key.segment_context_name": [SEGMENT_ID] * len(rows),
        "key.frame_timestamp_micros": pa.array([r[1] for r in rows], type=pa.int64()),
        "key.camera_name": pa.array([r[2] for r in rows], type=pa.int8()),
        "[CameraImageComponent].image": pa.array([make_jpeg(r[0], r[2]) for r in rows], type=pa.binary()),
    })


def _box_table(timestamps) -> pa.Table:
    # Two boxes on even frames, none on odd frames.
    rows = [(ts, f"obj{k}") for i, ts in enumerate(timestamps) if i % 2 == 0 for k in range(2)]
    n = len(rows)
    return pa.table({
        "key.segment_context_name": [SEGMENT_ID] * n,
        "key.frame_timestamp_micros": pa.array([r[0] for r in rows], type=pa.int64()),
        "key.laser_object_id": [r[1] for r in rows],
        "[LiDARBoxComponent].type": pa.array([1] * n, type=pa.int8()),
        "[LiDARBoxComponent].box.center.x": [10.0] * n,
        "[LiDARBoxComponent].box.center.y": [2.0] * n,
        "[LiDARBoxComponent].box.center.z": [0.8] * n,
        "[LiDARBoxComponent].box.size.x": [4.5] * n,
        "[LiDARBoxComponent].box.size.y": [1.9] * n,
        "[LiDARBoxComponent].box.size.z": [1.6] * n,
        "[LiDARBoxComponent].box.heading": [0.0] * n,
    })


def write_segment(
    data_dir: Path,
    num_frames: int = 199,
    rows_per_group: int = 255,
    shape=SCAN_SHAPE,
    with_boxes: bool = True,
    camera_rows_per_group: int | None = None,
) -> SyntheticSegment:
    """Write a Waymo v2 layout segment: one parquet file per component."""
    timestamps = [T0_MICROS + i * FRAME_STEP_MICROS for i in range(num_frames)]
    tables = {
        "vehicle_pose": _pose_table(timestamps),
        "lidar_calibration": _calibration_table(),
        "lidar": _lidar_table(timestamps, shape),
    }
    if with_boxes:
        tables["lidar_box"] = _box_table(timestamps)
    if camera_rows_per_group is not None:
        tables["camera_image"] = _camera_table(timestamps)
    group_sizes = {"lidar": rows_per_group, "camera_image": camera_rows_per_group}

    for component, table in tables.items():
        path = data_dir / component / f"{SEGMENT_ID}.parquet"
        path.parent.mkdir(parents=True, exist_ok=True)
        # Five sensors per frame: 255 rows per group keeps frames whole (51 each).
        pq.write_table(table, path, row_group_size=group_sizes.get(component))

    return SyntheticSegment(
        data_dir=data_dir,
        segment_id=SEGMENT_ID,
        timestamps=timestamps,
        num_frames=num_frames,
        rows_per_group=rows_per_group,
        shape=shape,
        camera_rows_per_group=camera_rows_per_group,
    )


@pytest.fixture
def segment(tmp_path) -> SyntheticSegment:
    """199 frames, 5 sensors, 4 lidar row groups (51/51/51/46 frames)."""
    return write_segment(tmp_path / "waymo_v2")


@pytest.fixture
def small_segment(tmp_path) -> SyntheticSegment:
    """12 frames in 3 row groups of 4 frames."""
    return write_segment(tmp_path / "waymo_small", num_frames=12, rows_per_group=20)


@pytest.fixture
def segment_without_boxes(tmp_path) -> SyntheticSegment:
    """10 frames in 2 row groups, no lidar_box component."""
    return write_segment(tmp_path / "waymo_no_boxes", num_frames=10, rows_per_group=25, with_boxes=False)


@pytest.fixture
def camera_segment(tmp_path) -> SyntheticSegment:
    """12 frames: 3 lidar row groups of 4 frames, 4 camera row groups of 3 frames."""
    return write_segment(tmp_path / "waymo_cameras", num_frames=12, rows_per_group=20, camera_rows_per_group=15)
