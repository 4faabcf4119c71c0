"""Quick acceptance checks for the replay pipeline.

Usage:  python -m replay.validate --config replay.yaml
"""
from __future__ import annotations

import argparse
import sys
from dataclasses import replace

import numpy as np

from .calibration import CalibrationSet, LidarCalibration, laser_label
from .config import load_config
from .gpu_backend import convert_range_image_gpu, is_gpu_available
from .parquet_io import (
    COL_TIMESTAMP,
    COMPONENT_LIDAR,
    COMPONENT_LIDAR_CALIBRATION,
    COMPONENT_VEHICLE_POSE,
    ParquetComponent,
    dataset_sources,
    group_rows_by_timestamp,
    read_lidar_unit,
)
from .range_image import RangeScan, convert_range_image
from .session import DatasetLoadError, ReplaySession
from .transforms import is_valid_se3


def identity_fixture() -> tuple[RangeScan, LidarCalibration]:
    """One pixel at range 5 straight ahead of an identity-mounted sensor.

    A 1x1 image has azimuth 0 at column 0 and inclination 0 with min = max = 0.
    """
    scan = RangeScan(shape=(1, 1, 4), values=np.array([5.0, 0.5, 0.1, 1.0], dtype=np.float32))
    calib = LidarCalibration(
        laser_name=1,
        extrinsic=np.eye(4),
        beam_inclination_values=None,
        beam_inclination_min=0.0,
        beam_inclination_max=0.0,
    )
    return scan, calib


def backends_agree(cpu_points: np.ndarray, gpu_points: np.ndarray,
                   bbox_rtol: float = 1e-3, intensity_rtol: float = 1e-3) -> bool:
    """Compare two clouds by count, bounding box and intensity sum (order-free)."""
    if cpu_points.shape[0] != gpu_points.shape[0]:
        return False
    if cpu_points.shape[0] == 0:
        return True
    for fn in (np.min, np.max):
        a = fn(cpu_points[:, :3], axis=0).astype(np.float64)
        b = fn(gpu_points[:, :3], axis=0).astype(np.float64)
        if not np.allclose(a, b, rtol=bbox_rtol, atol=1e-4):
            return False
    sa = float(cpu_points[:, 3].astype(np.float64).sum())
    sb = float(gpu_points[:, 3].astype(np.float64).sum())
    return abs(sa - sb) <= intensity_rtol * max(abs(sa), 1e-9)


def run_validation(config_path: str) -> bool:
    """Run acceptance gates. Returns True if all pass."""
    cfg = load_config(config_path)
    sources = dataset_sources(cfg.dataset.data_dir, cfg.dataset.segment_id)
    fails = 0

    def check(ok: bool, name: str, detail: str = ""):
        nonlocal fails
        tag = "PASS" if ok else "FAIL"
        if not ok:
            fails += 1
        print(f"  [{tag}] {name}" + (f" - {detail}" if detail else ""))

    # -- Converter --
    print("\n-- Converter --")
    scan, calib = identity_fixture()
    cloud = convert_range_image(scan, calib)
    check(cloud.count == 1 and np.allclose(cloud.xyz[0], [5.0, 0.0, 0.0], atol=1e-5),
          "Identity fixture", f"{cloud.xyz.tolist()}")

    # -- Calibration --
    print("\n-- Calibration --")
    calibrations = CalibrationSet.from_rows(
        ParquetComponent.open(COMPONENT_LIDAR_CALIBRATION, sources[COMPONENT_LIDAR_CALIBRATION]).read_all_rows()
    )
    check(len(calibrations) > 0, "Sensors", str(calibrations.laser_names()))
    for c in calibrations:
        check(is_valid_se3(c.extrinsic, atol=1e-5), f"Extrinsic SE3 {laser_label(c.laser_name)}")

    # -- Dataset --
    print("\n-- Dataset --")
    pose = ParquetComponent.open(COMPONENT_VEHICLE_POSE, sources[COMPONENT_VEHICLE_POSE])
    n_pose_frames = len({row[COL_TIMESTAMP] for row in pose.read_all_rows(columns=[COL_TIMESTAMP])})

    # Eager units only; prefetch is not needed for these gates.
    session = ReplaySession(pool_config=replace(cfg.pool, prefetch=False), converter_config=cfg.converter)
    try:
        total = session.load(cfg.dataset.data_dir, cfg.dataset.segment_id)
    except DatasetLoadError as exc:
        check(False, "Load", str(exc))
        print(f"\n  FAIL: {fails} failures")
        return False

    with session:
        check(total == n_pose_frames, "Frame index", f"{total} frames, {n_pose_frames} pose rows")
        first = session.get_frame(0)
        check(first is not None and first.point_count > 0, "Frame 0 after eager load",
              f"{0 if first is None else first.point_count:,} pts")
        check(session.num_units > 0, "Row groups", str(session.num_units))
        if session.num_camera_units > 0:
            images = {} if first is None else first.camera_images
            jpegs = sum(1 for data in images.values() if data[:2] == b"\xff\xd8")
            check(jpegs > 0 and jpegs == len(images), "Camera images on frame 0", f"{jpegs} JPEG")
        else:
            print("  [SKIP] Camera images - no camera_image component")

    # -- Backends --
    print("\n-- Backends --")
    if not is_gpu_available():
        print("  [SKIP] CPU/GPU equivalence - no CUDA device")
    else:
        lidar = ParquetComponent.open(COMPONENT_LIDAR, sources[COMPONENT_LIDAR])
        groups = group_rows_by_timestamp(read_lidar_unit(lidar, 0))
        scans = next(iter(groups.values()))
        for laser_name, scan in sorted(scans.items()):
            calib = calibrations.get(laser_name)
            if calib is None:
                continue
            cpu = convert_range_image(scan, calib)
            gpu = convert_range_image_gpu(scan, calib, cfg.converter.threads_per_block)
            check(backends_agree(cpu.points, gpu.points), f"Equivalence {laser_label(laser_name)}",
                  f"cpu={cpu.count:,} gpu={gpu.count:,}")

    # -- Summary --
    print(f"\n  {'PASS' if fails == 0 else 'FAIL'}: {fails} failures")
    return fails == 0


def main():
    p = argparse.ArgumentParser(description="Validate replay core")
    p.add_argument("--config", default="replay.yaml")
    args = p.parse_args()
    sys.exit(0 if run_validation(args.config) else 1)


if __name__ == "__main__":
    main()
