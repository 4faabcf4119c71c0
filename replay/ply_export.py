"""PLY export of cached frames (binary little-endian, one vertex per point)."""

from __future__ import annotations

from pathlib import Path

import numpy as np
from plyfile import PlyData, PlyElement

from .calibration import laser_label
from .frame_cache import Frame

VERTEX_DTYPE = np.dtype([
    ("x", "<f4"), ("y", "<f4"), ("z", "<f4"),
    ("intensity", "<f4"), ("range", "<f4"), ("elongation", "<f4"),
    ("laser", "u1"),
])


def frame_vertices(frame: Frame) -> np.ndarray:
    """Structured vertex array for a frame, tagged with the source laser.

    Uses the per-sensor breakdown when present so each point keeps its laser;
    otherwise the merged cloud is written with laser = 0.
    """
    clouds = [(name, cloud) for name, cloud in sorted(frame.sensor_clouds.items())]
    if not clouds:
        clouds = [(0, frame.points)]

    total = sum(cloud.count for _, cloud in clouds)
    vertices = np.empty(total, dtype=VERTEX_DTYPE)
    offset = 0
    for laser_name, cloud in clouds:
        end = offset + cloud.count
        pts = cloud.points
        for col, name in enumerate(("x", "y", "z", "intensity", "range", "elongation")):
            vertices[name][offset:end] = pts[:, col]
        vertices["laser"][offset:end] = laser_name
        offset = end
    return vertices


def write_frame_ply(frame: Frame, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    element = PlyElement.describe(frame_vertices(frame), "vertex")
    PlyData(
        [element],
        byte_order="<",
        comments=[
            f"frame_index {frame.frame_index}",
            f"timestamp_micros {frame.timestamp}",
            *(f"laser {name} {laser_label(name)}" for name in sorted(frame.sensor_clouds)),
        ],
    ).write(str(path))
    return path


def export_frames(frames, out_dir: str | Path) -> list[Path]:
    """Write each frame to <out_dir>/frame_<index:05d>.ply."""
    out_dir = Path(out_dir)
    return [write_frame_ply(frame, out_dir / f"frame_{frame.frame_index:05d}.ply") for frame in frames]
