"""Frame cache: frame index -> Frame, write-once per key until cleared.

Camera images live in their own cache, filled by a separate decode stream, so
they are never lost to lidar timing. The session merges the two on read.
"""

from __future__ import annotations

import bisect
import threading
from dataclasses import dataclass, field

import numpy as np

from .range_image import PointCloud


@dataclass(frozen=True, eq=False)
class Frame:
    frame_index: int
    timestamp: int
    points: PointCloud                                       # merged, vehicle frame
    sensor_clouds: dict[int, PointCloud] = field(default_factory=dict)
    boxes: tuple[dict, ...] = ()                             # lidar_box rows for this timestamp
    vehicle_pose: np.ndarray | None = None                   # (4, 4) world_from_vehicle
    camera_images: dict[int, bytes] = field(default_factory=dict)    # camera_name -> JPEG

    @property
    def point_count(self) -> int:
        return self.points.count


class FrameCache:
    """Append-only frame store. A second put() for the same index is ignored."""

    def __init__(self):
        self._lock = threading.Lock()
        self._frames: dict[int, Frame] = {}
        self._indices: list[int] = []   # sorted keys of _frames

    def put(self, frame: Frame) -> bool:
        """Insert a frame; returns False if its index was already cached."""
        with self._lock:
            if frame.frame_index in self._frames:
                return False
            self._frames[frame.frame_index] = frame
            bisect.insort(self._indices, frame.frame_index)
            return True

    def get(self, frame_index: int) -> Frame | None:
        with self._lock:
            return self._frames.get(frame_index)

    def __contains__(self, frame_index: object) -> bool:
        with self._lock:
            return frame_index in self._frames

    def __len__(self) -> int:
        with self._lock:
            return len(self._frames)

    def indices(self) -> list[int]:
        with self._lock:
            return list(self._indices)

    def contiguous_frontier(self, start: int) -> int:
        """Highest index i >= start such that start..i are all cached.

        Returns start - 1 when start itself is missing.
        """
        with self._lock:
            pos = bisect.bisect_left(self._indices, start)
            last = start - 1
            while pos < len(self._indices) and self._indices[pos] == last + 1:
                last += 1
                pos += 1
            return last

    def clear(self) -> None:
        with self._lock:
            self._frames.clear()
            self._indices.clear()


class CameraImageCache:
    """frame index -> {camera_name: JPEG}. Each (frame, camera) is written once."""

    def __init__(self):
        self._lock = threading.Lock()
        self._images: dict[int, dict[int, bytes]] = {}

    def put(self, frame_index: int, camera_name: int, image: bytes) -> bool:
        with self._lock:
            images = self._images.setdefault(frame_index, {})
            if camera_name in images:
                return False
            images[camera_name] = image
            return True

    def get(self, frame_index: int) -> dict[int, bytes]:
        """A copy of the frame's images; empty when none have arrived."""
        with self._lock:
            return dict(self._images.get(frame_index, {}))

    def __contains__(self, frame_index: object) -> bool:
        with self._lock:
            return frame_index in self._images

    def __len__(self) -> int:
        with self._lock:
            return len(self._images)

    def indices(self) -> list[int]:
        with self._lock:
            return sorted(self._images)

    def clear(self) -> None:
        with self._lock:
            self._images.clear()
