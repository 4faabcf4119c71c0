"""Master frame index: one row per frame in the pose component."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable


@dataclass(frozen=True)
class FrameIndex:
    timestamps: tuple[int, ...]                  # ascending, unique (microseconds)
    frame_by_timestamp: dict[int, int] = field(repr=False)

    @classmethod
    def from_timestamps(cls, timestamps: Iterable[int]) -> FrameIndex:
        """Sort and de-duplicate; frame i is the i-th ascending timestamp.

        Timestamps stay integers so lookups never depend on float equality.
        """
        ordered = tuple(sorted({int(ts) for ts in timestamps}))
        return cls(
            timestamps=ordered,
            frame_by_timestamp={ts: i for i, ts in enumerate(ordered)},
        )

    def __len__(self) -> int:
        return len(self.timestamps)

    def frame_for(self, timestamp: int) -> int | None:
        """Frame index for a timestamp, or None if it is not a known frame."""
        return self.frame_by_timestamp.get(int(timestamp))

    def timestamp_for(self, frame_index: int) -> int | None:
        if 0 <= frame_index < len(self.timestamps):
            return self.timestamps[frame_index]
        return None


def estimate_unit_for_frame(frame_index: int, total_frames: int, num_units: int) -> int:
    """Best guess of the row group holding a frame, assuming evenly filled groups.

    Returns -1 when there is nothing to guess from.
    """
    if num_units <= 0 or total_frames <= 0 or not 0 <= frame_index < total_frames:
        return -1
    frames_per_unit = math.ceil(total_frames / num_units)
    return min(frame_index // frames_per_unit, num_units - 1)
