"""Tests for replay.frame_index — master frame index and unit estimates."""

import pytest

from replay.frame_index import FrameIndex, estimate_unit_for_frame


def test_from_timestamps_sorts_and_dedups():
    idx = FrameIndex.from_timestamps([300, 100, 200, 100])
    assert idx.timestamps == (100, 200, 300)
    assert len(idx) == 3


def test_frame_for_known_and_unknown():
    idx = FrameIndex.from_timestamps([1_500_000_000_000_000 + i * 100_000 for i in range(5)])
    assert idx.frame_for(1_500_000_000_000_000) == 0
    assert idx.frame_for(1_500_000_000_400_000) == 4
    assert idx.frame_for(1_500_000_000_050_000) is None


def test_timestamp_for_bounds():
    idx = FrameIndex.from_timestamps([10, 20])
    assert idx.timestamp_for(1) == 20
    assert idx.timestamp_for(2) is None
    assert idx.timestamp_for(-1) is None


def test_timestamps_stay_integers():
    idx = FrameIndex.from_timestamps([10.0, 20.0])
    assert all(isinstance(ts, int) for ts in idx.timestamps)
    assert idx.frame_for(20) == 1


@pytest.mark.parametrize("frame,expected", [(0, 0), (49, 0), (50, 1), (149, 2), (150, 3), (198, 3)])
def test_estimate_unit_for_frame(frame, expected):
    # 199 frames over 4 units: ceil(199 / 4) = 50 frames per unit.
    assert estimate_unit_for_frame(frame, 199, 4) == expected


def test_estimate_unit_for_frame_invalid_input():
    assert estimate_unit_for_frame(0, 0, 4) == -1
    assert estimate_unit_for_frame(5, 10, 0) == -1
    assert estimate_unit_for_frame(10, 10, 2) == -1
    assert estimate_unit_for_frame(-1, 10, 2) == -1
