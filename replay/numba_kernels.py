"""Numba-accelerated kernels for range-image conversion (sequential backend)."""

from __future__ import annotations

import time

import numba as nb
import numpy as np

# Floats per output point: x, y, z, intensity, range, elongation.
POINT_STRIDE = 6


# ---------------------------------------------------------------------------
# Range image: fused spherical -> cartesian -> extrinsic -> compact
# ---------------------------------------------------------------------------

@nb.njit(cache=True, nogil=True)
def range_image_to_points(
    values: np.ndarray,         # (H * W * C,) float32, [range, intensity, elongation, ...] per pixel
    height: int,
    width: int,
    channels: int,
    cos_inc: np.ndarray,        # (H,) float32
    sin_inc: np.ndarray,        # (H,) float32
    cos_az: np.ndarray,         # (W,) float32
    sin_az: np.ndarray,         # (W,) float32
    extrinsic: np.ndarray,      # (3, 4) float64, contiguous
    out: np.ndarray,            # (H * W, POINT_STRIDE) float32, worst case all valid
) -> int:
    """Convert every pixel with range > 0 and pack it into out, in scan order.

    Returns the number of packed rows; only out[:n] is meaningful.
    nogil so decode worker threads can run conversions concurrently.
    """
    e00 = extrinsic[0, 0]
    e01 = extrinsic[0, 1]
    e02 = extrinsic[0, 2]
    e03 = extrinsic[0, 3]
    e10 = extrinsic[1, 0]
    e11 = extrinsic[1, 1]
    e12 = extrinsic[1, 2]
    e13 = extrinsic[1, 3]
    e20 = extrinsic[2, 0]
    e21 = extrinsic[2, 1]
    e22 = extrinsic[2, 2]
    e23 = extrinsic[2, 3]

    n = 0
    for row in range(height):
        ci = cos_inc[row]
        si = sin_inc[row]
        for col in range(width):
            base = (row * width + col) * channels
            rng = values[base]
            # NaN fails this comparison as well, so it is dropped too.
            if not rng > 0.0:
                continue

            x = rng * ci * cos_az[col]
            y = rng * ci * sin_az[col]
            z = rng * si

            out[n, 0] = e00 * x + e01 * y + e02 * z + e03
            out[n, 1] = e10 * x + e11 * y + e12 * z + e13
            out[n, 2] = e20 * x + e21 * y + e22 * z + e23
            out[n, 3] = values[base + 1]
            out[n, 4] = rng
            out[n, 5] = values[base + 2]
            n += 1

    return n


# ---------------------------------------------------------------------------
# Warmup: compile all kernels once with tiny dummy data
# ---------------------------------------------------------------------------

def warmup_numba() -> float:
    """Trigger JIT compilation for all kernels. Returns warmup time in seconds."""
    t0 = time.perf_counter()

    height, width, channels = 2, 3, 4
    dummy_values = np.ones(height * width * channels, dtype=np.float32)
    dummy_inc = np.zeros(height, dtype=np.float32)
    dummy_az = np.zeros(width, dtype=np.float32)
    dummy_ext = np.ascontiguousarray(np.eye(4, dtype=np.float64)[:3])
    dummy_out = np.empty((height * width, POINT_STRIDE), dtype=np.float32)
    range_image_to_points(
        dummy_values, height, width, channels,
        np.cos(dummy_inc), np.sin(dummy_inc), np.cos(dummy_az), np.sin(dummy_az),
        dummy_ext, dummy_out,
    )

    return time.perf_counter() - t0
