"""CUDA compute-kernel backend for range-image conversion.

One GPU thread per pixel. Valid pixels claim their output row through an
atomic counter (stream compaction), so the point count matches the
sequential backend exactly while the point order does not: lanes race for
slots. Compare backends on counts and aggregates, never element-wise.

Pipeline per sensor:
  1. Upload range values + inclination/azimuth tables (precomputed on CPU)
  2. Launch the kernel (one thread per pixel)
  3. Read back the counter, then the packed prefix of the output buffer
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Mapping

import numpy as np
from numba import cuda

from .calibration import CalibrationSet, LidarCalibration, compute_azimuths, compute_inclinations
from .numba_kernels import POINT_STRIDE
from .range_image import MultiSensorResult, PointCloud, RangeScan, convert_all_sensors

LOG = logging.getLogger(__name__)

DEFAULT_THREADS_PER_BLOCK = 256


# ---------------------------------------------------------------------------
# Kernel
# ---------------------------------------------------------------------------

@cuda.jit
def _range_image_kernel(values, height, width, channels, inclinations, azimuths,
                        extrinsic, out, counter):
    pixel = cuda.grid(1)
    if pixel >= height * width:
        return

    row = pixel // width
    col = pixel - row * width
    base = pixel * channels

    rng = values[base]
    if not rng > 0.0:
        return

    inc = inclinations[row]
    az = azimuths[col]
    ci = math.cos(inc)
    x = rng * ci * math.cos(az)
    y = rng * ci * math.sin(az)
    z = rng * math.sin(inc)

    # Claim the next free output row.
    slot = cuda.atomic.add(counter, 0, 1)
    out[slot, 0] = extrinsic[0, 0] * x + extrinsic[0, 1] * y + extrinsic[0, 2] * z + extrinsic[0, 3]
    out[slot, 1] = extrinsic[1, 0] * x + extrinsic[1, 1] * y + extrinsic[1, 2] * z + extrinsic[1, 3]
    out[slot, 2] = extrinsic[2, 0] * x + extrinsic[2, 1] * y + extrinsic[2, 2] * z + extrinsic[2, 3]
    out[slot, 3] = values[base + 1]
    out[slot, 4] = rng
    out[slot, 5] = values[base + 2]


# ---------------------------------------------------------------------------
# Device management: one lazily created context per process
# ---------------------------------------------------------------------------

_context = None
_context_lock = threading.Lock()


def is_gpu_available() -> bool:
    """True when numba can see a CUDA device (or the CUDA simulator is on)."""
    try:
        return bool(cuda.is_available())
    except Exception as exc:  # driver probing can raise on broken installs
        LOG.debug("CUDA availability check failed: %s", exc)
        return False


def get_device_context():
    """Return the cached CUDA context, creating it on first use."""
    global _context
    with _context_lock:
        if _context is None:
            if not is_gpu_available():
                raise RuntimeError("CUDA: no compatible device available")
            _context = cuda.current_context()
            LOG.debug("CUDA context created: %s", _context)
        return _context


def reset_device_context() -> None:
    """Drop the cached context; the next conversion creates a fresh one."""
    global _context
    with _context_lock:
        _context = None


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------

def convert_range_image_gpu(
    scan: RangeScan,
    calib: LidarCalibration,
    threads_per_block: int = DEFAULT_THREADS_PER_BLOCK,
) -> PointCloud:
    """Convert one sensor's range image on the GPU. Same contract as convert_range_image."""
    get_device_context()

    n_pixels = scan.height * scan.width
    inclinations = compute_inclinations(scan.height, calib).astype(np.float32)
    azimuths = compute_azimuths(scan.width, calib.azimuth_correction).astype(np.float32)
    extrinsic = np.ascontiguousarray(calib.extrinsic[:3, :4], dtype=np.float32)

    d_values = cuda.to_device(scan.values)
    d_inc = cuda.to_device(inclinations)
    d_az = cuda.to_device(azimuths)
    d_ext = cuda.to_device(extrinsic)
    d_out = cuda.device_array((n_pixels, POINT_STRIDE), dtype=np.float32)
    d_counter = cuda.to_device(np.zeros(1, dtype=np.int32))

    blocks = (n_pixels + threads_per_block - 1) // threads_per_block
    _range_image_kernel[blocks, threads_per_block](
        d_values, scan.height, scan.width, scan.channels,
        d_inc, d_az, d_ext, d_out, d_counter,
    )

    # Counter first: it tells how much of the output buffer to read back.
    count = int(d_counter.copy_to_host()[0])
    if count == 0:
        return PointCloud.empty()
    return PointCloud(d_out[:count].copy_to_host())


def convert_all_sensors_gpu(
    scans: Mapping[int, RangeScan],
    calibrations: CalibrationSet,
    threads_per_block: int = DEFAULT_THREADS_PER_BLOCK,
) -> MultiSensorResult:
    """GPU counterpart of convert_all_sensors (same skip/merge rules)."""
    return convert_all_sensors(
        scans,
        calibrations,
        convert_fn=lambda scan, calib: convert_range_image_gpu(scan, calib, threads_per_block),
    )
