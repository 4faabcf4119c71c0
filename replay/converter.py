"""Backend selection for LiDAR conversion: CUDA when possible, CPU otherwise.

The first runtime failure on the GPU path (no device, launch or read-back
error) switches the converter to the CPU kernel for the rest of its life;
the failing frame is converted again on the CPU so nothing is lost.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Mapping

from .calibration import CalibrationSet
from .gpu_backend import (
    DEFAULT_THREADS_PER_BLOCK,
    convert_all_sensors_gpu,
    is_gpu_available,
    reset_device_context,
)
from .range_image import MultiSensorResult, RangeScan, convert_all_sensors

LOG = logging.getLogger(__name__)

BACKEND_AUTO = "auto"
BACKEND_CPU = "cpu"
BACKEND_GPU = "gpu"
BACKENDS = (BACKEND_AUTO, BACKEND_CPU, BACKEND_GPU)


@dataclass
class ConvertResult:
    result: MultiSensorResult
    elapsed_ms: float
    backend: str   # backend that produced this result


class LidarConverter:
    """Thread-safe converter shared by all decode workers of one session."""

    def __init__(self, backend: str = BACKEND_AUTO, threads_per_block: int = DEFAULT_THREADS_PER_BLOCK):
        if backend not in BACKENDS:
            raise ValueError(f"Unknown conversion backend {backend!r}; expected one of {BACKENDS}")
        self.requested = backend
        self.threads_per_block = threads_per_block
        self._lock = threading.Lock()

        if backend == BACKEND_CPU:
            self._backend = BACKEND_CPU
        elif is_gpu_available():
            self._backend = BACKEND_GPU
        else:
            if backend == BACKEND_GPU:
                LOG.warning("GPU backend requested but no CUDA device is available, using CPU")
            self._backend = BACKEND_CPU

    @property
    def backend(self) -> str:
        with self._lock:
            return self._backend

    def _fall_back(self, exc: Exception) -> None:
        with self._lock:
            if self._backend == BACKEND_CPU:
                return
            self._backend = BACKEND_CPU
        LOG.warning("GPU conversion failed (%s), falling back to CPU for this session", exc)
        # A lost device must not be reused; the next GPU user recreates it.
        reset_device_context()

    def convert(self, scans: Mapping[int, RangeScan], calibrations: CalibrationSet) -> ConvertResult:
        t0 = time.perf_counter()
        if self.backend == BACKEND_GPU:
            try:
                result = convert_all_sensors_gpu(scans, calibrations, self.threads_per_block)
            except ValueError:
                # Bad calibration input fails the same way on either backend.
                raise
            except Exception as exc:
                self._fall_back(exc)
            else:
                return ConvertResult(result, (time.perf_counter() - t0) * 1000.0, BACKEND_GPU)

        result = convert_all_sensors(scans, calibrations)
        return ConvertResult(result, (time.perf_counter() - t0) * 1000.0, BACKEND_CPU)
