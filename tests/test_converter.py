"""Tests for replay.converter — backend selection and sticky CPU fallback."""

import numpy as np
import pytest

from replay import converter as converter_mod
from replay.calibration import CalibrationSet, LidarCalibration
from replay.converter import BACKEND_CPU, BACKEND_GPU, LidarConverter
from replay.range_image import RangeScan


def _inputs():
    img = np.zeros((2, 3, 4), dtype=np.float32)
    img[:, :, 0] = [[5.0, -1.0, 0.0], [10.0, 3.0, -1.0]]
    img[:, :, 1] = 0.5
    scans = {1: RangeScan(shape=(2, 3, 4), values=img.reshape(-1))}
    calibrations = CalibrationSet([LidarCalibration(1, np.eye(4), None, 0.0, 0.0)])
    return scans, calibrations


def test_unknown_backend_rejected():
    with pytest.raises(ValueError, match="Unknown conversion backend"):
        LidarConverter("opencl")


def test_cpu_backend_never_touches_gpu(monkeypatch):
    def boom(*args, **kwargs):
        raise AssertionError("GPU path used")

    monkeypatch.setattr(converter_mod, "convert_all_sensors_gpu", boom)
    conv = LidarConverter("cpu")
    result = conv.convert(*_inputs())
    assert result.backend == BACKEND_CPU
    assert result.result.merged.count == 3
    assert result.elapsed_ms >= 0.0


def test_auto_without_device_uses_cpu(monkeypatch):
    monkeypatch.setattr(converter_mod, "is_gpu_available", lambda: False)
    assert LidarConverter("auto").backend == BACKEND_CPU


def test_gpu_requested_without_device_warns(monkeypatch, caplog):
    monkeypatch.setattr(converter_mod, "is_gpu_available", lambda: False)
    with caplog.at_level("WARNING"):
        conv = LidarConverter("gpu")
    assert conv.backend == BACKEND_CPU
    assert "no CUDA device" in caplog.text


def test_auto_with_device_uses_gpu(monkeypatch):
    monkeypatch.setattr(converter_mod, "is_gpu_available", lambda: True)
    assert LidarConverter("auto").backend == BACKEND_GPU


def test_runtime_failure_falls_back_and_sticks(monkeypatch):
    calls = {"gpu": 0, "reset": 0}

    def failing_gpu(*args, **kwargs):
        calls["gpu"] += 1
        raise RuntimeError("device lost")

    def fake_reset():
        calls["reset"] += 1

    monkeypatch.setattr(converter_mod, "is_gpu_available", lambda: True)
    monkeypatch.setattr(converter_mod, "convert_all_sensors_gpu", failing_gpu)
    monkeypatch.setattr(converter_mod, "reset_device_context", fake_reset)

    conv = LidarConverter("auto")
    first = conv.convert(*_inputs())
    # The failing frame is converted again on the CPU, nothing is lost.
    assert first.backend == BACKEND_CPU
    assert first.result.merged.count == 3
    assert conv.backend == BACKEND_CPU

    second = conv.convert(*_inputs())
    assert second.backend == BACKEND_CPU
    assert calls == {"gpu": 1, "reset": 1}


def test_value_error_is_not_a_device_failure(monkeypatch):
    def bad_input(*args, **kwargs):
        raise ValueError("bad calibration")

    monkeypatch.setattr(converter_mod, "is_gpu_available", lambda: True)
    monkeypatch.setattr(converter_mod, "convert_all_sensors_gpu", bad_input)
    conv = LidarConverter("gpu")
    with pytest.raises(ValueError, match="bad calibration"):
        conv.convert(*_inputs())
    assert conv.backend == BACKEND_GPU
