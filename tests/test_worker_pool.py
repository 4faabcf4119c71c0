"""Tests for replay.worker and replay.worker_pool — dispatch, queueing, teardown."""

import threading

import pytest

from replay.calibration import CalibrationSet
from replay.converter import LidarConverter
from replay.parquet_io import ParquetComponent
from replay.worker import CameraDecodeWorker, DecodeWorker, UnitResult
from replay.worker_pool import PoolInitError, PoolTerminatedError, WorkerPool

TIMEOUT = 10.0


class FakeWorker:
    """Decodes instantly unless a gate is set; records the units it saw."""

    num_units = 4
    gate: threading.Event | None = None
    seen: list
    fail_units: set = set()

    def __init__(self, source, calibrations, converter):
        self.source = source

    def open(self):
        return self.num_units

    def decode_unit(self, unit_index):
        if self.gate is not None:
            assert self.gate.wait(TIMEOUT)
        type(self).seen.append(unit_index)
        if unit_index in self.fail_units:
            raise OSError(f"corrupt row group {unit_index}")
        return UnitResult(unit_index=unit_index, frames=(), decode_ms=0.0, convert_ms=0.0)


def _fake(gate=None, fail_units=()):
    return type("Fake", (FakeWorker,), {"gate": gate, "seen": [], "fail_units": set(fail_units)})


def _pool(factory, concurrency=2):
    pool = WorkerPool(concurrency, worker_factory=factory)
    pool.init("source.parquet", CalibrationSet(), None, timeout=TIMEOUT)
    assert pool.wait_all_ready(TIMEOUT)
    return pool


def test_rejects_zero_concurrency():
    with pytest.raises(ValueError):
        WorkerPool(0)


def test_init_returns_unit_count_and_resolves_requests():
    pool = _pool(_fake())
    try:
        assert pool.num_units == 4
        assert pool.ready_count == 2
        result = pool.request_unit(2).result(TIMEOUT)
        assert result.unit_index == 2
    finally:
        pool.terminate()


def test_init_fails_when_no_worker_opens():
    def broken(source, calibrations, converter):
        raise FileNotFoundError(source)

    pool = WorkerPool(3, worker_factory=broken)
    with pytest.raises(PoolInitError, match="All 3 decode workers failed"):
        pool.init("missing.parquet", CalibrationSet(), None, timeout=TIMEOUT)
    assert pool.is_terminated


def test_partial_readiness_is_usable():
    created = []
    lock = threading.Lock()
    fake = _fake()

    def flaky(source, calibrations, converter):
        with lock:
            created.append(source)
            n = len(created)
        if n > 1:
            raise OSError("cannot open")
        return fake(source, calibrations, converter)

    pool = WorkerPool(3, worker_factory=flaky)
    try:
        assert pool.init("source.parquet", CalibrationSet(), None, timeout=TIMEOUT) == 4
        assert pool.is_ready
        assert not pool.wait_all_ready(TIMEOUT)
        assert pool.ready_count == 1
        assert pool.request_unit(0).result(TIMEOUT).unit_index == 0
    finally:
        pool.terminate()


def test_overflow_waits_in_fifo_order():
    gate = threading.Event()
    fake = _fake(gate=gate)
    pool = _pool(fake, concurrency=1)
    try:
        futures = [pool.request_unit(i) for i in (3, 1, 2, 0)]
        assert pool.pending_count == 3
        gate.set()
        assert [f.result(TIMEOUT).unit_index for f in futures] == [3, 1, 2, 0]
        assert fake.seen == [3, 1, 2, 0]
        assert pool.pending_count == 0
    finally:
        pool.terminate()


def test_workers_decode_concurrently():
    barrier = threading.Barrier(2, timeout=TIMEOUT)

    class Concurrent(FakeWorker):
        seen = []

        def decode_unit(self, unit_index):
            # Only passes if both units are being decoded at the same time.
            barrier.wait()
            return super().decode_unit(unit_index)

    pool = _pool(Concurrent, concurrency=2)
    try:
        futures = [pool.request_unit(0), pool.request_unit(1)]
        assert sorted(f.result(TIMEOUT).unit_index for f in futures) == [0, 1]
    finally:
        pool.terminate()


def test_decode_error_rejects_only_that_unit():
    pool = _pool(_fake(fail_units={1}))
    try:
        bad = pool.request_unit(1)
        with pytest.raises(OSError, match="corrupt row group 1"):
            bad.result(TIMEOUT)
        # The pool is not poisoned; the same unit can be asked for again.
        assert pool.request_unit(0).result(TIMEOUT).unit_index == 0
        with pytest.raises(OSError):
            pool.request_unit(1).result(TIMEOUT)
    finally:
        pool.terminate()


def test_terminate_fails_in_flight_and_queued():
    gate = threading.Event()
    pool = _pool(_fake(gate=gate), concurrency=1)
    in_flight = pool.request_unit(0)
    queued = pool.request_unit(1)
    pool.terminate()
    gate.set()
    with pytest.raises(PoolTerminatedError):
        in_flight.result(TIMEOUT)
    with pytest.raises(PoolTerminatedError):
        queued.result(TIMEOUT)
    with pytest.raises(PoolTerminatedError):
        pool.request_unit(2).result(TIMEOUT)


def test_decode_worker_requires_open(segment):
    worker = DecodeWorker(segment.component_path("lidar"), CalibrationSet(), LidarConverter("cpu"))
    with pytest.raises(RuntimeError, match="before open"):
        worker.decode_unit(0)


def test_pool_with_real_workers(segment):
    calib_rows = ParquetComponent.open(
        "lidar_calibration", segment.component_path("lidar_calibration")
    ).read_all_rows()
    calibrations = CalibrationSet.from_rows(calib_rows)
    pool = WorkerPool(2)
    try:
        num_units = pool.init(
            segment.component_path("lidar"), calibrations, LidarConverter("cpu"), timeout=TIMEOUT
        )
        assert num_units == 4
        result = pool.request_unit(3).result(60.0)
        assert result.num_frames == 46
        assert {fr.timestamp for fr in result.frames} == set(segment.timestamps[153:])
        for fr in result.frames:
            assert sorted(fr.sensor_clouds) == [1, 2, 3, 4, 5]
            assert fr.merged.count == segment.points_per_frame
            assert fr.backend == "cpu"
        with pytest.raises(IndexError):
            pool.request_unit(4).result(60.0)
    finally:
        pool.terminate()


def test_join_waits_for_running_decode():
    gate = threading.Event()
    started = threading.Event()

    class Blocking(FakeWorker):
        seen = []

        def decode_unit(self, unit_index):
            started.set()
            assert gate.wait(TIMEOUT)
            return super().decode_unit(unit_index)

    pool = _pool(Blocking, concurrency=2)
    pool.request_unit(0)
    assert started.wait(TIMEOUT)
    pool.terminate()
    # The worker holding unit 0 is still blocked inside decode_unit.
    assert not pool.join(0.1)
    gate.set()
    assert pool.join(TIMEOUT)


def test_join_before_init_is_trivially_done():
    assert WorkerPool(2).join(0.0)


def test_camera_worker_requires_open(camera_segment):
    worker = CameraDecodeWorker(camera_segment.component_path("camera_image"))
    with pytest.raises(RuntimeError, match="before open"):
        worker.decode_unit(0)


def test_pool_with_camera_workers(camera_segment):
    pool = WorkerPool(2, worker_factory=CameraDecodeWorker, name="camera")
    try:
        assert pool.init(camera_segment.component_path("camera_image"), timeout=TIMEOUT) == 4
        assert any(t.name == "camera-worker-0" for t in threading.enumerate())
        result = pool.request_unit(1).result(TIMEOUT)
        assert result.num_frames == 3
        assert [fr.timestamp for fr in result.frames] == camera_segment.timestamps[3:6]
        frame = result.frames[0]
        assert sorted(frame.images) == [1, 2, 3, 4, 5]
        assert frame.images[4] == camera_segment.jpeg(3, 4)
    finally:
        pool.terminate()
    assert pool.join(TIMEOUT)
