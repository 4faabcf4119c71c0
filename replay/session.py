"""Replay session: owns the dataset, the decode pools and the frame caches.

Lifecycle:
1. load() reads the small components (poses, calibrations, boxes) whole,
   builds the master frame index and starts the worker pool on the lidar file,
   plus a second pool on camera_image when that component is present.
2. The first eager_units row groups of each stream are decoded before load()
   returns, so the first frames are on screen immediately.
3. Every remaining row group is requested in the background (prefetch).
4. get_frame() is a plain cache lookup; a miss means "not decoded yet".
   Camera images are kept in their own cache and merged in on read.
5. reset() drops everything. Results from before the reset never reach the
   new caches.

Each row group moves UNSEEN -> IN_FLIGHT -> LOADED, or back to UNSEEN when
its decode fails so it can be requested again.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, wait
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Callable

import numpy as np

from .calibration import CalibrationSet
from .config import ConverterConfig, PoolConfig, ReplayConfig
from .converter import LidarConverter
from .frame_cache import CameraImageCache, Frame, FrameCache
from .frame_index import FrameIndex, estimate_unit_for_frame
from .parquet_io import (
    COL_POSE_TRANSFORM,
    COL_TIMESTAMP,
    COMPONENT_CAMERA_IMAGE,
    COMPONENT_LIDAR,
    COMPONENT_LIDAR_BOX,
    COMPONENT_LIDAR_CALIBRATION,
    COMPONENT_VEHICLE_POSE,
    REQUIRED_COMPONENTS,
    ParquetComponent,
    dataset_sources,
    group_index_by,
    pose_matrix,
)
from .worker import CameraDecodeWorker, CameraUnitResult, UnitResult
from .worker_pool import PoolInitError, WorkerPool, settle_future

LOG = logging.getLogger(__name__)

FrameCallback = Callable[[int, Frame], None]

LIDAR = "lidar"
CAMERA = "camera"

CLOSE_JOIN_TIMEOUT = 5.0


class DatasetLoadError(RuntimeError):
    """The dataset could not be opened or its first unit could not be decoded."""


class SessionResetError(RuntimeError):
    """The session was reset before the request completed."""


class LoadStatus(Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class UnitState(Enum):
    UNSEEN = "unseen"
    IN_FLIGHT = "in_flight"
    LOADED = "loaded"


@dataclass(frozen=True)
class SessionTelemetry:
    last_decode_ms: float = 0.0
    last_convert_ms: float = 0.0
    backend: str = ""
    units_loaded: int = 0
    units_failed: int = 0
    camera_units_loaded: int = 0
    camera_units_failed: int = 0


@dataclass
class _UnitTrack:
    """One decode stream: its pool and the state of every unit."""

    pool: WorkerPool | None = None
    states: list[UnitState] = field(default_factory=list)
    futures: dict[int, Future] = field(default_factory=dict)
    prefetch: list[Future] = field(default_factory=list)

    def all_loaded(self) -> bool:
        return bool(self.states) and all(s == UnitState.LOADED for s in self.states)


def _camera_pool(concurrency: int) -> WorkerPool:
    return WorkerPool(concurrency, worker_factory=CameraDecodeWorker, name="camera")


class ReplaySession:
    def __init__(
        self,
        pool_config: PoolConfig | None = None,
        converter_config: ConverterConfig | None = None,
        pool_factory: Callable[[int], WorkerPool] = WorkerPool,
        camera_pool_factory: Callable[[int], WorkerPool] = _camera_pool,
    ):
        self.pool_config = pool_config or PoolConfig()
        self.converter_config = converter_config or ConverterConfig()
        self.pool_factory = pool_factory
        self.camera_pool_factory = camera_pool_factory

        self._lock = threading.Lock()
        self._generation = 0
        self._cache = FrameCache()
        self._images = CameraImageCache()
        self._subscribers: list[FrameCallback] = []
        self._clear_state()

    @classmethod
    def from_config(cls, cfg: ReplayConfig, **kwargs) -> ReplaySession:
        return cls(pool_config=cfg.pool, converter_config=cfg.converter, **kwargs)

    def _clear_state(self) -> None:
        self._status = LoadStatus.IDLE
        self._error: str | None = None
        self._frame_index: FrameIndex | None = None
        self._poses: dict[int, np.ndarray] = {}
        self._boxes: dict[int, list[dict]] = {}
        self._converter: LidarConverter | None = None
        self._lidar = _UnitTrack()
        self._camera = _UnitTrack()
        self._cursor: int | None = None
        self._telemetry = SessionTelemetry()

    def _track(self, stream: str) -> _UnitTrack:
        return self._lidar if stream == LIDAR else self._camera

    # -- Loading --

    def load(self, data_dir: str | Path, segment_id: str) -> int:
        """Open a segment, decode the eager units and start prefetch.

        Returns the number of frames in the master index. Raises
        DatasetLoadError on any fatal failure.
        """
        if self._status != LoadStatus.IDLE:
            self.reset()

        with self._lock:
            self._status = LoadStatus.LOADING
            generation = self._generation

        try:
            num_units, num_camera_units = self._open_dataset(data_dir, segment_id, generation)
        except SessionResetError:
            raise
        except DatasetLoadError as exc:
            self._fail_load(generation, str(exc))
            raise
        except Exception as exc:
            self._fail_load(generation, f"Could not open {segment_id}: {exc}")
            raise DatasetLoadError(f"Could not open {segment_id}: {exc}") from exc

        n_eager = self.pool_config.eager_units
        eager = [self.load_unit(i) for i in range(min(n_eager, num_units))]
        camera_eager = [self.load_camera_unit(i) for i in range(min(n_eager, num_camera_units))]
        for unit_index, future in enumerate(eager):
            exc = future.exception()
            if exc is None:
                continue
            if unit_index == 0:
                self._fail_load(generation, f"First unit failed to decode: {exc}")
                raise DatasetLoadError(f"First unit of {segment_id} failed to decode: {exc}") from exc
            LOG.warning("Eager unit %d failed (%s); it stays retryable", unit_index, exc)
        for unit_index, future in enumerate(camera_eager):
            exc = future.exception()
            if exc is not None:
                LOG.warning("Eager camera unit %d failed (%s); it stays retryable", unit_index, exc)

        with self._lock:
            if generation != self._generation:
                raise SessionResetError("Session was reset during load()")
            self._status = LoadStatus.READY
            self._cursor = 0
            total = len(self._frame_index)

        LOG.info("Loaded %s: %d frames in %d units, %d camera units",
                 segment_id, total, num_units, num_camera_units)
        first = self.get_frame(0)
        if first is not None:
            self._notify(0, first)
        if self.pool_config.prefetch:
            self.prefetch_all()
        return total

    def load_config(self, cfg: ReplayConfig) -> int:
        return self.load(cfg.dataset.data_dir, cfg.dataset.segment_id)

    def _open_dataset(self, data_dir: str | Path, segment_id: str, generation: int) -> tuple[int, int]:
        sources = dataset_sources(data_dir, segment_id)
        missing = [c for c in REQUIRED_COMPONENTS if not sources[c].exists()]
        if missing:
            raise DatasetLoadError(
                f"Missing required components for {segment_id} in {data_dir}: {', '.join(missing)}"
            )

        try:
            pose_rows = ParquetComponent.open(COMPONENT_VEHICLE_POSE, sources[COMPONENT_VEHICLE_POSE]) \
                .read_all_rows(columns=[COL_TIMESTAMP, COL_POSE_TRANSFORM])
            calib_rows = ParquetComponent.open(
                COMPONENT_LIDAR_CALIBRATION, sources[COMPONENT_LIDAR_CALIBRATION]
            ).read_all_rows()
            calibrations = CalibrationSet.from_rows(calib_rows)
        except (OSError, ValueError) as exc:
            raise DatasetLoadError(f"Could not read {segment_id}: {exc}") from exc

        frame_index = FrameIndex.from_timestamps(row[COL_TIMESTAMP] for row in pose_rows)
        poses = {}
        for ts, rows in group_index_by(pose_rows, COL_TIMESTAMP).items():
            pose = pose_matrix(rows[0])
            if pose is not None:
                poses[int(ts)] = pose
        boxes = self._read_boxes(sources[COMPONENT_LIDAR_BOX])

        converter = LidarConverter(self.converter_config.backend, self.converter_config.threads_per_block)
        pool = self.pool_factory(self.pool_config.workers)
        try:
            num_units = pool.init(sources[COMPONENT_LIDAR], calibrations, converter)
        except PoolInitError as exc:
            raise DatasetLoadError(str(exc)) from exc
        try:
            camera_pool, num_camera_units = self._open_cameras(sources[COMPONENT_CAMERA_IMAGE])
        except Exception:
            pool.terminate()
            raise

        with self._lock:
            if generation != self._generation:
                stale = True
            else:
                stale = False
                self._frame_index = frame_index
                self._poses = poses
                self._boxes = boxes
                self._converter = converter
                self._lidar = _UnitTrack(pool=pool, states=[UnitState.UNSEEN] * num_units)
                self._camera = _UnitTrack(pool=camera_pool, states=[UnitState.UNSEEN] * num_camera_units)
                self._telemetry = SessionTelemetry(backend=converter.backend)
        if stale:
            pool.terminate()
            if camera_pool is not None:
                camera_pool.terminate()
            raise SessionResetError("Session was reset during load()")
        return num_units, num_camera_units

    def _read_boxes(self, path: Path) -> dict[int, list[dict]]:
        # Optional: a missing or unreadable file means frames without boxes.
        if not path.exists():
            LOG.warning("Optional component %s not found at %s, frames will have no boxes",
                        COMPONENT_LIDAR_BOX, path)
            return {}
        try:
            rows = ParquetComponent.open(COMPONENT_LIDAR_BOX, path).read_all_rows()
            return {int(ts): group for ts, group in group_index_by(rows, COL_TIMESTAMP).items()}
        except (OSError, ValueError, KeyError) as exc:
            LOG.warning("Could not read optional component %s (%s), frames will have no boxes",
                        COMPONENT_LIDAR_BOX, exc)
            return {}

    def _open_cameras(self, path: Path) -> tuple[WorkerPool | None, int]:
        if self.pool_config.camera_workers == 0:
            return None, 0
        if not path.exists():
            LOG.info("Optional component %s not found at %s, frames will have no camera images",
                     COMPONENT_CAMERA_IMAGE, path)
            return None, 0
        pool = self.camera_pool_factory(self.pool_config.camera_workers)
        try:
            return pool, pool.init(path)
        except PoolInitError as exc:
            LOG.warning("Camera images disabled: %s", exc)
            return None, 0

    def _fail_load(self, generation: int, message: str) -> None:
        with self._lock:
            if generation != self._generation:
                return
            pools = [t.pool for t in (self._lidar, self._camera) if t.pool is not None]
            self._status = LoadStatus.ERROR
            self._error = message
            self._lidar.pool = None
            self._camera.pool = None
        LOG.error("Dataset load failed: %s", message)
        for pool in pools:
            pool.terminate()

    # -- Units --

    def load_unit(self, unit_index: int) -> Future:
        """Request one lidar unit; the future resolves to its UnitResult.

        A unit that is in flight or already loaded is never dispatched again:
        the caller gets the existing future.
        """
        future = self._request(LIDAR, unit_index)
        if future is None:
            raise RuntimeError("No dataset loaded")
        return future

    def load_camera_unit(self, unit_index: int) -> Future:
        """Request one camera_image unit; the future resolves to its CameraUnitResult."""
        future = self._request(CAMERA, unit_index)
        if future is None:
            raise RuntimeError("No camera images loaded")
        return future

    def _request(self, stream: str, unit_index: int, generation: int | None = None) -> Future | None:
        # None when the stream has no pool, or the session moved past generation.
        with self._lock:
            track = self._track(stream)
            if track.pool is None or (generation is not None and generation != self._generation):
                return None
            if not 0 <= unit_index < len(track.states):
                raise IndexError(f"{stream} unit {unit_index} out of range (0..{len(track.states) - 1})")
            existing = track.futures.get(unit_index)
            if existing is not None:
                return existing
            future: Future = Future()
            track.futures[unit_index] = future
            track.states[unit_index] = UnitState.IN_FLIGHT
            pool = track.pool
            generation = self._generation

        # add_done_callback may run inline, so the lock must not be held here.
        pool.request_unit(unit_index).add_done_callback(
            partial(self._on_unit_done, stream, generation, unit_index, future)
        )
        return future

    def _on_unit_done(
        self, stream: str, generation: int, unit_index: int, future: Future, pool_future: Future
    ) -> None:
        exc = pool_future.exception()
        notify = None
        with self._lock:
            if generation != self._generation:
                stale = True
            else:
                stale = False
                track = self._track(stream)
                if exc is not None:
                    track.states[unit_index] = UnitState.UNSEEN
                    track.futures.pop(unit_index, None)
                    if stream == LIDAR:
                        self._telemetry = replace(self._telemetry, units_failed=self._telemetry.units_failed + 1)
                    else:
                        self._telemetry = replace(
                            self._telemetry, camera_units_failed=self._telemetry.camera_units_failed + 1
                        )
                elif stream == LIDAR:
                    notify = self._insert_unit(pool_future.result())
                    track.states[unit_index] = UnitState.LOADED
                else:
                    notify = self._insert_camera_unit(pool_future.result())
                    track.states[unit_index] = UnitState.LOADED

        if stale:
            reset_exc = SessionResetError(f"Session reset before {stream} unit {unit_index} completed")
            settle_future(future, exc=reset_exc)
            return
        if exc is not None:
            LOG.warning("%s unit %d failed, marked retryable: %s", stream, unit_index, exc)
            settle_future(future, exc=exc)
            return
        settle_future(future, result=pool_future.result())
        if notify is not None:
            self._notify(*notify)

    def _insert_unit(self, result: UnitResult) -> tuple[int, Frame] | None:
        """Insert a unit's frames into the cache. Caller holds self._lock.

        Returns (cursor, frame) when the displayed frame just became available.
        """
        inserted: set[int] = set()
        for fr in result.frames:
            frame_index = self._frame_index.frame_for(fr.timestamp)
            if frame_index is None:
                LOG.debug("Unit %d: timestamp %d not in the frame index, ignored",
                          result.unit_index, fr.timestamp)
                continue
            frame = Frame(
                frame_index=frame_index,
                timestamp=fr.timestamp,
                points=fr.merged,
                sensor_clouds=fr.sensor_clouds,
                boxes=tuple(self._boxes.get(fr.timestamp, ())),
                vehicle_pose=self._poses.get(fr.timestamp),
            )
            if self._cache.put(frame):
                inserted.add(frame_index)

        backend = result.frames[-1].backend if result.frames else self._telemetry.backend
        self._telemetry = replace(
            self._telemetry,
            last_decode_ms=result.decode_ms,
            last_convert_ms=result.convert_ms,
            backend=backend,
            units_loaded=self._telemetry.units_loaded + 1,
        )
        LOG.debug("Unit %d: %d new frames cached", result.unit_index, len(inserted))

        if self._cursor in inserted:
            return self._cursor, self._with_images(self._cache.get(self._cursor))
        return None

    def _insert_camera_unit(self, result: CameraUnitResult) -> tuple[int, Frame] | None:
        """Insert a camera unit's images. Caller holds self._lock.

        Returns (cursor, frame) when the displayed frame gained images.
        """
        touched: set[int] = set()
        for fr in result.frames:
            frame_index = self._frame_index.frame_for(fr.timestamp)
            if frame_index is None:
                LOG.debug("Camera unit %d: timestamp %d not in the frame index, ignored",
                          result.unit_index, fr.timestamp)
                continue
            for camera_name, image in fr.images.items():
                if self._images.put(frame_index, camera_name, image):
                    touched.add(frame_index)

        self._telemetry = replace(self._telemetry, camera_units_loaded=self._telemetry.camera_units_loaded + 1)
        LOG.debug("Camera unit %d: images for %d frames cached", result.unit_index, len(touched))

        if self._cursor in touched:
            frame = self._cache.get(self._cursor)
            if frame is not None:
                return self._cursor, self._with_images(frame)
        return None

    def _with_images(self, frame: Frame) -> Frame:
        images = self._images.get(frame.frame_index)
        return replace(frame, camera_images=images) if images else frame

    def prefetch_all(self) -> list[Future]:
        """Request every unit of both streams not yet loaded or in flight. Never blocks."""
        futures = []
        for stream in (LIDAR, CAMERA):
            with self._lock:
                todo = [i for i, s in enumerate(self._track(stream).states) if s == UnitState.UNSEEN]
            requested = [self._request(stream, i) for i in todo]
            requested = [f for f in requested if f is not None]
            with self._lock:
                self._track(stream).prefetch.extend(requested)
            futures.extend(requested)
        return futures

    def wait_for_prefetch(self, timeout: float | None = None) -> bool:
        """Wait for the outstanding prefetch requests; True if every unit is loaded."""
        with self._lock:
            futures = self._lidar.prefetch + self._camera.prefetch
        wait(futures, timeout=timeout)
        with self._lock:
            cameras_done = self._camera.pool is None or self._camera.all_loaded()
            return self._lidar.all_loaded() and cameras_done

    def unit_state(self, unit_index: int) -> UnitState:
        with self._lock:
            return self._lidar.states[unit_index]

    def camera_unit_state(self, unit_index: int) -> UnitState:
        with self._lock:
            return self._camera.states[unit_index]

    # -- Playback --

    def get_frame(self, frame_index: int) -> Frame | None:
        """Cached frame, with whatever camera images have arrived, or None.

        Never triggers a decode.
        """
        frame = self._cache.get(frame_index)
        return None if frame is None else self._with_images(frame)

    def cached_frames(self) -> list[int]:
        return self._cache.indices()

    def camera_frames(self) -> list[int]:
        """Frame indices that have at least one camera image."""
        return self._images.indices()

    def contiguous_frontier(self, start: int | None = None) -> int:
        """Highest frame index reachable from start (default: cursor) without a gap."""
        if start is None:
            start = self._cursor if self._cursor is not None else 0
        return self._cache.contiguous_frontier(start)

    def load_frame(self, frame_index: int) -> bool:
        """Display a frame if it is cached. A miss leaves the cursor unchanged."""
        frame = self.get_frame(frame_index)
        if frame is None:
            self._request_missing(frame_index)
            return False
        with self._lock:
            self._cursor = frame_index
        self._notify(frame_index, frame)
        return True

    def next_frame(self) -> bool:
        if self._cursor is None:
            return False
        return self.load_frame(self._cursor + 1)

    def prev_frame(self) -> bool:
        if self._cursor is None or self._cursor == 0:
            return False
        return self.load_frame(self._cursor - 1)

    def seek_frame(self, frame_index: int) -> bool:
        """Jump to a frame; forward jumps stop at the end of the cached run."""
        total = self.total_frames
        if total == 0:
            return False
        target = max(0, min(frame_index, total - 1))
        if self._cursor is not None and target > self._cursor:
            target = min(target, self.contiguous_frontier(self._cursor))
        return self.load_frame(target)

    def _request_missing(self, frame_index: int) -> None:
        # A miss asks for the frame's unit if it is neither loaded nor in flight
        # (never requested, or failed earlier). A reset in between makes it a no-op.
        with self._lock:
            if self._lidar.pool is None or self._frame_index is None:
                return
            unit = estimate_unit_for_frame(frame_index, len(self._frame_index), len(self._lidar.states))
            if unit < 0 or self._lidar.states[unit] != UnitState.UNSEEN:
                return
            generation = self._generation
        LOG.debug("Frame %d missing, re-requesting unit %d", frame_index, unit)
        self._request(LIDAR, unit, generation)

    # -- Subscribers --

    def subscribe(self, callback: FrameCallback) -> Callable[[], None]:
        """Call callback(frame_index, frame) whenever the displayed frame changes."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, frame_index: int, frame: Frame) -> None:
        with self._lock:
            callbacks = list(self._subscribers)
        for callback in callbacks:
            callback(frame_index, frame)

    # -- State --

    @property
    def status(self) -> LoadStatus:
        return self._status

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def total_frames(self) -> int:
        frame_index = self._frame_index
        return 0 if frame_index is None else len(frame_index)

    @property
    def num_units(self) -> int:
        return len(self._lidar.states)

    @property
    def num_camera_units(self) -> int:
        return len(self._camera.states)

    @property
    def frame_index(self) -> FrameIndex | None:
        return self._frame_index

    @property
    def current_index(self) -> int | None:
        return self._cursor

    @property
    def current_frame(self) -> Frame | None:
        cursor = self._cursor
        return None if cursor is None else self.get_frame(cursor)

    @property
    def telemetry(self) -> SessionTelemetry:
        with self._lock:
            telemetry = self._telemetry
            converter = self._converter
        if converter is not None:
            return replace(telemetry, backend=converter.backend)
        return telemetry

    # -- Teardown --

    def reset(self) -> None:
        """Drop the dataset: terminate the pools and clear the caches.

        Outstanding unit futures fail with SessionResetError.
        """
        with self._lock:
            self._generation += 1
            tracks = (self._lidar, self._camera)
            pools = [t.pool for t in tracks if t.pool is not None]
            abandoned = [f for t in tracks for f in t.futures.values() if not f.done()]
            self._cache.clear()
            self._images.clear()
            self._clear_state()

        for pool in pools:
            pool.terminate()
        for future in abandoned:
            settle_future(future, exc=SessionResetError("Session reset"))

    def close(self, timeout: float | None = CLOSE_JOIN_TIMEOUT) -> None:
        """reset(), then wait up to timeout for the worker threads to exit."""
        with self._lock:
            pools = [t.pool for t in (self._lidar, self._camera) if t.pool is not None]
        self.reset()
        for pool in pools:
            if not pool.join(timeout):
                LOG.warning("Worker threads still running %ss after close", timeout)

    def __enter__(self) -> ReplaySession:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
