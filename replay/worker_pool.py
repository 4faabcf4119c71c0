"""Fixed pool of decode workers with idle dispatch and a FIFO wait queue.

Every worker thread builds its own decode worker (lidar or camera) and opens
the source itself.
A request goes straight to an idle worker's inbox when one exists, otherwise
it waits in a FIFO queue that is drained as workers finish. The pool does not
deduplicate unit indices; that is the session's job.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from .worker import DecodeWorker

LOG = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3

_STOP = None   # inbox sentinel


class PoolInitError(RuntimeError):
    """No worker could open the data source."""


class PoolTerminatedError(RuntimeError):
    """The pool was terminated before the request completed."""


class _SlotState(Enum):
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    DEAD = "dead"


@dataclass
class _Slot:
    index: int
    inbox: queue.Queue = field(default_factory=queue.Queue)
    state: _SlotState = _SlotState.STARTING
    current: Future | None = None
    thread: threading.Thread | None = None


def settle_future(future: Future, result=None, exc: BaseException | None = None) -> None:
    # terminate() may already have failed this future; late results are dropped.
    try:
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)
    except InvalidStateError:
        LOG.debug("Dropping result for an already settled request")


def _claim(future: Future) -> bool:
    try:
        return future.set_running_or_notify_cancel()
    except RuntimeError:
        # Already failed by terminate() while waiting in the inbox.
        return False


class WorkerPool:
    def __init__(
        self,
        concurrency: int = DEFAULT_CONCURRENCY,
        worker_factory: Callable[..., object] = DecodeWorker,
        name: str = "decode",
    ):
        if concurrency < 1:
            raise ValueError(f"Worker pool needs at least one worker, got {concurrency}")
        self.concurrency = concurrency
        self.worker_factory = worker_factory
        self.name = name

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._slots: list[_Slot] = []
        self._waiting: deque[tuple[int, Future]] = deque()
        self._num_units: int | None = None
        self._init_errors: list[BaseException] = []
        self._started = False
        self._terminated = False

    # -- Lifecycle --

    def init(self, source: str | Path, *worker_args, timeout: float | None = None) -> int:
        """Start the workers and return the unit count once any one is ready.

        Each thread calls worker_factory(source, *worker_args) and then open().

        Raises PoolInitError if every worker fails to open the source.
        """
        with self._lock:
            if self._started:
                raise RuntimeError("WorkerPool.init called twice")
            self._started = True
            self._slots = [_Slot(index=i) for i in range(self.concurrency)]

        for slot in self._slots:
            slot.thread = threading.Thread(
                target=self._run,
                args=(slot, source, worker_args),
                name=f"{self.name}-worker-{slot.index}",
                daemon=True,
            )
            slot.thread.start()

        with self._cond:
            ok = self._cond.wait_for(
                lambda: self._num_units is not None
                or len(self._init_errors) == self.concurrency
                or self._terminated,
                timeout=timeout,
            )
            if self._num_units is not None:
                return self._num_units
            errors = list(self._init_errors)

        self.terminate()
        if not ok:
            raise PoolInitError(f"No {self.name} worker became ready within {timeout}s")
        cause = errors[0] if errors else None
        raise PoolInitError(
            f"All {self.concurrency} {self.name} workers failed to open {source}: {cause}"
        ) from cause

    def terminate(self) -> None:
        """Stop all workers. Queued and in-flight requests fail with PoolTerminatedError.

        A decode already running is not interrupted; its result is discarded.
        """
        with self._cond:
            if self._terminated:
                return
            self._terminated = True
            abandoned = [fut for _, fut in self._waiting]
            self._waiting.clear()
            for slot in self._slots:
                if slot.current is not None:
                    abandoned.append(slot.current)
                    slot.current = None
                slot.inbox.put(_STOP)
            self._cond.notify_all()

        for fut in abandoned:
            settle_future(fut, exc=PoolTerminatedError("Worker pool terminated"))

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker threads to exit after terminate().

        A decode that was running when terminate() was called finishes first.
        Returns True if every thread has exited.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for slot in self._slots:
            if slot.thread is None:
                continue
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            slot.thread.join(remaining)
        return not any(slot.thread is not None and slot.thread.is_alive() for slot in self._slots)

    # -- State --

    @property
    def num_units(self) -> int | None:
        with self._lock:
            return self._num_units

    @property
    def ready_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._slots if s.state in (_SlotState.IDLE, _SlotState.BUSY))

    @property
    def is_ready(self) -> bool:
        return self.ready_count > 0

    @property
    def is_terminated(self) -> bool:
        with self._lock:
            return self._terminated

    @property
    def pending_count(self) -> int:
        """Requests waiting for a worker."""
        with self._lock:
            return len(self._waiting)

    def wait_all_ready(self, timeout: float | None = None) -> bool:
        """Block until every worker has finished opening the source.

        Returns True only if all of them succeeded.
        """
        with self._cond:
            self._cond.wait_for(
                lambda: all(s.state != _SlotState.STARTING for s in self._slots) or self._terminated,
                timeout=timeout,
            )
            return all(s.state in (_SlotState.IDLE, _SlotState.BUSY) for s in self._slots)

    # -- Requests --

    def request_unit(self, unit_index: int) -> Future:
        """Queue one unit for decoding; the future resolves to the worker's unit result."""
        future: Future = Future()
        with self._lock:
            if self._terminated:
                terminated = True
            else:
                terminated = False
                slot = self._idle_slot()
                if slot is None:
                    self._waiting.append((unit_index, future))
                else:
                    self._dispatch(slot, unit_index, future)
        if terminated:
            settle_future(future, exc=PoolTerminatedError("Worker pool terminated"))
        return future

    # Helpers below expect self._lock to be held.

    def _idle_slot(self) -> _Slot | None:
        for slot in self._slots:
            if slot.state == _SlotState.IDLE:
                return slot
        return None

    def _dispatch(self, slot: _Slot, unit_index: int, future: Future) -> None:
        slot.state = _SlotState.BUSY
        slot.current = future
        slot.inbox.put((unit_index, future))

    def _next_for(self, slot: _Slot) -> None:
        if self._terminated:
            return
        if self._waiting:
            unit_index, future = self._waiting.popleft()
            self._dispatch(slot, unit_index, future)
        else:
            slot.state = _SlotState.IDLE
            slot.current = None

    # -- Worker thread --

    def _run(self, slot: _Slot, source, worker_args) -> None:
        try:
            worker = self.worker_factory(source, *worker_args)
            num_units = worker.open()
        except Exception as exc:
            LOG.warning("%s-worker-%d failed to open %s: %s", self.name, slot.index, source, exc)
            with self._cond:
                slot.state = _SlotState.DEAD
                self._init_errors.append(exc)
                self._cond.notify_all()
            return

        with self._cond:
            if self._num_units is None:
                self._num_units = num_units
            self._next_for(slot)
            self._cond.notify_all()

        while True:
            job = slot.inbox.get()
            if job is _STOP:
                break
            unit_index, future = job
            if _claim(future):
                try:
                    result = worker.decode_unit(unit_index)
                except Exception as exc:
                    LOG.warning("%s-worker-%d: unit %d failed: %s", self.name, slot.index, unit_index, exc)
                    settle_future(future, exc=exc)
                else:
                    settle_future(future, result=result)

            with self._lock:
                if slot.current is future:
                    slot.current = None
                self._next_for(slot)

        with self._lock:
            slot.state = _SlotState.DEAD
