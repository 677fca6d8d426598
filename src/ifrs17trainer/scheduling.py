"""Cancellable delayed and periodic callbacks for session timers."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)

Callback = Callable[[], None]
Clock = Callable[[], float]


class Handle(Protocol):
    """Cancellation handle for one scheduled callback."""

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Runs a callback once after a delay in seconds."""

    def call_later(self, delay: float, callback: Callback) -> Handle: ...


class _TimerHandle:
    def __init__(self, timer: threading.Timer) -> None:
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class ThreadingScheduler:
    """Scheduler backed by daemon `threading.Timer` threads."""

    def call_later(self, delay: float, callback: Callback) -> Handle:
        timer = threading.Timer(max(0.0, delay), _guarded(callback))
        timer.daemon = True
        timer.start()
        return _TimerHandle(timer)


class _ManualHandle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler driven by a virtual clock; nothing runs until `advance()` is called."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self._queue: list[tuple[float, int, _ManualHandle, Callback]] = []
        self._sequence = itertools.count()

    def clock(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callback) -> Handle:
        handle = _ManualHandle()
        heapq.heappush(self._queue, (self.now + max(0.0, delay), next(self._sequence), handle, callback))
        return handle

    def pending(self) -> int:
        """Return the number of live scheduled callbacks."""
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)

    def advance(self, seconds: float) -> None:
        """Move the virtual clock forward, running due callbacks in order."""
        target = self.now + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self.now = due
            callback()
        self.now = target


class PeriodicTask:
    """Re-arms a callback every `interval` seconds until stopped."""

    def __init__(self, scheduler: Scheduler, interval: float, callback: Callback) -> None:
        self._scheduler = scheduler
        self._interval = interval
        self._callback = callback
        self._handle: Handle | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
            self._handle = self._scheduler.call_later(self._interval, self._fire)

    def stop(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None

    def _fire(self) -> None:
        with self._lock:
            if self._handle is None:
                return
            self._handle = self._scheduler.call_later(self._interval, self._fire)
        self._callback()


class AttemptTimer:
    """Elapsed-time display for the module attempt in progress.

    Ticks once per `interval` while running. Must be stopped on every way out
    of an attempt (completion, reset, identity switch, shutdown).
    """

    def __init__(self, scheduler: Scheduler, clock: Clock = time.monotonic, interval: float = 1.0) -> None:
        self._clock = clock
        self._task = PeriodicTask(scheduler, interval, self._tick)
        self._started_at: float | None = None
        self.elapsed_seconds = 0

    @property
    def running(self) -> bool:
        return self._started_at is not None

    def start(self) -> None:
        self._started_at = self._clock()
        self.elapsed_seconds = 0
        self._task.start()

    def stop(self) -> int | None:
        """Cancel ticking and return the final elapsed seconds, or None when not running."""
        self._task.stop()
        if self._started_at is None:
            return None
        elapsed = int(self._clock() - self._started_at)
        self._started_at = None
        return elapsed

    def current(self) -> int | None:
        """Return seconds since start without stopping, or None when not running."""
        if self._started_at is None:
            return None
        return int(self._clock() - self._started_at)

    def reset(self) -> None:
        self.stop()
        self.elapsed_seconds = 0

    def _tick(self) -> None:
        if self._started_at is not None:
            self.elapsed_seconds = int(self._clock() - self._started_at)


def _guarded(callback: Callback) -> Callback:
    def run() -> None:
        try:
            callback()
        except Exception:
            logger.exception("Scheduled callback failed")

    return run
