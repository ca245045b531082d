from __future__ import annotations

import threading
from collections import deque
from collections.abc import Hashable
from dataclasses import replace
from typing import Any

from apisix_ingress.src.events import EventUpdate
from apisix_ingress.src.metrics import METRICS


class FastSlowRateLimiter:
    """Retry delay of ``fast_delay`` for the first ``max_fast_attempts``, then ``slow_delay``."""

    def __init__(
        self,
        fast_delay: float = 1.0,
        slow_delay: float = 60.0,
        max_fast_attempts: int = 5,
    ) -> None:
        self.fast_delay = fast_delay
        self.slow_delay = slow_delay
        self.max_fast_attempts = max_fast_attempts
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            attempts = self._failures.get(item, 0) + 1
            self._failures[item] = attempts
        if attempts <= self.max_fast_attempts:
            return self.fast_delay
        return self.slow_delay

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class RateLimitingQueue:
    """Deduplicating work queue with rate-limited retries.

    Pending items are kept once: re-adding an item that is already waiting
    replaces its stored payload with the newer one.  Merged updates keep the
    ``old`` state of the earliest pending one, which is the last state the
    gateway saw, so a diff against it still removes everything in between.
    An item re-added while a worker is still processing it is parked and
    re-queued when ``done`` is called, which keeps a single key from being
    reconciled by two workers at once.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: FastSlowRateLimiter | None = None,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or FastSlowRateLimiter()
        self._queue: deque[Hashable] = deque()
        self._dirty: dict[Hashable, Any] = {}
        self._processing: set[Hashable] = set()
        self._cond = threading.Condition()
        self._shutting_down = False
        self._timers: set[threading.Timer] = set()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(kind=self.name).set(len(self._queue))

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            pending = self._dirty.get(item)
            already_dirty = pending is not None
            if isinstance(pending, EventUpdate) and isinstance(item, EventUpdate):
                item = replace(item, old=pending.old)
            self._dirty[item] = item
            if already_dirty or item in self._processing:
                return
            self._queue.append(item)
            self._update_depth()
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[Any, bool]:
        """Block until an item is available.

        Returns ``(item, False)``, or ``(None, True)`` once the queue is shut
        down (and ``(None, False)`` when ``timeout`` elapses first).
        """
        with self._cond:
            if not self._queue and not self._shutting_down:
                self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout=timeout)
            if not self._queue:
                return None, self._shutting_down
            key = self._queue.popleft()
            item = self._dirty.pop(key)
            self._processing.add(key)
            self._update_depth()
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._update_depth()
                self._cond.notify()

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def add_after(self, item: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            timer = threading.Timer(delay, lambda: self._fire(item, timer))
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def _fire(self, item: Hashable, timer: threading.Timer) -> None:
        with self._cond:
            self._timers.discard(timer)
        self.add(item)

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
