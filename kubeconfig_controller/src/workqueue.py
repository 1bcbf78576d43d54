from __future__ import annotations

import heapq
import itertools
import random
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

from kubeconfig_controller.src.metrics import METRICS

K = TypeVar("K", bound=Hashable)


class WorkQueue(Generic[K]):
    """Deduplicating work queue with delayed adds.

    Semantics follow the usual controller work queue:

    - A key that is already queued is not queued twice.
    - A key is handed to at most one worker at a time.  Adding it while it is
      being processed marks it dirty, and :meth:`done` puts it back.
    - :meth:`add_after` keeps only the earliest pending due time per key.
    - After :meth:`shut_down`, :meth:`get` returns ``None`` and new adds are
      ignored; keys still queued are dropped.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._waiting: list[tuple[float, int, K]] = []
        self._waiting_due: dict[K, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _add_locked(self, item: K) -> None:
        if item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def add(self, item: K) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(item)

    def add_after(self, item: K, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(item)
            return

        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay_seconds
            current = self._waiting_due.get(item)
            if current is not None and current <= due_at:
                return
            self._waiting_due[item] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._sequence), item))
            self._cond.notify_all()

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting:
            due_at, _, item = self._waiting[0]
            if self._waiting_due.get(item) != due_at:
                heapq.heappop(self._waiting)
                continue
            if due_at > now:
                return due_at - now
            heapq.heappop(self._waiting)
            del self._waiting_due[item]
            self._add_locked(item)
        return None

    def get(self, timeout: float | None = None) -> K | None:
        """Block until a key is available; returns ``None`` on shutdown or timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                next_due = self._promote_due_locked()
                if self._queue:
                    item = self._queue.popleft()
                    self._dirty.discard(item)
                    self._processing.add(item)
                    METRICS.queue_depth.set(len(self._queue))
                    return item

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, item: K) -> None:
        """Mark *item* as processed, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()


class RetryBackoff(Generic[K]):
    """Per-key bounded exponential backoff with jitter for failed reconciles.

    Delays start at ``base_seconds`` and double per consecutive failure up to
    ``max_seconds``.  Jitter scales each delay by a factor in ``[0.5, 1.5)`` so
    that keys failing together do not retry together.
    """

    def __init__(self, base_seconds: float = 1.0, max_seconds: float = 30.0) -> None:
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._failures: dict[K, int] = {}
        self._lock = threading.Lock()

    def next_delay(self, item: K) -> tuple[float, int]:
        """Record a failure for *item*; return ``(delay_seconds, attempt)``."""
        with self._lock:
            attempt = self._failures.get(item, 0) + 1
            self._failures[item] = attempt
        delay = min(self.max_seconds, self.base_seconds * float(2 ** min(attempt - 1, 30)))
        return delay * (0.5 + random.random()), attempt  # noqa: S311

    def attempts(self, item: K) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: K) -> None:
        with self._lock:
            self._failures.pop(item, None)
