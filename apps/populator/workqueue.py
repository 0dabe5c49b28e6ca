"""Work queue that never hands the same key to two workers at once.

Semantics follow the client-go workqueue: a key added while it is being
processed is queued again only after ``done``; duplicates collapse while a
key waits. ``add_rate_limited`` re-adds a failed key after a per-key
exponential backoff, ``forget`` resets it.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Hashable


class RateLimitingQueue:
    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._timers: set[threading.Timer] = set()
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until an item is available. None on shutdown or timeout."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout):
                return None
            if not self._queue:
                return None
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def when(self, item: Hashable) -> float:
        """Next backoff delay for item, in seconds."""
        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def add_rate_limited(self, item: Hashable) -> float:
        delay = self.when(item)
        timer = threading.Timer(delay, self._add_after, args=(item,))
        timer.daemon = True
        with self._cond:
            if self._shutting_down:
                return delay
            self._timers.add(timer)
        timer.start()
        return delay

    def forget(self, item: Hashable) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._cond:
            return self._failures.get(item, 0)

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

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _add_after(self, item: Hashable) -> None:
        with self._cond:
            # Timer callbacks run on the timer thread itself
            self._timers.discard(threading.current_thread())
        self.add(item)
