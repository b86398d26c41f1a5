"""De-duplicating, rate-limited work queue of cluster keys.

A key is held by at most one worker at a time. Adding a key that is already
queued is a no-op; adding a key that is being processed marks it dirty so
it is queued again once the worker calls ``done``.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

logger = logging.getLogger(__name__)


class QueueShutDown(Exception):
    """Raised by ``get`` once the queue has been shut down and drained."""


class RateLimitingQueue:
    """Work queue with delayed adds and per-key exponential backoff.

    Args:
        base_delay: Backoff of the first failure, in seconds.
        max_delay: Upper bound for any backoff, in seconds.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable) -> None:
        """Queue ``key`` unless it is already queued."""
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        """Queue ``key`` after its current backoff and return the delay used."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self._base_delay * (2**failures), self._max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        """Reset the backoff of ``key``."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Take the next key, blocking until one is ready.

        Returns:
            The key, or None if ``timeout`` elapsed first.

        Raises:
            QueueShutDown: If the queue was shut down.
        """
        end = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_waiting_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    raise QueueShutDown()

                wait = None if end is None else end - self._clock()
                if wait is not None and wait <= 0:
                    return None
                if self._waiting:
                    until_ready = self._waiting[0][0] - self._clock()
                    wait = until_ready if wait is None else min(wait, until_ready)
                self._cond.wait(wait)

    def done(self, key: Hashable) -> None:
        """Mark ``key`` as no longer being processed."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop handing out keys; blocked ``get`` calls raise QueueShutDown."""
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._queue.clear()
            self._dirty.clear()
            self._cond.notify_all()
        logger.debug("Work queue shut down")

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        # Re-queued by done() once the current worker finishes
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_waiting_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)
