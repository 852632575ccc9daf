"""
Deduplicating, rate-limited work queue for the EBS tagger.

An item is either queued, being processed, or neither. Adding an item that is
already queued is a no-op; adding one that is being processed marks it dirty
so it is queued exactly once more when the worker calls done(). So a key is
never handed to two workers at the same time.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Hashable, Optional

log = logging.getLogger("k8s-metadata-injector")


class ItemExponentialFailureRateLimiter:
    """Per-item delay of base_delay * 2**failures, capped at max_delay."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1
        try:
            delay = self.base_delay * (2**exp)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class RateLimitingQueue:
    def __init__(self, rate_limiter: ItemExponentialFailureRateLimiter | None = None) -> None:
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()

        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._dirty: set = set()
        self._processing: set = set()
        self._shutting_down = False

        # Items waiting for their retry delay: (ready_at, seq, item)
        self._waiting: list = []
        self._seq = itertools.count()
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop, name="workqueue-delay", daemon=True
        )
        self._waiting_thread.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify_all()

    def get(self) -> tuple[Optional[Hashable], bool]:
        """Block until an item is available. Returns (item, shutdown)."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if self._shutting_down:
                return None, True

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
            # Wakes workers as well as shut_down_with_drain
            self._cond.notify_all()

    def add_after(self, item: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (time.monotonic() + delay, next(self._seq), item))
            self._cond.notify_all()

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._cond.notify_all()

    def shut_down_with_drain(self, timeout: float | None = None) -> bool:
        """Shut down and wait for in-flight items to be done. False on timeout."""
        self.shut_down()
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._processing:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    log.warning("Timed out draining %d in-flight items", len(self._processing))
                    return False
                self._cond.wait(remaining)
        return True

    def _waiting_loop(self) -> None:
        while True:
            ready = []
            with self._cond:
                while not self._shutting_down:
                    if not self._waiting:
                        self._cond.wait()
                        continue
                    wait = self._waiting[0][0] - time.monotonic()
                    if wait <= 0:
                        break
                    self._cond.wait(wait)
                if self._shutting_down:
                    return
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    ready.append(heapq.heappop(self._waiting)[2])
            for item in ready:
                self.add(item)
