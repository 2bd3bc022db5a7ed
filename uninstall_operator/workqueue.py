"""
Rate-limited work queue: the controller's single source of work.

Semantics:
  - An item is queued at most once; adding it again before it is picked up is a no-op
  - An item re-added while being processed is queued again once done() is called
  - After shut_down(), get() stops handing out items
  - Failed items come back through add_rate_limited(): exponential per-item
    backoff, combined (max) with a shared rate limit from the `limits` library
"""

import logging
import threading
import time
from collections import deque
from typing import Any, Hashable, Optional

from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

logger = logging.getLogger("workqueue")


class ItemExponentialFailureRateLimiter:
    """base * 2^failures, capped at max_delay; reset by forget()."""

    def __init__(self, base_delay: float = 0.1, max_delay: float = 2.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        # Cap the exponent before it overflows a float
        if failures > 62:
            return self.max_delay
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def forget(self, item: Hashable):
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class SharedRateLimiter:
    """Overall retry budget shared by every item, e.g. "100/second"."""

    def __init__(self, rate: str = "100/second"):
        self.rate = parse(rate)
        self._limiter = MovingWindowRateLimiter(MemoryStorage())

    def when(self, item: Hashable) -> float:
        if self._limiter.hit(self.rate, "workqueue"):
            return 0.0
        reset_time, _ = self._limiter.get_window_stats(self.rate, "workqueue")
        return max(0.0, reset_time - time.time())

    def forget(self, item: Hashable):
        pass

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Waits for the slowest of its limiters."""

    def __init__(self, *limiters):
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable):
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_rate_limiter(base_delay: float = 0.1, max_delay: float = 2.0,
                         rate: str = "100/second") -> MaxOfRateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        SharedRateLimiter(rate),
    )


class RateLimitingQueue:
    def __init__(self, rate_limiter=None, name: str = "workqueue"):
        self.name = name
        self.rate_limiter = rate_limiter or default_rate_limiter()
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._dirty: set = set()
        self._processing: set = set()
        self._timers: set[threading.Timer] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, item: Hashable):
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> tuple[Any, bool]:
        """
        Block until an item is available. Returns (item, shutdown); once the
        queue is shut down, returns (None, True) without draining what is left.
        With a timeout, returns (None, False) if nothing arrived in time.
        """
        with self._cond:
            if not self._queue and not self._shutting_down:
                self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout)
            if self._shutting_down:
                return None, True
            if not self._queue:
                return None, False
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable):
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def add_after(self, item: Hashable, delay: float):
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            timer = threading.Timer(delay, self._fire, args=(item,))
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def _fire(self, item: Hashable):
        with self._cond:
            self._timers = {t for t in self._timers if t.is_alive() and t is not threading.current_thread()}
        self.add(item)

    def add_rate_limited(self, item: Hashable):
        delay = self.rate_limiter.when(item)
        logger.debug(f"{self.name}: requeue {item!r} in {delay:.3f}s")
        self.add_after(item, delay)

    def forget(self, item: Hashable):
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def shut_down(self):
        with self._cond:
            self._shutting_down = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            self._cond.notify_all()
