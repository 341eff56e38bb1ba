# Copyright 2025 Alibaba Group Holding Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Rate limited work queue with per-item de-duplication.

An item that is already waiting is not queued twice, and an item that is being
processed is only handed out again after ``done``; together this guarantees a
key is never worked on by two workers at once.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Hashable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class ItemFastSlowRateLimiter:
    """
    Retry quickly a few times, then slowly.

    The first ``max_fast_attempts`` requeues of an item wait ``fast_delay``
    seconds, every later one waits ``slow_delay``.
    """

    def __init__(self, fast_delay: float = 1.0, slow_delay: float = 60.0, max_fast_attempts: int = 5):
        self.fast_delay = fast_delay
        self.slow_delay = slow_delay
        self.max_fast_attempts = max_fast_attempts
        self._failures: Dict[Hashable, int] = {}
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
    """
    FIFO queue with de-duplication, delayed adds and per-item retry backoff.

    Items are tracked by ``key_func(item)``. While a key waits, a newer item
    for it replaces the waiting one (``merge_func(waiting, incoming)`` decides
    what is kept); while a key is being processed, later items are parked and
    handed out only after ``done``.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: Optional[ItemFastSlowRateLimiter] = None,
        clock: Callable[[], float] = time.monotonic,
        key_func: Callable[[Any], Hashable] = lambda item: item,
        merge_func: Optional[Callable[[Any, Any], Any]] = None,
    ):
        self.name = name
        self.rate_limiter = rate_limiter or ItemFastSlowRateLimiter()
        self._clock = clock
        self._key = key_func
        self._merge = merge_func

        self._queue: Deque[Hashable] = deque()
        self._dirty: Dict[Hashable, Any] = {}
        self._processing: Set[Hashable] = set()
        self._cond = threading.Condition()
        self._shutting_down = False

        self._waiting: List[Tuple[float, int, Hashable]] = []
        self._waiting_cond = threading.Condition()
        self._seq = itertools.count()
        self._waiting_thread: Optional[threading.Thread] = None

    def add(self, item: Hashable) -> None:
        self._add(item, delayed=False)

    def _add(self, item: Hashable, delayed: bool) -> None:
        key = self._key(item)
        with self._cond:
            if self._shutting_down:
                return
            if key in self._dirty:
                pending = self._dirty[key]
                if self._merge is None:
                    return
                # a delayed item predates whatever was queued meanwhile
                self._dirty[key] = self._merge(item, pending) if delayed else self._merge(pending, item)
                return
            self._dirty[key] = item
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Tuple[Any, bool]:
        """
        Block until an item is available.

        Returns ``(item, shutdown)``; once the queue is shut down and drained
        ``shutdown`` is True and ``item`` is None. With a ``timeout`` an empty
        queue yields ``(None, False)``.
        """
        with self._cond:
            deadline = None if timeout is None else self._clock() + timeout
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    return None, False
                self._cond.wait(remaining)
            if not self._queue:
                return None, True
            key = self._queue.popleft()
            self._processing.add(key)
            return self._dirty.pop(key), False

    def done(self, item: Hashable) -> None:
        key = self._key(item)
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        if self.shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return
        self._ensure_waiting_thread()
        with self._waiting_cond:
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._seq), item))
            self._waiting_cond.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self.rate_limiter.when(self._key(item)))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(self._key(item))

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(self._key(item))

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._waiting_cond:
            self._waiting_cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def pending_delayed(self) -> int:
        with self._waiting_cond:
            return len(self._waiting)

    def _ensure_waiting_thread(self) -> None:
        with self._waiting_cond:
            if self._waiting_thread is not None and self._waiting_thread.is_alive():
                return
            self._waiting_thread = threading.Thread(
                target=self._waiting_loop,
                name=f"workqueue-{self.name}-delay",
                daemon=True,
            )
            self._waiting_thread.start()

    def _waiting_loop(self) -> None:
        while not self.shutting_down:
            ready: List[Hashable] = []
            with self._waiting_cond:
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    ready.append(heapq.heappop(self._waiting)[2])
                if not ready:
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._waiting_cond.wait(timeout)
            for item in ready:
                self._add(item, delayed=True)
        logger.debug("delay loop of queue %s exited", self.name)


__all__ = ["ItemFastSlowRateLimiter", "RateLimitingQueue"]
