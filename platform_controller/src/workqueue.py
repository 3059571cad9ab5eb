from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from platform_controller.src.kube import meta_namespace_key
from platform_controller.src.metrics import METRICS


class RateLimiter(Protocol):
    def when(self, key: str) -> float: ...

    def forget(self, key: str) -> None: ...

    def num_requeues(self, key: str) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    The failure count only grows through :meth:`when` and is reset by
    :meth:`forget`, so one successful sync brings a key back to the minimum
    delay.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            exponent = self._failures.get(key, 0)
            self._failures[key] = exponent + 1
        # 2**64 times any sane base delay is far past every useful ceiling.
        if exponent >= 64:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class BucketRateLimiter:
    """Overall token bucket shared by every key (``qps`` refill rate, ``burst`` capacity)."""

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, key: str) -> None:
        return None

    def num_requeues(self, key: str) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters by taking the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, key: str) -> float:
        return max(limiter.when(key) for limiter in self.limiters)

    def forget(self, key: str) -> None:
        for limiter in self.limiters:
            limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return max(limiter.num_requeues(key) for limiter in self.limiters)


def default_controller_rate_limiter() -> RateLimiter:
    """Per-key backoff from 5 ms to 1000 s, bounded overall to 10 qps with a burst of 100."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class RateLimitingQueue:
    """Deduplicating work queue of string keys with delayed and rate limited re-adds.

    A key lives in at most one of two places at a time: ``_queue`` (ready to
    be handed to a worker) or ``_processing`` (checked out by exactly one
    worker).  ``_dirty`` marks keys that need another pass; a key added while
    it is being processed stays dirty and is queued again by :meth:`done`,
    which guarantees a single in-flight delivery per key without losing the
    notification.

    Delayed keys wait in a heap and are promoted lazily by :meth:`get` and
    :meth:`__len__`, so no extra timer thread is needed.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: dict[str, float] = {}
        self._waiting_heap: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._shutting_down = False

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        METRICS.queue_adds_total.labels(queue=self.name).inc()
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth()
        self._cond.notify()

    def _promote_ready_locked(self) -> float | None:
        """Move delayed keys whose time has come into the queue.

        Returns the seconds until the next delayed key becomes ready, or
        ``None`` when nothing is waiting.
        """
        now = self._clock()
        while self._waiting_heap:
            ready_at, _, key = self._waiting_heap[0]
            if self._waiting.get(key) != ready_at:
                # Superseded by an earlier add_after for the same key.
                heapq.heappop(self._waiting_heap)
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting_heap)
            del self._waiting[key]
            self._add_locked(key)
        return None

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay: float) -> None:
        """Add *key* once *delay* seconds have passed; an earlier pending deadline wins."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            existing = self._waiting.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._waiting[key] = ready_at
            heapq.heappush(self._waiting_heap, (ready_at, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: str) -> None:
        METRICS.queue_retries_total.labels(queue=self.name).inc()
        self.add_after(key, self.rate_limiter.when(key))

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is ready or the queue shuts down.

        Returns ``(key, False)`` with the key marked as processing, or
        ``(None, True)`` once :meth:`shut_down` has been called.
        """
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                next_ready = self._promote_ready_locked()
                if self._queue:
                    break
                self._cond.wait(timeout=next_ready)

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            self._update_depth()
            return key, False

    def done(self, key: str) -> None:
        """Release *key*; if it was re-added while processing it is queued again."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._update_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            self._promote_ready_locked()
            return len(self._queue)


class TaskQueue:
    """Runs a sync function for every key inserted into a rate limited work queue.

    The sync function receives the object key, never the object itself, so
    every pass re-reads the latest cached state.  Raising any exception is a
    failed sync: the key is requeued with per-key exponential backoff.
    Returning normally resets the key's backoff history.
    """

    def __init__(
        self,
        name: str,
        sync_fn: Callable[[str], None],
        rate_limiter: RateLimiter | None = None,
        key_fn: Callable[[Mapping[str, Any]], str] = meta_namespace_key,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.sync = sync_fn
        self.key_fn = key_fn
        self.queue = RateLimitingQueue(name, rate_limiter=rate_limiter)
        self.logger = logger or logging.getLogger(__name__)

        self._workers_lock = threading.Lock()
        self._active_workers = 0
        self._workers_done = threading.Event()

    def __len__(self) -> int:
        return len(self.queue)

    def add(self, obj: Mapping[str, Any]) -> None:
        """Enqueue the ``namespace/name`` key of the given API object."""
        try:
            key = self.key_fn(obj)
        except ValueError as exc:
            self.logger.info("Couldn't get key for object in queue %s: %s", self.name, exc)
            return
        self.queue.add(key)

    def add_key(self, key: str) -> None:
        self.queue.add(key)

    def process_next_work_item(self) -> bool:
        """Sync one key.  Returns False once the queue is shutting down."""
        key, quit = self.queue.get()
        if quit or key is None:
            return False

        started = time.monotonic()
        self.logger.debug("Syncing %s", key)
        try:
            self.sync(key)
        except Exception as exc:
            self.logger.error(
                "Requeuing %s, err: %s",
                key,
                exc,
                exc_info=self.logger.isEnabledFor(logging.DEBUG),
            )
            METRICS.sync_errors_total.labels(queue=self.name).inc()
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
        finally:
            METRICS.work_duration_seconds.labels(queue=self.name).observe(
                time.monotonic() - started
            )
            self.queue.done(key)
        return True

    def _run_worker(self) -> None:
        # Hot loop; get() blocks until there is work or the queue shuts down.
        while self.process_next_work_item():
            pass

    def run(self, period: float, stop_event: threading.Event) -> None:
        """Run one worker until the queue shuts down.

        An unexpected fault escaping the worker loop is logged and the loop
        is restarted after *period* seconds, unless *stop_event* is set.
        """
        with self._workers_lock:
            self._active_workers += 1
        try:
            while not stop_event.is_set():
                try:
                    self._run_worker()
                    return
                except Exception:
                    self.logger.exception(
                        "Worker for queue %s crashed; restarting in %.1fs", self.name, period
                    )
                    METRICS.worker_crashes_total.labels(queue=self.name).inc()
                stop_event.wait(timeout=period)
        finally:
            with self._workers_lock:
                self._active_workers -= 1
                if self._active_workers == 0 and self.queue.shutting_down:
                    self._workers_done.set()

    def shutdown(self, timeout: float | None = None) -> bool:
        """Shut the queue down and wait for every worker to exit.

        Returns False if workers were still running after *timeout* seconds.
        """
        self.queue.shut_down()
        with self._workers_lock:
            if self._active_workers == 0:
                self._workers_done.set()
        finished = self._workers_done.wait(timeout=timeout)
        if not finished:
            self.logger.warning(
                "Workers for queue %s did not stop within %ss", self.name, timeout
            )
        return finished
