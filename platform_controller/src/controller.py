from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from typing import Any

from platform_controller.src.informer import Informer, ResourceEvent, wait_for_cache_sync
from platform_controller.src.kube import object_metadata
from platform_controller.src.recorder import EventRecorder
from platform_controller.src.workqueue import RateLimiter, TaskQueue


class SyncError(RuntimeError):
    """A reconcile pass failed; the key is retried with backoff."""


def resource_version(obj: Mapping[str, Any] | None) -> str | None:
    if obj is None:
        return None
    return object_metadata(obj).get("resourceVersion")


def generation(obj: Mapping[str, Any] | None) -> int | None:
    if obj is None:
        return None
    return object_metadata(obj).get("generation")


def is_noop_update(event: ResourceEvent) -> bool:
    """An update whose resourceVersion did not move carries no change (re-list replay)."""
    return event.old is not None and resource_version(event.old) == resource_version(event.obj)


class Controller:
    """Level-triggered reconcile loop shared by the platform controllers.

    Subclasses subscribe to their informers and enqueue object keys; the
    work queue later hands each key to :meth:`sync`, which re-reads the
    cached object and applies whatever corrective calls are needed.  The
    object that triggered the event is never passed along, so a stale event
    can only cause an extra, harmless, reconcile of the latest state.

    Workers start only after every informer in :attr:`informers` reports its
    initial sync, otherwise an object missing from a half-filled cache would
    be treated as deleted.
    """

    name = "controller"

    def __init__(
        self,
        informers: Sequence[Informer],
        recorder: EventRecorder,
        *,
        rate_limiter: RateLimiter | None = None,
        worker_restart_period: float = 1.0,
        shutdown_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.informers = tuple(informers)
        self.recorder = recorder
        self.worker_restart_period = worker_restart_period
        self.shutdown_timeout = shutdown_timeout
        self.logger = logger or logging.getLogger(f"{__name__}.{self.name}")
        self.queue = TaskQueue(self.name, self.sync, rate_limiter=rate_limiter, logger=self.logger)
        self.ready = threading.Event()

    def sync(self, key: str) -> None:
        raise NotImplementedError

    def run(self, workers: int, stop_event: threading.Event) -> None:
        """Start *workers* worker threads once caches are synced and block until stopped.

        Faults escaping this method are logged rather than propagated so one
        broken controller cannot take the process down; the queue is always
        shut down on the way out, which drains the workers.
        """
        try:
            self.logger.info("Starting %s controller", self.name)
            if not wait_for_cache_sync(stop_event, *self.informers):
                self.logger.warning("Stopped before the %s controller caches synced", self.name)
                return

            for index in range(workers):
                threading.Thread(
                    target=self.queue.run,
                    args=(self.worker_restart_period, stop_event),
                    name=f"{self.name}-worker-{index}",
                    daemon=True,
                ).start()
            self.ready.set()

            stop_event.wait()
            self.logger.info("Shutting down %s controller", self.name)
        except Exception:
            self.logger.exception("%s controller crashed", self.name)
        finally:
            self.ready.clear()
            self.queue.shutdown(timeout=self.shutdown_timeout)
