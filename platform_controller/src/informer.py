from __future__ import annotations

import enum
import logging
import random
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiClient, ApiException

from platform_controller.src.kube import meta_namespace_key
from platform_controller.src.metrics import METRICS

EventHandler = Callable[["ResourceEvent"], None]


class EventType(str, enum.Enum):
    ADDED = "ADDED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class ResourceEvent:
    """One change observed by an informer.

    ``old`` is the previously cached object for ``UPDATED`` events and the
    last known cached state for ``DELETED`` events.
    """

    type: EventType
    obj: dict[str, Any]
    old: dict[str, Any] | None = None


class ObjectStore:
    """Thread-safe local mirror of API objects keyed by ``namespace/name``.

    Objects are stored as plain API dicts and shared with readers; callers
    must treat them as read-only.
    """

    def __init__(self) -> None:
        self._items: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get_by_key(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            return self._items.get(key)

    def list(
        self, predicate: Callable[[dict[str, Any]], bool] | None = None
    ) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._items.values())
        if predicate is None:
            return items
        return [item for item in items if predicate(item)]

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def upsert(self, key: str, obj: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            old = self._items.get(key)
            self._items[key] = obj
            return old

    def delete(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, items: dict[str, dict[str, Any]]) -> list[ResourceEvent]:
        """Swap the whole content for a fresh listing and return the resulting deltas."""
        with self._lock:
            previous = self._items
            self._items = dict(items)

        events: list[ResourceEvent] = []
        for key, obj in items.items():
            old = previous.get(key)
            if old is None:
                events.append(ResourceEvent(EventType.ADDED, obj))
            else:
                events.append(ResourceEvent(EventType.UPDATED, obj, old))
        for key, old in previous.items():
            if key not in items:
                events.append(ResourceEvent(EventType.DELETED, old, old))
        return events


class Informer:
    """List-then-watch mirror of one resource type.

    The informer keeps :attr:`store` current and hands every change to its
    subscribers as a :class:`ResourceEvent`.  :attr:`has_synced` is set once
    the initial listing has been stored, which is the signal controllers wait
    on before they start reconciling.

    The watch loop resumes from the last seen ``resourceVersion``, re-lists
    on ``410 Gone`` (emitting the deltas missed while disconnected) and backs
    off with jitter on transient errors.  ``401`` / ``403`` responses end the
    loop because retrying cannot fix missing RBAC permissions.
    """

    def __init__(
        self,
        list_fn: Callable[..., Any],
        *,
        resource: str,
        api_version: str,
        kind: str,
        watch_timeout_seconds: int = 300,
        api_client: ApiClient | None = None,
        logger: logging.Logger | None = None,
        **list_kwargs: Any,
    ) -> None:
        self.list_fn = list_fn
        self.list_kwargs = list_kwargs
        self.resource = resource
        self.api_version = api_version
        self.kind = kind
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.store = ObjectStore()
        self.has_synced = threading.Event()

        self._api_client = api_client
        self._handlers: list[EventHandler] = []
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def _to_dict(self, obj: Any) -> dict[str, Any] | None:
        if obj is None:
            return None
        if not isinstance(obj, dict):
            if self._api_client is None:
                self._api_client = ApiClient()
            obj = self._api_client.sanitize_for_serialization(obj)
            if not isinstance(obj, dict):
                return None
        # List items and typed watch objects omit the type meta.
        obj.setdefault("apiVersion", self.api_version)
        obj.setdefault("kind", self.kind)
        return obj

    def _dispatch(self, event: ResourceEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                self.logger.exception(
                    "Event handler failed for %s %s event", self.resource, event.type.value
                )

    def handle_event(self, event_type: str, obj: Any) -> ResourceEvent | None:
        """Apply a single watch event to the store and notify subscribers."""
        data = self._to_dict(obj)
        if data is None:
            return None
        try:
            key = meta_namespace_key(data)
        except ValueError:
            self.logger.warning("Skipping %s %s event without a name", self.resource, event_type)
            return None

        if event_type in {"ADDED", "MODIFIED"}:
            old = self.store.upsert(key, data)
            if old is None:
                event = ResourceEvent(EventType.ADDED, data)
            else:
                event = ResourceEvent(EventType.UPDATED, data, old)
        elif event_type == "DELETED":
            old = self.store.delete(key)
            event = ResourceEvent(EventType.DELETED, data, old)
        else:
            return None

        self._dispatch(event)
        return event

    def _list_and_replace(self) -> str | None:
        """List every object, replace the store and emit the deltas.  Returns the list resourceVersion."""
        response = self.list_fn(**self.list_kwargs)
        if isinstance(response, dict):
            items: Iterable[Any] = response.get("items") or []
            resource_version = (response.get("metadata") or {}).get("resourceVersion")
        else:
            items = getattr(response, "items", None) or []
            resource_version = getattr(
                getattr(response, "metadata", None), "resource_version", None
            )

        objects: dict[str, dict[str, Any]] = {}
        for item in items:
            data = self._to_dict(item)
            if data is None:
                continue
            try:
                objects[meta_namespace_key(data)] = data
            except ValueError:
                continue

        for event in self.store.replace(objects):
            self._dispatch(event)
        return resource_version

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    @staticmethod
    def _is_access_denied(exc: ApiException) -> bool:
        return exc.status in {401, 403}

    def run(self, stop_event: threading.Event) -> None:
        """List, mark synced, then watch until *stop_event* is set."""
        self._external_stop.clear()
        resource_version: str | None = None
        backoff_seconds = 1

        while not self._should_stop(stop_event):
            try:
                resource_version = self._list_and_replace()
                self.has_synced.set()
                self.logger.info(
                    "Synced %d %s; watching from resourceVersion %s",
                    len(self.store),
                    self.resource,
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._is_access_denied(exc):
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.resource,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial %s list failed", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop_event):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.resource).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self.list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop_event):
                        break
                    resource_version = self._apply_watch_event(event) or resource_version
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    # The watch fell behind compaction; a fresh listing
                    # catches up and yields the missed changes as deltas.
                    self.logger.warning("%s watch resource version expired, re-listing", self.resource)
                    try:
                        resource_version = self._list_and_replace()
                    except ApiException as relist_exc:
                        if self._is_access_denied(relist_exc):
                            self.logger.error(
                                "Kubernetes API access denied re-listing %s (status=%s)",
                                self.resource,
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.resource)
                        METRICS.watch_errors_total.labels(resource=self.resource).inc()
                        resource_version = None
                    continue

                if self._is_access_denied(exc):
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s)", self.resource, exc.status
                    )
                    METRICS.watch_errors_total.labels(resource=self.resource).inc()
                    return

                self.logger.exception("Kubernetes API watch error on %s", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.has_synced.clear()

    def _apply_watch_event(self, event: dict[str, Any]) -> str | None:
        """Handle one raw watch event and return the resourceVersion it carries."""
        event_type = str(event.get("type", ""))
        raw = event.get("raw_object")
        if raw is None:
            raw = event.get("object")

        if event_type == "ERROR":
            status = raw if isinstance(raw, dict) else {}
            raise ApiException(status=status.get("code", 500), reason=status.get("message"))

        data = self._to_dict(raw)
        if data is None:
            return None
        resource_version = (data.get("metadata") or {}).get("resourceVersion")
        if event_type != "BOOKMARK":
            self.handle_event(event_type, data)
        return resource_version


def wait_for_cache_sync(
    stop_event: threading.Event,
    *informers: Informer,
    poll_interval: float = 0.1,
) -> bool:
    """Block until every informer has synced.  Returns False if stopped first."""
    while not all(informer.has_synced.is_set() for informer in informers):
        if stop_event.wait(timeout=poll_interval):
            return False
    return not stop_event.is_set()
