from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)

from platform_controller.src.kube import object_metadata

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


class EventRecorder(Protocol):
    """Sink for human-readable diagnostic events attached to an API object."""

    def event(self, obj: Mapping[str, Any], event_type: str, reason: str, message: str) -> None: ...


def object_reference(obj: Mapping[str, Any]) -> V1ObjectReference:
    metadata = object_metadata(obj)
    return V1ObjectReference(
        api_version=obj.get("apiVersion"),
        kind=obj.get("kind"),
        name=metadata.get("name"),
        namespace=metadata.get("namespace"),
        uid=metadata.get("uid"),
        resource_version=metadata.get("resourceVersion"),
    )


class KubeEventRecorder:
    """Records events through the ``core/v1`` Events API and mirrors them to the log.

    Posting is best effort: a failure to write the event is logged and never
    surfaces to the reconcile that emitted it.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.now_fn = now_fn

    def event(self, obj: Mapping[str, Any], event_type: str, reason: str, message: str) -> None:
        reference = object_reference(obj)
        LOGGER.info(
            "Event(%s %s/%s): type=%s reason=%s message=%s",
            reference.kind,
            reference.namespace,
            reference.name,
            event_type,
            reason,
            message,
        )
        namespace = reference.namespace or "default"
        now = self.now_fn()
        body = CoreV1Event(
            metadata=V1ObjectMeta(
                name=f"{reference.name}.{uuid.uuid4().hex[:16]}",
                namespace=namespace,
            ),
            involved_object=reference,
            reason=reason,
            message=message,
            type=event_type,
            count=1,
            first_timestamp=now,
            last_timestamp=now,
            source=V1EventSource(component=self.component),
        )
        try:
            self.core_api.create_namespaced_event(namespace=namespace, body=body)
        except ApiException as exc:
            LOGGER.warning(
                "Failed to record event %s for %s/%s: %s",
                reason,
                namespace,
                reference.name,
                exc.reason,
            )
