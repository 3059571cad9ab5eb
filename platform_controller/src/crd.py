from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiextensionsV1Api

from platform_controller.src.kube import is_already_exists
from platform_controller.src.metrics import METRICS
from platform_controller.src.resources import (
    PLAN_KIND,
    PLAN_PLURAL,
    PLATFORM_GROUP,
    PLATFORM_VERSION,
    RELEASE_KIND,
    RELEASE_PLURAL,
)

LOGGER = logging.getLogger(__name__)


class CRDProvisioningError(RuntimeError):
    """Base class for custom resource definitions that cannot be used."""


class CRDNameConflictError(CRDProvisioningError):
    """The API server rejected the names of a definition (``NamesAccepted=False``)."""


class CRDNotReadyError(CRDProvisioningError):
    """A definition was not ``Established`` before the readiness deadline."""


@dataclass(frozen=True)
class CustomResourceType:
    """A namespace-scoped custom resource type owned by the platform."""

    kind: str
    plural: str
    group: str = PLATFORM_GROUP
    version: str = PLATFORM_VERSION

    @property
    def name(self) -> str:
        return f"{self.plural}.{self.group}"

    def definition(self) -> dict[str, Any]:
        return {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {"name": self.name},
            "spec": {
                "group": self.group,
                "scope": "Namespaced",
                "names": {"plural": self.plural, "kind": self.kind},
                "versions": [
                    {
                        "name": self.version,
                        "served": True,
                        "storage": True,
                        "schema": {
                            "openAPIV3Schema": {
                                "type": "object",
                                "x-kubernetes-preserve-unknown-fields": True,
                            }
                        },
                    }
                ],
            },
        }


PLATFORM_RESOURCE_TYPES: tuple[CustomResourceType, ...] = (
    CustomResourceType(kind=PLAN_KIND, plural=PLAN_PLURAL),
    CustomResourceType(kind=RELEASE_KIND, plural=RELEASE_PLURAL),
)


def _conditions(crd: Any) -> list[tuple[str, str, str]]:
    """Return ``(type, status, reason)`` for each condition of a definition, typed or dict."""
    if isinstance(crd, dict):
        raw = (crd.get("status") or {}).get("conditions") or []
        return [(c.get("type", ""), c.get("status", ""), c.get("reason") or "") for c in raw]
    status = getattr(crd, "status", None)
    raw = getattr(status, "conditions", None) or []
    return [
        (getattr(c, "type", ""), getattr(c, "status", ""), getattr(c, "reason", None) or "")
        for c in raw
    ]


def wait_crd_ready(
    api: ApiextensionsV1Api,
    name: str,
    *,
    interval: float = 1.0,
    timeout: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Poll definition *name* until it is ``Established``.

    Raises :class:`CRDNameConflictError` as soon as a ``NamesAccepted=False``
    condition shows up, :class:`CRDNotReadyError` once *timeout* seconds have
    elapsed.  Errors reading the definition propagate unchanged.
    """
    deadline = clock() + timeout
    while True:
        crd = api.read_custom_resource_definition(name=name)
        for cond_type, cond_status, reason in _conditions(crd):
            if cond_type == "Established" and cond_status == "True":
                return
            if cond_type == "NamesAccepted" and cond_status == "False":
                raise CRDNameConflictError(f"Name conflict on {name}: {reason}")

        remaining = deadline - clock()
        if remaining <= 0:
            raise CRDNotReadyError(f"{name} was not established within {timeout}s")
        sleep(min(interval, remaining))


def provision_crds(
    api: ApiextensionsV1Api,
    resource_types: Iterable[CustomResourceType] = PLATFORM_RESOURCE_TYPES,
    *,
    interval: float = 1.0,
    timeout: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Declare each custom resource type and wait until the API serves it.

    Definitions are created once and never updated or deleted here; an
    existing definition is simply waited on.  The first failure aborts the
    whole provisioning run.
    """
    for resource_type in resource_types:
        try:
            api.create_custom_resource_definition(body=resource_type.definition())
            outcome = "created"
        except Exception as exc:
            if not is_already_exists(exc):
                METRICS.crd_provisioned_total.labels(crd=resource_type.name, outcome="error").inc()
                raise
            outcome = "exists"

        LOGGER.info(
            "Custom resource definition %s provisioned (%s), waiting to be ready",
            resource_type.name,
            outcome,
        )
        try:
            wait_crd_ready(
                api,
                resource_type.name,
                interval=interval,
                timeout=timeout,
                sleep=sleep,
                clock=clock,
            )
        except CRDNameConflictError:
            METRICS.crd_provisioned_total.labels(crd=resource_type.name, outcome="conflict").inc()
            raise
        except CRDNotReadyError:
            METRICS.crd_provisioned_total.labels(crd=resource_type.name, outcome="timeout").inc()
            raise
        METRICS.crd_provisioned_total.labels(crd=resource_type.name, outcome=outcome).inc()
        LOGGER.info("Custom resource definition %s is established", resource_type.name)
