from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiextensionsV1Api,
    ApiException,
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    NetworkingV1Api,
)
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


@dataclass(frozen=True)
class KubeClients:
    """Typed API clients shared by every controller in the process."""

    core: CoreV1Api
    apps: AppsV1Api
    networking: NetworkingV1Api
    custom: CustomObjectsApi
    apiextensions: ApiextensionsV1Api


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the API clients using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        networking=client.NetworkingV1Api(),
        custom=client.CustomObjectsApi(),
        apiextensions=client.ApiextensionsV1Api(),
    )


def is_already_exists(exc: BaseException) -> bool:
    """Return True when *exc* is the API server's answer to a duplicate create."""
    return isinstance(exc, ApiException) and exc.status == 409


def object_metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, Mapping) else {}


def meta_namespace_key(obj: Mapping[str, Any]) -> str:
    """Return the cache key of *obj*: ``namespace/name``, or ``name`` when cluster scoped.

    Raises ``ValueError`` when the object carries no name.
    """
    metadata = object_metadata(obj)
    name = metadata.get("name")
    if not name:
        raise ValueError("object has no metadata.name")
    namespace = metadata.get("namespace")
    if namespace:
        return f"{namespace}/{name}"
    return str(name)


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a cache key into ``(namespace, name)``; namespace is empty for cluster scope."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def annotation_patch(annotations: Mapping[str, str]) -> dict[str, Any]:
    """Build a minimal merge patch touching only the given metadata annotations."""
    return {"metadata": {"annotations": dict(annotations)}}


def patch_deployment_annotation(
    apps_api: AppsV1Api,
    namespace: str,
    deployment_name: str,
    annotation_key: str,
    value: str,
) -> None:
    """Set a single annotation on a Deployment, leaving everything else untouched.

    Used to flip platform markers (``setup-storage``, ``build``) once the
    action they request has been carried out, so the next reconcile of the
    same object is a no-op.
    """
    apps_api.patch_namespaced_deployment(
        name=deployment_name,
        namespace=namespace,
        body=annotation_patch({annotation_key: value}),
        # Without an explicit type the client sends a JSON Patch, which rejects object bodies.
        _content_type=MERGE_PATCH_CONTENT_TYPE,
    )
