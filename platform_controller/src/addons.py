"""Add-on catalog and per-type resource management.

Nothing in the controllers imports this module. The add-on provisioning tooling,
which runs outside this process, resolves an ``Addon`` through ``get_addon_app``
and drives the returned ``AddonApp``.
"""

from __future__ import annotations

import abc
import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from platform_controller.src.kube import is_already_exists, object_metadata

LABEL_ADDON = "kolihub.io/addon"


class AddonType(str, enum.Enum):
    REDIS = "redis"
    MEMCACHED = "memcached"
    MYSQL = "mysql"


class UnsupportedAddonError(ValueError):
    """Raised when an add-on type is unknown or has no implementation."""


@dataclass(frozen=True)
class AddonSpec:
    type: str
    base_image: str
    version: str = ""
    replicas: int = 0
    port: int = 0
    env: tuple[Mapping[str, Any], ...] = field(default_factory=tuple)
    args: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AddonSpec:
        return cls(
            type=str(data.get("type", "")),
            base_image=str(data.get("baseImage", "")),
            version=str(data.get("version") or ""),
            replicas=int(data.get("replicas") or 0),
            port=int(data.get("port") or 0),
            env=tuple(data.get("env") or ()),
            args=tuple(str(arg) for arg in data.get("args") or ()),
        )


@dataclass(frozen=True)
class Addon:
    name: str
    namespace: str
    spec: AddonSpec

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> Addon:
        metadata = object_metadata(obj)
        return cls(
            name=str(metadata.get("name", "")),
            namespace=str(metadata.get("namespace", "")),
            spec=AddonSpec.from_dict(obj.get("spec") or {}),
        )


def effective_image(spec: AddonSpec) -> str:
    """Return ``baseImage:version``; an empty version means ``latest``."""
    return f"{spec.base_image}:{spec.version or 'latest'}"


def effective_replicas(spec: AddonSpec) -> int:
    return max(spec.replicas, 1)


class AddonApp(abc.ABC):
    """Kubernetes objects backing one add-on: a ConfigMap, a Service and a StatefulSet.

    Variants only decide their default port, configuration and command line;
    the CRUD plumbing is shared.  Creates are idempotent: an object that
    already exists counts as created.
    """

    default_port: int = 0

    def __init__(self, addon: Addon, core_api: CoreV1Api, apps_api: AppsV1Api) -> None:
        self._addon = addon
        self.core_api = core_api
        self.apps_api = apps_api

    @property
    def addon(self) -> Addon:
        return self._addon

    @property
    def port(self) -> int:
        return self._addon.spec.port or self.default_port

    @property
    def labels(self) -> dict[str, str]:
        return {LABEL_ADDON: self._addon.spec.type, "app": self._addon.name}

    @abc.abstractmethod
    def config_data(self) -> dict[str, str]:
        """Content of the add-on ConfigMap."""

    @abc.abstractmethod
    def command(self) -> list[str]:
        """Container command line, including user supplied args."""

    def _metadata(self) -> dict[str, Any]:
        return {
            "name": self._addon.name,
            "namespace": self._addon.namespace,
            "labels": self.labels,
        }

    def _create(self, create_fn: Any, body: dict[str, Any]) -> bool:
        """Call *create_fn*; returns False when the object already existed."""
        try:
            create_fn(namespace=self._addon.namespace, body=body)
        except ApiException as exc:
            if is_already_exists(exc):
                return False
            raise
        return True

    def container(self) -> dict[str, Any]:
        return {
            "name": self._addon.name,
            "image": effective_image(self._addon.spec),
            "command": self.command(),
            "ports": [{"name": self._addon.spec.type, "containerPort": self.port}],
            "env": [dict(var) for var in self._addon.spec.env],
            "volumeMounts": [{"name": "config", "mountPath": "/etc/addon"}],
        }

    def create_config_map(self) -> bool:
        body = {"metadata": self._metadata(), "data": self.config_data()}
        return self._create(self.core_api.create_namespaced_config_map, body)

    def create_service(self) -> bool:
        body = {
            "metadata": self._metadata(),
            "spec": {
                "clusterIP": "None",
                "ports": [{"name": self._addon.spec.type, "port": self.port}],
                "selector": self.labels,
            },
        }
        return self._create(self.core_api.create_namespaced_service, body)

    def stateful_set(self) -> dict[str, Any]:
        return {
            "metadata": self._metadata(),
            "spec": {
                "serviceName": self._addon.name,
                "replicas": effective_replicas(self._addon.spec),
                "selector": {"matchLabels": self.labels},
                "template": {
                    "metadata": {"labels": self.labels},
                    "spec": {
                        "containers": [self.container()],
                        "volumes": [
                            {"name": "config", "configMap": {"name": self._addon.name}}
                        ],
                    },
                },
            },
        }

    def create_stateful_set(self) -> bool:
        return self._create(self.apps_api.create_namespaced_stateful_set, self.stateful_set())

    def update_stateful_set(self, old: Mapping[str, Any]) -> bool:
        """Patch replicas and container when they drift from *old*.  Returns True if patched."""
        desired = self.stateful_set()["spec"]
        old_spec = old.get("spec") or {}
        old_containers = ((old_spec.get("template") or {}).get("spec") or {}).get("containers") or []
        old_container = old_containers[0] if old_containers else {}
        desired_container = desired["template"]["spec"]["containers"][0]
        if (
            old_spec.get("replicas") == desired["replicas"]
            and old_container.get("image") == desired_container["image"]
            and old_container.get("command") == desired_container["command"]
            and (old_container.get("env") or []) == desired_container["env"]
        ):
            return False
        self.apps_api.patch_namespaced_stateful_set(
            name=self._addon.name,
            namespace=self._addon.namespace,
            body={
                "spec": {
                    "replicas": desired["replicas"],
                    "template": {"spec": {"containers": [desired_container]}},
                }
            },
        )
        return True

    def delete(self) -> None:
        """Remove the StatefulSet, Service and ConfigMap; missing objects are skipped."""
        name = self._addon.name
        namespace = self._addon.namespace
        for delete_fn in (
            self.apps_api.delete_namespaced_stateful_set,
            self.core_api.delete_namespaced_service,
            self.core_api.delete_namespaced_config_map,
        ):
            try:
                delete_fn(name=name, namespace=namespace)
            except ApiException as exc:
                if exc.status != 404:
                    raise


class RedisApp(AddonApp):
    default_port = 6379

    def config_data(self) -> dict[str, str]:
        return {"redis.conf": f"port {self.port}\nappendonly yes\ndir /data\n"}

    def command(self) -> list[str]:
        return ["redis-server", "/etc/addon/redis.conf", *self._addon.spec.args]


class MemcachedApp(AddonApp):
    default_port = 11211

    def config_data(self) -> dict[str, str]:
        return {"MEMCACHED_PORT": str(self.port)}

    def command(self) -> list[str]:
        return ["memcached", "-p", str(self.port), *self._addon.spec.args]


_IMPLEMENTATIONS: dict[AddonType, type[AddonApp]] = {
    AddonType.REDIS: RedisApp,
    AddonType.MEMCACHED: MemcachedApp,
}


def get_addon_app(addon: Addon, core_api: CoreV1Api, apps_api: AppsV1Api) -> AddonApp:
    """Resolve the implementation for *addon*'s type.

    ``mysql`` belongs to the catalog but has no implementation yet, so it
    fails exactly like an unknown type.
    """
    try:
        addon_type = AddonType(addon.spec.type)
    except ValueError:
        raise UnsupportedAddonError(f"invalid add-on type ({addon.spec.type})") from None
    app_class = _IMPLEMENTATIONS.get(addon_type)
    if app_class is None:
        raise UnsupportedAddonError(f"unsupported add-on type ({addon.spec.type})")
    return app_class(addon, core_api, apps_api)
