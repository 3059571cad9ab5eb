"""Platform resource model: metadata markers, naming rules and object builders.

Every object the controllers create is derived deterministically from the
owning Deployment, so a repeated create collides on its name instead of
producing a duplicate.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from platform_controller.src.kube import object_metadata

PLATFORM_GROUP = "platform.kolihub.io"
PLATFORM_VERSION = "v1alpha1"
PLATFORM_API_VERSION = f"{PLATFORM_GROUP}/{PLATFORM_VERSION}"
SYSTEM_NAMESPACE = "koli-system"

PLAN_KIND = "Plan"
PLAN_PLURAL = "plans"
RELEASE_KIND = "Release"
RELEASE_PLURAL = "releases"

DEPLOYMENT_API_VERSION = "apps/v1"
DEPLOYMENT_KIND = "Deployment"

# Markers read from Deployment annotations.
ANNOTATION_BUILD = "kolihub.io/build"
ANNOTATION_SETUP_STORAGE = "kolihub.io/setup-storage"
ANNOTATION_STORAGE_PLAN = "kolihub.io/storage-plan"
ANNOTATION_AUTO_DEPLOY = "kolihub.io/autodeploy"
ANNOTATION_BUILD_SOURCE = "kolihub.io/buildsource"
ANNOTATION_GIT_REMOTE = "kolihub.io/gitremote"
ANNOTATION_GIT_BRANCH = "kolihub.io/gitbranch"
ANNOTATION_GIT_REPOSITORY = "kolihub.io/gitrepository"
ANNOTATION_GIT_COMMIT_ID = "kolihub.io/gitcommitid"
ANNOTATION_GIT_AUTHOR = "kolihub.io/gitauthor"
ANNOTATION_GIT_AVATAR = "kolihub.io/gitavatar"
ANNOTATION_GIT_COMPARE = "kolihub.io/gitcompare"
ANNOTATION_GIT_COMMIT_MESSAGE = "kolihub.io/gitcommitmessage"
ANNOTATION_GIT_COMMIT_URL = "kolihub.io/gitcommiturl"
ANNOTATION_PARENT = "kolihub.io/parent"

LABEL_TYPE = "kolihub.io/type"
LABEL_NAME = "kolihub.io/name"
LABEL_DEPLOY = "kolihub.io/deploy"
LABEL_GIT_REVISION = "kolihub.io/gitrevision"
LABEL_APP = "app"

REQUIRED_BUILD_KEYS = (ANNOTATION_GIT_REMOTE,)

ROUTE_PORT = 80
ROUTE_TARGET_PORT = 5000
STORAGE_PLAN_TYPE = "Storage"

_NAMESPACE_PATTERN = re.compile(r"^([a-z0-9]+)-([a-z0-9]+)-([a-z0-9]+)$")
_FULL_SHA_PATTERN = re.compile(r"^[0-9a-f]{40}$")


class MissingAnnotationError(ValueError):
    """Raised when a Deployment lacks metadata required to start a build."""


@dataclass(frozen=True)
class NamespaceMetadata:
    """Platform namespaces are named ``<env>-<customer>-<organization>``."""

    env: str
    customer: str
    organization: str

    @classmethod
    def parse(cls, namespace: str | None) -> NamespaceMetadata | None:
        match = _NAMESPACE_PATTERN.match(namespace or "")
        if match is None:
            return None
        return cls(*match.groups())


def is_platform_namespace(namespace: str | None) -> bool:
    return NamespaceMetadata.parse(namespace) is not None


def annotations(obj: Mapping[str, Any]) -> dict[str, str]:
    raw = object_metadata(obj).get("annotations")
    if not isinstance(raw, Mapping):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def labels(obj: Mapping[str, Any]) -> dict[str, str]:
    raw = object_metadata(obj).get("labels")
    if not isinstance(raw, Mapping):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def is_marker_set(obj: Mapping[str, Any], key: str) -> bool:
    """Markers are plain strings; only the literal ``"true"`` turns one on."""
    return annotations(obj).get(key) == "true"


def storage_plan_name(obj: Mapping[str, Any]) -> str | None:
    return annotations(obj).get(ANNOTATION_STORAGE_PLAN) or None


def is_storage_plan(plan: Mapping[str, Any]) -> bool:
    spec = plan.get("spec") or {}
    return spec.get("type") == STORAGE_PLAN_TYPE


def missing_resource_requirements(deployment: Mapping[str, Any]) -> bool:
    """Return True if the first container declares no requests or no limits."""
    containers = (
        ((deployment.get("spec") or {}).get("template") or {}).get("spec") or {}
    ).get("containers") or []
    if not containers:
        return False
    resources = containers[0].get("resources") or {}
    return not resources.get("requests") or not resources.get("limits")


def validate_required_keys(deployment: Mapping[str, Any]) -> None:
    present = annotations(deployment)
    for key in REQUIRED_BUILD_KEYS:
        if key not in present:
            raise MissingAnnotationError(f"Missing required key '{key}'")


def short_sha(commit_id: str | None) -> str | None:
    """Return the 7 character abbreviation of a full 40 character commit SHA."""
    if not commit_id or not _FULL_SHA_PATTERN.match(commit_id):
        return None
    return commit_id[:7]


def owner_references(deployment: Mapping[str, Any]) -> list[dict[str, Any]]:
    metadata = object_metadata(deployment)
    return [
        {
            "apiVersion": deployment.get("apiVersion") or DEPLOYMENT_API_VERSION,
            "kind": deployment.get("kind") or DEPLOYMENT_KIND,
            "name": metadata.get("name"),
            "uid": metadata.get("uid"),
            "controller": True,
        }
    ]


def pvc_name(deployment_name: str) -> str:
    return f"d-{deployment_name}"


def new_persistent_volume_claim(
    deployment: Mapping[str, Any], plan: Mapping[str, Any]
) -> dict[str, Any]:
    metadata = object_metadata(deployment)
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": pvc_name(metadata["name"]),
            "namespace": metadata.get("namespace"),
        },
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": str(plan["spec"]["storage"])}},
        },
    }


def new_route_service(deployment: Mapping[str, Any]) -> dict[str, Any]:
    metadata = object_metadata(deployment)
    name = metadata["name"]
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": name,
            "namespace": metadata.get("namespace"),
            "labels": {LABEL_TYPE: "app"},
            "ownerReferences": owner_references(deployment),
        },
        "spec": {
            "ports": [
                {
                    "name": "http",
                    "port": ROUTE_PORT,
                    "protocol": "TCP",
                    "targetPort": ROUTE_TARGET_PORT,
                }
            ],
            "selector": {LABEL_NAME: name, LABEL_TYPE: "app"},
        },
    }


def route_host(deployment_name: str, namespace: str, domain: str) -> str:
    return f"{deployment_name}-{namespace}.{domain}"


def new_route_ingress(deployment: Mapping[str, Any], domain: str) -> dict[str, Any]:
    metadata = object_metadata(deployment)
    name = metadata["name"]
    namespace = metadata.get("namespace") or ""
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {
            "name": name,
            "namespace": namespace,
            # Subdomains are claimed from the system namespace.
            "annotations": {ANNOTATION_PARENT: SYSTEM_NAMESPACE},
            "labels": {LABEL_TYPE: "app"},
            "ownerReferences": owner_references(deployment),
        },
        "spec": {
            "rules": [
                {
                    "host": route_host(name, namespace, domain),
                    "http": {
                        "paths": [
                            {
                                "path": "/",
                                "pathType": "Prefix",
                                "backend": {
                                    "service": {"name": name, "port": {"number": ROUTE_PORT}}
                                },
                            }
                        ]
                    },
                }
            ]
        },
    }


def new_release(deployment: Mapping[str, Any]) -> dict[str, Any]:
    """Build the Release requesting a build of *deployment*'s current source.

    The revision is the Deployment name itself, so repeated triggers for the
    same Deployment address one Release object.
    """
    metadata = object_metadata(deployment)
    name = metadata["name"]
    values = annotations(deployment)
    release_labels = {LABEL_DEPLOY: name}
    revision = short_sha(values.get(ANNOTATION_GIT_COMMIT_ID))
    if revision is not None:
        release_labels[LABEL_GIT_REVISION] = revision

    return {
        "apiVersion": PLATFORM_API_VERSION,
        "kind": RELEASE_KIND,
        "metadata": {
            "name": name,
            "namespace": metadata.get("namespace"),
            "labels": release_labels,
        },
        "spec": {
            "gitRemote": values.get(ANNOTATION_GIT_REMOTE, ""),
            "gitBranch": values.get(ANNOTATION_GIT_BRANCH, ""),
            "gitRepository": values.get(ANNOTATION_GIT_REPOSITORY, ""),
            "headCommit": {
                "id": values.get(ANNOTATION_GIT_COMMIT_ID, ""),
                "author": values.get(ANNOTATION_GIT_AUTHOR, ""),
                "avatarUrl": values.get(ANNOTATION_GIT_AVATAR, ""),
                "compare": values.get(ANNOTATION_GIT_COMPARE, ""),
                "message": values.get(ANNOTATION_GIT_COMMIT_MESSAGE, ""),
                "url": values.get(ANNOTATION_GIT_COMMIT_URL, ""),
            },
            "autoDeploy": values.get(ANNOTATION_AUTO_DEPLOY) == "true",
            "deployName": name,
            "build": True,
            "source": values.get(ANNOTATION_BUILD_SOURCE, ""),
        },
    }
