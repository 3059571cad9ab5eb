from __future__ import annotations

from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CustomObjectsApi

from platform_controller.src.controller import Controller, SyncError, generation, is_noop_update
from platform_controller.src.informer import EventType, Informer, ResourceEvent
from platform_controller.src.kube import (
    is_already_exists,
    object_metadata,
    patch_deployment_annotation,
)
from platform_controller.src.metrics import METRICS
from platform_controller.src.recorder import EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING, EventRecorder
from platform_controller.src.resources import (
    ANNOTATION_BUILD,
    PLATFORM_GROUP,
    PLATFORM_VERSION,
    RELEASE_PLURAL,
    MissingAnnotationError,
    is_marker_set,
    is_platform_namespace,
    new_release,
    validate_required_keys,
)


class ReleaseController(Controller):
    """Turns a Deployment's ``build`` marker into a Release object.

    A Deployment annotated with ``kolihub.io/build: "true"`` gets a Release
    carrying its source-control metadata; the marker is then switched off
    so the same build is not requested again.  Release creation is
    idempotent, so a marker that could not be cleared only costs a
    duplicate create that the API server rejects.
    """

    name = "release"

    def __init__(
        self,
        releases: Informer,
        deployments: Informer,
        custom_api: CustomObjectsApi,
        apps_api: AppsV1Api,
        recorder: EventRecorder,
        **kwargs: Any,
    ) -> None:
        super().__init__((releases, deployments), recorder, **kwargs)
        self.releases = releases
        self.deployments = deployments
        self.custom_api = custom_api
        self.apps_api = apps_api
        deployments.subscribe(self.handle_deployment_event)

    def handle_deployment_event(self, event: ResourceEvent) -> None:
        if event.type is EventType.DELETED:
            return
        if event.type is EventType.UPDATED:
            if is_noop_update(event):
                return
            # Status-only updates keep the generation; only spec changes count.
            if generation(event.old) == generation(event.obj):
                return
            metadata = object_metadata(event.obj)
            self.logger.debug(
                "update-deployment(%s) - %s/%s - new generation, queueing",
                generation(event.obj),
                metadata.get("namespace"),
                metadata.get("name"),
            )
        self.queue.add(event.obj)

    def sync(self, key: str) -> None:
        deployment = self.deployments.store.get_by_key(key)
        if deployment is None:
            self.logger.debug("%s - deployment doesn't exist", key)
            return

        metadata = object_metadata(deployment)
        namespace = metadata.get("namespace")
        if not is_platform_namespace(namespace):
            self.logger.debug("%s - noop, it's not a valid namespace", key)
            return
        if not is_marker_set(deployment, ANNOTATION_BUILD):
            self.logger.debug("%s - noop, isn't a build action", key)
            return

        try:
            validate_required_keys(deployment)
        except MissingAnnotationError as exc:
            self.recorder.event(deployment, EVENT_TYPE_WARNING, "MissingAnnotationKey", str(exc))
            raise SyncError(f"ValidateRequiredKeys [{exc}]") from exc

        release = new_release(deployment)
        try:
            created = self.custom_api.create_namespaced_custom_object(
                group=PLATFORM_GROUP,
                version=PLATFORM_VERSION,
                namespace=namespace,
                plural=RELEASE_PLURAL,
                body=release,
            )
        except ApiException as exc:
            if not is_already_exists(exc):
                raise SyncError(f"failed creating new release: {exc.reason}") from exc
            self.logger.debug("%s - release %s already exists", key, release["metadata"]["name"])
        else:
            METRICS.releases_created_total.inc()
            spec = release["spec"]
            ref = spec["headCommit"]["id"] or spec["gitBranch"]
            self.recorder.event(
                created if isinstance(created, dict) else release,
                EVENT_TYPE_NORMAL,
                "Created",
                f"Created release with revision '{ref}' from '{spec['source']}'",
            )
            self.logger.info("%s - new release created '%s'", key, release["metadata"]["name"])

        # Switch the marker off, otherwise the next event triggers the build again.
        try:
            patch_deployment_annotation(
                self.apps_api, namespace, metadata["name"], ANNOTATION_BUILD, "false"
            )
        except ApiException as exc:
            self.logger.warning("%s - failed deactivating build from deployment: %s", key, exc.reason)
