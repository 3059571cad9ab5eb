from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, NetworkingV1Api

from platform_controller.src.controller import Controller, SyncError, generation, is_noop_update
from platform_controller.src.informer import EventType, Informer, ResourceEvent
from platform_controller.src.kube import (
    is_already_exists,
    object_metadata,
    patch_deployment_annotation,
    split_meta_namespace_key,
)
from platform_controller.src.metrics import METRICS
from platform_controller.src.recorder import EVENT_TYPE_WARNING, EventRecorder
from platform_controller.src.resources import (
    ANNOTATION_SETUP_STORAGE,
    LABEL_APP,
    LABEL_TYPE,
    is_marker_set,
    is_platform_namespace,
    is_storage_plan,
    labels,
    missing_resource_requirements,
    new_persistent_volume_claim,
    new_route_ingress,
    new_route_service,
    pvc_name,
    storage_plan_name,
)


class AppManagerController(Controller):
    """Provisions the side resources of platform applications.

    For every Deployment in a platform namespace it makes sure a default
    route (Service + Ingress) exists and, when the Deployment asks for it
    through the ``setup-storage`` marker, claims a volume sized by the
    referenced storage Plan.  When a Deployment disappears, leftover build
    pods labelled ``app=<name>`` are removed.
    """

    name = "app_manager"

    def __init__(
        self,
        deployments: Informer,
        plans: Informer,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        networking_api: NetworkingV1Api,
        recorder: EventRecorder,
        default_domain: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__((deployments, plans), recorder, **kwargs)
        self.deployments = deployments
        self.plans = plans
        self.core_api = core_api
        self.apps_api = apps_api
        self.networking_api = networking_api
        self.default_domain = default_domain
        deployments.subscribe(self.handle_deployment_event)

    def handle_deployment_event(self, event: ResourceEvent) -> None:
        if event.type is EventType.UPDATED and is_noop_update(event):
            return
        if event.type is EventType.ADDED:
            metadata = object_metadata(event.obj)
            self.logger.info(
                "add-deployment(%s) - %s/%s",
                generation(event.obj),
                metadata.get("namespace"),
                metadata.get("name"),
            )
        self.queue.add(event.obj)

    def sync(self, key: str) -> None:
        deployment = self.deployments.store.get_by_key(key)
        if deployment is None:
            self.logger.debug("%s - the deployment doesn't exist", key)
            namespace, name = split_meta_namespace_key(key)
            if namespace:
                self._clean_builds(key, namespace, name)
            return

        metadata = object_metadata(deployment)
        if metadata.get("deletionTimestamp"):
            self.logger.debug("%s - object marked for deletion", key)
            return
        if not is_platform_namespace(metadata.get("namespace")):
            self.logger.debug("%s - not a platform resource", key)
            return

        self._ensure_default_route(key, deployment)

        if missing_resource_requirements(deployment):
            self.logger.warning("%s - deployment has empty 'limits' or 'requests' resources", key)

        plan_name = storage_plan_name(deployment)
        if plan_name is None or not is_marker_set(deployment, ANNOTATION_SETUP_STORAGE):
            self.logger.debug("%s - no storage plan or setup-storage marker", key)
            return
        self._provision_storage(key, deployment, plan_name)

    def _clean_builds(self, key: str, namespace: str, app_name: str) -> bool:
        """Delete build pods orphaned by a removed Deployment.  Best effort."""
        if not is_platform_namespace(namespace):
            return False
        self.logger.info("%s - removing orphan build pods", key)
        try:
            self.core_api.delete_collection_namespaced_pod(
                namespace=namespace,
                label_selector=f"{LABEL_APP}={app_name}",
            )
        except ApiException as exc:
            self.logger.warning("%s - failed removing orphan build pods: %s", key, exc.reason)
            return False
        return True

    def _ensure_default_route(self, key: str, deployment: Mapping[str, Any]) -> None:
        if not self.default_domain or labels(deployment).get(LABEL_TYPE) != "app":
            return
        namespace = object_metadata(deployment).get("namespace")
        try:
            try:
                self.core_api.create_namespaced_service(
                    namespace=namespace, body=new_route_service(deployment)
                )
            except ApiException as exc:
                if not is_already_exists(exc):
                    raise
            self.networking_api.create_namespaced_ingress(
                namespace=namespace, body=new_route_ingress(deployment, self.default_domain)
            )
            self.logger.info("%s - default route created", key)
        except ApiException as exc:
            if is_already_exists(exc):
                self.logger.debug("%s - default route already exists", key)
                return
            self.logger.warning("%s - failed adding default routes: %s", key, exc.reason)

    def find_storage_plan(self, plan_name: str) -> dict[str, Any] | None:
        matches = self.plans.store.list(
            lambda plan: object_metadata(plan).get("name") == plan_name and is_storage_plan(plan)
        )
        return matches[0] if matches else None

    def _provision_storage(self, key: str, deployment: Mapping[str, Any], plan_name: str) -> None:
        plan = self.find_storage_plan(plan_name)
        if plan is None:
            # Retried until the plan shows up or the marker is removed.
            message = f'Storage Plan "{plan_name}" not found'
            self.recorder.event(deployment, EVENT_TYPE_WARNING, "PlanNotFound", message)
            raise SyncError(message)
        if not plan["spec"].get("storage"):
            message = f'Storage Plan "{plan_name}" has no storage size'
            self.recorder.event(deployment, EVENT_TYPE_WARNING, "ProvisionError", message)
            raise SyncError(message)

        metadata = object_metadata(deployment)
        namespace = metadata["namespace"]
        name = metadata["name"]
        claim = new_persistent_volume_claim(deployment, plan)
        try:
            self.core_api.create_namespaced_persistent_volume_claim(namespace=namespace, body=claim)
        except ApiException as exc:
            if not is_already_exists(exc):
                METRICS.pvc_failed_total.inc()
                message = f"Failed creating PVC [{exc.reason}]"
                self.recorder.event(deployment, EVENT_TYPE_WARNING, "ProvisionError", message)
                raise SyncError(message) from exc
            self.logger.debug("%s - PVC %s already exists", key, pvc_name(name))
        else:
            METRICS.pvc_created_total.inc()
            self.logger.info(
                '%s - PVC "%s" created with "%s"', key, pvc_name(name), plan["spec"]["storage"]
            )

        try:
            patch_deployment_annotation(
                self.apps_api, namespace, name, ANNOTATION_SETUP_STORAGE, "false"
            )
        except ApiException as exc:
            raise SyncError(f"{key} - failed updating deployment [{exc.reason}]") from exc
