from __future__ import annotations

import copy
import logging
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from platform_controller.src.appmanager import AppManagerController
from platform_controller.src.controller import SyncError
from platform_controller.src.informer import EventType, Informer, ResourceEvent

NAMESPACE = "prod-coyote-acme"


class FakeCoreApi:
    def __init__(self, pvc_error: ApiException | None = None) -> None:
        self.claims: dict[tuple[str, str], dict[str, Any]] = {}
        self.services: dict[tuple[str, str], dict[str, Any]] = {}
        self.pod_deletes: list[tuple[str, str]] = []
        self.pvc_error = pvc_error
        self.service_error: ApiException | None = None

    def create_namespaced_persistent_volume_claim(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        if self.pvc_error is not None:
            raise self.pvc_error
        key = (namespace, body["metadata"]["name"])
        if key in self.claims:
            raise ApiException(status=409, reason="AlreadyExists")
        self.claims[key] = body
        return body

    def create_namespaced_service(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        if self.service_error is not None:
            raise self.service_error
        key = (namespace, body["metadata"]["name"])
        if key in self.services:
            raise ApiException(status=409, reason="AlreadyExists")
        self.services[key] = body
        return body

    def delete_collection_namespaced_pod(self, namespace: str, label_selector: str) -> None:
        self.pod_deletes.append((namespace, label_selector))


class FakeNetworkingApi:
    def __init__(self) -> None:
        self.ingresses: dict[tuple[str, str], dict[str, Any]] = {}

    def create_namespaced_ingress(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        key = (namespace, body["metadata"]["name"])
        if key in self.ingresses:
            raise ApiException(status=409, reason="AlreadyExists")
        self.ingresses[key] = body
        return body


class FakeAppsApi:
    """Applies annotation patches and, when given an informer, feeds the result back as a watch event."""

    def __init__(self, informer: Informer | None = None, fail: bool = False) -> None:
        self.informer = informer
        self.fail = fail
        self.patches: list[tuple[str, str, dict[str, Any]]] = []
        self.content_types: list[str | None] = []

    def patch_namespaced_deployment(
        self, name: str, namespace: str, body: dict[str, Any], _content_type: str | None = None
    ) -> None:
        if self.fail:
            raise ApiException(status=500, reason="boom")
        self.patches.append((namespace, name, body))
        self.content_types.append(_content_type)
        if self.informer is None:
            return
        current = copy.deepcopy(self.informer.store.get_by_key(f"{namespace}/{name}"))
        metadata = current["metadata"]
        metadata.setdefault("annotations", {}).update(body["metadata"]["annotations"])
        metadata["resourceVersion"] = str(int(metadata["resourceVersion"]) + 1)
        self.informer.handle_event("MODIFIED", current)


class FakeRecorder:
    def __init__(self) -> None:
        self.events: list[tuple[dict[str, Any], str, str, str]] = []

    def event(self, obj: dict[str, Any], event_type: str, reason: str, message: str) -> None:
        self.events.append((obj, event_type, reason, message))

    def reasons(self) -> list[str]:
        return [reason for _, _, reason, _ in self.events]


def make_deployment(
    name: str = "web",
    namespace: str = NAMESPACE,
    annotations: dict[str, str] | None = None,
    labels: dict[str, str] | None = None,
    resources: dict[str, Any] | None = None,
    rv: str = "1",
) -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{name}",
            "resourceVersion": rv,
            "generation": 1,
            "annotations": dict(annotations or {}),
            "labels": dict(labels or {}),
        },
        "spec": {
            "template": {
                "spec": {
                    "containers": [
                        {
                            "name": name,
                            "resources": resources
                            if resources is not None
                            else {"requests": {"cpu": "100m"}, "limits": {"cpu": "200m"}},
                        }
                    ]
                }
            }
        },
    }


def make_plan(name: str = "small", plan_type: str = "Storage", storage: str = "5Gi") -> dict[str, Any]:
    return {
        "apiVersion": "platform.kolihub.io/v1alpha1",
        "kind": "Plan",
        "metadata": {"name": name, "namespace": "koli-system", "resourceVersion": "1"},
        "spec": {"type": plan_type, "storage": storage},
    }


def storage_annotations(plan: str = "small", marker: str = "true") -> dict[str, str]:
    return {"kolihub.io/storage-plan": plan, "kolihub.io/setup-storage": marker}


class Harness:
    def __init__(self, default_domain: str = "", feed_patches: bool = True) -> None:
        self.deployments = Informer(MagicMock(), resource="deployments", api_version="apps/v1", kind="Deployment")
        self.plans = Informer(
            MagicMock(), resource="plans", api_version="platform.kolihub.io/v1alpha1", kind="Plan"
        )
        self.core = FakeCoreApi()
        self.apps = FakeAppsApi(self.deployments if feed_patches else None)
        self.networking = FakeNetworkingApi()
        self.recorder = FakeRecorder()
        self.controller = AppManagerController(
            deployments=self.deployments,
            plans=self.plans,
            core_api=self.core,
            apps_api=self.apps,
            networking_api=self.networking,
            recorder=self.recorder,
            default_domain=default_domain,
        )

    def add_deployment(self, deployment: dict[str, Any]) -> str:
        self.deployments.handle_event("ADDED", deployment)
        metadata = deployment["metadata"]
        return f"{metadata['namespace']}/{metadata['name']}"

    def add_plan(self, plan: dict[str, Any]) -> None:
        self.plans.handle_event("ADDED", plan)

    def marker(self, key: str) -> str | None:
        return self.deployments.store.get_by_key(key)["metadata"]["annotations"].get(
            "kolihub.io/setup-storage"
        )


# ---------------------------------------------------------------------------
# Storage provisioning
# ---------------------------------------------------------------------------


class TestStorageProvisioning:
    def test_claims_volume_sized_by_plan_and_clears_marker(self) -> None:
        h = Harness()
        h.add_plan(make_plan(storage="5Gi"))
        key = h.add_deployment(make_deployment(annotations=storage_annotations()))

        h.controller.sync(key)

        claim = h.core.claims[(NAMESPACE, "d-web")]
        assert claim["spec"]["accessModes"] == ["ReadWriteOnce"]
        assert claim["spec"]["resources"]["requests"]["storage"] == "5Gi"
        assert h.apps.patches == [
            (NAMESPACE, "web", {"metadata": {"annotations": {"kolihub.io/setup-storage": "false"}}})
        ]
        assert h.apps.content_types == ["application/merge-patch+json"]
        assert h.marker(key) == "false"

    def test_cleared_marker_makes_next_sync_a_noop(self) -> None:
        h = Harness()
        h.add_plan(make_plan())
        key = h.add_deployment(make_deployment(annotations=storage_annotations()))

        h.controller.sync(key)
        h.controller.sync(key)

        assert len(h.core.claims) == 1
        assert len(h.apps.patches) == 1

    def test_existing_claim_is_not_an_error(self) -> None:
        h = Harness(feed_patches=False)
        h.add_plan(make_plan())
        key = h.add_deployment(make_deployment(annotations=storage_annotations()))

        h.controller.sync(key)
        h.controller.sync(key)

        assert list(h.core.claims) == [(NAMESPACE, "d-web")]
        assert len(h.apps.patches) == 2
        assert h.recorder.events == []

    def test_missing_plan_records_one_event_and_keeps_marker(self) -> None:
        h = Harness()
        key = h.add_deployment(make_deployment(annotations=storage_annotations(plan="large")))

        with pytest.raises(SyncError, match='Storage Plan "large" not found'):
            h.controller.sync(key)

        assert h.recorder.reasons() == ["PlanNotFound"]
        _, event_type, _, message = h.recorder.events[0]
        assert event_type == "Warning"
        assert message == 'Storage Plan "large" not found'
        assert h.core.claims == {}
        assert h.apps.patches == []
        assert h.marker(key) == "true"

    def test_plan_of_other_type_is_not_a_storage_plan(self) -> None:
        h = Harness()
        h.add_plan(make_plan(plan_type="Compute"))
        key = h.add_deployment(make_deployment(annotations=storage_annotations()))

        with pytest.raises(SyncError):
            h.controller.sync(key)

        assert h.recorder.reasons() == ["PlanNotFound"]

    def test_plan_without_size_records_its_own_event(self) -> None:
        h = Harness()
        h.add_plan(make_plan(storage=""))
        key = h.add_deployment(make_deployment(annotations=storage_annotations()))

        with pytest.raises(SyncError, match='Storage Plan "small" has no storage size'):
            h.controller.sync(key)

        assert h.recorder.reasons() == ["ProvisionError"]
        assert h.core.claims == {}
        assert h.apps.patches == []
        assert h.marker(key) == "true"

    def test_claim_failure_records_provision_error(self) -> None:
        h = Harness()
        h.core.pvc_error = ApiException(status=500, reason="Internal Server Error")
        h.add_plan(make_plan())
        key = h.add_deployment(make_deployment(annotations=storage_annotations()))

        with pytest.raises(SyncError):
            h.controller.sync(key)

        assert h.recorder.reasons() == ["ProvisionError"]
        assert h.recorder.events[0][3] == "Failed creating PVC [Internal Server Error]"
        assert h.apps.patches == []
        assert h.marker(key) == "true"

    def test_marker_patch_failure_fails_sync(self) -> None:
        h = Harness()
        h.apps.fail = True
        h.add_plan(make_plan())
        key = h.add_deployment(make_deployment(annotations=storage_annotations()))

        with pytest.raises(SyncError, match="failed updating deployment"):
            h.controller.sync(key)

        assert (NAMESPACE, "d-web") in h.core.claims

    @pytest.mark.parametrize("marker", ["false", "True", "yes", ""])
    def test_only_literal_true_marker_triggers_provisioning(self, marker: str) -> None:
        h = Harness()
        h.add_plan(make_plan())
        key = h.add_deployment(make_deployment(annotations=storage_annotations(marker=marker)))

        h.controller.sync(key)

        assert h.core.claims == {}

    def test_marker_without_plan_does_nothing(self) -> None:
        h = Harness()
        key = h.add_deployment(make_deployment(annotations={"kolihub.io/setup-storage": "true"}))

        h.controller.sync(key)

        assert h.core.claims == {}
        assert h.recorder.events == []

    def test_plan_showing_up_later_heals_through_the_queue(self) -> None:
        h = Harness()
        key = h.add_deployment(make_deployment(annotations=storage_annotations()))

        assert h.controller.queue.process_next_work_item() is True
        assert h.controller.queue.queue.num_requeues(key) == 1

        h.add_plan(make_plan())
        h.controller.queue.add_key(key)
        assert h.controller.queue.process_next_work_item() is True

        assert (NAMESPACE, "d-web") in h.core.claims
        assert h.controller.queue.queue.num_requeues(key) == 0


# ---------------------------------------------------------------------------
# Deployment lifecycle
# ---------------------------------------------------------------------------


class TestDeploymentLifecycle:
    def test_removed_deployment_cleans_build_pods(self) -> None:
        h = Harness()

        h.controller.sync(f"{NAMESPACE}/web")

        assert h.core.pod_deletes == [(NAMESPACE, "app=web")]

    def test_removed_deployment_outside_platform_namespace_is_ignored(self) -> None:
        h = Harness()

        h.controller.sync("default/web")
        h.controller.sync("web")

        assert h.core.pod_deletes == []

    def test_cleanup_failure_is_not_a_sync_error(self) -> None:
        h = Harness()
        h.core.delete_collection_namespaced_pod = MagicMock(
            side_effect=ApiException(status=500, reason="boom")
        )

        h.controller.sync(f"{NAMESPACE}/web")

    def test_delete_event_reaches_sync_as_cleanup(self) -> None:
        h = Harness()
        h.add_deployment(make_deployment())
        h.controller.queue.process_next_work_item()

        h.deployments.handle_event("DELETED", make_deployment(rv="2"))
        h.controller.queue.process_next_work_item()

        assert h.core.pod_deletes == [(NAMESPACE, "app=web")]

    def test_deployment_marked_for_deletion_is_skipped(self) -> None:
        h = Harness()
        h.add_plan(make_plan())
        deployment = make_deployment(annotations=storage_annotations())
        deployment["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
        key = h.add_deployment(deployment)

        h.controller.sync(key)

        assert h.core.claims == {}

    def test_deployment_outside_platform_namespace_is_skipped(self) -> None:
        h = Harness(default_domain="example.org")
        h.add_plan(make_plan())
        key = h.add_deployment(
            make_deployment(namespace="kube-system", annotations=storage_annotations(), labels={"kolihub.io/type": "app"})
        )

        h.controller.sync(key)

        assert h.core.claims == {}
        assert h.core.services == {}

    def test_missing_resource_requirements_are_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        h = Harness()
        key = h.add_deployment(make_deployment(resources={"requests": {"cpu": "100m"}}))

        with caplog.at_level(logging.WARNING):
            h.controller.sync(key)

        assert "empty 'limits' or 'requests'" in caplog.text


# ---------------------------------------------------------------------------
# Default routes
# ---------------------------------------------------------------------------


class TestDefaultRoute:
    def test_app_gets_service_and_ingress(self) -> None:
        h = Harness(default_domain="example.org")
        key = h.add_deployment(make_deployment(labels={"kolihub.io/type": "app"}))

        h.controller.sync(key)

        service = h.core.services[(NAMESPACE, "web")]
        assert service["spec"]["ports"][0]["port"] == 80
        assert service["spec"]["ports"][0]["targetPort"] == 5000
        assert service["spec"]["selector"] == {"kolihub.io/name": "web", "kolihub.io/type": "app"}
        ingress = h.networking.ingresses[(NAMESPACE, "web")]
        assert ingress["spec"]["rules"][0]["host"] == f"web-{NAMESPACE}.example.org"
        assert ingress["metadata"]["annotations"] == {"kolihub.io/parent": "koli-system"}
        assert ingress["metadata"]["ownerReferences"][0]["uid"] == "uid-web"

    def test_existing_route_is_left_alone(self) -> None:
        h = Harness(default_domain="example.org")
        key = h.add_deployment(make_deployment(labels={"kolihub.io/type": "app"}))

        h.controller.sync(key)
        h.controller.sync(key)

        assert len(h.networking.ingresses) == 1

    def test_no_route_without_default_domain(self) -> None:
        h = Harness()
        key = h.add_deployment(make_deployment(labels={"kolihub.io/type": "app"}))

        h.controller.sync(key)

        assert h.core.services == {}
        assert h.networking.ingresses == {}

    def test_no_route_for_non_app_deployments(self) -> None:
        h = Harness(default_domain="example.org")
        key = h.add_deployment(make_deployment(labels={"kolihub.io/type": "addon"}))

        h.controller.sync(key)

        assert h.networking.ingresses == {}

    def test_route_failure_does_not_block_storage(self) -> None:
        h = Harness(default_domain="example.org")
        h.core.service_error = ApiException(status=500, reason="boom")
        h.add_plan(make_plan())
        key = h.add_deployment(
            make_deployment(annotations=storage_annotations(), labels={"kolihub.io/type": "app"})
        )

        h.controller.sync(key)

        assert h.networking.ingresses == {}
        assert (NAMESPACE, "d-web") in h.core.claims


# ---------------------------------------------------------------------------
# Event filtering
# ---------------------------------------------------------------------------


def test_update_without_new_resource_version_is_dropped() -> None:
    h = Harness()
    deployment = make_deployment(rv="5")

    h.controller.handle_deployment_event(ResourceEvent(EventType.UPDATED, deployment, copy.deepcopy(deployment)))

    assert len(h.controller.queue) == 0


def test_update_with_new_resource_version_is_queued() -> None:
    h = Harness()

    h.controller.handle_deployment_event(
        ResourceEvent(EventType.UPDATED, make_deployment(rv="6"), make_deployment(rv="5"))
    )

    assert len(h.controller.queue) == 1


def test_informer_events_are_deduplicated_into_one_key() -> None:
    h = Harness()
    h.deployments.handle_event("ADDED", make_deployment(rv="1"))
    h.deployments.handle_event("MODIFIED", make_deployment(rv="2"))
    h.deployments.handle_event("MODIFIED", make_deployment(rv="3"))

    assert len(h.controller.queue) == 1
