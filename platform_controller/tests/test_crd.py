from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException

from platform_controller.src.crd import (
    PLATFORM_RESOURCE_TYPES,
    CRDNameConflictError,
    CRDNotReadyError,
    CustomResourceType,
    provision_crds,
    wait_crd_ready,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def crd_status(*conditions: tuple[str, str, str]) -> dict[str, Any]:
    return {
        "status": {
            "conditions": [
                {"type": cond_type, "status": status, "reason": reason}
                for cond_type, status, reason in conditions
            ]
        }
    }


class FakeApiextensionsApi:
    """Serves a scripted sequence of definition states for every read."""

    def __init__(self, states: list[Any] | None = None, existing: set[str] | None = None) -> None:
        self.states = list(states or [crd_status(("Established", "True", ""))])
        self.existing = set(existing or ())
        self.created: list[dict[str, Any]] = []
        self.reads: list[str] = []
        self.create_error: ApiException | None = None

    def create_custom_resource_definition(self, body: dict[str, Any]) -> dict[str, Any]:
        if self.create_error is not None:
            raise self.create_error
        name = body["metadata"]["name"]
        if name in self.existing:
            raise ApiException(status=409, reason="AlreadyExists")
        self.existing.add(name)
        self.created.append(body)
        return body

    def read_custom_resource_definition(self, name: str) -> Any:
        self.reads.append(name)
        if len(self.states) > 1:
            return self.states.pop(0)
        return self.states[0]


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


def test_platform_resource_types_cover_plans_and_releases() -> None:
    names = [resource_type.name for resource_type in PLATFORM_RESOURCE_TYPES]
    assert names == ["plans.platform.kolihub.io", "releases.platform.kolihub.io"]


def test_definition_is_namespaced_and_served() -> None:
    definition = CustomResourceType(kind="Release", plural="releases").definition()

    assert definition["metadata"]["name"] == "releases.platform.kolihub.io"
    spec = definition["spec"]
    assert spec["scope"] == "Namespaced"
    assert spec["names"] == {"plural": "releases", "kind": "Release"}
    version = spec["versions"][0]
    assert version["name"] == "v1alpha1"
    assert version["served"] is True
    assert version["storage"] is True


# ---------------------------------------------------------------------------
# Readiness poll
# ---------------------------------------------------------------------------


def test_wait_returns_once_established() -> None:
    clock = FakeClock()
    api = FakeApiextensionsApi(
        [
            crd_status(),
            crd_status(("NamesAccepted", "True", "")),
            crd_status(("NamesAccepted", "True", ""), ("Established", "True", "")),
        ]
    )

    wait_crd_ready(api, "plans.platform.kolihub.io", interval=1.0, timeout=30.0, sleep=clock.sleep, clock=clock)

    assert len(api.reads) == 3
    assert clock.sleeps == [1.0, 1.0]


def test_wait_fails_fast_on_name_conflict() -> None:
    clock = FakeClock()
    api = FakeApiextensionsApi(
        [crd_status(("NamesAccepted", "False", "PluralConflict"), ("Established", "False", ""))]
    )

    with pytest.raises(CRDNameConflictError, match="Name conflict on plans.platform.kolihub.io: PluralConflict"):
        wait_crd_ready(api, "plans.platform.kolihub.io", interval=1.0, timeout=30.0, sleep=clock.sleep, clock=clock)

    assert clock.sleeps == []
    assert clock.now == 0.0


def test_wait_times_out_when_never_established() -> None:
    clock = FakeClock()
    api = FakeApiextensionsApi([crd_status(("Established", "False", "Installing"))])

    with pytest.raises(CRDNotReadyError):
        wait_crd_ready(api, "plans.platform.kolihub.io", interval=1.0, timeout=2.5, sleep=clock.sleep, clock=clock)

    assert clock.sleeps == [1.0, 1.0, 0.5]
    assert len(api.reads) == 4


def test_wait_accepts_typed_definitions() -> None:
    clock = FakeClock()
    typed = SimpleNamespace(
        status=SimpleNamespace(
            conditions=[SimpleNamespace(type="Established", status="True", reason=None)]
        )
    )
    api = FakeApiextensionsApi([typed])

    wait_crd_ready(api, "plans.platform.kolihub.io", sleep=clock.sleep, clock=clock)

    assert clock.sleeps == []


def test_wait_propagates_read_errors() -> None:
    clock = FakeClock()

    class BrokenApi(FakeApiextensionsApi):
        def read_custom_resource_definition(self, name: str) -> Any:
            raise ApiException(status=500, reason="boom")

    with pytest.raises(ApiException):
        wait_crd_ready(BrokenApi(), "plans.platform.kolihub.io", sleep=clock.sleep, clock=clock)


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


def test_provision_creates_every_definition() -> None:
    clock = FakeClock()
    api = FakeApiextensionsApi()

    provision_crds(api, sleep=clock.sleep, clock=clock)

    assert [body["metadata"]["name"] for body in api.created] == [
        "plans.platform.kolihub.io",
        "releases.platform.kolihub.io",
    ]
    assert api.reads == ["plans.platform.kolihub.io", "releases.platform.kolihub.io"]


def test_provision_waits_on_existing_definitions() -> None:
    clock = FakeClock()
    api = FakeApiextensionsApi(existing={"plans.platform.kolihub.io", "releases.platform.kolihub.io"})

    provision_crds(api, sleep=clock.sleep, clock=clock)

    assert api.created == []
    assert len(api.reads) == 2


def test_provision_aborts_on_create_error() -> None:
    clock = FakeClock()
    api = FakeApiextensionsApi()
    api.create_error = ApiException(status=403, reason="Forbidden")

    with pytest.raises(ApiException):
        provision_crds(api, sleep=clock.sleep, clock=clock)

    assert api.reads == []


def test_provision_stops_at_first_name_conflict() -> None:
    clock = FakeClock()
    api = FakeApiextensionsApi([crd_status(("NamesAccepted", "False", "KindConflict"))])

    with pytest.raises(CRDNameConflictError):
        provision_crds(api, sleep=clock.sleep, clock=clock)

    assert [body["metadata"]["name"] for body in api.created] == ["plans.platform.kolihub.io"]
