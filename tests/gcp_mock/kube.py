"""In-memory cluster-management API.

FakeStatusWriter stores Infrastructure objects, bumps resourceVersion on
every status patch and answers stale patches with PersistConflict, like the
real API server does for a guarded merge-patch. Conflicts can also be
injected to simulate concurrent writers.
"""

from __future__ import annotations

import copy
from typing import Any

from gcpinfra.status import PersistConflict


def make_infrastructure(
    namespace: str = "shoot--dev--alpha",
    name: str = "alpha",
    *,
    provider_config: dict[str, Any] | None = None,
    state: Any = None,
    annotations: dict[str, str] | None = None,
    resource_version: str = "1",
    generation: int = 1,
    deletion_timestamp: str | None = None,
) -> dict[str, Any]:
    """Build an Infrastructure object as returned by the API."""
    metadata: dict[str, Any] = {
        "namespace": namespace,
        "name": name,
        "resourceVersion": resource_version,
        "generation": generation,
        "annotations": dict(annotations or {}),
    }
    if deletion_timestamp:
        metadata["deletionTimestamp"] = deletion_timestamp
    infrastructure: dict[str, Any] = {
        "apiVersion": "extensions.gardener.cloud/v1alpha1",
        "kind": "Infrastructure",
        "metadata": metadata,
        "spec": {
            "type": "gcp",
            "region": "europe-west1",
            "providerConfig": provider_config
            or {
                "apiVersion": "gcp.provider.extensions.gardener.cloud/v1alpha1",
                "kind": "InfrastructureConfig",
                "networks": {"workers": "10.250.0.0/16"},
            },
        },
        "status": {},
    }
    if state is not None:
        infrastructure["status"]["state"] = state
    return infrastructure


def make_cluster(
    name: str = "shoot--dev--alpha",
    *,
    shoot_annotations: dict[str, str] | None = None,
    seed_labels: dict[str, str] | None = None,
    pods: str | None = "100.96.0.0/11",
) -> dict[str, Any]:
    """Build a Cluster object embedding shoot and seed."""
    networking: dict[str, Any] = {"nodes": "10.250.0.0/16", "services": "100.64.0.0/13"}
    if pods:
        networking["pods"] = pods
    return {
        "apiVersion": "extensions.gardener.cloud/v1alpha1",
        "kind": "Cluster",
        "metadata": {"name": name},
        "spec": {
            "shoot": {
                "apiVersion": "core.gardener.cloud/v1beta1",
                "kind": "Shoot",
                "metadata": {"annotations": dict(shoot_annotations or {})},
                "spec": {"networking": networking},
            },
            "seed": {
                "apiVersion": "core.gardener.cloud/v1beta1",
                "kind": "Seed",
                "metadata": {"labels": dict(seed_labels or {})},
            },
        },
    }


class FakeStatusWriter:
    """StatusWriter storing Infrastructure objects in memory."""

    def __init__(self, *infrastructures: dict[str, Any]) -> None:
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.patches: list[dict[str, Any]] = []
        self.conflicts_served = 0
        self._injected_conflicts = 0
        self._fail_after: int | None = None
        for infra in infrastructures:
            self.add(infra)

    def add(self, infrastructure: dict[str, Any]) -> None:
        metadata = infrastructure["metadata"]
        self.objects[(metadata["namespace"], metadata["name"])] = copy.deepcopy(infrastructure)

    def inject_conflicts(self, count: int) -> None:
        """Answer the next count patches with a conflict after bumping the version."""
        self._injected_conflicts += count

    def fail_after(self, patches: int) -> None:
        """Raise RuntimeError on every patch once `patches` patches succeeded."""
        self._fail_after = patches

    def touch(self, namespace: str, name: str) -> None:
        """Simulate a concurrent writer changing the object."""
        obj = self.objects[(namespace, name)]
        obj["metadata"]["resourceVersion"] = str(int(obj["metadata"]["resourceVersion"]) + 1)

    def get(self, namespace: str, name: str) -> dict[str, Any]:
        return self.objects[(namespace, name)]

    def state(self, namespace: str, name: str) -> Any:
        return self.objects[(namespace, name)].get("status", {}).get("state")

    def get_infrastructure(self, namespace: str, name: str) -> dict[str, Any]:
        return copy.deepcopy(self.objects[(namespace, name)])

    def patch_infrastructure_status(
        self, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        if self._fail_after is not None and len(self.patches) >= self._fail_after:
            raise RuntimeError("status patch failed")

        obj = self.objects[(namespace, name)]
        if self._injected_conflicts > 0:
            self._injected_conflicts -= 1
            self.touch(namespace, name)

        expected = (body.get("metadata") or {}).get("resourceVersion")
        if expected is not None and expected != obj["metadata"]["resourceVersion"]:
            self.conflicts_served += 1
            raise PersistConflict(f"{namespace}/{name}: the object has been modified")

        status = obj.setdefault("status", {})
        for key, value in body.get("status", {}).items():
            if value is None:
                status.pop(key, None)
            else:
                status[key] = copy.deepcopy(value)
        self.touch(namespace, name)
        self.patches.append(copy.deepcopy(body))
        return copy.deepcopy(obj)


class FakeLegacyTool:
    """LegacyTool recording calls, with optional failures."""

    def __init__(
        self,
        cleanup_error: Exception | None = None,
        finalizer_error: Exception | None = None,
    ) -> None:
        self.calls: list[tuple[str, str, str]] = []
        self.cleanup_error = cleanup_error
        self.finalizer_error = finalizer_error

    def cleanup_configuration(self, namespace: str, name: str) -> None:
        self.calls.append(("cleanup_configuration", namespace, name))
        if self.cleanup_error is not None:
            raise self.cleanup_error

    def remove_finalizer(self, namespace: str, name: str) -> None:
        self.calls.append(("remove_finalizer", namespace, name))
        if self.finalizer_error is not None:
            raise self.finalizer_error


class FakeLegacyDelegate:
    """LegacyDelegate recording which objects it was handed."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def reconcile(self, infrastructure: dict[str, Any], cluster: dict[str, Any] | None) -> None:
        self.calls.append(("reconcile", infrastructure["metadata"]["name"]))

    def delete(self, infrastructure: dict[str, Any], cluster: dict[str, Any] | None) -> None:
        self.calls.append(("delete", infrastructure["metadata"]["name"]))


class FakeInfrastructureSource:
    """InfrastructureSource over a FakeStatusWriter and a dict of clusters."""

    def __init__(self, writer: FakeStatusWriter, clusters: dict[str, dict[str, Any]]) -> None:
        self.writer = writer
        self.clusters = clusters

    def list_infrastructures(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(obj) for obj in self.writer.objects.values()]

    def get_cluster(self, name: str) -> dict[str, Any] | None:
        return self.clusters.get(name)
