"""Tests for status persistence."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from gcp_mock import FakeStatusWriter, make_infrastructure
from kubernetes.client.rest import ApiException

from gcpinfra.state import FlowState, ResourceStatus
from gcpinfra.status import (
    KubernetesStatusWriter,
    PersistConflict,
    StatePersister,
    resource_version,
)

NAMESPACE = "shoot--dev--alpha"
NAME = "alpha"


def _state() -> FlowState:
    state = FlowState()
    state.ensure_records([("network/vpc", ())])
    state.record("network/vpc").transition(ResourceStatus.CREATING)
    return state


@pytest.fixture
def writer() -> FakeStatusWriter:
    return FakeStatusWriter(make_infrastructure(NAMESPACE, NAME))


class TestStatePersister:
    """Tests for StatePersister."""

    @pytest.mark.asyncio
    async def test_persist_writes_state_and_status(self, writer: FakeStatusWriter) -> None:
        """Test that one patch carries state, provider status and the guard."""
        persister = StatePersister(
            writer,
            writer.get_infrastructure(NAMESPACE, NAME),
            status_builder=lambda state: {"kind": "InfrastructureStatus"},
        )

        await persister.persist(_state())

        body = writer.patches[0]
        assert body["metadata"] == {"resourceVersion": "1"}
        assert body["status"]["state"]["resources"]["network/vpc"]["status"] == "Creating"
        assert body["status"]["providerStatus"] == {"kind": "InfrastructureStatus"}
        assert persister.resource_version == "2"
        assert persister.persist_count == 1

    @pytest.mark.asyncio
    async def test_sequential_persists_track_version(self, writer: FakeStatusWriter) -> None:
        """Test that each patch uses the version returned by the previous one."""
        persister = StatePersister(writer, writer.get_infrastructure(NAMESPACE, NAME))
        state = _state()

        await persister.persist(state)
        state.record("network/vpc").transition(ResourceStatus.CREATED)
        await persister.persist(state)

        assert writer.conflicts_served == 0
        assert writer.state(NAMESPACE, NAME)["resources"]["network/vpc"]["status"] == "Created"

    @pytest.mark.asyncio
    async def test_conflict_refetches_and_retries(self, writer: FakeStatusWriter) -> None:
        """Test that a stale version is refreshed and the same transition re-sent."""
        persister = StatePersister(writer, writer.get_infrastructure(NAMESPACE, NAME))
        writer.touch(NAMESPACE, NAME)

        await persister.persist(_state())

        assert writer.conflicts_served == 1
        assert len(writer.patches) == 1
        assert writer.state(NAMESPACE, NAME)["resources"]["network/vpc"]["status"] == "Creating"

    @pytest.mark.asyncio
    async def test_conflict_budget_exhausted(self, writer: FakeStatusWriter) -> None:
        """Test that endless conflicts surface as PersistConflict."""
        persister = StatePersister(
            writer, writer.get_infrastructure(NAMESPACE, NAME), max_retries=3
        )
        writer.inject_conflicts(10)

        with pytest.raises(PersistConflict, match="conflicted 3 times"):
            await persister.persist(_state())

        assert writer.conflicts_served == 3
        assert writer.patches == []

    @pytest.mark.asyncio
    async def test_clear(self, writer: FakeStatusWriter) -> None:
        """Test that clear removes state and provider status."""
        persister = StatePersister(
            writer,
            writer.get_infrastructure(NAMESPACE, NAME),
            status_builder=lambda state: {"networks": {}},
        )
        await persister.persist(_state())

        await persister.clear()

        status = writer.get(NAMESPACE, NAME)["status"]
        assert "state" not in status
        assert "providerStatus" not in status


class TestKubernetesStatusWriter:
    """Tests for the CustomObjectsApi adapter."""

    def test_get(self) -> None:
        """Test the custom object coordinates."""
        api = MagicMock()
        api.get_namespaced_custom_object.return_value = {"metadata": {"resourceVersion": "7"}}

        obj = KubernetesStatusWriter(api).get_infrastructure(NAMESPACE, NAME)

        assert resource_version(obj) == "7"
        api.get_namespaced_custom_object.assert_called_once_with(
            "extensions.gardener.cloud", "v1alpha1", NAMESPACE, "infrastructures", NAME
        )

    def test_patch(self) -> None:
        """Test that the status subresource is patched."""
        api = MagicMock()
        api.patch_namespaced_custom_object_status.return_value = {"metadata": {}}
        body = {"status": {"state": None}}

        KubernetesStatusWriter(api).patch_infrastructure_status(NAMESPACE, NAME, body)

        api.patch_namespaced_custom_object_status.assert_called_once_with(
            "extensions.gardener.cloud", "v1alpha1", NAMESPACE, "infrastructures", NAME, body
        )

    def test_patch_conflict(self) -> None:
        """Test that HTTP 409 becomes PersistConflict."""
        api = MagicMock()
        api.patch_namespaced_custom_object_status.side_effect = ApiException(
            status=409, reason="Conflict"
        )

        with pytest.raises(PersistConflict):
            KubernetesStatusWriter(api).patch_infrastructure_status(NAMESPACE, NAME, {})

    def test_patch_other_error(self) -> None:
        """Test that other API errors propagate unchanged."""
        api = MagicMock()
        api.patch_namespaced_custom_object_status.side_effect = ApiException(
            status=403, reason="Forbidden"
        )

        with pytest.raises(ApiException):
            KubernetesStatusWriter(api).patch_infrastructure_status(NAMESPACE, NAME, {})

    def test_resource_version_missing(self) -> None:
        """Test objects without metadata."""
        assert resource_version({}) is None
