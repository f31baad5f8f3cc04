"""Tests for releasing the legacy backend's resources."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from gcp_mock import FakeLegacyTool
from kubernetes.client.rest import ApiException

from gcpinfra.legacy import (
    TERRAFORMER_FINALIZER,
    LegacyBridge,
    LegacyBridgeError,
    TerraformerResources,
    terraformer_object_names,
)

NAMESPACE = "shoot--dev--alpha"
NAME = "alpha"


def _object(*finalizers: str) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(finalizers=list(finalizers)))


class TestObjectNames:
    """Tests for terraformer_object_names."""

    def test_names(self) -> None:
        """Test the naming convention of the Terraformer objects."""
        assert terraformer_object_names(NAME) == {
            "config": "alpha.infra.tf-config",
            "state": "alpha.infra.tf-state",
            "variables": "alpha.infra.tf-vars",
        }


class TestTerraformerResources:
    """Tests for the CoreV1Api-backed legacy tool."""

    def test_cleanup_deletes_objects(self) -> None:
        """Test that both ConfigMaps and the Secret are deleted."""
        api = MagicMock()

        TerraformerResources(api).cleanup_configuration(NAMESPACE, NAME)

        deleted = [c.args for c in api.delete_namespaced_config_map.call_args_list]
        assert deleted == [
            ("alpha.infra.tf-config", NAMESPACE),
            ("alpha.infra.tf-state", NAMESPACE),
        ]
        api.delete_namespaced_secret.assert_called_once_with("alpha.infra.tf-vars", NAMESPACE)

    def test_cleanup_tolerates_missing(self) -> None:
        """Test that already deleted objects are not an error."""
        api = MagicMock()
        api.delete_namespaced_config_map.side_effect = ApiException(status=404)
        api.delete_namespaced_secret.side_effect = ApiException(status=404)

        TerraformerResources(api).cleanup_configuration(NAMESPACE, NAME)

    def test_cleanup_propagates_other_errors(self) -> None:
        """Test that a forbidden delete is reported."""
        api = MagicMock()
        api.delete_namespaced_config_map.side_effect = ApiException(status=403)

        with pytest.raises(ApiException):
            TerraformerResources(api).cleanup_configuration(NAMESPACE, NAME)

    def test_remove_finalizer(self) -> None:
        """Test that only the Terraformer finalizer is removed."""
        api = MagicMock()
        api.read_namespaced_config_map.return_value = _object(TERRAFORMER_FINALIZER, "other")
        api.read_namespaced_secret.return_value = _object(TERRAFORMER_FINALIZER)

        TerraformerResources(api).remove_finalizer(NAMESPACE, NAME)

        assert api.patch_namespaced_config_map.call_count == 2
        api.patch_namespaced_config_map.assert_any_call(
            "alpha.infra.tf-config", NAMESPACE, {"metadata": {"finalizers": ["other"]}}
        )
        api.patch_namespaced_secret.assert_called_once_with(
            "alpha.infra.tf-vars", NAMESPACE, {"metadata": {"finalizers": []}}
        )

    def test_remove_finalizer_skips_clean_and_missing(self) -> None:
        """Test that objects without the finalizer or already gone are not patched."""
        api = MagicMock()
        api.read_namespaced_config_map.return_value = _object("other")
        api.read_namespaced_secret.side_effect = ApiException(status=404)

        TerraformerResources(api).remove_finalizer(NAMESPACE, NAME)

        api.patch_namespaced_config_map.assert_not_called()
        api.patch_namespaced_secret.assert_not_called()


class TestLegacyBridge:
    """Tests for LegacyBridge.release."""

    def test_release_order(self) -> None:
        """Test cleanup before finalizer removal."""
        tool = FakeLegacyTool()

        LegacyBridge(tool).release(NAMESPACE, NAME)

        assert tool.calls == [
            ("cleanup_configuration", NAMESPACE, NAME),
            ("remove_finalizer", NAMESPACE, NAME),
        ]

    def test_release_is_idempotent(self) -> None:
        """Test that releasing twice succeeds both times."""
        tool = FakeLegacyTool()
        bridge = LegacyBridge(tool)

        bridge.release(NAMESPACE, NAME)
        bridge.release(NAMESPACE, NAME)

        assert len(tool.calls) == 4

    def test_cleanup_failure(self) -> None:
        """Test that a cleanup failure stops before the finalizer step."""
        tool = FakeLegacyTool(cleanup_error=RuntimeError("api down"))

        with pytest.raises(LegacyBridgeError, match="cleaning up legacy configuration failed"):
            LegacyBridge(tool).release(NAMESPACE, NAME)

        assert [call[0] for call in tool.calls] == ["cleanup_configuration"]

    def test_finalizer_failure(self) -> None:
        """Test that a finalizer failure after cleanup is still reported."""
        tool = FakeLegacyTool(finalizer_error=RuntimeError("forbidden"))

        with pytest.raises(LegacyBridgeError, match="removing legacy finalizer failed"):
            LegacyBridge(tool).release(NAMESPACE, NAME)
