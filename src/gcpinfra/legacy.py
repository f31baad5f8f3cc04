"""Release of resources left behind by the legacy Terraformer backend.

Once the flow reconciler owns a cluster, the Terraformer configuration
(ConfigMaps and Secret in the cluster namespace) is no longer needed. The
bridge deletes it and removes the Terraformer finalizer so that the objects
can actually go away. Both steps are idempotent and are run after every
successful flow pass.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

TERRAFORMER_FINALIZER = "gardener.cloud/terraformer"
TERRAFORMER_PURPOSE = "infra"

HTTP_NOT_FOUND = 404


class LegacyBridgeError(Exception):
    """Releasing the legacy backend's resources failed. Retryable."""

    pass


class LegacyTool(Protocol):
    """The two operations of the legacy backend the flow depends on."""

    def cleanup_configuration(self, namespace: str, name: str) -> None: ...

    def remove_finalizer(self, namespace: str, name: str) -> None: ...


def terraformer_object_names(name: str) -> dict[str, str]:
    """Names of the Terraformer objects for the Infrastructure called name."""
    prefix = f"{name}.{TERRAFORMER_PURPOSE}"
    return {
        "config": f"{prefix}.tf-config",
        "state": f"{prefix}.tf-state",
        "variables": f"{prefix}.tf-vars",
    }


class TerraformerResources:
    """LegacyTool acting on the Terraformer objects via the Kubernetes API."""

    def __init__(self, api: Any | None = None) -> None:
        if api is None:
            from kubernetes import client

            api = client.CoreV1Api()
        self._api = api

    def cleanup_configuration(self, namespace: str, name: str) -> None:
        names = terraformer_object_names(name)
        # The finalizer keeps the objects around until it is removed as well
        self._tolerate_missing(
            self._api.delete_namespaced_config_map, names["config"], namespace
        )
        self._tolerate_missing(
            self._api.delete_namespaced_config_map, names["state"], namespace
        )
        self._tolerate_missing(self._api.delete_namespaced_secret, names["variables"], namespace)

    def remove_finalizer(self, namespace: str, name: str) -> None:
        names = terraformer_object_names(name)
        for read, patch, obj_name in (
            (
                self._api.read_namespaced_config_map,
                self._api.patch_namespaced_config_map,
                names["config"],
            ),
            (
                self._api.read_namespaced_config_map,
                self._api.patch_namespaced_config_map,
                names["state"],
            ),
            (
                self._api.read_namespaced_secret,
                self._api.patch_namespaced_secret,
                names["variables"],
            ),
        ):
            obj = self._tolerate_missing(read, obj_name, namespace)
            if obj is None:
                continue
            finalizers = list(obj.metadata.finalizers or [])
            if TERRAFORMER_FINALIZER not in finalizers:
                continue
            remaining = [f for f in finalizers if f != TERRAFORMER_FINALIZER]
            self._tolerate_missing(
                patch, obj_name, namespace, {"metadata": {"finalizers": remaining}}
            )

    @staticmethod
    def _tolerate_missing(call: Any, *args: Any) -> Any | None:
        from kubernetes.client.rest import ApiException

        try:
            return call(*args)
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return None
            raise


class LegacyBridge:
    """Runs the legacy cleanup for one Infrastructure object."""

    def __init__(self, tool: LegacyTool) -> None:
        self._tool = tool

    def release(self, namespace: str, name: str) -> None:
        """Delete the legacy configuration, then drop its finalizer.

        Raises:
            LegacyBridgeError: If either step fails. A finalizer failure after
                a successful cleanup is reported as well.
        """
        infrastructure = f"{namespace}/{name}"
        try:
            self._tool.cleanup_configuration(namespace, name)
        except Exception as e:
            raise LegacyBridgeError(
                f"{infrastructure}: cleaning up legacy configuration failed: {e}"
            ) from e

        try:
            self._tool.remove_finalizer(namespace, name)
        except Exception as e:
            raise LegacyBridgeError(
                f"{infrastructure}: removing legacy finalizer failed: {e}"
            ) from e

        logger.info("Released legacy resources", extra={"infrastructure": infrastructure})
