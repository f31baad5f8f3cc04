"""Persistence of FlowState and providerStatus on the Infrastructure object.

Every record transition ends with one merge-patch of the status subresource
carrying both the provider status and the persisted state. The patch is
guarded by ``metadata.resourceVersion`` (optimistic concurrency). When the
object changed concurrently the API answers 409; that conflict is retried
locally: re-fetch the object, take its new resourceVersion, re-send the
patch built from the in-memory FlowState (which already holds the
transition).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol

from .models import EXTENSIONS_GROUP, EXTENSIONS_VERSION, INFRASTRUCTURE_PLURAL
from .state import FlowState, state_to_dict

logger = logging.getLogger(__name__)

HTTP_CONFLICT = 409


class PersistConflict(Exception):
    """Optimistic-lock failure while patching the status."""

    pass


class StatusWriter(Protocol):
    """Access to Infrastructure objects on the cluster-management API."""

    def get_infrastructure(self, namespace: str, name: str) -> dict[str, Any]: ...

    def patch_infrastructure_status(
        self, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]: ...


class KubernetesStatusWriter:
    """StatusWriter backed by the kubernetes CustomObjectsApi."""

    def __init__(self, api: Any | None = None) -> None:
        if api is None:
            from kubernetes import client

            api = client.CustomObjectsApi()
        self._api = api

    def get_infrastructure(self, namespace: str, name: str) -> dict[str, Any]:
        return self._api.get_namespaced_custom_object(
            EXTENSIONS_GROUP, EXTENSIONS_VERSION, namespace, INFRASTRUCTURE_PLURAL, name
        )

    def patch_infrastructure_status(
        self, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        from kubernetes.client.rest import ApiException

        try:
            return self._api.patch_namespaced_custom_object_status(
                EXTENSIONS_GROUP, EXTENSIONS_VERSION, namespace, INFRASTRUCTURE_PLURAL, name, body
            )
        except ApiException as e:
            if e.status == HTTP_CONFLICT:
                raise PersistConflict(f"{namespace}/{name}: {e.reason}") from e
            raise


def resource_version(obj: dict[str, Any]) -> str | None:
    return (obj.get("metadata") or {}).get("resourceVersion")


class StatePersister:
    """Writes FlowState transitions of one Infrastructure object.

    Persists are serialized by an asyncio.Lock so that concurrently running
    steps can never interleave their patches and lose a transition.
    """

    def __init__(
        self,
        writer: StatusWriter,
        infrastructure: dict[str, Any],
        *,
        max_retries: int = 5,
        status_builder: Callable[[FlowState], dict[str, Any]] | None = None,
    ) -> None:
        metadata = infrastructure.get("metadata") or {}
        self._writer = writer
        self._namespace = metadata.get("namespace", "")
        self._name = metadata.get("name", "")
        self._resource_version = resource_version(infrastructure)
        self._max_retries = max_retries
        self._status_builder = status_builder
        self._lock = asyncio.Lock()
        self.persist_count = 0

    @property
    def resource_version(self) -> str | None:
        return self._resource_version

    async def persist(self, state: FlowState) -> None:
        """Persist state (and the provider status derived from it)."""
        status: dict[str, Any] = {"state": state_to_dict(state)}
        if self._status_builder is not None:
            status["providerStatus"] = self._status_builder(state)
        await self._patch(status)

    async def clear(self) -> None:
        """Remove persisted state and provider status after a full teardown."""
        await self._patch({"state": None, "providerStatus": None})

    async def _patch(self, status: dict[str, Any]) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            for attempt in range(1, self._max_retries + 1):
                body: dict[str, Any] = {"status": status}
                if self._resource_version:
                    body["metadata"] = {"resourceVersion": self._resource_version}
                try:
                    updated = await loop.run_in_executor(
                        None,
                        self._writer.patch_infrastructure_status,
                        self._namespace,
                        self._name,
                        body,
                    )
                except PersistConflict:
                    logger.warning(
                        "Status patch conflicted, re-fetching",
                        extra={
                            "infrastructure": f"{self._namespace}/{self._name}",
                            "attempt": attempt,
                            "max_attempts": self._max_retries,
                        },
                    )
                    latest = await loop.run_in_executor(
                        None, self._writer.get_infrastructure, self._namespace, self._name
                    )
                    self._resource_version = resource_version(latest)
                    continue

                self._resource_version = resource_version(updated) or self._resource_version
                self.persist_count += 1
                return

            raise PersistConflict(
                f"{self._namespace}/{self._name}: status patch conflicted "
                f"{self._max_retries} times"
            )
