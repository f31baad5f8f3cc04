"""Outer reconciliation loop over all GCP Infrastructure objects.

Every interval the loop lists the Infrastructure objects of type ``gcp``,
fetches the owning Cluster and hands each object to the actuator (reconcile,
or delete when a deletionTimestamp is set). Clusters are processed
concurrently, bounded by ``max_concurrent_reconciles``.

FAILURE HANDLING (per cluster):
- Retryable failures (transient cloud errors, status conflicts, legacy
  cleanup) back off exponentially with jitter, capped at
  MAX_ERROR_BACKOFF_SECONDS
- Non-retryable failures (unreadable state, invalid providerConfig,
  permanent cloud errors) are parked: the object is skipped until its
  generation or annotations change, or the annotations of its shoot or the
  labels of its seed change, i.e. until someone fixes it
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from .actuator import Actuator, Operation, ReconcileResult, infrastructure_key
from .config import DEFAULT_ERROR_BACKOFF_SECONDS, MAX_ERROR_BACKOFF_SECONDS, OperatorConfig
from .executor import FlowExecutionError
from .gcp_client import CloudAPIError
from .graph import DependencyError
from .models import (
    CLUSTER_PLURAL,
    EXTENSIONS_GROUP,
    EXTENSIONS_VERSION,
    INFRASTRUCTURE_PLURAL,
    cluster_markers,
)
from .spec_loader import SpecLoadError
from .state import StateFormatError

logger = logging.getLogger(__name__)

PROVIDER_TYPE = "gcp"


class InfrastructureSource(Protocol):
    """Read access to Infrastructure and Cluster objects."""

    def list_infrastructures(self) -> list[dict[str, Any]]: ...

    def get_cluster(self, name: str) -> dict[str, Any] | None: ...


class KubernetesInfrastructureSource:
    """InfrastructureSource backed by the kubernetes CustomObjectsApi."""

    def __init__(self, namespace: str = "", api: Any | None = None) -> None:
        if api is None:
            from kubernetes import client

            api = client.CustomObjectsApi()
        self._api = api
        self._namespace = namespace

    def list_infrastructures(self) -> list[dict[str, Any]]:
        if self._namespace:
            response = self._api.list_namespaced_custom_object(
                EXTENSIONS_GROUP, EXTENSIONS_VERSION, self._namespace, INFRASTRUCTURE_PLURAL
            )
        else:
            response = self._api.list_cluster_custom_object(
                EXTENSIONS_GROUP, EXTENSIONS_VERSION, INFRASTRUCTURE_PLURAL
            )
        return list(response.get("items", []))

    def get_cluster(self, name: str) -> dict[str, Any] | None:
        from kubernetes.client.rest import ApiException

        try:
            return self._api.get_cluster_custom_object(
                EXTENSIONS_GROUP, EXTENSIONS_VERSION, CLUSTER_PLURAL, name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise


def is_retryable(err: BaseException) -> bool:
    """Whether another attempt without a spec change can succeed."""
    if isinstance(err, (StateFormatError, SpecLoadError, DependencyError)):
        return False
    if isinstance(err, FlowExecutionError):
        return err.retryable
    if isinstance(err, CloudAPIError):
        return err.transient
    return True


def change_marker(
    infrastructure: dict[str, Any], cluster: dict[str, Any] | None = None
) -> str:
    """Fingerprint of what an operator changes to fix a parked object.

    Generation and annotations of the Infrastructure plus the shoot
    annotations and seed labels of its Cluster, since backend markers may
    be set on either. Status patches written by the flow itself must not
    unpark the object.
    """
    metadata = infrastructure.get("metadata") or {}
    shoot_annotations, seed_labels = cluster_markers(cluster)
    return json.dumps(
        {
            "generation": metadata.get("generation"),
            "annotations": metadata.get("annotations") or {},
            "shootAnnotations": shoot_annotations,
            "seedLabels": seed_labels,
        },
        sort_keys=True,
    )


@dataclass
class ClusterBackoff:
    """Failure bookkeeping for one Infrastructure object."""

    failures: int = 0
    retry_at: float = 0.0
    parked_marker: str | None = None


class Reconciler:
    """Runs the actuator for every GCP Infrastructure object on an interval."""

    def __init__(
        self,
        config: OperatorConfig,
        actuator: Actuator,
        source: InfrastructureSource,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._actuator = actuator
        self._source = source
        self._clock = clock
        self._semaphore = asyncio.Semaphore(config.max_concurrent_reconciles)
        self._backoff: dict[str, ClusterBackoff] = {}
        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> OperatorConfig:
        return self._config

    def backoff_for(self, key: str) -> ClusterBackoff | None:
        return self._backoff.get(key)

    async def run(self) -> None:
        """Run reconciliation passes until shutdown."""
        logger.info(
            "Starting reconciler",
            extra={
                "project_id": self._config.project_id,
                "region": self._config.region,
                "namespace": self._config.namespace or "*",
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            try:
                await self.reconcile_all()
            except Exception as e:
                # Listing failed; the next pass tries again
                logger.exception("Reconciliation pass failed", extra={"error": str(e)})

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                pass

        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def reconcile_all(self) -> list[ReconcileResult]:
        """Run one pass over every eligible Infrastructure object."""
        loop = asyncio.get_running_loop()
        infrastructures = await loop.run_in_executor(None, self._source.list_infrastructures)
        eligible = [
            infra
            for infra in infrastructures
            if (infra.get("spec") or {}).get("type") == PROVIDER_TYPE and self._due(infra)
        ]
        results = await asyncio.gather(*(self._reconcile_one(infra) for infra in eligible))

        live = {infrastructure_key(infra) for infra in infrastructures}
        for key in list(self._backoff):
            if key not in live:
                del self._backoff[key]
        return [result for result in results if result is not None]

    def _due(self, infrastructure: dict[str, Any]) -> bool:
        backoff = self._backoff.get(infrastructure_key(infrastructure))
        if backoff is None:
            return True
        if backoff.parked_marker is not None:
            # Decided once the Cluster is fetched, see _still_parked
            return True
        return self._clock() >= backoff.retry_at

    def _still_parked(
        self, infrastructure: dict[str, Any], cluster: dict[str, Any] | None
    ) -> bool:
        key = infrastructure_key(infrastructure)
        backoff = self._backoff.get(key)
        if backoff is None or backoff.parked_marker is None:
            return False

        if change_marker(infrastructure, cluster) == backoff.parked_marker:
            logger.debug("Skipping parked infrastructure", extra={"infrastructure": key})
            return True
        logger.info("Parked infrastructure changed, retrying", extra={"infrastructure": key})
        del self._backoff[key]
        return False

    async def _reconcile_one(self, infrastructure: dict[str, Any]) -> ReconcileResult | None:
        key = infrastructure_key(infrastructure)
        deleting = bool((infrastructure.get("metadata") or {}).get("deletionTimestamp"))

        async with self._semaphore:
            cluster: dict[str, Any] | None = None
            try:
                cluster = await asyncio.get_running_loop().run_in_executor(
                    None, self._source.get_cluster, key.partition("/")[0]
                )
                if self._still_parked(infrastructure, cluster):
                    return None
                if deleting:
                    result = await self._actuator.delete(infrastructure, cluster)
                else:
                    result = await self._actuator.reconcile(infrastructure, cluster)
            except Exception as e:
                result = ReconcileResult(
                    infrastructure=key,
                    operation=Operation.DELETE if deleting else Operation.RECONCILE,
                    error=e,
                )
                self._record_failure(infrastructure, cluster, e)
            else:
                self._backoff.pop(key, None)

        self._log_result(result)
        return result

    def _record_failure(
        self, infrastructure: dict[str, Any], cluster: dict[str, Any] | None, err: Exception
    ) -> None:
        key = infrastructure_key(infrastructure)
        backoff = self._backoff.setdefault(key, ClusterBackoff())
        backoff.failures += 1

        if not is_retryable(err):
            backoff.parked_marker = change_marker(infrastructure, cluster)
            logger.error(
                "Infrastructure parked until it changes",
                extra={
                    "infrastructure": key,
                    "error": str(err),
                    "error_type": type(err).__name__,
                },
            )
            return

        backoff.parked_marker = None

        # Exponential backoff with jitter
        delay = min(
            DEFAULT_ERROR_BACKOFF_SECONDS * (2 ** (backoff.failures - 1)),
            MAX_ERROR_BACKOFF_SECONDS,
        )
        delay += random.uniform(0, delay * 0.2)
        backoff.retry_at = self._clock() + delay
        logger.warning(
            "Infrastructure will be retried",
            extra={
                "infrastructure": key,
                "failures": backoff.failures,
                "retry_in_seconds": delay,
                "error": str(err),
                "error_type": type(err).__name__,
            },
        )

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "infrastructure": result.infrastructure,
            "operation": result.operation.value,
            "duration_seconds": result.duration_seconds,
        }
        if result.decision is not None:
            extra["backend"] = result.decision.backend.value
            extra["rule"] = result.decision.rule.value
        if result.execution is not None:
            extra["steps_done"] = len(result.execution.done)
            extra["steps_skipped"] = len(result.execution.skipped)
        if result.migrated:
            extra["migrated"] = True
        if result.skipped_reason is not None:
            extra["skipped_reason"] = result.skipped_reason

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif result.skipped_reason is not None:
            logger.warning("Reconciliation skipped", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
