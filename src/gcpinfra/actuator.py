"""Entry point of one reconciliation pass for one Infrastructure object.

The actuator decodes the persisted state once, lets the backend selector
decide and then either runs the flow (executor, then legacy cleanup) or hands
the object to the legacy backend.

Flow reconcile:
1. Parse providerConfig into InfrastructureConfig
2. Load the FlowState (or seed one from a legacy state when migrating)
3. Apply every task in dependency order, persisting each transition
4. Release the legacy Terraformer resources (idempotent)

Flow delete runs the same tasks in reverse, releases the legacy resources
and finally clears the persisted state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from .config import OperatorConfig
from .executor import ExecutionResult, FlowExecutor, TaskKind
from .gcp_client import CloudClient
from .infraflow import InfraFlow
from .legacy import LegacyBridge, LegacyTool
from .models import ClusterIdentity
from .selector import ReconcilerDecision, select_backend
from .spec_loader import parse_provider_config
from .state import (
    FlowState,
    FlowStateDocument,
    LegacyStateDocument,
    PersistedState,
    StateFormatError,
    UnrecognizedState,
    decode_state,
)
from .status import StatePersister, StatusWriter

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    RECONCILE = "reconcile"
    DELETE = "delete"


class LegacyDelegate(Protocol):
    """The legacy backend, reconciling or deleting with Terraformer."""

    def reconcile(self, infrastructure: dict[str, Any], cluster: dict[str, Any] | None) -> None: ...

    def delete(self, infrastructure: dict[str, Any], cluster: dict[str, Any] | None) -> None: ...


@dataclass
class ReconcileResult:
    """Result of a single pass over one Infrastructure object."""

    infrastructure: str
    operation: Operation
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    decision: ReconcilerDecision | None = None
    execution: ExecutionResult | None = None
    migrated: bool = False
    skipped_reason: str | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None


def infrastructure_key(infrastructure: dict[str, Any]) -> str:
    metadata = infrastructure.get("metadata") or {}
    return f"{metadata.get('namespace', '')}/{metadata.get('name', '')}"


def read_persisted_state(infrastructure: dict[str, Any]) -> PersistedState:
    """Decode status.state, turning an invalid flow document into UnrecognizedState.

    The selector still has to see the document so that forcing the legacy
    backend wins over a state that cannot be read.
    """
    raw = (infrastructure.get("status") or {}).get("state")
    try:
        return decode_state(raw)
    except StateFormatError as e:
        return UnrecognizedState(reason=str(e))


class Actuator:
    """Reconciles and deletes the infrastructure of one cluster per call."""

    def __init__(
        self,
        config: OperatorConfig,
        cloud: CloudClient,
        status_writer: StatusWriter,
        legacy_tool: LegacyTool,
        legacy_delegate: LegacyDelegate | None = None,
    ) -> None:
        self._config = config
        self._cloud = cloud
        self._status_writer = status_writer
        self._bridge = LegacyBridge(legacy_tool)
        self._legacy_delegate = legacy_delegate

    def decide(
        self, infrastructure: dict[str, Any], cluster: dict[str, Any] | None
    ) -> tuple[ClusterIdentity, PersistedState, ReconcilerDecision]:
        """Build the identity, decode the state and select the backend.

        Raises:
            StateFormatError: If the state is unrecognized and legacy is not forced.
        """
        identity = ClusterIdentity.from_objects(
            infrastructure, cluster, self._config.project_id, self._config.region
        )
        persisted = read_persisted_state(infrastructure)
        return identity, persisted, select_backend(identity, persisted)

    async def reconcile(
        self, infrastructure: dict[str, Any], cluster: dict[str, Any] | None
    ) -> ReconcileResult:
        """Bring the cloud infrastructure in line with the Infrastructure spec."""
        return await self._run(Operation.RECONCILE, infrastructure, cluster)

    async def delete(
        self, infrastructure: dict[str, Any], cluster: dict[str, Any] | None
    ) -> ReconcileResult:
        """Tear down everything the cluster owns."""
        return await self._run(Operation.DELETE, infrastructure, cluster)

    async def _run(
        self, operation: Operation, infrastructure: dict[str, Any], cluster: dict[str, Any] | None
    ) -> ReconcileResult:
        result = ReconcileResult(
            infrastructure=infrastructure_key(infrastructure), operation=operation
        )
        try:
            identity, persisted, decision = self.decide(infrastructure, cluster)
            result.decision = decision
            logger.info(
                "Backend selected",
                extra={
                    "infrastructure": result.infrastructure,
                    "operation": operation.value,
                    "backend": decision.backend.value,
                    "rule": decision.rule.value,
                },
            )

            if self._config.dry_run:
                result.skipped_reason = "dry-run"
            elif not decision.use_flow:
                await self._delegate(operation, infrastructure, cluster, result)
            else:
                await self._run_flow(operation, infrastructure, identity, persisted, result)
        finally:
            result.end_time = datetime.now(UTC)
        return result

    async def _delegate(
        self,
        operation: Operation,
        infrastructure: dict[str, Any],
        cluster: dict[str, Any] | None,
        result: ReconcileResult,
    ) -> None:
        if self._legacy_delegate is None:
            logger.warning(
                "Legacy backend selected but not available",
                extra={"infrastructure": result.infrastructure, "operation": operation.value},
            )
            result.skipped_reason = "legacy backend not available"
            return
        call = (
            self._legacy_delegate.reconcile
            if operation == Operation.RECONCILE
            else self._legacy_delegate.delete
        )
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, call, infrastructure, cluster)

    async def _run_flow(
        self,
        operation: Operation,
        infrastructure: dict[str, Any],
        identity: ClusterIdentity,
        persisted: PersistedState,
        result: ReconcileResult,
    ) -> None:
        provider_config = parse_provider_config(infrastructure)
        flow = InfraFlow(
            provider_config,
            identity,
            self._cloud,
            extra_owned_prefixes=self._config.firewall_extra_owned_prefixes,
        )
        persister = StatePersister(
            self._status_writer,
            infrastructure,
            max_retries=self._config.max_persist_retries,
            status_builder=flow.build_provider_status,
        )

        if isinstance(persisted, FlowStateDocument):
            state = persisted.state
        elif isinstance(persisted, LegacyStateDocument):
            declarations = [
                (t.key, t.depends_on) for t in flow.tasks() if t.kind == TaskKind.RESOURCE
            ]
            state = FlowState.from_legacy(persisted.state, declarations)
            result.migrated = True
        else:
            state = FlowState()
        tasks = flow.tasks(state)

        executor = FlowExecutor(
            tasks,
            state,
            persister,
            step_timeout_seconds=self._config.cloud_timeout_seconds,
            max_step_attempts=self._config.max_cloud_retries,
            backoff_base_seconds=self._config.retry_backoff_base_seconds,
            max_parallel_steps=self._config.max_parallel_steps,
        )
        if result.migrated:
            # From here on the stored state is flow-native and the choice is sticky
            await persister.persist(executor.state)
            logger.info(
                "Migrated legacy state to flow state",
                extra={"infrastructure": result.infrastructure},
            )

        if operation == Operation.RECONCILE:
            result.execution = await executor.apply()
        else:
            result.execution = await executor.teardown()
        result.execution.raise_for_errors()

        loop = asyncio.get_running_loop()
        namespace, _, name = result.infrastructure.partition("/")
        await loop.run_in_executor(None, self._bridge.release, namespace, name)

        if operation == Operation.DELETE:
            await persister.clear()
