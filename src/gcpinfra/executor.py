"""Resumable, dependency-ordered execution of provisioning steps.

The executor walks a TaskGraph and drives one FlowState record per resource
task through its state machine. It owns the FlowState for the duration of a
pass and persists it after every transition, so that a crash or restart
resumes from the last completed transition instead of starting over.

EXECUTION RULES:
- Apply visits keys in topological order; ties go to declaration order.
- Created records are skipped without any cloud call.
- A key whose prerequisite is not Created this pass is blocked (skipped).
- Each step persists Creating, calls the idempotent ensure function, then
  persists Created. The final persist is the last action of the step.
- A failed step ends in Error (persisted). Independent steps keep running;
  the failure is reported to the caller, never retried within the pass.
- Teardown is the same walk in reverse, driving records toward Deleted.

Sync tasks reconcile collections (firewall rules, routes) against the
desired set. They have no record, run on every pass once their
prerequisites are Created and may not be depended upon.

Retired tasks stand for records an earlier configuration created but the
current one no longer declares. Apply and teardown both delete the object
and then drop the record. Like sync tasks they may not be depended upon.

Only transient cloud errors are retried locally, with exponential backoff,
before a step is declared failed.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .gcp_client import CloudAPIError
from .graph import DependencyError, TaskGraph
from .state import FlowState, InvalidTransitionError, ResourceStatus
from .status import StatePersister

logger = logging.getLogger(__name__)

# Retry and timeout defaults for a single cloud call
DEFAULT_STEP_TIMEOUT_SECONDS = 300
DEFAULT_MAX_STEP_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SECONDS = 2.0


class TaskKind(str, Enum):
    """How a task relates to the FlowState."""

    RESOURCE = "resource"  # tracked by a record
    SYNC = "sync"  # collection reconciler, runs every pass
    RETIRED = "retired"  # record left by an earlier config, always removed


@dataclass(frozen=True)
class Task:
    """One provisioning step.

    ``ensure`` and ``destroy`` are blocking callables run in a worker thread.
    They must be idempotent: ensure checks for an existing object before
    creating it and destroy tolerates objects that are already gone.
    For RESOURCE tasks ensure returns the cloud ID to record.
    """

    key: str
    depends_on: tuple[str, ...] = ()
    ensure: Callable[[FlowState], str | None] | None = None
    destroy: Callable[[FlowState], None] | None = None
    kind: TaskKind = TaskKind.RESOURCE


class FlowExecutionError(Exception):
    """Raised when a pass finished with failed or blocked steps."""

    def __init__(self, result: ExecutionResult) -> None:
        self.result = result
        details = ", ".join(f"{key}: {err}" for key, err in result.failed.items())
        blocked = sorted(result.blocked)
        super().__init__(
            f"{result.operation} incomplete: failed=[{details}] blocked={blocked}"
        )

    @property
    def retryable(self) -> bool:
        """False if any failure needs a fix rather than another attempt."""
        return all(
            isinstance(err, CloudAPIError) and err.transient
            for err in self.result.failed.values()
        )


@dataclass
class ExecutionResult:
    """Outcome of one executor pass."""

    operation: str
    done: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    synced: list[str] = field(default_factory=list)
    failed: dict[str, Exception] = field(default_factory=dict)
    blocked: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed and not self.blocked

    def raise_for_errors(self) -> None:
        if not self.complete:
            raise FlowExecutionError(self)


class FlowExecutor:
    """Runs a task graph against a FlowState."""

    def __init__(
        self,
        tasks: Sequence[Task],
        state: FlowState,
        persister: StatePersister,
        *,
        step_timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS,
        max_step_attempts: int = DEFAULT_MAX_STEP_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        max_parallel_steps: int = 1,
    ) -> None:
        self._tasks = {task.key: task for task in tasks}
        self._graph = TaskGraph.from_declarations((t.key, t.depends_on) for t in tasks)
        for task in tasks:
            for dep in task.depends_on:
                kind = self._tasks[dep].kind
                if kind != TaskKind.RESOURCE:
                    raise DependencyError(
                        f"'{task.key}' cannot depend on {kind.value} task '{dep}'"
                    )

        self._state = state
        self._state.ensure_records(
            (t.key, t.depends_on) for t in tasks if t.kind == TaskKind.RESOURCE
        )
        stale = sorted(set(state.resources) - set(self._tasks))
        if stale:
            logger.warning("Flow state holds records without a task", extra={"keys": stale})

        self._persister = persister
        self._step_timeout = step_timeout_seconds
        self._max_attempts = max(1, max_step_attempts)
        self._backoff_base = backoff_base_seconds
        self._max_parallel = max(1, max_parallel_steps)

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def graph(self) -> TaskGraph:
        return self._graph

    def _resource_keys(self) -> list[str]:
        return [k for k in self._graph.keys() if self._tasks[k].kind == TaskKind.RESOURCE]

    def _retired_gone(self) -> set[str]:
        return {
            key
            for key, task in self._tasks.items()
            if task.kind == TaskKind.RETIRED
            and (
                key not in self._state.resources
                or self._state.record(key).status == ResourceStatus.DELETED
            )
        }

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    async def apply(self) -> ExecutionResult:
        """Drive every record toward Created."""
        result = ExecutionResult(operation="apply")
        complete = {
            key
            for key in self._resource_keys()
            if self._state.record(key).status == ResourceStatus.CREATED
        } | self._retired_gone()
        result.skipped.extend(k for k in self._graph.keys() if k in complete)

        await self._walk(
            result,
            complete,
            next_keys=lambda done, exclude: self._graph.ready(done, exclude),
            step=self._apply_one,
        )

        for key in self._graph.keys():
            if key in complete or key in result.failed:
                continue
            result.blocked[key] = tuple(self._graph.blocked_by(key, complete))

        self._log_result(result)
        return result

    async def _apply_one(self, key: str, result: ExecutionResult) -> bool:
        task = self._tasks[key]
        if task.kind == TaskKind.SYNC:
            if task.ensure is not None:
                await self._call(task.ensure, key)
            result.synced.append(key)
            return True
        if task.kind == TaskKind.RETIRED:
            return await self._remove(task, result)

        record = self._state.record(key)
        if record.status != ResourceStatus.CREATING:
            record.transition(ResourceStatus.CREATING)
            await self._persister.persist(self._state)

        try:
            cloud_id = await self._call(task.ensure, key) if task.ensure else None
        except CloudAPIError as e:
            record.transition(ResourceStatus.ERROR, error=str(e))
            await self._persister.persist(self._state)
            raise

        if cloud_id:
            record.cloud_id = cloud_id
        record.transition(ResourceStatus.CREATED)
        await self._persister.persist(self._state)
        result.done.append(key)
        return True

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def teardown(self) -> ExecutionResult:
        """Drive every record toward Deleted, dependents first."""
        result = ExecutionResult(operation="teardown")
        removed = {
            key
            for key in self._resource_keys()
            if self._state.record(key).status == ResourceStatus.DELETED
        } | self._retired_gone()
        result.skipped.extend(k for k in self._graph.keys() if k in removed)

        await self._walk(
            result,
            removed,
            next_keys=lambda done, exclude: self._graph.reverse_ready(done, exclude),
            step=self._teardown_one,
        )

        for key in self._graph.keys():
            if key in removed or key in result.failed:
                continue
            result.blocked[key] = tuple(
                d for d in self._graph.dependents(key) if d not in removed
            )

        self._log_result(result)
        return result

    async def _teardown_one(self, key: str, result: ExecutionResult) -> bool:
        task = self._tasks[key]
        if task.kind == TaskKind.SYNC:
            if task.destroy is not None:
                await self._call(task.destroy, key)
            result.synced.append(key)
            return True

        return await self._remove(task, result)

    async def _remove(self, task: Task, result: ExecutionResult) -> bool:
        key = task.key
        record = self._state.record(key)
        if record.status != ResourceStatus.DELETING:
            record.transition(ResourceStatus.DELETING)
            await self._persister.persist(self._state)

        try:
            if task.destroy is not None:
                await self._call(task.destroy, key)
        except CloudAPIError as e:
            record.transition(ResourceStatus.ERROR, error=str(e))
            await self._persister.persist(self._state)
            raise

        record.transition(ResourceStatus.DELETED)
        if task.kind == TaskKind.RETIRED:
            self._state.forget(key)
        await self._persister.persist(self._state)
        result.done.append(key)
        return True

    # -------------------------------------------------------------------------
    # Shared machinery
    # -------------------------------------------------------------------------

    async def _walk(
        self,
        result: ExecutionResult,
        finished: set[str],
        next_keys: Callable[[set[str], set[str]], list[str]],
        step: Callable[[str, ExecutionResult], Awaitable[bool]],
    ) -> None:
        """Run eligible keys in batches until nothing is eligible any more."""
        attempted: set[str] = set()
        while True:
            eligible = next_keys(finished, attempted)
            if not eligible:
                return
            batch = eligible[: self._max_parallel]
            attempted.update(batch)
            outcomes = await asyncio.gather(
                *(self._guarded(step, key, result) for key in batch)
            )
            for key, ok in zip(batch, outcomes, strict=True):
                if ok:
                    finished.add(key)

    async def _guarded(
        self,
        step: Callable[[str, ExecutionResult], Awaitable[bool]],
        key: str,
        result: ExecutionResult,
    ) -> bool:
        try:
            return await step(key, result)
        except (CloudAPIError, InvalidTransitionError) as e:
            logger.error(
                "Step failed",
                extra={
                    "key": key,
                    "operation": result.operation,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "transient": getattr(e, "transient", False),
                },
            )
            result.failed[key] = e
            return False

    async def _call(self, fn: Callable[[FlowState], object], key: str) -> object:
        """Run a blocking step function with timeout and transient-error retry.

        Raises:
            CloudAPIError: If the last attempt failed or a permanent error occurred.
        """
        loop = asyncio.get_running_loop()
        last_error: CloudAPIError | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(fn, self._state)),
                    timeout=self._step_timeout,
                )
            except TimeoutError as e:
                last_error = CloudAPIError(
                    f"{key}: timed out after {self._step_timeout}s",
                    transient=True,
                    operation=key,
                )
                last_error.__cause__ = e
            except CloudAPIError as e:
                if not e.transient:
                    raise
                last_error = e

            if attempt < self._max_attempts:
                # Exponential backoff with jitter
                backoff = self._backoff_base * (2 ** (attempt - 1))
                wait_time = backoff + random.uniform(0, backoff * 0.2)
                logger.warning(
                    "Transient cloud error, retrying",
                    extra={
                        "key": key,
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(last_error),
                    },
                )
                await asyncio.sleep(wait_time)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    def _log_result(self, result: ExecutionResult) -> None:
        log = logger.info if result.complete else logger.warning
        log(
            "Flow pass finished",
            extra={
                "operation": result.operation,
                "done": result.done,
                "skipped": len(result.skipped),
                "synced": result.synced,
                "failed": sorted(result.failed),
                "blocked": sorted(result.blocked),
            },
        )
