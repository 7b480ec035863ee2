"""Provisioning pipeline.

    IDLE ─► DISCOVERING ─► RUNNING(step) ─► SUCCEEDED
                 │               │
                 └───────────────┴────────► FAILED

Steps run strictly in the order they were added. A global step runs once; a
per-node step runs once per node, with a bounded number of nodes in flight.
The first failure stops the run. Nothing is rolled back: every step is
idempotent, so the way to recover is to run the whole pipeline again.

Example:
    pipeline = ProvisioningPipeline("demo", nodes=lambda: arena.sorted(), discover=manager.discover)
    pipeline.add_global_step("network", build_network)
    pipeline.add_node_step("node instances", create_instance)
    result = await pipeline.run()
    result.raise_for_failure()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Protocol

from loguru import logger

from stratus.callback import emit
from stratus.events import (
    DiscoveryCompleted,
    PipelineCompleted,
    PipelineStarted,
    StepCompleted,
    StepFailed,
    StepStarted,
    StepStatus,
)
from stratus.exceptions import PipelineError, ProvisioningError

log = logger.bind(component="pipeline")

DISCOVERY_STEP = "discover"


class Named(Protocol):
    @property
    def name(self) -> str: ...


class StepKind(StrEnum):
    GLOBAL = "global"
    PER_NODE = "per-node"


class PipelineState(StrEnum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class StepContext:
    """Handed to every step invocation."""

    step: str
    quiet: bool = False
    node: str | None = None

    def report(self, status: str) -> None:
        """Surface a status line. Quiet steps only log it."""
        log.debug(f"[{self.step}]{f' {self.node}' if self.node else ''}: {status}")
        if not self.quiet:
            emit(StepStatus(self.step, status, self.node))


type GlobalStep = Callable[[StepContext], Awaitable[None]]
type NodeStep[N] = Callable[[StepContext, N], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class ProvisioningStep:
    """One pipeline step.

    Attributes:
        name: Unique step name, used in progress events and failure reports.
        kind: Global or per-node.
        action: The step body.
        quiet: Suppress step-level progress events. Failures still stop the run.
        parallelism: Per-node concurrency override.
        predicate: Per-node filter; nodes it rejects skip the step.
    """

    name: str
    kind: StepKind
    action: Callable[..., Awaitable[None]]
    quiet: bool = False
    parallelism: int | None = None
    predicate: Callable[[Any], bool] | None = None


@dataclass(frozen=True, slots=True)
class StepFailure:
    step: str
    node: str | None
    error: BaseException


@dataclass(frozen=True, slots=True)
class PipelineResult:
    """Outcome of a run."""

    state: PipelineState
    elapsed: float
    step_states: Mapping[str, StepState] = field(default_factory=dict)
    failure: StepFailure | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.SUCCEEDED

    def raise_for_failure(self) -> None:
        """Raise ProvisioningError if the run failed."""
        if self.failure is not None:
            raise ProvisioningError(self.failure.step, self.failure.node, self.failure.error) from self.failure.error


class _NodeFailure(Exception):
    def __init__(self, node: str, error: Exception) -> None:
        super().__init__(node, error)
        self.node = node
        self.error = error


def _first_leaf(group: BaseExceptionGroup) -> BaseException:
    error: BaseException = group
    while isinstance(error, BaseExceptionGroup):
        error = error.exceptions[0]
    return error


class ProvisioningPipeline[N: Named]:
    """Runs global and per-node steps in order, once.

    Args:
        cluster: Cluster name, for events and logs.
        nodes: Returns the nodes per-node steps iterate over. Called at the
            start of every per-node step, after discovery.
        discover: Repopulates the reconciliation table; returns how many
            resources were found.
        max_parallel: Default number of concurrent per-node invocations.
    """

    def __init__(
        self,
        cluster: str,
        *,
        nodes: Callable[[], Sequence[N]],
        discover: Callable[[], Awaitable[int]],
        max_parallel: int = 1,
    ) -> None:
        if max_parallel < 1:
            raise PipelineError("max_parallel must be at least 1")
        self.cluster = cluster
        self._nodes = nodes
        self._discover = discover
        self._max_parallel = max_parallel
        self._steps: list[ProvisioningStep] = []
        self._state = PipelineState.IDLE
        self._step_states: dict[str, StepState] = {}

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def steps(self) -> tuple[ProvisioningStep, ...]:
        return tuple(self._steps)

    def _add(self, step: ProvisioningStep) -> None:
        if self._state != PipelineState.IDLE:
            raise PipelineError(f"Cannot add step [{step.name}] to a pipeline that already ran")
        if step.name in self._step_states:
            raise PipelineError(f"Step [{step.name}] is already part of the pipeline")
        self._steps.append(step)
        self._step_states[step.name] = StepState.PENDING

    def add_global_step(self, name: str, action: GlobalStep, *, quiet: bool = False) -> None:
        self._add(ProvisioningStep(name, StepKind.GLOBAL, action, quiet=quiet))

    def add_node_step(
        self,
        name: str,
        action: NodeStep[N],
        *,
        quiet: bool = False,
        parallelism: int | None = None,
        predicate: Callable[[N], bool] | None = None,
    ) -> None:
        self._add(ProvisioningStep(
            name, StepKind.PER_NODE, action, quiet=quiet, parallelism=parallelism, predicate=predicate,
        ))

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _run_global(self, step: ProvisioningStep) -> None:
        await step.action(StepContext(step.name, step.quiet))

    async def _run_per_node(self, step: ProvisioningStep) -> None:
        nodes = [n for n in self._nodes() if step.predicate is None or step.predicate(n)]
        if not nodes:
            return
        semaphore = asyncio.Semaphore(step.parallelism or self._max_parallel)

        async def one(node: N) -> None:
            async with semaphore:
                try:
                    await step.action(StepContext(step.name, step.quiet, node.name), node)
                except Exception as e:
                    raise _NodeFailure(node.name, e) from e

        async with asyncio.TaskGroup() as group:
            for node in nodes:
                group.create_task(one(node))

    def _finish(self, started: float, failure: StepFailure | None) -> PipelineResult:
        elapsed = time.monotonic() - started
        self._state = PipelineState.FAILED if failure else PipelineState.SUCCEEDED
        emit(PipelineCompleted(
            cluster=self.cluster,
            succeeded=failure is None,
            elapsed=elapsed,
            step=failure.step if failure else None,
            node=failure.node if failure else None,
            error=f"{type(failure.error).__name__}: {failure.error}" if failure else None,
        ))
        if failure is None:
            log.info(f"Cluster [{self.cluster}] provisioned in {elapsed:.1f}s")
        return PipelineResult(self._state, elapsed, MappingProxyType(dict(self._step_states)), failure)

    async def run(self) -> PipelineResult:
        """Discover, then run every step in order until one fails.

        Raises:
            PipelineError: The pipeline already ran.
        """
        if self._state != PipelineState.IDLE:
            raise PipelineError(f"Pipeline for cluster [{self.cluster}] is {self._state}, not idle")

        started = time.monotonic()
        self._state = PipelineState.DISCOVERING
        emit(PipelineStarted(self.cluster, tuple(s.name for s in self._steps), len(self._nodes())))

        try:
            found = await self._discover()
        except Exception as e:
            log.error(f"Discovery for cluster [{self.cluster}] failed: {e}")
            return self._finish(started, StepFailure(DISCOVERY_STEP, None, e))
        emit(DiscoveryCompleted(found))

        self._state = PipelineState.RUNNING
        for index, step in enumerate(self._steps):
            per_node = step.kind == StepKind.PER_NODE
            self._step_states[step.name] = StepState.RUNNING
            if not step.quiet:
                emit(StepStarted(step.name, index, per_node))
            log.debug(f"Step {index + 1}/{len(self._steps)} [{step.name}] ({step.kind})")
            step_started = time.monotonic()

            failure: StepFailure | None = None
            try:
                if per_node:
                    await self._run_per_node(step)
                else:
                    await self._run_global(step)
            except ExceptionGroup as group:
                leaf = _first_leaf(group)
                if isinstance(leaf, _NodeFailure):
                    failure = StepFailure(step.name, leaf.node, leaf.error)
                else:
                    failure = StepFailure(step.name, None, leaf)
            except Exception as e:
                failure = StepFailure(step.name, None, e)

            if failure is not None:
                self._step_states[step.name] = StepState.FAILED
                where = f" on node [{failure.node}]" if failure.node else ""
                log.error(f"Step [{step.name}]{where} failed: {type(failure.error).__name__}: {failure.error}")
                if not step.quiet:
                    emit(StepFailed(step.name, str(failure.error), failure.node))
                return self._finish(started, failure)

            self._step_states[step.name] = StepState.DONE
            if not step.quiet:
                emit(StepCompleted(step.name, time.monotonic() - step_started))

        return self._finish(started, None)
