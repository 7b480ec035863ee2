"""Progress events produced by a provisioning run.

Consumers pattern-match on them:

    match event:
        case StepStatus(step=step, node=node, status=status):
            print(f"[{step}] {node}: {status}")
        case PipelineCompleted(succeeded=False, step=step, error=error):
            print(f"failed at {step}: {error}")
"""

from __future__ import annotations

from dataclasses import dataclass

# =============================================================================
# Pipeline Events
# =============================================================================


@dataclass(frozen=True, slots=True)
class PipelineStarted:
    """A run started."""

    cluster: str
    steps: tuple[str, ...]
    nodes: int


@dataclass(frozen=True, slots=True)
class DiscoveryCompleted:
    """The reconciliation table was repopulated from the cloud."""

    resources: int


@dataclass(frozen=True, slots=True)
class PipelineCompleted:
    """A run finished, successfully or not."""

    cluster: str
    succeeded: bool
    elapsed: float
    step: str | None = None
    node: str | None = None
    error: str | None = None


# =============================================================================
# Step Events
# =============================================================================


@dataclass(frozen=True, slots=True)
class StepStarted:
    step: str
    index: int
    per_node: bool


@dataclass(frozen=True, slots=True)
class StepStatus:
    """A status line for a step, or for one node within a per-node step."""

    step: str
    status: str
    node: str | None = None


@dataclass(frozen=True, slots=True)
class StepCompleted:
    step: str
    elapsed: float


@dataclass(frozen=True, slots=True)
class StepFailed:
    step: str
    error: str
    node: str | None = None


type ProgressEvent = (
    PipelineStarted
    | DiscoveryCompleted
    | PipelineCompleted
    | StepStarted
    | StepStatus
    | StepCompleted
    | StepFailed
)
