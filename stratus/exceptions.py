"""Exception hierarchy for stratus."""

from __future__ import annotations


class StratusError(Exception):
    """Base class for every error raised by stratus."""


class ClusterDefinitionError(StratusError, ValueError):
    """The cluster definition cannot be used as declared."""


class ConflictError(StratusError):
    """A discovered resource was not created by or for this cluster.

    Requires operator action; rerunning will fail the same way.
    """

    def __init__(self, kind: str, name: str, detail: str) -> None:
        self.kind = kind
        self.name = name
        self.detail = detail
        super().__init__(f"{kind} [{name}] conflicts with the cluster definition: {detail}")


class OperationTimeoutError(StratusError, TimeoutError):
    """A polled operation did not reach the expected state in time."""

    def __init__(self, description: str, timeout: float) -> None:
        self.description = description
        self.timeout = timeout
        super().__init__(f"Timeout waiting for {description} after {timeout:.1f}s")


class UnexpectedStateError(StratusError):
    """A resource entered a state with no defined transition."""

    def __init__(self, resource: str, state: str, detail: str = "") -> None:
        self.resource = resource
        self.state = state
        message = f"{resource} is in an unexpected state [{state}]"
        super().__init__(f"{message}: {detail}" if detail else message)


class CapacityError(StratusError):
    """The declared input cannot be satisfied by the available capacity."""


class PortRangeExhaustedError(CapacityError):
    """Not enough free ports remain in the external SSH range."""

    def __init__(self, first: int, last: int, needed: int, free: int) -> None:
        self.first = first
        self.last = last
        self.needed = needed
        self.free = free
        super().__init__(
            f"SSH port range [{first}-{last}] has {free} free port(s) but {needed} node(s) need one"
        )


class PipelineError(StratusError):
    """The provisioning pipeline was used incorrectly."""


class ProvisioningError(StratusError):
    """A provisioning run failed.

    Attributes:
        step: Name of the last attempted step.
        node: Name of the affected node, if the step was a per-node step.
        cause: The underlying error.
    """

    def __init__(self, step: str, node: str | None, cause: BaseException) -> None:
        self.step = step
        self.node = node
        self.cause = cause
        where = f"step [{step}] on node [{node}]" if node else f"step [{step}]"
        super().__init__(f"Provisioning failed at {where}: {type(cause).__name__}: {cause}")
