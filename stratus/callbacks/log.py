"""Log callback that renders progress events through loguru.

Records go to the ``stratus`` logger, so nothing shows up until the caller
enables it with ``setup_logging``.
"""

from __future__ import annotations

from loguru import logger

from stratus.events import (
    DiscoveryCompleted,
    PipelineCompleted,
    PipelineStarted,
    ProgressEvent,
    StepCompleted,
    StepFailed,
    StepStarted,
    StepStatus,
)

_log = logger.bind(component="progress").opt(colors=True)


def _plain(text: object) -> str:
    """Escape markup so status and error text prints verbatim."""
    return str(text).replace("<", r"\<")


def _source(step: str, node: str | None) -> str:
    if node is None:
        return f"<cyan>{_plain(step)}</cyan>"
    return f"<cyan>{_plain(step)}</cyan> <blue>{_plain(node)}</blue>"


def log(event: ProgressEvent) -> None:
    """Callback that logs every progress event at a level matching its outcome."""
    match event:
        case PipelineStarted(cluster=cluster, steps=steps, nodes=nodes):
            _log.info(f"<bold>Provisioning {cluster}</bold> ({len(steps)} steps, {nodes} nodes)")

        case DiscoveryCompleted(resources=resources):
            _log.info(f"Discovered {resources} existing resources")

        case StepStarted(step=step, index=index, per_node=per_node):
            scope = " (per node)" if per_node else ""
            _log.info(f"[{index + 1}] {_source(step, None)}{scope}")

        case StepStatus(step=step, status=status, node=node):
            _log.debug(f"{_source(step, node)}: {_plain(status)}")

        case StepCompleted(step=step, elapsed=elapsed):
            _log.info(f"{_source(step, None)} done in {elapsed:.1f}s")

        case StepFailed(step=step, error=error, node=node):
            _log.error(f"{_source(step, node)} <red>failed</red>: {_plain(error)}")

        case PipelineCompleted(cluster=cluster, succeeded=True, elapsed=elapsed):
            _log.success(f"<green>{cluster} provisioned</green> in {elapsed:.1f}s")

        case PipelineCompleted(cluster=cluster, elapsed=elapsed, step=step, node=node, error=error):
            where = _source(step or "?", node)
            _log.error(f"<red>{cluster} failed</red> at {where} after {elapsed:.1f}s: {_plain(error)}")
