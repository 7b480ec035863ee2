"""Console progress: a streaming log of steps with a summary table at the end.

Each line starts with a badge naming the step (or node) it belongs to;
per-node lines get a stable color per node so interleaved output from
parallel steps stays readable.
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field

from rich.console import Console
from rich.style import Style
from rich.table import Table
from rich.text import Text

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

# --- Styles ---

DIM = Style(color="bright_black")
MEDIUM = Style(color="white")
GREEN = Style(color="green", bold=True)
RED = Style(color="red", bold=True)
CYAN = Style(color="cyan", bold=True)

_FIXED_BADGES: dict[str, Style] = {
    "stratus": Style(color="rgb(0,0,0)", bgcolor="rgb(255,255,255)", bold=True),
    "done": Style(color="rgb(0,0,0)", bgcolor="rgb(70,190,70)", bold=True),
    "failed": Style(color="rgb(0,0,0)", bgcolor="rgb(225,60,60)", bold=True),
}

_BADGE_WIDTH = 10


def _stable_hash(label: str) -> int:
    return int.from_bytes(hashlib.md5(label.encode()).digest()[:4], "big")


def _badge_style(label: str) -> Style:
    if label in _FIXED_BADGES:
        return _FIXED_BADGES[label]
    hue = (_stable_hash(label) * 137.508) % 360
    # Hue onto a fixed-lightness palette of the 6x6x6 color cube.
    sector = int(hue // 60)
    ramp = int((hue % 60) / 60 * 4) + 1
    channels = [
        (5, ramp, 1), (5 - ramp, 5, 1), (1, 5, ramp),
        (1, 5 - ramp, 5), (ramp, 1, 5), (5, 1, 5 - ramp),
    ][sector]
    r, g, b = (c * 51 for c in channels)
    return Style(color="rgb(0,0,0)", bgcolor=f"rgb({r},{g},{b})", bold=True)


def _badge(label: str) -> Text:
    short = label[:_BADGE_WIDTH].center(_BADGE_WIDTH)
    t = Text()
    t.append(f" {short} ", style=_badge_style(label))
    return t


def _format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m{secs:02d}s"


@dataclass(slots=True)
class _StepRow:
    name: str
    per_node: bool
    started_at: float
    elapsed: float | None = None
    error: str | None = None


@dataclass(slots=True)
class ConsoleProgress:
    """Callback that renders progress events on a rich console.

    Status lines are shown only with ``verbose``; step boundaries, failures
    and the final summary are always shown.
    """

    console: Console = field(default_factory=lambda: Console(stderr=True))
    verbose: bool = False
    _steps: dict[str, _StepRow] = field(default_factory=dict)

    def __call__(self, event: ProgressEvent) -> None:
        match event:
            case PipelineStarted(cluster=cluster, steps=steps, nodes=nodes):
                self._steps.clear()
                self._line("stratus", f"provisioning {cluster}: {len(steps)} steps, {nodes} nodes", MEDIUM)

            case DiscoveryCompleted(resources=resources):
                self._line("stratus", f"discovered {resources} existing resources", DIM)

            case StepStarted(step=step, per_node=per_node):
                self._steps[step] = _StepRow(step, per_node, time.monotonic())
                self._line(step, "per node" if per_node else "started", DIM)

            case StepStatus(step=step, status=status, node=node) if self.verbose:
                self._line(node or step, status, DIM)

            case StepCompleted(step=step, elapsed=elapsed):
                row = self._steps.get(step)
                if row is not None:
                    row.elapsed = elapsed
                self._line(step, f"done in {_format_duration(elapsed)}", GREEN)

            case StepFailed(step=step, error=error, node=node):
                row = self._steps.get(step)
                if row is not None:
                    row.error = error
                self._line(node or step, f"{step} failed: {error}", RED)

            case PipelineCompleted() as completed:
                self._summary(completed)

    def _line(self, badge: str, text: str, style: Style | None = None) -> None:
        line = _badge(badge)
        line.append(f"  {text}", style=style)
        self.console.print(line)

    def _summary(self, completed: PipelineCompleted) -> None:
        table = Table(show_header=True, header_style=CYAN, box=None, padding=(0, 2))
        table.add_column("Step")
        table.add_column("Scope", style=DIM)
        table.add_column("Result")
        table.add_column("Time", justify="right", style=DIM)

        for row in self._steps.values():
            if row.error is not None:
                result = Text("failed", style=RED)
            elif row.elapsed is not None:
                result = Text("done", style=GREEN)
            else:
                result = Text("interrupted", style=DIM)
            elapsed = row.elapsed if row.elapsed is not None else time.monotonic() - row.started_at
            table.add_row(row.name, "node" if row.per_node else "global", result, _format_duration(elapsed))

        self.console.print()
        self.console.print(table)
        if completed.succeeded:
            self._line("done", f"{completed.cluster} provisioned in {_format_duration(completed.elapsed)}", GREEN)
        else:
            where = completed.step if completed.node is None else f"{completed.step} ({completed.node})"
            self._line("failed", f"{completed.cluster} failed at {where}: {completed.error}", RED)
