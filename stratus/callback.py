"""Callback-based progress dispatch.

Steps report progress by emitting events; whoever started the run decides
where they go by installing a callback for the current context.

Example:
    from stratus.callback import use_callback

    def on_event(event):
        match event:
            case StepStatus(step=step, node=node, status=status):
                print(f"{step} {node or ''}: {status}")

    with use_callback(on_event):
        await provision(manager)
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stratus.events import ProgressEvent

type Callback = Callable[[ProgressEvent], None]

_callback: ContextVar[Callback | None] = ContextVar("stratus_cb", default=None)


def emit(event: ProgressEvent) -> None:
    """Deliver an event to the current context's callback, if any."""
    cb = _callback.get()
    if cb is None:
        return
    cb(event)


def compose(*callbacks: Callback) -> Callback:
    """Combine multiple callbacks into one that forwards every event to each."""
    match callbacks:
        case []:
            return lambda _: None
        case [single]:
            return single
        case _:

            def combined(event: ProgressEvent) -> None:
                for cb in callbacks:
                    cb(event)

            return combined


@contextmanager
def use_callback(cb: Callback) -> Iterator[None]:
    """Context manager that sets the active callback.

    Tasks spawned inside the context inherit the callback, so per-node step
    workers report to the same observer as the pipeline itself.
    """
    token = _callback.set(cb)
    try:
        yield
    finally:
        _callback.reset(token)
