"""Built-in callbacks for provisioning progress.

Example:
    from stratus.callbacks import ConsoleProgress, log
    from stratus.callback import compose, use_callback

    with use_callback(compose(log, ConsoleProgress())):
        result = await provision(manager)
"""

from stratus.callbacks.console import ConsoleProgress
from stratus.callbacks.log import log

__all__ = [
    "log",
    "ConsoleProgress",
]
