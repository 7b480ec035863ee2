"""External SSH port allocation."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from stratus.definition import SshPortRange
from stratus.exceptions import PortRangeExhaustedError


def allocate_ports(
    nodes: Sequence[tuple[str, bool]],
    port_range: SshPortRange,
    assigned: Mapping[str, int] | None = None,
) -> dict[str, int]:
    """Assign every node a unique external SSH port.

    Nodes that already carry an assignment keep it. The others get the lowest
    free ports in the range, control-plane nodes first and then alphabetically.

    Args:
        nodes: ``(name, is_control_plane)`` for each node.
        port_range: Closed range of reservable ports.
        assigned: Existing assignments, typically recovered from resource tags.

    Returns:
        Mapping of node name to port for every node.

    Raises:
        PortRangeExhaustedError: If there are fewer free ports than unassigned nodes.
    """
    assigned = dict(assigned or {})
    result = {name: assigned[name] for name, _ in nodes if name in assigned}

    pending = sorted(
        (entry for entry in nodes if entry[0] not in result),
        key=lambda entry: (not entry[1], entry[0].casefold()),
    )
    if not pending:
        return result

    taken = set(assigned.values())
    free = [port for port in port_range if port not in taken]

    if len(free) < len(pending):
        raise PortRangeExhaustedError(port_range.first, port_range.last, len(pending), len(free))

    for (name, _), port in zip(pending, free, strict=False):
        result[name] = port

    return result
