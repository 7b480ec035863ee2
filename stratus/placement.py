"""Placement partition assignment.

Spreads the nodes of one role across the partitions of a partition placement
group so that a single hardware failure cannot take out a majority of them.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from stratus.constants import MAX_PLACEMENT_PARTITIONS
from stratus.exceptions import CapacityError


def resolve_partition_count(configured: int, node_count: int) -> int:
    """Turn a configured partition count into an effective one.

    ``-1`` means one partition per node, capped at the provider maximum.
    """
    if configured == -1:
        return max(1, min(node_count, MAX_PLACEMENT_PARTITIONS))
    return max(1, configured)


def assign_partitions(
    nodes: Sequence[str],
    partition_count: int,
    overrides: Mapping[str, int] | None = None,
) -> dict[str, int]:
    """Assign each node a 1-based partition number.

    Nodes with an explicit override take that partition. The remaining nodes
    are processed in the given order and placed in the partition with the
    fewest nodes so far, ties going to the lowest partition number. Overrides
    are counted before any automatic placement.

    Args:
        nodes: Node names in a stable order (declaration order).
        partition_count: Number of partitions available for this role.
        overrides: Explicit partition per node name. Zero means no override.

    Returns:
        Mapping of node name to partition number.

    Raises:
        CapacityError: If an override names a partition that does not exist.
    """
    overrides = {name: p for name, p in (overrides or {}).items() if p > 0}

    if partition_count <= 1:
        for name, partition in overrides.items():
            if partition != 1:
                raise CapacityError(
                    f"Node [{name}] requests placement partition {partition} "
                    f"but only 1 partition is configured"
                )
        return {name: 1 for name in nodes}

    counts = [0] * partition_count
    assignment: dict[str, int] = {}

    for name in nodes:
        partition = overrides.get(name)
        if partition is None:
            continue
        if partition > partition_count:
            raise CapacityError(
                f"Node [{name}] requests placement partition {partition} "
                f"but only {partition_count} partitions are configured"
            )
        assignment[name] = partition
        counts[partition - 1] += 1

    for name in nodes:
        if name in assignment:
            continue
        index = counts.index(min(counts))
        assignment[name] = index + 1
        counts[index] += 1

    return {name: assignment[name] for name in nodes}
