"""In-memory index over the cluster's cloud resources.

The cloud provider's own resource store is the durable state. This module holds
the per-run index over it: a reconciliation table keyed by (kind, logical
name), and one NodeRecord per node reachable by node name or instance name.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from stratus.definition import NodeDefinition


class ResourceKind(StrEnum):
    ELASTIC_IP = "elastic-ip"
    VPC = "vpc"
    DHCP_OPTIONS = "dhcp-options"
    SECURITY_GROUP = "security-group"
    SUBNET = "subnet"
    ROUTE_TABLE = "route-table"
    INTERNET_GATEWAY = "internet-gateway"
    NAT_GATEWAY = "nat-gateway"
    NETWORK_ACL = "network-acl"
    PLACEMENT_GROUP = "placement-group"
    KEY_PAIR = "key-pair"
    INSTANCE = "instance"
    VOLUME = "volume"
    LOAD_BALANCER = "load-balancer"
    TARGET_GROUP = "target-group"
    RESOURCE_GROUP = "resource-group"


@dataclass(frozen=True, slots=True)
class Resource:
    """Handle to one provider resource.

    Attributes:
        kind: Resource kind.
        name: Logical name; the Name tag is "<cluster>.<name>".
        id: Provider identifier (resource id or ARN).
        raw: The provider's description at the time it was recorded.
    """

    kind: ResourceKind
    name: str
    id: str
    raw: MappingProxyType[str, Any] = field(default_factory=lambda: MappingProxyType({}), compare=False)

    @classmethod
    def of(cls, kind: ResourceKind, name: str, id: str, raw: dict[str, Any]) -> Resource:
        return cls(kind, name, id, MappingProxyType(dict(raw)))


class ReconciliationTable:
    """Logical name to resource handle, rebuilt at the start of every run."""

    def __init__(self) -> None:
        self._entries: dict[tuple[ResourceKind, str], Resource] = {}

    def get(self, kind: ResourceKind, name: str) -> Resource | None:
        return self._entries.get((kind, name))

    def require(self, kind: ResourceKind, name: str) -> Resource:
        resource = self._entries.get((kind, name))
        if resource is None:
            raise LookupError(f"{kind} [{name}] has not been provisioned")
        return resource

    def put(self, resource: Resource) -> Resource:
        self._entries[(resource.kind, resource.name)] = resource
        return resource

    def remove(self, kind: ResourceKind, name: str) -> None:
        self._entries.pop((kind, name), None)

    def of_kind(self, kind: ResourceKind) -> list[Resource]:
        return [r for (k, _), r in self._entries.items() if k == kind]

    def clear(self) -> None:
        self._entries.clear()

    def handles(self) -> dict[tuple[str, str], str]:
        """Snapshot of ``(kind, name) -> id`` for comparison between runs."""
        return {(k.value, name): r.id for (k, name), r in self._entries.items()}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Resource]:
        return iter(list(self._entries.values()))

    def __contains__(self, key: object) -> bool:
        return key in self._entries


# =============================================================================
# Nodes
# =============================================================================


class InstancePhase(StrEnum):
    ABSENT = "absent"
    CREATING = "creating"
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    STARTING = "starting"
    BOOTSTRAP_CLEARING = "bootstrap-clearing"
    READY = "ready"


@dataclass(slots=True)
class NodeRecord:
    """Runtime state for one node.

    Only the worker running a per-node step for this node writes to it.
    """

    node: NodeDefinition
    instance_name: str
    instance: Resource | None = None
    external_ssh_port: int | None = None
    partition: int | None = None
    phase: InstancePhase = InstancePhase.ABSENT

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def instance_id(self) -> str | None:
        return self.instance.id if self.instance else None


class NodeArena:
    """One NodeRecord per node, indexed by node name and by instance name.

    Both indexes point at the same record, so an update through either lookup
    is visible through the other. Node names compare case-insensitively.
    """

    def __init__(self, records: list[NodeRecord] | None = None) -> None:
        self._records: list[NodeRecord] = []
        self._by_node: dict[str, NodeRecord] = {}
        self._by_instance: dict[str, NodeRecord] = {}
        for record in records or ():
            self.add(record)

    def add(self, record: NodeRecord) -> NodeRecord:
        key = record.name.casefold()
        if key in self._by_node:
            raise ValueError(f"Node [{record.name}] already has a record")
        self._records.append(record)
        self._by_node[key] = record
        self._by_instance[record.instance_name] = record
        return record

    def by_node(self, name: str) -> NodeRecord:
        return self._by_node[name.casefold()]

    def by_instance(self, instance_name: str) -> NodeRecord | None:
        return self._by_instance.get(instance_name)

    def find(self, name: str) -> NodeRecord | None:
        return self._by_node.get(name.casefold())

    def sorted(self) -> list[NodeRecord]:
        """Control-plane records first, then workers, each alphabetically."""
        return sorted(self._records, key=lambda r: (not r.node.is_control_plane, r.name.casefold()))

    def __iter__(self) -> Iterator[NodeRecord]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)
