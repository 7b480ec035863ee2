"""Cluster definition types.

The definition is the declared target state of a cluster. It is immutable for
the duration of a run; everything the engine learns at runtime goes into
NodeRecords and the reconciliation table instead.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from enum import StrEnum

from stratus.constants import (
    API_SERVER_PORT,
    DEFAULT_IMAGE_PARAMETER,
    DEFAULT_OPERATION_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    MAX_PLACEMENT_PARTITIONS,
    RESERVED_TAG_PREFIXES,
    RESOURCE_GROUP_MAX_LENGTH,
    ClusterTag,
)
from stratus.exceptions import ClusterDefinitionError

# =============================================================================
# Enums
# =============================================================================


class HostingEnvironment(StrEnum):
    AWS = "aws"


class NodeRole(StrEnum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class IngressProtocol(StrEnum):
    TCP = "tcp"
    UDP = "udp"
    HTTP = "http"
    HTTPS = "https"


class IngressTarget(StrEnum):
    """Which nodes receive traffic for an ingress rule."""

    CONTROL_PLANE = "control"
    INGRESS = "ingress"
    SSH = "ssh"


class AddressAction(StrEnum):
    ALLOW = "allow"
    DENY = "deny"


class VolumeType(StrEnum):
    GP2 = "gp2"
    GP3 = "gp3"
    IO1 = "io1"
    ST1 = "st1"
    SC1 = "sc1"
    STANDARD = "standard"


# =============================================================================
# Network
# =============================================================================


def _check_cidr(cidr: str) -> None:
    try:
        ipaddress.ip_network(cidr, strict=False)
    except ValueError as e:
        raise ClusterDefinitionError(f"Invalid CIDR [{cidr}]: {e}") from None


def _check_port(port: int, what: str) -> None:
    if not 1 <= port <= 65535:
        raise ClusterDefinitionError(f"{what} [{port}] is not a valid port")


_RESOURCE_GROUP_NAME = re.compile(r"[A-Za-z]([A-Za-z0-9_-]*[A-Za-z0-9])?")


@dataclass(frozen=True, slots=True)
class AddressRule:
    """Allows or denies traffic from (or to) a CIDR block."""

    cidr: str
    action: AddressAction = AddressAction.ALLOW

    def __post_init__(self) -> None:
        _check_cidr(self.cidr)


@dataclass(frozen=True, slots=True)
class HealthCheck:
    interval_seconds: int = 10
    threshold_count: int = 3


@dataclass(frozen=True, slots=True)
class IngressRule:
    """Routes an external load balancer port to a node port.

    Attributes:
        name: Rule name, unique within the cluster.
        protocol: Transport protocol. HTTP and HTTPS are balanced as TCP.
        external_port: Port exposed on the load balancer.
        node_port: Port the traffic is forwarded to on the target nodes.
        target: Which nodes receive the traffic.
        address_rules: Optional source address filters, applied in order.
        health_check: Overrides the cluster's default health check.
    """

    name: str
    protocol: IngressProtocol
    external_port: int
    node_port: int
    target: IngressTarget = IngressTarget.INGRESS
    address_rules: tuple[AddressRule, ...] = ()
    health_check: HealthCheck | None = None


@dataclass(frozen=True, slots=True)
class SshPortRange:
    """Closed range of load balancer ports reserved for per-node SSH."""

    first: int = 2222
    last: int = 2299

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.first <= port <= self.last

    def __len__(self) -> int:
        return max(0, self.last - self.first + 1)

    def __iter__(self):
        return iter(range(self.first, self.last + 1))


@dataclass(frozen=True, slots=True)
class NetworkOptions:
    ingress_rules: tuple[IngressRule, ...] = ()
    egress_address_rules: tuple[AddressRule, ...] = ()
    management_address_rules: tuple[AddressRule, ...] = ()
    ssh_ports: SshPortRange = field(default_factory=SshPortRange)
    nameservers: tuple[str, ...] = ()
    ingress_health_check: HealthCheck = field(default_factory=HealthCheck)


def api_server_rule(network: NetworkOptions) -> IngressRule:
    """The fixed rule that exposes the control-plane API on the load balancer."""
    return IngressRule(
        name="api",
        protocol=IngressProtocol.TCP,
        external_port=API_SERVER_PORT,
        node_port=API_SERVER_PORT,
        target=IngressTarget.CONTROL_PLANE,
        address_rules=network.management_address_rules,
    )


# =============================================================================
# Hosting
# =============================================================================


@dataclass(frozen=True, slots=True)
class AwsOptions:
    """AWS hosting options.

    Args:
        region: AWS region.
        availability_zone: Zone hosting every cluster resource.
        vpc_subnet: CIDR of the cluster VPC.
        public_subnet: CIDR of the subnet holding the load balancer and NAT gateway.
        node_subnet: CIDR of the private subnet holding the nodes.
        control_plane_placement_partitions: Partition count for control-plane nodes.
            -1 means one partition per control-plane node.
        worker_placement_partitions: Partition count for worker nodes.
        default_instance_type: Instance type for nodes that don't specify one.
        default_volume_size_gb: Data volume size for nodes that don't specify one.
        default_volume_type: Data volume type for nodes that don't specify one.
        default_ebs_optimized: EBS optimization for nodes that don't specify it.
        resource_group: Name of the resource group collecting the cluster's
            resources. Defaults to the cluster name.
        image_id: Explicit AMI. Resolved from ``image_parameter`` when unset.
        image_parameter: SSM parameter naming the default machine image.
        max_parallel: Maximum concurrent per-node step invocations.
        operation_timeout: Timeout for long-running cloud operations, in seconds.
        poll_interval: Polling interval for long-running cloud operations, in seconds.
        access_key_id: Static credentials. The default credential chain is used when unset.
        secret_access_key: Static credentials.
    """

    region: str = "us-east-1"
    availability_zone: str = "us-east-1a"
    vpc_subnet: str = "10.100.0.0/16"
    public_subnet: str = "10.100.255.0/24"
    node_subnet: str = "10.100.0.0/24"
    control_plane_placement_partitions: int = -1
    worker_placement_partitions: int = 1
    default_instance_type: str = "c5.xlarge"
    default_volume_size_gb: int = 128
    default_volume_type: VolumeType = VolumeType.GP2
    default_ebs_optimized: bool = False
    resource_group: str | None = None
    image_id: str | None = None
    image_parameter: str = DEFAULT_IMAGE_PARAMETER
    max_parallel: int = 10
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    access_key_id: str | None = field(default=None, repr=False)
    secret_access_key: str | None = field(default=None, repr=False)

    def validate(self) -> None:
        for cidr in (self.vpc_subnet, self.public_subnet, self.node_subnet):
            _check_cidr(cidr)
        vpc = ipaddress.ip_network(self.vpc_subnet, strict=False)
        for name, cidr in (("public_subnet", self.public_subnet), ("node_subnet", self.node_subnet)):
            if not ipaddress.ip_network(cidr, strict=False).subnet_of(vpc):  # type: ignore[arg-type]
                raise ClusterDefinitionError(f"{name} [{cidr}] is not within vpc_subnet [{self.vpc_subnet}]")
        for name, count in (
            ("control_plane_placement_partitions", self.control_plane_placement_partitions),
            ("worker_placement_partitions", self.worker_placement_partitions),
        ):
            if count != -1 and not 1 <= count <= MAX_PLACEMENT_PARTITIONS:
                raise ClusterDefinitionError(
                    f"{name} must be -1 or between 1 and {MAX_PLACEMENT_PARTITIONS}, got {count}"
                )
        if self.max_parallel < 1:
            raise ClusterDefinitionError("max_parallel must be at least 1")


# =============================================================================
# Nodes
# =============================================================================


@dataclass(frozen=True, slots=True)
class NodeDefinition:
    """A declared cluster node.

    Attributes:
        name: Stable node name, unique within the cluster.
        role: Control-plane or worker.
        instance_type: Overrides the default instance type.
        volume_size_gb: Overrides the default data volume size.
        volume_type: Overrides the default data volume type.
        ebs_optimized: Overrides the default EBS optimization.
        ingress: Whether the node receives user ingress traffic.
        placement_partition: Explicit 1-based placement partition, 0 to auto-assign.
        address: Optional fixed private address within the node subnet.
        storage_volume_size_gb: Size of an extra block volume attached after
            provisioning, or None for no extra volume.
    """

    name: str
    role: NodeRole = NodeRole.WORKER
    instance_type: str | None = None
    volume_size_gb: int | None = None
    volume_type: VolumeType | None = None
    ebs_optimized: bool | None = None
    ingress: bool = False
    placement_partition: int = 0
    address: str | None = None
    storage_volume_size_gb: int | None = None

    @property
    def is_control_plane(self) -> bool:
        return self.role == NodeRole.CONTROL_PLANE

    @property
    def is_worker(self) -> bool:
        return self.role == NodeRole.WORKER


# =============================================================================
# Cluster
# =============================================================================


@dataclass(frozen=True, slots=True)
class ClusterLogin:
    """Credentials installed on every node during bootstrap."""

    ssh_password: str = field(repr=False)
    ssh_public_key: str


@dataclass(frozen=True, slots=True)
class ClusterDefinition:
    """Declared target state of a cluster."""

    name: str
    nodes: tuple[NodeDefinition, ...]
    environment: str = "development"
    hosting: HostingEnvironment = HostingEnvironment.AWS
    network: NetworkOptions = field(default_factory=NetworkOptions)
    aws: AwsOptions = field(default_factory=AwsOptions)
    resource_tags: tuple[tuple[str, str], ...] = ()

    @property
    def control_plane_nodes(self) -> tuple[NodeDefinition, ...]:
        return tuple(n for n in self.nodes if n.is_control_plane)

    @property
    def worker_nodes(self) -> tuple[NodeDefinition, ...]:
        return tuple(n for n in self.nodes if n.is_worker)

    @property
    def resource_group(self) -> str:
        return self.aws.resource_group or self.name

    def sorted_nodes(self) -> list[NodeDefinition]:
        """Control-plane nodes first, then workers, each alphabetically."""
        return sorted(self.nodes, key=lambda n: (not n.is_control_plane, n.name.casefold()))

    def ingress_nodes(self) -> tuple[NodeDefinition, ...]:
        """Nodes that receive user ingress traffic.

        When no node is explicitly marked, workers take the role, falling back
        to the control plane for clusters without workers.
        """
        marked = tuple(n for n in self.nodes if n.ingress)
        if marked:
            return marked
        return self.worker_nodes or self.control_plane_nodes

    def ingress_rules(self) -> tuple[IngressRule, ...]:
        """Declared ingress rules plus the fixed control-plane API rule."""
        return (*self.network.ingress_rules, api_server_rule(self.network))

    def validate(self) -> None:
        if not self.name:
            raise ClusterDefinitionError("Cluster name is required")
        if not self.nodes:
            raise ClusterDefinitionError(f"Cluster [{self.name}] declares no nodes")

        seen: set[str] = set()
        for node in self.nodes:
            key = node.name.casefold()
            if not node.name or key in seen:
                raise ClusterDefinitionError(f"Node name [{node.name}] is empty or not unique")
            seen.add(key)
            if node.placement_partition < 0:
                raise ClusterDefinitionError(f"Node [{node.name}] has a negative placement partition")
            if node.address is not None:
                try:
                    ipaddress.ip_address(node.address)
                except ValueError:
                    raise ClusterDefinitionError(
                        f"Node [{node.name}] address [{node.address}] is not an IP address"
                    ) from None

        if not self.control_plane_nodes:
            raise ClusterDefinitionError(f"Cluster [{self.name}] needs at least one control-plane node")

        ssh = self.network.ssh_ports
        _check_port(ssh.first, "First SSH port")
        _check_port(ssh.last, "Last SSH port")
        if ssh.first > ssh.last:
            raise ClusterDefinitionError(f"SSH port range [{ssh.first}-{ssh.last}] is empty")

        names: set[str] = set()
        for rule in self.network.ingress_rules:
            if rule.name in names:
                raise ClusterDefinitionError(f"Ingress rule [{rule.name}] is declared twice")
            names.add(rule.name)
            if rule.target == IngressTarget.SSH:
                raise ClusterDefinitionError(f"Ingress rule [{rule.name}] cannot target [ssh]")
            _check_port(rule.external_port, f"Ingress rule [{rule.name}] external port")
            _check_port(rule.node_port, f"Ingress rule [{rule.name}] node port")
            if rule.external_port in ssh:
                raise ClusterDefinitionError(
                    f"Ingress rule [{rule.name}] external port {rule.external_port} "
                    f"overlaps the SSH port range"
                )
            if rule.external_port == API_SERVER_PORT:
                raise ClusterDefinitionError(
                    f"Ingress rule [{rule.name}] external port {API_SERVER_PORT} is reserved"
                )

        for nameserver in self.network.nameservers:
            try:
                ipaddress.ip_address(nameserver)
            except ValueError:
                raise ClusterDefinitionError(f"Nameserver [{nameserver}] is not an IP address") from None

        for key, _ in self.resource_tags:
            if key == ClusterTag.NAME or key.startswith(RESERVED_TAG_PREFIXES):
                raise ClusterDefinitionError(f"Resource tag [{key}] is reserved for cluster discovery")

        group = self.resource_group
        if len(group) > RESOURCE_GROUP_MAX_LENGTH:
            raise ClusterDefinitionError(
                f"Resource group [{group}] is longer than {RESOURCE_GROUP_MAX_LENGTH} characters"
            )
        if not _RESOURCE_GROUP_NAME.fullmatch(group):
            raise ClusterDefinitionError(
                f"Resource group [{group}] must start with a letter, hold only letters, digits, "
                f"dashes and underscores, and not end with a dash or underscore"
            )

        self.aws.validate()
