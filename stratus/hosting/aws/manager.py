"""AWS hosting manager.

Owns the per-run state (reconciliation table and node arena) and contributes
the AWS provisioning steps, in this order:

    region check ─► locate image ─► resource group ─► elastic ip ─► placement groups
    ─► placement partitions* ─► external ssh ports* ─► network ─► ssh keys
    ─► node instances (per node) ─► load balancer ─► load balancer targets (per node)
    ─► storage (per node, post-provisioning)

Steps marked * are quiet.
"""

from __future__ import annotations

from collections.abc import Sequence

from loguru import logger

from stratus.constants import ClusterTag, InstanceState
from stratus.definition import ClusterDefinition, ClusterLogin
from stratus.exceptions import ClusterDefinitionError, UnexpectedStateError
from stratus.pipeline import ProvisioningPipeline, StepContext
from stratus.placement import resolve_partition_count
from stratus.ports import allocate_ports

from .balancer import LoadBalancerManager
from .clients import EC2ClientFactory, ELBClientFactory, ResourceGroupsClientFactory, SSMClientFactory
from .compute import ComputeResources
from .groups import ResourceGroup
from .instances import InstanceLifecycleController
from .network import INGRESS_ADDRESS, PUBLIC_SUBNET, VPC, NetworkTopologyBuilder
from .reconciler import ResourceReconciler
from .security import RoutingSummary, SecurityManager
from .table import InstancePhase, NodeArena, NodeRecord, ReconciliationTable, ResourceKind
from .tags import Tagger, load_balancer_name, tags_of
from .volumes import StorageVolumes

log = logger.bind(component="aws")

PRIMARY_DISK = "PRIMARY"

_DISCOVERED_PHASES = {
    InstanceState.PENDING: InstancePhase.PENDING,
    InstanceState.RUNNING: InstancePhase.RUNNING,
    InstanceState.STOPPING: InstancePhase.STOPPING,
    InstanceState.STOPPED: InstancePhase.STOPPED,
}


class AwsHostingManager:
    def __init__(
        self,
        definition: ClusterDefinition,
        login: ClusterLogin,
        *,
        ec2: EC2ClientFactory,
        elb: ELBClientFactory,
        ssm: SSMClientFactory,
        groups: ResourceGroupsClientFactory,
    ) -> None:
        self.validate(definition)
        self.definition = definition
        self.tagger = Tagger.for_cluster(definition)
        self.table = ReconciliationTable()
        self.arena = NodeArena([
            NodeRecord(node, self.tagger.name(node.name)) for node in definition.sorted_nodes()
        ])

        self.reconciler = ResourceReconciler(self.tagger, self.table, ec2=ec2, elb=elb)
        self.network = NetworkTopologyBuilder(definition, self.reconciler, ec2=ec2)
        self.balancer = LoadBalancerManager(definition, self.reconciler, elb=elb)
        self.security = SecurityManager(definition, self.reconciler, self.balancer, ec2=ec2)
        self.compute = ComputeResources(definition, login, self.reconciler, ec2=ec2, ssm=ssm)
        self.resource_group = ResourceGroup(definition, self.table, groups=groups)
        self.instances = InstanceLifecycleController(definition, login, self.reconciler, ec2=ec2)
        self.volumes = StorageVolumes(definition, self.reconciler, ec2=ec2)

        self._ec2 = ec2
        self._image_id: str | None = None

    # -------------------------------------------------------------------------
    # HostingManager
    # -------------------------------------------------------------------------

    @property
    def cluster(self) -> str:
        return self.definition.name

    @property
    def max_parallel(self) -> int:
        return self.definition.aws.max_parallel

    @property
    def can_manage_router(self) -> bool:
        return True

    @property
    def nodes(self) -> list[NodeRecord]:
        return self.arena.sorted()

    def validate(self, definition: ClusterDefinition) -> None:
        definition.validate()
        load_balancer_name(definition.name)

        options = definition.aws
        for nodes, configured in (
            (definition.control_plane_nodes, options.control_plane_placement_partitions),
            (definition.worker_nodes, options.worker_placement_partitions),
        ):
            count = resolve_partition_count(configured, len(nodes))
            for node in nodes:
                if node.placement_partition > count:
                    raise ClusterDefinitionError(
                        f"Node [{node.name}] placement partition {node.placement_partition} "
                        f"is outside 1..{count}"
                    )

    async def discover(self) -> int:
        """Repopulate the table and bind discovered instances to their nodes."""
        await self.reconciler.populate()

        for record in self.arena:
            record.instance = None
            record.external_ssh_port = None
            record.partition = None
            record.phase = InstancePhase.ABSENT

        for resource in self.table.of_kind(ResourceKind.INSTANCE):
            tags = tags_of(resource.raw)
            record = self.arena.find(tags.get(ClusterTag.NODE_NAME, ""))
            if record is None:
                log.warning(f"Instance {resource.id} [{resource.name}] is not a declared node")
                continue
            record.instance = resource
            port = tags.get(ClusterTag.NODE_SSH_PORT, "")
            if port.isdigit():
                record.external_ssh_port = int(port)
            record.partition = (resource.raw.get("Placement") or {}).get("PartitionNumber")
            state = (resource.raw.get("State") or {}).get("Name")
            record.phase = _DISCOVERED_PHASES.get(state, InstancePhase.ABSENT)
            log.debug(f"Node [{record.name}] -> {resource.id} ({state})")

        return len(self.table)

    def add_provisioning_steps(self, pipeline: ProvisioningPipeline[NodeRecord]) -> None:
        pipeline.add_global_step("region check", self._check_region)
        pipeline.add_global_step("locate image", self._locate_image)
        pipeline.add_global_step("resource group", self._resource_group)
        pipeline.add_global_step("elastic ip", self._elastic_ip)
        pipeline.add_global_step("placement groups", self._placement_groups)
        pipeline.add_global_step("placement partitions", self._placement_partitions, quiet=True)
        pipeline.add_global_step("external ssh ports", self._external_ssh_ports, quiet=True)
        pipeline.add_global_step("network", self._network)
        pipeline.add_global_step("ssh keys", self._ssh_keys)
        pipeline.add_node_step("node instances", self._node_instance)
        pipeline.add_global_step("load balancer", self._load_balancer)
        pipeline.add_node_step("load balancer targets", self._load_balancer_targets)

    def add_post_provisioning_steps(self, pipeline: ProvisioningPipeline[NodeRecord]) -> None:
        pipeline.add_node_step(
            "storage", self._storage, predicate=lambda record: bool(record.node.storage_volume_size_gb)
        )

    async def _ensure_discovered(self) -> None:
        if not len(self.table):
            await self.discover()

    async def update_internet_routing(self) -> RoutingSummary:
        """Converge routing, keeping SSH open if it already is."""
        await self._ensure_discovered()
        ssh_enabled = bool(self.security.ssh_flag()) or await self.security.ssh_listeners_present()
        return await self.security.update_routing(self.arena, ssh_enabled=ssh_enabled)

    async def enable_internet_ssh(self) -> RoutingSummary:
        await self._ensure_discovered()
        return await self.security.update_routing(self.arena, ssh_enabled=True)

    async def disable_internet_ssh(self) -> RoutingSummary:
        await self._ensure_discovered()
        return await self.security.update_routing(self.arena, ssh_enabled=False)

    def get_ssh_endpoint(self, node_name: str) -> tuple[str, int]:
        record = self.arena.find(node_name)
        if record is None:
            raise ClusterDefinitionError(f"Node [{node_name}] is not part of cluster [{self.cluster}]")
        if record.external_ssh_port is None:
            raise LookupError(f"Node [{node_name}] has no external SSH port yet")
        address = self.table.require(ResourceKind.ELASTIC_IP, INGRESS_ADDRESS)
        return address.raw["PublicIp"], record.external_ssh_port

    def get_data_disk(self, unpartitioned_disks: Sequence[str]) -> str:
        """The data disk is the only unpartitioned one; without any, data lives on the OS disk."""
        match list(unpartitioned_disks):
            case []:
                return PRIMARY_DISK
            case [disk]:
                return disk
            case disks:
                raise UnexpectedStateError("node data disk", f"{len(disks)} unpartitioned disks", ", ".join(disks))

    # -------------------------------------------------------------------------
    # Global steps
    # -------------------------------------------------------------------------

    async def _check_region(self, ctx: StepContext) -> None:
        ctx.report(f"checking {self.definition.aws.availability_zone}")
        await self.compute.check_region()

    async def _locate_image(self, ctx: StepContext) -> None:
        self._image_id = await self.compute.locate_image()
        ctx.report(self._image_id)

    async def _resource_group(self, ctx: StepContext) -> None:
        ctx.report(self.definition.resource_group)
        await self.resource_group.ensure()

    async def _elastic_ip(self, ctx: StepContext) -> None:
        ctx.report("allocating")
        await self.network.ensure_addresses()

    async def _placement_groups(self, ctx: StepContext) -> None:
        ctx.report("partition groups")
        await self.compute.ensure_placement_groups()

    async def _placement_partitions(self, ctx: StepContext) -> None:
        self.compute.assign_partitions(self.arena)

    async def _external_ssh_ports(self, ctx: StepContext) -> None:
        """Assign SSH ports and persist them on instances that predate the assignment."""
        assigned = {r.name: r.external_ssh_port for r in self.arena if r.external_ssh_port is not None}
        ports = allocate_ports(
            [(r.name, r.node.is_control_plane) for r in self.arena],
            self.definition.network.ssh_ports,
            assigned,
        )
        for record in self.arena.sorted():
            record.external_ssh_port = ports[record.name]
            if record.instance is None or record.name in assigned:
                continue
            async with self._ec2() as ec2:
                await ec2.create_tags(
                    Resources=[record.instance.id],
                    Tags=[{"Key": ClusterTag.NODE_SSH_PORT.value, "Value": str(record.external_ssh_port)}],
                )
            ctx.report(f"{record.name}: {record.external_ssh_port}")

    async def _network(self, ctx: StepContext) -> None:
        await self.network.build(ctx.report)
        vpc = self.table.require(ResourceKind.VPC, VPC)
        ctx.report("security group")
        await self.security.ensure_security_group(vpc)
        ctx.report("network acls")
        await self.security.ensure_network_acls(vpc)
        ssh_flag = self.security.ssh_flag()
        await self.security.apply_network_acls(True if ssh_flag is None else ssh_flag)

    async def _ssh_keys(self, ctx: StepContext) -> None:
        ctx.report("importing")
        await self.compute.ensure_key_pair()

    async def _load_balancer(self, ctx: StepContext) -> None:
        ctx.report("creating")
        balancer = await self.balancer.ensure_load_balancer(
            self.table.require(ResourceKind.SUBNET, PUBLIC_SUBNET),
            self.table.require(ResourceKind.ELASTIC_IP, INGRESS_ADDRESS),
        )
        await self.balancer.wait_until_active(balancer, ctx.report)
        ctx.report("routing")
        await self.security.update_routing(self.arena, ssh_enabled=True)

    # -------------------------------------------------------------------------
    # Per-node steps
    # -------------------------------------------------------------------------

    async def _node_instance(self, ctx: StepContext, record: NodeRecord) -> None:
        if self._image_id is None:
            raise LookupError("The machine image has not been located")
        await self.instances.provision(record, self._image_id, ctx.report)

    async def _load_balancer_targets(self, ctx: StepContext, record: NodeRecord) -> None:
        group = self.security.ssh_group(record)
        if group is None or record.instance_id is None:
            raise LookupError(f"Node [{record.name}] has no SSH target group")
        await self.balancer.wait_for_healthy(group, record.instance_id, ctx.report)

    async def _storage(self, ctx: StepContext, record: NodeRecord) -> None:
        await self.volumes.attach_storage(record, ctx.report)
