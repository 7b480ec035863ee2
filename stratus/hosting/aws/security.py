"""Security group, network ACLs and load balancer routing.

The security group admits everything; filtering happens in the subnet ACLs.
``update_routing`` is the single entry point that converges target groups,
target membership, listeners and ACLs with the current definition and node
set. It is rerun whenever either changes, including to toggle external SSH.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from stratus.constants import ANY_CIDR, SSH_PORT, ClusterTag
from stratus.definition import (
    ClusterDefinition,
    IngressProtocol,
    IngressRule,
    IngressTarget,
    NodeDefinition,
)

from .acl import AclRuleSet, NetworkAclSwapper
from .balancer import LOAD_BALANCER, LoadBalancerManager, listener_protocol, target_group_logical
from .clients import EC2ClientFactory
from .network import NODE_SUBNET, PUBLIC_SUBNET, VPC
from .reconciler import ResourceReconciler, ResourceSpec
from .table import NodeArena, NodeRecord, Resource, ResourceKind
from .tags import tags_of

log = logger.bind(component="security")

SECURITY_GROUP = "security-group"


@dataclass(frozen=True, slots=True)
class RoutingSummary:
    """What one routing pass converged to."""

    ssh_enabled: bool
    listener_ports: tuple[int, ...]
    deleted_ports: tuple[int, ...]
    target_groups: tuple[str, ...]


def target_group_keys(rules: Sequence[IngressRule]) -> dict[tuple[IngressTarget, str, int], IngressRule]:
    """Distinct ``(target, protocol, node port)`` groups, first rule wins."""
    keys: dict[tuple[IngressTarget, str, int], IngressRule] = {}
    for rule in rules:
        keys.setdefault((rule.target, listener_protocol(rule.protocol), rule.node_port), rule)
    return keys


class SecurityManager:
    def __init__(
        self,
        definition: ClusterDefinition,
        reconciler: ResourceReconciler,
        balancer: LoadBalancerManager,
        *,
        ec2: EC2ClientFactory,
    ) -> None:
        self._definition = definition
        self._network = definition.network
        self._reconciler = reconciler
        self._table = reconciler.table
        self._tagger = reconciler.tagger
        self._balancer = balancer
        self._acls = NetworkAclSwapper(reconciler, ec2=ec2)
        self._ec2 = ec2

    # -------------------------------------------------------------------------
    # Security group and ACL objects
    # -------------------------------------------------------------------------

    async def ensure_security_group(self, vpc: Resource) -> Resource:
        async def create() -> dict:
            async with self._ec2() as ec2:
                response = await ec2.create_security_group(
                    GroupName=self._tagger.name(SECURITY_GROUP),
                    Description="Allow all traffic",
                    VpcId=vpc.id,
                    TagSpecifications=self._tagger.specifications(
                        "security-group", self._tagger.name(SECURITY_GROUP)
                    ),
                )
            return {
                "GroupId": response["GroupId"],
                "VpcId": vpc.id,
                "IpPermissions": [],
                "Tags": self._tagger.tags(self._tagger.name(SECURITY_GROUP)),
            }

        group = await self._reconciler.ensure(
            ResourceKind.SECURITY_GROUP, SECURITY_GROUP, ResourceSpec(create, {"vpc": vpc.id})
        )

        if not group.raw.get("IpPermissions"):
            async with self._ec2() as ec2:
                await ec2.authorize_security_group_ingress(
                    GroupId=group.id,
                    IpPermissions=[{
                        "IpProtocol": "-1",
                        "FromPort": 0,
                        "ToPort": 65535,
                        "IpRanges": [{"CidrIp": ANY_CIDR, "Description": "All traffic"}],
                    }],
                )
            log.info(f"Opened security group {group.id}")
        return group

    async def ensure_network_acls(self, vpc: Resource) -> None:
        for subnet in (PUBLIC_SUBNET, NODE_SUBNET):
            await self._acls.ensure_pair(vpc, subnet)

    async def apply_network_acls(self, ssh_enabled: bool) -> None:
        """Swap each subnet onto an ACL holding the current rule set."""
        vpc_cidr = self._definition.aws.vpc_subnet
        for subnet, public in ((PUBLIC_SUBNET, True), (NODE_SUBNET, False)):
            rules = AclRuleSet(
                vpc_cidr=vpc_cidr,
                ingress_rules=self._definition.ingress_rules(),
                public=public,
                ssh_enabled=ssh_enabled,
                ssh_ports=self._network.ssh_ports,
                management_rules=self._network.management_address_rules,
                egress_rules=self._network.egress_address_rules,
            )
            resource = self._table.require(ResourceKind.SUBNET, subnet)
            await self._acls.apply(subnet, resource.id, rules.entries())

    # -------------------------------------------------------------------------
    # SSH flag
    # -------------------------------------------------------------------------

    def ssh_flag(self) -> bool | None:
        """The persisted SSH toggle, or None before it was first written."""
        vpc = self._table.get(ResourceKind.VPC, VPC)
        if vpc is None:
            return None
        value = tags_of(vpc.raw).get(ClusterTag.NETWORK_SSH_ENABLED)
        return None if value is None else value == "true"

    async def _persist_ssh_flag(self, enabled: bool) -> None:
        if self.ssh_flag() == enabled:
            return
        vpc = self._table.require(ResourceKind.VPC, VPC)
        value = "true" if enabled else "false"
        async with self._ec2() as ec2:
            await ec2.create_tags(
                Resources=[vpc.id], Tags=[{"Key": ClusterTag.NETWORK_SSH_ENABLED.value, "Value": value}]
            )
        raw = dict(vpc.raw)
        tags = {**tags_of(raw), ClusterTag.NETWORK_SSH_ENABLED.value: value}
        raw["Tags"] = [{"Key": k, "Value": v} for k, v in tags.items()]
        self._reconciler.record(ResourceKind.VPC, VPC, raw)
        log.info(f"External SSH {'enabled' if enabled else 'disabled'}")

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    def _members(self, target: IngressTarget) -> tuple[NodeDefinition, ...]:
        if target == IngressTarget.CONTROL_PLANE:
            return self._definition.control_plane_nodes
        return self._definition.ingress_nodes()

    def ssh_group(self, record: NodeRecord) -> Resource | None:
        if record.external_ssh_port is None:
            return None
        logical = target_group_logical(IngressTarget.SSH, IngressProtocol.TCP, record.external_ssh_port)
        return self._table.get(ResourceKind.TARGET_GROUP, logical)

    async def ssh_listeners_present(self) -> bool:
        balancer = self._table.get(ResourceKind.LOAD_BALANCER, LOAD_BALANCER)
        if balancer is None:
            return False
        ssh_ports = self._network.ssh_ports
        return any(listener["Port"] in ssh_ports for listener in await self._balancer.listeners(balancer))

    async def update_routing(self, nodes: NodeArena, *, ssh_enabled: bool) -> RoutingSummary:
        """Converge target groups, membership, listeners and ACLs.

        Target membership is replaced wholesale on every call. Listeners on
        ports that are neither declared nor reserved for SSH are deleted, as
        are SSH listeners once SSH is disabled.
        """
        vpc = self._table.require(ResourceKind.VPC, VPC)
        balancer = self._table.require(ResourceKind.LOAD_BALANCER, LOAD_BALANCER)
        ssh_ports = self._network.ssh_ports

        desired: dict[int, tuple[str, Resource]] = {}
        groups: list[str] = []

        rules = self._definition.ingress_rules()
        group_by_key: dict[tuple[IngressTarget, str, int], Resource] = {}
        for key, rule in target_group_keys(rules).items():
            target, _, port = key
            group = await self._balancer.ensure_target_group(
                vpc, target, rule.protocol, port, rule.health_check or self._network.ingress_health_check
            )
            members = {n.name.casefold() for n in self._members(target)}
            await self._balancer.set_targets(
                group,
                (r.instance_id for r in nodes if r.instance_id and r.name.casefold() in members),
            )
            group_by_key[key] = group
            groups.append(group.name)

        for rule in rules:
            group = group_by_key[(rule.target, listener_protocol(rule.protocol), rule.node_port)]
            desired.setdefault(rule.external_port, (listener_protocol(rule.protocol), group))

        for record in nodes.sorted():
            if record.external_ssh_port is None or record.instance_id is None:
                continue
            group = await self._balancer.ensure_target_group(
                vpc, IngressTarget.SSH, IngressProtocol.TCP, SSH_PORT, self._network.ingress_health_check,
                external_port=record.external_ssh_port,
            )
            await self._balancer.set_targets(group, [record.instance_id])
            groups.append(group.name)
            if ssh_enabled:
                desired[record.external_ssh_port] = ("TCP", group)

        existing = {listener["Port"]: listener for listener in await self._balancer.listeners(balancer)}
        for port, (protocol, group) in sorted(desired.items()):
            await self._balancer.ensure_listener(balancer, existing.get(port), port, protocol, group)

        deleted: list[int] = []
        for port, listener in sorted(existing.items()):
            if port in desired:
                continue
            if port in ssh_ports and ssh_enabled:
                continue
            await self._balancer.delete_listener(listener)
            deleted.append(port)

        await self.apply_network_acls(ssh_enabled)
        await self._persist_ssh_flag(ssh_enabled)

        return RoutingSummary(
            ssh_enabled=ssh_enabled,
            listener_ports=tuple(sorted(desired)),
            deleted_ports=tuple(deleted),
            target_groups=tuple(groups),
        )
