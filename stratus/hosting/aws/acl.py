"""Network ACL rule synthesis and the dual-ACL swap.

Every subnet owns two ACLs, ``<subnet>-acl-a`` and ``<subnet>-acl-b``. Only
one is associated with the subnet at a time. A rule change rebuilds the
inactive one from scratch and then moves the subnet over with a single
association replacement, so traffic never meets a half-written rule set. The
previously active ACL keeps its old rules until the next change reuses it.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger

from stratus.constants import (
    ACL_BLOCK_SIZE,
    ANY_CIDR,
    DENY_ALL_ACL_RULE_NUMBER,
    EPHEMERAL_ACL_RULE_NUMBER,
    EPHEMERAL_PORTS,
    FIRST_EGRESS_ACL_RULE_NUMBER,
    FIRST_INGRESS_ACL_RULE_NUMBER,
    FIRST_INTERNAL_ACL_RULE_NUMBER,
    FIRST_SSH_ACL_RULE_NUMBER,
    SSH_PORT,
)
from stratus.definition import (
    AddressAction,
    AddressRule,
    IngressProtocol,
    IngressRule,
    SshPortRange,
)
from stratus.exceptions import CapacityError, UnexpectedStateError

from .clients import EC2ClientFactory
from .reconciler import ResourceReconciler, ResourceSpec
from .table import Resource, ResourceKind

log = logger.bind(component="acl")

_PROTOCOL_NUMBERS = {
    IngressProtocol.TCP: "6",
    IngressProtocol.HTTP: "6",
    IngressProtocol.HTTPS: "6",
    IngressProtocol.UDP: "17",
}
_ALL_PROTOCOLS = "-1"


@dataclass(frozen=True, slots=True, order=True)
class AclEntry:
    """One network ACL entry. Ports are ignored for the all-protocols value."""

    egress: bool
    rule_number: int
    protocol: str
    action: str
    cidr: str
    port_from: int | None = None
    port_to: int | None = None

    def to_api(self, acl_id: str) -> dict[str, Any]:
        request: dict[str, Any] = {
            "NetworkAclId": acl_id,
            "RuleNumber": self.rule_number,
            "Protocol": self.protocol,
            "RuleAction": self.action,
            "Egress": self.egress,
            "CidrBlock": self.cidr,
        }
        if self.port_from is not None:
            request["PortRange"] = {"From": self.port_from, "To": self.port_to}
        return request

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> AclEntry:
        ports = raw.get("PortRange") or {}
        protocol = str(raw["Protocol"])
        return cls(
            egress=bool(raw["Egress"]),
            rule_number=int(raw["RuleNumber"]),
            protocol=protocol,
            action=str(raw["RuleAction"]),
            cidr=str(raw.get("CidrBlock", "")),
            port_from=None if protocol == _ALL_PROTOCOLS else ports.get("From"),
            port_to=None if protocol == _ALL_PROTOCOLS else ports.get("To"),
        )


def managed_entries(raw_entries: Iterable[dict[str, Any]]) -> frozenset[AclEntry]:
    """Entries of an ACL description, minus the provider's default deny entries."""
    return frozenset(
        AclEntry.from_api(raw) for raw in raw_entries if raw["RuleNumber"] != DENY_ALL_ACL_RULE_NUMBER
    )


# =============================================================================
# Rule Synthesis
# =============================================================================


class _Block:
    """Allocates consecutive rule numbers within one numbering block."""

    def __init__(self, first: int, what: str) -> None:
        self._next = first
        self._last = first + ACL_BLOCK_SIZE - 1
        self._what = what

    def take(self) -> int:
        if self._next > self._last:
            raise CapacityError(f"More than {ACL_BLOCK_SIZE} network ACL entries needed for {self._what}")
        number = self._next
        self._next += 1
        return number


def _sources(rules: Sequence[AddressRule]) -> Sequence[AddressRule]:
    return rules or (AddressRule(ANY_CIDR, AddressAction.ALLOW),)


@dataclass(frozen=True, slots=True)
class AclRuleSet:
    """Inputs that determine one subnet's ACL entries.

    Attributes:
        vpc_cidr: Intra-cluster traffic is always allowed.
        ingress_rules: Declared ingress rules plus the fixed cluster rules.
        public: True for the load balancer subnet, where the external ports
            apply; False for the node subnet, where node ports apply.
        ssh_enabled: Whether external SSH is open.
        ssh_ports: The reserved external SSH port range.
        management_rules: Sources allowed to reach SSH.
        egress_rules: Destination filters for outbound traffic.
    """

    vpc_cidr: str
    ingress_rules: tuple[IngressRule, ...]
    public: bool
    ssh_enabled: bool
    ssh_ports: SshPortRange
    management_rules: tuple[AddressRule, ...] = ()
    egress_rules: tuple[AddressRule, ...] = ()

    def entries(self) -> frozenset[AclEntry]:
        entries: list[AclEntry] = [
            AclEntry(False, FIRST_INTERNAL_ACL_RULE_NUMBER, _ALL_PROTOCOLS, "allow", self.vpc_cidr),
            AclEntry(True, FIRST_INTERNAL_ACL_RULE_NUMBER, _ALL_PROTOCOLS, "allow", self.vpc_cidr),
        ]

        if self.ssh_enabled:
            block = _Block(FIRST_SSH_ACL_RULE_NUMBER, "SSH")
            ports = (self.ssh_ports.first, self.ssh_ports.last) if self.public else (SSH_PORT, SSH_PORT)
            for source in _sources(self.management_rules):
                entries.append(AclEntry(False, block.take(), "6", source.action.value, source.cidr, *ports))

        block = _Block(FIRST_INGRESS_ACL_RULE_NUMBER, "ingress rules")
        for rule in self.ingress_rules:
            port = rule.external_port if self.public else rule.node_port
            for source in _sources(rule.address_rules):
                entries.append(
                    AclEntry(
                        False, block.take(), _PROTOCOL_NUMBERS[rule.protocol],
                        source.action.value, source.cidr, port, port,
                    )
                )

        entries.append(AclEntry(False, EPHEMERAL_ACL_RULE_NUMBER, "6", "allow", ANY_CIDR, *EPHEMERAL_PORTS))

        block = _Block(FIRST_EGRESS_ACL_RULE_NUMBER, "egress rules")
        for destination in _sources(self.egress_rules):
            entries.append(AclEntry(True, block.take(), _ALL_PROTOCOLS, destination.action.value, destination.cidr))

        return frozenset(entries)


# =============================================================================
# Dual-ACL Swap
# =============================================================================


def acl_pair(subnet: str) -> tuple[str, str]:
    """Logical names of the two ACLs owned by a subnet (e.g. ``public-subnet``)."""
    base = subnet.removesuffix("-subnet")
    return f"{base}-acl-a", f"{base}-acl-b"


class NetworkAclSwapper:
    def __init__(self, reconciler: ResourceReconciler, *, ec2: EC2ClientFactory) -> None:
        self._reconciler = reconciler
        self._tagger = reconciler.tagger
        self._ec2 = ec2

    async def ensure_pair(self, vpc: Resource, subnet: str) -> tuple[Resource, Resource]:
        """Ensure both ACLs of a subnet exist."""
        created = []
        for logical in acl_pair(subnet):
            async def create(logical: str = logical) -> dict[str, Any]:
                async with self._ec2() as ec2:
                    response = await ec2.create_network_acl(
                        VpcId=vpc.id,
                        TagSpecifications=self._tagger.specifications("network-acl", self._tagger.name(logical)),
                    )
                return response["NetworkAcl"]

            created.append(
                await self._reconciler.ensure(
                    ResourceKind.NETWORK_ACL, logical, ResourceSpec(create, {"vpc": vpc.id})
                )
            )
        return created[0], created[1]

    async def _association(self, subnet_id: str) -> tuple[str, str]:
        """Current ``(acl id, association id)`` for a subnet."""
        async with self._ec2() as ec2:
            response = await ec2.describe_network_acls(
                Filters=[{"Name": "association.subnet-id", "Values": [subnet_id]}]
            )
        for acl in response.get("NetworkAcls") or ():
            for association in acl.get("Associations") or ():
                if association.get("SubnetId") == subnet_id:
                    return acl["NetworkAclId"], association["NetworkAclAssociationId"]
        raise UnexpectedStateError(f"subnet {subnet_id}", "no network ACL association")

    async def _entries(self, acl_id: str) -> list[dict[str, Any]]:
        async with self._ec2() as ec2:
            response = await ec2.describe_network_acls(NetworkAclIds=[acl_id])
        acls = response.get("NetworkAcls") or ()
        if not acls:
            raise UnexpectedStateError(f"network ACL {acl_id}", "missing")
        return list(acls[0].get("Entries") or ())

    async def apply(self, subnet: str, subnet_id: str, rules: frozenset[AclEntry]) -> str:
        """Make ``rules`` the subnet's active rule set.

        Returns:
            The id of the ACL associated with the subnet afterwards.
        """
        first, second = (self._reconciler.table.require(ResourceKind.NETWORK_ACL, n) for n in acl_pair(subnet))
        active_id, association_id = await self._association(subnet_id)

        if active_id in (first.id, second.id):
            if managed_entries(await self._entries(active_id)) == rules:
                log.debug(f"Network ACL {active_id} on {subnet} is current")
                return active_id

        inactive = second if active_id == first.id else first

        async with self._ec2() as ec2:
            for raw in await self._entries(inactive.id):
                if raw["RuleNumber"] == DENY_ALL_ACL_RULE_NUMBER:
                    continue
                await ec2.delete_network_acl_entry(
                    NetworkAclId=inactive.id, RuleNumber=raw["RuleNumber"], Egress=raw["Egress"]
                )
            for entry in sorted(rules):
                await ec2.create_network_acl_entry(**entry.to_api(inactive.id))
            await ec2.replace_network_acl_association(AssociationId=association_id, NetworkAclId=inactive.id)

        log.info(f"Swapped {subnet} network ACL {active_id} -> {inactive.id} ({len(rules)} entries)")
        return inactive.id
