"""Tag-based discovery and create-if-absent.

The reconciler is what makes every step safe to rerun. At the start of a run
``populate`` lists every cluster-tagged resource and fills the reconciliation
table; ``ensure`` then only creates what neither the table nor a fresh
discovery knows about, and refuses to reuse a resource whose defining
attributes say it was created for something else.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from botocore.exceptions import ClientError
from loguru import logger

from stratus.constants import (
    ClusterTag,
    InstanceState,
    NatGatewayState,
    VolumeState,
)
from stratus.exceptions import ConflictError
from stratus.poller import error_code

from .clients import EC2ClientFactory, ELBClientFactory
from .table import ReconciliationTable, Resource, ResourceKind
from .tags import Tagger, tags_of

log = logger.bind(component="reconciler")

type Raw = dict[str, Any]

_ELB_TAG_BATCH = 20


async def describe_all(client: Any, operation: str, **kwargs: Any) -> list[Raw]:
    """Return every response page of a describe call."""
    if client.can_paginate(operation):
        paginator = client.get_paginator(operation)
        return [page async for page in paginator.paginate(**kwargs)]
    return [await getattr(client, operation)(**kwargs)]


# =============================================================================
# Kind Registry
# =============================================================================


def _items(key: str) -> Callable[[Raw], Iterable[Raw]]:
    return lambda page: page.get(key) or ()


def _instances(page: Raw) -> Iterable[Raw]:
    for reservation in page.get("Reservations") or ():
        yield from reservation.get("Instances") or ()


def _nameservers(raw: Raw) -> tuple[str, ...]:
    for config in raw.get("DhcpConfigurations") or ():
        if config.get("Key") == "domain-name-servers":
            return tuple(v["Value"] if isinstance(v, dict) else v for v in config.get("Values") or ())
    return ()


@dataclass(frozen=True, slots=True)
class _Kind:
    service: Literal["ec2", "elb"]
    operation: str
    items: Callable[[Raw], Iterable[Raw]]
    id_field: str
    alive: Callable[[Raw], bool] = lambda raw: True
    defining: Callable[[Raw], dict[str, Any]] = lambda raw: {}


_KINDS: dict[ResourceKind, _Kind] = {
    ResourceKind.ELASTIC_IP: _Kind("ec2", "describe_addresses", _items("Addresses"), "AllocationId"),
    ResourceKind.VPC: _Kind(
        "ec2", "describe_vpcs", _items("Vpcs"), "VpcId",
        defining=lambda raw: {"cidr": raw.get("CidrBlock")},
    ),
    ResourceKind.DHCP_OPTIONS: _Kind(
        "ec2", "describe_dhcp_options", _items("DhcpOptions"), "DhcpOptionsId",
        defining=lambda raw: {"nameservers": _nameservers(raw)},
    ),
    ResourceKind.SECURITY_GROUP: _Kind(
        "ec2", "describe_security_groups", _items("SecurityGroups"), "GroupId",
        defining=lambda raw: {"vpc": raw.get("VpcId")},
    ),
    ResourceKind.SUBNET: _Kind(
        "ec2", "describe_subnets", _items("Subnets"), "SubnetId",
        defining=lambda raw: {
            "cidr": raw.get("CidrBlock"),
            "zone": raw.get("AvailabilityZone"),
            "vpc": raw.get("VpcId"),
        },
    ),
    ResourceKind.ROUTE_TABLE: _Kind(
        "ec2", "describe_route_tables", _items("RouteTables"), "RouteTableId",
        defining=lambda raw: {"vpc": raw.get("VpcId")},
    ),
    ResourceKind.INTERNET_GATEWAY: _Kind(
        "ec2", "describe_internet_gateways", _items("InternetGateways"), "InternetGatewayId",
    ),
    ResourceKind.NAT_GATEWAY: _Kind(
        "ec2", "describe_nat_gateways", _items("NatGateways"), "NatGatewayId",
        alive=lambda raw: raw.get("State") not in (
            NatGatewayState.DELETING, NatGatewayState.DELETED, NatGatewayState.FAILED,
        ),
        defining=lambda raw: {"subnet": raw.get("SubnetId")},
    ),
    ResourceKind.NETWORK_ACL: _Kind(
        "ec2", "describe_network_acls", _items("NetworkAcls"), "NetworkAclId",
        defining=lambda raw: {"vpc": raw.get("VpcId")},
    ),
    ResourceKind.PLACEMENT_GROUP: _Kind(
        "ec2", "describe_placement_groups", _items("PlacementGroups"), "GroupName",
        alive=lambda raw: raw.get("State") not in ("deleting", "deleted"),
        defining=lambda raw: {"strategy": raw.get("Strategy"), "partitions": raw.get("PartitionCount")},
    ),
    ResourceKind.KEY_PAIR: _Kind("ec2", "describe_key_pairs", _items("KeyPairs"), "KeyName"),
    ResourceKind.INSTANCE: _Kind(
        "ec2", "describe_instances", _instances, "InstanceId",
        alive=lambda raw: (raw.get("State") or {}).get("Name") != InstanceState.TERMINATED,
        defining=lambda raw: {"node": tags_of(raw).get(ClusterTag.NODE_NAME)},
    ),
    ResourceKind.VOLUME: _Kind(
        "ec2", "describe_volumes", _items("Volumes"), "VolumeId",
        alive=lambda raw: raw.get("State") not in (VolumeState.DELETING, VolumeState.DELETED),
    ),
    ResourceKind.LOAD_BALANCER: _Kind(
        "elb", "describe_load_balancers", _items("LoadBalancers"), "LoadBalancerArn",
        defining=lambda raw: {"type": raw.get("Type"), "scheme": raw.get("Scheme")},
    ),
    ResourceKind.TARGET_GROUP: _Kind(
        "elb", "describe_target_groups", _items("TargetGroups"), "TargetGroupArn",
        defining=lambda raw: {"protocol": raw.get("Protocol"), "port": raw.get("Port")},
    ),
}

_NAME_PROBES: dict[ResourceKind, tuple[str, str, str]] = {
    ResourceKind.LOAD_BALANCER: ("describe_load_balancers", "LoadBalancers", "LoadBalancerNotFound"),
    ResourceKind.TARGET_GROUP: ("describe_target_groups", "TargetGroups", "TargetGroupNotFound"),
}


@dataclass(frozen=True, slots=True)
class ResourceSpec:
    """How to create a resource and what an existing one must look like.

    Attributes:
        create: Issues the create call and returns the new resource's description.
        defining: Attributes an existing resource must share with this spec.
        provider_name: Account-unique provider name for kinds whose names are
            not scoped by the cluster (load balancers, target groups).
    """

    create: Callable[[], Awaitable[Raw]]
    defining: Mapping[str, Any] = field(default_factory=dict)
    provider_name: str | None = None


# =============================================================================
# Reconciler
# =============================================================================


class ResourceReconciler:
    def __init__(
        self,
        tagger: Tagger,
        table: ReconciliationTable,
        *,
        ec2: EC2ClientFactory,
        elb: ELBClientFactory,
    ) -> None:
        self.tagger = tagger
        self.table = table
        self._ec2 = ec2
        self._elb = elb

    def _logical(self, raw: Raw) -> str | None:
        name = tags_of(raw).get(ClusterTag.NAME)
        prefix = f"{self.tagger.cluster}."
        if name is None or not name.startswith(prefix):
            return None
        return name[len(prefix):]

    def record(self, kind: ResourceKind, name: str, raw: Raw) -> Resource:
        """Put a resource description into the table."""
        return self.table.put(Resource.of(kind, name, raw[_KINDS[kind].id_field], raw))

    async def _list_ec2(self, kind: ResourceKind, *filters: dict[str, Any]) -> list[Raw]:
        spec = _KINDS[kind]
        async with self._ec2() as ec2:
            pages = await describe_all(ec2, spec.operation, Filters=self.tagger.cluster_filter(*filters))
        return [raw for page in pages for raw in spec.items(page) if spec.alive(raw)]

    async def _list_elb(self, kind: ResourceKind) -> list[Raw]:
        spec = _KINDS[kind]
        async with self._elb() as elb:
            pages = await describe_all(elb, spec.operation)
            candidates = [raw for page in pages for raw in spec.items(page) if spec.alive(raw)]
            owned: list[Raw] = []
            for start in range(0, len(candidates), _ELB_TAG_BATCH):
                batch = candidates[start:start + _ELB_TAG_BATCH]
                by_arn = {raw[spec.id_field]: raw for raw in batch}
                response = await elb.describe_tags(ResourceArns=list(by_arn))
                for description in response.get("TagDescriptions") or ():
                    raw = dict(by_arn[description["ResourceArn"]])
                    raw["Tags"] = description.get("Tags") or []
                    if self.tagger.owns(raw):
                        owned.append(raw)
        return owned

    async def _list(self, kind: ResourceKind, name: str | None = None) -> list[Raw]:
        if _KINDS[kind].service == "elb":
            found = await self._list_elb(kind)
            if name is None:
                return found
            return [raw for raw in found if self._logical(raw) == name]
        if name is None:
            return await self._list_ec2(kind)
        return await self._list_ec2(kind, {"Name": f"tag:{ClusterTag.NAME}", "Values": [self.tagger.name(name)]})

    async def discover(self, kind: ResourceKind, name: str) -> Resource | None:
        """Look a resource up in the cloud by cluster and Name tag."""
        for raw in await self._list(kind, name):
            if self.tagger.matches(raw, self.tagger.name(name)):
                resource = self.record(kind, name, raw)
                log.debug(f"Discovered {kind} [{name}] = {resource.id}")
                return resource
        return None

    async def refresh(self, kind: ResourceKind, name: str) -> Resource | None:
        """Re-read a resource's description, dropping it from the table if gone."""
        resource = await self.discover(kind, name)
        if resource is None:
            self.table.remove(kind, name)
        return resource

    def validate(self, resource: Resource, spec: ResourceSpec) -> None:
        """Fail if ``resource`` was created for a different purpose than ``spec``.

        Raises:
            ConflictError: A defining attribute differs.
        """
        actual = _KINDS[resource.kind].defining(dict(resource.raw))
        for key, expected in spec.defining.items():
            observed = actual.get(key)
            if observed is not None and observed != expected:
                raise ConflictError(
                    resource.kind, resource.name,
                    f"{key} is {observed!r} but the cluster requires {expected!r}",
                )

    async def _check_name_free(self, kind: ResourceKind, provider_name: str) -> None:
        operation, key, not_found = _NAME_PROBES[kind]
        async with self._elb() as elb:
            try:
                response = await getattr(elb, operation)(Names=[provider_name])
            except ClientError as e:
                if error_code(e) == not_found:
                    return
                raise
        if response.get(key):
            raise ConflictError(kind, provider_name, "the name is taken by a resource outside this cluster")

    async def ensure(self, kind: ResourceKind, name: str, spec: ResourceSpec) -> Resource:
        """Return the resource, creating it only when discovery finds nothing.

        Raises:
            ConflictError: An existing resource does not match ``spec``, or a
                provider-unique name is held by a resource of another owner.
        """
        resource = self.table.get(kind, name) or await self.discover(kind, name)
        if resource is not None:
            self.validate(resource, spec)
            return resource

        if spec.provider_name is not None:
            await self._check_name_free(kind, spec.provider_name)

        raw = await spec.create()
        resource = self.record(kind, name, raw)
        log.info(f"Created {kind} [{name}] = {resource.id}")
        return resource

    async def populate(self) -> ReconciliationTable:
        """Rebuild the table from every cluster-tagged resource in the cloud."""
        self.table.clear()
        for kind in _KINDS:
            for raw in await self._list(kind):
                name = self._logical(raw)
                if name is None:
                    continue
                if self.table.get(kind, name) is not None:
                    log.warning(f"Ignoring duplicate {kind} [{name}] = {raw[_KINDS[kind].id_field]}")
                    continue
                self.record(kind, name, raw)
        log.debug(f"Discovered {len(self.table)} resource(s) for cluster [{self.tagger.cluster}]")
        return self.table
