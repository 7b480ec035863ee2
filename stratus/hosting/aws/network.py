"""Virtual network topology: VPC, subnets, route tables and gateways.

Layout:

    VPC ── public subnet ── public route table ── 0.0.0.0/0 → internet gateway
       │        └── NAT gateway (egress elastic IP)
       └─ node subnet ──── node route table ──── 0.0.0.0/0 → NAT gateway
"""

from __future__ import annotations

from collections.abc import Callable

from loguru import logger

from stratus.constants import ANY_CIDR, NatGatewayState
from stratus.definition import ClusterDefinition
from stratus.exceptions import UnexpectedStateError
from stratus.poller import Fatal, PollResult, Ready, Waiting, poll_until

from .clients import EC2ClientFactory
from .reconciler import ResourceReconciler, ResourceSpec
from .table import Resource, ResourceKind

log = logger.bind(component="network")

type Report = Callable[[str], None]

# Logical resource names.
INGRESS_ADDRESS = "ingress-address"
EGRESS_ADDRESS = "egress-address"
VPC = "vpc"
DHCP_OPTIONS = "dhcp-opt"
PUBLIC_SUBNET = "public-subnet"
NODE_SUBNET = "node-subnet"
PUBLIC_ROUTE_TABLE = "public-route-table"
NODE_ROUTE_TABLE = "node-route-table"
INTERNET_GATEWAY = "internet-gateway"
NAT_GATEWAY = "nat-gateway"


def _quiet(_: str) -> None:
    pass


class NetworkTopologyBuilder:
    """Ensures the cluster's network resources, in dependency order."""

    def __init__(
        self,
        definition: ClusterDefinition,
        reconciler: ResourceReconciler,
        *,
        ec2: EC2ClientFactory,
    ) -> None:
        self._definition = definition
        self._options = definition.aws
        self._reconciler = reconciler
        self._tagger = reconciler.tagger
        self._ec2 = ec2

    # -------------------------------------------------------------------------
    # Elastic addresses
    # -------------------------------------------------------------------------

    async def ensure_address(self, logical: str) -> Resource:
        async def create() -> dict:
            async with self._ec2() as ec2:
                response = await ec2.allocate_address(
                    Domain="vpc",
                    TagSpecifications=self._tagger.specifications("elastic-ip", self._tagger.name(logical)),
                )
            return {
                "AllocationId": response["AllocationId"],
                "PublicIp": response["PublicIp"],
                "Tags": self._tagger.tags(self._tagger.name(logical)),
            }

        return await self._reconciler.ensure(ResourceKind.ELASTIC_IP, logical, ResourceSpec(create))

    async def ensure_addresses(self) -> tuple[Resource, Resource]:
        """Ensure the load balancer (ingress) and NAT gateway (egress) addresses."""
        return await self.ensure_address(INGRESS_ADDRESS), await self.ensure_address(EGRESS_ADDRESS)

    # -------------------------------------------------------------------------
    # Topology
    # -------------------------------------------------------------------------

    async def build(self, report: Report = _quiet) -> None:
        report("vpc")
        vpc = await self.ensure_vpc()
        await self.ensure_dhcp_options(vpc)

        report("subnets")
        public = await self.ensure_subnet(vpc, PUBLIC_SUBNET, self._options.public_subnet)
        node = await self.ensure_subnet(vpc, NODE_SUBNET, self._options.node_subnet)

        report("route tables")
        public_routes = await self.ensure_route_table(vpc, PUBLIC_ROUTE_TABLE, public)
        node_routes = await self.ensure_route_table(vpc, NODE_ROUTE_TABLE, node)

        report("internet gateway")
        gateway = await self.ensure_internet_gateway(vpc)
        await self.ensure_default_route(public_routes, gateway_id=gateway.id)

        report("nat gateway")
        nat = await self.ensure_nat_gateway(public)
        nat = await self.wait_for_nat_gateway(nat, report)
        await self.ensure_default_route(node_routes, nat_gateway_id=nat.id)

    async def ensure_vpc(self) -> Resource:
        cidr = self._options.vpc_subnet

        async def create() -> dict:
            async with self._ec2() as ec2:
                response = await ec2.create_vpc(
                    CidrBlock=cidr,
                    TagSpecifications=self._tagger.specifications("vpc", self._tagger.name(VPC)),
                )
            return response["Vpc"]

        return await self._reconciler.ensure(ResourceKind.VPC, VPC, ResourceSpec(create, {"cidr": cidr}))

    async def ensure_dhcp_options(self, vpc: Resource) -> Resource | None:
        """Point the VPC at custom nameservers, when any are configured."""
        nameservers = self._definition.network.nameservers
        if not nameservers:
            return None

        async def create() -> dict:
            async with self._ec2() as ec2:
                response = await ec2.create_dhcp_options(
                    DhcpConfigurations=[{"Key": "domain-name-servers", "Values": list(nameservers)}],
                    TagSpecifications=self._tagger.specifications("dhcp-options", self._tagger.name(DHCP_OPTIONS)),
                )
            return response["DhcpOptions"]

        options = await self._reconciler.ensure(
            ResourceKind.DHCP_OPTIONS, DHCP_OPTIONS, ResourceSpec(create, {"nameservers": tuple(nameservers)})
        )

        if vpc.raw.get("DhcpOptionsId") != options.id:
            async with self._ec2() as ec2:
                await ec2.associate_dhcp_options(DhcpOptionsId=options.id, VpcId=vpc.id)
            log.info(f"Associated DHCP options {options.id} with {vpc.id}")
        return options

    async def ensure_subnet(self, vpc: Resource, logical: str, cidr: str) -> Resource:
        zone = self._options.availability_zone

        async def create() -> dict:
            async with self._ec2() as ec2:
                response = await ec2.create_subnet(
                    VpcId=vpc.id,
                    CidrBlock=cidr,
                    AvailabilityZone=zone,
                    TagSpecifications=self._tagger.specifications("subnet", self._tagger.name(logical)),
                )
            return response["Subnet"]

        return await self._reconciler.ensure(
            ResourceKind.SUBNET, logical, ResourceSpec(create, {"cidr": cidr, "zone": zone, "vpc": vpc.id})
        )

    async def ensure_route_table(self, vpc: Resource, logical: str, subnet: Resource) -> Resource:
        async def create() -> dict:
            async with self._ec2() as ec2:
                response = await ec2.create_route_table(
                    VpcId=vpc.id,
                    TagSpecifications=self._tagger.specifications("route-table", self._tagger.name(logical)),
                )
            return response["RouteTable"]

        table = await self._reconciler.ensure(
            ResourceKind.ROUTE_TABLE, logical, ResourceSpec(create, {"vpc": vpc.id})
        )

        associations = table.raw.get("Associations") or ()
        if not any(a.get("SubnetId") == subnet.id for a in associations):
            async with self._ec2() as ec2:
                await ec2.associate_route_table(RouteTableId=table.id, SubnetId=subnet.id)
            log.info(f"Associated route table {table.id} with subnet {subnet.id}")
        return table

    async def ensure_internet_gateway(self, vpc: Resource) -> Resource:
        async def create() -> dict:
            async with self._ec2() as ec2:
                response = await ec2.create_internet_gateway(
                    TagSpecifications=self._tagger.specifications(
                        "internet-gateway", self._tagger.name(INTERNET_GATEWAY)
                    ),
                )
            return response["InternetGateway"]

        gateway = await self._reconciler.ensure(
            ResourceKind.INTERNET_GATEWAY, INTERNET_GATEWAY, ResourceSpec(create)
        )

        attachments = gateway.raw.get("Attachments") or ()
        if not any(a.get("VpcId") == vpc.id for a in attachments):
            async with self._ec2() as ec2:
                await ec2.attach_internet_gateway(InternetGatewayId=gateway.id, VpcId=vpc.id)
            log.info(f"Attached internet gateway {gateway.id} to {vpc.id}")
        return gateway

    async def ensure_default_route(
        self,
        table: Resource,
        *,
        gateway_id: str | None = None,
        nat_gateway_id: str | None = None,
    ) -> None:
        """Route ``0.0.0.0/0`` to a gateway unless the table already does.

        A default route left pointing at a replaced gateway is repointed in
        place; EC2 refuses a second route for the same destination.
        """
        target_id = gateway_id or nat_gateway_id
        current = next(
            (r for r in table.raw.get("Routes") or () if r.get("DestinationCidrBlock") == ANY_CIDR),
            None,
        )
        if current is not None and target_id in (current.get("GatewayId"), current.get("NatGatewayId")):
            return
        target = {"GatewayId": gateway_id} if gateway_id else {"NatGatewayId": nat_gateway_id}
        async with self._ec2() as ec2:
            if current is None:
                await ec2.create_route(RouteTableId=table.id, DestinationCidrBlock=ANY_CIDR, **target)
                log.info(f"Added default route {table.id} -> {target_id}")
            else:
                await ec2.replace_route(RouteTableId=table.id, DestinationCidrBlock=ANY_CIDR, **target)
                stale = current.get("NatGatewayId") or current.get("GatewayId")
                log.info(f"Repointed default route {table.id} from {stale} to {target_id}")

    async def ensure_nat_gateway(self, public: Resource) -> Resource:
        address = self._reconciler.table.require(ResourceKind.ELASTIC_IP, EGRESS_ADDRESS)

        async def create() -> dict:
            async with self._ec2() as ec2:
                response = await ec2.create_nat_gateway(
                    SubnetId=public.id,
                    AllocationId=address.id,
                    TagSpecifications=self._tagger.specifications("natgateway", self._tagger.name(NAT_GATEWAY)),
                )
            return response["NatGateway"]

        return await self._reconciler.ensure(
            ResourceKind.NAT_GATEWAY, NAT_GATEWAY, ResourceSpec(create, {"subnet": public.id})
        )

    async def wait_for_nat_gateway(self, nat: Resource, report: Report = _quiet) -> Resource:
        """Poll until the NAT gateway is available.

        Raises:
            OperationTimeoutError: Still pending after the operation timeout.
            UnexpectedStateError: The gateway reached any state but pending or available.
        """
        async def state() -> PollResult[Resource]:
            async with self._ec2() as ec2:
                response = await ec2.describe_nat_gateways(NatGatewayIds=[nat.id])
            gateways = response.get("NatGateways") or ()
            if not gateways:
                return Waiting("nat gateway: pending")
            raw = gateways[0]
            match raw.get("State"):
                case NatGatewayState.PENDING:
                    return Waiting("nat gateway: pending")
                case NatGatewayState.AVAILABLE:
                    return Ready(self._reconciler.record(ResourceKind.NAT_GATEWAY, NAT_GATEWAY, raw))
                case other:
                    return Fatal(UnexpectedStateError(f"NAT gateway {nat.id}", str(other)))

        if nat.raw.get("State") == NatGatewayState.AVAILABLE:
            return nat

        return await poll_until(
            state,
            timeout=self._options.operation_timeout,
            interval=self._options.poll_interval,
            description=f"NAT gateway {nat.id}",
            on_status=report,
        )
