from __future__ import annotations

from dataclasses import replace

import pytest

from stratus.constants import ANY_CIDR
from stratus.definition import NetworkOptions
from stratus.exceptions import OperationTimeoutError, UnexpectedStateError
from stratus.hosting.aws.network import (
    EGRESS_ADDRESS,
    INGRESS_ADDRESS,
    NODE_ROUTE_TABLE,
    NODE_SUBNET,
    PUBLIC_ROUTE_TABLE,
    PUBLIC_SUBNET,
    VPC,
    NetworkTopologyBuilder,
)
from stratus.hosting.aws.reconciler import ResourceReconciler
from stratus.hosting.aws.table import ReconciliationTable, ResourceKind
from stratus.hosting.aws.tags import Tagger
from tests.conftest import make_definition
from tests.fakes import FakeEC2, FakeELB

pytestmark = [pytest.mark.xdist_group("unit")]


def _builder(ec2: FakeEC2, elb: FakeELB, **aws: object) -> NetworkTopologyBuilder:
    definition = make_definition(**aws)
    reconciler = ResourceReconciler(
        Tagger.for_cluster(definition), ReconciliationTable(), ec2=ec2.factory(), elb=elb.factory()
    )
    return NetworkTopologyBuilder(definition, reconciler, ec2=ec2.factory())


async def _build(ec2: FakeEC2, elb: FakeELB, **aws: object) -> NetworkTopologyBuilder:
    builder = _builder(ec2, elb, **aws)
    await builder._reconciler.populate()
    await builder.ensure_addresses()
    await builder.build()
    return builder


class TestAddresses:
    @pytest.mark.asyncio
    async def test_two_tagged_addresses(self, ec2: FakeEC2, elb: FakeELB):
        ingress, egress = await _builder(ec2, elb).ensure_addresses()
        assert ingress.id != egress.id
        assert ingress.raw["PublicIp"].startswith("203.0.113.")
        names = sorted(a["Tags"][0]["Value"] for a in ec2.addresses.values())
        assert names == [f"demo.{EGRESS_ADDRESS}", f"demo.{INGRESS_ADDRESS}"]

    @pytest.mark.asyncio
    async def test_reallocation_is_skipped(self, ec2: FakeEC2, elb: FakeELB):
        await _builder(ec2, elb).ensure_addresses()
        await _builder(ec2, elb).ensure_addresses()
        assert len(ec2.addresses) == 2


class TestBuild:
    @pytest.mark.asyncio
    async def test_topology(self, ec2: FakeEC2, elb: FakeELB):
        builder = await _build(ec2, elb)
        table = builder._reconciler.table

        vpc = table.require(ResourceKind.VPC, VPC)
        public = table.require(ResourceKind.SUBNET, PUBLIC_SUBNET)
        node = table.require(ResourceKind.SUBNET, NODE_SUBNET)
        assert ec2.vpcs[vpc.id]["CidrBlock"] == "10.100.0.0/16"
        assert ec2.subnets[public.id]["CidrBlock"] == "10.100.255.0/24"
        assert ec2.subnets[node.id]["CidrBlock"] == "10.100.0.0/24"

        gateway = table.require(ResourceKind.INTERNET_GATEWAY, "internet-gateway")
        assert ec2.internet_gateways[gateway.id]["Attachments"] == [{"VpcId": vpc.id, "State": "available"}]

        nat = table.require(ResourceKind.NAT_GATEWAY, "nat-gateway")
        assert ec2.nat_gateways[nat.id]["State"] == "available"
        assert ec2.nat_gateways[nat.id]["SubnetId"] == public.id

        public_routes = ec2.route_tables[table.require(ResourceKind.ROUTE_TABLE, PUBLIC_ROUTE_TABLE).id]
        node_routes = ec2.route_tables[table.require(ResourceKind.ROUTE_TABLE, NODE_ROUTE_TABLE).id]
        assert [a["SubnetId"] for a in public_routes["Associations"]] == [public.id]
        assert [a["SubnetId"] for a in node_routes["Associations"]] == [node.id]
        assert {"DestinationCidrBlock": ANY_CIDR, "State": "active", "GatewayId": gateway.id} in public_routes["Routes"]
        assert {"DestinationCidrBlock": ANY_CIDR, "State": "active", "NatGatewayId": nat.id} in node_routes["Routes"]

    @pytest.mark.asyncio
    async def test_rerun_changes_nothing(self, ec2: FakeEC2, elb: FakeELB):
        first = await _build(ec2, elb)
        ec2.reset_calls()

        second = await _build(ec2, elb)
        assert ec2.mutations() == []
        assert second._reconciler.table.handles() == first._reconciler.table.handles()

    @pytest.mark.asyncio
    async def test_replaced_nat_gateway_repoints_default_route(self, ec2: FakeEC2, elb: FakeELB):
        first = await _build(ec2, elb)
        old = first._reconciler.table.require(ResourceKind.NAT_GATEWAY, "nat-gateway")
        ec2.nat_gateways[old.id]["State"] = "failed"
        ec2.reset_calls()

        second = await _build(ec2, elb)
        table = second._reconciler.table
        new = table.require(ResourceKind.NAT_GATEWAY, "nat-gateway")
        assert new.id != old.id

        node_routes = ec2.route_tables[table.require(ResourceKind.ROUTE_TABLE, NODE_ROUTE_TABLE).id]["Routes"]
        defaults = [r for r in node_routes if r["DestinationCidrBlock"] == ANY_CIDR]
        assert defaults == [{"DestinationCidrBlock": ANY_CIDR, "State": "active", "NatGatewayId": new.id}]
        assert [c["NatGatewayId"] for c in ec2.called("replace_route")] == [new.id]
        assert ec2.called("create_route") == []

    @pytest.mark.asyncio
    async def test_status_reports(self, ec2: FakeEC2, elb: FakeELB):
        builder = _builder(ec2, elb)
        await builder.ensure_addresses()
        reported: list[str] = []
        await builder.build(reported.append)
        assert reported[:5] == ["vpc", "subnets", "route tables", "internet gateway", "nat gateway"]
        assert "nat gateway: pending" in reported

    @pytest.mark.asyncio
    async def test_stuck_nat_gateway_times_out(self, ec2: FakeEC2, elb: FakeELB):
        ec2.nat_stuck = True
        builder = _builder(ec2, elb, operation_timeout=0.05)
        await builder.ensure_addresses()
        with pytest.raises(OperationTimeoutError) as excinfo:
            await builder.build()
        assert isinstance(excinfo.value, TimeoutError)
        assert not any(
            r.get("NatGatewayId") for t in ec2.route_tables.values() for r in t["Routes"]
        )

    @pytest.mark.asyncio
    async def test_failed_nat_gateway(self, ec2: FakeEC2, elb: FakeELB):
        ec2.nat_stuck = True
        builder = _builder(ec2, elb)
        await builder.ensure_addresses()
        vpc = await builder.ensure_vpc()
        public = await builder.ensure_subnet(vpc, PUBLIC_SUBNET, "10.100.255.0/24")
        nat = await builder.ensure_nat_gateway(public)
        ec2.nat_gateways[nat.id]["State"] = "failed"
        with pytest.raises(UnexpectedStateError, match="failed"):
            await builder.wait_for_nat_gateway(nat)


class TestDhcpOptions:
    @pytest.mark.asyncio
    async def test_nameservers_associated_once(self, ec2: FakeEC2, elb: FakeELB):
        definition = replace(make_definition(), network=NetworkOptions(nameservers=("10.0.0.2", "10.0.0.3")))

        def builder() -> NetworkTopologyBuilder:
            reconciler = ResourceReconciler(
                Tagger.for_cluster(definition), ReconciliationTable(), ec2=ec2.factory(), elb=elb.factory()
            )
            return NetworkTopologyBuilder(definition, reconciler, ec2=ec2.factory())

        first = builder()
        vpc = await first.ensure_vpc()
        options = await first.ensure_dhcp_options(vpc)
        assert options is not None
        assert ec2.vpcs[vpc.id]["DhcpOptionsId"] == options.id

        ec2.reset_calls()
        second = builder()
        vpc = await second.ensure_vpc()
        await second.ensure_dhcp_options(vpc)
        assert ec2.mutations() == []

    @pytest.mark.asyncio
    async def test_no_nameservers(self, ec2: FakeEC2, elb: FakeELB):
        builder = _builder(ec2, elb)
        vpc = await builder.ensure_vpc()
        assert await builder.ensure_dhcp_options(vpc) is None
        assert not ec2.called("create_dhcp_options")
