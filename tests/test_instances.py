from __future__ import annotations

import pytest

from stratus.constants import USER_DATA_CLEARED, ClusterTag, InstanceState
from stratus.definition import NodeDefinition, NodeRole
from stratus.exceptions import UnexpectedStateError
from stratus.hosting.aws.instances import instance_state
from stratus.hosting.aws.manager import AwsHostingManager
from stratus.hosting.aws.network import VPC
from stratus.hosting.aws.table import InstancePhase, ResourceKind
from tests.conftest import IMAGE_ID, make_definition, make_manager
from tests.fakes import FakeEC2, FakeELB, FakeSSM, _tag_value

pytestmark = [pytest.mark.xdist_group("unit")]


async def _prepared(manager: AwsHostingManager) -> AwsHostingManager:
    """Everything a node instance depends on, without the load balancer."""
    await manager.discover()
    await manager.network.ensure_addresses()
    await manager.compute.ensure_placement_groups()
    manager.compute.assign_partitions(manager.arena)
    await manager.network.build()
    await manager.security.ensure_security_group(manager.table.require(ResourceKind.VPC, VPC))
    await manager.compute.ensure_key_pair()
    return manager


class TestInstanceState:
    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            (0, InstanceState.PENDING),
            (16, InstanceState.RUNNING),
            (16 | 0x1000, InstanceState.RUNNING),
            (80 | 0xFF00, InstanceState.STOPPED),
            (48, InstanceState.TERMINATED),
        ],
    )
    def test_low_byte_decides(self, code: int, expected: InstanceState):
        assert instance_state({"InstanceState": {"Code": code}}) == expected

    def test_unknown_code(self):
        assert instance_state({"InstanceState": {"Code": 7}}) is None


class TestProvision:
    @pytest.mark.asyncio
    async def test_new_node_reaches_ready(self, ec2: FakeEC2, elb: FakeELB, ssm: FakeSSM):
        manager = await _prepared(make_manager(make_definition(), ec2, elb, ssm))
        record = manager.arena.by_node("cp-0")
        reported: list[str] = []

        instance = await manager.instances.provision(record, IMAGE_ID, reported.append)

        assert record.phase == InstancePhase.READY
        assert record.instance_id == instance.id
        raw = ec2.instances[instance.id]
        assert raw["State"]["Name"] == "running"
        assert raw["ImageId"] == IMAGE_ID
        assert _tag_value(raw, ClusterTag.NAME) == "demo.cp-0"
        assert _tag_value(raw, ClusterTag.NODE_NAME) == "cp-0"
        assert _tag_value(raw, ClusterTag.NODE_USER_DATA) == USER_DATA_CLEARED
        assert ec2.user_data[instance.id] == b""
        assert reported[0] == "create: virtual machine"
        assert "bootstrap: clearing" in reported

    @pytest.mark.asyncio
    async def test_launch_request(self, ec2: FakeEC2, elb: FakeELB, ssm: FakeSSM):
        nodes = (
            NodeDefinition("cp-0", NodeRole.CONTROL_PLANE, instance_type="m5.large", volume_size_gb=64,
                           address="10.100.0.50"),
        )
        manager = await _prepared(make_manager(make_definition(nodes=nodes), ec2, elb, ssm))
        record = manager.arena.by_node("cp-0")
        record.external_ssh_port = 2222

        await manager.instances.provision(record, IMAGE_ID)

        request = ec2.called("run_instances")[0]
        assert request["InstanceType"] == "m5.large"
        assert request["PrivateIpAddress"] == "10.100.0.50"
        assert request["Placement"] == {
            "AvailabilityZone": "us-east-1a", "GroupName": "demo.control-placement", "PartitionNumber": 1,
        }
        assert request["BlockDeviceMappings"][0]["Ebs"]["VolumeSize"] == 64
        assert request["UserData"].startswith("#!/bin/bash")
        tags = {t["Key"]: t["Value"] for t in request["TagSpecifications"][0]["Tags"]}
        assert tags[ClusterTag.NODE_SSH_PORT] == "2222"

    @pytest.mark.asyncio
    async def test_volumes_are_named(self, ec2: FakeEC2, elb: FakeELB, ssm: FakeSSM):
        manager = await _prepared(make_manager(make_definition(), ec2, elb, ssm))
        record = manager.arena.by_node("cp-0")
        await manager.instances.provision(record, IMAGE_ID)

        names = sorted(_tag_value(v, ClusterTag.NAME) or "" for v in ec2.volumes.values())
        assert names == ["demo.cp-0.data", "demo.cp-0.os"]
        assert all(a["DeleteOnTermination"] for v in ec2.volumes.values() for a in v["Attachments"])

    @pytest.mark.asyncio
    async def test_second_run_does_not_recreate(self, ec2: FakeEC2, elb: FakeELB, ssm: FakeSSM):
        definition = make_definition()
        first = await _prepared(make_manager(definition, ec2, elb, ssm))
        await first.instances.provision(first.arena.by_node("cp-0"), IMAGE_ID)
        ec2.reset_calls()

        second = await _prepared(make_manager(definition, ec2, elb, ssm))
        record = second.arena.by_node("cp-0")
        assert record.phase == InstancePhase.RUNNING
        await second.instances.provision(record, IMAGE_ID)

        assert len(ec2.instances) == 1
        assert ec2.mutations() == []

    @pytest.mark.asyncio
    async def test_stopped_instance_is_restarted(self, ec2: FakeEC2, elb: FakeELB, ssm: FakeSSM):
        definition = make_definition()
        first = await _prepared(make_manager(definition, ec2, elb, ssm))
        instance = await first.instances.provision(first.arena.by_node("cp-0"), IMAGE_ID)
        ec2._set_state(ec2.instances[instance.id], "stopped")
        ec2.reset_calls()

        second = await _prepared(make_manager(definition, ec2, elb, ssm))
        record = second.arena.by_node("cp-0")
        assert record.phase == InstancePhase.STOPPED
        await second.instances.provision(record, IMAGE_ID)

        assert record.phase == InstancePhase.READY
        assert ec2.instances[instance.id]["State"]["Name"] == "running"
        assert len(ec2.called("start_instances")) == 1
        assert not ec2.called("stop_instances")

    @pytest.mark.asyncio
    async def test_shutting_down_fails_the_node(self, ec2: FakeEC2, elb: FakeELB, ssm: FakeSSM):
        manager = await _prepared(make_manager(make_definition(), ec2, elb, ssm))
        record = manager.arena.by_node("cp-0")
        ec2.fail_next_status = "shutting-down"

        with pytest.raises(UnexpectedStateError, match="shutting-down"):
            await manager.instances.provision(record, IMAGE_ID)
        assert not ec2.called("stop_instances")
