"""Node instance lifecycle.

    ABSENT ─► CREATING ─► PENDING ─► RUNNING ─► BOOTSTRAP_CLEARING ─► READY
                             ▲           │
                             └─ STOPPED ◄┘   (self-healed by a restart)

Every transition is driven by polling the instance status. An instance that is
shutting down, stopping on its own or terminated cannot be recovered here and
fails the node.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from loguru import logger

from stratus.constants import (
    DATA_DEVICE_NAME,
    INSTANCE_STATE_CODES,
    USER_DATA_CLEARED,
    ClusterTag,
    InstanceState,
)
from stratus.definition import ClusterDefinition, ClusterLogin
from stratus.exceptions import UnexpectedStateError
from stratus.poller import Fatal, PollResult, Ready, Waiting, poll_until

from .bootstrap import first_boot_script
from .clients import EC2ClientFactory
from .network import NODE_SUBNET
from .reconciler import ResourceReconciler, ResourceSpec
from .security import SECURITY_GROUP
from .table import InstancePhase, NodeRecord, Resource, ResourceKind
from .tags import node_tag, tags_of

log = logger.bind(component="instances")

type Report = Callable[[str], None]

KEY_PAIR = "ssh-keys"
CONTROL_PLACEMENT = "control-placement"
WORKER_PLACEMENT = "worker-placement"


def _quiet(_: str) -> None:
    pass


def placement_group_for(record: NodeRecord) -> str:
    return CONTROL_PLACEMENT if record.node.is_control_plane else WORKER_PLACEMENT


def instance_state(status: dict[str, Any]) -> InstanceState | None:
    """Decode an instance state; only the low byte of the code is meaningful."""
    return INSTANCE_STATE_CODES.get(status["InstanceState"]["Code"] & 0xFF)


class InstanceLifecycleController:
    def __init__(
        self,
        definition: ClusterDefinition,
        login: ClusterLogin,
        reconciler: ResourceReconciler,
        *,
        ec2: EC2ClientFactory,
    ) -> None:
        self._definition = definition
        self._options = definition.aws
        self._login = login
        self._reconciler = reconciler
        self._table = reconciler.table
        self._tagger = reconciler.tagger
        self._ec2 = ec2

    async def provision(self, record: NodeRecord, image_id: str, report: Report = _quiet) -> Resource:
        """Drive one node from whatever state it is in to READY."""
        if record.instance is None:
            record.phase = InstancePhase.CREATING
            report("create: virtual machine")
            record.instance = await self.ensure_instance(record, image_id)

        record.phase = InstancePhase.PENDING
        await self.wait_running(record, report)
        instance = await self.reload(record)

        report("tag: volumes")
        await self.tag_volumes(record, instance)

        if tags_of(instance.raw).get(ClusterTag.NODE_USER_DATA) != USER_DATA_CLEARED:
            await self.clear_bootstrap_data(record, report)

        record.phase = InstancePhase.READY
        return self._table.require(ResourceKind.INSTANCE, record.name)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def _launch_request(self, record: NodeRecord, image_id: str) -> dict[str, Any]:
        node = record.node
        options = self._options
        tags = node_tag(node.name)
        if record.external_ssh_port is not None:
            tags[ClusterTag.NODE_SSH_PORT.value] = str(record.external_ssh_port)

        placement: dict[str, Any] = {
            "AvailabilityZone": options.availability_zone,
            "GroupName": self._table.require(ResourceKind.PLACEMENT_GROUP, placement_group_for(record)).id,
        }
        if record.partition is not None:
            placement["PartitionNumber"] = record.partition

        request: dict[str, Any] = {
            "ImageId": image_id,
            "InstanceType": node.instance_type or options.default_instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "KeyName": self._table.require(ResourceKind.KEY_PAIR, KEY_PAIR).id,
            "SubnetId": self._table.require(ResourceKind.SUBNET, NODE_SUBNET).id,
            "SecurityGroupIds": [self._table.require(ResourceKind.SECURITY_GROUP, SECURITY_GROUP).id],
            "Placement": placement,
            "EbsOptimized": options.default_ebs_optimized if node.ebs_optimized is None else node.ebs_optimized,
            "BlockDeviceMappings": [{
                "DeviceName": DATA_DEVICE_NAME,
                "Ebs": {
                    "VolumeSize": node.volume_size_gb or options.default_volume_size_gb,
                    "VolumeType": (node.volume_type or options.default_volume_type).value,
                    "DeleteOnTermination": True,
                },
            }],
            "UserData": first_boot_script(self._login),
            "TagSpecifications": self._tagger.specifications("instance", record.instance_name, **tags),
        }
        if node.address:
            request["PrivateIpAddress"] = node.address
        return request

    async def ensure_instance(self, record: NodeRecord, image_id: str) -> Resource:
        request = self._launch_request(record, image_id)

        async def create() -> dict:
            async with self._ec2() as ec2:
                response = await ec2.run_instances(**request)
            raw = dict(response["Instances"][0])
            raw.setdefault("Tags", request["TagSpecifications"][0]["Tags"])
            return raw

        return await self._reconciler.ensure(
            ResourceKind.INSTANCE, record.name, ResourceSpec(create, {"node": record.node.name})
        )

    async def reload(self, record: NodeRecord) -> Resource:
        """Re-read the instance description into the table and the record."""
        async with self._ec2() as ec2:
            response = await ec2.describe_instances(InstanceIds=[record.instance_id])
        instances = [i for r in response.get("Reservations") or () for i in r.get("Instances") or ()]
        if not instances:
            raise UnexpectedStateError(f"instance {record.instance_id}", "missing", f"node {record.name}")
        record.instance = self._reconciler.record(ResourceKind.INSTANCE, record.name, instances[0])
        return record.instance

    # -------------------------------------------------------------------------
    # State polling
    # -------------------------------------------------------------------------

    async def _status(self, record: NodeRecord) -> dict[str, Any] | None:
        async with self._ec2() as ec2:
            response = await ec2.describe_instance_status(
                InstanceIds=[record.instance_id], IncludeAllInstances=True
            )
        statuses = response.get("InstanceStatuses") or ()
        return statuses[0] if statuses else None

    async def wait_running(self, record: NodeRecord, report: Report = _quiet) -> None:
        """Poll until the instance is running and passes its system status check.

        A stopped instance is started again.

        Raises:
            UnexpectedStateError: The instance is shutting down, stopping or terminated.
            OperationTimeoutError: Not running within the operation timeout.
        """
        async def state() -> PollResult[None]:
            status = await self._status(record)
            if status is None:
                return Waiting("instance: pending")
            match instance_state(status):
                case InstanceState.PENDING:
                    record.phase = InstancePhase.PENDING
                    return Waiting("instance: pending")
                case InstanceState.STOPPED:
                    record.phase = InstancePhase.STARTING
                    async with self._ec2() as ec2:
                        await ec2.start_instances(InstanceIds=[record.instance_id])
                    log.info(f"Restarting stopped instance {record.instance_id} for node [{record.name}]")
                    return Waiting("instance: restarting")
                case InstanceState.RUNNING:
                    record.phase = InstancePhase.RUNNING
                    if (status.get("SystemStatus") or {}).get("Status") != "ok":
                        return Waiting("instance: status checks")
                    return Ready(None)
                case other:
                    return Fatal(UnexpectedStateError(
                        f"instance {record.instance_id}", str(other),
                        f"node {record.name} needs operator attention",
                    ))

        await poll_until(
            state,
            timeout=self._options.operation_timeout,
            interval=self._options.poll_interval,
            description=f"instance {record.instance_id} running",
            on_status=report,
        )

    async def wait_stopped(self, record: NodeRecord, report: Report = _quiet) -> None:
        async def state() -> PollResult[None]:
            status = await self._status(record)
            if status is None:
                return Waiting("instance: stopping")
            match instance_state(status):
                case InstanceState.STOPPING | InstanceState.RUNNING:
                    return Waiting("instance: stopping")
                case InstanceState.STOPPED:
                    record.phase = InstancePhase.STOPPED
                    return Ready(None)
                case other:
                    return Fatal(UnexpectedStateError(f"instance {record.instance_id}", str(other)))

        await poll_until(
            state,
            timeout=self._options.operation_timeout,
            interval=self._options.poll_interval,
            description=f"instance {record.instance_id} stopped",
            on_status=report,
        )

    # -------------------------------------------------------------------------
    # Post-boot
    # -------------------------------------------------------------------------

    async def tag_volumes(self, record: NodeRecord, instance: Resource) -> None:
        """Name the OS and data volumes and make sure they die with the instance."""
        root = instance.raw.get("RootDeviceName")
        pending: list[tuple[str, str, dict[str, Any]]] = []
        for mapping in instance.raw.get("BlockDeviceMappings") or ():
            device = mapping.get("DeviceName")
            ebs = mapping.get("Ebs") or {}
            if device == root:
                logical = f"{record.name}.os"
            elif device == DATA_DEVICE_NAME:
                logical = f"{record.name}.data"
            else:
                continue
            if self._table.get(ResourceKind.VOLUME, logical) is None:
                pending.append((logical, device, ebs))

        if not pending:
            return

        async with self._ec2() as ec2:
            for logical, device, ebs in pending:
                tags = self._tagger.tags(self._tagger.name(logical), **node_tag(record.node.name))
                await ec2.create_tags(Resources=[ebs["VolumeId"]], Tags=tags)
                if not ebs.get("DeleteOnTermination", False):
                    await ec2.modify_instance_attribute(
                        InstanceId=record.instance_id,
                        BlockDeviceMappings=[{"DeviceName": device, "Ebs": {"DeleteOnTermination": True}}],
                    )
                self._reconciler.record(ResourceKind.VOLUME, logical, {"VolumeId": ebs["VolumeId"], "Tags": tags})
                log.debug(f"Tagged volume {ebs['VolumeId']} as [{logical}]")

    async def clear_bootstrap_data(self, record: NodeRecord, report: Report = _quiet) -> None:
        """Stop the instance, blank its user data and start it again, once."""
        instance_id = record.instance_id

        record.phase = InstancePhase.STOPPING
        report("bootstrap: stopping")
        async with self._ec2() as ec2:
            await ec2.stop_instances(InstanceIds=[instance_id])
        await self.wait_stopped(record, report)

        record.phase = InstancePhase.BOOTSTRAP_CLEARING
        report("bootstrap: clearing")
        async with self._ec2() as ec2:
            await ec2.modify_instance_attribute(InstanceId=instance_id, UserData={"Value": b""})
            await ec2.start_instances(InstanceIds=[instance_id])

        record.phase = InstancePhase.STARTING
        await self.wait_running(record, report)

        async with self._ec2() as ec2:
            await ec2.create_tags(
                Resources=[instance_id],
                Tags=[{"Key": ClusterTag.NODE_USER_DATA.value, "Value": USER_DATA_CLEARED}],
            )
        await self.reload(record)
        log.info(f"Cleared bootstrap data on {instance_id} for node [{record.name}]")
