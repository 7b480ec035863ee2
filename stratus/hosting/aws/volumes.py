"""Extra block storage attached to nodes after provisioning."""

from __future__ import annotations

from collections.abc import Callable

from loguru import logger

from stratus.constants import STORAGE_DEVICE_NAME, VolumeState
from stratus.definition import ClusterDefinition, VolumeType
from stratus.exceptions import ConflictError, UnexpectedStateError
from stratus.poller import Fatal, PollResult, Ready, Waiting, poll_until

from .clients import EC2ClientFactory
from .reconciler import ResourceReconciler, ResourceSpec
from .table import NodeRecord, Resource, ResourceKind
from .tags import node_tag

log = logger.bind(component="volumes")

type Report = Callable[[str], None]


def _quiet(_: str) -> None:
    pass


def storage_volume_name(record: NodeRecord) -> str:
    return f"{record.name}.storage"


class StorageVolumes:
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

    async def attach_storage(self, record: NodeRecord, report: Report = _quiet) -> Resource | None:
        """Ensure the node's storage volume exists, is attached and dies with the instance."""
        size = record.node.storage_volume_size_gb
        if not size or record.instance_id is None:
            return None

        report("storage: volume")
        volume = await self.ensure_volume(record, size)
        volume = await self.wait_for_volume(volume, report)

        attachments = volume.raw.get("Attachments") or ()
        attached_to = {a.get("InstanceId") for a in attachments}
        if attached_to - {record.instance_id}:
            raise ConflictError(
                ResourceKind.VOLUME, volume.name, f"attached to {sorted(attached_to)}, not {record.instance_id}"
            )

        if record.instance_id not in attached_to:
            report("storage: attaching")
            async with self._ec2() as ec2:
                await ec2.attach_volume(
                    Device=STORAGE_DEVICE_NAME, InstanceId=record.instance_id, VolumeId=volume.id
                )
            log.info(f"Attached {volume.id} to {record.instance_id} as {STORAGE_DEVICE_NAME}")
            volume = await self.wait_for_volume(volume, report, attached=True)

        if not any(a.get("DeleteOnTermination") for a in volume.raw.get("Attachments") or ()):
            async with self._ec2() as ec2:
                await ec2.modify_instance_attribute(
                    InstanceId=record.instance_id,
                    BlockDeviceMappings=[{"DeviceName": STORAGE_DEVICE_NAME, "Ebs": {"DeleteOnTermination": True}}],
                )
        return volume

    async def ensure_volume(self, record: NodeRecord, size: int) -> Resource:
        logical = storage_volume_name(record)
        volume_type = record.node.volume_type or self._options.default_volume_type

        async def create() -> dict:
            async with self._ec2() as ec2:
                return await ec2.create_volume(
                    AvailabilityZone=self._options.availability_zone,
                    Size=size,
                    VolumeType=VolumeType(volume_type).value,
                    TagSpecifications=self._tagger.specifications(
                        "volume", self._tagger.name(logical), **node_tag(record.node.name)
                    ),
                )

        return await self._reconciler.ensure(ResourceKind.VOLUME, logical, ResourceSpec(create))

    async def wait_for_volume(self, volume: Resource, report: Report = _quiet, *, attached: bool = False) -> Resource:
        """Poll until the volume is usable, or in use when ``attached``.

        Raises:
            UnexpectedStateError: The volume failed or is being deleted.
        """
        ready = {VolumeState.IN_USE} if attached else {VolumeState.AVAILABLE, VolumeState.IN_USE}

        async def state() -> PollResult[Resource]:
            async with self._ec2() as ec2:
                response = await ec2.describe_volumes(VolumeIds=[volume.id])
            volumes = response.get("Volumes") or ()
            if not volumes:
                return Waiting("volume: creating")
            raw = volumes[0]
            current = raw.get("State")
            if current in ready:
                return Ready(self._reconciler.record(ResourceKind.VOLUME, volume.name, raw))
            if current in (VolumeState.CREATING, VolumeState.AVAILABLE):
                return Waiting(f"volume: {current}")
            return Fatal(UnexpectedStateError(f"volume {volume.id}", str(current)))

        return await poll_until(
            state,
            timeout=self._options.operation_timeout,
            interval=self._options.poll_interval,
            description=f"volume {volume.id}",
            on_status=report,
        )
