"""Cluster-wide compute prerequisites: region capacity, image, key pair and placement."""

from __future__ import annotations

from collections.abc import Iterable

from botocore.exceptions import ClientError
from loguru import logger

from stratus.definition import ClusterDefinition, ClusterLogin, NodeDefinition
from stratus.exceptions import CapacityError, ClusterDefinitionError
from stratus.placement import assign_partitions, resolve_partition_count
from stratus.poller import error_code

from .clients import EC2ClientFactory, SSMClientFactory
from .instances import CONTROL_PLACEMENT, KEY_PAIR, WORKER_PLACEMENT
from .reconciler import ResourceReconciler, ResourceSpec, describe_all
from .table import NodeArena, Resource, ResourceKind

log = logger.bind(component="compute")


def instance_types(definition: ClusterDefinition) -> set[str]:
    default = definition.aws.default_instance_type
    return {node.instance_type or default for node in definition.nodes}


class ComputeResources:
    def __init__(
        self,
        definition: ClusterDefinition,
        login: ClusterLogin,
        reconciler: ResourceReconciler,
        *,
        ec2: EC2ClientFactory,
        ssm: SSMClientFactory,
    ) -> None:
        self._definition = definition
        self._options = definition.aws
        self._login = login
        self._reconciler = reconciler
        self._tagger = reconciler.tagger
        self._ec2 = ec2
        self._ssm = ssm

    async def check_region(self) -> None:
        """Fail early when the zone does not offer every requested instance type.

        Raises:
            CapacityError: At least one instance type is not offered.
        """
        wanted = instance_types(self._definition)
        async with self._ec2() as ec2:
            pages = await describe_all(
                ec2,
                "describe_instance_type_offerings",
                LocationType="availability-zone",
                Filters=[
                    {"Name": "location", "Values": [self._options.availability_zone]},
                    {"Name": "instance-type", "Values": sorted(wanted)},
                ],
            )
        offered = {o["InstanceType"] for page in pages for o in page.get("InstanceTypeOfferings") or ()}
        missing = sorted(wanted - offered)
        if missing:
            raise CapacityError(
                f"Availability zone [{self._options.availability_zone}] does not offer "
                f"instance type(s) {', '.join(missing)}"
            )

    async def locate_image(self) -> str:
        """The configured machine image, or the one the SSM parameter points at.

        Raises:
            ClusterDefinitionError: The SSM parameter does not exist.
        """
        if self._options.image_id:
            return self._options.image_id
        parameter = self._options.image_parameter
        async with self._ssm() as ssm:
            try:
                response = await ssm.get_parameter(Name=parameter)
            except ClientError as e:
                if error_code(e) == "ParameterNotFound":
                    raise ClusterDefinitionError(f"Image parameter [{parameter}] does not exist") from e
                raise
        image = response["Parameter"]["Value"]
        log.debug(f"Resolved image {image} from {parameter}")
        return image

    async def ensure_key_pair(self) -> Resource:
        key_name = self._tagger.name(KEY_PAIR)

        async def create() -> dict:
            async with self._ec2() as ec2:
                response = await ec2.import_key_pair(
                    KeyName=key_name,
                    PublicKeyMaterial=self._login.ssh_public_key.encode(),
                    TagSpecifications=self._tagger.specifications("key-pair", key_name),
                )
            return {
                "KeyName": response["KeyName"],
                "KeyPairId": response.get("KeyPairId"),
                "Tags": self._tagger.tags(key_name),
            }

        return await self._reconciler.ensure(ResourceKind.KEY_PAIR, KEY_PAIR, ResourceSpec(create))

    # -------------------------------------------------------------------------
    # Placement
    # -------------------------------------------------------------------------

    def partition_counts(self) -> dict[str, int]:
        """Effective partition count per placement group, for the roles present."""
        counts: dict[str, int] = {}
        control = self._definition.control_plane_nodes
        workers = self._definition.worker_nodes
        if control:
            counts[CONTROL_PLACEMENT] = resolve_partition_count(
                self._options.control_plane_placement_partitions, len(control)
            )
        if workers:
            counts[WORKER_PLACEMENT] = resolve_partition_count(
                self._options.worker_placement_partitions, len(workers)
            )
        return counts

    async def ensure_placement_group(self, logical: str, partitions: int) -> Resource:
        name = self._tagger.name(logical)

        async def create() -> dict:
            async with self._ec2() as ec2:
                await ec2.create_placement_group(
                    GroupName=name,
                    Strategy="partition",
                    PartitionCount=partitions,
                    TagSpecifications=self._tagger.specifications("placement-group", name),
                )
            return {
                "GroupName": name,
                "Strategy": "partition",
                "PartitionCount": partitions,
                "State": "available",
                "Tags": self._tagger.tags(name),
            }

        return await self._reconciler.ensure(
            ResourceKind.PLACEMENT_GROUP,
            logical,
            ResourceSpec(create, {"strategy": "partition", "partitions": partitions}),
        )

    async def ensure_placement_groups(self) -> None:
        for logical, partitions in self.partition_counts().items():
            await self.ensure_placement_group(logical, partitions)

    def assign_partitions(self, arena: NodeArena) -> None:
        """Fill in every record's partition.

        Existing instances keep the partition they run in; it counts toward
        the balance like an explicit override.
        """
        counts = self.partition_counts()
        roles: Iterable[tuple[str, tuple[NodeDefinition, ...]]] = (
            (CONTROL_PLACEMENT, self._definition.control_plane_nodes),
            (WORKER_PLACEMENT, self._definition.worker_nodes),
        )
        for group, nodes in roles:
            if not nodes:
                continue
            overrides: dict[str, int] = {}
            for node in nodes:
                record = arena.by_node(node.name)
                overrides[node.name] = record.partition or node.placement_partition
            assignment = assign_partitions([n.name for n in nodes], counts[group], overrides)
            for name, partition in assignment.items():
                arena.by_node(name).partition = partition
            log.debug(f"Partitions for {group}: {assignment}")
