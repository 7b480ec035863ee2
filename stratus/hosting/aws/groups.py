"""The cluster's resource group.

The group is a saved tag query selecting every resource that carries the
cluster tag. It only exists for operators browsing the console, but a group
of the same name that selects anything else belongs to someone else.
"""

from __future__ import annotations

import json
from typing import Any

from botocore.exceptions import ClientError
from loguru import logger

from stratus.constants import ClusterTag
from stratus.definition import ClusterDefinition
from stratus.exceptions import ConflictError
from stratus.poller import error_code

from .clients import ResourceGroupsClientFactory
from .table import ReconciliationTable, Resource, ResourceKind

log = logger.bind(component="groups")

RESOURCE_GROUP = "resource-group"
TAG_FILTER_QUERY = "TAG_FILTERS_1_0"


def group_query(cluster: str) -> dict[str, Any]:
    return {
        "ResourceTypeFilters": ["AWS::AllSupported"],
        "TagFilters": [{"Key": ClusterTag.CLUSTER.value, "Values": [cluster]}],
    }


class ResourceGroup:
    def __init__(
        self,
        definition: ClusterDefinition,
        table: ReconciliationTable,
        *,
        groups: ResourceGroupsClientFactory,
    ) -> None:
        self._cluster = definition.name
        self._name = definition.resource_group
        self._tags = dict(definition.resource_tags)
        self._table = table
        self._groups = groups

    def validate(self, resource_query: dict[str, Any] | None) -> None:
        """Fail unless the group's query selects exactly this cluster's resources.

        Raises:
            ConflictError: The group was made for something else, or edited since.
        """
        resource_query = resource_query or {}
        try:
            query = json.loads(resource_query.get("Query") or "null")
        except json.JSONDecodeError:
            query = None
        if resource_query.get("Type") != TAG_FILTER_QUERY or query != group_query(self._cluster):
            raise ConflictError(
                ResourceKind.RESOURCE_GROUP, self._name,
                "the group exists for another purpose or was edited after it was created",
            )

    async def ensure(self) -> Resource:
        """Create the group, or check that an existing one selects this cluster."""
        async with self._groups() as groups:
            try:
                response = await groups.get_group(Group=self._name)
            except ClientError as e:
                if error_code(e) != "NotFoundException":
                    raise
                response = await groups.create_group(
                    Name=self._name,
                    Description=f"Resources of the {self._cluster} stratus cluster",
                    ResourceQuery={"Type": TAG_FILTER_QUERY, "Query": json.dumps(group_query(self._cluster))},
                    Tags={**self._tags, ClusterTag.CLUSTER.value: self._cluster},
                )
                group = response["Group"]
                log.info(f"Created resource group [{self._name}] = {group['GroupArn']}")
            else:
                group = response["Group"]
                query = await groups.get_group_query(Group=self._name)
                self.validate((query.get("GroupQuery") or {}).get("ResourceQuery"))
                log.debug(f"Discovered resource group [{self._name}] = {group['GroupArn']}")

        return self._table.put(
            Resource.of(ResourceKind.RESOURCE_GROUP, RESOURCE_GROUP, group["GroupArn"], group)
        )
