"""Resource naming and tagging.

Every resource stratus creates carries ``Name=<cluster>.<logical>`` plus the
cluster tag. Discovery filters by the cluster tag server-side and then matches
the Name tag, so two clusters in one account never see each other's resources.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from stratus.constants import ELB_NAME_MAX_LENGTH, ClusterTag
from stratus.definition import ClusterDefinition, IngressProtocol, IngressTarget
from stratus.exceptions import ClusterDefinitionError


def tags_of(resource: Mapping[str, Any]) -> dict[str, str]:
    """Flatten an API ``Tags`` list into a dict."""
    return {tag["Key"]: tag["Value"] for tag in resource.get("Tags") or ()}


def _elb_safe(cluster: str) -> str:
    # ELB names allow only alphanumerics and dashes.
    return re.sub(r"[^A-Za-z0-9-]", "-", cluster)


def load_balancer_name(cluster: str, resource: str = "elb") -> str:
    """Name of a load balancer related resource.

    Raises:
        ClusterDefinitionError: The name exceeds the AWS limit.
    """
    name = f"{_elb_safe(cluster)}-{resource}"
    if name.startswith("internal-"):
        name = "x-internal" + name[len("internal-"):]
    if len(name) > ELB_NAME_MAX_LENGTH:
        raise ClusterDefinitionError(
            f"Generated load balancer name [{name}] exceeds the {ELB_NAME_MAX_LENGTH} character AWS limit"
        )
    return name


def target_group_name(cluster: str, target: IngressTarget, protocol: IngressProtocol, port: int) -> str:
    """Deterministic target group name, trimmed to the AWS length limit.

    HTTP and HTTPS are balanced at the transport layer, so they share the TCP
    name. The cluster part is trimmed so the distinguishing suffix survives.
    """
    if protocol in (IngressProtocol.HTTP, IngressProtocol.HTTPS):
        protocol = IngressProtocol.TCP
    suffix = f"-{target.value}-{protocol.value}-{port}"
    prefix = _elb_safe(cluster)[: ELB_NAME_MAX_LENGTH - len(suffix)].rstrip("-")
    return f"{prefix}{suffix}"


@dataclass(frozen=True, slots=True)
class Tagger:
    """Builds names, tag lists and filters for one cluster."""

    cluster: str
    environment: str = "development"
    extra: tuple[tuple[str, str], ...] = ()

    @classmethod
    def for_cluster(cls, definition: ClusterDefinition) -> Tagger:
        return cls(definition.name, definition.environment, definition.resource_tags)

    def name(self, logical: str) -> str:
        """Fully qualified resource name for a logical name."""
        return f"{self.cluster}.{logical}"

    def tags(self, name: str, **extra: str) -> list[dict[str, str]]:
        """Tag list for a resource; ``name`` is the fully qualified name."""
        # Discovery keys go last so user tags can never shadow them.
        tags = dict(self.extra)
        tags.update({
            ClusterTag.NAME.value: name,
            ClusterTag.CLUSTER.value: self.cluster,
            ClusterTag.ENVIRONMENT.value: self.environment,
        })
        tags.update(extra)
        return [{"Key": k, "Value": v} for k, v in tags.items()]

    def specifications(self, resource_type: str, name: str, **extra: str) -> list[dict[str, Any]]:
        """EC2 ``TagSpecifications`` for a create call."""
        return [{"ResourceType": resource_type, "Tags": self.tags(name, **extra)}]

    def cluster_filter(self, *extra: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"Name": f"tag:{ClusterTag.CLUSTER}", "Values": [self.cluster]}, *extra]

    def owns(self, resource: Mapping[str, Any]) -> bool:
        return tags_of(resource).get(ClusterTag.CLUSTER) == self.cluster

    def matches(self, resource: Mapping[str, Any], name: str) -> bool:
        tags = tags_of(resource)
        return tags.get(ClusterTag.CLUSTER) == self.cluster and tags.get(ClusterTag.NAME) == name


def node_tag(node: str, **extra: str) -> dict[str, str]:
    return {ClusterTag.NODE_NAME.value: node, **extra}
