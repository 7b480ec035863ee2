from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from stratus.definition import ClusterDefinition
from stratus.pipeline import Named, PipelineResult, ProvisioningPipeline


@runtime_checkable
class HostingManager[N: Named](Protocol):
    """Provider-specific half of cluster provisioning.

    The pipeline and its step ordering are provider-agnostic; a hosting
    manager contributes the steps and owns the provider state they share.
    Implementations are single-use: one manager per run.
    """

    @property
    def cluster(self) -> str:
        ...

    @property
    def max_parallel(self) -> int:
        """Concurrent per-node step invocations the provider tolerates."""
        ...

    @property
    def can_manage_router(self) -> bool:
        """Whether the manager controls the cluster's ingress routing."""
        ...

    @property
    def nodes(self) -> Sequence[N]:
        """One record per declared node, control-plane nodes first."""
        ...

    def validate(self, definition: ClusterDefinition) -> None:
        """Reject definitions this provider cannot host.

        Raises
        ------
        ClusterDefinitionError
            The definition is invalid for this provider.
        """
        ...

    async def discover(self) -> int:
        """Rebuild the provider state from tagged cloud resources.

        Returns
        -------
        int
            Number of resources found.
        """
        ...

    def add_provisioning_steps(self, pipeline: ProvisioningPipeline[N]) -> None:
        ...

    def add_post_provisioning_steps(self, pipeline: ProvisioningPipeline[N]) -> None:
        ...

    async def update_internet_routing(self) -> object:
        """Converge load balancing and network rules with the definition."""
        ...

    async def enable_internet_ssh(self) -> object:
        ...

    async def disable_internet_ssh(self) -> object:
        ...

    def get_ssh_endpoint(self, node_name: str) -> tuple[str, int]:
        """Public ``(address, port)`` that reaches ``node_name`` over SSH."""
        ...

    def get_data_disk(self, unpartitioned_disks: Sequence[str]) -> str:
        """Pick the device that holds node data among the unpartitioned ones."""
        ...


def build_pipeline[N: Named](manager: HostingManager[N]) -> ProvisioningPipeline[N]:
    pipeline: ProvisioningPipeline[N] = ProvisioningPipeline(
        manager.cluster,
        nodes=lambda: manager.nodes,
        discover=manager.discover,
        max_parallel=manager.max_parallel,
    )
    manager.add_provisioning_steps(pipeline)
    manager.add_post_provisioning_steps(pipeline)
    return pipeline


async def provision[N: Named](manager: HostingManager[N]) -> PipelineResult:
    """Provision or repair a cluster with one pipeline run."""
    return await build_pipeline(manager).run()
