"""Hosting managers and their registry."""

from __future__ import annotations

from injector import Injector

from stratus.definition import ClusterDefinition, ClusterLogin, HostingEnvironment
from stratus.exceptions import ClusterDefinitionError
from stratus.hosting.base import HostingManager, build_pipeline, provision


def create_hosting_manager(
    definition: ClusterDefinition,
    login: ClusterLogin,
    injector: Injector | None = None,
) -> HostingManager:
    """Build the hosting manager for the definition's environment.

    Args:
        definition: Cluster to provision.
        login: Credentials installed on every node.
        injector: Supplies the provider's client factories. Defaults to one
            built from the definition's provider options.

    Raises:
        ClusterDefinitionError: The environment is not supported, or the
            definition is invalid for it.
    """
    match definition.hosting:
        case HostingEnvironment.AWS:
            from stratus.hosting.aws import (
                AWSModule,
                AwsHostingManager,
                EC2ClientFactory,
                ELBClientFactory,
                ResourceGroupsClientFactory,
                SSMClientFactory,
            )

            injector = injector or Injector([AWSModule(definition.aws)])
            return AwsHostingManager(
                definition,
                login,
                ec2=injector.get(EC2ClientFactory),
                elb=injector.get(ELBClientFactory),
                ssm=injector.get(SSMClientFactory),
                groups=injector.get(ResourceGroupsClientFactory),
            )
        case other:
            raise ClusterDefinitionError(f"Hosting environment [{other}] is not supported")


__all__ = [
    "HostingManager",
    "build_pipeline",
    "create_hosting_manager",
    "provision",
]
