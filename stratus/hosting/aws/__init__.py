"""AWS hosting for stratus.

Example:
    from injector import Injector
    from stratus.hosting.aws import (
        AWSModule,
        AwsHostingManager,
        EC2ClientFactory,
        ELBClientFactory,
        ResourceGroupsClientFactory,
        SSMClientFactory,
    )

    injector = Injector([AWSModule(definition.aws)])
    manager = AwsHostingManager(
        definition,
        login,
        ec2=injector.get(EC2ClientFactory),
        elb=injector.get(ELBClientFactory),
        ssm=injector.get(SSMClientFactory),
        groups=injector.get(ResourceGroupsClientFactory),
    )
"""

from stratus.hosting.aws.clients import (
    AWSModule,
    EC2ClientFactory,
    ELBClientFactory,
    ResourceGroupsClientFactory,
    SSMClientFactory,
)
from stratus.hosting.aws.manager import AwsHostingManager
from stratus.hosting.aws.security import RoutingSummary

__all__ = [
    "AWSModule",
    "AwsHostingManager",
    "EC2ClientFactory",
    "ELBClientFactory",
    "ResourceGroupsClientFactory",
    "RoutingSummary",
    "SSMClientFactory",
]
