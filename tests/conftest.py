from __future__ import annotations

import pytest

from stratus.constants import DEFAULT_IMAGE_PARAMETER
from stratus.definition import (
    AwsOptions,
    ClusterDefinition,
    ClusterLogin,
    IngressRule,
    NetworkOptions,
    NodeDefinition,
    NodeRole,
    SshPortRange,
)
from stratus.hosting.aws import AwsHostingManager
from tests.fakes import FakeEC2, FakeELB, FakeResourceGroups, FakeSSM

IMAGE_ID = "ami-0123456789abcdef0"
LOGIN = ClusterLogin(ssh_password="s3cret", ssh_public_key="ssh-ed25519 AAAAC3Nza test@stratus")


def make_definition(
    *,
    name: str = "demo",
    control: int = 1,
    workers: int = 0,
    ingress_rules: tuple[IngressRule, ...] = (),
    ssh_ports: SshPortRange | None = None,
    nodes: tuple[NodeDefinition, ...] | None = None,
    **aws: object,
) -> ClusterDefinition:
    """A small valid cluster with instant polling."""
    if nodes is None:
        nodes = (
            *(NodeDefinition(f"cp-{i}", NodeRole.CONTROL_PLANE) for i in range(control)),
            *(NodeDefinition(f"w-{i}", NodeRole.WORKER) for i in range(workers)),
        )
    options = {"poll_interval": 0.0, "operation_timeout": 5.0, **aws}
    return ClusterDefinition(
        name=name,
        nodes=nodes,
        network=NetworkOptions(ingress_rules=ingress_rules, ssh_ports=ssh_ports or SshPortRange()),
        aws=AwsOptions(**options),  # type: ignore[arg-type]
    )


def make_manager(
    definition: ClusterDefinition,
    ec2: FakeEC2,
    elb: FakeELB,
    ssm: FakeSSM,
    groups: FakeResourceGroups | None = None,
) -> AwsHostingManager:
    groups = groups or FakeResourceGroups()
    return AwsHostingManager(
        definition, LOGIN, ec2=ec2.factory(), elb=elb.factory(), ssm=ssm.factory(), groups=groups.factory()
    )


@pytest.fixture
def ec2() -> FakeEC2:
    return FakeEC2()


@pytest.fixture
def elb() -> FakeELB:
    return FakeELB()


@pytest.fixture
def ssm() -> FakeSSM:
    return FakeSSM({DEFAULT_IMAGE_PARAMETER: IMAGE_ID})


@pytest.fixture
def groups() -> FakeResourceGroups:
    return FakeResourceGroups()

