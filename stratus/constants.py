"""Centralized constants and enums for stratus.

All tag keys, state names, rule numbers and default timings live here so that
discovery, creation and tests agree on the exact strings.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# Resource Tags
# =============================================================================


class ClusterTag(StrEnum):
    """Tag keys written on every cloud resource managed by stratus."""

    NAME = "Name"
    CLUSTER = "stratus:cluster"
    ENVIRONMENT = "stratus:environment"
    NODE_NAME = "stratus:node.name"
    NODE_SSH_PORT = "stratus:node.ssh-port"
    NODE_USER_DATA = "stratus:node.user-data"
    NETWORK_SSH_ENABLED = "stratus:vpc.ssh-enabled"


RESERVED_TAG_PREFIXES: Final = ("stratus:", "aws:")
"""User resource tags may not start with these; ``Name`` is reserved too."""


USER_DATA_CLEARED: Final = "cleared"


# =============================================================================
# EC2 States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"


# Low byte of the EC2 state code; the high byte is internal to AWS.
INSTANCE_STATE_CODES: Final[dict[int, InstanceState]] = {
    0: InstanceState.PENDING,
    16: InstanceState.RUNNING,
    32: InstanceState.SHUTTING_DOWN,
    48: InstanceState.TERMINATED,
    64: InstanceState.STOPPING,
    80: InstanceState.STOPPED,
}


class NatGatewayState(StrEnum):
    PENDING = "pending"
    AVAILABLE = "available"
    FAILED = "failed"
    DELETING = "deleting"
    DELETED = "deleted"


class VolumeState(StrEnum):
    CREATING = "creating"
    AVAILABLE = "available"
    IN_USE = "in-use"
    DELETING = "deleting"
    DELETED = "deleted"
    ERROR = "error"


class LoadBalancerState(StrEnum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    ACTIVE_IMPAIRED = "active_impaired"
    FAILED = "failed"


class TargetHealthState(StrEnum):
    INITIAL = "initial"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNUSED = "unused"
    DRAINING = "draining"
    UNAVAILABLE = "unavailable"


# =============================================================================
# Network
# =============================================================================

ANY_CIDR: Final = "0.0.0.0/0"
SSH_PORT: Final = 22
API_SERVER_PORT: Final = 6443
EPHEMERAL_PORTS: Final = (1024, 65535)

# Network ACL rule numbering. Each block holds at most ACL_BLOCK_SIZE entries.
DENY_ALL_ACL_RULE_NUMBER: Final = 32767
FIRST_INTERNAL_ACL_RULE_NUMBER: Final = 1
FIRST_SSH_ACL_RULE_NUMBER: Final = 1000
FIRST_INGRESS_ACL_RULE_NUMBER: Final = 2000
FIRST_EGRESS_ACL_RULE_NUMBER: Final = 2000
EPHEMERAL_ACL_RULE_NUMBER: Final = 3000
ACL_BLOCK_SIZE: Final = 999

# Load balancer related resource names are limited by AWS.
ELB_NAME_MAX_LENGTH: Final = 32
RESOURCE_GROUP_MAX_LENGTH: Final = 64


# =============================================================================
# Placement
# =============================================================================

MAX_PLACEMENT_PARTITIONS: Final = 7


# =============================================================================
# Instances
# =============================================================================

DATA_DEVICE_NAME: Final = "/dev/sdb"
STORAGE_DEVICE_NAME: Final = "/dev/sdf"

DEFAULT_IMAGE_USER: Final = "ubuntu"
STANDARD_ACCOUNT: Final = "sysadmin"

DEFAULT_IMAGE_PARAMETER: Final = (
    "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id"
)


# =============================================================================
# Timing (seconds)
# =============================================================================

DEFAULT_OPERATION_TIMEOUT: Final = 600.0
DEFAULT_POLL_INTERVAL: Final = 5.0
