"""Stratus - Provision and reconcile cloud clusters.

Example:

    from stratus import ClusterLogin, create_hosting_manager, load_cluster, provision, use_callback
    from stratus.callbacks import ConsoleProgress

    definition = load_cluster()
    manager = create_hosting_manager(definition, ClusterLogin(ssh_password="secret", ssh_public_key=public_key))

    with use_callback(ConsoleProgress()):
        result = await provision(manager)
    result.raise_for_failure()

Every run is idempotent: rerunning after a failure picks up whatever the
previous run left behind and converges it.
"""

# Callback system
from stratus.callback import Callback, compose, emit, use_callback

# Configuration
from stratus.config import cluster_from_config, load_cluster, load_config

# Cluster definition
from stratus.definition import (
    AddressAction,
    AddressRule,
    AwsOptions,
    ClusterDefinition,
    ClusterLogin,
    HealthCheck,
    HostingEnvironment,
    IngressProtocol,
    IngressRule,
    IngressTarget,
    NetworkOptions,
    NodeDefinition,
    NodeRole,
    SshPortRange,
    VolumeType,
)

# Events (ADT)
from stratus.events import (
    DiscoveryCompleted,
    PipelineCompleted,
    PipelineStarted,
    ProgressEvent,
    StepCompleted,
    StepFailed,
    StepStarted,
    StepStatus,
)

# Exceptions
from stratus.exceptions import (
    CapacityError,
    ClusterDefinitionError,
    ConflictError,
    OperationTimeoutError,
    PipelineError,
    PortRangeExhaustedError,
    ProvisioningError,
    StratusError,
    UnexpectedStateError,
)

# Hosting
from stratus.hosting import HostingManager, build_pipeline, create_hosting_manager, provision

# Logging
from stratus.logging import LogConfig, setup_logging, teardown_logging

# Pipeline
from stratus.pipeline import (
    PipelineResult,
    PipelineState,
    ProvisioningPipeline,
    StepContext,
    StepState,
)

__all__ = [
    # Callback
    "Callback",
    "compose",
    "emit",
    "use_callback",
    # Configuration
    "cluster_from_config",
    "load_cluster",
    "load_config",
    # Definition
    "AddressAction",
    "AddressRule",
    "AwsOptions",
    "ClusterDefinition",
    "ClusterLogin",
    "HealthCheck",
    "HostingEnvironment",
    "IngressProtocol",
    "IngressRule",
    "IngressTarget",
    "NetworkOptions",
    "NodeDefinition",
    "NodeRole",
    "SshPortRange",
    "VolumeType",
    # Events
    "DiscoveryCompleted",
    "PipelineCompleted",
    "PipelineStarted",
    "ProgressEvent",
    "StepCompleted",
    "StepFailed",
    "StepStarted",
    "StepStatus",
    # Exceptions
    "CapacityError",
    "ClusterDefinitionError",
    "ConflictError",
    "OperationTimeoutError",
    "PipelineError",
    "PortRangeExhaustedError",
    "ProvisioningError",
    "StratusError",
    "UnexpectedStateError",
    # Hosting
    "HostingManager",
    "build_pipeline",
    "create_hosting_manager",
    "provision",
    # Logging
    "LogConfig",
    "setup_logging",
    "teardown_logging",
    # Pipeline
    "PipelineResult",
    "PipelineState",
    "ProvisioningPipeline",
    "StepContext",
    "StepState",
]
