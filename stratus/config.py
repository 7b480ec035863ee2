"""TOML-based cluster configuration.

Loads ~/.stratus/defaults.toml (global) and stratus.toml (project), merges
them, and builds the ClusterDefinition they describe:

    [cluster]
    name = "demo"

    [aws]
    region = "us-west-2"
    availability_zone = "us-west-2a"

    [[network.ingress_rules]]
    name = "http"
    protocol = "tcp"
    external_port = 80
    node_port = 30080

    [[nodes]]
    name = "cp-0"
    role = "control-plane"
"""

from __future__ import annotations

import tomllib
from enum import StrEnum
from pathlib import Path
from typing import Any

from stratus.definition import (
    AddressAction,
    AddressRule,
    AwsOptions,
    ClusterDefinition,
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
from stratus.exceptions import ClusterDefinitionError

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".stratus" / "defaults.toml"
PROJECT_CONFIG_NAME = "stratus.toml"


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("cluster", {})
    merged.setdefault("network", {})
    merged.setdefault("aws", {})
    merged.setdefault("nodes", [])
    return merged


# =============================================================================
# Builders
# =============================================================================


def _enum[E: StrEnum](cls: type[E], value: Any, what: str) -> E:
    try:
        return cls(value)
    except ValueError:
        valid = ", ".join(m.value for m in cls)
        raise ClusterDefinitionError(f"Unknown {what} [{value}]. Valid: {valid}") from None


def _build[T](cls: type[T], raw: RawConfig, what: str) -> T:
    try:
        return cls(**raw)
    except TypeError as e:
        raise ClusterDefinitionError(f"Invalid {what}: {e}") from None


def _address_rules(raw: list[RawConfig] | None) -> tuple[AddressRule, ...]:
    return tuple(
        AddressRule(
            cidr=str(rule.get("cidr", "")),
            action=_enum(AddressAction, rule.get("action", "allow"), "address action"),
        )
        for rule in raw or ()
    )


def _health_check(raw: RawConfig | None) -> HealthCheck | None:
    return _build(HealthCheck, raw, "health check") if raw else None


def _ingress_rule(raw: RawConfig) -> IngressRule:
    raw = dict(raw)
    return _build(
        IngressRule,
        {
            **raw,
            "protocol": _enum(IngressProtocol, raw.get("protocol", "tcp"), "protocol"),
            "target": _enum(IngressTarget, raw.get("target", "ingress"), "ingress target"),
            "address_rules": _address_rules(raw.get("address_rules")),
            "health_check": _health_check(raw.get("health_check")),
        },
        f"ingress rule [{raw.get('name', '?')}]",
    )


def _network(raw: RawConfig) -> NetworkOptions:
    ssh = raw.get("ssh_ports") or {}
    return NetworkOptions(
        ingress_rules=tuple(_ingress_rule(r) for r in raw.get("ingress_rules") or ()),
        egress_address_rules=_address_rules(raw.get("egress_address_rules")),
        management_address_rules=_address_rules(raw.get("management_address_rules")),
        ssh_ports=_build(SshPortRange, ssh, "ssh port range"),
        nameservers=tuple(raw.get("nameservers") or ()),
        ingress_health_check=_health_check(raw.get("health_check")) or HealthCheck(),
    )


def _node(raw: RawConfig) -> NodeDefinition:
    raw = dict(raw)
    if "role" in raw:
        raw["role"] = _enum(NodeRole, raw["role"], "node role")
    if raw.get("volume_type") is not None:
        raw["volume_type"] = _enum(VolumeType, raw["volume_type"], "volume type")
    return _build(NodeDefinition, raw, f"node [{raw.get('name', '?')}]")


def _aws(raw: RawConfig) -> AwsOptions:
    raw = dict(raw)
    if "default_volume_type" in raw:
        raw["default_volume_type"] = _enum(VolumeType, raw["default_volume_type"], "volume type")
    return _build(AwsOptions, raw, "aws options")


def cluster_from_config(config: RawConfig) -> ClusterDefinition:
    """Build a validated ClusterDefinition from merged configuration.

    Raises:
        ClusterDefinitionError: The configuration does not describe a valid cluster.
    """
    cluster = dict(config.get("cluster") or {})
    name = cluster.get("name")
    if not name:
        raise ClusterDefinitionError("[cluster] name is required")

    definition = ClusterDefinition(
        name=str(name),
        nodes=tuple(_node(n) for n in config.get("nodes") or ()),
        environment=str(cluster.get("environment", "development")),
        hosting=_enum(HostingEnvironment, cluster.get("hosting", "aws"), "hosting environment"),
        network=_network(config.get("network") or {}),
        aws=_aws(config.get("aws") or {}),
        resource_tags=tuple(sorted((str(k), str(v)) for k, v in (cluster.get("tags") or {}).items())),
    )
    definition.validate()
    return definition


def load_cluster(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> ClusterDefinition:
    return cluster_from_config(load_config(project_dir=project_dir, global_path=global_path))
