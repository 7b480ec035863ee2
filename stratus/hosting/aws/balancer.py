"""Network load balancer, target groups and listeners."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from loguru import logger

from stratus.constants import LoadBalancerState, TargetHealthState
from stratus.definition import ClusterDefinition, HealthCheck, IngressProtocol, IngressTarget
from stratus.exceptions import UnexpectedStateError
from stratus.poller import Fatal, PollResult, Ready, Waiting, poll_until

from .clients import ELBClientFactory
from .reconciler import ResourceReconciler, ResourceSpec, describe_all
from .table import Resource, ResourceKind
from .tags import load_balancer_name, target_group_name

log = logger.bind(component="balancer")

type Report = Callable[[str], None]

LOAD_BALANCER = "load-balancer"


def _quiet(_: str) -> None:
    pass


def listener_protocol(protocol: IngressProtocol) -> str:
    """Network load balancers only speak TCP and UDP."""
    return "UDP" if protocol == IngressProtocol.UDP else "TCP"


def target_group_logical(target: IngressTarget, protocol: IngressProtocol, port: int) -> str:
    return f"{target.value}-{listener_protocol(protocol).lower()}-{port}"


class LoadBalancerManager:
    def __init__(
        self,
        definition: ClusterDefinition,
        reconciler: ResourceReconciler,
        *,
        elb: ELBClientFactory,
    ) -> None:
        self._definition = definition
        self._options = definition.aws
        self._reconciler = reconciler
        self._tagger = reconciler.tagger
        self._elb = elb

    # -------------------------------------------------------------------------
    # Load balancer
    # -------------------------------------------------------------------------

    async def ensure_load_balancer(self, subnet: Resource, address: Resource) -> Resource:
        """Ensure the internet-facing network load balancer on ``subnet`` using ``address``."""
        name = load_balancer_name(self._definition.name)

        async def create() -> dict:
            async with self._elb() as elb:
                response = await elb.create_load_balancer(
                    Name=name,
                    Type="network",
                    Scheme="internet-facing",
                    IpAddressType="ipv4",
                    SubnetMappings=[{"SubnetId": subnet.id, "AllocationId": address.id}],
                    Tags=self._tagger.tags(self._tagger.name(LOAD_BALANCER)),
                )
            return response["LoadBalancers"][0]

        return await self._reconciler.ensure(
            ResourceKind.LOAD_BALANCER,
            LOAD_BALANCER,
            ResourceSpec(create, {"type": "network", "scheme": "internet-facing"}, provider_name=name),
        )

    async def wait_until_active(self, balancer: Resource, report: Report = _quiet) -> Resource:
        """Poll until the load balancer leaves ``provisioning``.

        Raises:
            OperationTimeoutError: Still provisioning after the operation timeout.
            UnexpectedStateError: Provisioning failed.
        """
        if (balancer.raw.get("State") or {}).get("Code") == LoadBalancerState.ACTIVE:
            return balancer

        async def state() -> PollResult[Resource]:
            async with self._elb() as elb:
                response = await elb.describe_load_balancers(LoadBalancerArns=[balancer.id])
            balancers = response.get("LoadBalancers") or ()
            if not balancers:
                return Waiting("load balancer: provisioning")
            raw = dict(balancers[0])
            raw["Tags"] = list(balancer.raw.get("Tags") or ())
            match (raw.get("State") or {}).get("Code"):
                case LoadBalancerState.PROVISIONING:
                    return Waiting("load balancer: provisioning")
                case LoadBalancerState.ACTIVE | LoadBalancerState.ACTIVE_IMPAIRED:
                    return Ready(self._reconciler.record(ResourceKind.LOAD_BALANCER, LOAD_BALANCER, raw))
                case other:
                    return Fatal(UnexpectedStateError(f"load balancer {balancer.id}", str(other)))

        return await poll_until(
            state,
            timeout=self._options.operation_timeout,
            interval=self._options.poll_interval,
            description=f"load balancer {balancer.id}",
            on_status=report,
        )

    # -------------------------------------------------------------------------
    # Target groups
    # -------------------------------------------------------------------------

    async def ensure_target_group(
        self,
        vpc: Resource,
        target: IngressTarget,
        protocol: IngressProtocol,
        port: int,
        health_check: HealthCheck,
        *,
        external_port: int | None = None,
    ) -> Resource:
        """Ensure the target group forwarding to node ``port``.

        Per-node SSH groups all forward to the same node port, so they are
        named after their ``external_port`` instead.
        """
        label = port if external_port is None else external_port
        logical = target_group_logical(target, protocol, label)
        name = target_group_name(self._definition.name, target, protocol, label)
        wire_protocol = listener_protocol(protocol)

        async def create() -> dict:
            async with self._elb() as elb:
                response = await elb.create_target_group(
                    Name=name,
                    Protocol=wire_protocol,
                    Port=port,
                    VpcId=vpc.id,
                    TargetType="instance",
                    HealthCheckProtocol="TCP",
                    HealthCheckPort="traffic-port",
                    HealthCheckIntervalSeconds=health_check.interval_seconds,
                    HealthyThresholdCount=health_check.threshold_count,
                    UnhealthyThresholdCount=health_check.threshold_count,
                    Tags=self._tagger.tags(self._tagger.name(logical)),
                )
            return response["TargetGroups"][0]

        return await self._reconciler.ensure(
            ResourceKind.TARGET_GROUP,
            logical,
            ResourceSpec(create, {"protocol": wire_protocol, "port": port}, provider_name=name),
        )

    async def registered_targets(self, group: Resource) -> set[str]:
        async with self._elb() as elb:
            response = await elb.describe_target_health(TargetGroupArn=group.id)
        return {d["Target"]["Id"] for d in response.get("TargetHealthDescriptions") or ()}

    async def set_targets(self, group: Resource, instance_ids: Iterable[str]) -> None:
        """Make ``instance_ids`` the group's exact membership."""
        desired = set(instance_ids)
        stale = await self.registered_targets(group) - desired

        async with self._elb() as elb:
            if desired:
                await elb.register_targets(
                    TargetGroupArn=group.id, Targets=[{"Id": i} for i in sorted(desired)]
                )
            if stale:
                await elb.deregister_targets(
                    TargetGroupArn=group.id, Targets=[{"Id": i} for i in sorted(stale)]
                )
        if stale:
            log.info(f"Deregistered {sorted(stale)} from target group {group.name}")

    async def wait_for_healthy(self, group: Resource, instance_id: str, report: Report = _quiet) -> None:
        """Poll until ``instance_id`` passes the group's health check.

        Raises:
            OperationTimeoutError: Not healthy within the operation timeout.
            UnexpectedStateError: The target is draining, unused or unavailable.
        """
        async def state() -> PollResult[None]:
            async with self._elb() as elb:
                response = await elb.describe_target_health(
                    TargetGroupArn=group.id, Targets=[{"Id": instance_id}]
                )
            descriptions = response.get("TargetHealthDescriptions") or ()
            if not descriptions:
                return Waiting("target: registering")
            match descriptions[0]["TargetHealth"]["State"]:
                case TargetHealthState.INITIAL | TargetHealthState.UNHEALTHY as current:
                    return Waiting(f"target: {current}")
                case TargetHealthState.HEALTHY:
                    return Ready(None)
                case other:
                    return Fatal(UnexpectedStateError(f"target {instance_id} in {group.name}", str(other)))

        await poll_until(
            state,
            timeout=self._options.operation_timeout,
            interval=self._options.poll_interval,
            description=f"target {instance_id} in {group.name}",
            on_status=report,
        )

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    async def listeners(self, balancer: Resource) -> list[dict[str, Any]]:
        async with self._elb() as elb:
            pages = await describe_all(elb, "describe_listeners", LoadBalancerArn=balancer.id)
        return [listener for page in pages for listener in page.get("Listeners") or ()]

    async def ensure_listener(
        self,
        balancer: Resource,
        existing: dict[str, Any] | None,
        port: int,
        protocol: str,
        group: Resource,
    ) -> None:
        """Forward ``port`` to ``group``, repointing an existing listener if needed."""
        actions = [{"Type": "forward", "TargetGroupArn": group.id}]
        async with self._elb() as elb:
            if existing is None:
                await elb.create_listener(
                    LoadBalancerArn=balancer.id, Protocol=protocol, Port=port, DefaultActions=actions
                )
                log.info(f"Created listener {protocol}:{port} -> {group.name}")
                return

            current = [a.get("TargetGroupArn") for a in existing.get("DefaultActions") or ()]
            if current != [group.id] or existing.get("Protocol") != protocol:
                await elb.modify_listener(
                    ListenerArn=existing["ListenerArn"], Protocol=protocol, Port=port, DefaultActions=actions
                )
                log.info(f"Repointed listener {protocol}:{port} -> {group.name}")

    async def delete_listener(self, listener: dict[str, Any]) -> None:
        async with self._elb() as elb:
            await elb.delete_listener(ListenerArn=listener["ListenerArn"])
        log.info(f"Deleted listener on port {listener['Port']}")
