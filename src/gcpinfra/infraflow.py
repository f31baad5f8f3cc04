"""Provisioning steps of the flow reconciler.

Declares the tasks that make up a cluster's network and what each of them
does against the Compute API. Every ensure function looks the object up
first and only creates it when it is missing, so a step can be re-run after
a crash without creating duplicates.

TASKS (declaration order):
    network/vpc                     VPC network (adopted when user-provided)
    subnet/nodes                    node subnet
    subnet/internal                 internal load balancer subnet (optional)
                                    deleted once dropped from the config
    router/cloud-router             cloud router (adopted when user-provided)
    nat/cloud-nat                   NAT gateway on the router
    firewall/allow-internal-access  traffic between nodes and pods
    firewall/allow-external-access  HTTP(S) from anywhere to the nodes
    firewall/allow-health-checks    load balancer health checks
    firewall/orphans                prune firewall rules no longer desired
    route/orphans                   prune cluster routes on teardown

Objects the user brought along (VPC, cloud router) are verified and adopted
but never deleted.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable
from typing import Any

from .executor import Task, TaskKind
from .gcp_client import (
    HEALTH_CHECK_SOURCE_RANGES,
    CloudAPIError,
    CloudClient,
    FirewallAllowed,
    FirewallRule,
    FlowLogSettings,
    Network,
    Router,
    RouterNat,
    Subnetwork,
    short_name,
)
from .models import (
    CloudNAT,
    ClusterIdentity,
    InfrastructureConfig,
    InfrastructureStatus,
    StatusCloudRouter,
    StatusNetworks,
    StatusSubnet,
    StatusVPC,
    SubnetPurpose,
)
from .state import FlowState, ResourceStatus
from .sync import OwnershipPolicy, firewall_rules_to_delete, resources_to_delete

logger = logging.getLogger(__name__)

KEY_VPC = "network/vpc"
KEY_SUBNET_NODES = "subnet/nodes"
KEY_SUBNET_INTERNAL = "subnet/internal"
KEY_ROUTER = "router/cloud-router"
KEY_NAT = "nat/cloud-nat"
KEY_FIREWALL_INTERNAL = "firewall/allow-internal-access"
KEY_FIREWALL_EXTERNAL = "firewall/allow-external-access"
KEY_FIREWALL_HEALTH_CHECKS = "firewall/allow-health-checks"
KEY_FIREWALL_ORPHANS = "firewall/orphans"
KEY_ROUTE_ORPHANS = "route/orphans"

# Node ports opened for load balancer health checks
NODE_PORT_RANGE = "30000-32767"


class InfraFlow:
    """The task list for one cluster, bound to a cloud client."""

    def __init__(
        self,
        config: InfrastructureConfig,
        identity: ClusterIdentity,
        cloud: CloudClient,
        *,
        extra_owned_prefixes: Iterable[str] = (),
    ) -> None:
        self._config = config
        self._identity = identity
        self._cloud = cloud
        self._extra_owned_prefixes = tuple(extra_owned_prefixes)

        cluster = identity.name
        networks = config.networks
        self.vpc_name = networks.vpc.name if networks.vpc else cluster
        self.manages_vpc = networks.vpc is None
        router = networks.vpc.cloud_router if networks.vpc else None
        self.router_name = router.name if router else f"{cluster}-cloud-router"
        self.manages_router = router is None
        self.nodes_subnet_name = f"{cluster}-nodes"
        self.internal_subnet_name = f"{cluster}-internal"
        self.nat_name = f"{cluster}-cloud-nat"

    @property
    def cluster(self) -> str:
        return self._identity.name

    @property
    def network_link(self) -> str:
        return f"projects/{self._identity.project_id}/global/networks/{self.vpc_name}"

    def _subnet_link(self, name: str) -> str:
        return (
            f"projects/{self._identity.project_id}/regions/{self._identity.region}"
            f"/subnetworks/{name}"
        )

    def firewall_rules(self) -> dict[str, FirewallRule]:
        """Desired firewall rules keyed by task key."""
        cluster = self.cluster
        networks = self._config.networks
        internal_sources = [networks.workers]
        if networks.internal:
            internal_sources.append(networks.internal)
        if self._identity.networking.pods:
            internal_sources.append(self._identity.networking.pods)

        return {
            KEY_FIREWALL_INTERNAL: FirewallRule(
                name=f"{cluster}-allow-internal-access",
                network=self.network_link,
                source_ranges=tuple(dict.fromkeys(internal_sources)),
                allowed=(
                    FirewallAllowed("icmp"),
                    FirewallAllowed("ipip"),
                    FirewallAllowed("tcp", ("1-65535",)),
                    FirewallAllowed("udp", ("1-65535",)),
                ),
            ),
            KEY_FIREWALL_EXTERNAL: FirewallRule(
                name=f"{cluster}-allow-external-access",
                network=self.network_link,
                source_ranges=("0.0.0.0/0",),
                allowed=(FirewallAllowed("tcp", ("80", "443")),),
                target_tags=(cluster,),
            ),
            KEY_FIREWALL_HEALTH_CHECKS: FirewallRule(
                name=f"{cluster}-allow-health-checks",
                network=self.network_link,
                source_ranges=HEALTH_CHECK_SOURCE_RANGES,
                allowed=(
                    FirewallAllowed("tcp", (NODE_PORT_RANGE,)),
                    FirewallAllowed("udp", (NODE_PORT_RANGE,)),
                ),
                target_tags=(cluster,),
            ),
        }

    def tasks(self, state: FlowState | None = None) -> list[Task]:
        """All tasks in declaration order.

        With a state, an internal subnet recorded there but no longer
        configured is declared as a retired task so that it gets deleted.
        """
        tasks = [
            Task(KEY_VPC, (), self._ensure_vpc, self._destroy_vpc),
            Task(
                KEY_SUBNET_NODES,
                (KEY_VPC,),
                self._subnet_ensurer(KEY_SUBNET_NODES, self.nodes_subnet_name, with_flow_logs=True),
                self._subnet_destroyer(KEY_SUBNET_NODES, self.nodes_subnet_name),
            ),
        ]
        nat_deps = [KEY_ROUTER, KEY_SUBNET_NODES]
        if self._config.networks.internal:
            tasks.append(
                Task(
                    KEY_SUBNET_INTERNAL,
                    (KEY_VPC,),
                    self._subnet_ensurer(KEY_SUBNET_INTERNAL, self.internal_subnet_name),
                    self._subnet_destroyer(KEY_SUBNET_INTERNAL, self.internal_subnet_name),
                )
            )
            nat_deps.append(KEY_SUBNET_INTERNAL)
        elif state is not None and KEY_SUBNET_INTERNAL in state.resources:
            tasks.append(
                Task(
                    KEY_SUBNET_INTERNAL,
                    (KEY_VPC,),
                    destroy=self._retire_internal_subnet,
                    kind=TaskKind.RETIRED,
                )
            )

        tasks.append(Task(KEY_ROUTER, (KEY_VPC,), self._ensure_router, self._destroy_router))
        tasks.append(Task(KEY_NAT, tuple(nat_deps), self._ensure_nat, self._destroy_nat))

        rules = self.firewall_rules()
        for key, rule in rules.items():
            tasks.append(
                Task(key, (KEY_VPC,), self._firewall_ensurer(rule), self._firewall_destroyer(rule))
            )

        tasks.append(
            Task(
                KEY_FIREWALL_ORPHANS,
                (KEY_VPC, *rules),
                ensure=lambda state: self._prune_firewalls(
                    [rule.name for rule in rules.values()]
                ),
                destroy=lambda state: self._prune_firewalls((), teardown=True),
                kind=TaskKind.SYNC,
            )
        )
        tasks.append(
            Task(
                KEY_ROUTE_ORPHANS,
                (KEY_VPC,),
                ensure=None,
                destroy=lambda state: self._prune_routes(),
                kind=TaskKind.SYNC,
            )
        )
        return tasks

    # -- network --------------------------------------------------------------

    def _ensure_vpc(self, state: FlowState) -> str:
        name = state.cloud_id(KEY_VPC) or self.vpc_name
        network = self._cloud.get_network(name)
        if network is not None:
            return network.name
        if not self.manages_vpc:
            raise CloudAPIError(
                f"VPC network '{name}' does not exist", transient=False, operation=KEY_VPC
            )
        logger.info("Creating VPC network", extra={"cluster": self.cluster, "network": name})
        return self._cloud.insert_network(Network(name=name)).name

    def _destroy_vpc(self, state: FlowState) -> None:
        if not self.manages_vpc:
            logger.info(
                "Keeping user-provided VPC network",
                extra={"cluster": self.cluster, "network": self.vpc_name},
            )
            return
        self._cloud.delete_network(state.cloud_id(KEY_VPC) or self.vpc_name)

    # -- subnets --------------------------------------------------------------

    def _subnet_ensurer(
        self, key: str, default_name: str, with_flow_logs: bool = False
    ) -> Callable[[FlowState], str]:
        networks = self._config.networks
        cidr = networks.workers if key == KEY_SUBNET_NODES else networks.internal or ""
        flow_logs = None
        if with_flow_logs and networks.flow_logs is not None:
            flow_logs = FlowLogSettings(
                aggregation_interval=networks.flow_logs.aggregation_interval,
                flow_sampling=networks.flow_logs.flow_sampling,
                metadata=networks.flow_logs.metadata,
            )

        def ensure(state: FlowState) -> str:
            name = state.cloud_id(key) or default_name
            existing = self._cloud.get_subnetwork(name)
            if existing is not None:
                if existing.ip_cidr_range != cidr:
                    logger.warning(
                        "Subnet CIDR differs from config, keeping live range",
                        extra={
                            "cluster": self.cluster,
                            "subnet": name,
                            "live": existing.ip_cidr_range,
                            "desired": cidr,
                        },
                    )
                return existing.name
            subnet = Subnetwork(
                name=name,
                network=self.network_link,
                region=self._identity.region,
                ip_cidr_range=cidr,
                flow_logs=flow_logs,
            )
            logger.info(
                "Creating subnet", extra={"cluster": self.cluster, "subnet": name, "cidr": cidr}
            )
            return self._cloud.insert_subnetwork(subnet).name

        return ensure

    def _subnet_destroyer(self, key: str, default_name: str) -> Callable[[FlowState], None]:
        def destroy(state: FlowState) -> None:
            self._cloud.delete_subnetwork(state.cloud_id(key) or default_name)

        return destroy

    def _retire_internal_subnet(self, state: FlowState) -> None:
        name = state.cloud_id(KEY_SUBNET_INTERNAL) or self.internal_subnet_name
        router_name = state.cloud_id(KEY_ROUTER) or self.router_name
        nat_name = state.cloud_id(KEY_NAT) or self.nat_name

        # The NAT must let go of the subnet before it can be deleted
        router = self._cloud.get_router(router_name)
        nat = router.nat(nat_name) if router is not None else None
        if router is not None and nat is not None:
            kept = tuple(s for s in nat.subnetworks if short_name(s) != name)
            if kept != nat.subnetworks:
                trimmed = dataclasses.replace(nat, subnetworks=kept)
                self._cloud.patch_router(
                    _with_nats(
                        router, tuple(trimmed if n.name == nat_name else n for n in router.nats)
                    )
                )

        logger.info(
            "Deleting internal subnet no longer configured",
            extra={"cluster": self.cluster, "subnet": name},
        )
        self._cloud.delete_subnetwork(name)

    # -- router and NAT -------------------------------------------------------

    def _ensure_router(self, state: FlowState) -> str:
        name = state.cloud_id(KEY_ROUTER) or self.router_name
        router = self._cloud.get_router(name)
        if router is not None:
            return router.name
        if not self.manages_router:
            raise CloudAPIError(
                f"cloud router '{name}' does not exist", transient=False, operation=KEY_ROUTER
            )
        logger.info("Creating cloud router", extra={"cluster": self.cluster, "router": name})
        created = self._cloud.insert_router(
            Router(name=name, network=self.network_link, region=self._identity.region)
        )
        return created.name

    def _destroy_router(self, state: FlowState) -> None:
        if not self.manages_router:
            logger.info(
                "Keeping user-provided cloud router",
                extra={"cluster": self.cluster, "router": self.router_name},
            )
            return
        self._cloud.delete_router(state.cloud_id(KEY_ROUTER) or self.router_name)

    def _desired_nat(self, state: FlowState) -> RouterNat:
        settings = self._config.networks.cloud_nat or CloudNAT()
        subnets = [state.cloud_id(KEY_SUBNET_NODES) or self.nodes_subnet_name]
        if self._config.networks.internal:
            subnets.append(state.cloud_id(KEY_SUBNET_INTERNAL) or self.internal_subnet_name)
        return RouterNat(
            name=state.cloud_id(KEY_NAT) or self.nat_name,
            subnetworks=tuple(self._subnet_link(name) for name in subnets),
            min_ports_per_vm=settings.min_ports_per_vm,
            enable_endpoint_independent_mapping=settings.enable_endpoint_independent_mapping,
        )

    def _ensure_nat(self, state: FlowState) -> str:
        router_name = state.cloud_id(KEY_ROUTER) or self.router_name
        router = self._cloud.get_router(router_name)
        if router is None:
            # The router record is Created, so it should be there
            raise CloudAPIError(
                f"cloud router '{router_name}' disappeared", transient=True, operation=KEY_NAT
            )
        desired = self._desired_nat(state)
        if _nat_matches(router.nat(desired.name), desired):
            return desired.name

        nats = tuple(nat for nat in router.nats if nat.name != desired.name) + (desired,)
        logger.info(
            "Configuring cloud NAT",
            extra={"cluster": self.cluster, "router": router_name, "nat": desired.name},
        )
        self._cloud.patch_router(_with_nats(router, nats))
        return desired.name

    def _destroy_nat(self, state: FlowState) -> None:
        router_name = state.cloud_id(KEY_ROUTER) or self.router_name
        nat_name = state.cloud_id(KEY_NAT) or self.nat_name
        router = self._cloud.get_router(router_name)
        if router is None or router.nat(nat_name) is None:
            return
        remaining = tuple(nat for nat in router.nats if nat.name != nat_name)
        self._cloud.patch_router(_with_nats(router, remaining))

    # -- firewall rules -------------------------------------------------------

    def _firewall_ensurer(self, rule: FirewallRule) -> Callable[[FlowState], str]:
        def ensure(state: FlowState) -> str:
            live = self._cloud.get_firewall(rule.name)
            if live is None:
                logger.info(
                    "Creating firewall rule", extra={"cluster": self.cluster, "rule": rule.name}
                )
                return self._cloud.insert_firewall(rule).name
            if not live.matches(rule):
                logger.info(
                    "Updating firewall rule", extra={"cluster": self.cluster, "rule": rule.name}
                )
                return self._cloud.patch_firewall(rule).name
            return live.name

        return ensure

    def _firewall_destroyer(self, rule: FirewallRule) -> Callable[[FlowState], None]:
        def destroy(state: FlowState) -> None:
            self._cloud.delete_firewall(rule.name)

        return destroy

    def _prune_firewalls(
        self, desired_names: Iterable[str], *, teardown: bool = False
    ) -> list[str]:
        # Rules under the extra prefixes belong to live load balancers, so they
        # are only collected once the cluster is torn down
        orphans = firewall_rules_to_delete(
            self._cloud.list_firewalls(),
            self.cluster,
            self.vpc_name,
            desired_names,
            self._extra_owned_prefixes if teardown else (),
        )
        for rule in orphans:
            logger.info(
                "Deleting orphaned firewall rule",
                extra={"cluster": self.cluster, "rule": rule.name},
            )
            self._cloud.delete_firewall(rule.name)
        return [rule.name for rule in orphans]

    def _prune_routes(self) -> list[str]:
        policy = OwnershipPolicy(self.cluster, self._extra_owned_prefixes)
        orphans = resources_to_delete(self._cloud.list_routes(), policy, self.vpc_name)
        for route in orphans:
            logger.info(
                "Deleting cluster route", extra={"cluster": self.cluster, "route": route.name}
            )
            self._cloud.delete_route(route.name)
        return [route.name for route in orphans]

    # -- status ---------------------------------------------------------------

    def build_provider_status(self, state: FlowState) -> dict[str, Any]:
        """Provider status describing the objects the flow has created so far."""

        def created(key: str) -> str | None:
            if key not in state.resources:
                return None
            record = state.record(key)
            return record.cloud_id if record.status == ResourceStatus.CREATED else None

        networks = StatusNetworks()
        vpc = created(KEY_VPC)
        if vpc:
            router = created(KEY_ROUTER)
            networks.vpc = StatusVPC(
                name=vpc, cloud_router=StatusCloudRouter(name=router) if router else None
            )
        for key, purpose in (
            (KEY_SUBNET_NODES, SubnetPurpose.NODES),
            (KEY_SUBNET_INTERNAL, SubnetPurpose.INTERNAL),
        ):
            subnet = created(key)
            if subnet:
                networks.subnets.append(StatusSubnet(name=subnet, purpose=purpose.value))
        networks.nat_name = created(KEY_NAT)
        return InfrastructureStatus(networks=networks).to_dict()


def _nat_matches(live: RouterNat | None, desired: RouterNat) -> bool:
    if live is None:
        return False
    return (
        sorted(short_name(s) for s in live.subnetworks)
        == sorted(short_name(s) for s in desired.subnetworks)
        and live.min_ports_per_vm == desired.min_ports_per_vm
        and live.enable_endpoint_independent_mapping
        == desired.enable_endpoint_independent_mapping
    )


def _with_nats(router: Router, nats: tuple[RouterNat, ...]) -> Router:
    return dataclasses.replace(router, nats=nats)
