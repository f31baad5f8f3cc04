"""Compute API collaborator.

Thin, blocking wrapper around ``google-cloud-compute`` exposing exactly the
operations the flow needs: get/insert/patch/delete for networks, subnets,
routers, firewall rules and routes, plus listing of firewall rules and routes.

Every call is idempotent at this layer:
- insert of an object that already exists returns the existing object
- delete of an object that does not exist is a no-op
- get of a missing object returns None

Provider errors are translated into CloudAPIError with a ``transient`` flag
so that callers can tell rate limits and server errors from permission or
validation problems.
"""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from google.api_core import exceptions as gexc

logger = logging.getLogger(__name__)

# Source ranges of Google Cloud load balancer health checks
HEALTH_CHECK_SOURCE_RANGES: tuple[str, ...] = ("35.191.0.0/16", "130.211.0.0/22")

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    gexc.TooManyRequests,
    gexc.ServerError,
    gexc.Conflict,
    gexc.RetryError,
    concurrent.futures.TimeoutError,
)


class CloudAPIError(Exception):
    """Wraps a provider error.

    Attributes:
        transient: True for rate limits, 5xx, conflicts and timeouts. Transient
            errors are worth retrying; permanent ones need a spec or
            permission fix.
        status_code: HTTP status code reported by the API, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        status_code: int | None = None,
        operation: str = "",
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code
        self.operation = operation


def short_name(link: str | None) -> str:
    """Return the trailing name of a resource self-link (or the name itself)."""
    if not link:
        return ""
    return link.rstrip("/").rsplit("/", 1)[-1]


def translate_error(err: Exception, operation: str) -> CloudAPIError:
    """Translate a provider exception into CloudAPIError."""
    status_code = getattr(err, "code", None)
    if not isinstance(status_code, int):
        status_code = None
    transient = isinstance(err, TRANSIENT_ERRORS)
    return CloudAPIError(
        f"{operation} failed: {err}",
        transient=transient,
        status_code=status_code,
        operation=operation,
    )


# =============================================================================
# Domain objects
# =============================================================================


@dataclass(frozen=True)
class Network:
    name: str
    self_link: str = ""
    routing_mode: str = "REGIONAL"


@dataclass(frozen=True)
class FlowLogSettings:
    aggregation_interval: str | None = None
    flow_sampling: float | None = None
    metadata: str | None = None


@dataclass(frozen=True)
class Subnetwork:
    name: str
    network: str
    region: str
    ip_cidr_range: str
    self_link: str = ""
    flow_logs: FlowLogSettings | None = None


@dataclass(frozen=True)
class RouterNat:
    name: str
    subnetworks: tuple[str, ...] = ()
    min_ports_per_vm: int = 2048
    enable_endpoint_independent_mapping: bool = False


@dataclass(frozen=True)
class Router:
    name: str
    network: str
    region: str
    nats: tuple[RouterNat, ...] = ()
    self_link: str = ""

    def nat(self, name: str) -> RouterNat | None:
        for nat in self.nats:
            if nat.name == name:
                return nat
        return None


@dataclass(frozen=True)
class FirewallAllowed:
    protocol: str
    ports: tuple[str, ...] = ()


@dataclass(frozen=True)
class FirewallRule:
    """A firewall rule as seen live in the project."""

    name: str
    network: str
    source_ranges: tuple[str, ...] = ()
    allowed: tuple[FirewallAllowed, ...] = ()
    target_tags: tuple[str, ...] = ()
    direction: str = "INGRESS"
    self_link: str = ""

    def matches(self, other: FirewallRule) -> bool:
        """True if other has the same effective spec (order-insensitive)."""
        return (
            short_name(self.network) == short_name(other.network)
            and sorted(self.source_ranges) == sorted(other.source_ranges)
            and sorted(self.target_tags) == sorted(other.target_tags)
            and self.direction == other.direction
            and sorted((a.protocol, tuple(sorted(a.ports))) for a in self.allowed)
            == sorted((a.protocol, tuple(sorted(a.ports))) for a in other.allowed)
        )


@dataclass(frozen=True)
class Route:
    name: str
    network: str
    dest_range: str = ""
    self_link: str = ""


class CloudClient(Protocol):
    """Operations of the cloud collaborator used by the flow."""

    def get_network(self, name: str) -> Network | None: ...
    def insert_network(self, network: Network) -> Network: ...
    def delete_network(self, name: str) -> None: ...

    def get_subnetwork(self, name: str) -> Subnetwork | None: ...
    def insert_subnetwork(self, subnet: Subnetwork) -> Subnetwork: ...
    def delete_subnetwork(self, name: str) -> None: ...

    def get_router(self, name: str) -> Router | None: ...
    def insert_router(self, router: Router) -> Router: ...
    def patch_router(self, router: Router) -> Router: ...
    def delete_router(self, name: str) -> None: ...

    def get_firewall(self, name: str) -> FirewallRule | None: ...
    def list_firewalls(self) -> list[FirewallRule]: ...
    def insert_firewall(self, rule: FirewallRule) -> FirewallRule: ...
    def patch_firewall(self, rule: FirewallRule) -> FirewallRule: ...
    def delete_firewall(self, name: str) -> None: ...

    def list_routes(self) -> list[Route]: ...
    def delete_route(self, name: str) -> None: ...


# =============================================================================
# google-cloud-compute implementation
# =============================================================================


@dataclass
class GCPClient:
    """CloudClient backed by google-cloud-compute.

    Clients are created lazily so that constructing a GCPClient never touches
    the network or credentials.
    """

    project_id: str
    region: str
    operation_timeout_seconds: int = 300
    credentials: Any | None = None
    _clients: dict[str, Any] = field(default_factory=dict, repr=False)

    def _client(self, kind: str) -> Any:
        if kind not in self._clients:
            from google.cloud import compute_v1

            factories = {
                "networks": compute_v1.NetworksClient,
                "subnetworks": compute_v1.SubnetworksClient,
                "routers": compute_v1.RoutersClient,
                "firewalls": compute_v1.FirewallsClient,
                "routes": compute_v1.RoutesClient,
            }
            self._clients[kind] = factories[kind](credentials=self.credentials)
        return self._clients[kind]

    def _wait(self, operation: Any) -> None:
        operation.result(timeout=self.operation_timeout_seconds)

    def _get(self, operation: str, call: Any, **kwargs: Any) -> Any | None:
        try:
            return call(**kwargs)
        except gexc.NotFound:
            return None
        except (gexc.GoogleAPICallError, gexc.RetryError) as e:
            raise translate_error(e, operation) from e

    def _mutate(self, operation: str, call: Any, **kwargs: Any) -> bool:
        """Run a mutating call and wait for it.

        Returns:
            False if the target already existed (insert) or was already gone
            (delete), True otherwise.
        """
        try:
            self._wait(call(**kwargs))
            return True
        except (gexc.AlreadyExists, gexc.NotFound):
            logger.debug("Mutation was a no-op", extra={"operation": operation})
            return False
        except (gexc.GoogleAPICallError, gexc.RetryError, concurrent.futures.TimeoutError) as e:
            raise translate_error(e, operation) from e

    # -- networks -------------------------------------------------------------

    def get_network(self, name: str) -> Network | None:
        raw = self._get(
            "networks.get", self._client("networks").get, project=self.project_id, network=name
        )
        return _network_from_api(raw) if raw is not None else None

    def insert_network(self, network: Network) -> Network:
        from google.cloud import compute_v1

        resource = compute_v1.Network(
            name=network.name,
            auto_create_subnetworks=False,
            routing_config=compute_v1.NetworkRoutingConfig(routing_mode=network.routing_mode),
        )
        self._mutate(
            "networks.insert",
            self._client("networks").insert,
            project=self.project_id,
            network_resource=resource,
        )
        return self._must_get(self.get_network, network.name, "networks.insert")

    def delete_network(self, name: str) -> None:
        self._mutate(
            "networks.delete",
            self._client("networks").delete,
            project=self.project_id,
            network=name,
        )

    # -- subnetworks ----------------------------------------------------------

    def get_subnetwork(self, name: str) -> Subnetwork | None:
        raw = self._get(
            "subnetworks.get",
            self._client("subnetworks").get,
            project=self.project_id,
            region=self.region,
            subnetwork=name,
        )
        return _subnetwork_from_api(raw) if raw is not None else None

    def insert_subnetwork(self, subnet: Subnetwork) -> Subnetwork:
        from google.cloud import compute_v1

        resource = compute_v1.Subnetwork(
            name=subnet.name,
            network=subnet.network,
            region=subnet.region,
            ip_cidr_range=subnet.ip_cidr_range,
        )
        if subnet.flow_logs is not None:
            log_config = compute_v1.SubnetworkLogConfig(enable=True)
            if subnet.flow_logs.aggregation_interval:
                log_config.aggregation_interval = subnet.flow_logs.aggregation_interval
            if subnet.flow_logs.flow_sampling is not None:
                log_config.flow_sampling = subnet.flow_logs.flow_sampling
            if subnet.flow_logs.metadata:
                log_config.metadata = subnet.flow_logs.metadata
            resource.log_config = log_config
        self._mutate(
            "subnetworks.insert",
            self._client("subnetworks").insert,
            project=self.project_id,
            region=self.region,
            subnetwork_resource=resource,
        )
        return self._must_get(self.get_subnetwork, subnet.name, "subnetworks.insert")

    def delete_subnetwork(self, name: str) -> None:
        self._mutate(
            "subnetworks.delete",
            self._client("subnetworks").delete,
            project=self.project_id,
            region=self.region,
            subnetwork=name,
        )

    # -- routers --------------------------------------------------------------

    def get_router(self, name: str) -> Router | None:
        raw = self._get(
            "routers.get",
            self._client("routers").get,
            project=self.project_id,
            region=self.region,
            router=name,
        )
        return _router_from_api(raw) if raw is not None else None

    def insert_router(self, router: Router) -> Router:
        self._mutate(
            "routers.insert",
            self._client("routers").insert,
            project=self.project_id,
            region=self.region,
            router_resource=_router_to_api(router),
        )
        return self._must_get(self.get_router, router.name, "routers.insert")

    def patch_router(self, router: Router) -> Router:
        self._mutate(
            "routers.patch",
            self._client("routers").patch,
            project=self.project_id,
            region=self.region,
            router=router.name,
            router_resource=_router_to_api(router),
        )
        return self._must_get(self.get_router, router.name, "routers.patch")

    def delete_router(self, name: str) -> None:
        self._mutate(
            "routers.delete",
            self._client("routers").delete,
            project=self.project_id,
            region=self.region,
            router=name,
        )

    # -- firewalls ------------------------------------------------------------

    def get_firewall(self, name: str) -> FirewallRule | None:
        raw = self._get(
            "firewalls.get",
            self._client("firewalls").get,
            project=self.project_id,
            firewall=name,
        )
        return _firewall_from_api(raw) if raw is not None else None

    def list_firewalls(self) -> list[FirewallRule]:
        try:
            pager = self._client("firewalls").list(project=self.project_id)
            return [_firewall_from_api(raw) for raw in pager]
        except (gexc.GoogleAPICallError, gexc.RetryError) as e:
            raise translate_error(e, "firewalls.list") from e

    def insert_firewall(self, rule: FirewallRule) -> FirewallRule:
        self._mutate(
            "firewalls.insert",
            self._client("firewalls").insert,
            project=self.project_id,
            firewall_resource=_firewall_to_api(rule),
        )
        return self._must_get(self.get_firewall, rule.name, "firewalls.insert")

    def patch_firewall(self, rule: FirewallRule) -> FirewallRule:
        self._mutate(
            "firewalls.patch",
            self._client("firewalls").patch,
            project=self.project_id,
            firewall=rule.name,
            firewall_resource=_firewall_to_api(rule),
        )
        return self._must_get(self.get_firewall, rule.name, "firewalls.patch")

    def delete_firewall(self, name: str) -> None:
        self._mutate(
            "firewalls.delete",
            self._client("firewalls").delete,
            project=self.project_id,
            firewall=name,
        )

    # -- routes ---------------------------------------------------------------

    def list_routes(self) -> list[Route]:
        try:
            pager = self._client("routes").list(project=self.project_id)
            return [
                Route(
                    name=raw.name,
                    network=raw.network,
                    dest_range=raw.dest_range,
                    self_link=raw.self_link,
                )
                for raw in pager
            ]
        except (gexc.GoogleAPICallError, gexc.RetryError) as e:
            raise translate_error(e, "routes.list") from e

    def delete_route(self, name: str) -> None:
        self._mutate(
            "routes.delete",
            self._client("routes").delete,
            project=self.project_id,
            route=name,
        )

    @staticmethod
    def _must_get(getter: Any, name: str, operation: str) -> Any:
        obj = getter(name)
        if obj is None:
            # Eventual consistency right after an insert: retry on the next attempt
            raise CloudAPIError(
                f"{operation}: '{name}' not visible after insert",
                transient=True,
                operation=operation,
            )
        return obj


# =============================================================================
# API object conversion
# =============================================================================


def _network_from_api(raw: Any) -> Network:
    routing_config = getattr(raw, "routing_config", None)
    return Network(
        name=raw.name,
        self_link=raw.self_link,
        routing_mode=getattr(routing_config, "routing_mode", "") or "REGIONAL",
    )


def _subnetwork_from_api(raw: Any) -> Subnetwork:
    log_config = getattr(raw, "log_config", None)
    flow_logs = None
    if log_config is not None and getattr(log_config, "enable", False):
        flow_logs = FlowLogSettings(
            aggregation_interval=log_config.aggregation_interval or None,
            flow_sampling=log_config.flow_sampling,
            metadata=log_config.metadata or None,
        )
    return Subnetwork(
        name=raw.name,
        network=raw.network,
        region=short_name(raw.region),
        ip_cidr_range=raw.ip_cidr_range,
        self_link=raw.self_link,
        flow_logs=flow_logs,
    )


def _router_from_api(raw: Any) -> Router:
    return Router(
        name=raw.name,
        network=raw.network,
        region=short_name(raw.region),
        self_link=raw.self_link,
        nats=tuple(
            RouterNat(
                name=nat.name,
                subnetworks=tuple(s.name for s in nat.subnetworks),
                min_ports_per_vm=nat.min_ports_per_vm,
                enable_endpoint_independent_mapping=nat.enable_endpoint_independent_mapping,
            )
            for nat in raw.nats
        ),
    )


def _router_to_api(router: Router) -> Any:
    from google.cloud import compute_v1

    return compute_v1.Router(
        name=router.name,
        network=router.network,
        region=router.region,
        nats=[
            compute_v1.RouterNat(
                name=nat.name,
                nat_ip_allocate_option="AUTO_ONLY",
                source_subnetwork_ip_ranges_to_nat="LIST_OF_SUBNETWORKS",
                subnetworks=[
                    compute_v1.RouterNatSubnetworkToNat(
                        name=subnet, source_ip_ranges_to_nat=["ALL_IP_RANGES"]
                    )
                    for subnet in nat.subnetworks
                ],
                min_ports_per_vm=nat.min_ports_per_vm,
                enable_endpoint_independent_mapping=nat.enable_endpoint_independent_mapping,
                log_config=compute_v1.RouterNatLogConfig(enable=True, filter="ERRORS_ONLY"),
            )
            for nat in router.nats
        ],
    )


def _firewall_from_api(raw: Any) -> FirewallRule:
    return FirewallRule(
        name=raw.name,
        network=raw.network,
        source_ranges=tuple(raw.source_ranges),
        allowed=tuple(
            FirewallAllowed(protocol=a.I_p_protocol, ports=tuple(a.ports)) for a in raw.allowed
        ),
        target_tags=tuple(raw.target_tags),
        direction=raw.direction or "INGRESS",
        self_link=raw.self_link,
    )


def _firewall_to_api(rule: FirewallRule) -> Any:
    from google.cloud import compute_v1

    return compute_v1.Firewall(
        name=rule.name,
        network=rule.network,
        direction=rule.direction,
        source_ranges=list(rule.source_ranges),
        target_tags=list(rule.target_tags),
        allowed=[
            compute_v1.Allowed(I_p_protocol=a.protocol, ports=list(a.ports)) for a in rule.allowed
        ],
    )
