"""Diff-and-prune of cloud-side collections (firewall rules, routes).

A VPC may be shared with other clusters or unrelated tenants. Deleting the
wrong firewall rule breaks someone else's workload, so an object is only ever
proposed for deletion when ALL of the following hold:

1. It lives in the target network (compared by network name, so full
   self-links and bare names are treated alike).
2. Its name follows the managed-name convention of the cluster being
   reconciled: it equals an owned prefix or starts with ``<prefix>-``.
3. It is not part of the desired set of managed names.

Objects in any other network are never touched, whatever their name.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol, TypeVar

from .gcp_client import FirewallRule, short_name

logger = logging.getLogger(__name__)

# Rules made by the Kubernetes cloud-controller-manager for load balancers
CLOUD_CONTROLLER_MANAGER_PREFIX = "k8s"

NAME_SEPARATOR = "-"


class LiveResource(Protocol):
    """Any live cloud object keyed by name with a network membership."""

    @property
    def name(self) -> str: ...

    @property
    def network(self) -> str: ...


R = TypeVar("R", bound=LiveResource)


@dataclass(frozen=True)
class OwnershipPolicy:
    """Managed-name convention marking objects as owned by one cluster.

    The default policy is conservative: only names carrying the cluster prefix
    are owned. ``extra_prefixes`` widens ownership, e.g. to the ``k8s`` rules a
    cloud-controller-manager creates for the cluster's load balancers.
    """

    cluster_prefix: str
    extra_prefixes: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.cluster_prefix:
            raise ValueError("cluster_prefix must not be empty")

    @property
    def prefixes(self) -> tuple[str, ...]:
        return (self.cluster_prefix, *self.extra_prefixes)

    def owns(self, name: str) -> bool:
        return any(
            name == prefix or name.startswith(prefix + NAME_SEPARATOR)
            for prefix in self.prefixes
        )


def resources_to_delete(
    live: Iterable[R],
    ownership: OwnershipPolicy,
    network: str,
    desired_names: Iterable[str] = (),
) -> list[R]:
    """Compute the live objects that must be deleted.

    Args:
        live: Objects freshly listed from the cloud API.
        ownership: Managed-name convention of the cluster.
        network: Target network name or self-link.
        desired_names: Names that must be kept.

    Returns:
        Objects to delete, in the order they were listed.
    """
    target = short_name(network)
    if not target:
        raise ValueError("target network must not be empty")

    desired = set(desired_names)
    result: list[R] = []
    for obj in live:
        if short_name(obj.network) != target:
            continue
        if not ownership.owns(obj.name):
            continue
        if obj.name in desired:
            continue
        result.append(obj)

    if result:
        logger.info(
            "Found orphaned resources",
            extra={"network": target, "names": [obj.name for obj in result]},
        )
    return result


def firewall_rules_to_delete(
    rules: Iterable[FirewallRule],
    cluster_name: str,
    network: str,
    desired_names: Iterable[str] = (),
    extra_prefixes: Iterable[str] = (),
) -> list[FirewallRule]:
    """Firewall rules in network owned by cluster_name and no longer desired."""
    policy = OwnershipPolicy(cluster_prefix=cluster_name, extra_prefixes=tuple(extra_prefixes))
    return resources_to_delete(rules, policy, network, desired_names)
