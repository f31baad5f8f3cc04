"""Tests for orphan detection in shared networks."""

from __future__ import annotations

import pytest

from gcpinfra.gcp_client import FirewallRule, Route
from gcpinfra.sync import (
    CLOUD_CONTROLLER_MANAGER_PREFIX,
    OwnershipPolicy,
    firewall_rules_to_delete,
    resources_to_delete,
)

CLUSTER = "shoot--foobar--gcp"
VPC = "my-vpc"
OTHER_VPC = "other-vpc"
DESIRED = (
    f"{CLUSTER}-allow-internal-access",
    f"{CLUSTER}-allow-health-checks",
    f"{CLUSTER}-allow-external-access",
)


@pytest.fixture
def rules() -> list[FirewallRule]:
    """The shared-network firewall set of the reference scenario."""
    return [
        FirewallRule(name=f"{CLUSTER}-allow-internal-access", network=VPC),
        FirewallRule(name=f"{CLUSTER}-allow-health-checks", network=VPC),
        FirewallRule(name=f"{CLUSTER}-allow-external-access", network=VPC),
        FirewallRule(name="k8s-foo", network=VPC),
        FirewallRule(name="k8s-bar", network=VPC),
        FirewallRule(name="k8s-other-foo", network=OTHER_VPC),
    ]


def _names(objs: list) -> list[str]:
    return [obj.name for obj in objs]


class TestOwnershipPolicy:
    """Tests for the managed-name convention."""

    def test_owns_prefixed_names(self) -> None:
        """Test prefix plus separator and the bare prefix."""
        policy = OwnershipPolicy(CLUSTER)
        assert policy.owns(CLUSTER)
        assert policy.owns(f"{CLUSTER}-allow-internal-access")

    def test_does_not_own_lookalikes(self) -> None:
        """Test that a longer cluster name sharing the prefix is not owned."""
        policy = OwnershipPolicy("shoot--dev--a")
        assert not policy.owns("shoot--dev--ab-allow-internal-access")
        assert not policy.owns("k8s-foo")

    def test_extra_prefixes(self) -> None:
        """Test widening ownership to cloud-controller-manager rules."""
        policy = OwnershipPolicy(CLUSTER, (CLOUD_CONTROLLER_MANAGER_PREFIX,))
        assert policy.owns("k8s-foo")
        assert policy.prefixes == (CLUSTER, "k8s")

    def test_empty_prefix_rejected(self) -> None:
        """Test that an empty cluster prefix would own everything and is refused."""
        with pytest.raises(ValueError):
            OwnershipPolicy("")


class TestFirewallRulesToDelete:
    """Tests for firewall_rules_to_delete."""

    def test_conservative_scenario(self, rules: list[FirewallRule]) -> None:
        """Test that nothing is deleted when all cluster rules are desired."""
        assert firewall_rules_to_delete(rules, CLUSTER, VPC, DESIRED) == []

    def test_k8s_prefix_scenario(self, rules: list[FirewallRule]) -> None:
        """Test the wider policy: k8s rules in the target network are pruned."""
        orphans = firewall_rules_to_delete(
            rules, CLUSTER, VPC, DESIRED, extra_prefixes=(CLOUD_CONTROLLER_MANAGER_PREFIX,)
        )
        assert _names(orphans) == ["k8s-foo", "k8s-bar"]

    @pytest.mark.parametrize("extra_prefixes", [(), ("k8s",)])
    def test_other_network_never_touched(
        self, rules: list[FirewallRule], extra_prefixes: tuple[str, ...]
    ) -> None:
        """Test that k8s-other-foo survives under both interpretations."""
        orphans = firewall_rules_to_delete(rules, CLUSTER, VPC, (), extra_prefixes)
        assert "k8s-other-foo" not in _names(orphans)

    def test_undesired_cluster_rule_deleted(self, rules: list[FirewallRule]) -> None:
        """Test that a cluster rule dropped from the desired set is pruned."""
        orphans = firewall_rules_to_delete(rules, CLUSTER, VPC, DESIRED[:2])
        assert _names(orphans) == [f"{CLUSTER}-allow-external-access"]

    def test_teardown_deletes_all_owned(self, rules: list[FirewallRule]) -> None:
        """Test an empty desired set, as used on teardown."""
        orphans = firewall_rules_to_delete(rules, CLUSTER, VPC)
        assert _names(orphans) == list(DESIRED)

    def test_rules_without_separator_are_kept(self) -> None:
        """Test that names only glued to the cluster name are not owned."""
        glued = [
            FirewallRule(name=f"{CLUSTER}allow-internal-access", network=VPC),
            FirewallRule(name=f"{CLUSTER}allow-health-checks", network=VPC),
        ]
        assert firewall_rules_to_delete(glued, CLUSTER, VPC) == []

    def test_self_link_network(self) -> None:
        """Test that self-links and names of the same network compare equal."""
        link = f"https://www.googleapis.com/compute/v1/projects/p/global/networks/{VPC}"
        rules = [FirewallRule(name=f"{CLUSTER}-old", network=link)]

        assert _names(firewall_rules_to_delete(rules, CLUSTER, VPC)) == [f"{CLUSTER}-old"]
        assert _names(firewall_rules_to_delete(rules, CLUSTER, link)) == [f"{CLUSTER}-old"]

    def test_empty_network_rejected(self, rules: list[FirewallRule]) -> None:
        """Test that an empty target network is refused."""
        with pytest.raises(ValueError):
            firewall_rules_to_delete(rules, CLUSTER, "")


class TestResourcesToDelete:
    """Tests for the generic synchronizer."""

    def test_routes(self) -> None:
        """Test that the same rules apply to routes."""
        routes = [
            Route(name=f"{CLUSTER}-a1b2", network=VPC),
            Route(name="default-route-123", network=VPC),
            Route(name=f"{CLUSTER}-c3d4", network=OTHER_VPC),
        ]

        orphans = resources_to_delete(routes, OwnershipPolicy(CLUSTER), VPC)

        assert _names(orphans) == [f"{CLUSTER}-a1b2"]

    def test_ownership_safety(self) -> None:
        """Test that every returned object is in the network, owned and not desired."""
        policy = OwnershipPolicy(CLUSTER, ("k8s",))
        live = [
            FirewallRule(name=name, network=network)
            for name in (f"{CLUSTER}-a", f"{CLUSTER}-b", "k8s-x", "other-a", CLUSTER)
            for network in (VPC, OTHER_VPC)
        ]
        desired = {f"{CLUSTER}-b"}

        orphans = resources_to_delete(live, policy, VPC, desired)

        assert orphans
        for obj in orphans:
            assert obj.network == VPC
            assert policy.owns(obj.name)
            assert obj.name not in desired
