"""Tests for the Pydantic models."""

import pytest
from pydantic import ValidationError

from gcpinfra.models import (
    API_VERSION,
    ClusterIdentity,
    InfrastructureConfig,
    InfrastructureStatus,
    StatusNetworks,
    StatusSubnet,
    StatusVPC,
)


class TestInfrastructureConfig:
    """Tests for InfrastructureConfig model."""

    def test_valid_config(self) -> None:
        """Test parsing a full providerConfig."""
        data = {
            "apiVersion": API_VERSION,
            "kind": "InfrastructureConfig",
            "networks": {
                "vpc": {"name": "shared-vpc", "cloudRouter": {"name": "shared-router"}},
                "workers": "10.250.0.0/16",
                "internal": "10.251.0.0/16",
                "cloudNAT": {"minPortsPerVM": 4096, "enableEndpointIndependentMapping": True},
                "flowLogs": {
                    "aggregationInterval": "INTERVAL_5_SEC",
                    "flowSampling": 0.2,
                    "metadata": "INCLUDE_ALL_METADATA",
                },
            },
        }
        config = InfrastructureConfig.model_validate(data)

        networks = config.networks
        assert networks.vpc is not None
        assert networks.vpc.name == "shared-vpc"
        assert networks.vpc.cloud_router is not None
        assert networks.vpc.cloud_router.name == "shared-router"
        assert networks.internal == "10.251.0.0/16"
        assert networks.cloud_nat is not None
        assert networks.cloud_nat.enable_endpoint_independent_mapping is True
        assert networks.flow_logs is not None
        assert networks.flow_logs.flow_sampling == 0.2

    def test_minimal_config(self) -> None:
        """Test that only the worker range is required."""
        config = InfrastructureConfig.model_validate({"networks": {"workers": "10.250.0.0/16"}})

        assert config.api_version == API_VERSION
        assert config.networks.vpc is None
        assert config.networks.cloud_nat is None

    def test_missing_workers(self) -> None:
        """Test that missing workers raises validation error."""
        with pytest.raises(ValidationError) as exc_info:
            InfrastructureConfig.model_validate({"networks": {}})

        assert "workers" in str(exc_info.value)

    @pytest.mark.parametrize("cidr", ["not-a-cidr", "10.250.0.0/33", "10.250.0.0/16/8"])
    def test_invalid_cidr(self, cidr: str) -> None:
        """Test that malformed ranges are rejected."""
        with pytest.raises(ValidationError, match="CIDR"):
            InfrastructureConfig.model_validate({"networks": {"workers": cidr}})

    def test_invalid_nat_ports(self) -> None:
        """Test that minPortsPerVM is bounded."""
        with pytest.raises(ValidationError):
            InfrastructureConfig.model_validate(
                {"networks": {"workers": "10.250.0.0/16", "cloudNAT": {"minPortsPerVM": 1}}}
            )

    def test_invalid_flow_log_interval(self) -> None:
        """Test that unknown aggregation intervals are rejected."""
        with pytest.raises(ValidationError, match="aggregationInterval"):
            InfrastructureConfig.model_validate(
                {
                    "networks": {
                        "workers": "10.250.0.0/16",
                        "flowLogs": {"aggregationInterval": "INTERVAL_2_MIN"},
                    }
                }
            )

    def test_extra_field_ignored(self) -> None:
        """Test that unknown fields are ignored."""
        config = InfrastructureConfig.model_validate(
            {"networks": {"workers": "10.250.0.0/16", "unknown": True}}
        )
        assert config.networks.workers == "10.250.0.0/16"


class TestClusterIdentity:
    """Tests for ClusterIdentity model."""

    def test_from_objects(self) -> None:
        """Test extraction of names, markers and ranges."""
        infrastructure = {
            "metadata": {
                "namespace": "shoot--dev--alpha",
                "name": "alpha",
                "annotations": {"a": "1"},
            }
        }
        cluster = {
            "spec": {
                "shoot": {
                    "metadata": {"annotations": {"b": "2"}},
                    "spec": {"networking": {"pods": "100.96.0.0/11", "type": "calico"}},
                },
                "seed": {"metadata": {"labels": {"c": "3"}}},
            }
        }

        identity = ClusterIdentity.from_objects(
            infrastructure, cluster, project_id="test-project", region="europe-west1"
        )

        assert identity.name == "shoot--dev--alpha"
        assert identity.infrastructure_annotations == {"a": "1"}
        assert identity.shoot_annotations == {"b": "2"}
        assert identity.seed_labels == {"c": "3"}
        assert identity.networking.pods == "100.96.0.0/11"
        assert identity.networking.nodes is None

    def test_raw_extension(self) -> None:
        """Test shoot and seed wrapped in a raw field."""
        cluster = {
            "spec": {
                "shoot": {"raw": {"metadata": {"annotations": {"b": "2"}}}},
                "seed": {"raw": {"metadata": {"labels": {"c": "3"}}}},
            }
        }

        identity = ClusterIdentity.from_objects(
            {"metadata": {"namespace": "ns"}}, cluster, project_id="p", region="r"
        )

        assert identity.shoot_annotations == {"b": "2"}
        assert identity.seed_labels == {"c": "3"}

    def test_without_cluster(self) -> None:
        """Test that a missing Cluster yields empty markers."""
        identity = ClusterIdentity.from_objects(
            {"metadata": {"namespace": "ns", "name": "n"}}, None, project_id="p", region="r"
        )

        assert identity.shoot_annotations == {}
        assert identity.seed_labels == {}

    def test_immutable(self) -> None:
        """Test that the identity cannot be changed after construction."""
        identity = ClusterIdentity(name="ns", project_id="p", region="r")

        with pytest.raises(ValidationError):
            identity.name = "other"  # type: ignore[misc]

    def test_empty_name_rejected(self) -> None:
        """Test that an identity needs a name."""
        with pytest.raises(ValidationError):
            ClusterIdentity.from_objects({"metadata": {}}, None, project_id="p", region="r")


class TestInfrastructureStatus:
    """Tests for InfrastructureStatus model."""

    def test_to_dict(self) -> None:
        """Test serialization with API field names."""
        status = InfrastructureStatus(
            networks=StatusNetworks(
                vpc=StatusVPC(name="vpc"),
                subnets=[StatusSubnet(name="vpc-nodes", purpose="nodes")],
                nat_name="vpc-cloud-nat",
            )
        )

        assert status.to_dict() == {
            "apiVersion": API_VERSION,
            "kind": "InfrastructureStatus",
            "networks": {
                "vpc": {"name": "vpc"},
                "subnets": [{"name": "vpc-nodes", "purpose": "nodes"}],
                "natName": "vpc-cloud-nat",
            },
        }

    def test_wrong_kind(self) -> None:
        """Test that another kind is rejected."""
        with pytest.raises(ValidationError):
            InfrastructureStatus.model_validate({"kind": "InfrastructureConfig"})
