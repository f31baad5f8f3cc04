"""Pydantic models for infrastructure configuration and status.

These models provide:
1. Type-safe parsing of the Infrastructure providerConfig
2. Validation at the boundary (fail fast, fail loudly)
3. The providerStatus document written back after every step
"""

from __future__ import annotations

import ipaddress
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

API_GROUP = "gcp.provider.extensions.gardener.cloud"
API_VERSION = f"{API_GROUP}/v1alpha1"

# Gardener extension resources
EXTENSIONS_GROUP = "extensions.gardener.cloud"
EXTENSIONS_VERSION = "v1alpha1"
INFRASTRUCTURE_PLURAL = "infrastructures"
CLUSTER_PLURAL = "clusters"

# GCP resource names: lowercase, start with a letter, max 63 characters
MAX_GCP_NAME_LENGTH = 63


def _validate_cidr(value: str) -> str:
    try:
        ipaddress.ip_network(value, strict=False)
    except ValueError as e:
        raise ValueError(f"must be in CIDR notation (e.g., 10.250.0.0/16): {value}") from e
    return value


# =============================================================================
# Infrastructure providerConfig
# =============================================================================


class CloudRouter(BaseModel):
    """Reference to an existing cloud router."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Annotated[str, Field(min_length=1, max_length=MAX_GCP_NAME_LENGTH)]


class VPC(BaseModel):
    """Reference to an existing VPC network shared with other tenants."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Annotated[str, Field(min_length=1, max_length=MAX_GCP_NAME_LENGTH)]
    cloud_router: CloudRouter | None = Field(None, alias="cloudRouter")


class CloudNAT(BaseModel):
    """Cloud NAT settings."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    min_ports_per_vm: Annotated[int, Field(ge=2, le=65536)] = Field(2048, alias="minPortsPerVM")
    enable_endpoint_independent_mapping: bool = Field(
        False, alias="enableEndpointIndependentMapping"
    )


class FlowLogs(BaseModel):
    """VPC flow log settings for the node subnet."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    aggregation_interval: str | None = Field(None, alias="aggregationInterval")
    flow_sampling: Annotated[float, Field(ge=0.0, le=1.0)] | None = Field(
        None, alias="flowSampling"
    )
    metadata: str | None = None

    @field_validator("aggregation_interval")
    @classmethod
    def validate_interval(cls, v: str | None) -> str | None:
        valid = {
            "INTERVAL_5_SEC",
            "INTERVAL_30_SEC",
            "INTERVAL_1_MIN",
            "INTERVAL_5_MIN",
            "INTERVAL_10_MIN",
            "INTERVAL_15_MIN",
        }
        if v is not None and v not in valid:
            raise ValueError(f"aggregationInterval must be one of {sorted(valid)}")
        return v


class NetworkConfig(BaseModel):
    """Networks section of the infrastructure config."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    vpc: VPC | None = None
    workers: str
    internal: str | None = None
    cloud_nat: CloudNAT | None = Field(None, alias="cloudNAT")
    flow_logs: FlowLogs | None = Field(None, alias="flowLogs")

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, v: str) -> str:
        return _validate_cidr(v)

    @field_validator("internal")
    @classmethod
    def validate_internal(cls, v: str | None) -> str | None:
        return _validate_cidr(v) if v is not None else None


class InfrastructureConfig(BaseModel):
    """Desired networking for one cluster (Infrastructure spec.providerConfig)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = "InfrastructureConfig"
    networks: NetworkConfig


class ClusterNetworking(BaseModel):
    """Shoot networking ranges feeding the internal firewall rule."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    nodes: str | None = None
    pods: str | None = None
    services: str | None = None

    @field_validator("nodes", "pods", "services")
    @classmethod
    def validate_ranges(cls, v: str | None) -> str | None:
        return _validate_cidr(v) if v is not None else None


# =============================================================================
# Cluster identity
# =============================================================================


class ClusterIdentity(BaseModel):
    """Everything about a cluster that influences one reconciliation pass.

    Immutable: built once from the Infrastructure and Cluster objects at the
    start of a pass and never changed afterwards.
    """

    model_config = ConfigDict(frozen=True)

    name: Annotated[str, Field(min_length=1)]
    project_id: str
    region: str
    infrastructure_annotations: dict[str, str] = Field(default_factory=dict)
    shoot_annotations: dict[str, str] = Field(default_factory=dict)
    seed_labels: dict[str, str] = Field(default_factory=dict)
    networking: ClusterNetworking = Field(default_factory=ClusterNetworking)

    @classmethod
    def from_objects(
        cls,
        infrastructure: dict[str, Any],
        cluster: dict[str, Any] | None,
        project_id: str,
        region: str,
    ) -> ClusterIdentity:
        """Build the identity from raw Infrastructure and Cluster objects.

        The technical cluster name is the Infrastructure namespace, which is
        also the prefix of every cloud resource the cluster owns.
        """
        metadata = infrastructure.get("metadata") or {}
        shoot, seed = _shoot_and_seed(cluster)
        shoot_networking = (shoot.get("spec") or {}).get("networking") or {}
        shoot_annotations, seed_labels = cluster_markers(cluster)

        return cls(
            name=metadata.get("namespace") or metadata.get("name", ""),
            project_id=project_id,
            region=region,
            infrastructure_annotations=dict(metadata.get("annotations") or {}),
            shoot_annotations=shoot_annotations,
            seed_labels=seed_labels,
            networking=ClusterNetworking.model_validate(
                {key: shoot_networking.get(key) for key in ("nodes", "pods", "services")}
            ),
        )


def cluster_markers(cluster: dict[str, Any] | None) -> tuple[dict[str, str], dict[str, str]]:
    """Shoot annotations and seed labels embedded in a Cluster object."""
    shoot, seed = _shoot_and_seed(cluster)
    return (
        dict((shoot.get("metadata") or {}).get("annotations") or {}),
        dict((seed.get("metadata") or {}).get("labels") or {}),
    )


def _shoot_and_seed(cluster: dict[str, Any] | None) -> tuple[dict[str, Any], dict[str, Any]]:
    cluster_spec = (cluster or {}).get("spec") or {}
    return _raw_object(cluster_spec.get("shoot")), _raw_object(cluster_spec.get("seed"))


def _raw_object(value: Any) -> dict[str, Any]:
    # Cluster embeds shoot and seed as RawExtension, which may arrive wrapped
    if not isinstance(value, dict):
        return {}
    if "raw" in value and isinstance(value["raw"], dict):
        return value["raw"]
    return value


# =============================================================================
# Infrastructure providerStatus
# =============================================================================


class SubnetPurpose(str, Enum):
    """Role of a subnet created for the cluster."""

    NODES = "nodes"
    INTERNAL = "internal"


class StatusSubnet(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    purpose: str


class StatusCloudRouter(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str


class StatusVPC(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    cloud_router: StatusCloudRouter | None = Field(None, alias="cloudRouter")


class StatusNetworks(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    vpc: StatusVPC | None = None
    subnets: list[StatusSubnet] = Field(default_factory=list)
    nat_name: str | None = Field(None, alias="natName")


class InfrastructureStatus(BaseModel):
    """Provider status written to the Infrastructure object after each step."""

    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = "InfrastructureStatus"
    networks: StatusNetworks = Field(default_factory=StatusNetworks)

    @model_validator(mode="after")
    def check_kind(self) -> InfrastructureStatus:
        if self.kind != "InfrastructureStatus":
            raise ValueError(f"unexpected kind {self.kind!r}")
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize with API field names, omitting unset parts."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
