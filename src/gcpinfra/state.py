"""Persisted reconciliation state: FlowState document and its codec.

The Infrastructure status carries an opaque JSON blob. Two generations of
documents may be found there:

- FlowState: written by the flow executor, identified by its apiVersion
  (group/version of this provider's API).
- Legacy state: written by the Terraformer backend, identified by a populated
  ``terraformState`` section.

The blob is decoded exactly once per pass into one of four variants
(UnsetState, FlowStateDocument, LegacyStateDocument, UnrecognizedState);
everything downstream works on the variant instead of re-parsing bytes.

STATE MACHINE (per resource record):
    Pending -> Creating -> Created             (apply)
    Created -> Deleting -> Deleted             (teardown)
    Creating/Deleting -> Error                 (failed step)
    Error -> Creating/Deleting                 (retry on a later pass)
    Pending/Creating -> Deleting               (teardown of unfinished records)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .graph import DependencyError, validate_edges
from .models import API_VERSION

logger = logging.getLogger(__name__)

FLOW_STATE_KIND = "FlowState"

# Terraform outputs of the legacy backend mapped to flow resource keys
LEGACY_OUTPUT_KEYS: dict[str, str] = {
    "vpc_name": "network/vpc",
    "subnet_nodes": "subnet/nodes",
    "subnet_internal": "subnet/internal",
    "cloud_router": "router/cloud-router",
    "cloud_nat": "nat/cloud-nat",
}


class StateFormatError(Exception):
    """Persisted state matches neither the flow nor the legacy schema.

    Fatal for the current pass: ownership cannot be guessed safely, so the
    cluster needs operator intervention before it is reconciled again.
    """

    pass


class InvalidTransitionError(Exception):
    """Raised when a record is moved along a forbidden edge."""

    pass


class ResourceStatus(str, Enum):
    """Provisioning status of a single resource record."""

    PENDING = "Pending"
    CREATING = "Creating"
    CREATED = "Created"
    DELETING = "Deleting"
    DELETED = "Deleted"
    ERROR = "Error"


ALLOWED_TRANSITIONS: dict[ResourceStatus, frozenset[ResourceStatus]] = {
    ResourceStatus.PENDING: frozenset({ResourceStatus.CREATING, ResourceStatus.DELETING}),
    ResourceStatus.CREATING: frozenset(
        {ResourceStatus.CREATED, ResourceStatus.ERROR, ResourceStatus.DELETING}
    ),
    ResourceStatus.CREATED: frozenset({ResourceStatus.DELETING}),
    ResourceStatus.DELETING: frozenset({ResourceStatus.DELETED, ResourceStatus.ERROR}),
    ResourceStatus.DELETED: frozenset(),
    ResourceStatus.ERROR: frozenset({ResourceStatus.CREATING, ResourceStatus.DELETING}),
}


def resource_key(resource_type: str, name: str) -> str:
    """Build the record key for a resource type and logical name."""
    if not resource_type or not name or "/" in resource_type:
        raise ValueError(f"invalid resource key parts: {resource_type!r}, {name!r}")
    return f"{resource_type}/{name}"


class ResourceRecord(BaseModel):
    """Progress of one cloud resource."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    cloud_id: str | None = Field(None, alias="cloudID")
    status: ResourceStatus = ResourceStatus.PENDING
    depends_on: tuple[str, ...] = Field(default_factory=tuple, alias="dependsOn")
    error: str | None = None

    def transition(self, target: ResourceStatus, error: str | None = None) -> None:
        """Move the record to target, rejecting backward transitions.

        Raises:
            InvalidTransitionError: If target is not reachable from the current status.
        """
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        self.error = error if target == ResourceStatus.ERROR else None


class FlowState(BaseModel):
    """Versioned progress document owned by the flow executor."""

    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = FLOW_STATE_KIND
    resources: dict[str, ResourceRecord] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_dependencies(self) -> FlowState:
        try:
            validate_edges({key: rec.depends_on for key, rec in self.resources.items()})
        except DependencyError as e:
            raise ValueError(str(e)) from e
        return self

    def record(self, key: str) -> ResourceRecord:
        return self.resources[key]

    def ensure_records(self, declarations: Iterable[tuple[str, Sequence[str]]]) -> None:
        """Add Pending records for keys not tracked yet.

        Existing records keep their progress; their dependency edges are
        refreshed from the declaration so the document always mirrors the
        graph being executed.
        """
        for key, depends_on in declarations:
            existing = self.resources.get(key)
            if existing is None:
                self.resources[key] = ResourceRecord(depends_on=tuple(depends_on))
            elif existing.depends_on != tuple(depends_on):
                existing.depends_on = tuple(depends_on)
        validate_edges({key: rec.depends_on for key, rec in self.resources.items()})

    def forget(self, key: str) -> None:
        """Drop the record of a resource that is gone and no longer declared.

        Raises:
            InvalidTransitionError: If another record still depends on it.
        """
        dependents = sorted(k for k, rec in self.resources.items() if key in rec.depends_on)
        if dependents:
            raise InvalidTransitionError(f"cannot forget {key}: required by {dependents}")
        self.resources.pop(key, None)

    def keys_with_status(self, *statuses: ResourceStatus) -> set[str]:
        return {key for key, rec in self.resources.items() if rec.status in statuses}

    def all_in(self, *statuses: ResourceStatus) -> bool:
        return all(rec.status in statuses for rec in self.resources.values())

    def cloud_id(self, key: str) -> str | None:
        rec = self.resources.get(key)
        return rec.cloud_id if rec else None

    @classmethod
    def from_legacy(
        cls,
        legacy: LegacyState,
        declarations: Iterable[tuple[str, Sequence[str]]],
    ) -> FlowState:
        """Seed a FlowState from a Terraformer state so existing objects are adopted.

        Every record starts Pending; records for which the terraform outputs
        name an object carry that name as cloudID, so the first flow pass
        finds and adopts them instead of creating duplicates.
        """
        state = cls()
        state.ensure_records(declarations)
        for output, key in LEGACY_OUTPUT_KEYS.items():
            value = legacy.output(output)
            if value and key in state.resources:
                state.resources[key].cloud_id = value
        logger.info(
            "Seeded flow state from legacy state",
            extra={
                "adopted": sorted(k for k, r in state.resources.items() if r.cloud_id),
            },
        )
        return state


class LegacyState(BaseModel):
    """State document of the Terraformer backend."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    terraform_state: dict[str, Any] | None = Field(None, alias="terraformState")

    @property
    def owns_cleanup(self) -> bool:
        """True when the embedded terraform state is populated."""
        return bool(self.terraform_state)

    def output(self, name: str) -> str | None:
        """Return a terraform output value, tolerating both output shapes."""
        outputs = (self.terraform_state or {}).get("outputs") or {}
        value = outputs.get(name)
        if isinstance(value, dict):
            value = value.get("value")
        return value if isinstance(value, str) and value else None


# =============================================================================
# Decoded variants
# =============================================================================


@dataclass(frozen=True)
class UnsetState:
    """No persisted state: fresh cluster."""

    is_flow = False
    is_legacy = False

    def require_known(self) -> UnsetState:
        return self


@dataclass(frozen=True)
class FlowStateDocument:
    """Persisted state written by the flow executor."""

    state: FlowState
    is_flow = True
    is_legacy = False

    def require_known(self) -> FlowStateDocument:
        return self


@dataclass(frozen=True)
class LegacyStateDocument:
    """Persisted state written by the legacy backend."""

    state: LegacyState
    is_flow = False
    is_legacy = True

    def require_known(self) -> LegacyStateDocument:
        return self


@dataclass(frozen=True)
class UnrecognizedState:
    """Persisted state of an unknown shape."""

    reason: str
    is_flow = False
    is_legacy = False

    def require_known(self) -> UnrecognizedState:
        raise StateFormatError(f"unknown infrastructure state format: {self.reason}")


PersistedState = UnsetState | FlowStateDocument | LegacyStateDocument | UnrecognizedState


class _TypeMeta(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    api_version: str | None = Field(None, alias="apiVersion")
    kind: str | None = None


def _group_version(api_version: str | None) -> tuple[str, str] | None:
    if not api_version or "/" not in api_version:
        return None
    group, _, version = api_version.partition("/")
    return group, version


def is_flow_api_version(api_version: str | None) -> bool:
    """True if api_version belongs to this provider's API group and version."""
    return _group_version(api_version) == _group_version(API_VERSION)


def decode_state(raw: bytes | str | Mapping[str, Any] | None) -> PersistedState:
    """Classify and decode a persisted state blob.

    The type discriminator is read first; only a flow-native document is
    decoded as FlowState. Anything else is tried as legacy state.

    Args:
        raw: The status.state value as bytes, text or an already parsed mapping.

    Returns:
        One of UnsetState, FlowStateDocument, LegacyStateDocument, UnrecognizedState.

    Raises:
        StateFormatError: If the discriminator names the flow schema but the
            document fails validation.
    """
    if raw is None:
        return UnsetState()

    if isinstance(raw, Mapping):
        data: Any = dict(raw)
    else:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        if not text.strip():
            return UnsetState()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            return UnrecognizedState(reason=f"invalid JSON: {e}")

    if data is None:
        return UnsetState()
    if not isinstance(data, dict):
        return UnrecognizedState(reason=f"expected a JSON object, got {type(data).__name__}")

    try:
        type_meta = _TypeMeta.model_validate(data)
    except ValidationError:
        type_meta = _TypeMeta()

    if is_flow_api_version(type_meta.api_version):
        try:
            return FlowStateDocument(state=FlowState.model_validate(data))
        except ValidationError as e:
            raise StateFormatError(f"invalid flow state: {e}") from e

    try:
        legacy = LegacyState.model_validate(data)
    except ValidationError as e:
        return UnrecognizedState(reason=f"not a legacy state: {e.error_count()} errors")

    if legacy.owns_cleanup:
        return LegacyStateDocument(state=legacy)

    return UnrecognizedState(
        reason=f"apiVersion={type_meta.api_version!r} and no terraform state"
    )


def encode_flow_state(state: FlowState) -> bytes:
    """Serialize a FlowState to the persisted JSON form."""
    return json.dumps(state_to_dict(state), separators=(",", ":")).encode("utf-8")


def state_to_dict(state: FlowState) -> dict[str, Any]:
    return state.model_dump(by_alias=True, exclude_none=True, mode="json")
