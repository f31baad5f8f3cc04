"""Backend selection: flow reconciler or legacy Terraformer backend.

PRECEDENCE (first match wins):
1. use-terraform annotation on the Infrastructure or the shoot -> legacy
2. persisted state is a FlowState -> flow (sticky, one-way migration)
3. use-flow annotation on the Infrastructure or the shoot -> flow
4. use-flow label on the seed -> flow
5. otherwise -> legacy

Rule 1 is checked before the persisted state is looked at, so forcing the
legacy backend also works when the stored state cannot be read. An
unrecognized state that reaches rule 2 raises StateFormatError.

The decision is recomputed on every pass and never persisted.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from .models import API_GROUP, ClusterIdentity
from .state import PersistedState

logger = logging.getLogger(__name__)

ANNOTATION_USE_TERRAFORM = f"{API_GROUP}/use-terraform"
ANNOTATION_USE_FLOW = f"{API_GROUP}/use-flow"
SEED_LABEL_USE_FLOW = f"{API_GROUP}/use-flow"


class Backend(str, Enum):
    FLOW = "flow"
    LEGACY = "legacy"


class DecisionRule(str, Enum):
    """The precedence rule that produced a decision."""

    FORCE_LEGACY = "force-legacy"
    FLOW_STATE = "flow-state"
    USE_FLOW_ANNOTATION = "use-flow-annotation"
    SEED_LABEL = "seed-label"
    DEFAULT = "default"


@dataclass(frozen=True)
class ReconcilerDecision:
    backend: Backend
    rule: DecisionRule

    @property
    def use_flow(self) -> bool:
        return self.backend == Backend.FLOW


def is_true(values: Mapping[str, str], key: str) -> bool:
    """True if values[key] equals "true", ignoring case."""
    value = values.get(key)
    return isinstance(value, str) and value.casefold() == "true"


def _marked(identity: ClusterIdentity, key: str) -> bool:
    return is_true(identity.infrastructure_annotations, key) or is_true(
        identity.shoot_annotations, key
    )


def select_backend(identity: ClusterIdentity, persisted: PersistedState) -> ReconcilerDecision:
    """Decide which backend reconciles the cluster in this pass.

    Raises:
        StateFormatError: If the persisted state is unrecognized and the
            legacy backend is not forced.
    """
    if _marked(identity, ANNOTATION_USE_TERRAFORM):
        decision = ReconcilerDecision(Backend.LEGACY, DecisionRule.FORCE_LEGACY)
    else:
        persisted.require_known()
        if persisted.is_flow:
            decision = ReconcilerDecision(Backend.FLOW, DecisionRule.FLOW_STATE)
        elif _marked(identity, ANNOTATION_USE_FLOW):
            decision = ReconcilerDecision(Backend.FLOW, DecisionRule.USE_FLOW_ANNOTATION)
        elif is_true(identity.seed_labels, SEED_LABEL_USE_FLOW):
            decision = ReconcilerDecision(Backend.FLOW, DecisionRule.SEED_LABEL)
        else:
            decision = ReconcilerDecision(Backend.LEGACY, DecisionRule.DEFAULT)

    logger.debug(
        "Selected backend",
        extra={
            "cluster": identity.name,
            "backend": decision.backend.value,
            "rule": decision.rule.value,
        },
    )
    return decision
