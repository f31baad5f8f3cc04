"""Configuration management with validation.

The operator configuration is an explicit value passed into the reconciliation
entry point. Nothing is registered process-wide; tests build their own
OperatorConfig and hand it to the actuator.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 60
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_CLOUD_TIMEOUT_SECONDS = 300
DEFAULT_MAX_CLOUD_RETRIES = 3
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_MAX_PERSIST_RETRIES = 5

DEFAULT_MAX_PARALLEL_STEPS = 1
MAX_PARALLEL_STEPS = 8
DEFAULT_MAX_CONCURRENT_RECONCILES = 5
MAX_CONCURRENT_RECONCILES = 50

# File size limit for documents read from disk
MAX_DOCUMENT_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max

# Outer loop backoff for failing clusters
DEFAULT_ERROR_BACKOFF_SECONDS = 15
MAX_ERROR_BACKOFF_SECONDS = 600

# Input validation patterns
VALID_PROJECT_ID_PATTERN = r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$"
VALID_REGION_PATTERN = r"^[a-z]+-[a-z]+[0-9]+$"
VALID_PREFIX_PATTERN = r"^[a-z][a-z0-9-]*$"


@dataclass(frozen=True)
class OperatorConfig:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    project_id: str
    region: str

    # Kubernetes namespace to watch ("" means all namespaces)
    namespace: str = ""

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    cloud_timeout_seconds: int = DEFAULT_CLOUD_TIMEOUT_SECONDS

    # Local retry budgets (transient cloud errors, status conflicts)
    max_cloud_retries: int = DEFAULT_MAX_CLOUD_RETRIES
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    max_persist_retries: int = DEFAULT_MAX_PERSIST_RETRIES

    # Concurrency
    max_parallel_steps: int = DEFAULT_MAX_PARALLEL_STEPS
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    # Additional name prefixes treated as cluster-owned when pruning firewall
    # rules, e.g. ("k8s",) for rules made by the cloud-controller-manager
    firewall_extra_owned_prefixes: tuple[str, ...] = field(default_factory=tuple)

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.project_id:
            errors.append("GCP_PROJECT_ID is required")
        elif not re.match(VALID_PROJECT_ID_PATTERN, self.project_id):
            errors.append(f"GCP_PROJECT_ID must be a valid project id: {self.project_id}")

        if not self.region:
            errors.append("GCP_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"GCP_REGION must be a valid GCP region: {self.region}")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.cloud_timeout_seconds < 1:
            errors.append("CLOUD_TIMEOUT must be at least 1 second")

        if self.max_cloud_retries < 1:
            errors.append("MAX_CLOUD_RETRIES must be at least 1")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE cannot be negative")

        if self.max_persist_retries < 1:
            errors.append("MAX_PERSIST_RETRIES must be at least 1")

        if not 1 <= self.max_parallel_steps <= MAX_PARALLEL_STEPS:
            errors.append(f"MAX_PARALLEL_STEPS must be between 1 and {MAX_PARALLEL_STEPS}")

        if not 1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES:
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES}"
            )

        for prefix in self.firewall_extra_owned_prefixes:
            if not re.match(VALID_PREFIX_PATTERN, prefix):
                errors.append(f"FIREWALL_EXTRA_OWNED_PREFIXES contains invalid prefix: {prefix!r}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> OperatorConfig:
        """Load configuration from environment variables.

        Environment Variables:
            GCP_PROJECT_ID: Project hosting the cluster networks
            GCP_REGION: Region of subnets, routers and NAT
            WATCH_NAMESPACE: Namespace to reconcile (default: all)
            RECONCILE_INTERVAL: Seconds between passes (default: 60)
            CLOUD_TIMEOUT: Timeout for a single Compute API call (default: 300)
            MAX_CLOUD_RETRIES: Attempts for transient cloud errors (default: 3)
            RETRY_BACKOFF_BASE: Base seconds for exponential backoff (default: 2)
            MAX_PERSIST_RETRIES: Attempts for status conflicts (default: 5)
            MAX_PARALLEL_STEPS: Independent steps run at once (default: 1)
            MAX_CONCURRENT_RECONCILES: Clusters reconciled at once (default: 5)
            FIREWALL_EXTRA_OWNED_PREFIXES: Comma separated prefixes (default: none)
            DRY_RUN: If "true", only decide backends without applying (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_list(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            return tuple(item.strip() for item in value.split(",") if item.strip())

        return cls(
            project_id=os.environ.get("GCP_PROJECT_ID", ""),
            region=os.environ.get("GCP_REGION", ""),
            namespace=os.environ.get("WATCH_NAMESPACE", ""),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            cloud_timeout_seconds=get_int("CLOUD_TIMEOUT", DEFAULT_CLOUD_TIMEOUT_SECONDS),
            max_cloud_retries=get_int("MAX_CLOUD_RETRIES", DEFAULT_MAX_CLOUD_RETRIES),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            max_persist_retries=get_int("MAX_PERSIST_RETRIES", DEFAULT_MAX_PERSIST_RETRIES),
            max_parallel_steps=get_int("MAX_PARALLEL_STEPS", DEFAULT_MAX_PARALLEL_STEPS),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            firewall_extra_owned_prefixes=get_list("FIREWALL_EXTRA_OWNED_PREFIXES"),
            dry_run=get_bool("DRY_RUN", False),
        )
