"""Main entry point for the GCP infrastructure flow reconciler.

Wires the collaborators together and runs the reconcile loop until SIGTERM
or SIGINT:
- Kubernetes API (in-cluster config, falling back to the local kubeconfig)
  for Infrastructure, Cluster and Terraformer objects
- Compute API via google-cloud-compute with application default credentials
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC

from .actuator import Actuator
from .config import ConfigurationError, OperatorConfig
from .gcp_client import GCPClient
from .legacy import TerraformerResources
from .reconciler import KubernetesInfrastructureSource, Reconciler
from .status import KubernetesStatusWriter

# LogRecord attributes that are not structured extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in _RESERVED_RECORD_KEYS:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from client libraries
    for noisy in ("google", "urllib3", "kubernetes"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def load_kubernetes_config() -> None:
    """Use the in-cluster service account, or the local kubeconfig outside a cluster."""
    from kubernetes import config as kube_config

    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        kube_config.load_kube_config()


def build_reconciler(config: OperatorConfig) -> Reconciler:
    """Create the reconcile loop and its collaborators for config."""
    load_kubernetes_config()
    cloud = GCPClient(
        project_id=config.project_id,
        region=config.region,
        operation_timeout_seconds=config.cloud_timeout_seconds,
    )
    actuator = Actuator(
        config,
        cloud=cloud,
        status_writer=KubernetesStatusWriter(),
        legacy_tool=TerraformerResources(),
    )
    return Reconciler(config, actuator, KubernetesInfrastructureSource(config.namespace))


async def main(config: OperatorConfig | None = None) -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    if config is None:
        try:
            config = OperatorConfig.from_env()
        except ConfigurationError as e:
            logger.error("Configuration error", extra={"error": str(e)})
            return 1

    logger.info(
        "Starting GCP infrastructure reconciler",
        extra={
            "project_id": config.project_id,
            "region": config.region,
            "namespace": config.namespace or "*",
            "dry_run": config.dry_run,
        },
    )

    try:
        reconciler = build_reconciler(config)
    except Exception as e:
        logger.error(
            "Failed to initialize reconciler",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await reconciler.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
