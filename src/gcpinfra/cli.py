"""GCP infrastructure reconciler CLI (gcpinfra).

Offline inspection tools for operators plus the entry point of the
reconcile loop.

Usage:
    gcpinfra state classify state.json          # Which backend wrote this state?
    gcpinfra state decide --infra infra.yaml    # Which backend would run?
    gcpinfra firewall plan --rules rules.json \\
        --cluster shoot--dev--a --network shoot--dev--a   # Orphaned rules
    gcpinfra flow order --config config.yaml --cluster shoot--dev--a
    gcpinfra run                                 # Run the operator
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click

from .config import ConfigurationError, OperatorConfig
from .gcp_client import FirewallRule, GCPClient
from .graph import TaskGraph
from .infraflow import InfraFlow
from .models import ClusterIdentity
from .selector import select_backend
from .spec_loader import SpecLoadError, load_document, load_infrastructure_config
from .state import (
    FlowStateDocument,
    LegacyStateDocument,
    StateFormatError,
    UnrecognizedState,
    UnsetState,
    decode_state,
)
from .sync import firewall_rules_to_delete

EXIT_UNRECOGNIZED = 2


def _load(path: Path) -> dict[str, Any]:
    try:
        return load_document(path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


def _state_of(document: dict[str, Any]) -> Any:
    # Whole Infrastructure objects carry the state under status.state
    if document.get("kind") == "Infrastructure":
        return (document.get("status") or {}).get("state")
    return document


@click.group()
@click.version_option(version="0.1.0", prog_name="gcpinfra")
def cli() -> None:
    """GCP infrastructure reconciler CLI (gcpinfra).

    \b
    Quick Start:
        gcpinfra state classify state.json
        gcpinfra firewall plan --rules rules.json --cluster NAME --network NAME
        gcpinfra run
    """
    pass


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect persisted infrastructure state."""
    pass


@state.command("classify")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def state_classify(path: Path) -> None:
    """Classify a persisted state (bare state or Infrastructure object)."""
    raw = path.read_text(encoding="utf-8")
    try:
        document = json.loads(raw)
    except json.JSONDecodeError:
        document = None
    if isinstance(document, dict) and document.get("kind") == "Infrastructure":
        raw = _state_of(document)

    try:
        persisted = decode_state(raw)
    except StateFormatError as e:
        click.secho(f"invalid flow state: {e}", fg="red", err=True)
        sys.exit(EXIT_UNRECOGNIZED)

    if isinstance(persisted, UnsetState):
        click.echo("unset")
    elif isinstance(persisted, FlowStateDocument):
        click.echo("flow")
        for key, record in persisted.state.resources.items():
            click.echo(f"  {key}: {record.status.value}")
    elif isinstance(persisted, LegacyStateDocument):
        click.echo("legacy")
        for output in ("vpc_name", "subnet_nodes", "subnet_internal", "cloud_router", "cloud_nat"):
            value = persisted.state.output(output)
            if value:
                click.echo(f"  {output}: {value}")
    elif isinstance(persisted, UnrecognizedState):
        click.secho(f"unrecognized: {persisted.reason}", fg="red", err=True)
        sys.exit(EXIT_UNRECOGNIZED)


@state.command("decide")
@click.option(
    "--infra",
    "infra_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Infrastructure object (YAML or JSON)",
)
@click.option(
    "--cluster",
    "cluster_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Cluster object (YAML or JSON)",
)
def state_decide(infra_path: Path, cluster_path: Path | None) -> None:
    """Show which backend would reconcile the Infrastructure and why."""
    from .actuator import read_persisted_state

    infrastructure = _load(infra_path)
    cluster = _load(cluster_path) if cluster_path else None
    identity = ClusterIdentity.from_objects(infrastructure, cluster, project_id="", region="")
    try:
        decision = select_backend(identity, read_persisted_state(infrastructure))
    except StateFormatError as e:
        click.secho(str(e), fg="red", err=True)
        sys.exit(EXIT_UNRECOGNIZED)
    click.echo(f"{decision.backend.value} ({decision.rule.value})")


# =============================================================================
# Firewall Commands
# =============================================================================


@cli.group()
def firewall() -> None:
    """Inspect firewall rules."""
    pass


@firewall.command("plan")
@click.option(
    "--rules",
    "rules_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Firewall list response ({'items': [...]}) as JSON or YAML",
)
@click.option("--cluster", required=True, help="Technical cluster name")
@click.option("--network", required=True, help="VPC network name or self-link")
@click.option("--desired", multiple=True, help="Rule name to keep (repeatable)")
@click.option("--extra-prefix", multiple=True, help="Additional owned prefix (repeatable)")
def firewall_plan(
    rules_path: Path,
    cluster: str,
    network: str,
    desired: tuple[str, ...],
    extra_prefix: tuple[str, ...],
) -> None:
    """List the firewall rules a sync pass would delete."""
    items = _load(rules_path).get("items") or []
    rules = [
        FirewallRule(name=item["name"], network=item.get("network", ""))
        for item in items
        if isinstance(item, dict) and "name" in item
    ]
    try:
        orphans = firewall_rules_to_delete(rules, cluster, network, desired, extra_prefix)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    if not orphans:
        click.echo("Nothing to delete")
        return
    for rule in orphans:
        click.echo(rule.name)


# =============================================================================
# Flow Commands
# =============================================================================


@cli.group()
def flow() -> None:
    """Inspect the provisioning flow."""
    pass


@flow.command("order")
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="InfrastructureConfig or Infrastructure object",
)
@click.option("--cluster", required=True, help="Technical cluster name")
@click.option("--teardown", is_flag=True, help="Show teardown order instead")
def flow_order(config_path: Path, cluster: str, teardown: bool) -> None:
    """Print the order in which the flow visits its tasks."""
    try:
        config = load_infrastructure_config(config_path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    identity = ClusterIdentity(name=cluster, project_id="", region="")
    # The client is created lazily and never called here
    infra_flow = InfraFlow(config, identity, GCPClient(project_id="", region=""))
    graph = TaskGraph.from_declarations((t.key, t.depends_on) for t in infra_flow.tasks())
    order = graph.reverse_topological_order() if teardown else graph.topological_order()
    for index, key in enumerate(order, start=1):
        click.echo(f"{index:2d}. {key}")


# =============================================================================
# Run Command
# =============================================================================


@cli.command()
def run() -> None:
    """Run the reconcile loop (configured from the environment)."""
    from .main import main as operator_main

    try:
        config = OperatorConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    sys.exit(asyncio.run(operator_main(config)))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
