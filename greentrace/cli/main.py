# -*- coding: utf-8 -*-
"""
GreenTrace CLI
====================

Lineage tracing and mass-balance validation over a recorded snapshot.

A snapshot is a YAML or JSON file with any of the lists ``entities``,
``edges``, ``chains``, ``custody_events`` and ``mass_balance_events``.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from greentrace import __version__
from greentrace.exceptions import GreenTraceException
from greentrace.traceability.config import get_config
from greentrace.traceability.models import (
    LineageResult,
    MassBalanceValidation,
    TraceDirection,
)
from greentrace.traceability.setup import TraceabilityService

app = typer.Typer(
    name="gt",
    help="GreenTrace: supply-chain lineage and custody ledger",
    no_args_is_help=True,
    add_completion=False,
)
console = Console()

_RISK_STYLE = {
    "low": "green",
    "medium": "yellow",
    "high": "red",
    "critical": "bold red",
}


@app.callback()
def _root(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (defaults to GT_TRACEABILITY_LOG_LEVEL)",
    ),
):
    """
    GreenTrace - supply-chain lineage and custody ledger
    """
    level = (log_level or get_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_snapshot(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("snapshot must be a mapping of record lists")
    return data


def _service(snapshot: Path) -> TraceabilityService:
    try:
        return TraceabilityService.from_snapshot(_load_snapshot(snapshot))
    except (OSError, KeyError, ValueError, yaml.YAMLError, ValidationError) as e:
        console.print(f"[red]Error loading snapshot {snapshot}: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def version():
    """Show GreenTrace version"""
    console.print(f"[bold green]GreenTrace v{__version__}[/bold green]")


@app.command()
def trace(
    snapshot: Path = typer.Argument(..., exists=True, dir_okay=False, help="Snapshot file"),
    entity_id: str = typer.Argument(..., help="Start entity id"),
    entity_type: str = typer.Argument(..., help="Start entity type (plot, facility, ...)"),
    direction: TraceDirection = typer.Option(
        TraceDirection.FULL, "--direction", "-d", help="Traversal direction",
    ),
    max_depth: Optional[int] = typer.Option(
        None, "--max-depth", min=0, help="Maximum number of hops",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """
    Trace the lineage of an entity and assess its compliance risk

    Examples:
        gt trace snapshot.yaml PLOT-1 plot --direction forward
        gt trace snapshot.json SHP-7 shipment --max-depth 4 --json
    """
    service = _service(snapshot)
    runners = {
        TraceDirection.FORWARD: service.trace_forward,
        TraceDirection.BACKWARD: service.trace_backward,
        TraceDirection.FULL: service.get_full_lineage,
    }
    try:
        result = runners[direction](entity_id, entity_type, max_depth)
    except GreenTraceException as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Invalid input: {e}[/red]")
        raise typer.Exit(1)

    if json_output:
        typer.echo(result.model_dump_json(indent=2))
        return
    _print_lineage(result)


@app.command("mass-balance")
def mass_balance(
    snapshot: Path = typer.Argument(..., exists=True, dir_okay=False, help="Snapshot file"),
    chain_id: str = typer.Argument(..., help="Chain internal id or human-readable chain_id"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """
    Validate the mass balance of every event connected to a custody chain
    """
    service = _service(snapshot)
    chain = service.ledger.get_chain_by_chain_id(chain_id)
    chain_pk = chain.id if chain is not None else chain_id
    try:
        validation = service.validate_mass_balance(chain_pk)
    except GreenTraceException as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if json_output:
        typer.echo(validation.model_dump_json(indent=2))
        return
    _print_validation(validation)


def _print_lineage(result: LineageResult) -> None:
    table = Table(
        title=(
            f"{result.direction.value.capitalize()} lineage of "
            f"{result.entity_type.value} {result.entity_id}"
        )
    )
    table.add_column("Level", justify="right")
    table.add_column("Type", style="cyan")
    table.add_column("ID", style="green")
    table.add_column("Name")
    table.add_column("Distance (km)", justify="right", style="dim")
    for node in result.nodes:
        table.add_row(
            str(node.level),
            node.type.value,
            node.id,
            node.name,
            f"{node.distance:.1f}" if node.distance is not None else "",
        )
    console.print(table)
    console.print(
        f"Nodes: {result.total_nodes}  Edges: {len(result.edges)}  "
        f"Depth: {result.depth}"
    )

    risk = result.risk_assessment
    if risk is None:
        return
    style = _RISK_STYLE[risk.overall_risk.value]
    console.print(f"Overall risk: [{style}]{risk.overall_risk.value}[/{style}]")
    console.print(
        f"EUDR compliant: {'yes' if risk.compliance.eudr_compliant else 'no'}  "
        f"RSPO compliant: {'yes' if risk.compliance.rspo_compliant else 'no'}"
    )
    for issue in risk.compliance.issues:
        console.print(f"  - {issue}")
    if risk.unassessed_entity_ids:
        console.print(
            f"[yellow]Risk unknown for: "
            f"{', '.join(risk.unassessed_entity_ids)}[/yellow]"
        )


def _print_validation(validation: MassBalanceValidation) -> None:
    status = "[green]VALID[/green]" if validation.is_valid else "[red]INVALID[/red]"
    console.print(f"Mass balance for {validation.chain_id}: {status}")
    console.print(
        f"Events: {validation.event_count}  Input: {validation.total_input:g}  "
        f"Output: {validation.total_output:g}  Waste: {validation.total_waste:g}  "
        f"Efficiency: {validation.efficiency:.2%}"
    )
    if not validation.discrepancies:
        return
    table = Table(title="Discrepancies")
    table.add_column("Type", style="yellow")
    table.add_column("Expected", justify="right")
    table.add_column("Actual", justify="right")
    table.add_column("Variance", justify="right")
    table.add_column("Description")
    for d in validation.discrepancies:
        table.add_row(
            d.type, f"{d.expected:g}", f"{d.actual:g}", f"{d.variance:g}",
            d.description,
        )
    console.print(table)


def main():
    """Main entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        raise typer.Exit(1)


if __name__ == "__main__":
    main()
