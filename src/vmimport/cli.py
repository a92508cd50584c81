"""CLI entry point for vmimport."""

from __future__ import annotations

import json
import sys

import click
from rich.console import Console
from rich.table import Table

from vmimport.config import AppConfig, MigrationRequest
from vmimport.errors import MigrationError
from vmimport.pipeline.itinerary import ITINERARIES, get_itinerary
from vmimport.pipeline.state import WorkflowStatus
from vmimport.utils.logging import set_log_level

console = Console()


def load_config(config_path: str | None) -> AppConfig:
    """Load configuration from file or environment."""
    if config_path:
        return AppConfig.from_yaml(config_path)
    try:
        return AppConfig.from_env_and_args()
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        console.print("Provide a --config file or set environment variables.")
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0", prog_name="vmimport")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
def main(verbose: bool):
    """Import virtual machines from external hypervisors into KubeVirt."""
    if verbose:
        set_log_level("DEBUG")


@main.command()
def itineraries():
    """Show every itinerary and its phases."""
    table = Table(title="Itineraries")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Phases")
    for name, itinerary in ITINERARIES.items():
        table.add_row(name, " → ".join(itinerary.pipeline))
    console.print(table)


@main.command("next")
@click.argument("itinerary_name", metavar="ITINERARY")
@click.argument("phase")
def next_phase(itinerary_name: str, phase: str):
    """Show the phase that follows PHASE in ITINERARY."""
    try:
        itinerary = get_itinerary(itinerary_name)
        following, done = itinerary.next(phase)
    except MigrationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    if done:
        console.print(f"[green]{phase}[/green] is the last phase of {itinerary.name}")
    else:
        console.print(following)


@main.command()
@click.argument("state_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--format", "fmt", type=click.Choice(["table", "json"]), default="table")
def status(state_file: str, fmt: str):
    """Show a persisted workflow status."""
    with open(state_file) as f:
        state = WorkflowStatus.from_dict(json.load(f))

    if fmt == "json":
        console.print_json(json.dumps(state.to_dict()))
        return

    table = Table(title=f"Workflow status — {state_file}", show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Phase", state.phase or "-")
    table.add_row("Itinerary", state.itinerary or "-")
    table.add_row("Target VM", state.target_vm_name or "-")
    table.add_row("Failed", "[red]yes[/red]" if state.failed else "no")
    for key, value in sorted(state.annotations.items()):
        table.add_row(key, value)
    for name, percent in sorted(state.progress.items()):
        table.add_row(f"Progress {name}", f"{percent:.1f}%")
    console.print(table)

    if state.errors:
        console.print(f"\n[bold red]{len(state.errors)} error(s):[/bold red]")
        for error in state.errors:
            console.print(f"  ❌ {error}")


@main.command()
@click.option("--request", "request_path", required=True, type=click.Path(exists=True), help="Migration request YAML")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
def validate(request_path: str, config_path: str | None):
    """Check that the source VM of a request can be imported."""
    config = load_config(config_path)
    request = MigrationRequest.from_yaml(request_path)

    from vmimport.cluster import InMemoryCluster
    from vmimport.pipeline.reconcile import config_credentials
    from vmimport.providers.factory import get_provider

    try:
        provider = get_provider(request, InMemoryCluster())
    except MigrationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    try:
        with console.status("[bold green]Connecting to source..."):
            provider.init(config_credentials(config), request)
            provider.test_connection()
        with console.status("[bold green]Fetching source VM..."):
            provider.load_vm(request.source)
            vm_name = provider.get_vm_name()
            checks = provider.validate()
    finally:
        provider.close()

    passed = all(c.passed for c in checks if c.blocking)
    if passed:
        console.print(f"\n[bold green]✅ Validation passed[/bold green] — '{vm_name}' can be imported")
    else:
        console.print(f"\n[bold red]❌ Validation failed[/bold red] — '{vm_name}' has compatibility issues:")

    for check in checks:
        icon = "✅" if check.passed else "❌" if check.blocking else "⚠️"
        console.print(f"  {icon} {check.name}: {check.message}")

    if not passed:
        sys.exit(1)


@main.command()
@click.option("--request", "request_path", required=True, type=click.Path(exists=True), help="Migration request YAML")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
@click.option("--steps", default=1, show_default=True, type=click.IntRange(min=1), help="Phases to run at most")
def run(request_path: str, config_path: str | None, steps: int):
    """Run the next phase(s) of a request against an in-memory target cluster.

    Status is persisted in the configured state directory after every phase,
    so a later invocation resumes where this one stopped.
    """
    config = load_config(config_path)
    request = MigrationRequest.from_yaml(request_path)

    from vmimport.cluster import InMemoryCluster
    from vmimport.pipeline.reconcile import Reconciler
    from vmimport.providers.factory import get_provider

    reconciler = Reconciler(config, InMemoryCluster(), provider_factory=get_provider)

    table = Table(title=f"Import {request.namespace}/{request.name}")
    table.add_column("Step", justify="right")
    table.add_column("Outcome")
    table.add_column("Phase", style="cyan")
    table.add_column("Itinerary")
    table.add_column("Requeue", justify="right")

    result = None
    for step in range(1, steps + 1):
        try:
            result = reconciler.reconcile(request)
        except MigrationError as e:
            console.print(table)
            console.print(f"[red]{e}[/red]")
            sys.exit(1)
        if result is None:
            table.add_row(str(step), "[yellow]waiting for credentials[/yellow]", "-", "-", "-")
            break
        table.add_row(str(step), result.outcome.value, result.phase, result.itinerary, f"{result.requeue:.1f}s")
        if result.done:
            break

    console.print(table)
    if result is not None and result.error:
        console.print(f"  ❌ {result.error}")
    if result is not None and result.done:
        console.print("[bold green]✅ Workflow completed[/bold green]")


if __name__ == "__main__":
    main()
