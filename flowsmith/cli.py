"""CLI entry point for flowsmith.

Commands:
- flowsmith init: Create .flowsmith/config.yaml
- flowsmith validate: Check a graph file for structural problems
- flowsmith visualize: Show a graph as a tree
- flowsmith run: Execute a graph
- flowsmith compile: Export a graph as a standalone Python program
- flowsmith actions: List registered actions
- flowsmith runs: List recent runs
- flowsmith inspect: Show one stored run
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from flowsmith import __version__
from flowsmith.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from flowsmith.core.authoring import GraphParseError, load_graph_file
from flowsmith.core.compiler import CompileError, SourceCompiler
from flowsmith.core.config import ConfigError, RuntimeSettings, load_settings, write_default_config
from flowsmith.core.credentials import EnvironmentCredentialSource
from flowsmith.core.graph_engine import GraphExecutor
from flowsmith.core.graph_schema import Graph, StructuralError, repair_triggers, structural_errors
from flowsmith.core.registry import init_registry
from flowsmith.core.state import RunStore

console = Console()


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _load_settings() -> RuntimeSettings:
    try:
        return load_settings(get_repo_path())
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/] {escape(str(e))}")
        sys.exit(1)


def _load_graph(graph_file: str) -> Graph:
    try:
        return load_graph_file(Path(graph_file))
    except GraphParseError as e:
        console.print(f"[red]Cannot load graph '{escape(graph_file)}':[/]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)


def _parse_payload(payload: str | None) -> Any:
    """``--payload`` accepts inline JSON or ``@path/to/file.json``."""
    if payload is None:
        return None
    text = payload
    if payload.startswith("@"):
        try:
            text = Path(payload[1:]).read_text(encoding="utf-8")
        except OSError as e:
            raise click.BadParameter(f"cannot read payload file: {e}", param_hint="--payload")
    try:
        return json.loads(text)
    except ValueError as e:
        raise click.BadParameter(f"payload is not valid JSON: {e}", param_hint="--payload")


def _print_structural_errors(errors: list[StructuralError]) -> None:
    console.print("[red bold]Validation errors:[/]")
    for error in errors:
        console.print(f"  [red]• {escape(f'[{error.reason.value}]')} {escape(error.message)}[/]")


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Flowsmith - workflow graph runtime.

    Runs automation graphs (trigger, actions, conditions, transforms) or
    compiles them to standalone Python.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


@main.command()
def init() -> None:
    """Initialize the project configuration."""
    path = write_default_config(get_repo_path())
    if path is None:
        console.print("[yellow]Project already initialized[/yellow]")
        return
    console.print(
        Panel(
            f"[green]Created {escape(str(path))}[/green]\n\n"
            "Edit it to tune parallelism, retries and the run history location.",
            title="Flowsmith initialized",
        )
    )


@main.command()
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--repair-triggers",
    "repair",
    is_flag=True,
    help="Keep only the first trigger before validating",
)
def validate(graph_file: str, repair: bool) -> None:
    """Check a graph for structural problems."""
    graph = _load_graph(graph_file)
    if repair:
        graph, report = repair_triggers(graph)
        if report.changed:
            console.print(
                f"[yellow]Repaired triggers:[/] kept '{escape(report.kept_trigger_id)}', removed "
                f"{escape(', '.join(report.removed_node_ids))}"
            )

    errors = structural_errors(graph, init_registry())
    console.print(f"[bold]Graph:[/] {escape(graph.name)}")
    console.print(f"  Nodes: {len(graph.nodes)}")
    console.print(f"  Edges: {len(graph.edges)}")
    if errors:
        _print_structural_errors(errors)
        sys.exit(1)
    console.print("[green]✓ Graph is valid[/]")


@main.command()
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--layers", is_flag=True, help="Show topological layers instead of a tree")
def visualize(graph_file: str, layers: bool) -> None:
    """Visualize a graph in the terminal."""
    graph = _load_graph(graph_file)
    errors = structural_errors(graph, init_registry())
    renderer = TerminalGraphRenderer(console)

    cyclic = any(error.reason.value == "cycle" for error in errors)
    if layers and not cyclic:
        console.print(renderer.render_layers(graph))
    else:
        console.print(renderer.render_as_tree(graph))

    console.print()
    console.print(f"[bold]Nodes:[/] {len(graph.nodes)}")
    console.print(f"[bold]Edges:[/] {len(graph.edges)}")
    console.print(f"[bold]Terminal:[/] {escape(', '.join(graph.terminal_nodes()) or '-')}")
    if errors:
        console.print()
        _print_structural_errors(errors)
    else:
        console.print("\n[green]✓ Graph is valid[/]")


@main.command()
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--payload", "-p", help="Trigger payload as JSON, or @file.json")
@click.option("--run-id", help="Use a specific run id")
@click.option("--json", "as_json", is_flag=True, help="Print the run as JSON")
@click.option("--no-store", is_flag=True, help="Do not save the run to the history database")
def run(graph_file: str, payload: str | None, run_id: str | None, as_json: bool, no_store: bool) -> None:
    """Execute a graph."""
    settings = _load_settings()
    graph = _load_graph(graph_file)
    trigger_payload = _parse_payload(payload)

    executor = GraphExecutor(
        registry=init_registry(),
        credentials=EnvironmentCredentialSource(prefix=settings.credential_prefix),
        settings=settings,
    )
    try:
        execution = executor.run(graph, trigger_payload, run_id=run_id)
    except StructuralError as e:
        _print_structural_errors([e])
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        sys.exit(130)

    if not no_store:
        RunStore(settings.db_path).save_run(execution)

    if as_json:
        click.echo(execution.model_dump_json(indent=2, by_alias=True))
    else:
        console.print(StatusTableRenderer(console).render_run_table(execution))
        if execution.status.value == "success":
            console.print("[green]Workflow completed successfully[/green]")
        else:
            console.print("[red]Workflow failed[/red]")

    if execution.status.value != "success":
        sys.exit(1)


@main.command(name="compile")
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--output",
    "-o",
    type=click.Path(file_okay=False),
    help="Directory for workflow.py, requirements.txt and .env.example",
)
def compile_graph(graph_file: str, output: str | None) -> None:
    """Compile a graph into a standalone Python program."""
    settings = _load_settings()
    graph = _load_graph(graph_file)
    compiler = SourceCompiler(registry=init_registry(), retry=settings.retry)
    try:
        compiled = compiler.compile(graph)
    except CompileError as e:
        console.print("[red bold]Compilation failed:[/]")
        for problem in e.problems or [str(e)]:
            console.print(f"  [red]• {escape(problem)}[/]")
        sys.exit(1)

    if output is None:
        click.echo(compiled.source)
        return

    for path in compiled.write(Path(output)):
        console.print(f"[green]Wrote[/] {escape(str(path))}")


@main.command()
def actions() -> None:
    """List registered actions."""
    registry = init_registry()
    table = Table(title="Available Actions")
    table.add_column("Action ID", style="cyan", no_wrap=True)
    table.add_column("Label", style="white")
    table.add_column("Category", style="magenta")
    table.add_column("Required fields", style="green")
    for category, descriptors in registry.actions_by_category().items():
        for descriptor in descriptors:
            table.add_row(
                descriptor.action_id,
                escape(descriptor.label),
                escape(category),
                escape(", ".join(descriptor.required_fields()) or "-"),
            )
    console.print(table)


@main.command()
@click.option("--limit", "-n", default=20, show_default=True, help="Number of runs to show")
def runs(limit: int) -> None:
    """List recent runs."""
    settings = _load_settings()
    if not Path(settings.db_path).exists():
        console.print("[yellow]No run history yet. Use 'flowsmith run' first.[/yellow]")
        return

    rows = RunStore(settings.db_path).list_runs(limit)
    table = Table(title="Recent Runs")
    table.add_column("Run ID", style="cyan")
    table.add_column("Graph")
    table.add_column("Status", justify="center")
    table.add_column("Started")
    table.add_column("Failed", justify="right")
    table.add_column("Skipped", justify="right")
    for row in rows:
        color = "green" if row["status"] == "success" else "red"
        status = f"[{color}]{row['status']}[/]" + (" (cancelled)" if row["cancelled"] else "")
        table.add_row(
            escape(row["run_id"]),
            escape(row["graph_name"]),
            status,
            row["started_at"],
            str(row["failed_nodes"]),
            str(row["skipped_nodes"]),
        )
    console.print(table)


@main.command()
@click.argument("run_id")
def inspect(run_id: str) -> None:
    """Show the per-node trace of a stored run."""
    settings = _load_settings()
    if not Path(settings.db_path).exists():
        console.print("[yellow]No run history yet. Use 'flowsmith run' first.[/yellow]")
        sys.exit(1)

    execution = RunStore(settings.db_path).get_run(run_id)
    if execution is None:
        console.print(f"[red]Run '{escape(run_id)}' not found[/]")
        sys.exit(1)

    status_color = "green" if execution.status.value == "success" else "red"
    console.print(
        Panel(
            f"[bold]Graph:[/] {escape(execution.graph.name)}\n"
            f"[bold]Status:[/] [{status_color}]{execution.status.value}[/]"
            f"{' (cancelled)' if execution.cancelled else ''}\n"
            f"[bold]Started:[/] {execution.started_at.isoformat()}\n"
            f"[bold]Finished:[/] {execution.finished_at.isoformat() if execution.finished_at else '-'}",
            title=f"Run: {escape(execution.run_id)}",
        )
    )
    console.print(StatusTableRenderer(console).render_run_table(execution))


if __name__ == "__main__":
    main()
