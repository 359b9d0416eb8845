"""CLI entry point for canvasflow.

Commands:
- canvasflow init: Write the default project configuration
- canvasflow validate: Check a workflow file
- canvasflow visualize: Show a workflow graph in the terminal
- canvasflow variables: List the variable names a workflow exposes
- canvasflow run: Execute a workflow
- canvasflow version: Show version information
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel

from canvasflow.cli_ui.graph_renderer import (
    StatusTableRenderer,
    TerminalGraphRenderer,
    VariableTableRenderer,
)
from canvasflow.core.agents import AgentInvoker, EchoAgentInvoker, HttpAgentInvoker
from canvasflow.core.config import ConfigError, config_path, load_config, write_default_config
from canvasflow.core.graph_engine import GraphOrchestrator
from canvasflow.core.graph_schema import GraphValidationError, WorkflowGraph
from canvasflow.core.models import ExecutionOptions, ExecutionReport, RunStatus
from canvasflow.core.utils import to_text

console = Console()


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load_workflow(workflow_file: str) -> WorkflowGraph:
    """Load a workflow from YAML or JSON, exiting with a message on error."""
    path = Path(workflow_file)
    try:
        with open(path) as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        console.print(f"[red]Error parsing workflow file '{escape(workflow_file)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)

    if not isinstance(data, dict):
        console.print(
            f"[red]Error: Invalid content in '{escape(workflow_file)}'. "
            f"Expected a mapping, got {type(data).__name__}.[/red]"
        )
        sys.exit(1)

    try:
        return WorkflowGraph.model_validate(data)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)


def _parse_value(text: str) -> Any:
    """JSON value if the text parses as one, otherwise the text itself."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _collect_inputs(pairs: tuple[str, ...], input_file: str | None) -> dict[str, Any]:
    inputs: dict[str, Any] = {}
    if input_file:
        with open(input_file) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise click.BadParameter("input file must contain a mapping", param_hint="--input-file")
        inputs.update(loaded)
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="--input")
        inputs[key.strip()] = _parse_value(value)
    return inputs


@click.group()
@click.version_option(version="0.1.0")
def main() -> None:
    """canvasflow - run workflow graphs of agents, conditions and transforms."""
    pass


@main.command()
def init() -> None:
    """Initialize project configuration."""
    repo_path = get_repo_path()
    path = config_path(repo_path)
    if path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    write_default_config(repo_path)
    console.print(
        Panel(
            f"[green]Initialized canvasflow[/green]\n\n"
            f"Created {escape(str(path.relative_to(repo_path)))}\n"
            "- agent: backend URL and timeout for agent nodes\n"
            "- execution: default run options",
            title="Init",
        )
    )


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Validate a workflow file."""
    workflow = _load_workflow(workflow_file)
    result = workflow.check()

    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/] {escape(warning)}")
    if not result.ok:
        console.print("[red]Validation errors:[/red]")
        for error in result.errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(workflow.nodes)}")
    console.print(f"  Edges: {len(workflow.edges)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def visualize(workflow_file: str) -> None:
    """Visualize a workflow graph in the terminal."""
    workflow = _load_workflow(workflow_file)
    renderer = TerminalGraphRenderer(console)

    console.print(renderer.render_as_tree(workflow))
    console.print()
    console.print(f"[bold]Nodes:[/] {len(workflow.nodes)}")
    console.print(f"[bold]Edges:[/] {len(workflow.edges)}")

    errors = workflow.validate_graph()
    if errors:
        console.print("\n[red bold]Validation Errors:[/]")
        for error in errors:
            console.print(f"  [red]• {escape(error)}[/]")
        return

    order = workflow.execution_order()
    console.print(f"[bold]Order:[/] {' -> '.join(escape(n) for n in order)}")
    console.print(f"[bold]Levels:[/] {len(workflow.analyze_parallelism())}")
    console.print("\n[green]✓ Graph is valid[/]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--node", "-n", "node_id", help="Only list variables of this node")
def variables(workflow_file: str, node_id: str | None) -> None:
    """List the variable names exposed by each node."""
    workflow = _load_workflow(workflow_file)
    if node_id and workflow.get_node(node_id) is None:
        console.print(f"[red]Node '{escape(node_id)}' not found[/red]")
        sys.exit(1)
    console.print(VariableTableRenderer().render_variable_table(workflow, node_id))


def _print_report(workflow: WorkflowGraph, report: ExecutionReport) -> None:
    console.print(StatusTableRenderer(console).render_status_table(workflow, report))
    if report.outputs:
        console.print("\n[bold]Outputs:[/bold]")
        for name, value in report.outputs.items():
            text = to_text(value)
            if len(text) > 200:
                text = text[:197] + "..."
            console.print(f"  {escape(name)}: {escape(text)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--input", "-i", "input_pairs", multiple=True, help="Input value as key=value")
@click.option("--input-file", type=click.Path(exists=True), help="YAML/JSON file of input values")
@click.option(
    "--continue-on-error/--stop-on-error",
    default=None,
    help="Keep running independent branches after a node fails",
)
@click.option("--max-concurrent", type=click.IntRange(min=1), help="Max nodes running at once")
@click.option("--node-timeout", type=click.FloatRange(min=0, min_open=True), help="Seconds per node")
@click.option("--agent-url", help="Agent backend base URL (overrides config)")
@click.option("--echo-agents", is_flag=True, help="Answer agent nodes locally (no backend)")
@click.option("--json", "as_json", is_flag=True, help="Print the execution report as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def run(
    workflow_file: str,
    input_pairs: tuple[str, ...],
    input_file: str | None,
    continue_on_error: bool | None,
    max_concurrent: int | None,
    node_timeout: float | None,
    agent_url: str | None,
    echo_agents: bool,
    as_json: bool,
    verbose: bool,
) -> None:
    """Execute a workflow graph."""
    _setup_logging(verbose)
    workflow = _load_workflow(workflow_file)

    try:
        config = load_config(get_repo_path())
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    inputs = _collect_inputs(input_pairs, input_file)
    options: ExecutionOptions = config.execution_options(
        input=inputs,
        continue_on_error=continue_on_error,
        max_concurrent_nodes=max_concurrent,
        node_timeout=node_timeout,
    )

    invoker: AgentInvoker
    http_invoker: HttpAgentInvoker | None = None
    if echo_agents:
        invoker = EchoAgentInvoker()
    else:
        invoker = http_invoker = HttpAgentInvoker(
            agent_url or config.agent.base_url,
            timeout=config.agent.timeout,
            headers=config.agent.headers,
        )

    async def execute() -> ExecutionReport:
        try:
            return await GraphOrchestrator(agent_invoker=invoker).execute(workflow, options)
        finally:
            if http_invoker is not None:
                await http_invoker.aclose()

    try:
        report = asyncio.run(execute())
    except GraphValidationError as e:
        console.print("[red]Validation errors:[/red]")
        for error in e.errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    if as_json:
        click.echo(report.model_dump_json(by_alias=True, indent=2))
    else:
        _print_report(workflow, report)

    if report.status == RunStatus.COMPLETED:
        if not as_json:
            console.print(f"[green]Workflow completed in {report.duration:.2f}s[/green]")
    else:
        if not as_json:
            console.print(f"[red]Workflow {report.status.value}: {escape(report.error or '')}[/red]")
        sys.exit(1)


@main.command()
def version() -> None:
    """Show version information."""
    from canvasflow import __version__

    console.print(f"canvasflow v{__version__}")
    console.print("Workflow graph execution engine")


if __name__ == "__main__":
    main()
