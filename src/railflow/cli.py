# src/railflow/cli.py
"""Railflow Command Line Interface.

Entry point for the railflow CLI tool.
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib
import json
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import typer
import yaml
from pydantic import ValidationError

from railflow import __version__
from railflow.contracts.errors import ConfigurationError
from railflow.core.config import BridgeSettings, RailflowSettings, load_settings
from railflow.core.dag import ExecutionGraph, GraphValidationError, TurnNodeSpec, load_graph

if TYPE_CHECKING:
    from railflow.contracts.records import RunRecord
    from railflow.core.ledger import RunLedger
    from railflow.engine.protocols import TurnExecutor

__all__ = [
    "app",
    "load_settings",  # Re-exported from config for convenience
]

app = typer.Typer(
    name="railflow",
    help="Railflow: reasoning graphs with browser-backed web turns.",
    no_args_is_help=True,
)

bridge_app = typer.Typer(help="Web Bridge commands.", no_args_is_help=True)
runs_app = typer.Typer(help="Inspect persisted runs.", no_args_is_help=True)

app.add_typer(bridge_app, name="bridge")
app.add_typer(runs_app, name="runs")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"railflow version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # We handle existence check ourselves for better error message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """Railflow: reasoning graphs with browser-backed web turns."""
    from railflow.core.logging import configure_logging

    # Logs go to stderr so stdout stays clean for results and worker RPC
    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(json_output=json_logs, level=log_level, stream=sys.stderr)

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


# === Loading helpers ===


def _format_validation_error(
    title: str,
    message: str,
    hint: str | None = None,
    details: list[str] | None = None,
) -> None:
    """Display a formatted validation error with optional hint and details."""
    from rich.console import Console
    from rich.panel import Panel
    from rich.text import Text

    console = Console(stderr=True)

    content = Text()
    content.append(message, style="white")

    if details:
        content.append("\n\n")
        for detail in details:
            content.append(f"  • {detail}\n", style="dim")

    if hint:
        content.append("\n")
        content.append("Hint: ", style="yellow bold")
        content.append(hint, style="yellow")

    panel = Panel(
        content,
        title=f"[red bold]{title}[/]",
        border_style="red",
        padding=(0, 1),
    )
    console.print(panel)


def _load_settings_or_exit(settings: Path | None) -> RailflowSettings:
    try:
        return load_settings(settings.expanduser() if settings else None)
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _load_graph_or_exit(graph_path: Path) -> ExecutionGraph:
    try:
        graph = load_graph(graph_path.expanduser())
        graph.validate()
    except FileNotFoundError:
        _format_validation_error(
            title="File Not Found",
            message=f"Graph file does not exist: {graph_path}",
            hint="Check the path and ensure the file exists.",
        )
        raise typer.Exit(1) from None
    except yaml.YAMLError as e:
        _format_validation_error(
            title="YAML Syntax Error",
            message=f"Failed to parse {graph_path.name}",
            details=[str(e)],
            hint="Check for unclosed brackets, incorrect indentation, or invalid characters.",
        )
        raise typer.Exit(1) from None
    except GraphValidationError as e:
        _format_validation_error(
            title="Graph Validation Error",
            message=f"{graph_path.name} is not a runnable graph",
            details=[str(e)],
        )
        raise typer.Exit(1) from None
    return graph


def _load_engine(reference: str) -> TurnExecutor:
    """Resolve ``module:attribute`` to a TurnExecutor.

    The attribute may be an executor instance or a zero-argument factory.
    """
    from railflow.engine.protocols import TurnExecutor

    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigurationError(f"--engine must look like 'package.module:factory', got {reference!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import engine module {module_name!r}: {e}") from e
    try:
        target = getattr(module, attribute)
    except AttributeError:
        raise ConfigurationError(f"Module {module_name!r} has no attribute {attribute!r}") from None

    # A class passes the protocol check too, so classes are always instantiated
    engine = target if isinstance(target, TurnExecutor) and not isinstance(target, type) else target()
    if not isinstance(engine, TurnExecutor):
        raise ConfigurationError(f"{reference} does not provide an execute_turn() coroutine")
    return engine


def _open_ledger(settings: RailflowSettings) -> RunLedger:
    from railflow.core.ledger import LedgerDB, RunLedger

    return RunLedger(LedgerDB(settings.ledger.url), export_dir=settings.ledger.export_dir)


# === Commands ===


@app.command()
def run(
    graph_path: Path = typer.Argument(..., help="Graph document (YAML or JSON)."),
    question: str = typer.Option(
        ...,
        "--question",
        "-q",
        help="Question fed to the input node.",
    ),
    settings: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    engine: str | None = typer.Option(
        None,
        "--engine",
        "-e",
        help="Local turn engine as 'package.module:factory'.",
    ),
    json_out: Path | None = typer.Option(
        None,
        "--json-out",
        help="Write the finalized run record as JSON to this path.",
    ),
) -> None:
    """Execute a graph run and print the final answer."""
    config = _load_settings_or_exit(settings)
    graph = _load_graph_or_exit(graph_path)

    try:
        local = _load_engine(engine) if engine else None
        record = asyncio.run(_run_graph(graph, question, config, local))
    except (ConfigurationError, GraphValidationError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    if json_out is not None:
        json_out.parent.mkdir(parents=True, exist_ok=True)
        json_out.write_text(json.dumps(record.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")

    _print_record(record)
    if record.status.value != "completed":
        raise typer.Exit(1)


async def _run_graph(
    graph: ExecutionGraph,
    question: str,
    settings: RailflowSettings,
    local: TurnExecutor | None,
) -> RunRecord:
    from railflow.bridge import BridgeServer, TaskMailbox
    from railflow.engine import GraphRunEngine, NodeProcessor, TurnNodeExecutor, WebTurnRunner
    from railflow.engine.auth import AuthGate, AuthGrace
    from railflow.engine.protocols import AuthProbe
    from railflow.web.client import WebWorkerClient

    ledger = _open_ledger(settings)
    needs_web = any(isinstance(node, TurnNodeSpec) and node.web_provider is not None for node in graph.nodes())

    web_runner: WebTurnRunner | None = None
    worker_client: WebWorkerClient | None = None
    server_task: asyncio.Task[None] | None = None
    if needs_web:
        mailbox = TaskMailbox()
        server = BridgeServer(mailbox, settings=settings.bridge)
        server_task = asyncio.create_task(server.serve(handle_signals=False))
        typer.echo(f"Bridge listening on {server.url}", err=True)
        if settings.bridge.token is None:
            typer.echo(f"Bridge token: {server.token}", err=True)
        if settings.web_turn.claim_fallback_ms is not None:
            worker_client = WebWorkerClient(
                settings.worker.command,
                request_timeout_ms=settings.worker.request_timeout_ms,
            )
        web_runner = WebTurnRunner(mailbox, settings.web_turn, worker_client=worker_client)

    auth_gate = AuthGate(local, AuthGrace(settings.auth)) if isinstance(local, AuthProbe) else None
    processor = NodeProcessor(turn=TurnNodeExecutor(local=local, web=web_runner, auth_gate=auth_gate))
    engine = GraphRunEngine(processor, settings=settings.scheduler, ledger=ledger)

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, engine.cancel)
    try:
        record = await engine.run(graph, question)
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        if server_task is not None:
            server_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await server_task
        if worker_client is not None:
            await worker_client.stop()

    # A fresh engine is never paused, so run() always returns a record here
    assert record is not None
    return record


def _print_record(record: RunRecord) -> None:
    from rich.console import Console

    console = Console()
    color = {"completed": "green", "cancelled": "yellow"}.get(record.status.value, "red")
    console.print(f"Run {record.run_id}: [{color} bold]{record.status.value}[/]")
    if record.failure_reason:
        console.print(f"  Reason: {record.failure_reason}")
    console.print(f"  Final node: {record.final_node_id or '-'}")
    console.print(f"  Confidence: {record.confidence:.2f}")
    if record.final_answer:
        console.print()
        console.print(record.final_answer, markup=False, highlight=False)


@app.command()
def validate(
    graph_path: Path = typer.Argument(..., help="Graph document (YAML or JSON)."),
    settings: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Also validate this settings YAML file.",
    ),
) -> None:
    """Validate a graph document without running it."""
    if settings is not None:
        _load_settings_or_exit(settings)
    graph = _load_graph_or_exit(graph_path)

    web_turns = [node.id for node in graph.nodes() if isinstance(node, TurnNodeSpec) and node.web_provider is not None]
    typer.echo(f"Graph valid: {graph.node_count} nodes, {len(graph.edges())} edges")
    typer.echo(f"  Entry: {graph.entry_node_id()}")
    typer.echo(f"  Sinks: {', '.join(graph.sinks())}")
    if web_turns:
        typer.echo(f"  Web turns: {', '.join(web_turns)}")


@bridge_app.command("serve")
def bridge_serve(
    port: int | None = typer.Option(
        None,
        "--port",
        "-p",
        help="Loopback port (default from settings).",
    ),
    token: str | None = typer.Option(
        None,
        "--token",
        help="Bearer token (generated when omitted).",
        envvar="RAILFLOW_BRIDGE__TOKEN",
    ),
    settings: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """Serve the Web Bridge on 127.0.0.1 until interrupted."""
    from railflow.bridge import BridgeServer, TaskMailbox

    config = _load_settings_or_exit(settings)
    updates: dict[str, Any] = {}
    if port is not None:
        updates["port"] = port
    if token is not None:
        updates["token"] = token
    try:
        bridge_settings = BridgeSettings.model_validate({**config.bridge.model_dump(), **updates})
    except ValidationError as e:
        typer.echo(f"Error: invalid bridge options: {e.errors()[0]['msg']}", err=True)
        raise typer.Exit(1) from None

    server = BridgeServer(TaskMailbox(), settings=bridge_settings)
    typer.echo(f"Bridge listening on {server.url}", err=True)
    if bridge_settings.token is None:
        typer.echo(f"Bridge token: {server.token}", err=True)
    asyncio.run(server.serve())


@app.command()
def worker(
    settings: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """Run the headless web worker (JSON-RPC over stdio)."""
    from railflow.core.logging import configure_logging
    from railflow.web.worker import serve_stdio

    config = _load_settings_or_exit(settings)
    # stdout is the RPC channel
    configure_logging(json_output=True, level="INFO", stream=sys.stderr, log_path=config.worker.log_path)
    exit_code = asyncio.run(serve_stdio(config))
    if exit_code:
        raise typer.Exit(exit_code)


@runs_app.command("list")
def runs_list(
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum number of runs."),
    settings: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """List the most recent persisted runs."""
    from rich.console import Console
    from rich.table import Table

    ledger = _open_ledger(_load_settings_or_exit(settings))
    summaries = ledger.list_runs(limit=limit)
    if not summaries:
        typer.echo("No runs recorded.")
        return

    table = Table(title="Runs")
    table.add_column("Run ID", no_wrap=True)
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Final node")
    table.add_column("Confidence", justify="right")
    table.add_column("Question")
    for summary in summaries:
        table.add_row(
            summary.run_id,
            summary.status,
            summary.started_at.isoformat(timespec="seconds"),
            summary.final_node_id or "-",
            f"{summary.confidence:.2f}",
            summary.question if len(summary.question) <= 60 else summary.question[:57] + "...",
        )
    Console().print(table)


@runs_app.command("show")
def runs_show(
    run_id: str = typer.Argument(..., help="Run ID to show."),
    export: Path | None = typer.Option(
        None,
        "--export",
        help="Write run-<id>.json into this directory instead of printing.",
    ),
    settings: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """Print a persisted run record as JSON."""
    ledger = _open_ledger(_load_settings_or_exit(settings))
    try:
        if export is not None:
            path = ledger.export_json(run_id, export)
            typer.echo(f"Exported {path}")
            return
        document = ledger.load(run_id)
    except KeyError:
        typer.echo(f"Error: run not found: {run_id}", err=True)
        raise typer.Exit(1) from None
    typer.echo(json.dumps(document, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    app()
