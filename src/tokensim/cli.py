"""tokensim command line interface.

Entry point for the tokensim CLI tool: FSL generation, log replay and
token lineage inspection over files on disk.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, NoReturn

import typer
import yaml
from pydantic import ValidationError

from tokensim import __version__
from tokensim.contracts.fsm import LogEvent
from tokensim.core.config import (
    FeedbackConfigFactory,
    NodeConfig,
    TokensimSettings,
    load_node_config,
    load_settings,
)
from tokensim.core.history import ActivityLog

__all__ = ["app"]

app = typer.Typer(
    name="tokensim",
    help="tokensim: token-flow simulation FSM replay and lineage tools.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"tokensim version {__version__}")
        raise typer.Exit()


def _settings(ctx: typer.Context) -> TokensimSettings:
    settings = ctx.obj
    if isinstance(settings, TokensimSettings):
        return settings
    return TokensimSettings()


def _fail(message: str) -> NoReturn:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(1)


def _read_node_config(path: Path) -> NodeConfig:
    try:
        return load_node_config(path)
    except FileNotFoundError as e:
        _fail(str(e))
    except yaml.YAMLError as e:
        _fail(f"Invalid YAML in {path}: {e}")
    except ValidationError as e:
        _fail(f"Invalid node configuration in {path}:\n{e}")
    except ValueError as e:
        _fail(str(e))


def _read_json_list(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        _fail(f"Log file not found: {path}")
    try:
        with path.open(encoding="utf-8") as f:
            records = json.load(f)
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON in {path}: {e}")
    if not isinstance(records, list):
        _fail(f"Expected a JSON list in {path}, got {type(records).__name__}")
    return records


def _log_events(records: list[dict[str, Any]], node_id: str) -> list[LogEvent]:
    """Accept either raw log events or activity log records.

    Activity log records (with a nodeId key) are filtered to the node
    being replayed.
    """
    try:
        if records and "nodeId" in records[0]:
            return ActivityLog.from_records(records).to_log_events(node_id)
        return [LogEvent.from_dict(record) for record in records]
    except KeyError as e:
        _fail(f"Log record missing required key: {e}")


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    settings_path: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
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
    """tokensim: token-flow simulation FSM replay and lineage tools."""
    from tokensim.core.logging import configure_logging

    settings = TokensimSettings()
    if settings_path is not None:
        try:
            settings = load_settings(settings_path)
        except FileNotFoundError as e:
            _fail(str(e))
        except ValidationError as e:
            _fail(f"Invalid settings in {settings_path}:\n{e}")

    level = "DEBUG" if verbose else settings.logging.level
    configure_logging(json_output=json_logs or settings.logging.json_output, level=level)
    ctx.obj = settings


@app.command()
def fsl(
    node_config: Path = typer.Argument(..., help="Node configuration (YAML or JSON)."),
) -> None:
    """Print the specialized FSL of a node's canonical state machine."""
    from tokensim.contracts.errors import UnsupportedNodeType
    from tokensim.engine.canonical import generate_for_node_config

    config = _read_node_config(node_config)
    try:
        machine = generate_for_node_config(config)
    except UnsupportedNodeType as e:
        _fail(str(e))
    typer.echo(machine.fsl)


@app.command()
def replay(
    ctx: typer.Context,
    node_config: Path = typer.Argument(..., help="Node configuration (YAML or JSON)."),
    log_file: Path = typer.Argument(..., help="JSON list of log events or activity log records."),
    markdown: bool = typer.Option(False, "--markdown", "-m", help="Print a markdown analysis."),
    as_json: bool = typer.Option(False, "--json", help="Print the full analysis as JSON."),
) -> None:
    """Replay a node's log against its canonical FSM.

    Exits 1 when the consistency report contains errors.
    """
    from tokensim.contracts.errors import UnsupportedNodeType
    from tokensim.engine.replay import ReplayEngine

    settings = _settings(ctx)
    config = _read_node_config(node_config)
    logs = _log_events(_read_json_list(log_file), config.node_id)

    try:
        engine = ReplayEngine(config, warn_unmapped_actions=settings.replay.warn_unmapped_actions)
    except UnsupportedNodeType as e:
        _fail(str(e))
    result = engine.analyze(logs)
    report = result.consistency_report

    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2, default=str))
    elif markdown:
        from tokensim.engine.replay import generate_analysis

        typer.echo(generate_analysis(config, logs))
    else:
        typer.echo(f"Node: {config.node_id}")
        typer.echo(f"Events: {report.total_events}")
        typer.echo(f"Successful transitions: {report.successful_transitions}")
        typer.echo(f"Failed transitions: {report.failed_transitions}")
        typer.echo(f"Final state: {result.final_state.current_state}")
        for warning in report.warnings:
            typer.secho(f"  warning: {warning}", fg=typer.colors.YELLOW)
        for error in report.errors:
            typer.secho(f"  error: {error}", fg=typer.colors.RED)

    if not report.is_consistent:
        raise typer.Exit(1)


@app.command()
def lineage(
    ctx: typer.Context,
    token_id: str = typer.Argument(..., help="Token to trace."),
    log_file: Path = typer.Argument(..., help="JSON list of activity log records."),
    as_json: bool = typer.Option(False, "--json", help="Print the lineage result as JSON."),
) -> None:
    """Trace a token's ancestry and source contributions."""
    from tokensim.lineage.errors import format_error_message
    from tokensim.lineage.genealogy import TokenGenealogyEngine

    settings = _settings(ctx)
    records = _read_json_list(log_file)
    try:
        history = ActivityLog.from_records(records)
    except KeyError as e:
        _fail(f"Activity log record missing required key: {e}")

    engine = TokenGenealogyEngine.from_history(history.entries(), config=settings.lineage)
    result = engine.trace_lineage(token_id)

    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        traced = result.lineage
        if traced is not None:
            typer.echo(f"Token {token_id}: value {traced.target_token.value}")
            for level in traced.generation_levels:
                ids = ", ".join(t.id for t in level.tokens)
                typer.echo(f"  [{level.level}] {level.description}: {ids}")
            typer.echo("Source contributions:")
            for contribution in traced.source_contributions:
                typer.echo(
                    f"  {contribution.source_token_id} ({contribution.source_node_id}): "
                    f"{contribution.proportional_contribution:.1%} via {' -> '.join(contribution.contribution_path)}"
                )
        for warning in result.warnings:
            typer.secho(f"  warning: {warning.message}", fg=typer.colors.YELLOW)
        for error in result.errors:
            typer.secho(format_error_message(error), fg=typer.colors.RED, err=True)

    if result.lineage is None:
        raise typer.Exit(1)


@app.command()
def presets() -> None:
    """List the named feedback loop presets."""
    for name in FeedbackConfigFactory.names():
        typer.echo(f"{name}:")
        typer.echo(json.dumps(FeedbackConfigFactory.by_name(name).to_json_dict(), indent=2))


if __name__ == "__main__":
    app()
