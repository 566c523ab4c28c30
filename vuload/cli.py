#!/usr/bin/env python3
"""
Command-Line Interface for vuload.

Usage:
    # Run the bundled catalog test
    python3 -m vuload run vuload/config/catalog.yaml

    # Point the script at another host and export the summary
    python3 -m vuload run run.yaml -e BASE_URL=http://localhost:8080 \\
        --summary-export results/summary.json

    # Validate a configuration without starting any VU
    python3 -m vuload check run.yaml

Exit codes:
    0  all thresholds passed
    1  at least one threshold failed
    2  configuration or script error
"""

import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .framework.config import ConfigValidationError, load_config
from .framework.controller import RunController
from .framework.reporter import EXIT_CONFIG_ERROR, EXIT_OK, RunSummary, SummaryReporter

# Set up logging with rich handler
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True, show_time=False)],
)
logger = logging.getLogger(__name__)
console = Console()


class CLIContext:
    """Context object for CLI commands."""

    def __init__(self):
        self.verbose = False


pass_context = click.make_pass_decorator(CLIContext, ensure=True)


def parse_env_overrides(ctx, param, values):
    """Validate -e KEY=VALUE options into a dict."""
    env = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'")
        env[key] = value
    return env


@click.group()
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output"
)
@click.version_option(version=__version__, prog_name="vuload")
@pass_context
def cli(ctx: CLIContext, verbose: bool):
    """
    vuload load generator.

    Run scripted HTTP scenarios with concurrent virtual users and gate on
    thresholds.
    """
    ctx.verbose = verbose

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Verbose mode enabled")


@cli.command()
@click.argument("config", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-e", "--env",
    "env",
    multiple=True,
    callback=parse_env_overrides,
    help="Environment value exposed to the script (KEY=VALUE, repeatable)"
)
@click.option(
    "--summary-export",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the JSON run summary to this file"
)
@pass_context
def run(ctx: CLIContext, config: Path, env: dict, summary_export: Optional[Path]):
    """
    Run the load test described by CONFIG.
    """
    try:
        run_config = load_config(config, env=env)
    except (ConfigValidationError, FileNotFoundError) as e:
        _print_config_error(e)
        sys.exit(EXIT_CONFIG_ERROR)

    console.print(f"\n[bold blue]vuload[/bold blue] {run_config.options.name}")
    console.print(f"Config: [cyan]{config}[/cyan]")
    console.print(f"Scenarios: [cyan]{', '.join(s.name for s in run_config.scenarios)}[/cyan]")

    controller = RunController(run_config)
    previous = _install_signal_handlers(controller)
    try:
        summary = controller.run()
    except ConfigValidationError as e:
        _print_config_error(e)
        sys.exit(EXIT_CONFIG_ERROR)
    finally:
        _restore_signal_handlers(previous)

    _display_summary(summary)
    if summary_export:
        path = SummaryReporter().save(summary, summary_export)
        console.print(f"\n[bold]Summary saved to:[/bold] {path}")
    sys.exit(summary.exit_code)


@cli.command()
@click.argument("config", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@pass_context
def check(ctx: CLIContext, config: Path):
    """
    Validate CONFIG against the schema and its script without running it.
    """
    try:
        run_config = load_config(config)
        RunController(run_config).prepare()
    except (ConfigValidationError, FileNotFoundError) as e:
        _print_config_error(e)
        sys.exit(EXIT_CONFIG_ERROR)

    console.print(
        f"[bold green]Configuration is valid[/bold green]: "
        f"{len(run_config.scenarios)} scenario(s), {len(run_config.thresholds)} threshold(s), "
        f"deadline {run_config.deadline:g}s"
    )
    if ctx.verbose:
        console.print_json(data=run_config.to_dict())
    sys.exit(EXIT_OK)


def _install_signal_handlers(controller: RunController) -> dict:
    """Cancel the run on SIGINT/SIGTERM; returns the previous handlers."""

    def handle_shutdown(signum, frame):  # noqa: ARG001
        logger.info("Received shutdown signal %d, cancelling run...", signum)
        controller.cancel()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, handle_shutdown)
        except ValueError:
            # not on the main thread
            pass
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _print_config_error(error: Exception) -> None:
    console.print(f"[bold red]Configuration error:[/bold red] {error}", style="red")
    for message in getattr(error, "errors", []):
        console.print(f"  • {message}")


def _display_summary(summary: RunSummary) -> None:
    """Display threshold results in a formatted table."""
    console.print("\n")

    table = Table(title="Thresholds", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Threshold")
    table.add_column("Observed", justify="right")
    table.add_column("Status")

    styles = {"passed": "green", "failed": "red", "inconclusive": "yellow"}
    for result in summary.thresholds:
        status = result.status.value
        observed = "-" if result.observed is None else f"{result.observed:.2f}"
        table.add_row(
            result.metric,
            result.expression,
            observed,
            f"[{styles[status]}]{status.upper()}[/{styles[status]}]",
        )
    console.print(table)

    for name, tally in summary.checks.items():
        total = tally["passes"] + tally["fails"]
        console.print(f"  check [cyan]{name}[/cyan]: {tally['passes']}/{total} passed")

    if summary.aborted:
        console.print(f"\n[bold yellow]Run aborted:[/bold yellow] {summary.abort_reason}")
    if summary.interrupted:
        console.print(f"[yellow]{summary.interrupted} VU(s) interrupted[/yellow]")

    status_style = "green" if summary.passed else "red"
    label = "PASSED" if summary.passed else "FAILED"
    console.print(
        f"\n[{status_style}]{label}[/{status_style}] in {summary.elapsed_seconds:.2f}s"
    )


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
