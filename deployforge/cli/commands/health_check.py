"""``deployforge health-check ENV`` — check a deployed environment.

Exits 0 when every check passes or only warns, 1 when any check fails.
"""

from __future__ import annotations

import typer
from rich.console import Console

from deployforge.cli.exit_codes import EXIT_FAILED
from deployforge.config import DeploySettings
from deployforge.core.controller import PipelineController
from deployforge.core.errors import DeployError, HealthCheckFailed
from deployforge.core.health_verifier import ensure_healthy
from deployforge.monitor.renderer import DeployRenderer, counts_line, summary_line

console = Console()


def health_check_cmd(
    environment: str = typer.Argument(..., help="Environment to check."),
    check: list[str] = typer.Option(
        None, "--check", "-c", help="Run only this check (repeatable)."
    ),
) -> None:
    """Run health checks against an environment and print a summary."""
    try:
        controller = PipelineController(DeploySettings())
        report = controller.verify(environment, check or None)
    except DeployError as exc:
        console.print(f"[bold red]Health check failed:[/bold red] {exc.describe()}")
        console.print(counts_line(1, 0))
        raise typer.Exit(code=EXIT_FAILED)

    DeployRenderer(console=console).print_health(report, counts=False)
    try:
        ensure_healthy(report)
    except HealthCheckFailed as exc:
        console.print(f"[bold red]{exc.describe()}[/bold red]")
        console.print(summary_line(report))
        raise typer.Exit(code=EXIT_FAILED)
    console.print(summary_line(report))
