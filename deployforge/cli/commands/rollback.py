"""``deployforge rollback ENV`` — restore the latest (or a named) backup."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.panel import Panel

from deployforge.cli.exit_codes import EXIT_FAILED
from deployforge.config import DeploySettings
from deployforge.core.controller import PipelineController
from deployforge.core.errors import DeployError
from deployforge.monitor.renderer import counts_line

console = Console()


def rollback_cmd(
    environment: str = typer.Argument(..., help="Environment to restore."),
    backup_id: str = typer.Option(
        None, "--backup", "-b", help="Backup id to restore (defaults to the latest)."
    ),
) -> None:
    """Restore an environment from a backup and record the rollback."""
    try:
        controller = PipelineController(DeploySettings())
        record = controller.rollback(environment, backup_id)
    except DeployError as exc:
        console.print(f"[bold red]Rollback failed:[/bold red] {exc.describe()}")
        console.print(counts_line(1, 0))
        raise typer.Exit(code=EXIT_FAILED)

    console.print(
        Panel(
            "\n".join([
                f"[bold yellow]Rolled back {record.environment_name}[/bold yellow]",
                "",
                f"[bold]Backup:[/bold]    {record.backup_ref}",
                f"[bold]Artifact:[/bold]  {record.artifact_name}",
                f"[bold]Record:[/bold]    {record.deployment_id}",
            ]),
            title="[bold]Rollback[/bold]",
            border_style="yellow",
        )
    )
    console.print(counts_line(0, 0))
