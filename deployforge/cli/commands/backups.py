"""``deployforge backups ENV`` — list recorded backups, oldest first."""

from __future__ import annotations

import typer
from rich.console import Console

from deployforge.cli.exit_codes import EXIT_FAILED
from deployforge.config import DeploySettings
from deployforge.core.backup_manager import BackupManager
from deployforge.core.environment_resolver import EnvironmentResolver
from deployforge.core.errors import DeployError
from deployforge.monitor.renderer import DeployRenderer, counts_line

console = Console()


def backups_cmd(
    environment: str = typer.Argument(..., help="Environment whose backups to list."),
) -> None:
    """List backups of an environment."""
    settings = DeploySettings()
    try:
        name = EnvironmentResolver.from_settings(settings).canonical_name(environment)
    except DeployError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc.describe()}")
        console.print(counts_line(1, 0))
        raise typer.Exit(code=EXIT_FAILED)

    records = BackupManager(settings.backup_dir).list_backups(name)
    if not records:
        console.print(f"[dim]No backups for {name}.[/dim]")
        console.print(counts_line(0, 0))
        return
    console.print(DeployRenderer(console=console).render_backups(name, records))
    console.print(counts_line(0, 0))
