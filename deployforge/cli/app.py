"""Main Typer application — imports and registers all CLI commands.

Entry point: ``deployforge`` (configured via pyproject.toml project.scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from deployforge.cli.commands.backups import backups_cmd
from deployforge.cli.commands.build import build_cmd
from deployforge.cli.commands.deploy import deploy_cmd
from deployforge.cli.commands.health_check import health_check_cmd
from deployforge.cli.commands.history import history_cmd
from deployforge.cli.commands.rollback import rollback_cmd
from deployforge.config import DeploySettings

app = typer.Typer(
    name="deployforge",
    help="Deployforge: build, deploy, verify and roll back a wiki installation.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="build", help="Build a versioned deployment artifact.")(build_cmd)
app.command(name="deploy", help="Deploy an artifact to an environment.")(deploy_cmd)
app.command(name="rollback", help="Restore an environment from a backup.")(rollback_cmd)
app.command(name="health-check", help="Run health checks against an environment.")(
    health_check_cmd
)
app.command(name="backups", help="List backups of an environment.")(backups_cmd)
app.command(name="history", help="Show deployment history of an environment.")(history_cmd)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    log_level: str = typer.Option(
        None, "--log-level", help="Log level (defaults to DEPLOYFORGE_LOG_LEVEL)."
    ),
) -> None:
    """Configure logging for every command."""
    level = "DEBUG" if verbose else (log_level or DeploySettings().log_level)
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
