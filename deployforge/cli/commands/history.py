"""``deployforge history ENV`` — deployment records from the Run Ledger."""

from __future__ import annotations

import typer
from rich.console import Console

from deployforge.cli.exit_codes import EXIT_FAILED
from deployforge.config import DeploySettings
from deployforge.core.environment_resolver import EnvironmentResolver
from deployforge.core.errors import DeployError
from deployforge.core.run_ledger import LedgerIntegrityError, RunLedger
from deployforge.monitor.renderer import DeployRenderer, counts_line

console = Console()


def history_cmd(
    environment: str = typer.Argument(..., help="Environment whose history to show."),
    verify_chain: bool = typer.Option(
        False, "--verify-chain", help="Verify the ledger hash chain of every listed run."
    ),
) -> None:
    """Show the deployment history of an environment, oldest first."""
    settings = DeploySettings()
    try:
        name = EnvironmentResolver.from_settings(settings).canonical_name(environment)
    except DeployError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc.describe()}")
        console.print(counts_line(1, 0))
        raise typer.Exit(code=EXIT_FAILED)

    if not settings.ledger_path.exists():
        console.print(f"[dim]No deployments recorded for {name}.[/dim]")
        console.print(counts_line(0, 0))
        return

    ledger = RunLedger(settings.ledger_path)
    records = ledger.deployments(name)
    if not records:
        console.print(f"[dim]No deployments recorded for {name}.[/dim]")
        console.print(counts_line(0, 0))
        return
    console.print(DeployRenderer(console=console).render_history(name, records))

    if verify_chain:
        try:
            for run_id in dict.fromkeys(r.run_id for r in records):
                ledger.verify_chain(run_id)
        except LedgerIntegrityError as exc:
            console.print(f"[bold red]Ledger integrity error:[/bold red] {exc}")
            console.print(counts_line(1, 0))
            raise typer.Exit(code=EXIT_FAILED)
        console.print("[green]Ledger chain: valid[/green]")
    console.print(counts_line(0, 0))
