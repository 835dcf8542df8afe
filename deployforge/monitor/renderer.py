"""Rich terminal renderer for deploy runs and health reports.

Color scheme
------------
- green   : pass / completed / success
- yellow  : warn / rolled back
- red     : fail / failed
"""

from __future__ import annotations

from collections.abc import Sequence

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from deployforge.models.artifacts import BuildArtifact, BuildManifest, StepStatus
from deployforge.models.backups import BackupRecord
from deployforge.models.deployments import DeploymentOutcome, DeploymentRecord
from deployforge.models.health import CheckStatus, HealthReport, OverallStatus
from deployforge.models.pipeline import PipelineResult, PipelineState


# ---------------------------------------------------------------------------
# Status -> Rich markup mapping
# ---------------------------------------------------------------------------

_CHECK_ICONS: dict[CheckStatus, str] = {
    CheckStatus.PASS: "[green]PASS[/green]",
    CheckStatus.WARN: "[yellow]WARN[/yellow]",
    CheckStatus.FAIL: "[bold red]FAIL[/bold red]",
}

_OVERALL_STYLES: dict[OverallStatus, str] = {
    OverallStatus.PASS: "bold green",
    OverallStatus.WARN_ONLY: "bold yellow",
    OverallStatus.FAIL: "bold red",
}

_STATE_STYLES: dict[PipelineState, str] = {
    PipelineState.COMPLETED: "bold green",
    PipelineState.ROLLED_BACK: "bold yellow",
    PipelineState.FAILED: "bold red",
}

_OUTCOME_ICONS: dict[DeploymentOutcome, str] = {
    DeploymentOutcome.SUCCESS: "[green]success[/green]",
    DeploymentOutcome.ROLLED_BACK: "[yellow]rolled back[/yellow]",
    DeploymentOutcome.FAILED: "[bold red]failed[/bold red]",
}

_STEP_ICONS: dict[StepStatus, str] = {
    StepStatus.PASSED: "[green]passed[/green]",
    StepStatus.WARNED: "[yellow]warning[/yellow]",
    StepStatus.FAILED: "[bold red]failed[/bold red]",
}


def counts_line(errors: int, warnings: int) -> str:
    """The closing line every command prints."""
    return f"Errors: {errors}  Warnings: {warnings}"


def summary_line(report: HealthReport) -> str:
    """Plain one-line summary with error and warning counts."""
    return counts_line(report.error_count, report.warning_count)


def run_counts(result: PipelineResult) -> tuple[int, int]:
    """Errors and warnings of a finished run.

    A failed or rolled-back run counts its failed stage as one error.
    Failed post-deploy tasks and health warnings count as warnings;
    failed health items count as errors.
    """
    errors = 1 if result.state in (PipelineState.FAILED, PipelineState.ROLLED_BACK) else 0
    warnings = 0
    if result.deployment is not None:
        warnings += sum(1 for task in result.deployment.post_deploy if not task.ok)
    if result.health is not None:
        errors += result.health.error_count
        warnings += result.health.warning_count
    return errors, warnings


def _ts(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value is not None else "-"


class DeployRenderer:
    """Renders pipeline records as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def render_health(self, report: HealthReport) -> Table:
        table = Table(
            title=f"Health: {report.environment_name}",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Check", style="bold", min_width=14)
        table.add_column("Status", justify="center", min_width=6)
        table.add_column("Detail", overflow="fold")
        for check in report.checks:
            table.add_row(check.name, _CHECK_ICONS[check.status], check.detail)
        return table

    def print_health(self, report: HealthReport, *, counts: bool = True) -> None:
        self.console.print(self.render_health(report))
        style = _OVERALL_STYLES[report.overall]
        self.console.print(f"[{style}]Overall: {report.overall.value}[/{style}]")
        if counts:
            self.console.print(summary_line(report))

    # ------------------------------------------------------------------
    # Pipeline runs
    # ------------------------------------------------------------------

    def render_result(self, result: PipelineResult) -> Panel:
        """Render a finished run: transitions, post-deploy tasks, failure."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("From", min_width=14)
        table.add_column("To", min_width=14)
        table.add_column("Note", overflow="fold")
        for step in result.transitions:
            table.add_row(step.from_state.value, step.to_state.value, step.note)

        parts: list = [table]
        record = result.deployment
        if record is not None and record.post_deploy:
            tasks = Table(title="Post-deploy", show_header=False, expand=True)
            tasks.add_column("Task")
            tasks.add_column("Result")
            for task in record.post_deploy:
                icon = "[green]ok[/green]" if task.ok else "[bold red]failed[/bold red]"
                tasks.add_row(task.name, f"{icon} {task.detail}")
            parts.append(tasks)

        lines = [f"[bold]Run:[/bold] {result.run_id}"]
        if result.backup is not None:
            lines.append(f"[bold]Backup:[/bold] {result.backup.backup_id}")
        if record is not None:
            lines.append(f"[bold]Artifact:[/bold] {record.artifact_name}")
            if record.health is not None:
                style = _OVERALL_STYLES[record.health]
                lines.append(f"[bold]Health:[/bold] [{style}]{record.health.value}[/{style}]")
            lines.extend(f"[yellow]{d}[/yellow]" for d in record.diagnostics)
        if result.failure is not None:
            f = result.failure
            lines.append(f"[bold red]{f.error}[/bold red] in {f.stage}: {f.cause}")
            if f.backup_ref and result.state == PipelineState.FAILED:
                lines.append(
                    f"[bold red]Manual restore required using backup {f.backup_ref}[/bold red]"
                )
        parts.append(Text.from_markup("\n".join(lines)))

        style = _STATE_STYLES.get(result.state, "bold")
        return Panel(
            Group(*parts),
            title=f"[bold]Deploy {result.environment_name}[/bold]",
            subtitle=f"[{style}]{result.state.value}[/{style}]",
            border_style=style.replace("bold ", ""),
        )

    def print_result(self, result: PipelineResult) -> None:
        self.console.print(self.render_result(result))
        if result.health is not None:
            self.print_health(result.health, counts=False)

    # ------------------------------------------------------------------
    # Builds, backups, history
    # ------------------------------------------------------------------

    def render_build(self, artifact: BuildArtifact, manifest: BuildManifest) -> Panel:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Step")
        table.add_column("Status", justify="center")
        table.add_column("Detail", overflow="fold")
        for step in manifest.step_results:
            table.add_row(step.name, _STEP_ICONS[step.status], step.detail)

        toolchain = ", ".join(f"{k} {v}" for k, v in manifest.toolchain_versions.items())
        info = Text.from_markup(
            f"[bold]Artifact:[/bold] {artifact.path}\n"
            f"[bold]Size:[/bold] {artifact.size_bytes} bytes  "
            f"[bold]SHA-256:[/bold] {artifact.sha256[:16]}...\n"
            f"[bold]Revision:[/bold] {manifest.source_revision} ({manifest.source_branch})\n"
            f"[bold]Toolchain:[/bold] {toolchain or '-'}"
        )
        return Panel(Group(table, info), title="[bold]Build[/bold]", border_style="green")

    def render_backups(self, environment_name: str, records: Sequence[BackupRecord]) -> Table:
        table = Table(title=f"Backups: {environment_name}", header_style="bold cyan")
        table.add_column("Backup", style="bold")
        table.add_column("Taken (UTC)")
        table.add_column("Paths")
        table.add_column("Active artifact")
        for r in records:
            paths = "[dim](no prior state)[/dim]" if r.no_prior_state else ", ".join(r.source_paths)
            table.add_row(r.backup_id, _ts(r.backup_timestamp), paths, r.active_artifact or "-")
        return table

    def render_history(self, environment_name: str, records: Sequence[DeploymentRecord]) -> Table:
        table = Table(title=f"Deployments: {environment_name}", header_style="bold cyan")
        table.add_column("Started (UTC)")
        table.add_column("Artifact", style="bold")
        table.add_column("Outcome", justify="center")
        table.add_column("Health", justify="center")
        table.add_column("Backup")
        for r in records:
            health = r.health.value if r.health is not None else "-"
            table.add_row(
                _ts(r.started_at), r.artifact_name, _OUTCOME_ICONS[r.outcome],
                health, r.backup_ref or "-",
            )
        return table
