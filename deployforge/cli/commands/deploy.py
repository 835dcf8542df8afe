"""``deployforge deploy ENV`` — run the full deploy pipeline.

Deploys the given artifact (or the newest one in the build directory),
taking a backup first. Production-class environments require
``--confirm deploy``. A source tree that is a git checkout must be clean
unless ``--allow-dirty`` is given.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from deployforge.cli.exit_codes import EXIT_FAILED, EXIT_OK, EXIT_ROLLED_BACK, EXIT_UNHEALTHY
from deployforge.config import DeploySettings
from deployforge.core.artifact_builder import (
    MANIFEST_SUFFIX,
    ensure_clean_source,
    find_latest_artifact,
    load_artifact,
    manifest_path_for,
)
from deployforge.core.controller import PipelineController
from deployforge.core.errors import DeployError
from deployforge.models.artifacts import BuildArtifact
from deployforge.models.health import OverallStatus
from deployforge.models.pipeline import PipelineResult, PipelineState
from deployforge.monitor.renderer import DeployRenderer, counts_line, run_counts

console = Console()


def _locate_artifact(artifact: Path | None, settings: DeploySettings) -> BuildArtifact:
    if artifact is None:
        latest = find_latest_artifact(settings.build_dir)
        if latest is None:
            raise DeployError(
                f"No build artifact found in {settings.build_dir}; run `deployforge build` first.",
                stage="deploying",
            )
        return latest
    manifest = artifact if artifact.name.endswith(MANIFEST_SUFFIX) else manifest_path_for(artifact)
    found, _manifest = load_artifact(manifest)
    return found


def exit_code_for(result: PipelineResult) -> int:
    """Map a finished run to the process exit code."""
    if result.state == PipelineState.ROLLED_BACK:
        return EXIT_ROLLED_BACK
    if result.state != PipelineState.COMPLETED:
        return EXIT_FAILED
    if result.deployment is not None and result.deployment.health == OverallStatus.FAIL:
        return EXIT_UNHEALTHY
    return EXIT_OK


def deploy_cmd(
    environment: str = typer.Argument(..., help="Target environment (production, staging, ...)."),
    artifact: Path = typer.Option(
        None, "--artifact", "-a",
        help="Artifact archive or manifest (defaults to the newest build).",
    ),
    confirm: str = typer.Option(
        None, "--confirm",
        help="Confirmation token required by production-class environments.",
    ),
    check: list[str] = typer.Option(
        None, "--check", "-c", help="Health check to run afterwards (repeatable)."
    ),
    source: Path = typer.Option(
        Path("."), "--source", "-s", help="Source checkout whose git status is checked."
    ),
    allow_dirty: bool = typer.Option(
        False, "--allow-dirty", help="Deploy even if the source checkout has uncommitted changes."
    ),
) -> None:
    """Deploy an artifact to an environment.

    Sequence: resolve -> confirm -> backup -> deploy -> post-deploy ->
    verify. A failed deploy is restored from the backup automatically
    unless DEPLOYFORGE_AUTO_ROLLBACK=false.
    """
    settings = DeploySettings()
    try:
        if not allow_dirty:
            ensure_clean_source(source, timeout=settings.command_timeout_seconds)
        found = _locate_artifact(artifact, settings)
        controller = PipelineController(settings)
    except DeployError as exc:
        console.print(f"[bold red]Deploy failed:[/bold red] {exc.describe()}")
        console.print(counts_line(1, 0))
        raise typer.Exit(code=EXIT_FAILED)

    result = controller.deploy(found, environment, confirmation_token=confirm, checks=check or None)
    DeployRenderer(console=console).print_result(result)

    code = exit_code_for(result)
    if code == EXIT_OK:
        console.print(f"[bold green]Deployed[/bold green] {found.artifact_name} to {result.environment_name}")
    elif code == EXIT_UNHEALTHY:
        console.print(f"[bold yellow]Deployed to {result.environment_name}, but health checks failed.[/bold yellow]")
    elif code == EXIT_ROLLED_BACK:
        console.print(f"[bold yellow]Deployment rolled back on {result.environment_name}.[/bold yellow]")
    else:
        console.print(f"[bold red]Deployment to {result.environment_name} failed.[/bold red]")
    console.print(counts_line(*run_counts(result)))
    raise typer.Exit(code=code)
