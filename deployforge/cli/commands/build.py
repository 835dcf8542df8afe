"""``deployforge build`` — produce a versioned artifact and its manifest."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from deployforge.cli.exit_codes import EXIT_FAILED
from deployforge.config import DeploySettings
from deployforge.core.artifact_builder import ArtifactBuilder, default_steps
from deployforge.core.errors import DeployError
from deployforge.monitor.renderer import DeployRenderer, counts_line

console = Console()


def build_cmd(
    source: Path = typer.Option(
        Path("."), "--source", "-s", help="Source tree to package."
    ),
    output: Path = typer.Option(
        None, "--output", "-o", help="Output directory (defaults to DEPLOYFORGE_BUILD_DIR)."
    ),
    skip_deps: bool = typer.Option(
        False, "--skip-deps", help="Do not install Composer/npm dependencies."
    ),
    overwrite: bool = typer.Option(
        False, "--overwrite", help="Replace an existing artifact with the same name."
    ),
) -> None:
    """Build a deployment artifact.

    Runs the build steps in order, packages the tree without excluded
    paths, and writes ``<artifact>.tar.gz`` plus ``<artifact>.manifest.json``.
    """
    settings = DeploySettings()
    builder = ArtifactBuilder(
        source,
        output or settings.build_dir,
        exclude_patterns=settings.exclude_patterns,
        artifact_prefix=settings.artifact_prefix,
        overwrite=overwrite,
    )
    steps = default_steps(
        install_dependencies=not skip_deps, timeout=settings.command_timeout_seconds
    )
    try:
        artifact, manifest = builder.build(steps)
    except DeployError as exc:
        console.print(f"[bold red]Build failed:[/bold red] {exc.describe()}")
        console.print(counts_line(1, 0))
        raise typer.Exit(code=EXIT_FAILED)

    console.print(DeployRenderer(console=console).render_build(artifact, manifest))
    for warning in manifest.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    console.print(f"[bold green]Built[/bold green] {artifact.artifact_name}")
    console.print(counts_line(0, len(manifest.warnings)))
