"""Artifact Builder — ordered build steps into one immutable archive.

Lifecycle of ``ArtifactBuilder.build(steps)``:

    name artifact -> detect collision -> run steps in order (fail-fast on
    required steps) -> verify archive + exclusion contract -> hash ->
    publish archive and manifest

Everything before "publish" happens inside a private staging directory
that is always removed afterwards, so a failed build never leaves a
partial artifact where deployers look for one.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
import shutil
import tarfile
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from pydantic import ValidationError

from deployforge.core.commands import command_exists, run_command
from deployforge.core.errors import ConfigurationError, DeployError
from deployforge.core.hasher import hash_file
from deployforge.models.artifacts import (
    BuildArtifact,
    BuildContext,
    BuildManifest,
    BuildStep,
    StepKind,
    StepOutcome,
    StepResult,
    StepStatus,
)

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".manifest.json"
ARCHIVE_SUFFIX = ".tar.gz"

DEFAULT_TOOLCHAIN_COMMANDS: dict[str, list[str]] = {
    "php": ["php", "-r", "echo PHP_VERSION;"],
    "node": ["node", "--version"],
    "composer": ["composer", "--version"],
}


class BuildStepFailed(DeployError):
    """A required build step failed; nothing was published."""

    default_stage = "building"

    def __init__(self, step: str, cause: str) -> None:
        self.step = step
        super().__init__(f"Build step '{step}' failed: {cause}", cause=cause)


class ArtifactExists(DeployError):
    """An artifact with the same deterministic name is already published."""

    default_stage = "building"


# ---------------------------------------------------------------------------
# Exclusion contract
# ---------------------------------------------------------------------------


def is_excluded(relative_path: str, patterns: Iterable[str]) -> bool:
    """Whether a path inside the source tree matches any exclude pattern.

    Follows ``tar --exclude``: a pattern matches the full relative path,
    any leading directory of it, or any trailing sub-path (so ``*.log``
    excludes ``logs/app.log`` and ``node_modules`` excludes everything
    beneath it).
    """
    parts = PurePosixPath(relative_path).parts
    if not parts:
        return False
    candidates = {
        "/".join(parts[i:j])
        for i in range(len(parts))
        for j in range(i + 1, len(parts) + 1)
    }
    return any(
        fnmatch.fnmatchcase(candidate, pattern)
        for pattern in patterns
        for candidate in candidates
    )


def package_tree(context: BuildContext) -> StepOutcome:
    """Archive ``context.source_dir`` into ``context.archive_path``.

    Excluded directories are pruned before descent, so their contents are
    never read.
    """
    root = context.source_dir
    patterns = context.exclude_patterns
    count = 0
    with tarfile.open(context.archive_path, "w:gz") as tar:
        for dirpath, dirnames, filenames in os.walk(root):
            rel_dir = Path(dirpath).relative_to(root)
            kept_dirs = []
            for d in sorted(dirnames):
                rel = (rel_dir / d).as_posix()
                if is_excluded(rel, patterns):
                    continue
                kept_dirs.append(d)
                tar.add(Path(dirpath) / d, arcname=rel, recursive=False)
            dirnames[:] = kept_dirs
            for f in sorted(filenames):
                rel = (rel_dir / f).as_posix()
                if is_excluded(rel, patterns):
                    continue
                tar.add(Path(dirpath) / f, arcname=rel, recursive=False)
                count += 1
    return StepOutcome(ok=True, detail=f"{count} files packaged")


def command_action(
    argv: Sequence[str], *, timeout: float | None = None
) -> Callable[[BuildContext], StepOutcome]:
    """Wrap an external command as a build step action run in the source dir."""

    def _run(context: BuildContext) -> StepOutcome:
        if not command_exists(argv[0]):
            return StepOutcome(ok=False, detail=f"{argv[0]} not found, step skipped")
        result = run_command(argv, cwd=context.source_dir, timeout=timeout)
        return StepOutcome(ok=result.ok, detail=result.detail)

    return _run


def default_steps(
    *, install_dependencies: bool = True, timeout: float | None = None
) -> list[BuildStep]:
    """The standard build: dependencies, optional asset steps, package."""
    steps: list[BuildStep] = []
    if install_dependencies:
        steps.append(BuildStep.required(
            "install_dependencies",
            command_action(
                ["composer", "install", "--no-dev", "--prefer-dist",
                 "--no-progress", "--optimize-autoloader"],
                timeout=timeout,
            ),
        ))
        steps.append(BuildStep.best_effort(
            "install_node_dependencies",
            command_action(["npm", "ci", "--production"], timeout=timeout),
        ))
    steps.append(BuildStep.best_effort(
        "build_docs", command_action(["npm", "run", "doc"], timeout=timeout)
    ))
    steps.append(BuildStep.best_effort(
        "minify_svg", command_action(["npm", "run", "minify:svg"], timeout=timeout)
    ))
    steps.append(BuildStep.required("package", package_tree))
    return steps


# ---------------------------------------------------------------------------
# Source metadata
# ---------------------------------------------------------------------------


def git_revision(source_dir: Path) -> tuple[str, str]:
    """Return ``(commit, branch)`` of the source tree, ``"unknown"`` if not a repo."""
    commit = run_command(["git", "rev-parse", "HEAD"], cwd=source_dir, timeout=10)
    branch = run_command(
        ["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=source_dir, timeout=10
    )
    return (
        commit.stdout.strip() if commit.ok and commit.stdout.strip() else "unknown",
        branch.stdout.strip() if branch.ok and branch.stdout.strip() else "unknown",
    )


def ensure_clean_source(source_dir: Path, *, timeout: float = 30.0) -> None:
    """Refuse to deploy from a git working tree with uncommitted changes.

    Trees that are not git checkouts are accepted as they are. Raises
    ``ConfigurationError`` when ``git status --porcelain`` lists changes
    or cannot be run inside a checkout.
    """
    if not (Path(source_dir) / ".git").exists():
        return
    if not command_exists("git"):
        raise ConfigurationError(
            f"{source_dir} is a git checkout but git is not installed.",
            stage="resolving", cause="git not found",
        )
    result = run_command(["git", "status", "--porcelain"], cwd=source_dir, timeout=timeout)
    if not result.ok:
        raise ConfigurationError(
            f"Could not read the git status of {source_dir}.",
            stage="resolving", cause=result.detail,
        )
    changed = [line for line in result.stdout.splitlines() if line.strip()]
    if changed:
        logger.warning("Working tree %s has %d uncommitted change(s)", source_dir, len(changed))
        raise ConfigurationError(
            f"Working tree {source_dir} has uncommitted changes "
            f"({len(changed)} path(s)); commit them or pass --allow-dirty.",
            stage="resolving", cause="uncommitted changes",
        )


def detect_toolchain(commands: Mapping[str, Sequence[str]]) -> dict[str, str]:
    """Run version commands; absent tools are recorded as ``"not installed"``."""
    versions: dict[str, str] = {}
    for name, argv in commands.items():
        result = run_command(argv, timeout=10)
        versions[name] = result.stdout.strip() if result.ok else "not installed"
    return versions


def artifact_name_for(prefix: str, timestamp: datetime, revision: str) -> str:
    """Deterministic artifact file name from build time and source revision."""
    rev = re.sub(r"[^A-Za-z0-9]", "", revision)[:12] or "unknown"
    return f"{prefix}-{timestamp.strftime('%Y%m%d-%H%M%S')}-{rev}{ARCHIVE_SUFFIX}"


def manifest_path_for(archive: Path) -> Path:
    return archive.with_name(archive.name.removesuffix(ARCHIVE_SUFFIX) + MANIFEST_SUFFIX)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class ArtifactBuilder:
    """Run build steps and publish one artifact plus its manifest.

    Parameters
    ----------
    source_dir:
        Root of the tree to package.
    output_dir:
        Where archives and manifests are published.
    exclude_patterns:
        Active exclude set; no matching path ever enters the archive.
    artifact_prefix:
        Leading part of every artifact name.
    overwrite:
        Replace an existing artifact with the same name instead of raising
        ``ArtifactExists``.
    clock:
        Returns the build timestamp (UTC). Injectable for tests.
    revision_provider:
        Returns ``(revision, branch)`` for the source dir.
    toolchain_commands:
        Name -> argv of version commands recorded in the manifest.
    """

    def __init__(
        self,
        source_dir: Path,
        output_dir: Path,
        *,
        exclude_patterns: Iterable[str] = (),
        artifact_prefix: str = "mediawiki",
        overwrite: bool = False,
        clock: Callable[[], datetime] | None = None,
        revision_provider: Callable[[Path], tuple[str, str]] | None = None,
        toolchain_commands: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        self.source_dir = Path(source_dir).resolve()
        self.output_dir = Path(output_dir).resolve()
        self.exclude_patterns = tuple(exclude_patterns)
        self.artifact_prefix = artifact_prefix
        self.overwrite = overwrite
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._revision_provider = revision_provider or git_revision
        self._toolchain_commands = (
            DEFAULT_TOOLCHAIN_COMMANDS if toolchain_commands is None else toolchain_commands
        )

    def build(self, steps: Sequence[BuildStep]) -> tuple[BuildArtifact, BuildManifest]:
        """Execute ``steps`` in order and publish the resulting artifact.

        Raises ``BuildStepFailed`` (required step failed, or the archive
        violates the exclusion contract), ``ArtifactExists``, or
        ``DeployError`` when the source tree is missing.
        """
        if not self.source_dir.is_dir():
            raise DeployError(
                f"Source tree {self.source_dir} does not exist.",
                stage="building", cause="missing source directory",
            )
        timestamp = self._clock()
        revision, branch = self._revision_provider(self.source_dir)
        name = artifact_name_for(self.artifact_prefix, timestamp, revision)
        target = self.output_dir / name

        if target.exists() and not self.overwrite:
            raise ArtifactExists(
                f"Artifact {name} already exists in {self.output_dir}; "
                "rebuild with overwrite enabled to replace it.",
                cause="artifact name collision",
            )

        self.output_dir.mkdir(parents=True, exist_ok=True)
        staging = self.output_dir / f".staging-{uuid.uuid4().hex[:8]}"
        staging.mkdir()
        context = BuildContext(
            source_dir=self.source_dir,
            staging_dir=staging,
            artifact_name=name,
            exclude_patterns=self._effective_excludes(),
        )
        logger.info("Building %s from %s", name, self.source_dir)

        try:
            results = self._run_steps(steps, context)
            self._verify_archive(context)
            digest = hash_file(context.archive_path)

            manifest = BuildManifest(
                build_timestamp=timestamp,
                source_revision=revision,
                source_branch=branch,
                artifact_name=name,
                toolchain_versions=detect_toolchain(self._toolchain_commands),
                artifact_sha256=digest,
                step_results=results,
                warnings=[
                    f"{r.name}: {r.detail or 'failed'}"
                    for r in results if r.status == StepStatus.WARNED
                ],
            )
            artifact = self._publish(context, manifest, target)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info(
            "Build complete: %s (%d bytes, %d warnings)",
            artifact.artifact_name, artifact.size_bytes, len(manifest.warnings),
        )
        return artifact, manifest

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _effective_excludes(self) -> tuple[str, ...]:
        patterns = list(self.exclude_patterns)
        # The output dir (and staging inside it) must never package itself.
        if self.output_dir.is_relative_to(self.source_dir) and self.output_dir != self.source_dir:
            patterns.append(self.output_dir.relative_to(self.source_dir).as_posix())
        return tuple(patterns)

    def _run_steps(
        self, steps: Sequence[BuildStep], context: BuildContext
    ) -> list[StepResult]:
        results: list[StepResult] = []
        for step in steps:
            logger.info("Build step %s (%s)", step.name, step.kind.value)
            try:
                outcome = step.action(context)
            except Exception as exc:  # a raising step is a failed step
                outcome = StepOutcome(ok=False, detail=f"{type(exc).__name__}: {exc}")

            if outcome.ok:
                results.append(StepResult(
                    name=step.name, kind=step.kind,
                    status=StepStatus.PASSED, detail=outcome.detail,
                ))
                continue

            if step.kind == StepKind.BEST_EFFORT:
                logger.warning("Best-effort step %s failed: %s", step.name, outcome.detail)
                results.append(StepResult(
                    name=step.name, kind=step.kind,
                    status=StepStatus.WARNED, detail=outcome.detail,
                ))
                continue

            logger.error("Required step %s failed: %s", step.name, outcome.detail)
            raise BuildStepFailed(step.name, outcome.detail or "step reported failure")
        return results

    def _verify_archive(self, context: BuildContext) -> None:
        archive = context.archive_path
        if not archive.is_file():
            raise BuildStepFailed(
                "verify", f"no archive produced at {archive.name}; add a package step"
            )
        try:
            with tarfile.open(archive, "r:gz") as tar:
                names = tar.getnames()
        except (tarfile.TarError, OSError) as exc:
            raise BuildStepFailed("verify", f"archive unreadable: {exc}") from exc

        leaked = [n for n in names if is_excluded(n, context.exclude_patterns)]
        if leaked:
            raise BuildStepFailed(
                "verify", f"excluded paths present in archive: {', '.join(leaked[:5])}"
            )

    def _publish(
        self, context: BuildContext, manifest: BuildManifest, target: Path
    ) -> BuildArtifact:
        manifest_path = manifest_path_for(target)
        if target.exists():
            logger.warning("Overwriting existing artifact %s", target.name)

        staged_manifest = context.staging_dir / manifest_path.name
        staged_manifest.write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
        os.replace(context.archive_path, target)
        os.replace(staged_manifest, manifest_path)

        return BuildArtifact(
            artifact_name=manifest.artifact_name,
            path=target,
            sha256=manifest.artifact_sha256,
            size_bytes=target.stat().st_size,
            manifest_path=manifest_path,
        )


# ---------------------------------------------------------------------------
# Locating published artifacts
# ---------------------------------------------------------------------------


def load_artifact(manifest_path: Path) -> tuple[BuildArtifact, BuildManifest]:
    """Load a published artifact from its manifest file."""
    manifest_path = Path(manifest_path)
    try:
        manifest = BuildManifest.model_validate_json(
            manifest_path.read_text(encoding="utf-8")
        )
    except (OSError, ValidationError) as exc:
        raise DeployError(
            f"Cannot read build manifest {manifest_path}.",
            stage="deploying", cause=str(exc),
        ) from exc
    archive = manifest_path.parent / manifest.artifact_name
    artifact = BuildArtifact(
        artifact_name=manifest.artifact_name,
        path=archive,
        sha256=manifest.artifact_sha256,
        size_bytes=archive.stat().st_size if archive.exists() else 0,
        manifest_path=manifest_path,
    )
    return artifact, manifest


def find_latest_artifact(build_dir: Path) -> BuildArtifact | None:
    """Newest published artifact in ``build_dir`` by manifest build timestamp."""
    build_dir = Path(build_dir)
    if not build_dir.is_dir():
        return None
    candidates: list[tuple[datetime, BuildArtifact]] = []
    for manifest_path in build_dir.glob(f"*{MANIFEST_SUFFIX}"):
        try:
            artifact, manifest = load_artifact(manifest_path)
        except DeployError:
            logger.warning("Skipping unreadable manifest %s", manifest_path)
            continue
        if artifact.path.is_file():
            candidates.append((manifest.build_timestamp, artifact))
    if not candidates:
        return None
    return max(candidates, key=lambda c: c[0])[1]


def verify_artifact(artifact: BuildArtifact) -> bool:
    """Re-hash the archive and compare with the recorded digest."""
    return artifact.path.is_file() and hash_file(artifact.path) == artifact.sha256
