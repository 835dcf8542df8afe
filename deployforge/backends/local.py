"""Local-filesystem deployment backend.

The target is ``environment.path`` on this machine. Artifacts are staged
in a sibling directory so extraction problems surface before the live tree
is touched; apply then swaps the top-level entries in, keeping the
preserved paths (site configuration, uploads, caches) that never ship in
an artifact.
"""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

from deployforge.core.filesystem import (
    clear_directory,
    extract_archive,
    move_children,
    normalize_relative,
)
from deployforge.core.hasher import hash_file
from deployforge.models.artifacts import BuildArtifact
from deployforge.models.deployments import RELEASE_MARKER
from deployforge.models.environments import EnvironmentConfig

logger = logging.getLogger(__name__)


class LocalDirectoryBackend:
    """Deploy by extracting into a directory on the local filesystem.

    Parameters
    ----------
    preserve_paths:
        Top-level names inside the target kept across deploys.
    staging_root:
        Where staged releases are unpacked. Defaults to the target's parent
        directory so the final moves stay on one filesystem.
    """

    def __init__(
        self,
        preserve_paths: Sequence[str] = (),
        *,
        staging_root: Path | None = None,
    ) -> None:
        self.preserve_paths = tuple(
            normalize_relative(p).split("/", 1)[0] for p in preserve_paths
        )
        self.staging_root = Path(staging_root) if staging_root is not None else None

    def transfer(self, artifact: BuildArtifact, environment: EnvironmentConfig) -> Path:
        target = Path(environment.path)
        root = self.staging_root or target.parent
        root.mkdir(parents=True, exist_ok=True)
        staged = Path(tempfile.mkdtemp(prefix=f".{target.name}.release-", dir=root))
        try:
            archive = staged / artifact.artifact_name
            shutil.copy2(artifact.path, archive)
            if hash_file(archive) != artifact.sha256:
                raise ValueError(f"{artifact.artifact_name} changed in transit")
            release = staged / "release"
            extract_archive(archive, release)
            archive.unlink()
            (staged / "ARTIFACT").write_text(artifact.artifact_name, encoding="utf-8")
        except BaseException:
            shutil.rmtree(staged, ignore_errors=True)
            raise
        logger.debug("Staged %s at %s", artifact.artifact_name, staged)
        return staged

    def apply(self, staged: Path, environment: EnvironmentConfig) -> None:
        target = Path(environment.path)
        release = staged / "release"
        if not release.is_dir():
            raise FileNotFoundError(f"nothing staged at {release}")
        target.mkdir(parents=True, exist_ok=True)
        clear_directory(target, keep=self.preserve_paths)
        move_children(release, target, skip=self.preserve_paths)
        marker = {
            "artifact_name": _artifact_name_of(staged),
            "applied_at": datetime.now(timezone.utc).isoformat(),
            "environment": environment.name,
        }
        (target / RELEASE_MARKER).write_text(json.dumps(marker, indent=2), encoding="utf-8")
        logger.info("Applied release to %s", target)

    def discard(self, staged: Path) -> None:
        shutil.rmtree(staged, ignore_errors=True)


def _artifact_name_of(staged: Path) -> str:
    name_file = staged / "ARTIFACT"
    try:
        return name_file.read_text(encoding="utf-8").strip()
    except OSError:
        return staged.name
