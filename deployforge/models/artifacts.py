"""Build artifact, manifest and build step models (immutable)."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict


class StepKind(str, Enum):
    """Whether a build step's failure aborts the build."""

    REQUIRED = "required"
    BEST_EFFORT = "best_effort"


class StepStatus(str, Enum):
    PASSED = "passed"
    WARNED = "warned"  # best-effort step failed
    FAILED = "failed"


class StepOutcome(BaseModel):
    """What a single build step reports back: success flag + diagnostics."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    detail: str = ""


class BuildContext(BaseModel):
    """Inputs every build step receives.

    ``staging_dir`` is private to one build; the packaging step writes the
    archive to ``archive_path`` inside it. Nothing in the staging directory
    is visible to deployers until the builder publishes it.
    """

    model_config = ConfigDict(frozen=True)

    source_dir: Path
    staging_dir: Path
    artifact_name: str
    exclude_patterns: tuple[str, ...] = ()

    @property
    def archive_path(self) -> Path:
        return self.staging_dir / self.artifact_name


class BuildStep(BaseModel):
    """A named, idempotent build operation.

    The kind is declared up front: ``REQUIRED`` steps abort the build on
    failure, ``BEST_EFFORT`` steps are downgraded to a manifest warning.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    action: Callable[[BuildContext], StepOutcome]
    kind: StepKind = StepKind.REQUIRED

    @classmethod
    def required(
        cls, name: str, action: Callable[[BuildContext], StepOutcome]
    ) -> BuildStep:
        return cls(name=name, action=action, kind=StepKind.REQUIRED)

    @classmethod
    def best_effort(
        cls, name: str, action: Callable[[BuildContext], StepOutcome]
    ) -> BuildStep:
        return cls(name=name, action=action, kind=StepKind.BEST_EFFORT)


class StepResult(BaseModel):
    """Recorded outcome of one executed build step."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: StepKind
    status: StepStatus
    detail: str = ""


class BuildManifest(BaseModel):
    """Structured metadata describing one build. Written beside the archive."""

    model_config = ConfigDict(frozen=True)

    build_timestamp: datetime
    source_revision: str
    source_branch: str
    artifact_name: str
    toolchain_versions: dict[str, str] = {}
    artifact_sha256: str = ""
    step_results: list[StepResult] = []
    warnings: list[str] = []


class BuildArtifact(BaseModel):
    """Handle on a published archive. The bytes live at ``path``."""

    model_config = ConfigDict(frozen=True)

    artifact_name: str
    path: Path
    sha256: str
    size_bytes: int
    manifest_path: Path
