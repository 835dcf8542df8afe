"""Deployforge data models — all Pydantic v2, all frozen (immutable)."""

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
from deployforge.models.backups import BackupRecord
from deployforge.models.deployments import (
    RELEASE_MARKER,
    DeploymentOutcome,
    DeploymentRecord,
    TaskResult,
)
from deployforge.models.environments import EnvironmentConfig
from deployforge.models.health import (
    CheckResult,
    CheckStatus,
    HealthReport,
    OverallStatus,
    aggregate_status,
)
from deployforge.models.ledger import LedgerEntry
from deployforge.models.pipeline import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    FailureInfo,
    PipelineResult,
    PipelineState,
    RunContext,
    StateTransition,
)

__all__ = [
    # artifacts
    "BuildArtifact",
    "BuildContext",
    "BuildManifest",
    "BuildStep",
    "StepKind",
    "StepOutcome",
    "StepResult",
    "StepStatus",
    # backups
    "BackupRecord",
    # deployments
    "DeploymentOutcome",
    "DeploymentRecord",
    "TaskResult",
    "RELEASE_MARKER",
    # environments
    "EnvironmentConfig",
    # health
    "CheckResult",
    "CheckStatus",
    "HealthReport",
    "OverallStatus",
    "aggregate_status",
    # ledger
    "LedgerEntry",
    # pipeline
    "PipelineState",
    "StateTransition",
    "RunContext",
    "FailureInfo",
    "PipelineResult",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
]
