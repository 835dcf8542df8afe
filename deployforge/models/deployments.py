"""Deployment record model."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from deployforge.models.health import OverallStatus


# File written into the target root on apply, naming the live artifact.
RELEASE_MARKER = ".deployforge-release.json"


class DeploymentOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class TaskResult(BaseModel):
    """Outcome of one post-deploy task."""

    model_config = ConfigDict(frozen=True)

    name: str
    ok: bool
    detail: str = ""


class DeploymentRecord(BaseModel):
    """One deployment (or rollback) against one environment.

    Created by the Deployment Executor, finalized by the Controller with
    ``model_copy(update=...)``. A rollback is its own record referencing the
    BackupRecord it restored.
    """

    model_config = ConfigDict(frozen=True)

    deployment_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    run_id: str = ""
    environment_name: str
    artifact_name: str
    started_at: datetime
    finished_at: datetime | None = None
    outcome: DeploymentOutcome
    backup_ref: str | None = None
    confirmed: bool = False
    post_deploy: list[TaskResult] = []
    health: OverallStatus | None = None  # None until verified
    diagnostics: list[str] = []

    @property
    def post_deploy_failures(self) -> list[TaskResult]:
        return [t for t in self.post_deploy if not t.ok]

    @property
    def is_healthy(self) -> bool:
        """Deployed and verified without a failing check."""
        return (
            self.outcome == DeploymentOutcome.SUCCESS
            and self.health is not None
            and self.health != OverallStatus.FAIL
        )
