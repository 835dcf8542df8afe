"""Pipeline state machine models — deterministic transitions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from deployforge.models.backups import BackupRecord
from deployforge.models.deployments import DeploymentRecord
from deployforge.models.environments import EnvironmentConfig
from deployforge.models.health import HealthReport


class PipelineState(str, Enum):
    """States of a single deploy run."""

    IDLE = "idle"
    RESOLVING = "resolving"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    BACKING_UP = "backing_up"
    DEPLOYING = "deploying"
    POST_DEPLOY = "post_deploy"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATES: frozenset[PipelineState] = frozenset(
    {PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.ROLLED_BACK}
)

# Valid state transitions, enforced structurally by PipelineMachine.
# Terminal states have no outgoing transitions.
VALID_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.IDLE: {PipelineState.RESOLVING},
    PipelineState.RESOLVING: {
        PipelineState.AWAITING_CONFIRMATION,
        PipelineState.BACKING_UP,
        PipelineState.FAILED,
    },
    PipelineState.AWAITING_CONFIRMATION: {PipelineState.BACKING_UP, PipelineState.FAILED},
    PipelineState.BACKING_UP: {PipelineState.DEPLOYING, PipelineState.FAILED},
    PipelineState.DEPLOYING: {
        PipelineState.POST_DEPLOY,
        PipelineState.ROLLED_BACK,
        PipelineState.FAILED,
    },
    PipelineState.POST_DEPLOY: {
        PipelineState.VERIFYING,
        PipelineState.ROLLED_BACK,
        PipelineState.FAILED,
    },
    # FAILED from VERIFYING only on cancellation; an unhealthy report still completes.
    PipelineState.VERIFYING: {PipelineState.COMPLETED, PipelineState.FAILED},
    PipelineState.COMPLETED: set(),
    PipelineState.FAILED: set(),
    PipelineState.ROLLED_BACK: set(),
}


class StateTransition(BaseModel):
    """Records a single state transition for the audit trail."""

    model_config = ConfigDict(frozen=True)

    from_state: PipelineState
    to_state: PipelineState
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    note: str = ""


class RunContext(BaseModel):
    """Explicit state handed from one pipeline stage to the next."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    environment_name: str
    artifact_name: str
    environment: EnvironmentConfig | None = None
    confirmed: bool = False
    confirmed_at: datetime | None = None
    backup: BackupRecord | None = None


class FailureInfo(BaseModel):
    """Why a run stopped: the stage, the error kind and the recovery ref."""

    model_config = ConfigDict(frozen=True)

    stage: str
    error: str  # exception class name, e.g. "ApplyFailed"
    cause: str
    backup_ref: str | None = None


class PipelineResult(BaseModel):
    """Everything a caller needs to know about a finished deploy run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    environment_name: str
    state: PipelineState
    transitions: list[StateTransition] = []
    environment: EnvironmentConfig | None = None
    backup: BackupRecord | None = None
    deployment: DeploymentRecord | None = None
    health: HealthReport | None = None
    failure: FailureInfo | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.COMPLETED

    @property
    def healthy(self) -> bool:
        return self.deployment is not None and self.deployment.is_healthy
