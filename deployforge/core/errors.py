"""Error taxonomy shared by every pipeline component.

Concrete errors live next to the component that raises them; they all
derive from ``DeployError`` so the Controller and the CLI can report the
failing stage, the cause and the backup needed for manual recovery in one
place.
"""

from __future__ import annotations


class DeployError(RuntimeError):
    """Base class for all pipeline failures.

    Parameters
    ----------
    message:
        Human-readable description of what failed.
    stage:
        Pipeline stage in which the failure happened (e.g. ``"deploying"``).
    cause:
        Short cause string, typically the underlying exception text.
    backup_ref:
        Id of the BackupRecord that can restore the environment, if any.
    """

    default_stage = "pipeline"

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        cause: str = "",
        backup_ref: str | None = None,
    ) -> None:
        self.stage = stage or self.default_stage
        self.cause = cause
        self.backup_ref = backup_ref
        super().__init__(message)

    def describe(self) -> str:
        """Return the stage-qualified message, with recovery hint when known."""
        text = f"[{self.stage}] {self.args[0]}"
        if self.cause and self.cause not in text:
            text += f" (cause: {self.cause})"
        if self.backup_ref:
            text += f"; manual restore required using backup {self.backup_ref}"
        return text


class ConfigurationError(DeployError):
    """Unresolvable environment or missing required setting. Always fatal."""

    default_stage = "resolving"


class HealthCheckFailed(DeployError):
    """Raised by callers that choose to escalate a failing HealthReport.

    The pipeline itself never raises this for a completed deployment; the
    verdict is reported on the DeploymentRecord instead.
    """

    default_stage = "verifying"
