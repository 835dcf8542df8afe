"""Deployment Executor — the only component that writes to a target.

Sequence of ``execute``::

    verify artifact integrity -> transfer -> apply -> post-deploy tasks
    (schema update, cache invalidation, cache warm) -> DeploymentRecord

The executor never restores a previous state on its own. Transfer and
apply failures raise ``TransferFailed`` / ``ApplyFailed`` carrying the
backup reference; whether to restore is the Controller's decision.
Post-deploy task failures are reported in the record, not raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from deployforge.backends.base import DeploymentBackend
from deployforge.core.artifact_builder import verify_artifact
from deployforge.core.commands import command_exists, run_command
from deployforge.core.errors import DeployError
from deployforge.core.filesystem import clear_directory
from deployforge.core.locks import DeploymentLocks
from deployforge.models.artifacts import BuildArtifact
from deployforge.models.backups import BackupRecord
from deployforge.models.deployments import DeploymentOutcome, DeploymentRecord, TaskResult
from deployforge.models.environments import EnvironmentConfig

logger = logging.getLogger(__name__)


class TransferFailed(DeployError):
    """The artifact could not be staged on the target. Target untouched."""

    default_stage = "deploying"


class ApplyFailed(DeployError):
    """Switching the target to the new artifact failed part-way."""

    default_stage = "deploying"


# ---------------------------------------------------------------------------
# Post-deploy tasks
# ---------------------------------------------------------------------------


@runtime_checkable
class PostDeployTask(Protocol):
    """A named maintenance action run against the freshly applied target."""

    name: str

    def run(self, environment: EnvironmentConfig, timeout: float | None) -> TaskResult:
        ...


class CommandTask:
    """Run an external command inside the target directory.

    Parameters
    ----------
    name:
        Task name shown in records and reports.
    argv:
        Command and arguments.
    requires:
        Path (relative to the target) that must exist for the task to apply;
        when it is absent the task is skipped and reported as ok.
    """

    def __init__(self, name: str, argv: Sequence[str], *, requires: str | None = None) -> None:
        self.name = name
        self.argv = list(argv)
        self.requires = requires

    def run(self, environment: EnvironmentConfig, timeout: float | None) -> TaskResult:
        target = Path(environment.path)
        if self.requires and not (target / self.requires).exists():
            return TaskResult(name=self.name, ok=True,
                              detail=f"skipped: {self.requires} not present")
        if not command_exists(self.argv[0]):
            return TaskResult(name=self.name, ok=False,
                              detail=f"{self.argv[0]}: command not found")
        result = run_command(self.argv, cwd=target, timeout=timeout)
        return TaskResult(name=self.name, ok=result.ok, detail=result.detail)


class ClearCacheTask:
    """Empty the target's cache directory (``rm -rf cache/*``)."""

    def __init__(self, name: str = "cache_invalidation", cache_dir: str = "cache") -> None:
        self.name = name
        self.cache_dir = cache_dir

    def run(self, environment: EnvironmentConfig, timeout: float | None) -> TaskResult:
        cache = Path(environment.path) / self.cache_dir
        if not cache.is_dir():
            return TaskResult(name=self.name, ok=True, detail=f"no {self.cache_dir}/ directory")
        clear_directory(cache)
        return TaskResult(name=self.name, ok=True, detail=f"{self.cache_dir}/ cleared")


def default_post_deploy_tasks() -> list[PostDeployTask]:
    """Schema update, cache invalidation, cache warm. Order is fixed."""
    return [
        CommandTask(
            "schema_update",
            ["php", "maintenance/run.php", "update", "--quick"],
            requires="maintenance/run.php",
        ),
        ClearCacheTask(),
        CommandTask(
            "cache_warm",
            ["php", "maintenance/run.php", "rebuildLocalisationCache"],
            requires="maintenance/run.php",
        ),
    ]


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class DeploymentExecutor:
    """Apply one artifact to one environment.

    Parameters
    ----------
    backend:
        Transport used to stage and apply the artifact.
    post_deploy_tasks:
        Tasks run in order after a successful apply. ``None`` uses
        ``default_post_deploy_tasks()``.
    locks:
        Per-environment lock registry; a second concurrent run against the
        same environment raises ``DeploymentInProgress``.
    task_timeout:
        Timeout in seconds handed to every post-deploy task.
    clock:
        Returns "now" (UTC). Injectable for tests.
    """

    def __init__(
        self,
        backend: DeploymentBackend,
        post_deploy_tasks: Sequence[PostDeployTask] | None = None,
        *,
        locks: DeploymentLocks | None = None,
        task_timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backend = backend
        self.post_deploy_tasks = list(
            default_post_deploy_tasks() if post_deploy_tasks is None else post_deploy_tasks
        )
        self.locks = locks or DeploymentLocks()
        self.task_timeout = task_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def execute(
        self,
        artifact: BuildArtifact,
        environment: EnvironmentConfig,
        backup: BackupRecord,
        *,
        run_id: str = "",
        confirmed: bool = False,
        stop_on_task_failure: bool = False,
    ) -> DeploymentRecord:
        """Deploy ``artifact`` and run post-deploy tasks.

        Returns a record with outcome ``SUCCESS`` even when post-deploy
        tasks failed; inspect ``record.post_deploy_failures``.
        Raises ``TransferFailed`` or ``ApplyFailed``.
        """
        with self.locks.hold(environment.name):
            record = self.start_record(
                artifact, environment, backup, run_id=run_id, confirmed=confirmed
            )
            self.apply_artifact(artifact, environment, backup)
            results = self.run_post_deploy(environment, stop_on_failure=stop_on_task_failure)
            return record.model_copy(update={
                "outcome": DeploymentOutcome.SUCCESS,
                "post_deploy": results,
                "finished_at": self._clock(),
            })

    def start_record(
        self,
        artifact: BuildArtifact,
        environment: EnvironmentConfig,
        backup: BackupRecord,
        *,
        run_id: str = "",
        confirmed: bool = False,
    ) -> DeploymentRecord:
        """Open the DeploymentRecord for a run (outcome stays FAILED until finalized)."""
        now = self._clock()
        # started_at is strictly after the backup even on coarse clocks.
        floor = backup.backup_timestamp + timedelta(microseconds=1)
        return DeploymentRecord(
            run_id=run_id,
            environment_name=environment.name,
            artifact_name=artifact.artifact_name,
            started_at=max(now, floor),
            outcome=DeploymentOutcome.FAILED,
            backup_ref=backup.backup_id,
            confirmed=confirmed,
        )

    def apply_artifact(
        self,
        artifact: BuildArtifact,
        environment: EnvironmentConfig,
        backup: BackupRecord,
    ) -> None:
        """Verify, transfer and apply. Raises ``TransferFailed`` / ``ApplyFailed``."""
        ref = backup.backup_id
        with self.locks.hold(environment.name):
            if not verify_artifact(artifact):
                raise TransferFailed(
                    f"Artifact {artifact.artifact_name} failed its integrity check.",
                    cause="checksum mismatch or archive missing", backup_ref=ref,
                )

            logger.info("Transferring %s to %s (%s)",
                        artifact.artifact_name, environment.name, environment.path)
            try:
                staged = self.backend.transfer(artifact, environment)
            except Exception as exc:
                raise TransferFailed(
                    f"Transfer of {artifact.artifact_name} to '{environment.name}' failed.",
                    cause=str(exc), backup_ref=ref,
                ) from exc

            try:
                self.backend.apply(staged, environment)
            except Exception as exc:
                logger.error("Apply failed on %s: %s", environment.name, exc)
                raise ApplyFailed(
                    f"Applying {artifact.artifact_name} to '{environment.name}' failed.",
                    cause=str(exc), backup_ref=ref,
                ) from exc
            finally:
                self.backend.discard(staged)

        logger.info("Deployed %s to %s", artifact.artifact_name, environment.name)

    def run_post_deploy(
        self, environment: EnvironmentConfig, *, stop_on_failure: bool = False
    ) -> list[TaskResult]:
        """Run post-deploy tasks in order; a raising task counts as failed."""
        results: list[TaskResult] = []
        with self.locks.hold(environment.name):
            for task in self.post_deploy_tasks:
                try:
                    result = task.run(environment, self.task_timeout)
                except Exception as exc:
                    result = TaskResult(name=task.name, ok=False, detail=str(exc))
                results.append(result)
                if result.ok:
                    logger.info("Post-deploy %s: %s", task.name, result.detail or "ok")
                    continue
                logger.warning("Post-deploy task %s failed: %s", task.name, result.detail)
                if stop_on_failure:
                    break
        return results
