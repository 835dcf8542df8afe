"""Pipeline Controller — the central coordinator for deploy runs.

The Controller wires together the EnvironmentResolver, BackupManager,
DeploymentExecutor, HealthVerifier, RunLedger and PipelineMachine and
walks one run through::

    IDLE -> RESOLVING -> [AWAITING_CONFIRMATION] -> BACKING_UP -> DEPLOYING
         -> POST_DEPLOY -> VERIFYING -> COMPLETED | FAILED | ROLLED_BACK

It is the only component allowed to decide on a restore. Stage failures
never escape ``deploy()``: they end the run in FAILED or ROLLED_BACK and
are described by the returned ``PipelineResult``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timezone

from deployforge.backends.local import LocalDirectoryBackend
from deployforge.checks import standard_checks
from deployforge.config import DeploySettings
from deployforge.core.backup_manager import (
    BackupManager,
    BackupNotFound,
    RestoreFailed,
    SnapshotFailed,
)
from deployforge.core.deployment_executor import (
    ApplyFailed,
    DeploymentExecutor,
    TransferFailed,
)
from deployforge.core.environment_resolver import EnvironmentResolver
from deployforge.core.errors import ConfigurationError, DeployError
from deployforge.core.health_verifier import HealthVerifier
from deployforge.core.locks import DeploymentInProgress, DeploymentLocks
from deployforge.core.pipeline_machine import PipelineMachine
from deployforge.core.production_guard import (
    ConfirmationRejected,
    check_confirmation,
    enforce_settings_constraints,
    enforce_workspace_separation,
)
from deployforge.core.run_ledger import RunLedger
from deployforge.models.artifacts import BuildArtifact
from deployforge.models.deployments import DeploymentOutcome, DeploymentRecord
from deployforge.models.health import CheckStatus, HealthReport, OverallStatus
from deployforge.models.pipeline import (
    FailureInfo,
    PipelineResult,
    PipelineState,
    RunContext,
)

logger = logging.getLogger(__name__)


def _diagnostic(exc: DeployError) -> str:
    text = f"[{exc.stage}] {exc.args[0]}"
    if exc.cause and exc.cause not in text:
        text += f" (cause: {exc.cause})"
    return text


class PipelineController:
    """Central deploy pipeline coordinator.

    Every collaborator can be injected; anything not supplied is built
    from ``settings``.

    Parameters
    ----------
    settings:
        Pipeline settings. Uses ``DeploySettings()`` if not provided.
    resolver, backups, executor, verifier, ledger, locks:
        Optional pre-built components (tests, alternative backends).
    clock:
        Returns "now" (UTC) for record timestamps.
    """

    def __init__(
        self,
        settings: DeploySettings | None = None,
        *,
        resolver: EnvironmentResolver | None = None,
        backups: BackupManager | None = None,
        executor: DeploymentExecutor | None = None,
        verifier: HealthVerifier | None = None,
        ledger: RunLedger | None = None,
        locks: DeploymentLocks | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or DeploySettings()

        # Production guard: fails hard on unusable settings
        enforce_settings_constraints(self.settings)

        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.resolver = resolver or EnvironmentResolver.from_settings(self.settings)
        self.backups = backups or BackupManager(self.settings.backup_dir, clock=self._clock)

        # The executor and the controller must share one lock registry.
        if executor is None:
            self.locks = locks or DeploymentLocks(self.settings.lock_dir)
            executor = DeploymentExecutor(
                LocalDirectoryBackend(self.settings.preserve_paths),
                locks=self.locks,
                task_timeout=self.settings.command_timeout_seconds,
                clock=self._clock,
            )
        else:
            self.locks = locks or executor.locks
        self.executor = executor

        self.verifier = verifier or HealthVerifier(
            standard_checks(self.settings),
            timeout=self.settings.health_timeout_seconds,
        )
        self.ledger = ledger or RunLedger(self.settings.ledger_path)
        self.machine = PipelineMachine(self.ledger)

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def deploy(
        self,
        artifact: BuildArtifact,
        environment_name: str,
        *,
        confirmation_token: str | None = None,
        checks: Sequence[str] | None = None,
    ) -> PipelineResult:
        """Run the full pipeline for ``artifact`` against one environment.

        ``checks`` names the health checks to run after deploying; defaults
        to ``settings.health_checks``.
        """
        ts = self._clock().strftime("%Y%m%d-%H%M%S")
        run_id = f"df-{ts}-{uuid.uuid4().hex[:6]}"
        ctx = RunContext(
            run_id=run_id,
            environment_name=environment_name,
            artifact_name=artifact.artifact_name,
        )
        self.machine.start(run_id, environment_name)
        logger.info("Run %s: deploying %s to %s", run_id, artifact.artifact_name, environment_name)

        # Resolving
        self.machine.transition(run_id, PipelineState.RESOLVING)
        check_names = list(self.settings.health_checks if checks is None else checks)
        try:
            environment = self.resolver.resolve(environment_name)
            enforce_workspace_separation(environment, self.settings)
            self.verifier.select(check_names)
        except ConfigurationError as exc:
            return self._fail(ctx, exc)
        ctx = ctx.model_copy(
            update={"environment": environment, "environment_name": environment.name}
        )

        # Awaiting confirmation
        if environment.requires_confirmation:
            self.machine.transition(
                run_id, PipelineState.AWAITING_CONFIRMATION,
                note=f"{environment.name} requires confirmation",
            )
            try:
                check_confirmation(
                    environment, confirmation_token, self.settings.confirmation_token
                )
            except ConfirmationRejected as exc:
                return self._fail(ctx, exc)
            ctx = ctx.model_copy(update={"confirmed": True, "confirmed_at": self._clock()})

        try:
            with self.locks.hold(environment.name):
                return self._deploy_locked(ctx, artifact, check_names)
        except DeploymentInProgress as exc:
            return self._fail(ctx, exc)

    def _deploy_locked(
        self, ctx: RunContext, artifact: BuildArtifact, check_names: list[str]
    ) -> PipelineResult:
        run_id = ctx.run_id
        environment = ctx.environment
        assert environment is not None

        record: DeploymentRecord | None = None
        try:
            # Backing up
            self.machine.transition(run_id, PipelineState.BACKING_UP)
            try:
                backup = self.backups.snapshot(environment, self.settings.backup_paths)
            except SnapshotFailed as exc:
                return self._fail(ctx, exc)
            ctx = ctx.model_copy(update={"backup": backup})

            # Deploying
            self.machine.transition(run_id, PipelineState.DEPLOYING, note=f"backup {backup.backup_id}")
            record = self.executor.start_record(
                artifact, environment, backup, run_id=run_id, confirmed=ctx.confirmed
            )
            try:
                self.executor.apply_artifact(artifact, environment, backup)
            except (TransferFailed, ApplyFailed) as exc:
                return self._recover(ctx, record, exc)

            # Post-deploy
            self.machine.transition(run_id, PipelineState.POST_DEPLOY)
            fail_fast = self.settings.post_deploy_policy == "fail_fast"
            tasks = self.executor.run_post_deploy(environment, stop_on_failure=fail_fast)
            record = record.model_copy(
                update={"post_deploy": tasks, "outcome": DeploymentOutcome.SUCCESS}
            )
            failures = record.post_deploy_failures
            if failures and fail_fast:
                exc = DeployError(
                    f"Post-deploy task '{failures[0].name}' failed.",
                    stage=PipelineState.POST_DEPLOY.value,
                    cause=failures[0].detail,
                    backup_ref=backup.backup_id,
                )
                return self._recover(ctx, record, exc)

            # Verifying
            self.machine.transition(run_id, PipelineState.VERIFYING)
            report = self.verifier.verify(environment, check_names)
            diagnostics = [f"post-deploy {t.name} failed: {t.detail}" for t in failures]
            if report.overall == OverallStatus.FAIL:
                failing = [c.name for c in report.checks if c.status == CheckStatus.FAIL]
                diagnostics.append(f"deployed but unhealthy: {', '.join(failing)} failed")
            record = record.model_copy(update={
                "health": report.overall,
                "diagnostics": diagnostics,
                "finished_at": self._clock(),
            })
            self.ledger.record_deployment(record)
            self.machine.transition(
                run_id, PipelineState.COMPLETED, note=f"health {report.overall.value}"
            )
            if report.overall == OverallStatus.FAIL:
                logger.warning("Run %s completed but %s is unhealthy", run_id, environment.name)
            else:
                logger.info("Run %s completed: %s", run_id, report.overall.value)
            return self._result(ctx, PipelineState.COMPLETED, deployment=record, health=report)
        except BaseException as exc:
            # Cancellation (or an unexpected error) after the snapshot.
            self._abort(ctx, record, exc)
            raise

    def _recover(
        self, ctx: RunContext, record: DeploymentRecord, exc: DeployError
    ) -> PipelineResult:
        """Apply the failure policy after a deploy or post-deploy failure."""
        backup = ctx.backup
        environment = ctx.environment
        assert backup is not None and environment is not None

        if not self.settings.auto_rollback:
            failed = record.model_copy(update={
                "outcome": DeploymentOutcome.FAILED,
                "finished_at": self._clock(),
                "diagnostics": [exc.describe()],
            })
            self.ledger.record_deployment(failed)
            return self._fail(ctx, exc, deployment=failed)

        logger.warning("Restoring %s from %s after: %s",
                       environment.name, backup.backup_id, _diagnostic(exc))
        try:
            self.backups.restore(backup, environment)
        except RestoreFailed as restore_exc:
            failed = record.model_copy(update={
                "outcome": DeploymentOutcome.FAILED,
                "finished_at": self._clock(),
                "diagnostics": [_diagnostic(exc), restore_exc.describe()],
            })
            self.ledger.record_deployment(failed)
            return self._fail(ctx, restore_exc, deployment=failed)

        rolled = record.model_copy(update={
            "outcome": DeploymentOutcome.ROLLED_BACK,
            "finished_at": self._clock(),
            "diagnostics": [_diagnostic(exc), f"restored backup {backup.backup_id}"],
        })
        self.ledger.record_deployment(rolled)
        self.machine.transition(
            ctx.run_id, PipelineState.ROLLED_BACK, note=f"restored {backup.backup_id}"
        )
        return self._result(
            ctx, PipelineState.ROLLED_BACK, deployment=rolled,
            failure=FailureInfo(
                stage=exc.stage, error=type(exc).__name__,
                cause=exc.cause or str(exc), backup_ref=backup.backup_id,
            ),
        )

    def _fail(
        self,
        ctx: RunContext,
        exc: DeployError,
        *,
        deployment: DeploymentRecord | None = None,
    ) -> PipelineResult:
        backup_ref = exc.backup_ref or (ctx.backup.backup_id if ctx.backup else None)
        if exc.backup_ref is None and backup_ref is not None:
            exc.backup_ref = backup_ref
        message = exc.describe()
        logger.error("Run %s failed: %s", ctx.run_id, message)
        self.machine.transition(ctx.run_id, PipelineState.FAILED, note=message)
        return self._result(
            ctx, PipelineState.FAILED, deployment=deployment,
            failure=FailureInfo(
                stage=exc.stage, error=type(exc).__name__,
                cause=exc.cause or str(exc), backup_ref=backup_ref,
            ),
        )

    def _abort(
        self, ctx: RunContext, record: DeploymentRecord | None, exc: BaseException
    ) -> None:
        if self.machine.is_terminal(ctx.run_id):
            return
        ref = ctx.backup.backup_id if ctx.backup else None
        note = f"interrupted by {type(exc).__name__}"
        if ref:
            note += f"; manual restore required using backup {ref}"
        logger.critical("Run %s %s", ctx.run_id, note)
        if record is not None:
            self.ledger.record_deployment(record.model_copy(update={
                "outcome": DeploymentOutcome.FAILED,
                "finished_at": self._clock(),
                "diagnostics": [*record.diagnostics, note],
            }))
        self.machine.transition(ctx.run_id, PipelineState.FAILED, note=note)

    def _result(
        self,
        ctx: RunContext,
        state: PipelineState,
        *,
        deployment: DeploymentRecord | None = None,
        health: HealthReport | None = None,
        failure: FailureInfo | None = None,
    ) -> PipelineResult:
        return PipelineResult(
            run_id=ctx.run_id,
            environment_name=ctx.environment_name,
            state=state,
            transitions=self.machine.history(ctx.run_id),
            environment=ctx.environment,
            backup=ctx.backup,
            deployment=deployment,
            health=health,
            failure=failure,
        )

    # ------------------------------------------------------------------
    # Rollback / verify / history
    # ------------------------------------------------------------------

    def rollback(self, environment_name: str, backup_id: str | None = None) -> DeploymentRecord:
        """Restore the latest (or the named) backup and record the rollback.

        Raises ``ConfigurationError``, ``BackupNotFound``, ``RestoreFailed``
        or ``DeploymentInProgress``.
        """
        environment = self.resolver.resolve(environment_name)
        enforce_workspace_separation(environment, self.settings)
        with self.locks.hold(environment.name):
            if backup_id is not None:
                backup = self.backups.get(environment.name, backup_id)
            else:
                backup = self.backups.latest(environment.name)
                if backup is None:
                    raise BackupNotFound(
                        f"No backups recorded for '{environment.name}'.",
                        cause="nothing to roll back to",
                    )
            started = self._clock()
            self.backups.restore(backup, environment)
            record = DeploymentRecord(
                run_id=f"rb-{started.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}",
                environment_name=environment.name,
                artifact_name=backup.active_artifact or "unknown",
                started_at=started,
                finished_at=self._clock(),
                outcome=DeploymentOutcome.ROLLED_BACK,
                backup_ref=backup.backup_id,
                diagnostics=[f"restored backup {backup.backup_id}"],
            )
            self.ledger.record_deployment(record)
        logger.info("Rolled back %s to %s", environment.name, backup.backup_id)
        return record

    def verify(self, environment_name: str, checks: Sequence[str] | None = None) -> HealthReport:
        """Run health checks on demand; nothing is recorded."""
        environment = self.resolver.resolve(environment_name)
        names = list(self.settings.health_checks if checks is None else checks)
        return self.verifier.verify(environment, names)

    def history(self, environment_name: str) -> list[DeploymentRecord]:
        """DeploymentRecords of an environment, oldest first."""
        return self.ledger.deployments(self.resolver.canonical_name(environment_name))
