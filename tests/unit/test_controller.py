"""Tests for the PipelineController — stage sequencing and failure policy."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from deployforge.backends.local import LocalDirectoryBackend
from deployforge.core.backup_manager import BackupManager, BackupNotFound, RestoreFailed
from deployforge.core.errors import ConfigurationError
from deployforge.core.locks import DeploymentLocks
from deployforge.models.deployments import RELEASE_MARKER, DeploymentOutcome, TaskResult
from deployforge.models.health import CheckStatus, OverallStatus
from deployforge.models.pipeline import PipelineState


class FailingApplyBackend(LocalDirectoryBackend):
    def apply(self, staged, environment):
        (Path(environment.path) / "index.php").write_text("half-written", encoding="utf-8")
        raise OSError("disk full")


class NoRestoreBackups(BackupManager):
    def restore(self, record, environment):
        raise RestoreFailed("restore blew up", cause="io error", backup_ref=record.backup_id)


class StubTask:
    def __init__(self, name: str, ok: bool = True) -> None:
        self.name = name
        self.ok = ok
        self.runs = 0

    def run(self, environment, timeout):
        self.runs += 1
        return TaskResult(name=self.name, ok=self.ok, detail="ok" if self.ok else "exit 1")


def _states(result) -> list[str]:
    return [t.to_state.value for t in result.transitions]


class TestDeploy:
    def test_staging_happy_path(self, make_controller, artifact, live_staging):
        controller = make_controller()
        result = controller.deploy(artifact, "staging")

        assert result.state == PipelineState.COMPLETED
        assert result.succeeded and result.healthy
        assert _states(result) == [
            "resolving", "backing_up", "deploying", "post_deploy", "verifying", "completed",
        ]
        record = result.deployment
        assert record.outcome == DeploymentOutcome.SUCCESS
        assert record.health == OverallStatus.PASS
        assert record.backup_ref == result.backup.backup_id
        assert record.started_at > result.backup.backup_timestamp
        assert record.confirmed is False
        assert (live_staging / "index.php").read_text(encoding="utf-8") == "<?php // entry point v2\n"
        assert controller.history("staging") == [record]

    def test_run_ids_are_unique(self, make_controller, artifact, live_staging):
        controller = make_controller()
        first = controller.deploy(artifact, "staging")
        second = controller.deploy(artifact, "staging")
        assert first.run_id != second.run_id
        assert first.run_id.startswith("df-")

    def test_transitions_are_ledgered(self, make_controller, artifact, live_staging):
        controller = make_controller()
        result = controller.deploy(artifact, "staging")
        entries = controller.ledger.get_run_entries(result.run_id)
        assert [e.state_transition for e in entries] == [
            "idle->resolving", "resolving->backing_up", "backing_up->deploying",
            "deploying->post_deploy", "post_deploy->verifying", "record->success",
            "verifying->completed",
        ]
        assert controller.ledger.verify_chain(result.run_id)

    def test_production_requires_confirmation(
        self, make_controller, artifact, production_env
    ):
        controller = make_controller()
        result = controller.deploy(artifact, "production")
        assert result.state == PipelineState.FAILED
        assert result.failure.stage == "awaiting_confirmation"
        assert result.failure.error == "ConfirmationRejected"
        assert result.backup is None
        assert not Path(production_env.path).exists()
        assert controller.backups.list_backups("production") == []
        assert controller.history("production") == []

    def test_production_with_token(self, make_controller, artifact, production_env):
        result = make_controller().deploy(artifact, "prod", confirmation_token="deploy")
        assert result.state == PipelineState.COMPLETED
        assert result.environment_name == "production"
        assert "awaiting_confirmation" in _states(result)
        assert result.deployment.confirmed is True

    def test_unknown_environment(self, make_controller, artifact):
        result = make_controller().deploy(artifact, "qa")
        assert result.state == PipelineState.FAILED
        assert result.failure.stage == "resolving"
        assert result.failure.error == "UnknownEnvironment"

    def test_unknown_check_fails_before_side_effects(self, make_controller, artifact, live_staging, tree_snapshot):
        before = tree_snapshot(live_staging)
        controller = make_controller()
        result = controller.deploy(artifact, "staging", checks=["smoke", "nope"])
        assert result.state == PipelineState.FAILED
        assert result.failure.stage == "verifying"
        assert controller.backups.list_backups("staging") == []
        assert tree_snapshot(live_staging) == before

    def test_snapshot_failure_stops_before_deploying(self, make_controller, artifact, live_staging, tree_snapshot):
        before = tree_snapshot(live_staging)
        result = make_controller(settings_update={"backup_paths": ["../escape"]}).deploy(
            artifact, "staging"
        )
        assert result.state == PipelineState.FAILED
        assert result.failure.stage == "backing_up"
        assert "deploying" not in _states(result)
        assert tree_snapshot(live_staging) == before

    def test_locked_environment(self, make_controller, artifact, live_staging, settings):
        other = DeploymentLocks(settings.lock_dir)
        with other.hold("staging"):
            result = make_controller().deploy(artifact, "staging")
        assert result.state == PipelineState.FAILED
        assert result.failure.error == "DeploymentInProgress"

    def test_backup_store_inside_target_is_refused(
        self, make_controller, artifact, live_staging, tree_snapshot
    ):
        before = tree_snapshot(live_staging)
        controller = make_controller(settings_update={"backup_dir": live_staging / "backups"})
        result = controller.deploy(artifact, "staging")

        assert result.state == PipelineState.FAILED
        assert result.failure.error == "ConfigurationError"
        assert result.failure.stage == "resolving"
        assert result.backup is None
        assert tree_snapshot(live_staging) == before
        assert not (live_staging / "backups").exists()

        with pytest.raises(ConfigurationError):
            controller.rollback("staging")


class TestFailurePolicy:
    def test_apply_failure_rolls_back(self, make_controller, artifact, live_staging, tree_snapshot):
        before = tree_snapshot(live_staging)
        controller = make_controller(backend=FailingApplyBackend())
        result = controller.deploy(artifact, "staging")

        assert result.state == PipelineState.ROLLED_BACK
        assert result.failure.error == "ApplyFailed"
        assert result.failure.backup_ref == result.backup.backup_id
        assert result.deployment.outcome == DeploymentOutcome.ROLLED_BACK
        assert tree_snapshot(live_staging) == before

    def test_apply_failure_without_auto_rollback(self, make_controller, artifact, live_staging):
        controller = make_controller(
            backend=FailingApplyBackend(), settings_update={"auto_rollback": False}
        )
        result = controller.deploy(artifact, "staging")
        assert result.state == PipelineState.FAILED
        assert result.failure.backup_ref == result.backup.backup_id
        assert result.deployment.outcome == DeploymentOutcome.FAILED
        assert "manual restore required" in result.deployment.diagnostics[0]
        assert (live_staging / "index.php").read_text(encoding="utf-8") == "half-written"

    def test_restore_failure_reported(self, make_controller, artifact, live_staging, settings):
        controller = make_controller(
            backend=FailingApplyBackend(),
            backups=NoRestoreBackups(settings.backup_dir),
        )
        result = controller.deploy(artifact, "staging")
        assert result.state == PipelineState.FAILED
        assert result.failure.error == "RestoreFailed"
        assert result.failure.backup_ref == result.backup.backup_id
        assert controller.history("staging")[-1].outcome == DeploymentOutcome.FAILED

    def test_post_deploy_failure_continues_by_default(self, make_controller, artifact, live_staging):
        warm = StubTask("cache_warm")
        result = make_controller(tasks=[StubTask("schema_update", ok=False), warm]).deploy(
            artifact, "staging"
        )
        assert result.state == PipelineState.COMPLETED
        assert warm.runs == 1
        assert result.deployment.diagnostics == ["post-deploy schema_update failed: exit 1"]

    def test_post_deploy_fail_fast_rolls_back(self, make_controller, artifact, live_staging, tree_snapshot):
        before = tree_snapshot(live_staging)
        warm = StubTask("cache_warm")
        result = make_controller(
            tasks=[StubTask("schema_update", ok=False), warm],
            settings_update={"post_deploy_policy": "fail_fast"},
        ).deploy(artifact, "staging")
        assert result.state == PipelineState.ROLLED_BACK
        assert result.failure.stage == "post_deploy"
        assert warm.runs == 0
        assert tree_snapshot(live_staging) == before

    def test_unhealthy_deploy_still_completes(self, make_controller, make_check, artifact, live_staging):
        checks = {
            "configuration": make_check("configuration"),
            "smoke": make_check("smoke", CheckStatus.FAIL, "500 from /"),
        }
        result = make_controller(checks=checks).deploy(artifact, "staging")
        assert result.state == PipelineState.COMPLETED
        assert not result.healthy
        assert result.deployment.health == OverallStatus.FAIL
        assert result.deployment.diagnostics == ["deployed but unhealthy: smoke failed"]
        assert (live_staging / "index.php").read_text(encoding="utf-8") == "<?php // entry point v2\n"

    def test_interrupt_is_recorded_and_reraised(self, make_controller, artifact, live_staging):
        class Interrupting:
            name = "schema_update"

            def run(self, environment, timeout):
                raise KeyboardInterrupt

        controller = make_controller(tasks=[Interrupting()])
        with pytest.raises(KeyboardInterrupt):
            controller.deploy(artifact, "staging")

        record = controller.history("staging")[-1]
        assert record.outcome == DeploymentOutcome.FAILED
        assert "manual restore required using backup" in record.diagnostics[-1]
        entries = controller.ledger.get_run_entries(record.run_id)
        assert entries[-1].state_transition == "post_deploy->failed"
        assert not controller.locks.is_locked("staging")

    def test_interrupt_during_snapshot_is_recorded(self, make_controller, artifact, live_staging, monkeypatch):
        controller = make_controller()
        appended = []
        append = controller.ledger.append

        def _record(entry):
            appended.append(entry)
            return append(entry)

        def _interrupt(environment, paths):
            raise KeyboardInterrupt

        monkeypatch.setattr(controller.ledger, "append", _record)
        monkeypatch.setattr(controller.backups, "snapshot", _interrupt)
        with pytest.raises(KeyboardInterrupt):
            controller.deploy(artifact, "staging")

        entries = controller.ledger.get_run_entries(appended[0].run_id)
        assert entries[-1].state_transition == (
            f"{PipelineState.BACKING_UP.value}->{PipelineState.FAILED.value}"
        )
        assert "interrupted by KeyboardInterrupt" in entries[-1].note
        assert controller.history("staging") == []
        assert not controller.locks.is_locked("staging")


class TestRollback:
    def test_rollback_restores_previous_release(self, make_controller, artifact, live_staging, tree_snapshot):
        before = tree_snapshot(live_staging)
        controller = make_controller()
        controller.deploy(artifact, "staging")

        record = controller.rollback("staging")
        assert record.outcome == DeploymentOutcome.ROLLED_BACK
        assert record.run_id.startswith("rb-")
        assert record.artifact_name == "unknown"
        assert tree_snapshot(live_staging) == before

    def test_rollback_names_active_artifact(self, make_controller, artifact, live_staging):
        controller = make_controller()
        controller.deploy(artifact, "staging")
        controller.deploy(artifact, "staging")
        record = controller.rollback("staging")
        assert record.artifact_name == artifact.artifact_name
        marker = json.loads((live_staging / RELEASE_MARKER).read_text(encoding="utf-8"))
        assert marker["artifact_name"] == artifact.artifact_name

    def test_rollback_to_named_backup(self, make_controller, artifact, live_staging, tree_snapshot):
        before = tree_snapshot(live_staging)
        controller = make_controller()
        first = controller.deploy(artifact, "staging")
        controller.deploy(artifact, "staging")
        record = controller.rollback("staging", first.backup.backup_id)
        assert record.backup_ref == first.backup.backup_id
        assert tree_snapshot(live_staging) == before

    def test_rollback_without_backups(self, make_controller):
        with pytest.raises(BackupNotFound):
            make_controller().rollback("staging")

    def test_rollback_needs_no_confirmation(self, make_controller, artifact, production_env):
        controller = make_controller()
        controller.deploy(artifact, "production", confirmation_token="deploy")
        record = controller.rollback("production")
        assert record.environment_name == "production"


class TestVerifyAndHistory:
    def test_verify_uses_configured_checks(self, make_controller, live_staging):
        report = make_controller().verify("staging")
        assert [c.name for c in report.checks] == ["configuration", "smoke"]
        assert report.overall == OverallStatus.PASS

    def test_verify_subset(self, make_controller, live_staging):
        report = make_controller().verify("stage", ["smoke"])
        assert [c.name for c in report.checks] == ["smoke"]
        assert report.environment_name == "staging"

    def test_history_accepts_alias(self, make_controller, artifact, production_env):
        controller = make_controller()
        controller.deploy(artifact, "production", confirmation_token="deploy")
        assert len(controller.history("prod")) == 1


def test_empty_confirmation_token_rejected(make_controller):
    with pytest.raises(ConfigurationError):
        make_controller(settings_update={"confirmation_token": "  "})
