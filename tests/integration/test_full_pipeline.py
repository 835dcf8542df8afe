"""End-to-end integration tests — build, deploy, verify, roll back.

These tests exercise the ArtifactBuilder, EnvironmentResolver, BackupManager,
DeploymentExecutor, HealthVerifier, RunLedger and PipelineController working
together on real directories, with the built-in post-deploy tasks and
filesystem health checks.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from deployforge.backends.local import LocalDirectoryBackend
from deployforge.core.artifact_builder import package_tree
from deployforge.core.controller import PipelineController
from deployforge.core.deployment_executor import ClearCacheTask, CommandTask
from deployforge.models.artifacts import BuildStep, StepOutcome
from deployforge.models.deployments import DeploymentOutcome
from deployforge.models.health import CheckStatus, OverallStatus
from deployforge.models.pipeline import PipelineState


class ExplodingBackend(LocalDirectoryBackend):
    """Applies half of the release, then fails."""

    def apply(self, staged, environment):
        target = Path(environment.path)
        (target / "index.php").write_text("<?php // partial\n", encoding="utf-8")
        (target / "includes" / "Legacy.php").unlink()
        raise OSError("connection reset during apply")


class TestFullPipeline:
    """Build an artifact and push it through the whole pipeline."""

    @pytest.fixture
    def controller(self, settings, resolver) -> PipelineController:
        cfg = settings.model_copy(
            update={"health_checks": ["configuration", "dependencies", "writable_dirs"]}
        )
        return PipelineController(cfg, resolver=resolver)

    @pytest.fixture
    def built(self, make_builder, source_tree):
        steps = [
            BuildStep.required("install_dependencies", lambda ctx: StepOutcome(ok=True)),
            BuildStep.best_effort(
                "build_docs", lambda ctx: StepOutcome(ok=False, detail="npm not found")
            ),
            BuildStep.required("package", package_tree),
        ]
        return make_builder(source_tree).build(steps)

    def test_build_then_deploy_staging(self, controller, built, live_staging):
        artifact, manifest = built
        assert manifest.warnings == ["build_docs: npm not found"]

        result = controller.deploy(artifact, "staging")
        assert result.state == PipelineState.COMPLETED
        assert result.deployment.health == OverallStatus.WARN_ONLY
        assert [t.name for t in result.deployment.post_deploy] == [
            "schema_update", "cache_invalidation", "cache_warm",
        ]
        assert all(t.ok for t in result.deployment.post_deploy)

        assert (live_staging / "index.php").read_text(encoding="utf-8") == "<?php // entry point v2\n"
        assert (live_staging / "LocalSettings.php").read_text(encoding="utf-8") == "<?php // live site settings\n"
        assert not (live_staging / "app.log").exists()
        assert not (live_staging / "secrets").exists()
        assert not (live_staging / "includes" / "Legacy.php").exists()

    def test_backup_precedes_deployment(self, controller, built, live_staging):
        result = controller.deploy(built[0], "staging")
        assert result.backup.backup_timestamp < result.deployment.started_at
        assert result.deployment.backup_ref == result.backup.backup_id

    def test_every_run_is_ledgered_and_chained(self, controller, built, live_staging):
        first = controller.deploy(built[0], "staging")
        second = controller.deploy(built[0], "staging")
        history = controller.history("staging")
        assert [r.run_id for r in history] == [first.run_id, second.run_id]
        for run in (first, second):
            assert controller.ledger.verify_chain(run.run_id)

    def test_production_without_token_has_no_side_effects(
        self, controller, built, production_env, settings
    ):
        result = controller.deploy(built[0], "production")
        assert result.state == PipelineState.FAILED
        assert result.failure.error == "ConfirmationRejected"
        assert not Path(production_env.path).exists()
        assert not (settings.backup_dir / "production").exists()
        assert controller.history("production") == []

    @pytest.mark.parametrize("token", ["", "yes", "DEPLOY", " deploy", None])
    def test_production_rejects_anything_but_the_token(self, controller, built, production_env, token):
        result = controller.deploy(built[0], "production", confirmation_token=token)
        assert result.state == PipelineState.FAILED
        assert not Path(production_env.path).exists()

    def test_production_with_token(self, controller, built, production_env):
        result = controller.deploy(built[0], "production", confirmation_token="deploy")
        assert result.state == PipelineState.COMPLETED
        assert result.deployment.confirmed is True
        assert result.backup.no_prior_state is True
        assert (Path(production_env.path) / "index.php").is_file()

    def test_failed_apply_is_rolled_back_byte_for_byte(
        self, settings, resolver, built, live_staging, tree_snapshot
    ):
        before = tree_snapshot(live_staging)
        cfg = settings.model_copy(update={"health_checks": ["configuration"]})
        controller = PipelineController(cfg, resolver=resolver)
        controller.executor.backend = ExplodingBackend(cfg.preserve_paths)

        result = controller.deploy(built[0], "staging")
        assert result.state == PipelineState.ROLLED_BACK
        assert result.failure.error == "ApplyFailed"
        assert "connection reset" in result.failure.cause
        assert tree_snapshot(live_staging) == before
        assert controller.history("staging")[-1].outcome == DeploymentOutcome.ROLLED_BACK

    def test_rollback_is_idempotent(self, controller, built, live_staging, tree_snapshot):
        before = tree_snapshot(live_staging)
        controller.deploy(built[0], "staging")

        first = controller.rollback("staging")
        after_first = tree_snapshot(live_staging)
        second = controller.rollback("staging")

        assert after_first == before
        assert tree_snapshot(live_staging) == after_first
        assert first.deployment_id != second.deployment_id
        assert first.backup_ref == second.backup_ref
        outcomes = [r.outcome for r in controller.history("staging")]
        assert outcomes == [
            DeploymentOutcome.SUCCESS, DeploymentOutcome.ROLLED_BACK, DeploymentOutcome.ROLLED_BACK,
        ]

    def test_unhealthy_deploy_is_reported_not_reverted(
        self, settings, resolver, make_builder, source_tree, live_staging
    ):
        (source_tree / "vendor" / "autoload.php").unlink()
        (source_tree / "vendor").rmdir()
        artifact, _ = make_builder(source_tree).build([BuildStep.required("package", package_tree)])
        controller = PipelineController(
            settings.model_copy(update={"health_checks": ["dependencies"]}), resolver=resolver
        )

        result = controller.deploy(artifact, "staging")
        assert result.state == PipelineState.COMPLETED
        assert result.deployment.health == OverallStatus.FAIL
        assert result.health.checks[0].status == CheckStatus.FAIL
        assert not (live_staging / "vendor").exists()
        assert "deployed but unhealthy: dependencies failed" in result.deployment.diagnostics

    def test_fail_fast_post_deploy_restores(
        self, settings, resolver, built, live_staging, tree_snapshot
    ):
        before = tree_snapshot(live_staging)
        cfg = settings.model_copy(update={
            "health_checks": ["configuration"],
            "post_deploy_policy": "fail_fast",
        })
        controller = PipelineController(cfg, resolver=resolver)
        controller.executor.post_deploy_tasks = [
            CommandTask("schema_update", ["definitely-not-a-real-binary-xyz", "update"]),
            ClearCacheTask(),
        ]

        result = controller.deploy(built[0], "staging")
        assert result.state == PipelineState.ROLLED_BACK
        assert result.failure.stage == "post_deploy"
        assert "command not found" in result.failure.cause
        assert [t.name for t in result.deployment.post_deploy] == ["schema_update"]
        assert tree_snapshot(live_staging) == before

    def test_interrupt_leaves_recovery_pointer(self, controller, built, live_staging):
        class Interrupt:
            name = "cache_warm"

            def run(self, environment, timeout):
                raise KeyboardInterrupt

        controller.executor.post_deploy_tasks = [Interrupt()]
        with pytest.raises(KeyboardInterrupt):
            controller.deploy(built[0], "staging")

        record = controller.history("staging")[-1]
        assert record.outcome == DeploymentOutcome.FAILED
        assert f"manual restore required using backup {record.backup_ref}" in record.diagnostics[-1]
        assert not controller.locks.is_locked("staging")
        # The recorded backup still restores the pre-deploy tree.
        controller.rollback("staging", record.backup_ref)
        assert (live_staging / "index.php").read_text(encoding="utf-8") == "<?php // entry point v1\n"
