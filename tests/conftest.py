"""Shared test fixtures for Deployforge."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from deployforge.backends.local import LocalDirectoryBackend
from deployforge.config import DEFAULT_EXCLUDE_PATTERNS, DeploySettings
from deployforge.core.artifact_builder import ArtifactBuilder, package_tree
from deployforge.core.backup_manager import BackupManager
from deployforge.core.controller import PipelineController
from deployforge.core.deployment_executor import DeploymentExecutor
from deployforge.core.environment_resolver import EnvironmentResolver
from deployforge.core.health_verifier import HealthVerifier
from deployforge.core.locks import DeploymentLocks
from deployforge.core.run_ledger import RunLedger
from deployforge.models.artifacts import BuildArtifact, BuildStep
from deployforge.models.environments import EnvironmentConfig
from deployforge.models.health import CheckResult, CheckStatus


class StaticCheck:
    """Health check that always reports the same status."""

    def __init__(self, name: str, status: CheckStatus = CheckStatus.PASS, detail: str = "ok") -> None:
        self.name = name
        self.status = status
        self.detail = detail
        self.calls = 0

    def run(self, environment: EnvironmentConfig, timeout: float) -> CheckResult:
        self.calls += 1
        return CheckResult(name=self.name, status=self.status, detail=self.detail)


def write_tree(root: Path, files: dict[str, str]) -> Path:
    """Create ``files`` (relative path -> text) under ``root``."""
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return root


def snapshot_tree(root: Path) -> dict[str, bytes]:
    """Map every file under ``root`` to its bytes, for byte-for-byte comparison."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


SOURCE_FILES: dict[str, str] = {
    "index.php": "<?php // entry point v2\n",
    "composer.json": '{"name": "wiki/core"}\n',
    "includes/Setup.php": "<?php // setup v2\n",
    "vendor/autoload.php": "<?php // autoload\n",
    "resources/logo.svg": "<svg/>\n",
    "app.log": "debug noise\n",
    "secrets/key": "s3cr3t\n",
    "node_modules/pkg/index.js": "module.exports = 1;\n",
    "LocalSettings.php": "<?php // developer settings\n",
    "cache/l10n.cdb": "cached\n",
}

LIVE_FILES: dict[str, str] = {
    "index.php": "<?php // entry point v1\n",
    "composer.json": '{"name": "wiki/core"}\n',
    "includes/Setup.php": "<?php // setup v1\n",
    "includes/Legacy.php": "<?php // removed in v2\n",
    "vendor/autoload.php": "<?php // autoload v1\n",
    "LocalSettings.php": "<?php // live site settings\n",
    "images/a/ab/Logo.png": "PNGDATA",
}


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "df-test-run-001"


@pytest.fixture
def settings(tmp_dir: Path) -> DeploySettings:
    """Settings rooted in the temp directory, ignoring any stray .env file."""
    return DeploySettings(
        _env_file=None,
        state_dir=tmp_dir / ".deployforge",
        build_dir=tmp_dir / "build",
        backup_dir=tmp_dir / "backups",
        ledger_path=tmp_dir / ".deployforge" / "ledger.db",
        environments_file=tmp_dir / "deployforge.toml",
        health_checks=["configuration", "smoke"],
    )


@pytest.fixture
def source_tree(tmp_dir: Path) -> Path:
    """A small wiki source checkout, including files that must never ship."""
    return write_tree(tmp_dir / "src", SOURCE_FILES)


@pytest.fixture
def environ(tmp_dir: Path) -> dict[str, str]:
    """Deploy variables as the CI runner would export them."""
    return {
        "PROD_DEPLOY_HOST": "wiki.example.org",
        "PROD_DEPLOY_PATH": str(tmp_dir / "srv" / "production"),
        "STAGING_DEPLOY_HOST": "staging.wiki.example.org",
        "STAGING_DEPLOY_PATH": str(tmp_dir / "srv" / "staging"),
        "DEPLOY_USER": "www-deploy",
    }


@pytest.fixture
def resolver(environ: dict[str, str]) -> EnvironmentResolver:
    return EnvironmentResolver(environ=environ)


@pytest.fixture
def staging_env(resolver: EnvironmentResolver) -> EnvironmentConfig:
    return resolver.resolve("staging")


@pytest.fixture
def production_env(resolver: EnvironmentResolver) -> EnvironmentConfig:
    return resolver.resolve("production")


@pytest.fixture
def live_staging(staging_env: EnvironmentConfig) -> Path:
    """The currently deployed staging tree (v1)."""
    return write_tree(Path(staging_env.path), LIVE_FILES)


@pytest.fixture
def make_builder(tmp_dir: Path) -> Callable[..., ArtifactBuilder]:
    """Factory fixture: an ArtifactBuilder with a fixed clock and revision."""

    def _factory(source: Path, **overrides: Any) -> ArtifactBuilder:
        defaults: dict[str, Any] = {
            "exclude_patterns": DEFAULT_EXCLUDE_PATTERNS,
            "clock": lambda: datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc),
            "revision_provider": lambda _src: ("0123456789abcdef0123", "main"),
            "toolchain_commands": {},
        }
        defaults.update(overrides)
        output = defaults.pop("output_dir", tmp_dir / "build")
        return ArtifactBuilder(source, output, **defaults)

    return _factory


@pytest.fixture
def artifact(make_builder: Callable[..., ArtifactBuilder], source_tree: Path) -> BuildArtifact:
    """A published artifact of ``source_tree`` (package step only)."""
    built, _manifest = make_builder(source_tree).build(
        [BuildStep.required("package", package_tree)]
    )
    return built


@pytest.fixture
def backups(settings: DeploySettings) -> BackupManager:
    return BackupManager(settings.backup_dir)


@pytest.fixture
def make_controller(
    settings: DeploySettings, resolver: EnvironmentResolver
) -> Callable[..., PipelineController]:
    """Factory fixture: a controller on the local backend with stub checks.

    Keyword overrides: ``settings`` fields via ``settings_update``,
    ``backend``, ``tasks``, ``checks`` (name -> HealthCheck), or any
    PipelineController keyword.
    """

    def _factory(
        *,
        settings_update: dict[str, Any] | None = None,
        backend: Any = None,
        tasks: list[Any] | None = None,
        checks: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> PipelineController:
        cfg = settings.model_copy(update=settings_update or {})
        locks = DeploymentLocks(cfg.lock_dir)
        executor = kwargs.pop("executor", None) or DeploymentExecutor(
            backend or LocalDirectoryBackend(cfg.preserve_paths),
            post_deploy_tasks=tasks or [],
            locks=locks,
        )
        verifier = kwargs.pop("verifier", None) or HealthVerifier(
            checks if checks is not None else {
                "configuration": StaticCheck("configuration"),
                "smoke": StaticCheck("smoke"),
            },
            timeout=2.0,
        )
        return PipelineController(
            cfg,
            resolver=kwargs.pop("resolver", resolver),
            executor=executor,
            verifier=verifier,
            **kwargs,
        )

    return _factory


# ---------------------------------------------------------------------------
# Helper factories exposed as fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_check() -> Callable[..., StaticCheck]:
    """Factory fixture: ``make_check(name, status=PASS, detail="ok")``."""
    return StaticCheck


@pytest.fixture
def tree_snapshot() -> Callable[[Path], dict[str, bytes]]:
    """Function mapping every file under a root to its bytes."""
    return snapshot_tree


@pytest.fixture
def make_tree() -> Callable[[Path, dict[str, str]], Path]:
    """Function creating files (relative path -> text) under a root."""
    return write_tree
