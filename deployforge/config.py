"""Pipeline configuration — env-driven, one settings object per process.

Centralized config using pydantic-settings. Reads from a .env file and
DEPLOYFORGE_* environment variables. Per-environment connection details
(host, path, user) are NOT here: they are resolved by the
``EnvironmentResolver`` from the deploy variables the CI runner exports.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

# Paths never shipped inside a build artifact (tar --exclude semantics).
DEFAULT_EXCLUDE_PATTERNS: list[str] = [
    ".git*",
    ".github",
    "node_modules",
    "tests",
    "cache/*",
    "*.log",
    ".env",
    ".env.*",
    "secrets",
    "LocalSettings.php",
    "docker-compose.override.yml",
    "build",
    "backups",
    ".deployforge",
    ".phan",
    ".vscode",
    ".idea",
    "*.swp",
    "*~",
]

DEFAULT_HEALTH_CHECKS: list[str] = [
    "runtime",
    "extensions",
    "configuration",
    "dependencies",
    "writable_dirs",
    "database",
    "connectivity",
]


class DeploySettings(BaseSettings):
    """Pipeline settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export DEPLOYFORGE_LOG_LEVEL=DEBUG
        export DEPLOYFORGE_AUTO_ROLLBACK=false
        export DEPLOYFORGE_BACKUP_DIR=/srv/backups

    Or via .env file::

        DEPLOYFORGE_POST_DEPLOY_POLICY=fail_fast
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DEPLOYFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"

    # Storage paths
    state_dir: Path = Path(".deployforge")
    build_dir: Path = Path("build")
    backup_dir: Path = Path("backups")
    ledger_path: Path = Path(".deployforge/ledger.db")
    environments_file: Path = Path("deployforge.toml")

    # Environment names accepted on top of production/staging
    extra_environments: list[str] = []

    # Confirmation gate for production-class environments
    confirmation_token: str = "deploy"

    # Failure policy
    auto_rollback: bool = True
    post_deploy_policy: Literal["continue", "fail_fast"] = "continue"

    # Backup / apply scope, relative to the environment path ("." = whole tree)
    backup_paths: list[str] = ["."]
    preserve_paths: list[str] = ["LocalSettings.php", "images", "cache"]

    # Build
    artifact_prefix: str = "mediawiki"
    exclude_patterns: list[str] = list(DEFAULT_EXCLUDE_PATTERNS)
    command_timeout_seconds: float = 600.0

    # Health verification
    health_checks: list[str] = list(DEFAULT_HEALTH_CHECKS)
    health_timeout_seconds: float = 10.0
    required_php_extensions: list[str] = [
        "ctype", "dom", "fileinfo", "iconv", "intl", "json", "mbstring", "xml",
    ]

    @property
    def lock_dir(self) -> Path:
        """Directory holding per-environment deployment lock files."""
        return self.state_dir / "locks"


# Module-level singleton: import as `from deployforge.config import settings`
settings = DeploySettings()
