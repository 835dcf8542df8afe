"""Filesystem and runtime checks of a deployed wiki tree.

All paths are relative to ``environment.path``. The PHP checks shell out
through ``run_command`` with the verifier's timeout.
"""

from __future__ import annotations

import os
from collections.abc import Sequence
from pathlib import Path

from deployforge.core.commands import command_exists, run_command
from deployforge.models.environments import EnvironmentConfig
from deployforge.models.health import CheckResult, CheckStatus, aggregate_status

_PHP = "php"


def _result(
    name: str, status: CheckStatus, detail: str, items: Sequence[CheckStatus] = ()
) -> CheckResult:
    return CheckResult(name=name, status=status, detail=detail, item_statuses=list(items))


class RuntimeCheck:
    """The PHP interpreter is installed and reports a version."""

    name = "runtime"

    def run(self, environment: EnvironmentConfig, timeout: float) -> CheckResult:
        if not command_exists(_PHP):
            return _result(self.name, CheckStatus.FAIL, "PHP not found")
        result = run_command([_PHP, "-r", "echo PHP_VERSION;"], timeout=timeout)
        if not result.ok:
            return _result(self.name, CheckStatus.FAIL, result.detail)
        return _result(self.name, CheckStatus.PASS, f"PHP version: {result.stdout.strip()}")


class ExtensionsCheck:
    """Every required PHP extension is loaded (``php -m``)."""

    name = "extensions"

    def __init__(self, required: Sequence[str]) -> None:
        self.required = list(required)

    def run(self, environment: EnvironmentConfig, timeout: float) -> CheckResult:
        if not command_exists(_PHP):
            return _result(self.name, CheckStatus.FAIL, "PHP not found")
        result = run_command([_PHP, "-m"], timeout=timeout)
        if not result.ok:
            return _result(self.name, CheckStatus.FAIL, result.detail)
        loaded = {line.strip().lower() for line in result.stdout.splitlines()}
        missing = [ext for ext in self.required if ext.lower() not in loaded]
        statuses = [
            CheckStatus.FAIL if ext in missing else CheckStatus.PASS for ext in self.required
        ]
        if missing:
            return _result(self.name, CheckStatus.FAIL,
                           f"not loaded: {', '.join(missing)}", statuses)
        return _result(self.name, CheckStatus.PASS,
                       f"{len(self.required)} required extensions loaded")


class WritableDirsCheck:
    """Runtime directories exist and are writable. Missing ones only warn."""

    name = "writable_dirs"

    def __init__(self, directories: Sequence[str] = ("cache", "images")) -> None:
        self.directories = list(directories)

    def run(self, environment: EnvironmentConfig, timeout: float) -> CheckResult:
        root = Path(environment.path)
        statuses: list[CheckStatus] = []
        notes: list[str] = []
        for name in self.directories:
            path = root / name
            if not path.is_dir():
                statuses.append(CheckStatus.WARN)
                notes.append(f"{name} does not exist")
            elif not os.access(path, os.W_OK):
                statuses.append(CheckStatus.FAIL)
                notes.append(f"{name} is NOT writable")
            else:
                statuses.append(CheckStatus.PASS)
                notes.append(f"{name} is writable")
        return _result(self.name, _worst(statuses), "; ".join(notes), statuses)


class ConfigurationCheck:
    """Site configuration present (warn) and package manifest present (fail)."""

    name = "configuration"

    def run(self, environment: EnvironmentConfig, timeout: float) -> CheckResult:
        root = Path(environment.path)
        statuses: list[CheckStatus] = []
        notes: list[str] = []
        if (root / "LocalSettings.php").is_file():
            statuses.append(CheckStatus.PASS)
            notes.append("LocalSettings.php exists")
        else:
            statuses.append(CheckStatus.WARN)
            notes.append("LocalSettings.php not found (needs installation)")
        if (root / "composer.json").is_file():
            statuses.append(CheckStatus.PASS)
            notes.append("composer.json exists")
        else:
            statuses.append(CheckStatus.FAIL)
            notes.append("composer.json not found")
        return _result(self.name, _worst(statuses), "; ".join(notes), statuses)


class DependenciesCheck:
    """Composer dependencies installed (fail), Node dependencies installed (warn)."""

    name = "dependencies"

    def run(self, environment: EnvironmentConfig, timeout: float) -> CheckResult:
        root = Path(environment.path)
        statuses: list[CheckStatus] = []
        notes: list[str] = []
        if (root / "vendor").is_dir():
            statuses.append(CheckStatus.PASS)
            notes.append("Composer dependencies installed")
        else:
            statuses.append(CheckStatus.FAIL)
            notes.append("Composer dependencies NOT installed")
        if (root / "node_modules").is_dir():
            statuses.append(CheckStatus.PASS)
            notes.append("Node.js dependencies installed")
        else:
            statuses.append(CheckStatus.WARN)
            notes.append("Node.js dependencies NOT installed")
        return _result(self.name, _worst(statuses), "; ".join(notes), statuses)


class DatabaseCheck:
    """The data store answers a maintenance query. Never worse than a warning."""

    name = "database"

    def run(self, environment: EnvironmentConfig, timeout: float) -> CheckResult:
        root = Path(environment.path)
        if not (root / "LocalSettings.php").is_file():
            return _result(self.name, CheckStatus.WARN, "skipped (not installed)")
        if not command_exists(_PHP):
            return _result(self.name, CheckStatus.WARN, "skipped (PHP not found)")
        result = run_command([_PHP, "maintenance/run.php", "showJobs"], cwd=root, timeout=timeout)
        if not result.ok:
            return _result(self.name, CheckStatus.WARN,
                           f"could not verify database connection ({result.detail})")
        return _result(self.name, CheckStatus.PASS, "database connection successful")


def _worst(statuses: Sequence[CheckStatus]) -> CheckStatus:
    overall = aggregate_status(statuses)
    return {"pass": CheckStatus.PASS, "warn_only": CheckStatus.WARN}.get(
        overall.value, CheckStatus.FAIL
    )
