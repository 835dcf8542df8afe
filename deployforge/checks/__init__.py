"""Pluggable health checks and the standard registry."""

from __future__ import annotations

import httpx

from deployforge.checks.base import HealthCheck
from deployforge.checks.http import ConnectivityCheck
from deployforge.checks.site import (
    ConfigurationCheck,
    DatabaseCheck,
    DependenciesCheck,
    ExtensionsCheck,
    RuntimeCheck,
    WritableDirsCheck,
)
from deployforge.config import DeploySettings


def standard_checks(
    settings: DeploySettings | None = None,
    *,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, HealthCheck]:
    """Every built-in check keyed by name, in report order."""
    settings = settings or DeploySettings()
    checks: list[HealthCheck] = [
        RuntimeCheck(),
        ExtensionsCheck(settings.required_php_extensions),
        ConfigurationCheck(),
        DependenciesCheck(),
        WritableDirsCheck(),
        DatabaseCheck(),
        ConnectivityCheck(transport=transport),
    ]
    return {check.name: check for check in checks}


__all__ = [
    "ConfigurationCheck",
    "ConnectivityCheck",
    "DatabaseCheck",
    "DependenciesCheck",
    "ExtensionsCheck",
    "HealthCheck",
    "RuntimeCheck",
    "WritableDirsCheck",
    "standard_checks",
]
