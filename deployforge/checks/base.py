"""Health check Protocol."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from deployforge.models.environments import EnvironmentConfig
from deployforge.models.health import CheckResult


@runtime_checkable
class HealthCheck(Protocol):
    """One independent check of a deployed environment.

    ``run`` should honour ``timeout`` for any external call it makes. It may
    raise; the Health Verifier turns an exception into a failing result.
    """

    name: str

    def run(self, environment: EnvironmentConfig, timeout: float) -> CheckResult:
        ...
