"""Health check result and report models."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class OverallStatus(str, Enum):
    PASS = "pass"
    WARN_ONLY = "warn_only"
    FAIL = "fail"


def aggregate_status(statuses: Iterable[CheckStatus]) -> OverallStatus:
    """Fold check statuses into a verdict.

    ``FAIL`` if any check failed, else ``WARN_ONLY`` if any warned,
    else ``PASS``. An empty set of checks passes.
    """
    seen = set(statuses)
    if CheckStatus.FAIL in seen:
        return OverallStatus.FAIL
    if CheckStatus.WARN in seen:
        return OverallStatus.WARN_ONLY
    return OverallStatus.PASS


class CheckResult(BaseModel):
    """Result of a single health check.

    ``item_statuses`` holds one status per item a check inspected (each
    directory, each file). When empty, the check counts as one item
    with ``status``.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    status: CheckStatus
    detail: str = ""
    item_statuses: list[CheckStatus] = Field(default_factory=list)

    def count(self, status: CheckStatus) -> int:
        return (self.item_statuses or [self.status]).count(status)


class HealthReport(BaseModel):
    """Aggregate health report. Built fresh on every verification.

    ``overall`` is always the aggregate of the check statuses; it is
    derived when omitted and rejected when it disagrees.
    """

    model_config = ConfigDict(frozen=True)

    environment_name: str = ""
    checks: list[CheckResult] = Field(default_factory=list)
    overall: OverallStatus = OverallStatus.PASS

    @model_validator(mode="before")
    @classmethod
    def _derive_overall(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("overall") is None:
            checks = [
                c if isinstance(c, CheckResult) else CheckResult.model_validate(c)
                for c in data.get("checks") or []
            ]
            data = {**data, "checks": checks,
                    "overall": aggregate_status(c.status for c in checks)}
        return data

    @model_validator(mode="after")
    def _check_overall(self) -> HealthReport:
        expected = aggregate_status(c.status for c in self.checks)
        if self.overall != expected:
            raise ValueError(
                f"overall is {self.overall.value} but the checks aggregate to {expected.value}"
            )
        return self

    @classmethod
    def from_checks(
        cls, checks: list[CheckResult], environment_name: str = ""
    ) -> HealthReport:
        return cls(environment_name=environment_name, checks=checks)

    @property
    def error_count(self) -> int:
        """Failed items across every check."""
        return sum(c.count(CheckStatus.FAIL) for c in self.checks)

    @property
    def warning_count(self) -> int:
        """Warned items across every check."""
        return sum(c.count(CheckStatus.WARN) for c in self.checks)
