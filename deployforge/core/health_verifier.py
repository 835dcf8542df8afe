"""Health Verifier — run independent checks and aggregate a HealthReport.

Checks run concurrently on a thread pool. The verifier waits until every
check has finished or the timeout has passed; a check still running at
that point is reported as failed with a "timed out" detail, and a check
that raises is reported as failed with the exception text. Neither stops
the other checks. Reports are never cached: every call checks afresh.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait

from deployforge.checks.base import HealthCheck
from deployforge.core.errors import ConfigurationError, HealthCheckFailed
from deployforge.models.environments import EnvironmentConfig
from deployforge.models.health import CheckResult, CheckStatus, HealthReport, OverallStatus

logger = logging.getLogger(__name__)


class HealthVerifier:
    """Run a named set of health checks against an environment.

    Parameters
    ----------
    checks:
        Registry of available checks keyed by name. Registry order is the
        report order.
    timeout:
        Seconds to wait for the whole batch; also handed to each check.
    max_workers:
        Thread pool size. Defaults to one thread per requested check.
    """

    def __init__(
        self,
        checks: Mapping[str, HealthCheck],
        *,
        timeout: float = 10.0,
        max_workers: int | None = None,
    ) -> None:
        self.checks = dict(checks)
        self.timeout = timeout
        self.max_workers = max_workers

    @property
    def names(self) -> list[str]:
        return list(self.checks)

    def select(self, names: Sequence[str] | None = None) -> list[HealthCheck]:
        """Resolve check names, preserving registry order.

        Raises ``ConfigurationError`` for a name that is not registered.
        """
        return [self.checks[name] for name in self._resolve(names)]

    def verify(
        self,
        environment: EnvironmentConfig,
        checks: Sequence[str] | None = None,
    ) -> HealthReport:
        """Run the requested checks (all registered ones by default)."""
        selected = self._resolve(checks)
        if not selected:
            return HealthReport.from_checks([], environment.name)

        logger.info("Verifying %s: %s", environment.name, ", ".join(selected))
        pool = ThreadPoolExecutor(
            max_workers=self.max_workers or len(selected),
            thread_name_prefix="health-check",
        )
        try:
            futures: list[tuple[str, Future[CheckResult]]] = [
                (name, pool.submit(self.checks[name].run, environment, self.timeout))
                for name in selected
            ]
            wait([f for _, f in futures], timeout=self.timeout)
            results = [self._collect(name, future) for name, future in futures]
        finally:
            # Timed-out checks keep their worker thread; do not block on them.
            pool.shutdown(wait=False, cancel_futures=True)

        report = HealthReport.from_checks(results, environment.name)
        level = logging.WARNING if report.overall != OverallStatus.PASS else logging.INFO
        logger.log(level, "Health of %s: %s (errors=%d, warnings=%d)",
                   environment.name, report.overall.value,
                   report.error_count, report.warning_count)
        return report

    def _resolve(self, names: Sequence[str] | None) -> list[str]:
        if names is None:
            return list(self.checks)
        unknown = [n for n in names if n not in self.checks]
        if unknown:
            raise ConfigurationError(
                f"Unknown health check(s): {', '.join(unknown)}. "
                f"Available: {', '.join(self.checks)}",
                stage="verifying",
            )
        wanted = set(names)
        return [name for name in self.checks if name in wanted]

    def _collect(self, name: str, future: Future[CheckResult]) -> CheckResult:
        if not future.done():
            future.cancel()
            logger.warning("Health check %s timed out", name)
            return CheckResult(name=name, status=CheckStatus.FAIL,
                               detail=f"timed out after {self.timeout}s")
        exc = future.exception()
        if exc is not None:
            logger.warning("Health check %s raised: %s", name, exc)
            return CheckResult(name=name, status=CheckStatus.FAIL,
                               detail=f"check raised {exc.__class__.__name__}: {exc}")
        result = future.result()
        # Report under the registered name even if the check mislabels itself.
        if result.name != name:
            result = result.model_copy(update={"name": name})
        return result


def ensure_healthy(report: HealthReport) -> HealthReport:
    """Return ``report`` unchanged, or raise ``HealthCheckFailed`` if it failed."""
    if report.overall == OverallStatus.FAIL:
        failed = [c.name for c in report.checks if c.status == CheckStatus.FAIL]
        raise HealthCheckFailed(
            f"Environment '{report.environment_name}' is unhealthy.",
            cause=f"failing checks: {', '.join(failed)}",
        )
    return report
