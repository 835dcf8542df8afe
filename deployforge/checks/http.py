"""HTTP liveness check."""

from __future__ import annotations

import httpx

from deployforge.models.environments import EnvironmentConfig
from deployforge.models.health import CheckResult, CheckStatus


class ConnectivityCheck:
    """GET the environment's check URL; 2xx and 3xx pass, anything else fails.

    Redirects are not followed, so a login redirect (302) counts as alive.

    Parameters
    ----------
    transport:
        Optional httpx transport, e.g. ``httpx.MockTransport`` in tests.
    """

    name = "connectivity"

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        self._transport = transport

    def run(self, environment: EnvironmentConfig, timeout: float) -> CheckResult:
        url = environment.check_url
        try:
            with httpx.Client(
                transport=self._transport, timeout=timeout, follow_redirects=False
            ) as client:
                response = client.get(url)
        except httpx.TimeoutException:
            return CheckResult(name=self.name, status=CheckStatus.FAIL,
                               detail=f"{url}: timed out after {timeout}s")
        except httpx.HTTPError as exc:
            return CheckResult(name=self.name, status=CheckStatus.FAIL,
                               detail=f"{url}: {exc.__class__.__name__}: {exc}")

        code = response.status_code
        if 200 <= code < 400:
            return CheckResult(name=self.name, status=CheckStatus.PASS,
                               detail=f"{url} answered {code}")
        return CheckResult(name=self.name, status=CheckStatus.FAIL,
                           detail=f"{url} answered {code}")
