"""External command runner shared by build steps, tasks and health checks.

Every invocation carries a timeout. A command that exceeds it is reported
as a distinct "timed out" result instead of hanging the pipeline.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class CommandResult(BaseModel):
    """Exit status and captured output of one external command."""

    model_config = ConfigDict(frozen=True)

    argv: list[str]
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def detail(self) -> str:
        """One-line diagnostic suitable for reports."""
        cmd = " ".join(self.argv)
        if self.not_found:
            return f"{self.argv[0]}: command not found"
        if self.timed_out:
            return f"{cmd}: timed out"
        if self.ok:
            return (self.stdout.strip().splitlines() or [""])[-1]
        tail = (self.stderr.strip() or self.stdout.strip()).splitlines()
        return f"{cmd}: exit {self.returncode}" + (f": {tail[-1]}" if tail else "")


def command_exists(name: str) -> bool:
    """Whether ``name`` resolves to an executable on PATH."""
    return shutil.which(name) is not None


def run_command(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run ``argv`` and capture its output. Never raises for command failure."""
    args = list(argv)
    logger.debug("Running %s (cwd=%s, timeout=%s)", " ".join(args), cwd, timeout)
    try:
        proc = subprocess.run(
            args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        logger.warning("Command timed out after %ss: %s", timeout, " ".join(args))
        return CommandResult(
            argv=args,
            stdout=_as_text(exc.stdout),
            stderr=_as_text(exc.stderr),
            timed_out=True,
        )
    except FileNotFoundError:
        return CommandResult(argv=args, not_found=True)
    except OSError as exc:
        return CommandResult(argv=args, returncode=-1, stderr=str(exc))

    return CommandResult(
        argv=args,
        returncode=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
    )


def _as_text(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
