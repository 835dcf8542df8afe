"""Deployment backend Protocol."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from deployforge.models.artifacts import BuildArtifact
from deployforge.models.environments import EnvironmentConfig


@runtime_checkable
class DeploymentBackend(Protocol):
    """Moves an artifact onto a target and switches the target over to it.

    Any exception raised by ``transfer`` is reported as a transfer failure,
    any exception raised by ``apply`` as an apply failure. Neither method
    may restore a previous state; recovery belongs to the Controller.
    """

    def transfer(self, artifact: BuildArtifact, environment: EnvironmentConfig) -> Path:
        """Stage ``artifact`` next to the target and return the staged location.

        Must leave the live target untouched.
        """
        ...

    def apply(self, staged: Path, environment: EnvironmentConfig) -> None:
        """Replace the target's deployed files with the staged content."""
        ...

    def discard(self, staged: Path) -> None:
        """Remove whatever ``transfer`` staged. Must not raise if already gone."""
        ...
