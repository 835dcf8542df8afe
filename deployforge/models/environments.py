"""Deployment target configuration model."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class EnvironmentConfig(BaseModel):
    """A named deployment target, read-only for the duration of a run.

    ``name`` is the canonical, lower-case key ("production", "staging" or a
    configured custom name). ``requires_confirmation`` is derived once at
    resolution time and cannot change afterwards (the model is frozen).
    """

    model_config = ConfigDict(frozen=True)

    name: str
    host: str
    path: str
    user: str = "deploy"
    requires_confirmation: bool = False
    production_class: bool = False
    url: str | None = None

    @property
    def check_url(self) -> str:
        """URL used by the liveness check."""
        return self.url or f"http://{self.host}"
