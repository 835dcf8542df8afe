"""Backup record model (append-only history per environment)."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class BackupRecord(BaseModel):
    """A captured prior state of an environment's files.

    Records are never mutated or deleted by the pipeline; a newer backup
    for the same environment supersedes an older one without removing it.
    """

    model_config = ConfigDict(frozen=True)

    backup_id: str
    backup_timestamp: datetime
    environment_name: str
    source_paths: list[str]
    archive_location: str
    archive_sha256: str = ""
    no_prior_state: bool = False
    active_artifact: str | None = None  # artifact live when the snapshot was taken
