"""Backup Manager — append-only snapshots of an environment's files.

Storage layout::

    {backup_root}/{environment}/backup-{YYYYmmdd-HHMMSS-ffffff}.tar.gz
    {backup_root}/{environment}/backup-{YYYYmmdd-HHMMSS-ffffff}.json

The JSON sidecar is the serialized BackupRecord. Nothing here ever
deletes a backup; pruning old ones is left to the operator.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tarfile
import tempfile
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from deployforge.core.errors import DeployError
from deployforge.core.filesystem import (
    WHOLE_TREE,
    clear_directory,
    collapse_nested,
    extract_archive,
    has_content,
    move_children,
    normalize_relative,
    remove_path,
)
from deployforge.core.hasher import hash_file
from deployforge.models.backups import BackupRecord
from deployforge.models.deployments import RELEASE_MARKER
from deployforge.models.environments import EnvironmentConfig

logger = logging.getLogger(__name__)


class SnapshotFailed(DeployError):
    """The current state could not be captured; deployment must not proceed."""

    default_stage = "backing_up"


class RestoreFailed(DeployError):
    """A backup could not be restored onto the environment."""

    default_stage = "restoring"


class BackupNotFound(RestoreFailed):
    """No backup matches the requested environment / id."""


class BackupManager:
    """Create, list and restore environment snapshots.

    Parameters
    ----------
    backup_root:
        Root of the append-only backup namespace.
    clock:
        Returns the snapshot timestamp (UTC). Injectable for tests.
    """

    def __init__(
        self,
        backup_root: Path,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backup_root = Path(backup_root)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(
        self, environment: EnvironmentConfig, paths: Sequence[str]
    ) -> BackupRecord:
        """Capture ``paths`` (relative to the environment root) into a new backup.

        When none of the paths exist the record is flagged ``no_prior_state``
        and holds an empty archive. Raises ``SnapshotFailed``.
        """
        try:
            source_paths = collapse_nested(normalize_relative(p) for p in paths) or [WHOLE_TREE]
        except ValueError as exc:
            raise SnapshotFailed(
                f"Invalid backup path for '{environment.name}'.", cause=str(exc)
            ) from exc

        target = Path(environment.path)
        env_dir = self.backup_root / environment.name
        timestamp = self._clock()
        stem = self._unique_stem(env_dir, timestamp)
        backup_id = f"{environment.name}/{stem}"
        archive = env_dir / f"{stem}.tar.gz"

        present = [p for p in source_paths if has_content(target / p)]
        try:
            env_dir.mkdir(parents=True, exist_ok=True)
            self._write_archive(target, present, archive)
            digest = hash_file(archive)
        except (OSError, tarfile.TarError) as exc:
            raise SnapshotFailed(
                f"Could not snapshot '{environment.name}' at {target}.", cause=str(exc)
            ) from exc

        record = BackupRecord(
            backup_id=backup_id,
            backup_timestamp=timestamp,
            environment_name=environment.name,
            source_paths=source_paths,
            archive_location=str(archive),
            archive_sha256=digest,
            no_prior_state=not present,
            active_artifact=_read_active_artifact(target),
        )
        try:
            archive.with_suffix("").with_suffix(".json").write_text(
                record.model_dump_json(indent=2), encoding="utf-8"
            )
        except OSError as exc:
            raise SnapshotFailed(
                f"Could not write backup record {backup_id}.", cause=str(exc)
            ) from exc

        if record.no_prior_state:
            logger.info("No prior state for %s; recorded empty backup %s",
                        environment.name, backup_id)
        else:
            logger.info("Backup created: %s (%s)", backup_id, ", ".join(present))
        return record

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, record: BackupRecord, environment: EnvironmentConfig) -> None:
        """Put every path listed in ``record`` back to its snapshotted state.

        Listed paths that did not exist at snapshot time are removed.
        Works for any historical record, not only the latest.
        """
        ref = record.backup_id
        if record.environment_name != environment.name:
            raise RestoreFailed(
                f"Backup {ref} belongs to '{record.environment_name}', "
                f"not '{environment.name}'.",
                cause="environment mismatch", backup_ref=ref,
            )

        archive = Path(record.archive_location)
        if not archive.is_file():
            raise RestoreFailed(
                f"Backup archive missing: {archive}", cause="archive not found", backup_ref=ref
            )
        if record.archive_sha256 and hash_file(archive) != record.archive_sha256:
            raise RestoreFailed(
                f"Backup archive {archive} failed its integrity check.",
                cause="checksum mismatch", backup_ref=ref,
            )

        target = Path(environment.path)
        try:
            target.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix=f".{target.name}.restore-", dir=target.parent))
            try:
                extract_archive(archive, scratch)
                for rel in collapse_nested(record.source_paths):
                    if rel == WHOLE_TREE:
                        clear_directory(target)
                        move_children(scratch, target)
                        continue
                    remove_path(target / rel)
                    staged = scratch / rel
                    if staged.exists() or staged.is_symlink():
                        (target / rel).parent.mkdir(parents=True, exist_ok=True)
                        shutil.move(str(staged), str(target / rel))
            finally:
                shutil.rmtree(scratch, ignore_errors=True)
        except (OSError, tarfile.TarError) as exc:
            raise RestoreFailed(
                f"Restore of {ref} onto {target} failed.", cause=str(exc), backup_ref=ref
            ) from exc

        logger.info("Restored %s from backup %s", environment.name, ref)

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def list_backups(self, environment_name: str) -> list[BackupRecord]:
        """All backups for an environment, oldest first."""
        env_dir = self.backup_root / environment_name
        if not env_dir.is_dir():
            return []
        records: list[BackupRecord] = []
        for sidecar in env_dir.glob("backup-*.json"):
            try:
                records.append(
                    BackupRecord.model_validate_json(sidecar.read_text(encoding="utf-8"))
                )
            except (OSError, ValidationError, json.JSONDecodeError):
                logger.warning("Skipping unreadable backup record %s", sidecar)
        return sorted(records, key=lambda r: (r.backup_timestamp, r.backup_id))

    def latest(self, environment_name: str) -> BackupRecord | None:
        """Most recent backup for an environment, or None."""
        records = self.list_backups(environment_name)
        return records[-1] if records else None

    def get(self, environment_name: str, backup_id: str) -> BackupRecord:
        """Look up a backup by full id (``env/stem``) or by stem alone."""
        for record in self.list_backups(environment_name):
            if backup_id in (record.backup_id, record.backup_id.split("/", 1)[-1]):
                return record
        raise BackupNotFound(
            f"No backup '{backup_id}' for environment '{environment_name}'.",
            cause="unknown backup id",
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _unique_stem(env_dir: Path, timestamp: datetime) -> str:
        base = f"backup-{timestamp.strftime('%Y%m%d-%H%M%S-%f')}"
        stem, n = base, 1
        while (env_dir / f"{stem}.tar.gz").exists() or (env_dir / f"{stem}.json").exists():
            stem = f"{base}-{n}"
            n += 1
        return stem

    @staticmethod
    def _write_archive(target: Path, present: Sequence[str], archive: Path) -> None:
        partial = Path(f"{archive}.partial")
        try:
            with tarfile.open(partial, "w:gz") as tar:
                for rel in present:
                    if rel == WHOLE_TREE:
                        for child in sorted(target.iterdir()):
                            tar.add(child, arcname=child.name)
                    else:
                        tar.add(target / rel, arcname=rel)
            os.replace(partial, archive)
        finally:
            partial.unlink(missing_ok=True)


def _read_active_artifact(target: Path) -> str | None:
    marker = target / RELEASE_MARKER
    try:
        return json.loads(marker.read_text(encoding="utf-8")).get("artifact_name")
    except (OSError, ValueError, AttributeError):
        return None
