"""Per-environment deployment lock.

Only one deploy (or restore) may touch an environment at a time. The lock
is held in-process and mirrored by an exclusive lock file so that a second
``deployforge`` process targeting the same environment is rejected too.
A lock file whose owning process no longer exists is treated as stale.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from deployforge.core.errors import DeployError

logger = logging.getLogger(__name__)


class DeploymentInProgress(DeployError):
    """Raised when another run already holds the environment's lock."""

    default_stage = "deploying"


class DeploymentLocks:
    """Non-blocking, re-entrant (per thread) locks keyed by environment name.

    Parameters
    ----------
    lock_dir:
        Directory for ``<environment>.lock`` files. ``None`` keeps locking
        in-process only.
    """

    def __init__(self, lock_dir: Path | None = None) -> None:
        self._lock_dir = Path(lock_dir) if lock_dir is not None else None
        self._guard = threading.Lock()
        # environment -> (owner thread ident, depth)
        self._held: dict[str, tuple[int, int]] = {}

    def is_locked(self, environment_name: str) -> bool:
        with self._guard:
            if environment_name in self._held:
                return True
        path = self._lock_path(environment_name)
        return path is not None and path.exists() and not self._is_stale(path)

    @contextmanager
    def hold(self, environment_name: str) -> Iterator[None]:
        """Hold the lock for ``environment_name`` or raise DeploymentInProgress."""
        self._acquire(environment_name)
        try:
            yield
        finally:
            self._release(environment_name)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _acquire(self, name: str) -> None:
        me = threading.get_ident()
        with self._guard:
            owner = self._held.get(name)
            if owner is not None:
                if owner[0] != me:
                    raise DeploymentInProgress(
                        f"A deployment to '{name}' is already in progress.",
                        cause="environment locked by another run",
                    )
                self._held[name] = (me, owner[1] + 1)
                return
            self._create_lock_file(name)
            self._held[name] = (me, 1)

    def _release(self, name: str) -> None:
        with self._guard:
            owner, depth = self._held[name]
            if depth > 1:
                self._held[name] = (owner, depth - 1)
                return
            del self._held[name]
            path = self._lock_path(name)
            if path is not None:
                path.unlink(missing_ok=True)

    def _lock_path(self, name: str) -> Path | None:
        if self._lock_dir is None:
            return None
        return self._lock_dir / f"{name}.lock"

    def _create_lock_file(self, name: str) -> None:
        path = self._lock_path(name)
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        for _attempt in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._is_stale(path):
                    logger.warning("Removing stale deployment lock %s", path)
                    path.unlink(missing_ok=True)
                    continue
                raise DeploymentInProgress(
                    f"A deployment to '{name}' is already in progress "
                    f"(lock file {path}).",
                    cause="lock file held by another process",
                )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"pid": os.getpid(), "acquired_at": time.time()}, fh)
            return
        raise DeploymentInProgress(
            f"Could not acquire deployment lock for '{name}'.",
            cause=f"lock file {path} reappeared",
        )

    @staticmethod
    def _is_stale(path: Path) -> bool:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            pid = int(data["pid"])
        except (OSError, ValueError, KeyError, TypeError):
            # Unreadable lock files are left alone; a human must remove them.
            return False
        if pid == os.getpid():
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False
