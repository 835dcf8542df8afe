"""Production guard — confirmation gate and production-class constraints.

This module is the single enforcement point for "production needs an
explicit human yes". Other code should not scatter ``if production``
checks: the resolver validates configuration through
``enforce_environment_constraints`` and the Controller passes every
protected run through ``check_confirmation``.
"""

from __future__ import annotations

import hmac
import logging
from pathlib import Path

from deployforge.config import DeploySettings
from deployforge.core.errors import ConfigurationError, DeployError
from deployforge.models.environments import EnvironmentConfig

logger = logging.getLogger(__name__)

# Canonical names treated as production-class without further configuration.
PRODUCTION_CLASS_NAMES: frozenset[str] = frozenset({"production"})


class ConfirmationRejected(DeployError):
    """Raised when a protected environment is not explicitly confirmed.

    No side effects have happened when this is raised.
    """

    default_stage = "awaiting_confirmation"


def enforce_settings_constraints(settings: DeploySettings) -> None:
    """Validate settings that protect production. Raises ConfigurationError."""
    if not settings.confirmation_token.strip():
        msg = (
            "An empty confirmation token would let any input confirm a "
            "production deploy. Set DEPLOYFORGE_CONFIRMATION_TOKEN."
        )
        logger.critical(msg)
        raise ConfigurationError(msg, cause="empty confirmation_token")


def enforce_environment_constraints(environment: EnvironmentConfig) -> None:
    """Validate a resolved environment before it is handed to the pipeline.

    Constraints enforced
    --------------------
    1. Production-class environments must require confirmation.
    2. The deploy path must be absolute.
    3. Host and path must be non-empty.
    """
    violations: list[str] = []

    if environment.production_class and not environment.requires_confirmation:
        violations.append(
            f"'{environment.name}' is production-class and cannot disable "
            "requires_confirmation."
        )
    if not environment.host:
        violations.append(f"'{environment.name}' has no host configured.")
    if not environment.path:
        violations.append(f"'{environment.name}' has no deploy path configured.")
    elif not environment.path.startswith("/"):
        violations.append(
            f"'{environment.name}' deploy path must be absolute, got {environment.path!r}."
        )

    if violations:
        msg = "Environment configuration rejected.\n" + "\n".join(
            f"  - {v}" for v in violations
        )
        logger.critical(msg)
        raise ConfigurationError(msg, cause=violations[0])


def check_confirmation(
    environment: EnvironmentConfig,
    token: str | None,
    expected: str,
) -> bool:
    """Gate a run on an explicit confirmation token.

    Returns ``True`` when the environment needed confirmation and got it,
    ``False`` when no confirmation was required. Raises
    ``ConfirmationRejected`` for any other input, including ``None`` and
    the empty string.
    """
    if not environment.requires_confirmation:
        return False

    if not token or not hmac.compare_digest(token.encode(), expected.encode()):
        logger.error("Deployment to %s not confirmed.", environment.name)
        raise ConfirmationRejected(
            f"Deployment to '{environment.name}' requires confirmation; "
            f"pass the confirmation token ('{expected}') explicitly.",
            cause="missing or wrong confirmation token",
        )

    logger.info("Deployment to %s confirmed.", environment.name)
    return True


def enforce_workspace_separation(
    environment: EnvironmentConfig, settings: DeploySettings
) -> None:
    """Reject a target that contains the pipeline's own storage.

    Applying a release or restoring a whole-tree backup empties the target,
    so a backup, build or state directory inside it would be destroyed.
    Paths are compared after ``resolve()``, relative ones against the
    current working directory. Raises ConfigurationError.
    """
    target = Path(environment.path).resolve()
    storage = {
        "backup_dir": settings.backup_dir,
        "build_dir": settings.build_dir,
        "state_dir": settings.state_dir,
        "ledger_path": settings.ledger_path.parent,
    }
    inside = [
        f"{field} ({Path(path).resolve()})"
        for field, path in storage.items()
        if Path(path).resolve().is_relative_to(target)
    ]
    if inside:
        msg = (
            f"'{environment.name}' deploy path {target} contains pipeline storage: "
            + ", ".join(inside)
            + ". Move it outside the deploy path."
        )
        logger.critical(msg)
        raise ConfigurationError(msg, stage="resolving", cause="storage inside deploy path")
