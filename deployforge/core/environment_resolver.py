"""Environment Resolver — maps a target name to an EnvironmentConfig.

Sources, highest precedence first:

1. Process environment, using the deploy variables CI already exports:
   ``PROD_DEPLOY_HOST``, ``PROD_DEPLOY_PATH``, ``STAGING_DEPLOY_HOST``,
   ``STAGING_DEPLOY_PATH``, ``DEPLOY_USER``. Custom environments use
   ``<NAME>_DEPLOY_HOST`` / ``_PATH`` / ``_USER`` / ``_URL`` and
   ``<NAME>_REQUIRES_CONFIRMATION``.
2. ``[environments.<name>]`` tables in the environments TOML file.
3. Built-in defaults (production and staging only).

Both sources are read once, when the resolver is built; ``resolve`` is a
pure lookup afterwards.
"""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from deployforge.config import DeploySettings
from deployforge.core.errors import ConfigurationError
from deployforge.core.production_guard import (
    PRODUCTION_CLASS_NAMES,
    enforce_environment_constraints,
)
from deployforge.models.environments import EnvironmentConfig

logger = logging.getLogger(__name__)

_BUILTIN_DEFAULTS: dict[str, dict[str, str]] = {
    "production": {"host": "production.example.com", "path": "/var/www/mediawiki"},
    "staging": {"host": "staging.example.com", "path": "/var/www/mediawiki"},
}

_BUILTIN_ALIASES: dict[str, str] = {
    "prod": "production",
    "stage": "staging",
}

# Variable prefix per canonical name; custom names use their upper-cased name.
_ENV_PREFIXES: dict[str, str] = {
    "production": "PROD",
    "staging": "STAGING",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class UnknownEnvironment(ConfigurationError):
    """Raised for a target name that is neither built in nor configured."""


class EnvironmentResolver:
    """Resolve deployment targets from already-loaded configuration.

    Parameters
    ----------
    environ:
        Environment variables to read. Copied at construction time.
        Defaults to ``os.environ``.
    file_environments:
        Parsed ``[environments]`` table from the TOML config file.
    extra_names:
        Additional custom environment names (e.g. from settings).
    default_user:
        User when neither ``<PREFIX>_DEPLOY_USER`` nor ``DEPLOY_USER`` is set.
    """

    def __init__(
        self,
        environ: Mapping[str, str] | None = None,
        file_environments: Mapping[str, Mapping[str, Any]] | None = None,
        extra_names: Iterable[str] = (),
        *,
        default_user: str = "deploy",
    ) -> None:
        self._environ = dict(os.environ if environ is None else environ)
        self._file: dict[str, dict[str, Any]] = {
            name.lower(): dict(table) for name, table in (file_environments or {}).items()
        }
        self._default_user = default_user

        self._aliases = dict(_BUILTIN_ALIASES)
        for name, table in self._file.items():
            for alias in table.get("aliases", []):
                self._aliases[str(alias).lower()] = name

        known = set(_BUILTIN_DEFAULTS) | set(self._file)
        known |= {n.strip().lower() for n in extra_names if n.strip()}
        self._names = frozenset(known)

    @classmethod
    def from_settings(
        cls,
        settings: DeploySettings,
        environ: Mapping[str, str] | None = None,
    ) -> EnvironmentResolver:
        """Build a resolver from settings, loading the environments file if present."""
        return cls(
            environ=environ,
            file_environments=load_environments_file(settings.environments_file),
            extra_names=settings.extra_environments,
        )

    @property
    def names(self) -> list[str]:
        """Sorted canonical names this resolver recognizes."""
        return sorted(self._names)

    def canonical_name(self, name: str) -> str:
        """Map ``name`` (any case, or an alias) to its canonical key."""
        key = name.strip().lower()
        key = self._aliases.get(key, key)
        if key not in self._names:
            raise UnknownEnvironment(
                f"Unknown environment '{name}'. Known: {', '.join(self.names)}",
                cause=f"unrecognized environment name {name!r}",
            )
        return key

    def resolve(self, name: str) -> EnvironmentConfig:
        """Return the EnvironmentConfig for ``name``.

        Raises ``UnknownEnvironment`` for unrecognized names and
        ``ConfigurationError`` when a required value is missing.
        """
        key = self.canonical_name(name)
        prefix = _ENV_PREFIXES.get(key, key.upper().replace("-", "_"))
        table = self._file.get(key, {})
        defaults = _BUILTIN_DEFAULTS.get(key, {})

        host = self._lookup(prefix, "DEPLOY_HOST", table, "host", defaults)
        path = self._lookup(prefix, "DEPLOY_PATH", table, "path", defaults)
        user = (
            self._environ.get(f"{prefix}_DEPLOY_USER")
            or table.get("user")
            or self._environ.get("DEPLOY_USER")
            or self._default_user
        )
        url = self._environ.get(f"{prefix}_DEPLOY_URL") or table.get("url")

        production_class = key in PRODUCTION_CLASS_NAMES or bool(
            table.get("production_class", False)
        )
        requires_confirmation = self._flag(
            f"{prefix}_REQUIRES_CONFIRMATION",
            table.get("requires_confirmation"),
            default=production_class,
        )

        config = EnvironmentConfig(
            name=key,
            host=str(host),
            path=str(path),
            user=str(user),
            requires_confirmation=requires_confirmation,
            production_class=production_class,
            url=str(url) if url else None,
        )
        enforce_environment_constraints(config)
        logger.debug("Resolved environment %s -> %s:%s", key, config.host, config.path)
        return config

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lookup(
        self,
        prefix: str,
        suffix: str,
        table: Mapping[str, Any],
        field: str,
        defaults: Mapping[str, str],
    ) -> str:
        var = f"{prefix}_{suffix}"
        value = self._environ.get(var) or table.get(field) or defaults.get(field)
        if not value:
            raise ConfigurationError(
                f"Missing required variable {var} (or '{field}' in the environments file).",
                cause=f"{var} not set",
            )
        return str(value)

    def _flag(self, var: str, file_value: Any, *, default: bool) -> bool:
        raw = self._environ.get(var)
        if raw is not None and raw.strip():
            value = raw.strip().lower()
            if value in _TRUE:
                return True
            if value in _FALSE:
                return False
            raise ConfigurationError(
                f"{var} must be a boolean, got {raw!r}.", cause=f"invalid {var}"
            )
        if file_value is not None:
            return bool(file_value)
        return default


def load_environments_file(path: Path) -> dict[str, dict[str, Any]]:
    """Parse the ``[environments]`` table of a TOML file. Missing file -> {}."""
    path = Path(path)
    if not path.is_file():
        return {}
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(
            f"Cannot read environments file {path}.", cause=str(exc)
        ) from exc
    environments = data.get("environments", {})
    if not isinstance(environments, dict):
        raise ConfigurationError(
            f"[environments] in {path} must be a table.", cause="invalid environments table"
        )
    return environments
