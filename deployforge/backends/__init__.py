"""Pluggable deployment transports.

Only the Deployment Executor calls a backend. ``LocalDirectoryBackend``
ships; remote transports (rsync, scp, container rollouts) implement the
same ``DeploymentBackend`` Protocol.
"""

from deployforge.backends.base import DeploymentBackend
from deployforge.backends.local import LocalDirectoryBackend

__all__ = ["DeploymentBackend", "LocalDirectoryBackend"]
