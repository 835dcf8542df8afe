"""Deployforge: environment-aware build, deploy, verify and rollback pipeline.

  - Ordered build steps (required / best-effort) into one .tar.gz artifact
    plus a JSON manifest, with a hard exclusion contract
  - Environment resolution from deploy variables and deployforge.toml
  - Append-only backups taken before every deploy, restorable at any time
  - Pluggable deployment backends and post-deploy tasks
  - Concurrent, timeout-bounded health checks
  - Deterministic pipeline state machine recorded in a hash-chained ledger
"""

__version__ = "0.1.0"
__description__ = (
    "Environment-aware deployment pipeline with backups, rollback and health checks"
)

from deployforge.core.controller import PipelineController
from deployforge.cli.app import app as cli

__all__ = ["PipelineController", "cli", "__version__"]
