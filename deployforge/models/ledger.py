"""Run Ledger entry model (append-only, hash-chained).

The ledger is the audit trail of every deploy run:
- Append-only (no UPDATE, no DELETE)
- Hash-chained (each entry links to the previous one of the same run)
- One entry per state transition, plus one per finalized DeploymentRecord
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only Run Ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    environment_name: str
    state_transition: str  # "from_state->to_state", e.g. "idle->resolving"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    note: str = ""
    payload_hash: str = ""  # SHA-256 of the canonical payload, if any
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry
