"""Append-only, hash-chained Run Ledger backed by SQLite.

Two tables:
- ``run_ledger``: one sealed entry per pipeline state transition, chained
  per run (each entry includes the SHA-256 of the previous one).
- ``deployments``: the finalized DeploymentRecord of every run and every
  rollback, serialized as JSON and linked to its ledger entry by hash.

Design:
- Append-only: ``append()`` and ``record_deployment()`` are the only writes.
- WAL journal mode for concurrent readers.
- entry_hash UNIQUE constraint for tamper detection.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path

from deployforge.core.hasher import compute_entry_hash, compute_payload_hash
from deployforge.models.deployments import DeploymentRecord
from deployforge.models.ledger import LedgerEntry


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS run_ledger (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id              TEXT NOT NULL UNIQUE,
    run_id                TEXT NOT NULL,
    environment_name      TEXT NOT NULL,
    state_transition      TEXT NOT NULL,
    timestamp_utc         TEXT NOT NULL,
    note                  TEXT NOT NULL DEFAULT '',
    payload_hash          TEXT NOT NULL DEFAULT '',
    previous_entry_hash   TEXT NOT NULL DEFAULT '',
    entry_hash            TEXT NOT NULL UNIQUE
);
"""

_CREATE_DEPLOYMENTS = """
CREATE TABLE IF NOT EXISTS deployments (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    deployment_id         TEXT NOT NULL UNIQUE,
    run_id                TEXT NOT NULL,
    environment_name      TEXT NOT NULL,
    outcome               TEXT NOT NULL,
    record_json           TEXT NOT NULL,
    record_hash           TEXT NOT NULL
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_run_id ON run_ledger(run_id, id);
"""

_CREATE_IDX_ENV = """
CREATE INDEX IF NOT EXISTS idx_deploy_env ON deployments(environment_name, id);
"""


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class RunLedger:
    """Append-only, hash-chained Run Ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_DEPLOYMENTS)
            conn.execute(_CREATE_IDX_RUN)
            conn.execute(_CREATE_IDX_ENV)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only writes
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry to the ledger, computing hash chain links.

        Returns the entry with `previous_entry_hash` and `entry_hash` set.
        """
        previous_hash = self._get_latest_hash(entry.run_id)

        entry_dict = entry.model_dump(mode="json")
        entry_dict["previous_entry_hash"] = previous_hash
        entry_dict["entry_hash"] = ""

        sealed = entry.model_copy(
            update={
                "previous_entry_hash": previous_hash,
                "entry_hash": compute_entry_hash(entry_dict),
            }
        )
        self._insert(sealed)
        return sealed

    def record_deployment(self, record: DeploymentRecord) -> LedgerEntry:
        """Persist a finalized DeploymentRecord and chain its hash into the run."""
        payload = record.model_dump(mode="json")
        record_hash = compute_payload_hash(payload)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO deployments
                    (deployment_id, run_id, environment_name, outcome,
                     record_json, record_hash)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.deployment_id,
                    record.run_id or record.deployment_id,
                    record.environment_name,
                    record.outcome.value,
                    record.model_dump_json(),
                    record_hash,
                ),
            )
            conn.commit()
        return self.append(
            LedgerEntry(
                run_id=record.run_id or record.deployment_id,
                environment_name=record.environment_name,
                state_transition=f"record->{record.outcome.value}",
                note=f"deployment {record.deployment_id}",
                payload_hash=record_hash,
            )
        )

    def _insert(self, entry: LedgerEntry) -> None:
        """Insert a sealed LedgerEntry into SQLite."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO run_ledger
                    (entry_id, run_id, environment_name, state_transition,
                     timestamp_utc, note, payload_hash, previous_entry_hash,
                     entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.run_id,
                    entry.environment_name,
                    entry.state_transition,
                    entry.timestamp_utc.isoformat()
                    if isinstance(entry.timestamp_utc, datetime)
                    else entry.timestamp_utc,
                    entry.note,
                    entry.payload_hash,
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, run_id: str) -> str:
        """Get the entry_hash of the most recent entry for a run."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM run_ledger WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """Return all ledger entries for a run, ordered chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM run_ledger WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def deployments(self, environment_name: str | None = None) -> list[DeploymentRecord]:
        """Finalized DeploymentRecords, oldest first, optionally for one environment."""
        with self._connect() as conn:
            if environment_name is None:
                rows = conn.execute(
                    "SELECT record_json FROM deployments ORDER BY id ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT record_json FROM deployments WHERE environment_name = ? "
                    "ORDER BY id ASC",
                    (environment_name,),
                ).fetchall()
        return [DeploymentRecord.model_validate_json(row[0]) for row in rows]

    def latest_deployment(self, environment_name: str) -> DeploymentRecord | None:
        """Most recent DeploymentRecord for an environment, or None."""
        records = self.deployments(environment_name)
        return records[-1] if records else None

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Verify the hash chain integrity for a run.

        Walks all entries in order, recomputes each entry_hash, and
        verifies that previous_entry_hash links match. Deployment records
        of the run are re-hashed against the payload hash chained for them.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        entries = self.get_run_entries(run_id)
        prev_hash = ""
        for entry in entries:
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, "
                    f"got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash

        chained = {e.payload_hash for e in entries if e.state_transition.startswith("record->")}
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT deployment_id, record_json, record_hash FROM deployments "
                "WHERE run_id = ?",
                (run_id,),
            ).fetchall()
        for deployment_id, record_json, record_hash in rows:
            record = DeploymentRecord.model_validate_json(record_json)
            actual = compute_payload_hash(record.model_dump(mode="json"))
            if actual != record_hash or record_hash not in chained:
                raise LedgerIntegrityError(
                    f"Tampered deployment record {deployment_id}: "
                    f"expected hash={record_hash!r}, got {actual!r}"
                )
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        """Convert a SQLite row tuple to a LedgerEntry."""
        (
            _id,
            entry_id,
            run_id,
            environment_name,
            state_transition,
            timestamp_utc,
            note,
            payload_hash,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            run_id=run_id,
            environment_name=environment_name,
            state_transition=state_transition,
            timestamp_utc=timestamp_utc,
            note=note,
            payload_hash=payload_hash,
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
