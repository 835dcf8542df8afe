"""Tests for the RunLedger — append-only, hash-chained, deployment records."""

from __future__ import annotations

from datetime import datetime, timezone

from deployforge.core.hasher import compute_payload_hash
from deployforge.core.run_ledger import RunLedger
from deployforge.models.deployments import DeploymentOutcome, DeploymentRecord
from deployforge.models.ledger import LedgerEntry


def _record(env: str = "staging", run_id: str = "df-1", **overrides) -> DeploymentRecord:
    fields = {
        "run_id": run_id,
        "environment_name": env,
        "artifact_name": "mediawiki-20240501-120000-abc.tar.gz",
        "started_at": datetime(2024, 5, 1, 12, tzinfo=timezone.utc),
        "outcome": DeploymentOutcome.SUCCESS,
        "backup_ref": f"{env}/backup-20240501-115959-000000",
    }
    fields.update(overrides)
    return DeploymentRecord(**fields)


class TestRunLedger:
    def test_append_sets_entry_hash(self, ledger: RunLedger, run_id):
        sealed = ledger.append(LedgerEntry(
            run_id=run_id, environment_name="staging", state_transition="idle->resolving",
        ))
        assert sealed.entry_hash != ""
        assert sealed.previous_entry_hash == ""  # first entry

    def test_hash_chain_links(self, ledger: RunLedger, run_id):
        e1 = ledger.append(LedgerEntry(
            run_id=run_id, environment_name="staging", state_transition="idle->resolving",
        ))
        e2 = ledger.append(LedgerEntry(
            run_id=run_id, environment_name="staging", state_transition="resolving->backing_up",
        ))
        assert e2.previous_entry_hash == e1.entry_hash

    def test_chains_are_per_run(self, ledger: RunLedger):
        ledger.append(LedgerEntry(run_id="a", environment_name="staging", state_transition="x->y"))
        other = ledger.append(LedgerEntry(run_id="b", environment_name="staging", state_transition="x->y"))
        assert other.previous_entry_hash == ""

    def test_verify_chain_valid(self, ledger: RunLedger, run_id):
        for transition in ("idle->resolving", "resolving->backing_up", "backing_up->deploying"):
            ledger.append(LedgerEntry(
                run_id=run_id, environment_name="staging", state_transition=transition,
            ))
        assert ledger.verify_chain(run_id) is True

    def test_verify_chain_empty(self, ledger: RunLedger):
        assert ledger.verify_chain("nonexistent") is True

    def test_get_run_entries(self, ledger: RunLedger):
        ledger.append(LedgerEntry(run_id="run-1", environment_name="staging", state_transition="a->b"))
        ledger.append(LedgerEntry(run_id="run-2", environment_name="staging", state_transition="a->b"))
        entries = ledger.get_run_entries("run-1")
        assert len(entries) == 1
        assert entries[0].run_id == "run-1"

    def test_persists_across_instances(self, tmp_dir, run_id):
        path = tmp_dir / "persist.db"
        RunLedger(path).append(LedgerEntry(
            run_id=run_id, environment_name="staging", state_transition="idle->resolving",
        ))
        assert len(RunLedger(path).get_run_entries(run_id)) == 1


class TestDeploymentRecords:
    def test_record_deployment_chains_payload(self, ledger: RunLedger):
        record = _record()
        entry = ledger.record_deployment(record)
        assert entry.state_transition == "record->success"
        assert entry.payload_hash == compute_payload_hash(record.model_dump(mode="json"))
        assert ledger.verify_chain(record.run_id) is True

    def test_deployments_round_trip(self, ledger: RunLedger):
        record = _record(diagnostics=["post-deploy cache_warm failed: exit 1"])
        ledger.record_deployment(record)
        assert ledger.deployments("staging") == [record]

    def test_history_filters_by_environment(self, ledger: RunLedger):
        staging = _record("staging", "df-1")
        prod = _record("production", "df-2", confirmed=True)
        ledger.record_deployment(staging)
        ledger.record_deployment(prod)
        assert ledger.deployments("production") == [prod]
        assert [r.run_id for r in ledger.deployments()] == ["df-1", "df-2"]

    def test_latest_deployment(self, ledger: RunLedger):
        assert ledger.latest_deployment("staging") is None
        ledger.record_deployment(_record(run_id="df-1"))
        second = _record(run_id="df-2", outcome=DeploymentOutcome.ROLLED_BACK)
        ledger.record_deployment(second)
        assert ledger.latest_deployment("staging") == second

    def test_rollback_record_without_run_id_uses_deployment_id(self, ledger: RunLedger):
        record = _record(run_id="")
        entry = ledger.record_deployment(record)
        assert entry.run_id == record.deployment_id
        assert ledger.verify_chain(record.deployment_id) is True
