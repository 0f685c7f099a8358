"""
Tests for the Audit Ledger: history, rollback and statistics.
"""

from datetime import timedelta

import pytest

from recon_engine.audit.ledger import AuditLedger
from recon_engine.engine.directory import public_fields
from recon_engine.engine.errors import AuditWriteError
from recon_engine.models import (
    AuditLogEntry,
    AuditOperation,
    PreviewDetails,
    UpsertOptions,
    utc_now,
)


def directory_state(directory):
    return {r.get("employee_id"): public_fields(r) for r in directory.snapshot()}


class TestLedgerStorage:
    """Test cases for appending and reading entries."""

    def make_entry(self, **kwargs):
        details = PreviewDetails(
            file_name="users.csv", total_rows=1, valid_rows=1, invalid_rows=0, create_count=1, update_count=0
        )
        return AuditLogEntry(operation=AuditOperation.PREVIEW, user_id="u1", user_name="User", details=details, **kwargs)

    def test_entries_survive_a_new_ledger_instance(self, tmp_path, policy):
        entry = self.make_entry()
        AuditLedger(tmp_path, policy).record(entry)

        reloaded = AuditLedger(tmp_path, policy).get_entry(entry.id)

        assert reloaded == entry

    def test_entries_are_newest_first(self, ledger):
        first, second = self.make_entry(), self.make_entry()
        ledger.record(first)
        ledger.record(second)

        assert [e.id for e in ledger.get_entries(operations=None)] == [second.id, first.id]

    def test_unreadable_lines_are_skipped(self, ledger):
        entry = self.make_entry()
        ledger.record(entry)
        log_file = next(ledger.audit_dir.glob("audit_*.jsonl"))
        with open(log_file, "a", encoding="utf-8") as f:
            f.write("{not json}\n")

        assert [e.id for e in ledger.get_entries(operations=None)] == [entry.id]

    def test_write_failure_raises(self, ledger, tmp_path):
        ledger.audit_dir = tmp_path / "missing" / "deeper"

        with pytest.raises(AuditWriteError):
            ledger.record(self.make_entry())

    def test_history_limit(self, service, actor):
        for i in range(3):
            service.execute(f"employee_id,name,email,role\nE{i},U,u{i}@example.com,employee\n", UpsertOptions(), actor)

        assert len(service.get_history(limit=2)) == 2
        assert len(service.get_history(limit=0)) == 3


class TestRollback:
    """Test cases for rolling back executions."""

    def test_round_trip_restores_directory(self, service, directory, sample_csv, actor):
        before = directory_state(directory)
        result = service.execute(sample_csv, UpsertOptions(), actor)
        assert directory_state(directory) != before

        rollback = service.rollback(result.audit_log_id, actor)

        assert rollback.success is True
        assert rollback.rolled_back_rows == 2
        assert rollback.conflicts == []
        assert directory_state(directory) == before

    def test_rollback_removes_fields_added_by_update(self, service, ledger, directory, actor):
        before = directory_state(directory)
        data = b"employee_id,name,email,role,position\nM1,Mia Boss,mia.boss@example.com,manager,Lead\n"
        result = service.execute(data, UpsertOptions(), actor)
        change = ledger.get_entry(result.audit_log_id).details.changes[0]
        assert change.absent_keys == ["position"]
        assert "position" not in change.before

        rollback = service.rollback(result.audit_log_id, actor)

        assert rollback.success is True
        assert "position" not in directory.snapshot()[0]
        assert directory_state(directory) == before

    def test_rollback_is_recorded_in_history(self, service, sample_csv, actor):
        result = service.execute(sample_csv, UpsertOptions(), actor)

        rollback = service.rollback(result.audit_log_id, actor)

        history = service.get_history()
        assert [e.operation for e in history] == [AuditOperation.ROLLBACK, AuditOperation.EXECUTE]
        assert history[0].id == rollback.audit_log_id
        assert history[0].details.original_entry_id == result.audit_log_id
        assert history[0].can_rollback is False

    def test_rollback_only_once(self, service, sample_csv, actor):
        result = service.execute(sample_csv, UpsertOptions(), actor)
        service.rollback(result.audit_log_id, actor)

        again = service.rollback(result.audit_log_id, actor)

        assert again.success is False
        assert again.error == "This import has already been rolled back"

    def test_rollback_window(self, service, ledger, directory, sample_csv, actor):
        result = service.execute(sample_csv, UpsertOptions(), actor)

        late = ledger.rollback(result.audit_log_id, actor, directory, now=utc_now() + timedelta(hours=25))

        assert late.success is False
        assert late.error == "Rollback is only available within 24 hours of the import"

    def test_unknown_entry(self, service, actor):
        result = service.rollback("does-not-exist", actor)

        assert result.error == "Audit entry does-not-exist not found"

    def test_rollback_entries_cannot_be_rolled_back(self, service, sample_csv, actor):
        result = service.execute(sample_csv, UpsertOptions(), actor)
        rollback = service.rollback(result.audit_log_id, actor)

        again = service.rollback(rollback.audit_log_id, actor)

        assert again.error == "Only import executions can be rolled back"

    def test_entry_without_changes_cannot_be_rolled_back(self, service, actor):
        result = service.execute(
            b"employee_id,name,email,role,department\nM1,Mia Boss,mia.boss@example.com,manager,Operations\n",
            UpsertOptions(),
            actor,
        )

        assert service.rollback(result.audit_log_id, actor).error == "This operation cannot be rolled back"

    def test_intervening_change_is_a_conflict(self, service, directory, sample_csv, actor):
        result = service.execute(sample_csv, UpsertOptions(), actor)
        manager = next(r for r in directory.snapshot() if r.get("employee_id") == "M1")
        directory.update(manager["id"], {"department": "Legal"})

        rollback = service.rollback(result.audit_log_id, actor)

        assert rollback.rolled_back_rows == 1
        assert [c.reason for c in rollback.conflicts] == ["user was modified after the import"]
        state = directory_state(directory)
        assert state["M1"]["department"] == "Legal"
        assert "E100" not in state

    def test_deleted_user_is_a_conflict(self, service, directory, sample_csv, actor):
        result = service.execute(sample_csv, UpsertOptions(), actor)
        created = next(r for r in directory.snapshot() if r.get("employee_id") == "E100")
        directory.delete(created["id"])

        rollback = service.rollback(result.audit_log_id, actor)

        assert [c.reason for c in rollback.conflicts] == ["user no longer exists"]


class TestStatistics:
    """Test cases for import statistics."""

    def test_empty_ledger(self, service):
        stats = service.statistics()

        assert stats.total_imports == 0
        assert stats.average_execution_time_ms == 0

    def test_totals(self, service, sample_csv, actor):
        service.execute(sample_csv, UpsertOptions(), actor, file_name="first.csv")
        service.execute(b"employee_id,name,email,role\nE9,Zed,zed@example.com,employee\n", UpsertOptions(), actor)

        stats = service.statistics()

        assert stats.total_imports == 2
        assert stats.total_rows_processed == 4
        assert stats.total_created == 2
        assert stats.total_updated == 1
        assert stats.total_failures == 1
        assert stats.largest_import_file == "first.csv"
        assert stats.last_24_hours == 2
