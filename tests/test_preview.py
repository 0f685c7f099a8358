"""
Tests for previews.
"""

from recon_engine.engine.preview import build_preview, failed_preview
from recon_engine.models import AuditOperation, UpsertOptions


class TestPreview:
    """Test cases for the preview operation."""

    def test_counts(self, service, sample_csv):
        summary = service.preview(sample_csv, file_name="users.csv")

        assert summary.success is True
        assert summary.total_rows == 3
        assert summary.create_count == 1
        assert summary.update_count == 1
        assert summary.invalid_rows == 1
        assert summary.invalid_sample[0].outcome.errors == ["name required"]

    def test_preview_is_read_only(self, service, directory, sample_csv):
        before = directory.snapshot()

        service.preview(sample_csv)

        assert directory.snapshot() == before

    def test_global_errors(self, service):
        summary = service.preview(b"", file_name="empty.csv")

        assert summary.success is False
        assert summary.global_errors == ["File is empty"]

    def test_options_change_the_verdict(self, service, sample_csv):
        summary = service.preview(sample_csv, options=UpsertOptions(update_existing=False))

        assert summary.update_count == 0
        assert summary.invalid_rows == 2

    def test_preview_with_actor_is_recorded_but_hidden(self, service, ledger, sample_csv, actor):
        service.preview(sample_csv, actor=actor)

        assert service.get_history() == []
        entries = service.get_history(include_previews=True)
        assert [e.operation for e in entries] == [AuditOperation.PREVIEW]
        assert entries[0].details.create_count == 1

    def test_sample_size(self, service):
        lines = ["employee_id,name,email,role"] + [f"E{i},U{i},u{i}@example.com,employee" for i in range(8)]
        summary = service.preview("\n".join(lines))

        assert summary.valid_rows == 8
        assert len(summary.valid_sample) == 5

    def test_failed_preview_helper(self):
        summary = failed_preview(["bad"], "x.csv")

        assert summary.success is False
        assert summary.file_name == "x.csv"
        assert build_preview([]).total_rows == 0
