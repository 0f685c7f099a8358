"""
Tests for scheduled imports: cadence, configuration management and runs.
"""

import json
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from recon_engine.engine.errors import (
    ScheduleNotFoundError,
    ScheduleStoreError,
    ScheduleValidationError,
    SourceFetchError,
    SourceTimeoutError,
)
from recon_engine.ingestion.source_fetcher import SourceFetcher
from recon_engine.models import (
    AuditOperation,
    ImportSource,
    Schedule,
    ScheduledImportConfig,
    ScheduleFrequency,
    ScheduleStatus,
    SourceCredentials,
    SourceType,
)
from recon_engine.notifications.notifier import Notifier
from recon_engine.scheduler.schedule import compute_next_run
from recon_engine.scheduler.scheduler import ImportScheduler
from recon_engine.scheduler.store import ScheduleStore

SOURCE_CSV = (
    b"employee_id,name,email,role\n"
    b"E1,Ann,ann@example.com,employee\n"
    b"E2,Bob,bob@example.com,employee\n"
)


class StaticFetcher(SourceFetcher):
    def __init__(self, content: bytes = SOURCE_CSV, error: Exception = None):
        self.content = content
        self.error = error
        self.calls = 0

    def fetch(self, source):
        self.calls += 1
        if self.error:
            raise self.error
        return self.content


class BlockingFetcher(SourceFetcher):
    """Holds the first fetch open until released."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def fetch(self, source):
        self.started.set()
        self.release.wait(timeout=5)
        return SOURCE_CSV


class UnwritableStore(ScheduleStore):
    """In-memory store whose saves start failing once broken."""

    broken = False

    def _save(self):
        if self.broken:
            raise ScheduleStoreError("Could not save schedules: disk full")


def make_config(**kwargs) -> ScheduledImportConfig:
    values = {
        "name": "Nightly HR feed",
        "schedule": Schedule(frequency=ScheduleFrequency.DAILY, time="02:00"),
        "source": ImportSource(type=SourceType.URL, url="https://hr.example.com/users.csv"),
    }
    values.update(kwargs)
    return ScheduledImportConfig(**values)


class TestComputeNextRun:
    """Test cases for next-run computation."""

    def test_weekly_in_local_timezone(self):
        schedule = Schedule(
            frequency=ScheduleFrequency.WEEKLY, time="09:00", timezone="America/New_York", day_of_week=1
        )
        wednesday = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)

        next_run = compute_next_run(schedule, wednesday)

        assert next_run == datetime(2024, 5, 20, 13, 0, tzinfo=timezone.utc)

    def test_daily_later_today(self):
        schedule = Schedule(frequency=ScheduleFrequency.DAILY, time="18:30")

        assert compute_next_run(schedule, datetime(2024, 5, 15, 8, 0, tzinfo=timezone.utc)) == datetime(
            2024, 5, 15, 18, 30, tzinfo=timezone.utc
        )

    def test_daily_is_strictly_after(self):
        schedule = Schedule(frequency=ScheduleFrequency.DAILY, time="08:00")

        assert compute_next_run(schedule, datetime(2024, 5, 15, 8, 0, tzinfo=timezone.utc)) == datetime(
            2024, 5, 16, 8, 0, tzinfo=timezone.utc
        )

    def test_naive_reference_is_utc(self):
        schedule = Schedule(frequency=ScheduleFrequency.DAILY, time="08:00")

        assert compute_next_run(schedule, datetime(2024, 5, 15, 7, 0)) == datetime(
            2024, 5, 15, 8, 0, tzinfo=timezone.utc
        )

    def test_monthly_clamps_to_month_end(self):
        schedule = Schedule(frequency=ScheduleFrequency.MONTHLY, time="00:00", day_of_month=31)

        next_run = compute_next_run(schedule, datetime(2024, 2, 10, tzinfo=timezone.utc))

        assert next_run == datetime(2024, 2, 29, 0, 0, tzinfo=timezone.utc)

    def test_monthly_rolls_over_year(self):
        schedule = Schedule(frequency=ScheduleFrequency.MONTHLY, time="06:00", day_of_month=1)

        next_run = compute_next_run(schedule, datetime(2024, 12, 2, tzinfo=timezone.utc))

        assert next_run == datetime(2025, 1, 1, 6, 0, tzinfo=timezone.utc)

    def test_weekly_requires_day(self):
        with pytest.raises(ValidationError):
            Schedule(frequency=ScheduleFrequency.WEEKLY, time="09:00")

    def test_invalid_time_and_timezone(self):
        with pytest.raises(ValidationError):
            Schedule(frequency=ScheduleFrequency.DAILY, time="25:00")
        with pytest.raises(ValidationError):
            Schedule(frequency=ScheduleFrequency.DAILY, timezone="Mars/Olympus")


class TestScheduleStore:
    """Test cases for schedule persistence."""

    def test_persists_secrets_for_later_runs(self, tmp_path):
        path = tmp_path / "schedules.json"
        config = make_config(
            source=ImportSource(
                type=SourceType.API,
                url="https://hr.example.com/api/users",
                credentials=SourceCredentials(api_key="s3cret"),
            )
        )
        ScheduleStore(path).save(config)

        reloaded = ScheduleStore(path).get(config.id)

        assert reloaded.source.credentials.api_key.get_secret_value() == "s3cret"

    def test_api_dump_masks_secrets(self):
        config = make_config(
            source=ImportSource(
                type=SourceType.URL,
                url="https://hr.example.com/users.csv",
                credentials=SourceCredentials(username="svc", password="s3cret"),
            )
        )

        assert "s3cret" not in json.dumps(config.model_dump(mode="json"))

    def test_invalid_entries_are_skipped(self, tmp_path):
        path = tmp_path / "schedules.json"
        good = make_config()
        ScheduleStore(path).save(good)
        data = json.loads(path.read_text())
        data["schedules"].append({"id": "broken", "name": "Broken"})
        path.write_text(json.dumps(data))

        assert [c.id for c in ScheduleStore(path).list()] == [good.id]

    def test_missing_schedule(self):
        store = ScheduleStore()

        with pytest.raises(ScheduleNotFoundError):
            store.get("nope")
        with pytest.raises(ScheduleNotFoundError):
            store.delete("nope")

    def test_write_failure_raises_and_keeps_memory_consistent(self, tmp_path):
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")
        store = ScheduleStore(blocker / "schedules.json")

        with pytest.raises(ScheduleStoreError):
            store.save(make_config())

        assert store.list() == []

    def test_failed_delete_keeps_schedule(self):
        store = UnwritableStore()
        config = store.save(make_config())
        store.broken = True

        with pytest.raises(ScheduleStoreError):
            store.delete(config.id)

        assert store.get(config.id).id == config.id


class TestImportScheduler:
    """Test cases for configuration management and runs."""

    NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)

    @pytest.fixture
    def fetcher(self):
        return StaticFetcher()

    @pytest.fixture
    def notifier(self):
        return Mock(spec=Notifier)

    @pytest.fixture
    def scheduler(self, service, fetcher, notifier):
        return ImportScheduler(ScheduleStore(), service, fetcher=fetcher, notifier=notifier)

    def test_create_computes_next_run(self, scheduler):
        config = scheduler.create_schedule(make_config(), now=self.NOW)

        assert config.status == ScheduleStatus.ACTIVE
        assert config.next_run == datetime(2024, 5, 16, 2, 0, tzinfo=timezone.utc)
        assert scheduler.get_schedule(config.id) == config

    def test_create_disabled(self, scheduler):
        config = scheduler.create_schedule(make_config(enabled=False), now=self.NOW)

        assert config.status == ScheduleStatus.DISABLED
        assert config.next_run is None

    def test_update_ignores_scheduler_owned_fields(self, scheduler):
        config = scheduler.create_schedule(make_config(), now=self.NOW)

        updated = scheduler.update_schedule(
            config.id, {"name": "Renamed", "last_run": "2020-01-01T00:00:00Z"}, now=self.NOW
        )

        assert updated.name == "Renamed"
        assert updated.last_run is None

    def test_update_rejects_invalid_configuration(self, scheduler):
        config = scheduler.create_schedule(make_config(), now=self.NOW)

        with pytest.raises(ScheduleValidationError):
            scheduler.update_schedule(config.id, {"schedule": {"frequency": "weekly"}})

    def test_toggle(self, scheduler):
        config = scheduler.create_schedule(make_config(), now=self.NOW)

        disabled = scheduler.toggle_enabled(config.id, now=self.NOW)
        assert disabled.status == ScheduleStatus.DISABLED
        assert disabled.next_run is None

        enabled = scheduler.toggle_enabled(config.id, now=self.NOW)
        assert enabled.status == ScheduleStatus.ACTIVE
        assert enabled.next_run is not None

    def test_paused_config_is_not_due(self, scheduler):
        config = scheduler.create_schedule(make_config(), now=self.NOW)
        later = self.NOW + timedelta(days=2)

        scheduler.pause(config.id)
        assert scheduler.due_configs(later) == []

        scheduler.resume(config.id, now=self.NOW)
        assert [c.id for c in scheduler.due_configs(later)] == [config.id]

    def test_pause_disabled_is_rejected(self, scheduler):
        config = scheduler.create_schedule(make_config(enabled=False), now=self.NOW)

        with pytest.raises(ScheduleValidationError):
            scheduler.pause(config.id)

    def test_execute_now_disabled_is_rejected(self, scheduler, fetcher):
        config = scheduler.create_schedule(make_config(enabled=False), now=self.NOW)

        with pytest.raises(ScheduleValidationError):
            scheduler.execute_now(config.id)
        assert fetcher.calls == 0

    def test_execute_now_runs_import(self, scheduler, service, directory):
        config = scheduler.create_schedule(make_config(), now=self.NOW)

        summary = scheduler.execute_now(config.id)

        assert summary.success is True
        assert summary.created == 2
        assert len(directory.snapshot()) == 3

        entry = service.get_history()[0]
        assert entry.id == summary.audit_log_id
        assert entry.user_id == "system"
        assert entry.user_name == "Scheduled Import: Nightly HR feed"
        assert entry.details.file_name == "scheduled:Nightly HR feed"

        stored = scheduler.get_schedule(config.id)
        assert stored.last_run == summary.started_at
        assert stored.next_run > summary.finished_at
        assert stored.status == ScheduleStatus.ACTIVE

    def test_run_due(self, scheduler, fetcher):
        due = scheduler.create_schedule(make_config(), now=self.NOW)
        scheduler.create_schedule(
            make_config(name="Monthly", schedule=Schedule(frequency=ScheduleFrequency.MONTHLY, day_of_month=1)),
            now=self.NOW,
        )

        triggered = scheduler.run_due(now=self.NOW + timedelta(days=1))

        assert triggered == [due.id]
        assert fetcher.calls == 1

    def test_fetch_failure_marks_error(self, scheduler, fetcher, service):
        fetcher.error = SourceFetchError("connection refused")
        config = scheduler.create_schedule(make_config(), now=self.NOW)

        summary = scheduler.run_config(config.id)

        assert summary.success is False
        assert summary.audit_log_id is None
        stored = scheduler.get_schedule(config.id)
        assert stored.status == ScheduleStatus.ERROR
        assert stored.error_message == "Source fetch failed: connection refused"
        assert stored.next_run is not None
        assert service.get_history() == []

    def test_timeout_is_reported(self, scheduler, fetcher):
        fetcher.error = SourceTimeoutError("timed out")
        config = scheduler.create_schedule(make_config(), now=self.NOW)

        summary = scheduler.run_config(config.id)

        assert summary.errors == ["Source fetch failed: timed out"]

    def test_success_clears_error_status(self, scheduler, fetcher):
        fetcher.error = SourceFetchError("down")
        config = scheduler.create_schedule(make_config(), now=self.NOW)
        scheduler.run_config(config.id)

        fetcher.error = None
        scheduler.run_config(config.id)

        stored = scheduler.get_schedule(config.id)
        assert stored.status == ScheduleStatus.ACTIVE
        assert stored.error_message is None

    def test_notifies_recipients(self, scheduler, notifier):
        config = make_config()
        config.import_options.notification_emails = ["it@example.com"]
        config = scheduler.create_schedule(config, now=self.NOW)

        summary = scheduler.run_config(config.id)

        notifier.send.assert_called_once_with(["it@example.com"], summary)

    def test_store_failure_after_run_still_notifies(self, service, fetcher, notifier):
        store = UnwritableStore()
        scheduler = ImportScheduler(store, service, fetcher=fetcher, notifier=notifier)
        config = make_config()
        config.import_options.notification_emails = ["it@example.com"]
        config = scheduler.create_schedule(config, now=self.NOW)
        store.broken = True

        summary = scheduler.run_config(config.id)

        assert summary.created == 2
        notifier.send.assert_called_once_with(["it@example.com"], summary)
        assert store.get(config.id).last_run is None

    def test_no_recipients_no_notification(self, scheduler, notifier):
        config = scheduler.create_schedule(make_config(), now=self.NOW)

        scheduler.run_config(config.id)

        notifier.send.assert_not_called()

    def test_concurrent_trigger_is_dropped(self, service, ledger):
        fetcher = BlockingFetcher()
        scheduler = ImportScheduler(ScheduleStore(), service, fetcher=fetcher, notifier=Mock(spec=Notifier))
        config = scheduler.create_schedule(make_config(), now=self.NOW)

        results = []
        worker = threading.Thread(target=lambda: results.append(scheduler.run_config(config.id)))
        worker.start()
        assert fetcher.started.wait(timeout=5)

        assert scheduler.is_running(config.id) is True
        assert scheduler.run_config(config.id) is None

        fetcher.release.set()
        worker.join(timeout=5)

        assert results[0].success is True
        assert len(ledger.get_entries(operations=[AuditOperation.EXECUTE])) == 1
        assert scheduler.is_running(config.id) is False

    def test_deleted_during_run(self, scheduler, fetcher):
        config = scheduler.create_schedule(make_config(), now=self.NOW)

        def fetch_and_delete(source):
            scheduler.delete_schedule(config.id)
            return SOURCE_CSV

        fetcher.fetch = fetch_and_delete

        summary = scheduler.run_config(config.id)

        assert summary.created == 2
        assert scheduler.list_schedules() == []

    def test_start_and_stop(self, scheduler):
        scheduler.start()
        try:
            assert scheduler.running is True
        finally:
            scheduler.stop(wait=False)
        assert scheduler.running is False
