"""
Import Scheduler.

Runs scheduled imports unattended: a single interval job checks which
configurations are due, and each due configuration is fetched from its
source and pushed through the same pipeline as a manual execution.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import ValidationError

from ..engine.errors import (
    ScheduleNotFoundError,
    ScheduleStoreError,
    ScheduleValidationError,
    SourceFetchError,
    SourceTimeoutError,
)
from ..ingestion.source_fetcher import HttpSourceFetcher, SourceFetcher
from ..models import (
    SYSTEM_ACTOR,
    CriticalError,
    CriticalErrorType,
    ExecutionResult,
    ImportRunSummary,
    ScheduledImportConfig,
    ScheduleStatus,
    utc_now,
)
from ..notifications.notifier import LoggingNotifier, Notifier
from ..service import ReconciliationService
from .schedule import compute_next_run
from .store import ScheduleStore

logger = logging.getLogger(__name__)

# Fields an operator may not set through update_schedule
SCHEDULER_OWNED_FIELDS = {"id", "last_run", "next_run", "created_at", "created_by"}


class ImportScheduler:
    """
    Scheduler for recurring imports.

    Each configuration has its own execution lock. A trigger that arrives
    while the configuration is still running is dropped, never queued.
    """

    def __init__(
        self,
        store: ScheduleStore,
        service: ReconciliationService,
        fetcher: Optional[SourceFetcher] = None,
        notifier: Optional[Notifier] = None,
        interval_seconds: int = 60,
    ):
        self.store = store
        self.service = service
        self.fetcher = fetcher or HttpSourceFetcher(service.policy)
        self.notifier = notifier or LoggingNotifier()
        self.interval_seconds = interval_seconds

        self._scheduler: Optional[BackgroundScheduler] = None
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # Configuration management

    def list_schedules(self) -> List[ScheduledImportConfig]:
        return self.store.list()

    def get_schedule(self, config_id: str) -> ScheduledImportConfig:
        return self.store.get(config_id)

    def create_schedule(self, config: ScheduledImportConfig, now: Optional[datetime] = None) -> ScheduledImportConfig:
        """Save a new configuration and compute its first run."""
        now = now or utc_now()
        config = config.model_copy(deep=True)
        config.last_run = None
        if config.enabled:
            config.status = ScheduleStatus.ACTIVE
            config.next_run = compute_next_run(config.schedule, now)
        else:
            config.status = ScheduleStatus.DISABLED
            config.next_run = None

        self.store.save(config)
        logger.info(f"Created schedule '{config.name}' ({config.id}), next run {config.next_run}")
        return config

    def update_schedule(
        self, config_id: str, changes: Dict[str, Any], now: Optional[datetime] = None
    ) -> ScheduledImportConfig:
        """
        Apply operator changes to a configuration.

        Raises:
            ScheduleNotFoundError: If the configuration does not exist
            ScheduleValidationError: If the result is not a valid configuration
        """
        now = now or utc_now()
        existing = self.store.get(config_id)

        data = existing.model_dump()
        data.update({k: v for k, v in changes.items() if k not in SCHEDULER_OWNED_FIELDS})
        try:
            updated = ScheduledImportConfig.model_validate(data)
        except ValidationError as e:
            raise ScheduleValidationError(str(e)) from e

        if not updated.enabled:
            updated.status = ScheduleStatus.DISABLED
            updated.next_run = None
        else:
            if updated.status == ScheduleStatus.DISABLED:
                updated.status = ScheduleStatus.ACTIVE
            updated.next_run = compute_next_run(updated.schedule, now)

        self.store.save(updated)
        logger.info(f"Updated schedule '{updated.name}' ({config_id}), next run {updated.next_run}")
        return updated

    def delete_schedule(self, config_id: str):
        self.store.delete(config_id)

    def toggle_enabled(self, config_id: str, now: Optional[datetime] = None) -> ScheduledImportConfig:
        """Enable a disabled configuration or disable an enabled one."""
        config = self.store.get(config_id)
        config.enabled = not config.enabled
        if config.enabled:
            config.status = ScheduleStatus.ACTIVE
            config.error_message = None
            config.next_run = compute_next_run(config.schedule, now or utc_now())
        else:
            config.status = ScheduleStatus.DISABLED
            config.next_run = None

        self.store.save(config)
        logger.info(f"Schedule '{config.name}' {'enabled' if config.enabled else 'disabled'}")
        return config

    def pause(self, config_id: str) -> ScheduledImportConfig:
        config = self.store.get(config_id)
        if not config.enabled:
            raise ScheduleValidationError(f"Schedule {config_id} is disabled")
        config.status = ScheduleStatus.PAUSED
        self.store.save(config)
        logger.info(f"Paused schedule '{config.name}'")
        return config

    def resume(self, config_id: str, now: Optional[datetime] = None) -> ScheduledImportConfig:
        """Return a paused or failed configuration to active."""
        config = self.store.get(config_id)
        if not config.enabled:
            raise ScheduleValidationError(f"Schedule {config_id} is disabled")
        config.status = ScheduleStatus.ACTIVE
        config.error_message = None
        config.next_run = compute_next_run(config.schedule, now or utc_now())
        self.store.save(config)
        logger.info(f"Resumed schedule '{config.name}', next run {config.next_run}")
        return config

    # Execution

    def execute_now(self, config_id: str) -> Optional[ImportRunSummary]:
        """
        Run a configuration immediately, outside its cadence.

        Returns:
            The run summary, or None if a run of this configuration was
            already in progress

        Raises:
            ScheduleNotFoundError: If the configuration does not exist
            ScheduleValidationError: If the configuration is disabled
        """
        config = self.store.get(config_id)
        if not config.enabled:
            raise ScheduleValidationError(f"Schedule '{config.name}' is disabled")
        return self.run_config(config_id)

    def due_configs(self, now: Optional[datetime] = None) -> List[ScheduledImportConfig]:
        now = now or utc_now()
        return [
            config
            for config in self.store.list()
            if config.runnable and config.next_run is not None and config.next_run <= now
        ]

    def run_due(self, now: Optional[datetime] = None) -> List[str]:
        """
        Trigger every configuration whose next run has arrived.

        With the background scheduler running each run becomes its own job;
        otherwise the runs happen inline, one after another.

        Returns:
            IDs of the configurations triggered
        """
        triggered = []
        for config in self.due_configs(now):
            logger.info(f"Schedule '{config.name}' is due (next run {config.next_run})")
            if self.running:
                self._scheduler.add_job(
                    self.run_config,
                    args=[config.id],
                    name=f"Scheduled import {config.name}",
                )
            else:
                self.run_config(config.id)
            triggered.append(config.id)
        return triggered

    def _lock_for(self, config_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(config_id, threading.Lock())

    def is_running(self, config_id: str) -> bool:
        return self._lock_for(config_id).locked()

    def run_config(self, config_id: str) -> Optional[ImportRunSummary]:
        """
        Fetch and import one configuration under its execution lock.

        Returns:
            The run summary, or None if the trigger was dropped
        """
        lock = self._lock_for(config_id)
        if not lock.acquire(blocking=False):
            logger.info(f"Schedule {config_id} is already running; trigger dropped")
            return None

        try:
            config = self.store.get(config_id)
            started_at = utc_now()
            result = self._fetch_and_execute(config)
            finished_at = utc_now()
            self._record_run(config_id, result, started_at, finished_at)

            summary = ImportRunSummary(
                config_id=config.id,
                config_name=config.name,
                started_at=started_at,
                finished_at=finished_at,
                success=result.success,
                partial_success=result.partial_success,
                created=result.created,
                updated=result.updated,
                failed=result.failed,
                message=result.message,
                audit_log_id=result.audit_log_id,
                errors=result.errors,
            )
            if config.import_options.notification_emails:
                self.notifier.send(config.import_options.notification_emails, summary)
            return summary
        finally:
            lock.release()

    def _fetch_and_execute(self, config: ScheduledImportConfig) -> ExecutionResult:
        try:
            raw = self.fetcher.fetch(config.source)
        except SourceFetchError as e:
            logger.error(f"Schedule '{config.name}' could not fetch its source: {e}")
            error_type = (
                CriticalErrorType.FETCH_TIMEOUT if isinstance(e, SourceTimeoutError) else CriticalErrorType.FETCH_FAILED
            )
            return ExecutionResult.refused(
                f"Source fetch failed: {e}",
                CriticalError(error_type=error_type, error_message=str(e)),
            )

        actor = SYSTEM_ACTOR.model_copy(update={"user_name": f"Scheduled Import: {config.name}"})
        return self.service.execute(
            raw,
            options=config.import_options,
            actor=actor,
            file_name=f"scheduled:{config.name}",
        )

    def _record_run(self, config_id: str, result: ExecutionResult, started_at: datetime, finished_at: datetime):
        """Persist run bookkeeping onto the latest stored copy of the configuration."""
        try:
            config = self.store.get(config_id)
        except ScheduleNotFoundError:
            logger.warning(f"Schedule {config_id} was deleted during its run")
            return

        succeeded = result.success or result.partial_success
        config.last_run = started_at
        config.next_run = compute_next_run(config.schedule, finished_at) if config.enabled else None
        if config.enabled and config.status != ScheduleStatus.PAUSED:
            config.status = ScheduleStatus.ACTIVE if succeeded else ScheduleStatus.ERROR
        config.error_message = None if succeeded else result.message

        try:
            self.store.save(config)
        except ScheduleStoreError as e:
            logger.error(f"Schedule '{config.name}' finished but its run state was not saved: {e}")
            return
        logger.info(
            f"Schedule '{config.name}' finished: {result.message}; next run {config.next_run}"
        )

    # Background timer

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self):
        """Start the background timer that checks for due configurations."""
        if self.running:
            logger.warning("Import scheduler already running")
            return

        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.run_due,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="check_due_imports",
            name="Check due scheduled imports",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Import scheduler started, checking every {self.interval_seconds}s")

    def stop(self, wait: bool = True):
        if self._scheduler:
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None
            logger.info("Import scheduler stopped")
