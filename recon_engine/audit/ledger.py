"""
Audit Ledger Module.

Append-only record of every import operation, with enough per-row
before/after state to reverse an execution, plus the rollback itself and
the aggregate statistics derived from the ledger.
"""

import json
import logging
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Union

from pydantic import ValidationError

from ..engine.directory import DirectoryStore
from ..engine.errors import AuditWriteError, DirectoryError, DirectoryUnavailableError
from ..engine.policy import ImportPolicy
from ..models import (
    Actor,
    AuditLogEntry,
    AuditOperation,
    ChangeType,
    ImportStatistics,
    RollbackConflict,
    RollbackDetails,
    RollbackResult,
    utc_now,
)

logger = logging.getLogger(__name__)

HISTORY_OPERATIONS = frozenset(
    {AuditOperation.EXECUTE, AuditOperation.BATCH_EXECUTE, AuditOperation.ROLLBACK}
)
EXECUTION_OPERATIONS = frozenset({AuditOperation.EXECUTE, AuditOperation.BATCH_EXECUTE})


class AuditLedger:
    """
    Durable ledger of import operations.

    Entries are appended to daily JSONL files and never rewritten. A
    failure to append raises AuditWriteError so the caller can surface it.
    """

    def __init__(self, audit_dir: Union[str, Path] = "audit_logs", policy: Optional[ImportPolicy] = None):
        """
        Initialize the audit ledger.

        Args:
            audit_dir: Directory to store ledger files
            policy: Import policy supplying the rollback window
        """
        self.audit_dir = Path(audit_dir)
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        self.policy = policy or ImportPolicy()
        self._write_lock = threading.Lock()
        self._rollback_lock = threading.Lock()

    def record(self, entry: AuditLogEntry) -> str:
        """
        Append an entry to the ledger.

        Returns:
            The entry ID

        Raises:
            AuditWriteError: If the entry could not be persisted
        """
        date_str = entry.timestamp.strftime("%Y-%m-%d")
        log_file = self.audit_dir / f"audit_{date_str}.jsonl"

        try:
            line = json.dumps(entry.model_dump(mode="json"))
            with self._write_lock, open(log_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit entry {entry.id}: {e}")
            raise AuditWriteError(f"Audit entry could not be written: {e}") from e

        logger.info(f"Recorded {entry.operation.value} audit entry {entry.id} for {entry.user_id}")
        return entry.id

    def _iter_entries(self) -> Iterable[AuditLogEntry]:
        """Yield entries newest first."""
        log_files = sorted(self.audit_dir.glob("audit_*.jsonl"), reverse=True)

        for log_file in log_files:
            try:
                with open(log_file, encoding="utf-8") as f:
                    lines = f.readlines()
            except OSError as e:
                logger.error(f"Failed to read ledger file {log_file}: {e}")
                continue

            for line in reversed(lines):
                if not line.strip():
                    continue
                try:
                    yield AuditLogEntry.model_validate_json(line)
                except ValidationError as e:
                    logger.warning(f"Skipping unreadable audit entry in {log_file}: {e}")

    def get_entries(
        self,
        limit: Optional[int] = None,
        operations: Optional[Iterable[AuditOperation]] = HISTORY_OPERATIONS,
    ) -> List[AuditLogEntry]:
        """
        Retrieve ledger entries, newest first.

        Args:
            limit: Maximum number of entries (policy default when None, all when 0)
            operations: Operations to include; None includes previews as well

        Returns:
            List of matching AuditLogEntry objects
        """
        if limit is None:
            limit = self.policy.history_limit
        wanted = set(operations) if operations is not None else None

        results = []
        for entry in self._iter_entries():
            if wanted is not None and entry.operation not in wanted:
                continue
            results.append(entry)
            if limit and len(results) >= limit:
                break
        return results

    def get_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        for entry in self._iter_entries():
            if entry.id == entry_id:
                return entry
        return None

    def find_rollback_of(self, entry_id: str) -> Optional[AuditLogEntry]:
        for entry in self._iter_entries():
            if (
                entry.operation == AuditOperation.ROLLBACK
                and entry.details.original_entry_id == entry_id
            ):
                return entry
        return None

    def rollback(
        self,
        entry_id: str,
        actor: Actor,
        directory: DirectoryStore,
        now: Optional[datetime] = None,
    ) -> RollbackResult:
        """
        Reverse a completed execution.

        Created rows are deleted and updated rows restored to their previous
        values. A row whose current state no longer matches what the
        execution left behind is a conflict: it is skipped and reported.

        Args:
            entry_id: ID of the execute/batch_execute entry to reverse
            actor: Operator performing the rollback
            directory: Directory store to apply the reversal to
            now: Reference time for the rollback window (defaults to now)

        Returns:
            RollbackResult with per-row conflicts
        """
        now = now or utc_now()

        with self._rollback_lock:
            entry = self.get_entry(entry_id)
            if entry is None:
                return RollbackResult(success=False, error=f"Audit entry {entry_id} not found")
            if entry.operation not in EXECUTION_OPERATIONS:
                return RollbackResult(success=False, error="Only import executions can be rolled back")
            if not entry.can_rollback:
                return RollbackResult(success=False, error="This operation cannot be rolled back")

            window = timedelta(hours=self.policy.rollback_window_hours)
            if now - entry.timestamp > window:
                return RollbackResult(
                    success=False,
                    error=f"Rollback is only available within {self.policy.rollback_window_hours:g} hours of the import",
                )
            if self.find_rollback_of(entry_id) is not None:
                return RollbackResult(success=False, error="This import has already been rolled back")

            return self._apply_rollback(entry, actor, directory)

    def _apply_rollback(
        self, entry: AuditLogEntry, actor: Actor, directory: DirectoryStore
    ) -> RollbackResult:
        started = time.monotonic()
        conflicts: List[RollbackConflict] = []
        rolled_back = 0
        error = None
        changes = list(reversed(entry.details.changes))

        for position, change in enumerate(changes):
            try:
                current = directory.get(change.user_id)
                if current is None:
                    reason = "user no longer exists"
                elif any(current.get(k) != v for k, v in change.after.items()):
                    reason = "user was modified after the import"
                else:
                    reason = None

                if reason:
                    conflicts.append(
                        RollbackConflict(row_identifier=change.row_identifier, user_id=change.user_id, reason=reason)
                    )
                    logger.warning(f"Rollback conflict on {change.user_id}: {reason}")
                    continue

                if change.change == ChangeType.CREATED:
                    directory.delete(change.user_id)
                else:
                    directory.update(change.user_id, change.before, remove=change.absent_keys)
                rolled_back += 1

            except DirectoryUnavailableError as e:
                error = f"Directory became unavailable during rollback: {e}"
                logger.error(error)
                conflicts.extend(
                    RollbackConflict(row_identifier=c.row_identifier, user_id=c.user_id, reason="not processed: directory unavailable")
                    for c in changes[position:]
                )
                break
            except DirectoryError as e:
                conflicts.append(
                    RollbackConflict(
                        row_identifier=change.row_identifier,
                        user_id=change.user_id,
                        reason=f"directory rejected the rollback: {e}",
                    )
                )
                logger.warning(f"Rollback of {change.user_id} failed: {e}")

        rollback_entry = AuditLogEntry(
            operation=AuditOperation.ROLLBACK,
            user_id=actor.user_id,
            user_name=actor.user_name,
            user_email=actor.user_email,
            details=RollbackDetails(
                original_entry_id=entry.id,
                original_file_name=entry.details.file_name,
                rolled_back_rows=rolled_back,
                conflicts=conflicts,
                execution_time_ms=int((time.monotonic() - started) * 1000),
            ),
            can_rollback=False,
        )
        try:
            self.record(rollback_entry)
        except AuditWriteError as e:
            return RollbackResult(
                success=False,
                error=f"Rollback applied but could not be recorded: {e}",
                rolled_back_rows=rolled_back,
                conflicts=conflicts,
            )

        logger.info(
            f"Rolled back {rolled_back} rows of import {entry.id} with {len(conflicts)} conflicts"
        )
        return RollbackResult(
            success=error is None,
            error=error,
            audit_log_id=rollback_entry.id,
            rolled_back_rows=rolled_back,
            conflicts=conflicts,
        )

    def statistics(self, now: Optional[datetime] = None) -> ImportStatistics:
        """Aggregate figures over every recorded execution."""
        now = now or utc_now()
        executions = self.get_entries(limit=0, operations=EXECUTION_OPERATIONS)

        stats = ImportStatistics(total_imports=len(executions))
        if not executions:
            return stats

        total_time = 0
        for entry in executions:
            details = entry.details
            stats.total_rows_processed += details.total_rows
            stats.total_created += details.created
            stats.total_updated += details.updated
            stats.total_failures += details.failed
            total_time += details.execution_time_ms

            if details.total_rows > stats.largest_import_rows:
                stats.largest_import_rows = details.total_rows
                stats.largest_import_file = details.file_name
                stats.largest_import_at = entry.timestamp

            age = now - entry.timestamp
            if age <= timedelta(days=1):
                stats.last_24_hours += 1
            if age <= timedelta(days=7):
                stats.last_7_days += 1
            if age <= timedelta(days=30):
                stats.last_30_days += 1

        stats.average_execution_time_ms = total_time / len(executions)
        return stats
