"""
Upsert Executor for the reconciliation engine.

Persists validated records to the directory in sequential batches,
classifies row failures as recoverable or critical, and appends exactly
one audit entry per run.
"""

import logging
import time
from typing import Dict, List, Optional, Tuple, Type

from ..audit.ledger import AuditLedger
from ..models import (
    IDENTITY_FIELDS,
    MANAGER_FIELDS,
    MANAGER_ROLES,
    Actor,
    AuditLogEntry,
    AuditOperation,
    BatchExecuteDetails,
    CandidateRecord,
    ChangeType,
    CriticalError,
    CriticalErrorType,
    DirectoryRecord,
    ExecuteDetails,
    ExecutionResult,
    FieldFix,
    FieldName,
    FixStrategy,
    RecoverableError,
    RecoverableErrorType,
    RowAction,
    RowChange,
    UpsertOptions,
    UserType,
    ValidatedRecord,
)
from .autofix import apply_fixes
from .directory import SECRET_KEYS, DirectoryIndex, DirectoryStore, public_fields
from .errors import (
    AuditWriteError,
    ConstraintViolationError,
    DirectoryError,
    DirectoryUnavailableError,
    ManagerResolutionError,
    RecordConflictError,
    RecordNotFoundError,
)
from .policy import ImportPolicy
from .security import hash_secret

logger = logging.getLogger(__name__)

REFUSED_MESSAGE = "Nothing to do: enable creating new users or updating existing users"


class _RowFailure:
    """A classified row failure."""

    def __init__(
        self,
        message: str,
        recoverable: Optional[RecoverableErrorType] = None,
        critical: Optional[CriticalErrorType] = None,
        field: Optional[FieldName] = None,
        abort: bool = False,
    ):
        self.message = message
        self.recoverable = recoverable
        self.critical = critical
        self.field = field
        self.abort = abort


def classify_write_failure(exc: Exception) -> _RowFailure:
    """
    Map a write exception to the recoverable/critical taxonomy.

    Key conflicts, unresolved managers and transient store errors are
    recoverable; constraint violations and an unavailable store are
    critical, and the latter aborts the run.
    """
    if isinstance(exc, RecordConflictError):
        try:
            field = FieldName(exc.field_name) if exc.field_name else None
        except ValueError:
            field = None
        return _RowFailure(str(exc), recoverable=RecoverableErrorType.DUPLICATE, field=field)
    if isinstance(exc, ManagerResolutionError):
        return _RowFailure(
            str(exc), recoverable=RecoverableErrorType.MANAGER_NOT_FOUND, field=FieldName.MANAGER_EMPLOYEE_ID
        )
    if isinstance(exc, ConstraintViolationError):
        return _RowFailure(str(exc), critical=CriticalErrorType.CONSTRAINT_VIOLATION)
    if isinstance(exc, DirectoryUnavailableError):
        return _RowFailure(str(exc), critical=CriticalErrorType.STORE_UNAVAILABLE, abort=True)
    # TransientDirectoryError, RecordNotFoundError and any other store error
    return _RowFailure(str(exc), recoverable=RecoverableErrorType.TRANSIENT)


class UpsertExecutor:
    """
    Writes validated records to the directory.

    Batches run sequentially; each batch re-reads the directory so managers
    created by earlier batches resolve for later ones.
    """

    def __init__(
        self,
        directory: DirectoryStore,
        ledger: AuditLedger,
        policy: Optional[ImportPolicy] = None,
        default_company_code: Optional[str] = None,
    ):
        self.directory = directory
        self.ledger = ledger
        self.policy = policy or ImportPolicy()
        self.default_company_code = default_company_code

    def execute(
        self,
        validated: List[ValidatedRecord],
        options: UpsertOptions,
        actor: Actor,
        file_name: str = "upload.csv",
        retry_of: Optional[str] = None,
        result_cls: Type[ExecutionResult] = ExecutionResult,
    ) -> ExecutionResult:
        """
        Execute an upsert run.

        Args:
            validated: Validated records of one file
            options: Operator-selected behaviour
            actor: Who the run is recorded against
            file_name: Source name stored in the audit entry
            retry_of: Audit entry ID of the run being retried, if any
            result_cls: Result type to build

        Returns:
            ExecutionResult; never raises for row-level or store failures
        """
        if options.nothing_to_do:
            logger.warning("Refusing execution: create and update are both disabled")
            return result_cls.refused(REFUSED_MESSAGE)

        started = time.monotonic()
        result = result_cls(total_rows=len(validated))
        eligible = self._partition(validated, options, result)
        ordered = self._order_rows(eligible)

        batch_size = self._batch_size(options, len(ordered))
        batches = [ordered[i: i + batch_size] for i in range(0, len(ordered), batch_size)]
        changes: List[RowChange] = []
        aborted = False

        for batch_number, batch in enumerate(batches, start=1):
            if aborted:
                self._fail_aborted(batch, result)
                continue

            logger.info(f"Processing batch {batch_number}/{len(batches)} ({len(batch)} rows)")
            try:
                index = DirectoryIndex(self.directory.snapshot())
            except DirectoryUnavailableError as e:
                logger.error(f"Directory unavailable at batch {batch_number}: {e}")
                result.critical_errors.append(
                    CriticalError(error_type=CriticalErrorType.STORE_UNAVAILABLE, error_message=str(e))
                )
                aborted = True
                self._fail_aborted(batch, result)
                continue

            batch_failures = 0
            for position, item in enumerate(batch):
                if aborted:
                    self._fail_aborted(batch[position:], result)
                    break
                try:
                    change_type, change = self._write(item, options, index)
                except (DirectoryError, ManagerResolutionError) as exc:
                    failure = classify_write_failure(exc)
                    batch_failures += 1
                    self._record_failure(item, failure, result)
                    if failure.abort or (
                        not options.skip_on_error
                        and (
                            failure.critical is not None
                            or batch_failures > self.policy.abort_failure_ratio * len(batch)
                        )
                    ):
                        logger.error(f"Aborting import after failure on {item.record.label}: {failure.message}")
                        aborted = True
                    continue

                if change_type == ChangeType.CREATED:
                    result.created += 1
                else:
                    result.updated += 1
                if change is not None:
                    changes.append(change)

        result.execution_time_ms = int((time.monotonic() - started) * 1000)
        self._record_audit(result, changes, options, actor, file_name, retry_of, len(batches), batch_size, aborted)
        result.finalize()

        logger.info(
            f"Import of {file_name} finished: {result.created} created, {result.updated} updated, "
            f"{result.failed} failed in {result.execution_time_ms}ms"
        )
        return result

    def _batch_size(self, options: UpsertOptions, row_count: int) -> int:
        if not options.use_batching:
            return max(row_count, 1)
        return options.batch_size or self.policy.batch_size

    def _partition(
        self, validated: List[ValidatedRecord], options: UpsertOptions, result: ExecutionResult
    ) -> List[ValidatedRecord]:
        """Split off skipped rows as failures; auto-fix password-only failures if enabled."""
        eligible = []
        for item in validated:
            outcome = item.outcome
            if outcome.action != RowAction.SKIP:
                eligible.append(item)
                continue

            if options.auto_fix_passwords and self._only_password_errors(item):
                eligible.append(self._fix_password(item, result))
                continue

            result.failed += 1
            result.recoverable_errors.extend(outcome.recoverable_errors)
            result.critical_errors.extend(outcome.critical_errors)
            if not options.continue_on_validation_error:
                result.errors.append(f"{item.record.label}: {'; '.join(outcome.errors)}")
        return eligible

    @staticmethod
    def _only_password_errors(item: ValidatedRecord) -> bool:
        outcome = item.outcome
        return (
            not outcome.critical_errors
            and outcome.intended_action != RowAction.SKIP
            and bool(outcome.recoverable_errors)
            and all(e.error_type == RecoverableErrorType.PASSWORD_WEAK for e in outcome.recoverable_errors)
        )

    def _fix_password(self, item: ValidatedRecord, result: ExecutionResult) -> ValidatedRecord:
        fix = FieldFix(field_name=FieldName.PASSWORD, strategy=FixStrategy.DERIVE_PASSWORD)
        record = apply_fixes(item.record, [fix], self.policy)
        outcome = item.outcome.model_copy(deep=True)
        outcome.recoverable_errors = []
        outcome.auto_fixed.append("password")
        outcome.settle()
        kind = "PIN" if record.requires_pin_only else "password"
        result.notices.append(f"{record.label}: {kind} did not meet policy; a compliant {kind} was derived")
        return ValidatedRecord(record=record, outcome=outcome)

    def _order_rows(self, eligible: List[ValidatedRecord]) -> List[ValidatedRecord]:
        """
        Stable-order rows so in-file managers precede the rows that report to them.
        """
        by_key: Dict[Tuple[str, str], ValidatedRecord] = {}
        for item in eligible:
            if item.record.role in MANAGER_ROLES:
                for kind in ("employee_id", "person_id"):
                    value = getattr(item.record, kind)
                    if value:
                        by_key.setdefault((kind, value.strip()), item)

        depths: Dict[int, int] = {}

        def depth(item: ValidatedRecord, seen: frozenset) -> int:
            if item.row_number in depths:
                return depths[item.row_number]
            result = 0
            for key in item.record.manager_keys():
                manager = by_key.get((key.kind.value, key.value.strip()))
                if manager is not None and manager.row_number not in seen and manager is not item:
                    result = depth(manager, seen | {item.row_number}) + 1
                    break
            depths[item.row_number] = result
            return result

        return sorted(eligible, key=lambda item: depth(item, frozenset()))

    def _write(
        self, item: ValidatedRecord, options: UpsertOptions, index: DirectoryIndex
    ) -> Tuple[ChangeType, Optional[RowChange]]:
        record = item.record
        manager_id = self._resolve_manager(record, index)

        if item.outcome.action == RowAction.CREATE:
            fields = self._fields_for(record, options.selected_fields | set(IDENTITY_FIELDS), manager_id)
            fields.setdefault("user_type", record.effective_user_type)
            fields["requires_pin_only"] = record.requires_pin_only
            if self.default_company_code:
                fields.setdefault("company_code", self.default_company_code)

            user_id = self.directory.create(fields)
            created = self.directory.get(user_id) or {"id": user_id, **fields}
            index.add(created)
            return ChangeType.CREATED, RowChange(
                row_identifier=record.row_number,
                user_id=user_id,
                change=ChangeType.CREATED,
                after=public_fields(created),
            )

        user_id = item.outcome.matched_existing_id
        current = index.by_id.get(user_id) or self.directory.get(user_id)
        if current is None:
            raise RecordNotFoundError(f"matched user {user_id} no longer exists")

        desired = self._fields_for(record, options.selected_fields, manager_id)
        # A stored PIN and a stored password are mutually exclusive
        for written, stale in (("pin_hash", "password_hash"), ("password_hash", "pin_hash")):
            if written in desired and current.get(stale) is not None:
                desired[stale] = None
        changed = {k: v for k, v in desired.items() if k in SECRET_KEYS or current.get(k) != v}
        if not changed:
            logger.debug(f"{record.label} matches the directory, nothing to write")
            return ChangeType.UPDATED, None

        self.directory.update(user_id, changed)
        index.add({**current, **changed})

        before = {k: current[k] for k in changed if k not in SECRET_KEYS and k in current}
        absent_keys = [k for k in changed if k not in SECRET_KEYS and k not in current]
        after = {k: v for k, v in changed.items() if k not in SECRET_KEYS}
        if not after:
            return ChangeType.UPDATED, None
        return ChangeType.UPDATED, RowChange(
            row_identifier=record.row_number,
            user_id=user_id,
            change=ChangeType.UPDATED,
            before=before,
            after=after,
            absent_keys=absent_keys,
        )

    @staticmethod
    def _resolve_manager(record: CandidateRecord, index: DirectoryIndex) -> Optional[str]:
        keys = record.manager_keys()
        if not keys:
            return None
        for key in keys:
            manager = index.find(key)
            if manager is not None and manager.get("role") in MANAGER_ROLES:
                return manager["id"]
        raise ManagerResolutionError(f"manager not found ({', '.join(str(k) for k in keys)})")

    def _fields_for(self, record: CandidateRecord, fields, manager_id: Optional[str]) -> DirectoryRecord:
        """
        Directory fields to write for the selected field names.

        Blank cells are never written, so they do not clear existing values.
        """
        values: DirectoryRecord = {}
        for field in fields:
            if field in MANAGER_FIELDS:
                if manager_id is not None:
                    values["manager_id"] = manager_id
            elif field == FieldName.PASSWORD:
                if record.password is not None:
                    secret = hash_secret(record.password.get_secret_value(), self.policy.bcrypt_rounds)
                    values["pin_hash" if record.requires_pin_only else "password_hash"] = secret
            elif field == FieldName.USER_TYPE:
                if record.user_type is not None:
                    values["user_type"] = record.user_type
                    values["requires_pin_only"] = record.user_type == UserType.OPERATIONAL.value
            else:
                value = getattr(record, field.value)
                if value is not None:
                    values[field.value] = value
        return values

    def _record_failure(self, item: ValidatedRecord, failure: _RowFailure, result: ExecutionResult):
        record = item.record
        result.failed += 1
        result.errors.append(f"{record.label}: {failure.message}")
        if failure.critical is not None:
            result.critical_errors.append(
                CriticalError(
                    error_type=failure.critical,
                    error_message=failure.message,
                    row_identifier=record.row_number,
                )
            )
        else:
            result.recoverable_errors.append(
                RecoverableError(
                    row_identifier=record.row_number,
                    field_name=failure.field,
                    error_type=failure.recoverable,
                    error_message=failure.message,
                    can_retry=True,
                    name=record.name,
                )
            )
        logger.warning(f"{record.label} failed: {failure.message}")

    def _fail_aborted(self, items: List[ValidatedRecord], result: ExecutionResult):
        for item in items:
            self._record_failure(
                item,
                _RowFailure("not processed: import aborted", recoverable=RecoverableErrorType.ABORTED),
                result,
            )

    def _record_audit(
        self,
        result: ExecutionResult,
        changes: List[RowChange],
        options: UpsertOptions,
        actor: Actor,
        file_name: str,
        retry_of: Optional[str],
        batch_count: int,
        batch_size: int,
        aborted: bool,
    ):
        common = dict(
            file_name=file_name,
            total_rows=result.total_rows,
            created=result.created,
            updated=result.updated,
            failed=result.failed,
            execution_time_ms=result.execution_time_ms,
            options=options,
            changes=changes,
            recoverable_error_count=len(result.recoverable_errors),
            critical_error_count=len(result.critical_errors),
            aborted=aborted,
            retry_of=retry_of,
        )
        if options.use_batching:
            operation = AuditOperation.BATCH_EXECUTE
            details = BatchExecuteDetails(batch_count=batch_count, batch_size=batch_size, **common)
        else:
            operation = AuditOperation.EXECUTE
            details = ExecuteDetails(**common)

        entry = AuditLogEntry(
            operation=operation,
            user_id=actor.user_id,
            user_name=actor.user_name,
            user_email=actor.user_email,
            details=details,
            can_rollback=bool(changes),
        )
        try:
            self.ledger.record(entry)
            result.audit_log_id = entry.id
        except AuditWriteError as e:
            result.critical_errors.append(
                CriticalError(error_type=CriticalErrorType.AUDIT_WRITE_FAILED, error_message=str(e))
            )
