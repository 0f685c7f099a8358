"""
Reconciliation Service.

Single entry point for the operations the engine exposes: preview,
execute, retry, history, rollback, error reports and statistics. The API,
the CLI and the scheduler all go through this class.
"""

import logging
import time
from typing import List, Optional, Union

from .audit.ledger import HISTORY_OPERATIONS, AuditLedger
from .config import EngineSettings
from .engine.autofix import build_error_report, propose_fixes
from .engine.directory import DirectoryStore, JsonDirectoryStore
from .engine.errors import AuditWriteError, DirectoryUnavailableError
from .engine.executor import REFUSED_MESSAGE, UpsertExecutor
from .engine.policy import ImportPolicy
from .engine.preview import build_preview, failed_preview
from .engine.retry import RetryCoordinator
from .engine.validator import RecordValidator
from .ingestion.record_loader import RecordLoader
from .models import (
    SYSTEM_ACTOR,
    Actor,
    AuditLogEntry,
    AuditOperation,
    CriticalError,
    CriticalErrorType,
    ErrorReport,
    ExecutionResult,
    FixMap,
    ImportStatistics,
    PreviewDetails,
    PreviewSummary,
    RecoverableError,
    RetryResult,
    RollbackResult,
    UpsertOptions,
)

logger = logging.getLogger(__name__)

RawInput = Union[bytes, str]


class ReconciliationService:
    """
    Bulk identity reconciliation service.

    Wires the parser, validator, executor, retry coordinator and audit
    ledger around one directory store.
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
        self.loader = RecordLoader(self.policy)
        self.validator = RecordValidator(self.policy, default_company_code)
        self.executor = UpsertExecutor(directory, ledger, self.policy, default_company_code)
        self.retry_coordinator = RetryCoordinator(
            self.loader, self.validator, self.executor, directory, self.policy
        )

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "ReconciliationService":
        policy = ImportPolicy(settings.policy_dir)
        return cls(
            directory=JsonDirectoryStore(settings.directory_path),
            ledger=AuditLedger(settings.audit_dir, policy),
            policy=policy,
            default_company_code=settings.default_company_code,
        )

    def preview(
        self,
        raw: RawInput,
        file_name: str = "upload.csv",
        options: Optional[UpsertOptions] = None,
        actor: Optional[Actor] = None,
    ) -> PreviewSummary:
        """
        Summarize what an execution of the input would do.

        Reads the directory but never writes to it. When an actor is given
        the preview is noted in the ledger.
        """
        started = time.monotonic()
        parsed = self.loader.load(raw)
        if not parsed.ok:
            logger.warning(f"Preview of {file_name} rejected: {parsed.global_errors}")
            return failed_preview(parsed.global_errors, file_name)

        try:
            snapshot = self.directory.snapshot()
        except DirectoryUnavailableError as e:
            return failed_preview([f"Directory unavailable: {e}"], file_name)

        validated = self.validator.validate_all(parsed, snapshot, options)
        summary = build_preview(validated, file_name, parsed.parse_errors())

        if actor is not None:
            entry = AuditLogEntry(
                operation=AuditOperation.PREVIEW,
                user_id=actor.user_id,
                user_name=actor.user_name,
                user_email=actor.user_email,
                details=PreviewDetails(
                    file_name=file_name,
                    total_rows=summary.total_rows,
                    valid_rows=summary.valid_rows,
                    invalid_rows=summary.invalid_rows,
                    create_count=summary.create_count,
                    update_count=summary.update_count,
                    execution_time_ms=int((time.monotonic() - started) * 1000),
                ),
            )
            try:
                self.ledger.record(entry)
            except AuditWriteError as e:
                logger.error(f"Preview of {file_name} could not be recorded: {e}")

        return summary

    def execute(
        self,
        raw: RawInput,
        options: Optional[UpsertOptions] = None,
        actor: Actor = SYSTEM_ACTOR,
        file_name: str = "upload.csv",
    ) -> ExecutionResult:
        """
        Parse, validate and execute an import.

        Input rejected before any persistence (nothing to do, unparseable
        file, unreachable directory) returns a failed result without an
        audit entry.
        """
        options = options or UpsertOptions()
        if options.nothing_to_do:
            logger.warning("Refusing execution: create and update are both disabled")
            return ExecutionResult.refused(REFUSED_MESSAGE)

        parsed = self.loader.load(raw)
        if not parsed.ok:
            message = "; ".join(parsed.global_errors)
            logger.warning(f"Execution of {file_name} rejected: {message}")
            result = ExecutionResult.refused(
                "File could not be parsed",
                CriticalError(error_type=CriticalErrorType.MALFORMED_FILE, error_message=message),
            )
            result.errors = list(parsed.global_errors)
            return result

        try:
            snapshot = self.directory.snapshot()
        except DirectoryUnavailableError as e:
            return ExecutionResult.refused(
                f"Directory unavailable: {e}",
                CriticalError(error_type=CriticalErrorType.STORE_UNAVAILABLE, error_message=str(e)),
            )

        validated = self.validator.validate_all(parsed, snapshot, options)
        return self.executor.execute(validated, options, actor, file_name=file_name)

    def retry(
        self,
        raw: RawInput,
        recoverable_errors: List[RecoverableError],
        fixes: Optional[FixMap] = None,
        options: Optional[UpsertOptions] = None,
        actor: Actor = SYSTEM_ACTOR,
        file_name: str = "upload.csv",
        retry_of: Optional[str] = None,
    ) -> RetryResult:
        """
        Retry the rows of recoverable errors.

        When no fixes are given, the advisor's proposals are applied.
        """
        if fixes is None:
            fixes = propose_fixes(recoverable_errors)
        return self.retry_coordinator.retry(
            raw,
            recoverable_errors,
            fixes,
            options or UpsertOptions(),
            actor,
            file_name=file_name,
            retry_of=retry_of,
        )

    def propose_fixes(self, recoverable_errors: List[RecoverableError]) -> FixMap:
        return propose_fixes(recoverable_errors)

    def error_report(self, result: ExecutionResult) -> ErrorReport:
        return build_error_report(result.recoverable_errors, result.critical_errors)

    def get_history(self, limit: Optional[int] = None, include_previews: bool = False) -> List[AuditLogEntry]:
        operations = None if include_previews else HISTORY_OPERATIONS
        return self.ledger.get_entries(limit=limit, operations=operations)

    def rollback(self, audit_log_id: str, actor: Actor = SYSTEM_ACTOR) -> RollbackResult:
        return self.ledger.rollback(audit_log_id, actor, self.directory)

    def statistics(self) -> ImportStatistics:
        return self.ledger.statistics()
