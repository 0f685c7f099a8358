"""
Retry Coordinator for the reconciliation engine.

Re-runs only the rows that failed recoverably, after applying fixes, and
reports the pass as its own RetryResult.
"""

import logging
from typing import Iterable, List, Optional, Union

from ..ingestion.record_loader import RecordLoader
from ..models import (
    Actor,
    CriticalError,
    CriticalErrorType,
    FixMap,
    RecoverableError,
    RetryResult,
    UpsertOptions,
)
from .autofix import apply_fixes
from .directory import DirectoryStore
from .errors import DirectoryUnavailableError
from .executor import UpsertExecutor
from .policy import ImportPolicy
from .validator import RecordValidator

logger = logging.getLogger(__name__)


class RetryCoordinator:
    """Re-parses the original input and executes the fixed subset of rows."""

    def __init__(
        self,
        loader: RecordLoader,
        validator: RecordValidator,
        executor: UpsertExecutor,
        directory: DirectoryStore,
        policy: Optional[ImportPolicy] = None,
    ):
        self.loader = loader
        self.validator = validator
        self.executor = executor
        self.directory = directory
        self.policy = policy or ImportPolicy()

    def retry(
        self,
        raw: Union[bytes, str],
        recoverable_errors: Iterable[RecoverableError],
        fixes: FixMap,
        options: UpsertOptions,
        actor: Actor,
        file_name: str = "upload.csv",
        retry_of: Optional[str] = None,
    ) -> RetryResult:
        """
        Retry failed rows of a previous execution.

        Args:
            raw: The original input buffer
            recoverable_errors: Errors of the original run; their rows form the working set
            fixes: Field fixes per row; fixes for rows outside the working set are ignored
            options: Upsert options for the retry pass
            actor: Who the retry is recorded against
            file_name: Source name stored in the audit entry
            retry_of: Audit entry ID of the original run

        Returns:
            RetryResult for this pass only
        """
        recoverable_errors = list(recoverable_errors)
        target_rows = {error.row_identifier for error in recoverable_errors}

        ignored = sorted(set(fixes) - target_rows)
        if ignored:
            logger.warning(f"Ignoring fixes for rows without a recoverable error: {ignored}")
        applicable = {row: row_fixes for row, row_fixes in fixes.items() if row in target_rows}

        parsed = self.loader.load(raw)
        if not parsed.ok:
            message = "; ".join(parsed.global_errors)
            return RetryResult.refused(
                message,
                CriticalError(error_type=CriticalErrorType.MALFORMED_FILE, error_message=message),
            )

        records = []
        for record in parsed:
            if record.row_number not in target_rows:
                continue
            if record.row_number in applicable:
                record = apply_fixes(record, applicable[record.row_number], self.policy)
            records.append(record)

        missing = sorted(target_rows - {record.row_number for record in records})
        if missing:
            logger.warning(f"Rows {missing} are not present in the input and were not retried")

        try:
            snapshot = self.directory.snapshot()
        except DirectoryUnavailableError as e:
            return RetryResult.refused(
                str(e), CriticalError(error_type=CriticalErrorType.STORE_UNAVAILABLE, error_message=str(e))
            )

        validated = self.validator.validate_all(records, snapshot, options)
        logger.info(f"Retrying {len(records)} rows with fixes for {len(applicable)} of them")

        result = self.executor.execute(
            validated,
            options,
            actor,
            file_name=file_name,
            retry_of=retry_of,
            result_cls=RetryResult,
        )
        result.retried_rows = len(records)
        result.original_errors = recoverable_errors
        result.unfixed_rows = sorted(target_rows - set(applicable) - set(missing))
        return result


def unfixed_errors(recoverable_errors: Iterable[RecoverableError], fixes: FixMap) -> List[RecoverableError]:
    """Errors whose rows received no fix."""
    return [e for e in recoverable_errors if e.row_identifier not in fixes]
