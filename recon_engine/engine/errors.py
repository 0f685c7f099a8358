"""
Exception hierarchy for the reconciliation engine.

Row-level problems never surface as exceptions past the validator or the
executor; these classes cover file-level, infrastructure and scheduler
failures, plus the write failures the executor classifies per row.
"""

from typing import List, Optional


class ReconciliationError(Exception):
    """Base class for all engine errors."""


class ParseError(ReconciliationError):
    """The input file cannot be parsed at all; nothing is processed."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class DirectoryError(ReconciliationError):
    """Base class for failures raised by a directory store."""


class RecordConflictError(DirectoryError):
    """A unique key is already owned by another directory record."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        self.field_name = field_name
        super().__init__(message)


class TransientDirectoryError(DirectoryError):
    """The store rejected the write for a reason that may clear on retry."""


class ConstraintViolationError(DirectoryError):
    """The store refused the write for a structural reason unrelated to the row data."""


class DirectoryUnavailableError(DirectoryError):
    """The store cannot be reached; the run aborts."""


class RecordNotFoundError(DirectoryError):
    """The record to update or delete does not exist."""


class ManagerResolutionError(ReconciliationError):
    """A manager reference could not be resolved at write time."""


class AuditWriteError(ReconciliationError):
    """The ledger failed to persist an entry."""


class SourceFetchError(ReconciliationError):
    """A scheduled source could not be fetched."""


class SourceTimeoutError(SourceFetchError):
    """The source did not answer within the configured timeout."""


class UnsupportedSourceError(SourceFetchError):
    """No transport is available for the configured source type."""


class ScheduleNotFoundError(ReconciliationError):
    """No scheduled import exists with the given id."""


class ScheduleValidationError(ReconciliationError):
    """A scheduled import configuration was rejected."""


class ScheduleStoreError(ReconciliationError):
    """Scheduled import configurations could not be persisted."""
