"""
Core data models for the reconciliation engine.

This module defines the Pydantic models used throughout the system for
candidate records, validation outcomes, upsert options, execution results,
audit ledger entries and scheduled import configurations.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    computed_field,
    field_serializer,
    field_validator,
    model_validator,
)


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class FieldName(str, Enum):
    """Directory fields a bulk import may write."""
    NAME = "name"
    EMAIL = "email"
    USERNAME = "username"
    ROLE = "role"
    DEPARTMENT = "department"
    USER_TYPE = "user_type"
    EMPLOYEE_ID = "employee_id"
    PERSON_ID = "person_id"
    MANAGER_EMPLOYEE_ID = "manager_employee_id"
    MANAGER_PERSON_ID = "manager_person_id"
    COMPANY_CODE = "company_code"
    POSITION = "position"
    SHIFT = "shift"
    PASSWORD = "password"


REQUIRED_FIELDS: FrozenSet[FieldName] = frozenset({FieldName.NAME, FieldName.ROLE})
IDENTITY_FIELDS = (FieldName.EMPLOYEE_ID, FieldName.PERSON_ID, FieldName.EMAIL, FieldName.USERNAME)
MANAGER_FIELDS = (FieldName.MANAGER_EMPLOYEE_ID, FieldName.MANAGER_PERSON_ID)


class Role(str, Enum):
    """Roles a directory user can hold."""
    EMPLOYEE = "employee"
    MANAGER = "manager"
    HR = "hr"


MANAGER_ROLES = frozenset({Role.MANAGER.value, Role.HR.value})


class UserType(str, Enum):
    """Office users log in with email/password, operational users with username/PIN."""
    OFFICE = "office"
    OPERATIONAL = "operational"


class RowAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


class IdentityKind(str, Enum):
    """Identity keys in priority order: the first present one is the row's identity."""
    EMPLOYEE_ID = "employee_id"
    PERSON_ID = "person_id"
    EMAIL = "email"
    USERNAME = "username"


class IdentityKey(BaseModel):
    """A resolved identity key used to match a row against the directory."""
    model_config = ConfigDict(frozen=True)

    kind: IdentityKind
    value: str

    def normalized(self) -> "IdentityKey":
        """Emails and usernames match case-insensitively; IDs match exactly."""
        value = self.value.strip()
        if self.kind in (IdentityKind.EMAIL, IdentityKind.USERNAME):
            value = value.lower()
        return IdentityKey(kind=self.kind, value=value)

    def __str__(self) -> str:
        return f"{self.kind.value}={self.value}"


class CandidateRecord(BaseModel):
    """One row of the source file after column mapping and coercion."""
    row_number: int = Field(..., description="1-based data row number (header excluded)")
    raw: Dict[str, str] = Field(default_factory=dict, description="Original column values")
    name: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None
    role: Optional[str] = None
    department: Optional[str] = None
    user_type: Optional[str] = Field(None, description="office or operational; office when not given")
    employee_id: Optional[str] = None
    person_id: Optional[str] = None
    manager_employee_id: Optional[str] = None
    manager_person_id: Optional[str] = None
    company_code: Optional[str] = None
    position: Optional[str] = None
    shift: Optional[str] = None
    password: Optional[SecretStr] = None
    parse_errors: List[str] = Field(default_factory=list)

    @property
    def requires_pin_only(self) -> bool:
        return self.effective_user_type == UserType.OPERATIONAL.value

    @property
    def effective_user_type(self) -> str:
        return self.user_type or UserType.OFFICE.value

    @property
    def label(self) -> str:
        return f"Row {self.row_number} ({self.name or 'unnamed'})"

    def identity_keys(self) -> List[IdentityKey]:
        """All identity keys present on the row, highest priority first."""
        keys = []
        for kind in IdentityKind:
            value = getattr(self, kind.value)
            if value:
                keys.append(IdentityKey(kind=kind, value=value).normalized())
        return keys

    def identity_key(self) -> Optional[IdentityKey]:
        keys = self.identity_keys()
        return keys[0] if keys else None

    def manager_keys(self) -> List[IdentityKey]:
        keys = []
        if self.manager_employee_id:
            keys.append(IdentityKey(kind=IdentityKind.EMPLOYEE_ID, value=self.manager_employee_id))
        if self.manager_person_id:
            keys.append(IdentityKey(kind=IdentityKind.PERSON_ID, value=self.manager_person_id))
        return keys

    def field_value(self, field: FieldName) -> Optional[str]:
        if field == FieldName.PASSWORD:
            return self.password.get_secret_value() if self.password else None
        return getattr(self, field.value)

    def with_values(self, values: Dict[FieldName, Optional[str]]) -> "CandidateRecord":
        """Copy of the record with some fields replaced."""
        update: Dict[str, Any] = {}
        for field, value in values.items():
            if field == FieldName.PASSWORD:
                update["password"] = SecretStr(value) if value else None
            else:
                update[field.value] = value or None
        return self.model_copy(update=update)


class RecoverableErrorType(str, Enum):
    VALIDATION = "validation"
    EMAIL_FORMAT = "email_format"
    PASSWORD_WEAK = "password_weak"
    MANAGER_NOT_FOUND = "manager_not_found"
    DUPLICATE = "duplicate"
    MODE_DISABLED = "mode_disabled"
    TRANSIENT = "transient"
    ABORTED = "aborted"


class CriticalErrorType(str, Enum):
    DUPLICATE_IN_FILE = "duplicate_in_file"
    IDENTITY_COLLISION = "identity_collision"
    CONSTRAINT_VIOLATION = "constraint_violation"
    STORE_UNAVAILABLE = "store_unavailable"
    AUDIT_WRITE_FAILED = "audit_write_failed"
    MALFORMED_FILE = "malformed_file"
    FETCH_FAILED = "fetch_failed"
    FETCH_TIMEOUT = "fetch_timeout"


class RecoverableError(BaseModel):
    """Row-level failure with a known correction."""
    row_identifier: int
    field_name: Optional[FieldName] = None
    error_type: RecoverableErrorType
    error_message: str
    suggested_fix: Optional[str] = None
    can_retry: bool = True
    name: Optional[str] = None
    rejected_value: Optional[str] = Field(None, description="Offending value; never set for secrets")


class CriticalError(BaseModel):
    """Failure that needs human action before a retry makes sense."""
    error_type: CriticalErrorType
    error_message: str
    requires_admin_action: bool = True
    row_identifier: Optional[int] = None
    timestamp: datetime = Field(default_factory=utc_now)


class ValidationOutcome(BaseModel):
    """Validator verdict attached to a candidate record."""
    action: RowAction
    intended_action: RowAction = Field(..., description="Action the row takes once its errors are cleared")
    matched_existing_id: Optional[str] = None
    manager_id: Optional[str] = None
    manager_in_file: bool = False
    recoverable_errors: List[RecoverableError] = Field(default_factory=list)
    critical_errors: List[CriticalError] = Field(default_factory=list)
    auto_fixed: List[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def errors(self) -> List[str]:
        return [e.error_message for e in self.critical_errors] + [
            e.error_message for e in self.recoverable_errors
        ]

    def settle(self) -> None:
        """Re-derive the action after errors were added or removed."""
        self.action = RowAction.SKIP if self.errors else self.intended_action

    def drop_recoverable(self, error_type: RecoverableErrorType) -> List[RecoverableError]:
        dropped = [e for e in self.recoverable_errors if e.error_type == error_type]
        self.recoverable_errors = [e for e in self.recoverable_errors if e.error_type != error_type]
        self.settle()
        return dropped

    @model_validator(mode="after")
    def _skip_iff_errors(self) -> "ValidationOutcome":
        if bool(self.errors) != (self.action == RowAction.SKIP):
            raise ValueError("action must be 'skip' exactly when errors are present")
        return self


class ValidatedRecord(BaseModel):
    record: CandidateRecord
    outcome: ValidationOutcome

    @property
    def row_number(self) -> int:
        return self.record.row_number


class UpsertOptions(BaseModel):
    """Operator-selected behaviour for one execution."""
    create_new: bool = True
    update_existing: bool = True
    selected_fields: FrozenSet[FieldName] = Field(default_factory=lambda: frozenset(FieldName))
    skip_on_error: bool = True
    continue_on_validation_error: bool = False
    auto_fix_passwords: bool = False
    use_batching: bool = False
    # Falls back to the policy batch size when not set
    batch_size: Optional[int] = Field(None, ge=1)

    @field_validator("selected_fields")
    @classmethod
    def include_required_fields(cls, v: FrozenSet[FieldName]) -> FrozenSet[FieldName]:
        """Name and role are always written, whatever the operator selected."""
        return frozenset(v) | REQUIRED_FIELDS

    @property
    def nothing_to_do(self) -> bool:
        return not self.create_new and not self.update_existing


class FixStrategy(str, Enum):
    SET = "set"
    CLEAR = "clear"
    DERIVE_PASSWORD = "derive_password"


class FieldFix(BaseModel):
    """A proposed correction for one field of one row."""
    field_name: FieldName
    strategy: FixStrategy = FixStrategy.SET
    value: Optional[str] = None
    reason: str = ""


class ExecutionResult(BaseModel):
    """Outcome of one execution run."""
    success: bool = False
    partial_success: bool = False
    message: str = ""
    total_rows: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    notices: List[str] = Field(default_factory=list)
    recoverable_errors: List[RecoverableError] = Field(default_factory=list)
    critical_errors: List[CriticalError] = Field(default_factory=list)
    audit_log_id: Optional[str] = None
    execution_time_ms: int = 0

    def finalize(self) -> "ExecutionResult":
        """Derive success flags and the summary message from the counters."""
        succeeded = self.created + self.updated
        self.success = self.failed == 0 and not self.critical_errors
        self.partial_success = self.failed > 0 and succeeded > 0
        if self.success:
            self.message = (
                f"Import completed successfully: {self.created} created, {self.updated} updated"
            )
        else:
            self.message = (
                f"Import completed with {self.failed} failed rows: "
                f"{self.created} created, {self.updated} updated, {self.failed} failed"
            )
        return self

    @classmethod
    def refused(cls, reason: str, critical: Optional[CriticalError] = None) -> "ExecutionResult":
        """Result for input rejected before any persistence attempt."""
        return cls(
            success=False,
            message=reason,
            errors=[reason],
            critical_errors=[critical] if critical else [],
        )


class RetryResult(ExecutionResult):
    """Result of re-running previously failed rows; never merged with the original."""
    retried_rows: int = 0
    original_errors: List[RecoverableError] = Field(default_factory=list)
    unfixed_rows: List[int] = Field(default_factory=list)


class PreviewSummary(BaseModel):
    """Read-only summary of what an execution would do."""
    success: bool
    file_name: str = "upload.csv"
    total_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    create_count: int = 0
    update_count: int = 0
    valid_sample: List[ValidatedRecord] = Field(default_factory=list)
    invalid_sample: List[ValidatedRecord] = Field(default_factory=list)
    global_errors: List[str] = Field(default_factory=list)
    parse_errors: List[str] = Field(default_factory=list)


class Actor(BaseModel):
    """The operator (or system job) an operation is recorded against."""
    user_id: str
    user_name: str
    user_email: Optional[str] = None
    company_code: Optional[str] = None


SYSTEM_ACTOR = Actor(user_id="system", user_name="Scheduled Import")


class AuditOperation(str, Enum):
    PREVIEW = "preview"
    EXECUTE = "execute"
    BATCH_EXECUTE = "batch_execute"
    ROLLBACK = "rollback"


class ChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"


class RowChange(BaseModel):
    """Before/after snapshot of one directory row touched by an execution."""
    model_config = ConfigDict(frozen=True)

    row_identifier: int
    user_id: str
    change: ChangeType
    before: Dict[str, Any] = Field(default_factory=dict)
    after: Dict[str, Any] = Field(default_factory=dict)
    # Keys the record did not have before the update
    absent_keys: List[str] = Field(default_factory=list)


class RollbackConflict(BaseModel):
    model_config = ConfigDict(frozen=True)

    row_identifier: int
    user_id: str
    reason: str


class PreviewDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation: Literal["preview"] = "preview"
    file_name: str
    total_rows: int
    valid_rows: int
    invalid_rows: int
    create_count: int
    update_count: int
    execution_time_ms: int = 0


class ExecuteDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation: Literal["execute"] = "execute"
    file_name: str
    total_rows: int
    created: int
    updated: int
    failed: int
    execution_time_ms: int = 0
    options: UpsertOptions = Field(default_factory=UpsertOptions)
    changes: List[RowChange] = Field(default_factory=list)
    recoverable_error_count: int = 0
    critical_error_count: int = 0
    aborted: bool = False
    retry_of: Optional[str] = None


class BatchExecuteDetails(ExecuteDetails):
    operation: Literal["batch_execute"] = "batch_execute"  # type: ignore[assignment]
    batch_count: int = 1
    batch_size: int = 200


class RollbackDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation: Literal["rollback"] = "rollback"
    original_entry_id: str
    original_file_name: Optional[str] = None
    rolled_back_rows: int = 0
    conflicts: List[RollbackConflict] = Field(default_factory=list)
    execution_time_ms: int = 0


AuditDetails = Annotated[
    Union[PreviewDetails, ExecuteDetails, BatchExecuteDetails, RollbackDetails],
    Field(discriminator="operation"),
]


class AuditLogEntry(BaseModel):
    """Immutable ledger entry; details are tagged by operation."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    operation: AuditOperation
    user_id: str
    user_name: str
    user_email: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    details: AuditDetails
    can_rollback: bool = False

    @model_validator(mode="after")
    def _operation_matches_details(self) -> "AuditLogEntry":
        if self.details.operation != self.operation.value:
            raise ValueError(
                f"details for '{self.details.operation}' attached to '{self.operation.value}' entry"
            )
        return self


class RollbackResult(BaseModel):
    success: bool
    error: Optional[str] = None
    audit_log_id: Optional[str] = None
    rolled_back_rows: int = 0
    conflicts: List[RollbackConflict] = Field(default_factory=list)


class ImportStatistics(BaseModel):
    total_imports: int = 0
    total_rows_processed: int = 0
    total_created: int = 0
    total_updated: int = 0
    total_failures: int = 0
    average_execution_time_ms: float = 0.0
    largest_import_file: Optional[str] = None
    largest_import_rows: int = 0
    largest_import_at: Optional[datetime] = None
    last_24_hours: int = 0
    last_7_days: int = 0
    last_30_days: int = 0


class ErrorReport(BaseModel):
    generated_at: datetime = Field(default_factory=utc_now)
    total_recoverable_errors: int = 0
    total_critical_errors: int = 0
    error_categories: Dict[str, int] = Field(default_factory=dict)
    recommended_actions: Dict[int, str] = Field(default_factory=dict)
    auto_fixable_rows: List[int] = Field(default_factory=list)
    manual_fix_rows: List[int] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class ScheduleFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    DISABLED = "disabled"


class SourceType(str, Enum):
    URL = "url"
    API = "api"
    SFTP = "sftp"


class Schedule(BaseModel):
    """Recurring cadence; day_of_week uses 0=Sunday .. 6=Saturday."""
    frequency: ScheduleFrequency
    time: str = Field("00:00", description="Local time of day, HH:MM")
    timezone: str = "UTC"
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    day_of_month: Optional[int] = Field(None, ge=1, le=31)

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        try:
            hours, minutes = (int(part) for part in v.split(":"))
        except ValueError:
            raise ValueError(f"time must be HH:MM, got {v!r}") from None
        if not (0 <= hours <= 23 and 0 <= minutes <= 59):
            raise ValueError(f"time out of range: {v!r}")
        return f"{hours:02d}:{minutes:02d}"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone: {v!r}") from None
        return v

    @model_validator(mode="after")
    def _day_required(self) -> "Schedule":
        if self.frequency == ScheduleFrequency.WEEKLY and self.day_of_week is None:
            raise ValueError("day_of_week is required for weekly schedules")
        if self.frequency == ScheduleFrequency.MONTHLY and self.day_of_month is None:
            raise ValueError("day_of_month is required for monthly schedules")
        return self

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":")[1])


class SourceCredentials(BaseModel):
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    api_key: Optional[SecretStr] = None

    @field_serializer("password", "api_key", when_used="json")
    def _dump_secret(self, v: Optional[SecretStr], info) -> Optional[str]:
        """Secrets stay masked unless the caller persists with reveal_secrets."""
        if v is None:
            return None
        if info.context and info.context.get("reveal_secrets"):
            return v.get_secret_value()
        return str(v)


class ImportSource(BaseModel):
    type: SourceType
    url: Optional[str] = None
    credentials: Optional[SourceCredentials] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _url_required(self) -> "ImportSource":
        if not self.url:
            raise ValueError(f"url is required for {self.type.value} sources")
        return self


class ScheduledImportOptions(UpsertOptions):
    notification_emails: List[str] = Field(default_factory=list)


class ScheduledImportConfig(BaseModel):
    """A recurring import job; last_run/next_run are owned by the scheduler."""
    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    enabled: bool = True
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    schedule: Schedule
    source: ImportSource
    import_options: ScheduledImportOptions = Field(default_factory=ScheduledImportOptions)
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    created_by: Optional[str] = None

    @property
    def runnable(self) -> bool:
        return self.enabled and self.status in (ScheduleStatus.ACTIVE, ScheduleStatus.ERROR)


class ImportRunSummary(BaseModel):
    """What a scheduled run reports to its notification list."""
    config_id: str
    config_name: str
    started_at: datetime
    finished_at: datetime
    success: bool
    partial_success: bool = False
    created: int = 0
    updated: int = 0
    failed: int = 0
    message: str = ""
    audit_log_id: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


# Type aliases for convenience
CandidateRecords = List[CandidateRecord]
ValidatedRecords = List[ValidatedRecord]
FixMap = Dict[int, List[FieldFix]]
DirectoryRecord = Dict[str, Any]
