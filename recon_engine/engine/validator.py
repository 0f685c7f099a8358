"""
Record Validator for the reconciliation engine.

Applies the per-field rules to candidate records, resolves each row's
identity against a directory snapshot and decides the provisional action
(create, update or skip). Whole-file validation adds the checks that need
every row at once: duplicate identity keys within the file, and a second
manager-resolution pass against manager rows of the same file.
"""

import logging
import re
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from ..models import (
    MANAGER_ROLES,
    CandidateRecord,
    CriticalError,
    CriticalErrorType,
    DirectoryRecord,
    FieldName,
    IdentityKey,
    IdentityKind,
    RecoverableError,
    RecoverableErrorType,
    Role,
    RowAction,
    UpsertOptions,
    UserType,
    ValidatedRecord,
    ValidationOutcome,
)
from .directory import DirectoryIndex
from .policy import ImportPolicy

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

Snapshot = Union[DirectoryIndex, Iterable[DirectoryRecord]]


def _as_index(snapshot: Snapshot) -> DirectoryIndex:
    if isinstance(snapshot, DirectoryIndex):
        return snapshot
    return DirectoryIndex(snapshot)


class _Issues:
    """Collects the structured errors of one row."""

    def __init__(self, record: CandidateRecord):
        self.record = record
        self.recoverable: List[RecoverableError] = []
        self.critical: List[CriticalError] = []

    def recoverable_error(
        self,
        error_type: RecoverableErrorType,
        message: str,
        field: Optional[FieldName] = None,
        suggested_fix: Optional[str] = None,
        can_retry: bool = True,
        value: Optional[str] = None,
    ):
        self.recoverable.append(
            RecoverableError(
                row_identifier=self.record.row_number,
                field_name=field,
                error_type=error_type,
                error_message=message,
                suggested_fix=suggested_fix,
                can_retry=can_retry,
                name=self.record.name,
                rejected_value=value if field != FieldName.PASSWORD else None,
            )
        )

    def critical_error(self, error_type: CriticalErrorType, message: str):
        self.critical.append(
            CriticalError(
                error_type=error_type,
                error_message=message,
                row_identifier=self.record.row_number,
            )
        )


class RecordValidator:
    """
    Validates candidate records against the import policy and the directory.

    validate() checks a single row; validate_all() runs the whole-file
    checks and the two-pass manager resolution on top.
    """

    def __init__(self, policy: Optional[ImportPolicy] = None, default_company_code: Optional[str] = None):
        self.policy = policy or ImportPolicy()
        self.default_company_code = default_company_code

    def validate(
        self,
        record: CandidateRecord,
        snapshot: Snapshot,
        options: Optional[UpsertOptions] = None,
    ) -> ValidationOutcome:
        """
        Validate one record against a directory snapshot.

        Args:
            record: Candidate record from the parser
            snapshot: Directory records (or a prebuilt index) to match against
            options: Upsert options deciding whether create/update is allowed

        Returns:
            ValidationOutcome; action is skip exactly when errors were found
        """
        options = options or UpsertOptions()
        index = _as_index(snapshot)
        issues = _Issues(record)

        self._check_fields(record, issues)
        self._check_credentials(record, issues)
        existing = self._match(record, index, issues)
        manager_id = self._resolve_manager(record, index, existing, issues)

        if existing is not None:
            intended = RowAction.UPDATE if options.update_existing else RowAction.SKIP
            if not options.update_existing:
                issues.recoverable_error(
                    RecoverableErrorType.MODE_DISABLED,
                    "user already exists and updating existing users is disabled",
                    suggested_fix="Enable update mode to update existing users",
                    can_retry=False,
                )
        else:
            intended = RowAction.CREATE if options.create_new else RowAction.SKIP
            if not options.create_new:
                issues.recoverable_error(
                    RecoverableErrorType.MODE_DISABLED,
                    "no existing user matches and creating new users is disabled",
                    suggested_fix="Enable create mode to add new users",
                    can_retry=False,
                )

        outcome = ValidationOutcome(
            action=RowAction.SKIP if (issues.recoverable or issues.critical) else intended,
            intended_action=intended,
            matched_existing_id=existing["id"] if existing else None,
            manager_id=manager_id,
            recoverable_errors=issues.recoverable,
            critical_errors=issues.critical,
        )
        if outcome.errors:
            logger.debug(f"{record.label} failed validation: {outcome.errors}")
        return outcome

    def validate_all(
        self,
        records: Iterable[CandidateRecord],
        snapshot: Snapshot,
        options: Optional[UpsertOptions] = None,
    ) -> List[ValidatedRecord]:
        """
        Validate every record of a file.

        Pass 1 validates rows individually against the snapshot. The file
        checks then flag duplicate identity keys, and pass 2 resolves manager
        references that point at valid manager rows of the same file.
        """
        index = _as_index(snapshot)
        validated = [
            ValidatedRecord(record=record, outcome=self.validate(record, index, options))
            for record in records
        ]

        self._check_in_file_duplicates(validated)
        resolved = self._resolve_in_file_managers(validated)

        invalid = sum(1 for v in validated if v.outcome.action == RowAction.SKIP)
        logger.info(
            f"Validated {len(validated)} rows: {len(validated) - invalid} valid, {invalid} invalid, "
            f"{resolved} managers resolved within the file"
        )
        return validated

    # Per-row rules

    def _check_fields(self, record: CandidateRecord, issues: _Issues):
        for error in record.parse_errors:
            issues.recoverable_error(
                RecoverableErrorType.VALIDATION,
                f"malformed row: {error}",
                suggested_fix="Fix the row so it has one value per column",
            )

        if not record.name:
            issues.recoverable_error(
                RecoverableErrorType.VALIDATION,
                "name required",
                field=FieldName.NAME,
                suggested_fix="Provide the user's full name",
            )

        if not record.role:
            issues.recoverable_error(
                RecoverableErrorType.VALIDATION,
                "role required",
                field=FieldName.ROLE,
                suggested_fix="Use one of: employee, manager, hr",
            )
        elif record.role not in {r.value for r in Role}:
            issues.recoverable_error(
                RecoverableErrorType.VALIDATION,
                f"invalid role '{record.role}'",
                field=FieldName.ROLE,
                suggested_fix="Use one of: employee, manager, hr",
                value=record.role,
            )

        if record.user_type is not None and record.user_type not in {t.value for t in UserType}:
            issues.recoverable_error(
                RecoverableErrorType.VALIDATION,
                f"invalid user type '{record.user_type}'",
                field=FieldName.USER_TYPE,
                suggested_fix="Use office or operational",
                value=record.user_type,
            )

        if not record.identity_keys():
            issues.recoverable_error(
                RecoverableErrorType.VALIDATION,
                "identity key required: provide employee_id, person_id, email or username",
                field=FieldName.EMPLOYEE_ID,
            )

        if record.effective_user_type == UserType.OFFICE.value and not record.email:
            issues.recoverable_error(
                RecoverableErrorType.VALIDATION,
                "email required for office users",
                field=FieldName.EMAIL,
            )
        if record.effective_user_type == UserType.OPERATIONAL.value and not record.username:
            issues.recoverable_error(
                RecoverableErrorType.VALIDATION,
                "username required for operational users",
                field=FieldName.USERNAME,
            )

        if record.username:
            low, high = self.policy.username_min_length, self.policy.username_max_length
            if not low <= len(record.username) <= high:
                issues.recoverable_error(
                    RecoverableErrorType.VALIDATION,
                    f"username must be {low}-{high} characters",
                    field=FieldName.USERNAME,
                    value=record.username,
                )

        if record.email and not EMAIL_PATTERN.match(record.email):
            issues.recoverable_error(
                RecoverableErrorType.EMAIL_FORMAT,
                f"invalid email format '{record.email}'",
                field=FieldName.EMAIL,
                suggested_fix="Correct the email address",
                value=record.email,
            )

    def _check_credentials(self, record: CandidateRecord, issues: _Issues):
        if record.password is None:
            return
        secret = record.password.get_secret_value()

        if record.requires_pin_only:
            if not self.policy.is_valid_pin(secret):
                issues.recoverable_error(
                    RecoverableErrorType.PASSWORD_WEAK,
                    f"PIN must be exactly {self.policy.pin_length} digits",
                    field=FieldName.PASSWORD,
                    suggested_fix=f"Use a {self.policy.pin_length}-digit PIN or enable auto-fix passwords",
                )
            return

        problems = self.policy.password_problems(secret)
        if problems:
            issues.recoverable_error(
                RecoverableErrorType.PASSWORD_WEAK,
                f"password must contain {', '.join(problems)}",
                field=FieldName.PASSWORD,
                suggested_fix="Use 8+ characters with mixed case and a digit, or enable auto-fix passwords",
            )

    def _company_of(self, values: Dict) -> Optional[str]:
        return values.get("company_code") or self.default_company_code

    def _match(
        self, record: CandidateRecord, index: DirectoryIndex, issues: _Issues
    ) -> Optional[DirectoryRecord]:
        """
        Resolve the row to at most one existing directory record.

        The highest-priority key decides. Lower-priority keys only match a
        record that lacks the primary key kind; a lower-priority key owned
        by some other user is a duplicate.
        """
        keys = record.identity_keys()
        if not keys:
            return None
        primary = keys[0]
        row_company = record.company_code or self.default_company_code

        existing = index.find(primary)
        if existing is None:
            for key in keys[1:]:
                candidate = index.find(key)
                if candidate is not None and not candidate.get(primary.kind.value):
                    existing = candidate
                    break

        if existing is not None and primary.kind == IdentityKind.PERSON_ID:
            if self._companies_differ(row_company, self._company_of(existing)):
                issues.critical_error(
                    CriticalErrorType.IDENTITY_COLLISION,
                    f"person_id '{primary.value}' belongs to a user of another company",
                )
                return None

        for key in keys[1:]:
            owner = index.find(key)
            if owner is None or (existing is not None and owner["id"] == existing["id"]):
                continue
            if key.kind == IdentityKind.PERSON_ID and self._companies_differ(
                row_company, self._company_of(owner)
            ):
                issues.critical_error(
                    CriticalErrorType.IDENTITY_COLLISION,
                    f"person_id '{key.value}' belongs to a user of another company",
                )
            else:
                issues.recoverable_error(
                    RecoverableErrorType.DUPLICATE,
                    f"{key.kind.value} '{key.value}' already belongs to another user",
                    field=FieldName(key.kind.value),
                    suggested_fix="Use a different value, or correct the identity key so the row matches that user",
                    value=key.value,
                )

        return existing

    @staticmethod
    def _companies_differ(left: Optional[str], right: Optional[str]) -> bool:
        return bool(left and right and left != right)

    def _resolve_manager(
        self,
        record: CandidateRecord,
        index: DirectoryIndex,
        existing: Optional[DirectoryRecord],
        issues: _Issues,
    ) -> Optional[str]:
        keys = record.manager_keys()
        if not keys:
            return None

        for key in keys:
            manager = index.find(key)
            if manager is None:
                continue
            if existing is not None and manager["id"] == existing["id"]:
                issues.recoverable_error(
                    RecoverableErrorType.VALIDATION,
                    "user cannot be their own manager",
                    field=FieldName(f"manager_{key.kind.value}"),
                    value=key.value,
                )
                return None
            if manager.get("role") not in MANAGER_ROLES:
                issues.recoverable_error(
                    RecoverableErrorType.MANAGER_NOT_FOUND,
                    f"manager {key} does not have a manager or hr role",
                    field=FieldName(f"manager_{key.kind.value}"),
                    suggested_fix="Give the manager a manager or hr role, or remove the manager reference",
                    value=key.value,
                )
                return None
            return manager["id"]

        issues.recoverable_error(
            RecoverableErrorType.MANAGER_NOT_FOUND,
            f"manager not found ({', '.join(str(k) for k in keys)})",
            field=FieldName(f"manager_{keys[0].kind.value}"),
            suggested_fix="Import the manager first, or remove the manager reference",
            value=keys[0].value,
        )
        return None

    # Whole-file checks

    def _check_in_file_duplicates(self, validated: List[ValidatedRecord]):
        """
        Flag identity keys shared between rows.

        Rows sharing their primary key are ambiguous and fail critically.
        Rows sharing any other key while having different primary keys get
        a recoverable duplicate.
        """
        primaries: Dict[int, Optional[IdentityKey]] = {}
        by_primary: Dict[IdentityKey, List[int]] = defaultdict(list)
        by_key: Dict[IdentityKey, List[int]] = defaultdict(list)

        for item in validated:
            keys = item.record.identity_keys()
            primary = keys[0] if keys else None
            primaries[item.row_number] = primary
            if primary is not None:
                by_primary[primary].append(item.row_number)
            for key in keys:
                by_key[key].append(item.row_number)

        rows = {item.row_number: item for item in validated}
        ambiguous: Set[int] = set()

        for key, row_numbers in by_primary.items():
            if len(row_numbers) < 2:
                continue
            for row_number in row_numbers:
                others = ", ".join(str(n) for n in row_numbers if n != row_number)
                rows[row_number].outcome.critical_errors.append(
                    CriticalError(
                        error_type=CriticalErrorType.DUPLICATE_IN_FILE,
                        error_message=f"duplicate {key.kind.value} '{key.value}' also on row {others}",
                        row_identifier=row_number,
                    )
                )
                ambiguous.add(row_number)
            logger.warning(f"Identity key {key} appears on rows {row_numbers}")

        for key, row_numbers in by_key.items():
            if len({primaries[n] for n in row_numbers}) < 2:
                continue
            for row_number in row_numbers:
                if row_number in ambiguous:
                    continue
                item = rows[row_number]
                others = ", ".join(str(n) for n in row_numbers if n != row_number)
                item.outcome.recoverable_errors.append(
                    RecoverableError(
                        row_identifier=row_number,
                        field_name=FieldName(key.kind.value),
                        error_type=RecoverableErrorType.DUPLICATE,
                        error_message=f"{key.kind.value} '{key.value}' is also used on row {others}",
                        suggested_fix="Remove duplicate entries from the file",
                        name=item.record.name,
                        rejected_value=key.value,
                    )
                )

        for item in validated:
            item.outcome.settle()

    def _resolve_in_file_managers(self, validated: List[ValidatedRecord]) -> int:
        """
        Second manager-resolution pass.

        A row whose only problem is an unresolved manager becomes valid when
        its manager reference points at a manager row of the same file that
        is itself valid (or becomes valid through this same resolution).
        """
        manager_rows: Dict[Tuple[str, str], ValidatedRecord] = {}
        for item in validated:
            if item.record.role not in MANAGER_ROLES:
                continue
            for kind in (IdentityKind.EMPLOYEE_ID, IdentityKind.PERSON_ID):
                value = getattr(item.record, kind.value)
                if value:
                    manager_rows.setdefault((kind.value, value.strip()), item)

        def only_manager_pending(item: ValidatedRecord) -> bool:
            outcome = item.outcome
            return (
                not outcome.critical_errors
                and bool(outcome.recoverable_errors)
                and all(
                    e.error_type == RecoverableErrorType.MANAGER_NOT_FOUND
                    for e in outcome.recoverable_errors
                )
                and outcome.manager_id is None
            )

        def in_file_manager(item: ValidatedRecord) -> Optional[ValidatedRecord]:
            for key in item.record.manager_keys():
                candidate = manager_rows.get((key.kind.value, key.value.strip()))
                if candidate is not None and candidate is not item:
                    return candidate
            return None

        memo: Dict[int, bool] = {}

        def resolvable(item: ValidatedRecord, visiting: Set[int]) -> bool:
            row_number = item.row_number
            if row_number in memo:
                return memo[row_number]
            if not item.outcome.errors:
                memo[row_number] = True
                return True
            if row_number in visiting or not only_manager_pending(item):
                return False
            manager = in_file_manager(item)
            visiting.add(row_number)
            result = manager is not None and resolvable(manager, visiting)
            visiting.discard(row_number)
            memo[row_number] = result
            return result

        resolved = 0
        for item in validated:
            if only_manager_pending(item) and resolvable(item, set()):
                item.outcome.drop_recoverable(RecoverableErrorType.MANAGER_NOT_FOUND)
                item.outcome.manager_in_file = True
                resolved += 1
        return resolved
