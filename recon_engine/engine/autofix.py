"""
Auto-Fix Advisor for the reconciliation engine.

Proposes corrections for recoverable errors and turns a set of errors into
an operator-facing report. Everything in this module is pure: proposals
are data, and applying them returns new records.
"""

import logging
import re
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

from ..models import (
    CandidateRecord,
    CriticalError,
    ErrorReport,
    FieldFix,
    FieldName,
    FixMap,
    FixStrategy,
    RecoverableError,
    RecoverableErrorType,
)
from .policy import ImportPolicy
from .validator import EMAIL_PATTERN

logger = logging.getLogger(__name__)

FIXABLE_TYPES = frozenset(
    {
        RecoverableErrorType.PASSWORD_WEAK,
        RecoverableErrorType.EMAIL_FORMAT,
        RecoverableErrorType.MANAGER_NOT_FOUND,
    }
)

RECOMMENDED_ACTIONS = {
    RecoverableErrorType.PASSWORD_WEAK: "Enable the auto-fix passwords option or update the password in the file",
    RecoverableErrorType.EMAIL_FORMAT: "Apply the suggested email normalization or correct the address in the file",
    RecoverableErrorType.DUPLICATE: "Enable update mode or remove duplicate entries from the file",
    RecoverableErrorType.MANAGER_NOT_FOUND: "Import managers first or remove manager references",
    RecoverableErrorType.VALIDATION: "Review data format and ensure all required fields are provided",
    RecoverableErrorType.MODE_DISABLED: "Enable create or update mode for this import",
    RecoverableErrorType.TRANSIENT: "Retry the row; the directory rejected it temporarily",
    RecoverableErrorType.ABORTED: "Retry the row; the import stopped before reaching it",
}


def _first_of(alphabet: str, predicate, default: str) -> str:
    return next((c for c in alphabet if predicate(c)), default)


def derive_password(seed: str, policy: ImportPolicy, pin: bool = False) -> str:
    """
    Derive a compliant credential from a rejected one.

    The derivation is deterministic. A PIN keeps the seed's digits, cut or
    padded to the PIN length. A password gets its missing character classes
    by substitution or by appending, then is padded from the policy
    alphabet up to the minimum length.
    """
    alphabet = policy.padding_alphabet or "Xk7mQ2pZ"

    if pin:
        digits = re.sub(r"\D", "", seed)
        pad = "".join(c for c in alphabet if c.isdigit()) or "0"
        while len(digits) < policy.pin_length:
            digits += pad[len(digits) % len(pad)]
        return digits[: policy.pin_length]

    password = re.sub(r"\s", "", seed)
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)

    if not has_upper and sum(c.islower() for c in password) > 1:
        index = next(i for i, c in enumerate(password) if c.islower())
        password = password[:index] + password[index].upper() + password[index + 1:]
    elif not has_lower and sum(c.isupper() for c in password) > 1:
        index = max(i for i, c in enumerate(password) if c.isupper())
        password = password[:index] + password[index].lower() + password[index + 1:]

    rules = policy.config["password_policy"]
    if rules.get("require_uppercase") and not any(c.isupper() for c in password):
        password += _first_of(alphabet, str.isupper, "X")
    if rules.get("require_lowercase") and not any(c.islower() for c in password):
        password += _first_of(alphabet, str.islower, "k")
    if rules.get("require_digit") and not any(c.isdigit() for c in password):
        password += _first_of(alphabet, str.isdigit, "7")
    if rules.get("require_special") and not re.search(r"[^A-Za-z0-9]", password):
        password += _first_of(alphabet, lambda c: not c.isalnum(), "!")

    position = 0
    while len(password) < policy.min_password_length:
        password += alphabet[position % len(alphabet)]
        position += 1
    return password


def normalize_email(value: str) -> Optional[str]:
    """Best-effort cleanup of a malformed address; None when still invalid."""
    candidate = value.strip().lower()
    if candidate.startswith("mailto:"):
        candidate = candidate[len("mailto:"):]
    candidate = re.sub(r"\s+", "", candidate).strip("<>").rstrip(".")
    candidate = re.sub(r"@+", "@", candidate).replace(",", ".")
    candidate = re.sub(r"\.{2,}", ".", candidate)
    return candidate if EMAIL_PATTERN.match(candidate) else None


def propose_fixes(recoverable_errors: Iterable[RecoverableError]) -> FixMap:
    """
    Propose field fixes for recoverable errors.

    Only errors of a fixable type produce a proposal; rows without any
    proposal are left out of the result and stay unfixed.
    """
    fixes: FixMap = {}
    for error in recoverable_errors:
        if error.error_type not in FIXABLE_TYPES:
            continue

        proposed: List[FieldFix] = []
        if error.error_type == RecoverableErrorType.PASSWORD_WEAK:
            proposed.append(
                FieldFix(
                    field_name=FieldName.PASSWORD,
                    strategy=FixStrategy.DERIVE_PASSWORD,
                    reason="derive a compliant password",
                )
            )
        elif error.error_type == RecoverableErrorType.EMAIL_FORMAT:
            normalized = normalize_email(error.rejected_value or "")
            if normalized:
                proposed.append(
                    FieldFix(field_name=FieldName.EMAIL, value=normalized, reason="normalize email")
                )
        elif error.error_type == RecoverableErrorType.MANAGER_NOT_FOUND:
            proposed.extend(
                FieldFix(field_name=field, strategy=FixStrategy.CLEAR, reason="remove manager reference")
                for field in (FieldName.MANAGER_EMPLOYEE_ID, FieldName.MANAGER_PERSON_ID)
            )

        if proposed:
            row_fixes = fixes.setdefault(error.row_identifier, [])
            known = {(f.field_name, f.strategy) for f in row_fixes}
            row_fixes.extend(f for f in proposed if (f.field_name, f.strategy) not in known)

    return fixes


def apply_fixes(record: CandidateRecord, fixes: List[FieldFix], policy: ImportPolicy) -> CandidateRecord:
    """Return a copy of the record with the fixes applied."""
    values: Dict[FieldName, Optional[str]] = {}
    for fix in fixes:
        if fix.strategy == FixStrategy.CLEAR:
            values[fix.field_name] = None
        elif fix.strategy == FixStrategy.DERIVE_PASSWORD:
            seed = record.password.get_secret_value() if record.password else ""
            values[FieldName.PASSWORD] = derive_password(seed, policy, pin=record.requires_pin_only)
        else:
            values[fix.field_name] = fix.value
    return record.with_values(values)


def recommended_action(error: RecoverableError) -> str:
    return RECOMMENDED_ACTIONS.get(error.error_type, "Review error details and fix data accordingly")


def recovery_suggestions(
    recoverable_errors: Iterable[RecoverableError],
) -> Tuple[List[RecoverableError], List[RecoverableError]]:
    """Split errors into (auto-fixable, manual)."""
    auto_fixable, manual = [], []
    for error in recoverable_errors:
        (auto_fixable if error.error_type in FIXABLE_TYPES else manual).append(error)
    return auto_fixable, manual


def build_error_report(
    recoverable_errors: List[RecoverableError],
    critical_errors: List[CriticalError],
) -> ErrorReport:
    """Summarize an execution's errors with per-row actions and run-level advice."""
    counts = Counter(e.error_type.value for e in recoverable_errors)
    counts.update(e.error_type.value for e in critical_errors)
    auto_fixable, manual = recovery_suggestions(recoverable_errors)

    recommendations = []
    if critical_errors:
        recommendations.append(
            "Critical errors detected: contact a system administrator before retrying"
        )
    by_type = Counter(e.error_type for e in recoverable_errors)
    if by_type[RecoverableErrorType.PASSWORD_WEAK]:
        recommendations.append(
            f"{by_type[RecoverableErrorType.PASSWORD_WEAK]} password errors can be auto-fixed "
            "by enabling the auto-fix passwords option"
        )
    if by_type[RecoverableErrorType.EMAIL_FORMAT]:
        recommendations.append(
            f"{by_type[RecoverableErrorType.EMAIL_FORMAT]} email format errors may be fixed by normalization"
        )
    if by_type[RecoverableErrorType.DUPLICATE]:
        recommendations.append(
            f"{by_type[RecoverableErrorType.DUPLICATE]} duplicate users can be resolved "
            "by enabling update mode or removing duplicate entries"
        )
    if by_type[RecoverableErrorType.MANAGER_NOT_FOUND]:
        recommendations.append(
            f"{by_type[RecoverableErrorType.MANAGER_NOT_FOUND]} manager relationship errors: "
            "import managers first"
        )
    if len(recoverable_errors) > 5:
        recommendations.append(
            "Consider splitting large imports into smaller batches for better error management"
        )

    return ErrorReport(
        total_recoverable_errors=len(recoverable_errors),
        total_critical_errors=len(critical_errors),
        error_categories=dict(counts),
        recommended_actions={e.row_identifier: recommended_action(e) for e in recoverable_errors},
        auto_fixable_rows=sorted({e.row_identifier for e in auto_fixable}),
        manual_fix_rows=sorted({e.row_identifier for e in manual}),
        recommendations=recommendations,
    )
