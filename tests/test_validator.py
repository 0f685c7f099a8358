"""
Tests for the Record Validator.
"""

import pytest
from pydantic import SecretStr

from recon_engine.engine.validator import RecordValidator
from recon_engine.models import (
    CandidateRecord,
    CriticalErrorType,
    RecoverableErrorType,
    RowAction,
    UpsertOptions,
)


def make_record(row_number=1, **fields):
    values = {"name": "Ann Lee", "role": "employee", "email": "ann@example.com", "employee_id": "E1"}
    values.update(fields)
    if isinstance(values.get("password"), str):
        values["password"] = SecretStr(values["password"])
    return CandidateRecord(row_number=row_number, **{k: v for k, v in values.items() if v is not None})


def error_types(outcome):
    return [e.error_type for e in outcome.recoverable_errors] + [e.error_type for e in outcome.critical_errors]


class TestRowValidation:
    """Test cases for single-row rules."""

    @pytest.fixture
    def validator(self, policy):
        return RecordValidator(policy)

    @pytest.fixture
    def snapshot(self, directory):
        return directory.snapshot()

    def test_new_row_is_created(self, validator, snapshot):
        outcome = validator.validate(make_record(), snapshot)

        assert outcome.action == RowAction.CREATE
        assert outcome.errors == []

    def test_existing_row_is_updated(self, validator, snapshot):
        outcome = validator.validate(make_record(employee_id="M1", email="mia.boss@example.com"), snapshot)

        assert outcome.action == RowAction.UPDATE
        assert outcome.matched_existing_id is not None

    def test_name_required(self, validator, snapshot):
        outcome = validator.validate(make_record(name=None), snapshot)

        assert outcome.action == RowAction.SKIP
        assert outcome.intended_action == RowAction.CREATE
        assert "name required" in outcome.errors

    def test_invalid_role(self, validator, snapshot):
        outcome = validator.validate(make_record(role="boss"), snapshot)

        assert "invalid role 'boss'" in outcome.errors

    def test_office_user_needs_email(self, validator, snapshot):
        outcome = validator.validate(make_record(email=None), snapshot)

        assert "email required for office users" in outcome.errors

    def test_operational_user_needs_username(self, validator, snapshot):
        outcome = validator.validate(make_record(user_type="operational", email=None), snapshot)

        assert "username required for operational users" in outcome.errors

    def test_no_identity_key(self, validator, snapshot):
        record = CandidateRecord(row_number=1, name="Ann", role="employee", user_type="operational")

        outcome = validator.validate(record, snapshot)

        assert any(e.startswith("identity key required") for e in outcome.errors)

    def test_bad_email_is_fixable_format_error(self, validator, snapshot):
        outcome = validator.validate(make_record(email="ann@@example"), snapshot)

        assert error_types(outcome) == [RecoverableErrorType.EMAIL_FORMAT]
        assert outcome.recoverable_errors[0].rejected_value == "ann@@example"

    def test_weak_password(self, validator, snapshot):
        outcome = validator.validate(make_record(password="short"), snapshot)

        assert error_types(outcome) == [RecoverableErrorType.PASSWORD_WEAK]
        assert outcome.recoverable_errors[0].rejected_value is None

    def test_pin_must_be_four_digits(self, validator, snapshot):
        record = make_record(user_type="operational", username="op.one", email=None, password="12a4")

        outcome = validator.validate(record, snapshot)

        assert outcome.errors == ["PIN must be exactly 4 digits"]

    def test_valid_pin(self, validator, snapshot):
        record = make_record(user_type="operational", username="op.one", email=None, password="1234")

        assert validator.validate(record, snapshot).action == RowAction.CREATE

    def test_update_disabled_for_existing_user(self, validator, snapshot):
        options = UpsertOptions(update_existing=False)

        outcome = validator.validate(make_record(employee_id="M1", email="mia.boss@example.com"), snapshot, options)

        assert outcome.action == RowAction.SKIP
        assert error_types(outcome) == [RecoverableErrorType.MODE_DISABLED]
        assert outcome.recoverable_errors[0].can_retry is False


class TestIdentityMatching:
    """Test cases for identity resolution against the directory."""

    @pytest.fixture
    def validator(self, policy):
        return RecordValidator(policy)

    def test_secondary_key_owned_by_other_user_is_duplicate(self, validator, directory):
        record = make_record(employee_id="E9", email="MIA.BOSS@example.com")

        outcome = validator.validate(record, directory.snapshot())

        assert error_types(outcome) == [RecoverableErrorType.DUPLICATE]

    def test_secondary_key_matches_user_without_primary_kind(self, validator, directory):
        user_id = directory.create({"email": "legacy@example.com", "name": "Legacy", "role": "employee"})

        outcome = validator.validate(make_record(employee_id="E5", email="legacy@example.com"), directory.snapshot())

        assert outcome.action == RowAction.UPDATE
        assert outcome.matched_existing_id == user_id

    def test_person_id_in_other_company_is_critical(self, validator, directory):
        directory.create({"person_id": "P1", "name": "Other", "role": "employee", "company_code": "ACME"})
        record = make_record(employee_id=None, person_id="P1", company_code="GLOBEX")

        outcome = validator.validate(record, directory.snapshot())

        assert error_types(outcome) == [CriticalErrorType.IDENTITY_COLLISION]


class TestManagerResolution:
    """Test cases for manager references."""

    @pytest.fixture
    def validator(self, policy):
        return RecordValidator(policy)

    def test_existing_manager_resolves(self, validator, directory):
        outcome = validator.validate(make_record(manager_employee_id="M1"), directory.snapshot())

        assert outcome.manager_id is not None
        assert outcome.action == RowAction.CREATE

    def test_unknown_manager(self, validator, directory):
        outcome = validator.validate(make_record(manager_employee_id="NOPE"), directory.snapshot())

        assert error_types(outcome) == [RecoverableErrorType.MANAGER_NOT_FOUND]

    def test_manager_without_manager_role(self, validator, directory):
        directory.create({"employee_id": "E7", "name": "Peer", "role": "employee", "email": "peer@example.com"})

        outcome = validator.validate(make_record(manager_employee_id="E7"), directory.snapshot())

        assert error_types(outcome) == [RecoverableErrorType.MANAGER_NOT_FOUND]

    def test_manager_in_same_file_resolves_in_second_pass(self, validator, directory):
        records = [
            make_record(1, employee_id="E1", manager_employee_id="M2"),
            make_record(2, employee_id="M2", email="m2@example.com", role="manager"),
        ]

        validated = validator.validate_all(records, directory.snapshot())

        assert validated[0].outcome.action == RowAction.CREATE
        assert validated[0].outcome.manager_in_file is True

    def test_chain_of_in_file_managers(self, validator, directory):
        records = [
            make_record(1, employee_id="E1", manager_employee_id="M2"),
            make_record(2, employee_id="M2", email="m2@example.com", role="manager", manager_employee_id="M3"),
            make_record(3, employee_id="M3", email="m3@example.com", role="hr"),
        ]

        validated = validator.validate_all(records, directory.snapshot())

        assert [v.outcome.action for v in validated] == [RowAction.CREATE] * 3

    def test_invalid_in_file_manager_does_not_resolve(self, validator, directory):
        records = [
            make_record(1, employee_id="E1", manager_employee_id="M2"),
            make_record(2, employee_id="M2", email="not-an-email", role="manager"),
        ]

        validated = validator.validate_all(records, directory.snapshot())

        assert validated[0].outcome.action == RowAction.SKIP

    def test_manager_cycle_does_not_resolve(self, validator, directory):
        records = [
            make_record(1, employee_id="M2", email="m2@example.com", role="manager", manager_employee_id="M3"),
            make_record(2, employee_id="M3", email="m3@example.com", role="manager", manager_employee_id="M2"),
        ]

        validated = validator.validate_all(records, directory.snapshot())

        assert all(v.outcome.action == RowAction.SKIP for v in validated)


class TestInFileDuplicates:
    """Test cases for keys repeated within one file."""

    @pytest.fixture
    def validator(self, policy):
        return RecordValidator(policy)

    def test_repeated_primary_key_is_critical(self, validator, directory):
        records = [make_record(1), make_record(2, email="other@example.com")]

        validated = validator.validate_all(records, directory.snapshot())

        for item in validated:
            assert item.outcome.action == RowAction.SKIP
            assert error_types(item.outcome) == [CriticalErrorType.DUPLICATE_IN_FILE]
        assert "also on row 2" in validated[0].outcome.errors[0]

    def test_shared_email_with_different_primary_is_recoverable(self, validator, directory):
        records = [make_record(1, employee_id="E1"), make_record(2, employee_id="E2")]

        validated = validator.validate_all(records, directory.snapshot())

        for item in validated:
            assert error_types(item.outcome) == [RecoverableErrorType.DUPLICATE]
