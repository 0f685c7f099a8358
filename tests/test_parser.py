"""
Tests for the record parsers and loader.
"""

import json

import pytest

from recon_engine.engine.policy import ImportPolicy
from recon_engine.ingestion.formats.csv_loader import CSVRecordParser
from recon_engine.ingestion.formats.json_records import JSONRecordParser, json_array_to_csv
from recon_engine.ingestion.record_loader import RecordLoader
from recon_engine.models import FieldName


class TestCSVRecordParser:
    """Test cases for CSVRecordParser."""

    @pytest.fixture
    def parser(self, policy):
        return CSVRecordParser(policy)

    def test_parses_rows_in_file_order(self, parser, sample_csv):
        result = parser.parse(sample_csv)

        assert result.ok
        assert len(result) == 3
        records = result.records()
        assert [r.row_number for r in records] == [1, 2, 3]
        assert records[0].employee_id == "E100"
        assert records[0].manager_employee_id == "M1"
        assert records[2].name is None

    def test_result_can_be_iterated_twice(self, parser, sample_csv):
        result = parser.parse(sample_csv)

        assert [r.employee_id for r in result] == [r.employee_id for r in result]

    def test_header_aliases_and_case(self, parser):
        data = b"Employee Number,Full Name,Email_Address,ROLE,Dept\nE1,Ann,ann@example.com,Manager,Ops\n"

        record = parser.parse(data).records()[0]

        assert record.employee_id == "E1"
        assert record.name == "Ann"
        assert record.email == "ann@example.com"
        assert record.role == "manager"
        assert record.department == "Ops"

    def test_byte_order_mark_is_ignored(self, parser):
        data = "\ufeffemployee_id,name,role,email\nE1,Ann,employee,ann@example.com\n".encode("utf-8")

        result = parser.parse(data)

        assert result.ok
        assert result.records()[0].employee_id == "E1"

    def test_blank_values_become_none(self, parser):
        data = b"employee_id,name,role,email,department\nE1,Ann,employee,ann@example.com,   \n"

        record = parser.parse(data).records()[0]

        assert record.department is None

    def test_password_is_kept_out_of_raw_columns(self, parser):
        data = b"employee_id,name,role,email,password\nE1,Ann,employee,ann@example.com,Secret123\n"

        record = parser.parse(data).records()[0]

        assert record.field_value(FieldName.PASSWORD) == "Secret123"
        assert "password" not in record.raw
        assert "Secret123" not in repr(record)

    def test_ragged_row_is_reported_on_the_row(self, parser):
        data = b"employee_id,name,role,email\nE1,Ann,employee\nE2,Bob,employee,bob@example.com\n"

        result = parser.parse(data)

        assert result.ok
        assert result.records()[0].parse_errors == ["expected 4 columns, found 3"]
        assert result.parse_errors() == ["Row 1: expected 4 columns, found 3"]

    def test_missing_required_columns(self, parser):
        result = parser.parse(b"employee_id,email\nE1,ann@example.com\n")

        assert not result.ok
        assert result.global_errors == ["Missing required columns: name, role"]

    def test_missing_identity_column(self, parser):
        result = parser.parse(b"name,role\nAnn,employee\n")

        assert not result.ok
        assert result.global_errors[0].startswith("Missing identity column")

    def test_empty_file(self, parser):
        assert parser.parse(b"").global_errors == ["File is empty"]
        assert parser.parse(b"\n ,\n").global_errors == ["File is empty"]

    def test_header_only(self, parser):
        result = parser.parse(b"employee_id,name,role\n")

        assert result.global_errors == ["CSV must have a header row and at least one data row"]

    def test_invalid_utf8(self, parser):
        result = parser.parse(b"employee_id,name,role\nE1,\xff\xfe,employee\n")

        assert not result.ok
        assert "UTF-8" in result.global_errors[0]

    def test_file_size_limit(self):
        parser = CSVRecordParser(ImportPolicy(overrides={"file_limits": {"max_bytes": 20}}))

        result = parser.parse(b"employee_id,name,role\nE1,Ann,employee\n")

        assert not result.ok
        assert "File size exceeds" in result.global_errors[0]

    def test_row_limit(self):
        parser = CSVRecordParser(ImportPolicy(overrides={"file_limits": {"max_rows": 1}}))

        result = parser.parse(b"employee_id,name,role\nE1,Ann,employee\nE2,Bob,employee\n")

        assert not result.ok
        assert "maximum is 1" in result.global_errors[0]


class TestJSONRecords:
    """Test cases for JSON array input."""

    def test_json_array_to_csv_uses_union_of_keys(self):
        payload = [{"employee_id": "E1", "name": "Ann"}, {"employee_id": "E2", "role": "hr"}]

        text = json_array_to_csv(payload).decode("utf-8")

        assert text.splitlines()[0] == "employee_id,name,role"
        assert text.splitlines()[2] == "E2,,hr"

    def test_rejects_non_array(self):
        with pytest.raises(ValueError):
            json_array_to_csv({"employee_id": "E1"})

    def test_parses_json_bytes(self, policy):
        payload = [{"employee_id": "E1", "name": "Ann", "role": "employee", "email": "ann@example.com"}]

        result = JSONRecordParser(policy).parse(json.dumps(payload).encode("utf-8"))

        assert result.ok
        assert result.records()[0].email == "ann@example.com"

    def test_invalid_json(self, policy):
        result = JSONRecordParser(policy).parse(b"[{not json")

        assert not result.ok
        assert result.global_errors[0].startswith("Invalid JSON")


class TestRecordLoader:
    """Test cases for format detection."""

    @pytest.fixture
    def loader(self, policy):
        return RecordLoader(policy)

    def test_detects_csv(self, loader, sample_csv):
        assert loader.load(sample_csv).ok

    def test_detects_json(self, loader):
        result = loader.load('[{"username": "op1", "name": "Op", "role": "employee", "user_type": "operational"}]')

        assert result.ok
        assert result.records()[0].requires_pin_only

    def test_empty_input(self, loader):
        assert loader.load(b"   ").global_errors == ["File is empty"]

    def test_load_file_missing(self, loader, tmp_path):
        with pytest.raises(FileNotFoundError):
            loader.load_file(tmp_path / "missing.csv")

    def test_load_file(self, loader, tmp_path, sample_csv):
        path = tmp_path / "users.csv"
        path.write_bytes(sample_csv)

        assert len(loader.load_file(path)) == 3
