"""
Tests for the bundled directory store.
"""

import pytest

from recon_engine.engine.directory import DirectoryIndex, JsonDirectoryStore, public_fields
from recon_engine.engine.errors import (
    DirectoryUnavailableError,
    RecordConflictError,
    RecordNotFoundError,
)
from recon_engine.models import IdentityKey, IdentityKind


class TestJsonDirectoryStore:
    """Test cases for JsonDirectoryStore."""

    def test_find_by_identity_key(self, directory):
        found = directory.find_by_identity_key(IdentityKey(kind=IdentityKind.EMAIL, value=" Mia.Boss@Example.com"))

        assert found["employee_id"] == "M1"
        assert directory.find_by_identity_key(IdentityKey(kind=IdentityKind.EMPLOYEE_ID, value="m1")) is None

    def test_unique_keys_are_enforced(self, directory):
        with pytest.raises(RecordConflictError) as exc_info:
            directory.create({"employee_id": "E1", "name": "Other", "email": "MIA.BOSS@example.com"})

        assert exc_info.value.field_name == "email"
        assert len(directory.snapshot()) == 1

    def test_update_and_delete(self, directory):
        user_id = directory.create({"employee_id": "E1", "name": "Ann"})

        directory.update(user_id, {"name": "Ann Lee", "id": "ignored"})
        assert directory.get(user_id)["name"] == "Ann Lee"

        directory.delete(user_id)
        assert directory.get(user_id) is None
        with pytest.raises(RecordNotFoundError):
            directory.update(user_id, {"name": "x"})

    def test_update_removes_named_keys(self, directory):
        user_id = directory.create({"employee_id": "E1", "name": "Ann", "position": "Lead"})

        directory.update(user_id, {"name": "Ann Lee"}, remove=["position", "id"])

        record = directory.get(user_id)
        assert "position" not in record
        assert record["name"] == "Ann Lee"
        assert record["id"] == user_id

    def test_snapshot_is_a_copy(self, directory):
        directory.snapshot()[0]["name"] = "Changed"

        assert directory.snapshot()[0]["name"] == "Mia Boss"

    def test_persistence(self, tmp_path):
        path = tmp_path / "directory.json"
        user_id = JsonDirectoryStore(path).create({"employee_id": "E1", "name": "Ann"})

        assert JsonDirectoryStore(path).get(user_id)["name"] == "Ann"

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "directory.json"
        path.write_text("{broken", encoding="utf-8")

        with pytest.raises(DirectoryUnavailableError):
            JsonDirectoryStore(path)

    def test_public_fields(self):
        record = {"id": "1", "created_at": "t", "updated_at": "t", "password_hash": "h", "name": "Ann"}

        assert public_fields(record) == {"name": "Ann"}


class TestDirectoryIndex:
    def test_lookup_by_each_key(self, directory):
        index = DirectoryIndex(directory.snapshot())

        assert len(index) == 1
        assert index.find(IdentityKey(kind=IdentityKind.EMPLOYEE_ID, value="M1")) is not None
        assert index.find(IdentityKey(kind=IdentityKind.USERNAME, value="mia")) is None
