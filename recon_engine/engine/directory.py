"""
Directory store for the reconciliation engine.

The engine treats the user directory as an external collaborator reached
through the DirectoryStore interface. JsonDirectoryStore is the bundled
implementation: in-memory state with optional JSON file persistence,
enforcing the same unique keys a production directory would.
"""

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ..models import DirectoryRecord, IdentityKey, IdentityKind, new_id, utc_now
from .errors import (
    DirectoryUnavailableError,
    RecordConflictError,
    RecordNotFoundError,
)

logger = logging.getLogger(__name__)

# Stored credential material; never copied into audit snapshots
SECRET_KEYS = frozenset({"password_hash", "pin_hash"})
# Bookkeeping keys maintained by the store itself
SYSTEM_KEYS = frozenset({"id", "created_at", "updated_at"})
UNIQUE_KEYS = ("employee_id", "person_id", "email", "username")


def _normalize(kind: str, value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    value = str(value).strip()
    if kind in (IdentityKind.EMAIL.value, IdentityKind.USERNAME.value):
        value = value.lower()
    return value


def public_fields(record: DirectoryRecord) -> Dict[str, Any]:
    """Record fields safe to store in the audit ledger."""
    return {k: v for k, v in record.items() if k not in SECRET_KEYS and k not in SYSTEM_KEYS}


class DirectoryStore(ABC):
    """Persistence calls the engine makes against the user directory."""

    @abstractmethod
    def find_by_identity_key(self, key: IdentityKey) -> Optional[DirectoryRecord]:
        pass

    @abstractmethod
    def get(self, user_id: str) -> Optional[DirectoryRecord]:
        pass

    @abstractmethod
    def create(self, fields: Dict[str, Any]) -> str:
        """Create a record and return its id."""
        pass

    @abstractmethod
    def update(self, user_id: str, fields: Dict[str, Any], remove: Iterable[str] = ()) -> None:
        """Merge fields into a record and drop the keys named in remove."""
        pass

    @abstractmethod
    def delete(self, user_id: str) -> None:
        pass

    @abstractmethod
    def snapshot(self) -> List[DirectoryRecord]:
        """Point-in-time copy of every record."""
        pass


class DirectoryIndex:
    """
    Identity lookups over one directory snapshot.

    Built fresh for each validation pass or executor batch so rows created
    earlier in a run are visible to later ones.
    """

    def __init__(self, records: Iterable[DirectoryRecord] = ()):
        self.by_id: Dict[str, DirectoryRecord] = {}
        self._keys: Dict[tuple, DirectoryRecord] = {}
        for record in records:
            self.add(record)

    def add(self, record: DirectoryRecord) -> None:
        self.by_id[record["id"]] = record
        for kind in UNIQUE_KEYS:
            value = _normalize(kind, record.get(kind))
            if value is not None:
                self._keys[(kind, value)] = record

    def find(self, key: IdentityKey) -> Optional[DirectoryRecord]:
        return self._keys.get((key.kind.value, _normalize(key.kind.value, key.value)))

    def __len__(self) -> int:
        return len(self.by_id)


class JsonDirectoryStore(DirectoryStore):
    """
    Directory of user records.

    Provides in-memory state with optional JSON file persistence. Unique
    keys (employee_id, person_id, email, username) are enforced on every
    write; a write that would take a key owned by another record raises
    RecordConflictError.
    """

    def __init__(self, storage_path: Optional[Union[str, Path]] = None):
        """
        Initialize the directory store.

        Args:
            storage_path: Path to store records as JSON.
                         If None, records are kept in memory only.
        """
        self.storage_path = Path(storage_path) if storage_path else None
        self.records: Dict[str, DirectoryRecord] = {}
        self._lock = threading.RLock()

        if self.storage_path:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

        logger.info(
            f"Initialized JsonDirectoryStore with {'persistent' if self.storage_path else 'in-memory'} storage"
        )

    def find_by_identity_key(self, key: IdentityKey) -> Optional[DirectoryRecord]:
        wanted = _normalize(key.kind.value, key.value)
        with self._lock:
            for record in self.records.values():
                if _normalize(key.kind.value, record.get(key.kind.value)) == wanted:
                    return copy.deepcopy(record)
        return None

    def get(self, user_id: str) -> Optional[DirectoryRecord]:
        with self._lock:
            record = self.records.get(user_id)
            return copy.deepcopy(record) if record else None

    def create(self, fields: Dict[str, Any]) -> str:
        with self._lock:
            self._check_unique(fields)
            user_id = new_id()
            now = utc_now().isoformat()
            record = {k: v for k, v in fields.items() if k not in SYSTEM_KEYS}
            record.update({"id": user_id, "created_at": now, "updated_at": now})
            self.records[user_id] = record
            try:
                self._save_state()
            except DirectoryUnavailableError:
                del self.records[user_id]
                raise
        logger.info(f"Created directory record {user_id}")
        return user_id

    def update(self, user_id: str, fields: Dict[str, Any], remove: Iterable[str] = ()) -> None:
        with self._lock:
            record = self.records.get(user_id)
            if record is None:
                raise RecordNotFoundError(f"Directory record {user_id} not found")
            self._check_unique(fields, exclude_id=user_id)
            previous = copy.deepcopy(record)
            record.update({k: v for k, v in fields.items() if k not in SYSTEM_KEYS})
            removed = [k for k in remove if k not in SYSTEM_KEYS]
            for key in removed:
                record.pop(key, None)
            record["updated_at"] = utc_now().isoformat()
            try:
                self._save_state()
            except DirectoryUnavailableError:
                self.records[user_id] = previous
                raise
        logger.info(f"Updated directory record {user_id}: {sorted(set(fields) | set(removed))}")

    def delete(self, user_id: str) -> None:
        with self._lock:
            if user_id not in self.records:
                raise RecordNotFoundError(f"Directory record {user_id} not found")
            record = self.records.pop(user_id)
            try:
                self._save_state()
            except DirectoryUnavailableError:
                self.records[user_id] = record
                raise
        logger.info(f"Deleted directory record {user_id}")

    def snapshot(self) -> List[DirectoryRecord]:
        with self._lock:
            return copy.deepcopy(list(self.records.values()))

    def _check_unique(self, fields: Dict[str, Any], exclude_id: Optional[str] = None):
        for kind in UNIQUE_KEYS:
            value = _normalize(kind, fields.get(kind))
            if value is None:
                continue
            for other_id, other in self.records.items():
                if other_id != exclude_id and _normalize(kind, other.get(kind)) == value:
                    raise RecordConflictError(
                        f"{kind} '{fields.get(kind)}' is already used by another user",
                        field_name=kind,
                    )

    def _save_state(self):
        """Save current records to persistent storage."""
        if not self.storage_path:
            return

        state_data = {
            "records": self.records,
            "last_updated": utc_now().isoformat(),
        }
        tmp_path = self.storage_path.with_suffix(self.storage_path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(state_data, f, indent=2, default=str)
            tmp_path.replace(self.storage_path)
        except OSError as e:
            logger.error(f"Failed to save directory to {self.storage_path}: {e}")
            raise DirectoryUnavailableError(f"Directory store could not be written: {e}") from e

    def _load_state(self):
        """Load records from persistent storage."""
        if not self.storage_path or not self.storage_path.exists():
            return

        try:
            with open(self.storage_path, encoding="utf-8") as f:
                state_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load directory from {self.storage_path}: {e}")
            raise DirectoryUnavailableError(f"Directory store could not be read: {e}") from e

        self.records = state_data.get("records", {})
        logger.info(f"Loaded {len(self.records)} directory records from {self.storage_path}")
