"""
Reconciliation Engine Core.

Import policy, directory storage and record validation. The executor,
auto-fix advisor and retry coordinator live in their own modules.
"""

from .directory import DirectoryStore, JsonDirectoryStore
from .policy import ImportPolicy
from .validator import RecordValidator

__all__ = [
    "DirectoryStore",
    "ImportPolicy",
    "JsonDirectoryStore",
    "RecordValidator",
]
