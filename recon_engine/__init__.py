"""
Bulk Identity Reconciliation Engine

Ingests tabular user records (CSV uploads or scheduled remote feeds),
reconciles them against a user directory, and performs controlled
create/update imports with partial-failure tolerance, auto-fix and retry,
and a reversible audit ledger.
"""

__version__ = "1.0.0"
__author__ = "Reconciliation Engine Team"
__email__ = "team@example.com"

from .audit.ledger import AuditLedger
from .engine.directory import JsonDirectoryStore
from .engine.policy import ImportPolicy
from .service import ReconciliationService

__all__ = [
    "AuditLedger",
    "ImportPolicy",
    "JsonDirectoryStore",
    "ReconciliationService",
]
