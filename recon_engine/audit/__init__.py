"""
Audit Package.

Append-only ledger of import operations with rollback support.
"""

from .ledger import AuditLedger

__all__ = ["AuditLedger"]
