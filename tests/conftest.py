"""
Shared fixtures for the reconciliation engine tests.
"""

import pytest

from recon_engine.audit.ledger import AuditLedger
from recon_engine.engine.directory import JsonDirectoryStore
from recon_engine.engine.policy import ImportPolicy
from recon_engine.models import Actor
from recon_engine.service import ReconciliationService

# Minimum bcrypt cost keeps password hashing fast in tests
FAST_POLICY = {"password_policy": {"bcrypt_rounds": 4}}

SAMPLE_CSV = (
    "employee_id,name,email,role,department,manager_employee_id\n"
    "E100,Ann Lee,ann.lee@example.com,employee,Sales,M1\n"
    "M1,Mia Boss,mia.boss@example.com,manager,Finance,\n"
    "E101,,nobody@example.com,employee,Sales,\n"
)


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: end-to-end tests across several components")


@pytest.fixture
def policy():
    """Import policy with cheap password hashing."""
    return ImportPolicy(overrides=FAST_POLICY)


@pytest.fixture
def directory():
    """In-memory directory holding one existing manager."""
    store = JsonDirectoryStore()
    store.create({
        "employee_id": "M1",
        "name": "Mia Boss",
        "email": "mia.boss@example.com",
        "role": "manager",
        "department": "Operations",
        "user_type": "office",
        "requires_pin_only": False,
    })
    return store


@pytest.fixture
def ledger(tmp_path, policy):
    return AuditLedger(tmp_path / "audit", policy)


@pytest.fixture
def service(directory, ledger, policy):
    return ReconciliationService(directory, ledger, policy)


@pytest.fixture
def actor():
    return Actor(user_id="admin-1", user_name="Alex Admin", user_email="alex@example.com")


@pytest.fixture
def sample_csv():
    return SAMPLE_CSV.encode("utf-8")
