"""Shared pytest fixtures for Ledger Vault tests."""

from pathlib import Path

import pytest


USER_ID = "user-1"
PASSPHRASE = "correct-horse-battery"


@pytest.fixture(autouse=True)
def fast_vault_config():
    """Use few PBKDF2 iterations so tests stay fast."""
    from ledger_vault.vault.config import VaultConfig, set_vault_config
    from ledger_vault.vault.session import SessionManager

    set_vault_config(VaultConfig(pbkdf2_iterations=1_000))
    yield
    set_vault_config(None)
    SessionManager.reset_instance()


@pytest.fixture
def user_id() -> str:
    return USER_ID


@pytest.fixture
def passphrase() -> str:
    return PASSPHRASE


@pytest.fixture
def key() -> bytes:
    """A derived key for record-level tests."""
    from ledger_vault.vault.crypto import KeyDerivation

    return KeyDerivation.derive_key(PASSPHRASE, b"\x01" * 16)


@pytest.fixture
def other_key() -> bytes:
    """A second, unrelated key."""
    from ledger_vault.vault.crypto import KeyDerivation

    return KeyDerivation.derive_key("a-different-passphrase", b"\x02" * 16)


@pytest.fixture
def store():
    """Create an empty in-memory document store."""
    from ledger_vault.vault.storage import InMemoryDocumentStore

    return InMemoryDocumentStore()


@pytest.fixture
def seeded_store(store):
    """Store with plaintext records across every collection a user owns."""
    base = f"users/{USER_ID}"
    store.put(base, {"displayName": "Test User"})

    store.put(f"{base}/expenses/e1", {"amount": 25.5, "description": "Groceries", "category": "Food"})
    store.put(f"{base}/expenses/e2", {"amount": 12, "description": "Coffee beans", "category": "Food"})
    store.put(f"{base}/incomes/i1", {"amount": 3000, "description": "Salary"})
    store.put(f"{base}/budgets/b1", {"amount": 400, "month": "2024-05", "category": "Food"})
    store.put(f"{base}/recurringTransactions/r1", {
        "amount": 9.99,
        "description": "Streaming",
        "frequency": "monthly",
        "nextDueDate": "2024-06-01",
    })
    store.put(f"{base}/loans/l1", {
        "initialAmount": 10000,
        "amountRemaining": 7500.25,
        "interestRate": 4.5,
        "lender": "Credit Union",
    })
    store.put(f"{base}/loans/l1/repayments/p1", {"amount": 250, "notes": "May payment", "loanId": "l1"})

    store.put("debts/d1", {
        "amount": 40,
        "description": "Concert tickets",
        "fromUserName": "Alex",
        "toUserName": "Sam",
        "createdBy": USER_ID,
    })
    store.put("debts/d2", {
        "amount": 15,
        "description": "Someone else's debt",
        "fromUserName": "Kim",
        "toUserName": "Lee",
        "createdBy": "user-2",
    })

    store.put("groups/g1", {"name": "Flat", "members": [USER_ID, "user-2"]})
    store.put("groups/g1/sharedExpenses/s1", {
        "amount": 90,
        "description": "Utilities",
        "paidBy": USER_ID,
        "splits": [{"userId": USER_ID, "amount": 45}, {"userId": "user-2", "amount": 45}],
    })
    store.put("groups/g1/sharedExpenses/s2", {
        "amount": 30,
        "description": "Paid by flatmate",
        "paidBy": "user-2",
        "splits": [],
    })
    store.put("groups/g2", {"name": "Not mine", "members": ["user-3"]})
    store.put("groups/g2/sharedExpenses/s3", {"amount": 5, "description": "Other group", "paidBy": USER_ID})
    return store


# Records the seeded user owns and the engines should touch
OWNED_PATHS = [
    f"users/{USER_ID}/expenses/e1",
    f"users/{USER_ID}/expenses/e2",
    f"users/{USER_ID}/incomes/i1",
    f"users/{USER_ID}/budgets/b1",
    f"users/{USER_ID}/recurringTransactions/r1",
    f"users/{USER_ID}/loans/l1",
    f"users/{USER_ID}/loans/l1/repayments/p1",
    "debts/d1",
    "groups/g1/sharedExpenses/s1",
]


@pytest.fixture
def owned_paths() -> list[str]:
    return list(OWNED_PATHS)


@pytest.fixture
def session():
    from ledger_vault.vault.session import KeySession

    return KeySession(user_id=USER_ID)


@pytest.fixture
def salt_cache():
    from ledger_vault.vault.session import SaltCache

    return SaltCache()


@pytest.fixture
def manager(seeded_store, session, salt_cache):
    """Encryption manager over the seeded store (encryption not yet enabled)."""
    from ledger_vault.vault.vault_manager import EncryptionManager

    return EncryptionManager(seeded_store, USER_ID, session=session, salt_cache=salt_cache)


@pytest.fixture
async def encrypted_manager(manager):
    """Manager for a user with encryption enabled and all records migrated."""
    result = await manager.enable_encryption(PASSPHRASE)
    manager.recovery_codes = result.recovery_codes
    return manager


@pytest.fixture
def store_file(tmp_path: Path) -> Path:
    return tmp_path / "store.json"
