"""Ledger Vault - Field-level encryption for personal-finance records."""

__version__ = "0.1.0"

from .vault import EncryptionManager, KeySession, VaultError

__all__ = [
    "__version__",
    "EncryptionManager",
    "KeySession",
    "VaultError",
]
