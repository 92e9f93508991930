"""Utility modules for Ledger Vault.

Provides common utilities:
- Logging configuration
- Hashing for recovery-code digests
"""

from .hash import (
    hash_bytes,
    hash_string,
    verify_string_hash,
)
from .logging import (
    ProgressLogger,
    console,
    get_logger,
    setup_logging,
)


__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "console",
    "ProgressLogger",
    # Hashing
    "hash_bytes",
    "hash_string",
    "verify_string_hash",
]
