"""Vault configuration for Ledger Vault field encryption."""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class VaultConfig:
    """Configuration for vault encryption operations."""

    # Key derivation
    pbkdf2_iterations: int = 100_000
    salt_size: int = 16  # 128 bits
    key_size: int = 32  # 256 bits for AES-256
    iv_size: int = 12  # 96 bits for AES-GCM

    # Passphrase policy
    passphrase_min_length: int = 8
    passphrase_max_length: int = 128

    # Recovery
    recovery_code_count: int = 10

    # Unlock rate limit (consecutive failures)
    max_unlock_attempts: int = 30

    # Batch engines
    batch_size: int = 50
    verify_sample_size: int = 5

    # Session management
    session_timeout_minutes: int = 0  # 0 = lives until locked

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """
        Load configuration from environment variables.

        Environment variables:
            VAULT_PBKDF2_ITERATIONS: PBKDF2 iteration count (default: 100000)
            VAULT_BATCH_SIZE: Records per engine batch (default: 50)
            VAULT_MAX_UNLOCK_ATTEMPTS: Failures before lock-out (default: 30)
            VAULT_SESSION_TIMEOUT: Idle timeout in minutes (default: 0)
        """
        config = cls()

        if iterations := os.getenv("VAULT_PBKDF2_ITERATIONS"):
            config.pbkdf2_iterations = int(iterations)

        if batch_size := os.getenv("VAULT_BATCH_SIZE"):
            config.batch_size = int(batch_size)

        if attempts := os.getenv("VAULT_MAX_UNLOCK_ATTEMPTS"):
            config.max_unlock_attempts = int(attempts)

        if timeout := os.getenv("VAULT_SESSION_TIMEOUT"):
            config.session_timeout_minutes = int(timeout)

        return config


# Global configuration instance
_config: Optional[VaultConfig] = None


def get_vault_config() -> VaultConfig:
    """Get the global vault configuration."""
    global _config
    if _config is None:
        _config = VaultConfig.from_env()
    return _config


def set_vault_config(config: Optional[VaultConfig]) -> None:
    """Set the global vault configuration (None reloads from the environment)."""
    global _config
    _config = config
