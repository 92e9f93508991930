"""Field-level encryption for Ledger Vault.

Encrypts the sensitive fields of finance records with a key derived from a
user's passphrase, escrows the passphrase under one-time recovery codes, and
moves existing records between plaintext, encrypted and re-keyed states.

Usage:
    # Turn encryption on
    from ledger_vault.vault import EncryptionManager
    manager = EncryptionManager(store, user_id)
    result = await manager.enable_encryption(passphrase)

    # Later sessions
    await manager.unlock(passphrase_or_recovery_code)
    sealed = await manager.seal_record("users/u1/expenses/e1", record)

    # Re-key everything
    await manager.rotate_key(new_passphrase)
"""

# Exceptions
from .exceptions import (
    ConcurrentOperationError,
    DecryptionFailed,
    EncryptionFailed,
    EncryptionVerificationFailed,
    InvalidPassphrase,
    InvalidRecoveryCodeFormat,
    KeyDerivationFailed,
    RecoveryCodeNotFound,
    SaltMismatch,
    SessionExpiredError,
    StorageError,
    TooManyUnlockAttempts,
    VaultAlreadyExistsError,
    VaultCorruptedError,
    VaultError,
    VaultLockedError,
    VaultNotFoundError,
)

# Configuration
from .config import (
    VaultConfig,
    get_vault_config,
    set_vault_config,
)

# Crypto primitives
from .crypto import (
    KeyDerivation,
    SealedValue,
    ValueCipher,
    decrypt_value,
    encrypt_value,
)

# Records
from .detection import (
    has_any_encrypted_field,
    has_fully_encrypted_fields,
    is_encrypted_value,
    is_field_encrypted,
)
from .field_maps import (
    FIELD_MAPS,
    detect_entity_type,
    get_field_map,
)
from .fields import (
    DocumentFieldEncryptor,
    decrypt_document,
    encrypt_document,
)

# Storage
from .storage import (
    DocumentStore,
    DocumentUpdate,
    InMemoryDocumentStore,
    JsonDocumentStore,
    StoredDocument,
)

# Session management
from .session import (
    KeySession,
    SaltCache,
    SessionManager,
    get_key_session,
    get_session_manager,
    is_unlocked,
    lock_all_sessions,
    lock_session,
)

# Recovery and metadata
from .metadata import EncryptionMetadata
from .recovery import RecoveryBundle, RecoveryVaultEntry

# Unlocking
from .unlock import UnlockResolver, UnlockState

# Engines
from .migration import (
    EngineProgress,
    EngineResult,
    EngineStatus,
    MigrationEngine,
    ResumePoint,
    UnencryptionEngine,
    migrate_user_data,
    unencrypt_user_data,
)
from .rotation import (
    KeyRotationEngine,
    RotationResult,
    RotationState,
)

# Encryption manager
from .vault_manager import (
    EncryptionManager,
    EncryptionStatus,
    EnableResult,
    IntegrityReport,
    get_encryption_manager,
)

__all__ = [
    # Exceptions
    "VaultError",
    "VaultLockedError",
    "SessionExpiredError",
    "VaultNotFoundError",
    "VaultAlreadyExistsError",
    "VaultCorruptedError",
    "InvalidPassphrase",
    "KeyDerivationFailed",
    "EncryptionFailed",
    "DecryptionFailed",
    "SaltMismatch",
    "InvalidRecoveryCodeFormat",
    "RecoveryCodeNotFound",
    "EncryptionVerificationFailed",
    "ConcurrentOperationError",
    "TooManyUnlockAttempts",
    "StorageError",
    # Configuration
    "VaultConfig",
    "get_vault_config",
    "set_vault_config",
    # Crypto
    "KeyDerivation",
    "SealedValue",
    "ValueCipher",
    "encrypt_value",
    "decrypt_value",
    # Records
    "FIELD_MAPS",
    "get_field_map",
    "detect_entity_type",
    "is_encrypted_value",
    "is_field_encrypted",
    "has_fully_encrypted_fields",
    "has_any_encrypted_field",
    "DocumentFieldEncryptor",
    "encrypt_document",
    "decrypt_document",
    # Storage
    "DocumentStore",
    "DocumentUpdate",
    "StoredDocument",
    "InMemoryDocumentStore",
    "JsonDocumentStore",
    # Session
    "KeySession",
    "SaltCache",
    "SessionManager",
    "get_session_manager",
    "get_key_session",
    "is_unlocked",
    "lock_session",
    "lock_all_sessions",
    # Recovery
    "EncryptionMetadata",
    "RecoveryBundle",
    "RecoveryVaultEntry",
    # Unlock
    "UnlockResolver",
    "UnlockState",
    # Engines
    "EngineProgress",
    "EngineResult",
    "EngineStatus",
    "ResumePoint",
    "MigrationEngine",
    "UnencryptionEngine",
    "migrate_user_data",
    "unencrypt_user_data",
    "KeyRotationEngine",
    "RotationResult",
    "RotationState",
    # Encryption manager
    "EncryptionManager",
    "EncryptionStatus",
    "EnableResult",
    "IntegrityReport",
    "get_encryption_manager",
]
