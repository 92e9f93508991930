"""Vault exceptions for Ledger Vault field encryption."""


class VaultError(Exception):
    """Base exception for vault operations."""

    pass


class VaultLockedError(VaultError):
    """Raised when a key is needed but the session is locked."""

    def __init__(self, message: str = "Encryption is locked. Unlock with your passphrase first."):
        super().__init__(message)


class SessionExpiredError(VaultError):
    """Raised when the key session has timed out."""

    def __init__(self, message: str = "Session has expired. Please unlock again."):
        super().__init__(message)


class VaultNotFoundError(VaultError):
    """Raised when encryption metadata is missing for a user."""

    def __init__(self, user_id: str = ""):
        message = f"Encryption is not enabled for user: {user_id}" if user_id else "Encryption is not enabled."
        super().__init__(message)


class VaultAlreadyExistsError(VaultError):
    """Raised when enabling encryption twice."""

    def __init__(self, message: str = "Encryption is already enabled."):
        super().__init__(message)


class VaultCorruptedError(VaultError):
    """Raised when persisted encryption metadata cannot be parsed."""

    def __init__(self, message: str = "Encryption metadata is corrupted."):
        super().__init__(message)


class InvalidPassphrase(VaultError):
    """Raised when a passphrase violates the length policy."""

    def __init__(self, message: str = "Passphrase must be between 8 and 128 characters."):
        super().__init__(message)


class KeyDerivationFailed(VaultError):
    """Raised when the PBKDF2 primitive itself fails."""

    def __init__(self, message: str = "Failed to derive encryption key."):
        super().__init__(message)


class EncryptionFailed(VaultError):
    """Raised when sealing a value fails."""

    def __init__(self, message: str = "Failed to encrypt value."):
        super().__init__(message)


class DecryptionFailed(VaultError):
    """Raised on authentication failure: wrong key, corruption or tampering."""

    def __init__(self, message: str = "Failed to decrypt value. The key may be wrong or the data corrupted."):
        super().__init__(message)


class SaltMismatch(VaultError):
    """Raised when the passphrase is right but stored data uses another salt."""

    def __init__(
        self,
        message: str = "Key derivation succeeded but stored data could not be decrypted. "
        "The stored salt does not match the data.",
    ):
        super().__init__(message)


class InvalidRecoveryCodeFormat(VaultError):
    """Raised when a recovery code is not 12 symbols of the recovery alphabet."""

    def __init__(self, message: str = "Recovery code must look like XXXX-XXXX-XXXX."):
        super().__init__(message)


class RecoveryCodeNotFound(VaultError):
    """Raised when no vault entry matches a recovery code."""

    def __init__(self, message: str = "Recovery code not recognised."):
        super().__init__(message)


class EncryptionVerificationFailed(VaultError):
    """Raised when a record is not fully encrypted after encryption."""

    def __init__(self, message: str = "Record was not fully encrypted."):
        super().__init__(message)


class ConcurrentOperationError(VaultError):
    """Raised when rotation and recovery-code regeneration overlap."""

    def __init__(self, running: str = "", requested: str = ""):
        if running and requested:
            message = f"Cannot start {requested} while {running} is in progress."
        else:
            message = "Another encryption operation is in progress."
        super().__init__(message)


class TooManyUnlockAttempts(VaultError):
    """Raised once the unlock attempt limit has been reached."""

    def __init__(self, message: str = "Too many failed unlock attempts. Reset the session to try again."):
        super().__init__(message)


class StorageError(VaultError):
    """Document store failure (read or batch write)."""

    pass
