"""Encryption metadata stored on the user's root record.

Persisted shape (``users/{userId}``):

    isEncrypted: bool
    encryptionSalt: base64(16 bytes)
    recoveryCodeSalt: base64(16 bytes)
    recoveryCodeHashes: string[10]   # SHA-256, base64
    encryptedMainCodes: string[10]   # "iv:ciphertext" per recovery code
    encryptionCheck: "iv:ciphertext" of a known value under the main key
    encryptionEnabledAt: ISO timestamp
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .crypto import b64decode, b64encode
from .exceptions import VaultCorruptedError
from .recovery import RecoveryBundle, RecoveryVaultEntry


def user_path(user_id: str) -> str:
    """Path of a user's root record."""
    return f"users/{user_id}"


@dataclass
class EncryptionMetadata:
    """
    Encryption state of one user.

    Contains no secrets: salts, code digests, and values sealed under keys
    that are never stored.
    """

    is_encrypted: bool = False
    encryption_salt: Optional[bytes] = None
    recovery_code_salt: Optional[bytes] = None
    recovery_code_hashes: list[str] = field(default_factory=list)
    encrypted_main_codes: list[str] = field(default_factory=list)
    encryption_check: Optional[str] = None
    encryption_enabled_at: Optional[str] = None

    @property
    def recovery_entries(self) -> list[RecoveryVaultEntry]:
        """Vault entries paired up from the two parallel lists."""
        return [
            RecoveryVaultEntry(code_hash=h, encrypted_passphrase=c)
            for h, c in zip(self.recovery_code_hashes, self.encrypted_main_codes)
        ]

    def with_recovery(self, bundle: RecoveryBundle) -> "EncryptionMetadata":
        """Copy with the recovery vault replaced."""
        return EncryptionMetadata(
            is_encrypted=self.is_encrypted,
            encryption_salt=self.encryption_salt,
            recovery_code_salt=bundle.salt,
            recovery_code_hashes=bundle.hashes,
            encrypted_main_codes=bundle.encrypted_main_codes,
            encryption_check=self.encryption_check,
            encryption_enabled_at=self.encryption_enabled_at,
        )

    def to_fields(self) -> dict[str, Any]:
        """Convert to root-record fields."""
        return {
            "isEncrypted": self.is_encrypted,
            "encryptionSalt": b64encode(self.encryption_salt) if self.encryption_salt else None,
            "recoveryCodeSalt": b64encode(self.recovery_code_salt) if self.recovery_code_salt else None,
            "recoveryCodeHashes": list(self.recovery_code_hashes),
            "encryptedMainCodes": list(self.encrypted_main_codes),
            "encryptionCheck": self.encryption_check,
            "encryptionEnabledAt": self.encryption_enabled_at,
        }

    @classmethod
    def from_record(cls, data: Optional[Mapping[str, Any]]) -> "EncryptionMetadata":
        """Create from a root record (a missing record means not encrypted)."""
        if not data:
            return cls()

        try:
            encryption_salt = data.get("encryptionSalt")
            recovery_salt = data.get("recoveryCodeSalt")
            hashes = list(data.get("recoveryCodeHashes") or [])
            escrow = list(data.get("encryptedMainCodes") or [])
            metadata = cls(
                is_encrypted=data.get("isEncrypted") is True,
                encryption_salt=b64decode(encryption_salt) if encryption_salt else None,
                recovery_code_salt=b64decode(recovery_salt) if recovery_salt else None,
                recovery_code_hashes=hashes,
                encrypted_main_codes=escrow,
                encryption_check=data.get("encryptionCheck"),
                encryption_enabled_at=data.get("encryptionEnabledAt"),
            )
        except (ValueError, TypeError) as e:
            raise VaultCorruptedError(f"Invalid encryption metadata: {e}")

        if len(hashes) != len(escrow):
            raise VaultCorruptedError("Recovery code hashes and escrow entries do not match")

        return metadata
