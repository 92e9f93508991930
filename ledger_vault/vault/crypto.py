"""Core cryptographic primitives for field encryption.

Uses the cryptography library for:
- PBKDF2-HMAC-SHA256 key derivation (100,000 iterations)
- AES-256-GCM sealing of individual field values

Sealed values travel as ``base64(iv) ":" base64(ciphertext)``, where the
ciphertext carries the 16-byte GCM tag appended by AESGCM.
"""

import base64
import binascii
import os
import re
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import VaultConfig, get_vault_config
from .exceptions import (
    DecryptionFailed,
    EncryptionFailed,
    InvalidPassphrase,
    KeyDerivationFailed,
)

# Key derivation parameters
PBKDF2_ITERATIONS = 100_000
SALT_SIZE = 16  # 128 bits
KEY_SIZE = 32  # 256 bits for AES-256
IV_SIZE = 12  # 96 bits for AES-GCM
TAG_SIZE = 16  # GCM authentication tag

# Shape of a sealed value on the wire
SEPARATOR = ":"
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+=*$")

# Known plaintext for round-trip self tests and the metadata key check
SELF_TEST_PLAINTEXT = "LEDGER_VAULT_KEY_CHECK_V1"


def b64encode(data: bytes) -> str:
    """Standard base64 as text."""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Strict base64 decode; raises ValueError on bad input."""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64: {e}") from e


@dataclass(frozen=True)
class SealedValue:
    """
    A value sealed with AES-GCM.

    The in-memory, discriminated form of a ciphertext field. ``parse``
    returns None for anything that is not shaped like ciphertext, so
    plaintext and sealed values never need to be told apart by callers.
    """

    iv: bytes
    ciphertext: bytes

    def encode(self) -> str:
        """Serialize to the ``iv:ciphertext`` wire form."""
        return f"{b64encode(self.iv)}{SEPARATOR}{b64encode(self.ciphertext)}"

    @classmethod
    def looks_sealed(cls, value: object) -> bool:
        """True if the value decodes to a well-formed IV and ciphertext."""
        return cls.parse(value) is not None

    @classmethod
    def parse(cls, value: object) -> Optional["SealedValue"]:
        """
        Parse the wire form, or return None if it is not ciphertext.

        Both parts must be strict base64, the IV must decode to exactly
        ``IV_SIZE`` bytes and the ciphertext must hold at least the GCM tag.
        """
        if not isinstance(value, str):
            return None

        parts = value.split(SEPARATOR)
        if len(parts) != 2:
            return None

        iv_part, ct_part = parts
        if not (_BASE64_RE.match(iv_part) and _BASE64_RE.match(ct_part)):
            return None

        try:
            iv, ciphertext = b64decode(iv_part), b64decode(ct_part)
        except ValueError:
            return None

        if len(iv) != IV_SIZE or len(ciphertext) < TAG_SIZE:
            return None
        return cls(iv=iv, ciphertext=ciphertext)


class KeyDerivation:
    """
    Derives encryption keys from passphrases using PBKDF2.

    Every method takes an optional ``VaultConfig``; without one the global
    configuration applies.
    """

    @staticmethod
    def generate_salt(size: Optional[int] = None, config: Optional[VaultConfig] = None) -> bytes:
        """Generate cryptographically secure random salt."""
        return os.urandom(size or (config or get_vault_config()).salt_size)

    @staticmethod
    def validate_passphrase(passphrase: str, config: Optional[VaultConfig] = None) -> None:
        """
        Enforce the passphrase length policy.

        Raises:
            InvalidPassphrase: If shorter than the minimum or longer than the maximum
        """
        config = config or get_vault_config()
        if not isinstance(passphrase, str) or len(passphrase) < config.passphrase_min_length:
            raise InvalidPassphrase(
                f"Passphrase must be at least {config.passphrase_min_length} characters"
            )
        if len(passphrase) > config.passphrase_max_length:
            raise InvalidPassphrase(
                f"Passphrase must be at most {config.passphrase_max_length} characters"
            )

    @staticmethod
    def derive_unchecked(
        secret: str,
        salt: bytes,
        iterations: Optional[int] = None,
        config: Optional[VaultConfig] = None,
    ) -> bytes:
        """
        Derive a 256-bit key with PBKDF2-HMAC-SHA256, without policy checks.

        Used directly for recovery codes, which are machine generated.

        Args:
            secret: Passphrase or recovery code
            salt: Random salt (stored alongside the encrypted data)
            iterations: PBKDF2 iteration count (default: from config)
            config: Vault configuration (uses global if not provided)

        Returns:
            32-byte derived key
        """
        config = config or get_vault_config()
        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=config.key_size,
                salt=salt,
                iterations=iterations or config.pbkdf2_iterations,
            )
            return kdf.derive(secret.encode("utf-8"))
        except Exception as e:
            raise KeyDerivationFailed(f"PBKDF2 derivation failed: {e}") from e

    @staticmethod
    def derive_key(
        passphrase: str,
        salt: bytes,
        iterations: Optional[int] = None,
        config: Optional[VaultConfig] = None,
    ) -> bytes:
        """
        Derive a 256-bit AES-GCM key from a passphrase.

        Deterministic: the same passphrase and salt always give the same key.
        A wrong passphrase still derives a key; only decryption can tell.

        Raises:
            InvalidPassphrase: If the passphrase violates the length policy
            KeyDerivationFailed: If the primitive is unavailable
        """
        KeyDerivation.validate_passphrase(passphrase, config)
        return KeyDerivation.derive_unchecked(passphrase, salt, iterations, config)


class ValueCipher:
    """
    AES-256-GCM encryption of single field values.

    Each call to encrypt uses a fresh random IV, so sealing the same
    plaintext twice gives different ciphertexts.
    """

    def __init__(self, key: bytes):
        """
        Initialize with a 256-bit key.

        Args:
            key: 32-byte encryption key
        """
        if len(key) != KEY_SIZE:
            raise ValueError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
        self.aesgcm = AESGCM(key)

    def seal(self, plaintext: Union[str, int, float]) -> SealedValue:
        """Seal a value; numbers are sealed as their string form."""
        iv = os.urandom(IV_SIZE)
        try:
            ciphertext = self.aesgcm.encrypt(iv, str(plaintext).encode("utf-8"), None)
        except Exception as e:
            raise EncryptionFailed(f"AES-GCM encryption failed: {e}") from e
        return SealedValue(iv=iv, ciphertext=ciphertext)

    def open(self, sealed: SealedValue) -> str:
        """Open a sealed value."""
        if len(sealed.iv) != IV_SIZE:
            raise DecryptionFailed(f"Invalid IV length. Expected {IV_SIZE} bytes, got {len(sealed.iv)}")
        try:
            plaintext = self.aesgcm.decrypt(sealed.iv, sealed.ciphertext, None)
        except InvalidTag:
            raise DecryptionFailed("Authentication failed - wrong key or corrupted data")
        except Exception as e:
            raise DecryptionFailed(f"AES-GCM decryption failed: {e}") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailed("Decrypted value is not valid UTF-8") from e

    def encrypt(self, plaintext: Union[str, int, float]) -> str:
        """
        Encrypt a value.

        Args:
            plaintext: String or number to encrypt

        Returns:
            ``iv:ciphertext`` string
        """
        return self.seal(plaintext).encode()

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a value.

        Args:
            encrypted: ``iv:ciphertext`` string

        Returns:
            Decrypted plaintext

        Raises:
            DecryptionFailed: On malformed input or authentication failure
        """
        if not isinstance(encrypted, str):
            raise DecryptionFailed("Encrypted value must be a string")

        parts = encrypted.split(SEPARATOR)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise DecryptionFailed('Invalid encrypted value format. Expected "iv:ciphertext"')

        try:
            sealed = SealedValue(iv=b64decode(parts[0]), ciphertext=b64decode(parts[1]))
        except ValueError as e:
            raise DecryptionFailed(f"Invalid base64 encoding in encrypted value: {e}") from e

        return self.open(sealed)

    def self_test(self) -> bool:
        """Round-trip a known value through this key."""
        try:
            return self.decrypt(self.encrypt(SELF_TEST_PLAINTEXT)) == SELF_TEST_PLAINTEXT
        except (EncryptionFailed, DecryptionFailed):
            return False


def encrypt_value(plaintext: Union[str, int, float], key: bytes) -> str:
    """Encrypt a single value with a derived key."""
    return ValueCipher(key).encrypt(plaintext)


def decrypt_value(encrypted: str, key: bytes) -> str:
    """Decrypt a single value with a derived key."""
    return ValueCipher(key).decrypt(encrypted)
