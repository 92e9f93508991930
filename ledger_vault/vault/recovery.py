"""Recovery codes that escrow the main passphrase.

Each of the ten codes derives its own key (PBKDF2 over a shared recovery
salt) and seals a copy of the main passphrase. Only the SHA-256 digest of a
code is stored, so a code can be matched to its entry without storing it.

Code format: ``XXXX-XXXX-XXXX`` over a 32-symbol alphabet without the
ambiguous characters 0, O, I and 1.
"""

import re
import secrets
from dataclasses import dataclass, field
from typing import Optional

from ..utils.hash import hash_string, verify_string_hash
from .config import VaultConfig, get_vault_config
from .crypto import KeyDerivation, ValueCipher, b64encode
from .exceptions import (
    DecryptionFailed,
    InvalidRecoveryCodeFormat,
    RecoveryCodeNotFound,
    VaultCorruptedError,
)

RECOVERY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
GROUP_SIZES = (4, 4, 4)
CODE_LENGTH = sum(GROUP_SIZES)

_CODE_RE = re.compile(f"^[{RECOVERY_ALPHABET}]{{{CODE_LENGTH}}}$")


@dataclass
class RecoveryVaultEntry:
    """One escrow entry: code digest and the passphrase sealed under that code."""

    code_hash: str
    encrypted_passphrase: str


@dataclass
class RecoveryBundle:
    """
    A freshly generated recovery vault.

    ``codes`` are shown to the user once and never persisted; ``salt`` and
    ``entries`` are written to the user's root record together.
    """

    codes: list[str]
    salt: bytes
    entries: list[RecoveryVaultEntry] = field(default_factory=list)

    @property
    def hashes(self) -> list[str]:
        return [entry.code_hash for entry in self.entries]

    @property
    def encrypted_main_codes(self) -> list[str]:
        return [entry.encrypted_passphrase for entry in self.entries]

    def to_fields(self) -> dict:
        """Fields for the user's root record."""
        return {
            "recoveryCodeSalt": b64encode(self.salt),
            "recoveryCodeHashes": self.hashes,
            "encryptedMainCodes": self.encrypted_main_codes,
        }


def generate_code() -> str:
    """Generate one recovery code with a CSPRNG."""
    groups = [
        "".join(secrets.choice(RECOVERY_ALPHABET) for _ in range(size))
        for size in GROUP_SIZES
    ]
    return "-".join(groups)


def generate_codes(count: Optional[int] = None) -> list[str]:
    """Generate distinct recovery codes."""
    count = count or get_vault_config().recovery_code_count
    codes: list[str] = []
    while len(codes) < count:
        code = generate_code()
        if code not in codes:
            codes.append(code)
    return codes


def normalize_code(code: str) -> str:
    """
    Normalize user input to the canonical ``XXXX-XXXX-XXXX`` form.

    Whitespace and dashes are dropped and case is ignored.

    Raises:
        InvalidRecoveryCodeFormat: If the result is not 12 alphabet symbols
    """
    if not isinstance(code, str):
        raise InvalidRecoveryCodeFormat()

    compact = re.sub(r"[\s-]+", "", code).upper()
    if not _CODE_RE.match(compact):
        raise InvalidRecoveryCodeFormat()

    groups = []
    start = 0
    for size in GROUP_SIZES:
        groups.append(compact[start:start + size])
        start += size
    return "-".join(groups)


def looks_like_recovery_code(code: str) -> bool:
    """Check whether input can be normalized to a recovery code."""
    try:
        normalize_code(code)
    except InvalidRecoveryCodeFormat:
        return False
    return True


def hash_code(code: str) -> str:
    """Base64 SHA-256 digest of a normalized code."""
    return hash_string(normalize_code(code))


def verify(candidate: str, stored_hash: str) -> bool:
    """
    Check a candidate code against a stored digest.

    Malformed candidates simply do not match.
    """
    try:
        normalized = normalize_code(candidate)
    except InvalidRecoveryCodeFormat:
        return False
    return verify_string_hash(normalized, stored_hash)


def generate(
    main_passphrase: str,
    count: Optional[int] = None,
    config: Optional[VaultConfig] = None,
) -> RecoveryBundle:
    """
    Generate a complete recovery vault for a passphrase.

    Args:
        main_passphrase: Passphrase to escrow
        count: Number of codes (default: from config)
        config: Vault configuration for key derivation (uses global if not provided)

    Returns:
        RecoveryBundle with codes, shared salt and one entry per code
    """
    KeyDerivation.validate_passphrase(main_passphrase, config)

    codes = generate_codes(count or (config.recovery_code_count if config else None))
    salt = KeyDerivation.generate_salt(config=config)

    entries = []
    for code in codes:
        code_key = KeyDerivation.derive_unchecked(code, salt, config=config)
        entries.append(
            RecoveryVaultEntry(
                code_hash=hash_code(code),
                encrypted_passphrase=ValueCipher(code_key).encrypt(main_passphrase),
            )
        )

    return RecoveryBundle(codes=codes, salt=salt, entries=entries)


def find_entry(code: str, entries: list[RecoveryVaultEntry]) -> RecoveryVaultEntry:
    """
    Find the vault entry for a code.

    Raises:
        InvalidRecoveryCodeFormat: If the code is malformed
        RecoveryCodeNotFound: If no entry matches
    """
    normalized = normalize_code(code)
    for entry in entries:
        if verify_string_hash(normalized, entry.code_hash):
            return entry
    raise RecoveryCodeNotFound()


def recover_passphrase(
    code: str,
    salt: bytes,
    entries: list[RecoveryVaultEntry],
    config: Optional[VaultConfig] = None,
) -> str:
    """
    Open the escrowed main passphrase with a recovery code.

    Args:
        code: Recovery code as typed by the user
        salt: Shared recovery salt
        entries: Stored vault entries
        config: Vault configuration for key derivation (uses global if not provided)

    Returns:
        The main passphrase

    Raises:
        InvalidRecoveryCodeFormat: If the code is malformed
        RecoveryCodeNotFound: If no entry matches
        DecryptionFailed: If the escrowed passphrase cannot be opened
    """
    if not salt:
        raise VaultCorruptedError("Recovery salt is missing")

    entry = find_entry(code, entries)
    code_key = KeyDerivation.derive_unchecked(normalize_code(code), salt, config=config)
    try:
        return ValueCipher(code_key).decrypt(entry.encrypted_passphrase)
    except DecryptionFailed as e:
        raise DecryptionFailed(f"Could not open escrowed passphrase: {e}") from e
