"""Unlocking a user's key session from a passphrase or a recovery code.

The resolver never trusts a derived key on its own: a key is accepted only
after it opens real ciphertext from the user's records. Because the salt is
kept both locally and on the user's root record, the local copy is tried
first and the remote copy second; whichever works is written back over the
other.
"""

import logging
from enum import Enum
from typing import Optional

from .config import VaultConfig, get_vault_config
from .crypto import KeyDerivation, ValueCipher, b64encode
from .detection import is_encrypted_value
from .exceptions import (
    DecryptionFailed,
    SaltMismatch,
    TooManyUnlockAttempts,
    VaultCorruptedError,
    VaultError,
    VaultNotFoundError,
)
from .field_maps import SPLITS_FIELD, detect_entity_type, get_field_map
from .metadata import EncryptionMetadata, user_path
from .migration import user_collections
from .recovery import looks_like_recovery_code, recover_passphrase
from .session import KeySession, SaltCache
from .storage import DocumentStore, DocumentUpdate

logger = logging.getLogger(__name__)


class UnlockState(str, Enum):
    """Unlock resolver states."""

    LOCKED = "locked"
    ATTEMPTING = "attempting"
    UNLOCKED = "unlocked"
    LOCKED_OUT = "locked-out"


class KeyCheck(str, Enum):
    """Outcome of testing a candidate key."""

    OPENS_DATA = "opens-data"
    OPENS_CHECK_ONLY = "opens-check-only"
    FAILS = "fails"


def _opens(cipher: ValueCipher, ciphertext: str) -> bool:
    try:
        cipher.decrypt(ciphertext)
    except DecryptionFailed:
        return False
    return True


def check_key(key: bytes, samples: list[str], check_value: Optional[str]) -> KeyCheck:
    """
    Test a candidate key against stored ciphertext.

    Args:
        key: Derived key
        samples: Ciphertext fields from the user's records (may be empty)
        check_value: The metadata key-check value, if present

    Returns:
        KeyCheck; the key passes if it opens any sample. A key with nothing
        to test against is accepted.
    """
    cipher = ValueCipher(key)
    check_ok = check_value is not None and _opens(cipher, check_value)

    if samples:
        if any(_opens(cipher, sample) for sample in samples):
            return KeyCheck.OPENS_DATA
        return KeyCheck.OPENS_CHECK_ONLY if check_ok else KeyCheck.FAILS

    if check_value is not None:
        return KeyCheck.OPENS_DATA if check_ok else KeyCheck.FAILS

    logger.warning("No encrypted data to verify the key against; accepting derived key")
    return KeyCheck.OPENS_DATA


def _ciphertexts(document_data: dict, entity_type: str) -> list[str]:
    found = []
    for name in get_field_map(entity_type):
        value = document_data.get(name)
        if name == SPLITS_FIELD and isinstance(value, list):
            found.extend(
                split["amount"] for split in value
                if isinstance(split, dict) and is_encrypted_value(split.get("amount"))
            )
        elif is_encrypted_value(value):
            found.append(value)
    return found


async def find_sample_ciphertexts(
    store: DocumentStore,
    user_id: str,
    limit: int = 5,
    page_size: int = 50,
) -> list[str]:
    """
    Collect ciphertext fields from the user's records.

    Takes at most one field per record, from up to ``limit`` records, in
    collection order.
    """
    samples: list[str] = []
    for target in await user_collections(store, user_id):
        cursor = None
        while True:
            page = await store.list(target.path, cursor, page_size)
            for document in page:
                if target.owner_field and document.data.get(target.owner_field) != user_id:
                    continue
                entity_type = detect_entity_type(document.data, document.path)
                found = _ciphertexts(document.data, entity_type)
                if found:
                    samples.append(found[0])
                    if len(samples) >= limit:
                        return samples
            if len(page) < page_size:
                break
            cursor = page[-1].id
    return samples


class UnlockResolver:
    """
    Resolves a passphrase or recovery code into a verified key.

    Usage:
        resolver = UnlockResolver(store, user_id, session, salt_cache)
        await resolver.unlock("correct-horse-battery")
    """

    def __init__(
        self,
        store: DocumentStore,
        user_id: str,
        session: KeySession,
        salt_cache: Optional[SaltCache] = None,
        config: Optional[VaultConfig] = None,
    ):
        self.store = store
        self.user_id = user_id
        self.session = session
        self.salt_cache = salt_cache or SaltCache()
        self.config = config or get_vault_config()
        self.state = UnlockState.UNLOCKED if session.is_unlocked else UnlockState.LOCKED
        self.attempts = 0

    @property
    def remaining_attempts(self) -> int:
        return max(self.config.max_unlock_attempts - self.attempts, 0)

    def reset(self) -> None:
        """Clear the failure counter and leave the locked-out state."""
        self.attempts = 0
        if self.state == UnlockState.LOCKED_OUT:
            self.state = UnlockState.LOCKED

    async def unlock(self, code: str) -> KeySession:
        """
        Unlock the session with a passphrase or a recovery code.

        Args:
            code: Main passphrase, or a recovery code in any case/spacing

        Returns:
            The unlocked session

        Raises:
            TooManyUnlockAttempts: If the attempt limit was already reached
            InvalidPassphrase: If the input is neither a valid passphrase nor a recovery code
            SaltMismatch: If the passphrase is right but the data uses another salt
            DecryptionFailed: If the passphrase or recovery code is wrong
            RecoveryCodeNotFound: If a recovery code matches no vault entry
        """
        if self.state == UnlockState.LOCKED_OUT or self.attempts >= self.config.max_unlock_attempts:
            self.state = UnlockState.LOCKED_OUT
            raise TooManyUnlockAttempts()

        self.state = UnlockState.ATTEMPTING
        try:
            key, salt = await self._resolve(code)
        except VaultError:
            self.attempts += 1
            if self.attempts >= self.config.max_unlock_attempts:
                self.state = UnlockState.LOCKED_OUT
                logger.warning("Unlock locked out for user %s after %d failures", self.user_id, self.attempts)
            else:
                self.state = UnlockState.LOCKED
            raise

        self.session.install(key, salt)
        self.attempts = 0
        self.state = UnlockState.UNLOCKED
        logger.info("Unlocked key session for user %s", self.user_id)
        return self.session

    async def _resolve(self, code: str) -> tuple[bytes, bytes]:
        metadata = EncryptionMetadata.from_record(await self.store.get(user_path(self.user_id)))
        # A disabled vault keeps its salts, so records left encrypted stay reachable
        if not metadata.is_encrypted and metadata.encryption_salt is None:
            raise VaultNotFoundError(self.user_id)

        samples = await find_sample_ciphertexts(
            self.store, self.user_id, self.config.verify_sample_size, self.config.batch_size
        )

        try:
            return await self._try_passphrase(code, metadata, samples)
        except VaultError:
            if not looks_like_recovery_code(code):
                raise

        logger.info("Passphrase did not unlock user %s; trying recovery vault", self.user_id)
        passphrase = recover_passphrase(
            code, metadata.recovery_code_salt, metadata.recovery_entries, self.config
        )
        return await self._try_passphrase(passphrase, metadata, samples)

    async def _try_passphrase(
        self,
        passphrase: str,
        metadata: EncryptionMetadata,
        samples: list[str],
    ) -> tuple[bytes, bytes]:
        KeyDerivation.validate_passphrase(passphrase, self.config)

        local_salt = self.salt_cache.get(self.user_id)
        remote_salt = metadata.encryption_salt
        if local_salt is None and remote_salt is None:
            raise VaultCorruptedError("No encryption salt found locally or on the user record")

        outcomes = []

        if local_salt is not None:
            key = KeyDerivation.derive_key(passphrase, local_salt, config=self.config)
            outcome = check_key(key, samples, metadata.encryption_check)
            if outcome == KeyCheck.OPENS_DATA:
                if remote_salt != local_salt:
                    logger.warning("Remote salt differs from local cache; rewriting remote salt")
                    await self.store.batch_write([
                        DocumentUpdate(
                            path=user_path(self.user_id),
                            fields={"encryptionSalt": b64encode(local_salt)},
                        )
                    ])
                return key, local_salt
            outcomes.append(outcome)

        if remote_salt is not None and remote_salt != local_salt:
            key = KeyDerivation.derive_key(passphrase, remote_salt, config=self.config)
            outcome = check_key(key, samples, metadata.encryption_check)
            if outcome == KeyCheck.OPENS_DATA:
                self.salt_cache.set(self.user_id, remote_salt)
                return key, remote_salt
            outcomes.append(outcome)

        if KeyCheck.OPENS_CHECK_ONLY in outcomes:
            raise SaltMismatch()
        if len(outcomes) == 2:
            # Both salts were tried and disagree with each other
            raise SaltMismatch(
                "Neither the local nor the remote salt opens the stored data. "
                "The salts disagree; the stored data may use a different salt."
            )
        raise DecryptionFailed("Incorrect passphrase or recovery code")
