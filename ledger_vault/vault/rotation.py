"""Key rotation as an explicit state machine.

    PRECONDITION_CHECK -> ROTATING -> VERIFYING -> COMMITTING -> DONE
                              \\           \\            \\
                               +-----------+------------+--> ROLLED_BACK

Each step that changes state registers its compensation before it runs:

- freezing the session registers "restore the previous key and salt cache"
- rotating records registers "rotate written records back to the old key"

Remote metadata (salt, recovery vault, key check) is written once, in
COMMITTING, and only after every record was re-encrypted and verified. A
rolled-back rotation therefore never publishes the new salt, and the old
passphrase and recovery codes keep working.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

from . import recovery
from .config import VaultConfig, get_vault_config
from .crypto import SELF_TEST_PLAINTEXT, KeyDerivation, ValueCipher, b64encode
from .detection import has_any_encrypted_field, has_fully_encrypted_fields
from .exceptions import (
    DecryptionFailed,
    EncryptionVerificationFailed,
    StorageError,
    VaultCorruptedError,
    VaultNotFoundError,
)
from .fields import decrypt_document, encrypt_document
from .metadata import EncryptionMetadata, user_path
from .migration import BatchEngine, EngineProgress, ProgressCallback, mapped_fields
from .session import KeySession, SaltCache
from .storage import DocumentStore, DocumentUpdate, StoredDocument
from .unlock import KeyCheck, check_key, find_sample_ciphertexts

logger = logging.getLogger(__name__)


class RotationState(str, Enum):
    """States of a key rotation."""

    PRECONDITION_CHECK = "precondition-check"
    ROTATING = "rotating"
    VERIFYING = "verifying"
    COMMITTING = "committing"
    DONE = "done"
    ROLLED_BACK = "rolled-back"


@dataclass
class RotationResult:
    """Outcome of a key rotation."""

    success: bool
    state: RotationState
    progress: EngineProgress
    message: str
    recovery_codes: list[str] = field(default_factory=list)
    already_rotated: int = 0
    reverted: Optional[EngineProgress] = None


class RotationPass(BatchEngine):
    """
    Re-encrypts records from one key to another.

    A record that does not open under the old key but does open under the
    new one was rotated by an earlier, interrupted run; it is skipped and
    counted in ``already_rotated``.
    """

    name = "rotation"

    def __init__(self, store: DocumentStore, user_id: str, old_key: bytes, new_key: bytes, **kwargs):
        super().__init__(store, user_id, **kwargs)
        self.old_key = old_key
        self.new_key = new_key
        self.already_rotated = 0

    def transform(self, document: StoredDocument, entity_type: str) -> Optional[dict[str, Any]]:
        if not has_any_encrypted_field(document.data, entity_type):
            return None

        try:
            decrypted = decrypt_document(document.data, entity_type, self.old_key, strict=True)
        except DecryptionFailed:
            try:
                decrypt_document(document.data, entity_type, self.new_key, strict=True)
            except DecryptionFailed:
                raise DecryptionFailed("Record opens under neither the old nor the new key")
            self.already_rotated += 1
            logger.warning("Record %s is already encrypted under the new key; skipping", document.path)
            return None

        reencrypted = encrypt_document(decrypted, entity_type, self.new_key)
        if not has_fully_encrypted_fields(reencrypted, entity_type, present_only=True):
            raise EncryptionVerificationFailed(
                "Encryption verification failed - record was not fully re-encrypted"
            )
        return mapped_fields(reencrypted, entity_type)

    def verify_stored(self, data: Mapping[str, Any], entity_type: str) -> bool:
        try:
            decrypt_document(data, entity_type, self.new_key, strict=True)
        except DecryptionFailed:
            return False
        return has_fully_encrypted_fields(data, entity_type, present_only=True)


Compensation = Callable[[], Awaitable[None]]


class KeyRotationEngine:
    """
    Rotates a user's key to a new passphrase.

    Usage:
        engine = KeyRotationEngine(store, user_id, session, salt_cache)
        result = await engine.rotate("new passphrase")
        if result.success:
            show(result.recovery_codes)
    """

    def __init__(
        self,
        store: DocumentStore,
        user_id: str,
        session: KeySession,
        salt_cache: Optional[SaltCache] = None,
        config: Optional[VaultConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.store = store
        self.user_id = user_id
        self.session = session
        self.salt_cache = salt_cache or SaltCache()
        self.config = config or get_vault_config()
        self.progress_callback = progress_callback
        self.state = RotationState.PRECONDITION_CHECK
        self._compensations: list[tuple[str, Compensation]] = []
        self._pass: Optional[RotationPass] = None
        self._reverted: Optional[EngineProgress] = None

    def _transition(self, state: RotationState) -> None:
        logger.info("Key rotation for user %s: %s -> %s", self.user_id, self.state.value, state.value)
        self.state = state

    def _on_rollback(self, name: str, compensation: Compensation) -> None:
        self._compensations.append((name, compensation))

    async def rotate(self, new_passphrase: str) -> RotationResult:
        """
        Re-encrypt every record under a key derived from ``new_passphrase``.

        Args:
            new_passphrase: The new main passphrase

        Returns:
            RotationResult; ``success`` is True only in state DONE

        Raises:
            ConcurrentOperationError: If another exclusive operation is running
            InvalidPassphrase: If the new passphrase violates the policy
            VaultLockedError: If the session holds no key
            VaultNotFoundError: If encryption is not enabled for the user
            VaultCorruptedError: If the session key fails its self test
        """
        with self.session.exclusive("key rotation"):
            self.state = RotationState.PRECONDITION_CHECK
            self._compensations = []
            self._pass = None
            self._reverted = None

            old_key = await self._check_preconditions(new_passphrase)
            new_salt = KeyDerivation.generate_salt(config=self.config)
            new_key = KeyDerivation.derive_key(new_passphrase, new_salt, config=self.config)

            self._freeze()
            try:
                return await self._run(new_passphrase, old_key, new_key, new_salt)
            except Exception:
                if self.state not in (RotationState.DONE, RotationState.ROLLED_BACK):
                    await self._roll_back("unexpected error")
                raise

    async def _check_preconditions(self, new_passphrase: str) -> bytes:
        KeyDerivation.validate_passphrase(new_passphrase, self.config)
        old_key = self.session.require_key()
        if not self.session.self_test():
            raise VaultCorruptedError("Session key failed its self test")

        metadata = EncryptionMetadata.from_record(await self.store.get(user_path(self.user_id)))
        if not metadata.is_encrypted:
            raise VaultNotFoundError(self.user_id)
        return old_key

    def _freeze(self) -> None:
        """Revoke the session key so nothing else writes with it mid-rotation."""
        previous_key, previous_salt = self.session.revoke()
        previous_cached_salt = self.salt_cache.get(self.user_id)

        async def restore() -> None:
            self.session.install(previous_key, previous_salt)
            if previous_cached_salt is None:
                self.salt_cache.clear(self.user_id)
            else:
                self.salt_cache.set(self.user_id, previous_cached_salt)

        self._on_rollback("restore previous key", restore)

    async def _run(self, new_passphrase: str, old_key: bytes, new_key: bytes, new_salt: bytes) -> RotationResult:
        self._transition(RotationState.ROTATING)
        rotation = RotationPass(
            self.store,
            self.user_id,
            old_key,
            new_key,
            config=self.config,
            progress_callback=self.progress_callback,
        )
        self._pass = rotation
        self._on_rollback("revert rotated records", self._revert(rotation, old_key, new_key))
        run = await rotation.run()

        self._transition(RotationState.VERIFYING)
        failure = await self._verify(run.success, rotation, new_key)
        if failure:
            return await self._roll_back(failure)

        self._transition(RotationState.COMMITTING)
        bundle = recovery.generate(new_passphrase, self.config.recovery_code_count, self.config)
        fields = {
            "encryptionSalt": b64encode(new_salt),
            "encryptionCheck": ValueCipher(new_key).encrypt(SELF_TEST_PLAINTEXT),
            **bundle.to_fields(),
        }
        try:
            await self.store.batch_write([DocumentUpdate(path=user_path(self.user_id), fields=fields)])
        except StorageError as e:
            return await self._roll_back(f"failed to write new encryption metadata: {e}")

        self.salt_cache.set(self.user_id, new_salt)
        self.session.install(new_key, new_salt)
        self._compensations = []
        self._transition(RotationState.DONE)

        progress = rotation.progress
        return RotationResult(
            success=True,
            state=self.state,
            progress=progress,
            message=f"Key rotated. {progress.succeeded} records re-encrypted, {progress.skipped} skipped.",
            recovery_codes=bundle.codes,
            already_rotated=rotation.already_rotated,
        )

    def _revert(self, rotation: RotationPass, old_key: bytes, new_key: bytes) -> Compensation:
        async def revert() -> None:
            if rotation.written == 0:
                return
            back = RotationPass(self.store, self.user_id, new_key, old_key, config=self.config)
            result = await back.run()
            self._reverted = back.progress
            if back.progress.failed:
                logger.error(
                    "Reverting rotation left %d records that do not open under the old key",
                    back.progress.failed,
                )
            elif not result.success:
                logger.error("Reverting rotation did not complete: %s", result.message)

        return revert

    async def _verify(self, run_success: bool, rotation: RotationPass, new_key: bytes) -> Optional[str]:
        """Return a failure reason, or None if the rotation can be committed."""
        progress = rotation.progress
        if not run_success:
            return "rotation did not complete"
        if progress.failed:
            return f"{progress.failed} records failed to rotate"

        samples = await find_sample_ciphertexts(
            self.store, self.user_id, self.config.verify_sample_size, self.config.batch_size
        )
        if samples and check_key(new_key, samples, None) != KeyCheck.OPENS_DATA:
            return "stored records do not open under the new key"
        return None

    async def _roll_back(self, reason: str) -> RotationResult:
        logger.error("Key rotation for user %s failed: %s; rolling back", self.user_id, reason)

        for name, compensation in reversed(self._compensations):
            try:
                await compensation()
            except StorageError as e:
                logger.error("Rollback step '%s' failed: %s", name, e)
        self._compensations = []
        self._transition(RotationState.ROLLED_BACK)

        rotation = self._pass
        return RotationResult(
            success=False,
            state=self.state,
            progress=rotation.progress if rotation else EngineProgress(),
            message=f"Key rotation failed and was rolled back: {reason}. Your previous passphrase still works.",
            already_rotated=rotation.already_rotated if rotation else 0,
            reverted=self._reverted,
        )
