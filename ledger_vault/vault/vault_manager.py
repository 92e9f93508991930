"""Encryption manager for high-level per-user operations.

Ties the pieces together for one user: enabling and disabling encryption,
unlocking, sealing and opening records on their way to and from the store,
running the batch engines, rotating the key and regenerating recovery codes.
"""

import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from . import recovery
from .config import VaultConfig, get_vault_config
from .crypto import SELF_TEST_PLAINTEXT, KeyDerivation, ValueCipher
from .detection import has_any_encrypted_field, is_field_encrypted
from .exceptions import (
    DecryptionFailed,
    EncryptionVerificationFailed,
    VaultAlreadyExistsError,
    VaultCorruptedError,
    VaultError,
    VaultNotFoundError,
)
from .field_maps import detect_entity_type, get_field_map
from .fields import decrypt_document, encrypt_document
from .metadata import EncryptionMetadata, user_path
from .migration import (
    EngineResult,
    MigrationEngine,
    ProgressCallback,
    UnencryptionEngine,
    user_collections,
)
from .rotation import KeyRotationEngine, RotationResult
from .session import KeySession, SaltCache, get_key_session
from .storage import DocumentStore, DocumentUpdate
from .unlock import UnlockResolver

logger = logging.getLogger(__name__)


@dataclass
class EncryptionStatus:
    """Snapshot of a user's encryption state."""

    user_id: str
    is_encrypted: bool
    is_unlocked: bool
    has_salt: bool
    recovery_codes: int
    enabled_at: Optional[str]
    remaining_unlock_attempts: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "is_encrypted": self.is_encrypted,
            "is_unlocked": self.is_unlocked,
            "has_salt": self.has_salt,
            "recovery_codes": self.recovery_codes,
            "enabled_at": self.enabled_at,
            "remaining_unlock_attempts": self.remaining_unlock_attempts,
        }


@dataclass
class EnableResult:
    """Outcome of enabling encryption."""

    recovery_codes: list[str]
    migration: Optional[EngineResult] = None


@dataclass
class IntegrityReport:
    """Result of checking that every encrypted record opens."""

    records_verified: int = 0
    records_failed: int = 0
    records_plaintext: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.records_failed == 0


class EncryptionManager:
    """
    Manages field encryption for one user.

    Usage:
        manager = EncryptionManager(store, user_id)

        if await manager.is_encrypted():
            await manager.unlock(passphrase)
        else:
            result = await manager.enable_encryption(passphrase)
            show(result.recovery_codes)

        sealed = await manager.seal_record(path, record)
    """

    def __init__(
        self,
        store: DocumentStore,
        user_id: str,
        session: Optional[KeySession] = None,
        salt_cache: Optional[SaltCache] = None,
        config: Optional[VaultConfig] = None,
    ):
        """
        Initialize the manager for a user.

        Args:
            store: Document store holding the user's records
            user_id: User identifier
            session: Key session (default: the user's session from the global registry)
            salt_cache: Local salt cache (default: in-memory)
            config: Vault configuration (uses global if not provided)
        """
        self.store = store
        self.user_id = user_id
        self.session = session or get_key_session(user_id)
        self.salt_cache = salt_cache or SaltCache()
        self.config = config or get_vault_config()
        self.resolver = UnlockResolver(store, user_id, self.session, self.salt_cache, self.config)

    async def load_metadata(self) -> EncryptionMetadata:
        """Load encryption metadata from the user's root record."""
        return EncryptionMetadata.from_record(await self.store.get(user_path(self.user_id)))

    async def is_encrypted(self) -> bool:
        return (await self.load_metadata()).is_encrypted

    async def status(self) -> EncryptionStatus:
        metadata = await self.load_metadata()
        return EncryptionStatus(
            user_id=self.user_id,
            is_encrypted=metadata.is_encrypted,
            is_unlocked=self.session.is_unlocked,
            has_salt=metadata.encryption_salt is not None,
            recovery_codes=len(metadata.recovery_code_hashes),
            enabled_at=metadata.encryption_enabled_at,
            remaining_unlock_attempts=self.resolver.remaining_attempts,
        )

    async def _require_encrypted(self) -> EncryptionMetadata:
        metadata = await self.load_metadata()
        if not metadata.is_encrypted:
            raise VaultNotFoundError(self.user_id)
        return metadata

    async def enable_encryption(
        self,
        passphrase: str,
        migrate_existing: bool = True,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> EnableResult:
        """
        Turn on encryption for the user.

        Generates the main salt, derives the key, builds the recovery vault
        and writes all metadata in one batch. The session is left unlocked.

        Args:
            passphrase: Main passphrase
            migrate_existing: Encrypt the user's existing records afterwards
            progress_callback: Receives migration progress

        Returns:
            EnableResult with the recovery codes to show the user once

        Raises:
            VaultAlreadyExistsError: If encryption is already enabled
            InvalidPassphrase: If the passphrase violates the policy
        """
        if await self.is_encrypted():
            raise VaultAlreadyExistsError()

        KeyDerivation.validate_passphrase(passphrase, self.config)

        salt = KeyDerivation.generate_salt(config=self.config)
        key = KeyDerivation.derive_key(passphrase, salt, config=self.config)
        bundle = recovery.generate(passphrase, self.config.recovery_code_count, self.config)

        metadata = EncryptionMetadata(
            is_encrypted=True,
            encryption_salt=salt,
            encryption_check=ValueCipher(key).encrypt(SELF_TEST_PLAINTEXT),
            encryption_enabled_at=datetime.now().isoformat(),
        ).with_recovery(bundle)

        await self.store.batch_write([DocumentUpdate(path=user_path(self.user_id), fields=metadata.to_fields())])

        self.salt_cache.set(self.user_id, salt)
        self.session.install(key, salt)
        self.resolver.reset()
        logger.info("Encryption enabled for user %s", self.user_id)

        result = EnableResult(recovery_codes=bundle.codes)
        if migrate_existing:
            result.migration = await self.migrate(progress_callback)
        return result

    async def unlock(self, code: str) -> KeySession:
        """Unlock with the main passphrase or a recovery code."""
        return await self.resolver.unlock(code)

    def lock(self) -> bool:
        """
        Drop the key from memory.

        Returns:
            True if a key was held
        """
        key, _ = self.session.revoke()
        if key is not None:
            logger.info("Locked key session for user %s", self.user_id)
        return key is not None

    def reset_unlock_attempts(self) -> None:
        self.resolver.reset()

    async def disable(self) -> None:
        """
        Turn encryption off.

        Records that are still encrypted stay encrypted; run ``unencrypt``
        first to get them back as plaintext. The salts and recovery vault
        are kept so those records can still be opened later.
        """
        await self._require_encrypted()
        await self.store.batch_write([
            DocumentUpdate(path=user_path(self.user_id), fields={"isEncrypted": False})
        ])
        self.lock()
        self.salt_cache.clear(self.user_id)
        logger.info("Encryption disabled for user %s", self.user_id)

    async def migrate(self, progress_callback: Optional[ProgressCallback] = None) -> EngineResult:
        """Encrypt every plaintext record of the user."""
        key = self.session.require_key()
        engine = MigrationEngine(
            self.store, self.user_id, key, config=self.config, progress_callback=progress_callback
        )
        return await engine.run()

    async def unencrypt(self, progress_callback: Optional[ProgressCallback] = None) -> EngineResult:
        """Decrypt every record of the user back to plaintext."""
        key = self.session.require_key()
        engine = UnencryptionEngine(
            self.store, self.user_id, key, config=self.config, progress_callback=progress_callback
        )
        return await engine.run()

    async def rotate_key(
        self,
        new_passphrase: str,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> RotationResult:
        """Re-encrypt everything under a new passphrase (see KeyRotationEngine)."""
        engine = KeyRotationEngine(
            self.store,
            self.user_id,
            self.session,
            self.salt_cache,
            config=self.config,
            progress_callback=progress_callback,
        )
        return await engine.rotate(new_passphrase)

    async def regenerate_recovery_codes(self, passphrase: str) -> list[str]:
        """
        Replace all recovery codes.

        The old codes stop working as soon as the new vault is written.

        Args:
            passphrase: Current main passphrase, checked against the unlocked key

        Returns:
            The new recovery codes

        Raises:
            ConcurrentOperationError: If a key rotation is running
            VaultLockedError: If the session is locked
            DecryptionFailed: If the passphrase does not match the unlocked key
        """
        with self.session.exclusive("recovery code regeneration"):
            key = self.session.require_key()
            metadata = await self._require_encrypted()

            salt = self.session.salt or metadata.encryption_salt
            if salt is None:
                raise VaultCorruptedError("No encryption salt available")
            if not hmac.compare_digest(KeyDerivation.derive_key(passphrase, salt, config=self.config), key):
                raise DecryptionFailed("Passphrase does not match the unlocked key")

            bundle = recovery.generate(passphrase, self.config.recovery_code_count, self.config)
            await self.store.batch_write([DocumentUpdate(path=user_path(self.user_id), fields=bundle.to_fields())])
            logger.info("Regenerated %d recovery codes for user %s", len(bundle.codes), self.user_id)
            return bundle.codes

    async def seal_record(
        self,
        path: str,
        record: Mapping[str, Any],
        entity_type: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Prepare a record for writing.

        With encryption off the record is returned unchanged. With encryption
        on the write fails closed: a locked session or an incomplete result
        raises instead of letting plaintext through.

        Raises:
            VaultLockedError: If encryption is on and the session is locked
            EncryptionVerificationFailed: If a mapped field was left unsealed
        """
        if not await self.is_encrypted():
            return dict(record)

        key = self.session.require_key()
        entity_type = entity_type or detect_entity_type(record, path)
        sealed = encrypt_document(record, entity_type, key)

        # Opaque entities and updates without mapped fields have nothing to seal
        present = [name for name in get_field_map(entity_type) if sealed.get(name) is not None]
        if any(not is_field_encrypted(name, sealed[name]) for name in present):
            raise EncryptionVerificationFailed()
        return sealed

    async def open_record(
        self,
        path: str,
        record: Mapping[str, Any],
        entity_type: Optional[str] = None,
    ) -> dict[str, Any]:
        """Decrypt a record read from the store; plaintext records pass through."""
        entity_type = entity_type or detect_entity_type(record, path)
        if not has_any_encrypted_field(record, entity_type):
            return dict(record)
        return decrypt_document(record, entity_type, self.session.require_key())

    async def write_record(self, path: str, record: Mapping[str, Any]) -> None:
        """Seal and write a record."""
        sealed = await self.seal_record(path, record)
        await self.store.batch_write([DocumentUpdate(path=path, fields=sealed)])

    async def read_record(self, path: str) -> Optional[dict[str, Any]]:
        """Read and open a record."""
        data = await self.store.get(path)
        if data is None:
            return None
        return await self.open_record(path, data)

    async def verify_integrity(self) -> IntegrityReport:
        """
        Check that every encrypted record opens with the session key.

        Does not write anything.
        """
        key = self.session.require_key()
        report = IntegrityReport()

        for target in await user_collections(self.store, self.user_id):
            cursor = None
            while True:
                page = await self.store.list(target.path, cursor, self.config.batch_size)
                for document in page:
                    if target.owner_field and document.data.get(target.owner_field) != self.user_id:
                        continue
                    entity_type = detect_entity_type(document.data, document.path)
                    if not get_field_map(entity_type):
                        continue
                    if not has_any_encrypted_field(document.data, entity_type):
                        report.records_plaintext += 1
                        continue
                    try:
                        decrypt_document(document.data, entity_type, key, strict=True)
                        report.records_verified += 1
                    except VaultError as e:
                        report.records_failed += 1
                        report.errors.append(f"{document.path}: {e}")
                if len(page) < self.config.batch_size:
                    break
                cursor = page[-1].id

        return report


def get_encryption_manager(store: DocumentStore, user_id: str) -> EncryptionManager:
    """Get an encryption manager for a user."""
    return EncryptionManager(store, user_id)
