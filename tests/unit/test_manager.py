"""Unit tests for the encryption manager."""

import pytest


class TestEnableEncryption:
    """Tests for turning encryption on."""

    async def test_enable(self, manager, user_id, owned_paths):
        result = await manager.enable_encryption("correct-horse-battery")

        assert len(result.recovery_codes) == 10
        assert result.migration is not None
        assert result.migration.progress.succeeded == len(owned_paths)
        assert manager.session.is_unlocked
        assert manager.salt_cache.get(user_id) == manager.session.salt

    async def test_metadata_written(self, manager, user_id):
        await manager.enable_encryption("correct-horse-battery", migrate_existing=False)

        metadata = await manager.load_metadata()
        assert metadata.is_encrypted
        assert metadata.encryption_salt == manager.session.salt
        assert metadata.encryption_check is not None
        assert metadata.encryption_enabled_at is not None
        assert len(metadata.recovery_code_hashes) == 10
        assert len(metadata.recovery_entries) == 10
        # Existing profile fields survive the merge
        assert manager.store.peek(f"users/{user_id}")["displayName"] == "Test User"

    async def test_without_migration(self, manager, user_id):
        result = await manager.enable_encryption("correct-horse-battery", migrate_existing=False)

        assert result.migration is None
        assert manager.store.peek(f"users/{user_id}/expenses/e1")["description"] == "Groceries"

    async def test_already_enabled(self, encrypted_manager, passphrase):
        from ledger_vault.vault.exceptions import VaultAlreadyExistsError

        with pytest.raises(VaultAlreadyExistsError):
            await encrypted_manager.enable_encryption(passphrase)

    async def test_invalid_passphrase(self, manager):
        from ledger_vault.vault.exceptions import InvalidPassphrase

        with pytest.raises(InvalidPassphrase):
            await manager.enable_encryption("short")
        assert not await manager.is_encrypted()


class TestManagerConfig:
    """Tests for a manager built with its own configuration."""

    async def test_passphrase_policy(self, seeded_store, user_id):
        from ledger_vault.vault.config import VaultConfig
        from ledger_vault.vault.exceptions import InvalidPassphrase
        from ledger_vault.vault.vault_manager import EncryptionManager

        config = VaultConfig(pbkdf2_iterations=1_000, passphrase_min_length=12)
        manager = EncryptionManager(seeded_store, user_id, config=config)

        with pytest.raises(InvalidPassphrase):
            await manager.enable_encryption("ten-chars!")
        assert not await manager.is_encrypted()

    async def test_iterations_and_code_count(self, seeded_store, user_id, session, passphrase):
        from ledger_vault.vault.config import VaultConfig
        from ledger_vault.vault.crypto import KeyDerivation
        from ledger_vault.vault.vault_manager import EncryptionManager

        config = VaultConfig(pbkdf2_iterations=2_000, recovery_code_count=3)
        manager = EncryptionManager(seeded_store, user_id, session=session, config=config)

        result = await manager.enable_encryption(passphrase, migrate_existing=False)
        key = session.key

        assert len(result.recovery_codes) == 3
        assert key == KeyDerivation.derive_key(passphrase, session.salt, 2_000)
        assert key != KeyDerivation.derive_key(passphrase, session.salt, 1_000)

        manager.lock()
        assert (await manager.unlock(result.recovery_codes[0])).key == key
        manager.lock()
        assert (await manager.unlock(passphrase)).key == key


class TestStatus:
    """Tests for status reporting."""

    async def test_not_enabled(self, manager, user_id):
        status = await manager.status()

        assert status.user_id == user_id
        assert not status.is_encrypted
        assert not status.is_unlocked
        assert not status.has_salt
        assert status.recovery_codes == 0

    async def test_enabled(self, encrypted_manager):
        status = await encrypted_manager.status()

        assert status.is_encrypted
        assert status.is_unlocked
        assert status.has_salt
        assert status.recovery_codes == 10
        assert status.remaining_unlock_attempts == 30

        data = status.to_dict()
        assert data["is_encrypted"] is True
        assert data["recovery_codes"] == 10

    async def test_attempts_reported(self, encrypted_manager):
        from ledger_vault.vault.exceptions import DecryptionFailed

        encrypted_manager.lock()
        with pytest.raises(DecryptionFailed):
            await encrypted_manager.unlock("wrong-passphrase")

        assert (await encrypted_manager.status()).remaining_unlock_attempts == 29
        encrypted_manager.reset_unlock_attempts()
        assert (await encrypted_manager.status()).remaining_unlock_attempts == 30


class TestRecordAccess:
    """Tests for sealing and opening records."""

    async def test_plaintext_when_disabled(self, manager, user_id):
        record = {"amount": 5, "description": "Tea"}
        assert await manager.seal_record(f"users/{user_id}/expenses/x", record) == record

    async def test_seal_when_unlocked(self, encrypted_manager, user_id):
        from ledger_vault.vault.detection import is_encrypted_value

        sealed = await encrypted_manager.seal_record(
            f"users/{user_id}/expenses/x", {"amount": 5, "description": "Tea", "category": "Food"}
        )

        assert is_encrypted_value(sealed["amount"])
        assert is_encrypted_value(sealed["description"])
        assert sealed["category"] == "Food"

    async def test_seal_fails_closed_when_locked(self, encrypted_manager, user_id):
        from ledger_vault.vault.exceptions import VaultLockedError

        encrypted_manager.lock()
        with pytest.raises(VaultLockedError):
            await encrypted_manager.seal_record(f"users/{user_id}/expenses/x", {"amount": 5})

    async def test_write_fails_closed_when_locked(self, encrypted_manager, user_id):
        from ledger_vault.vault.exceptions import VaultLockedError

        path = f"users/{user_id}/expenses/x"
        encrypted_manager.lock()
        with pytest.raises(VaultLockedError):
            await encrypted_manager.write_record(path, {"amount": 5, "description": "Tea"})
        assert encrypted_manager.store.peek(path) is None

    async def test_write_and_read(self, encrypted_manager, user_id):
        from ledger_vault.vault.detection import is_encrypted_value

        path = f"users/{user_id}/loans/l2"
        loan = {"initialAmount": 500, "amountRemaining": 120.5, "interestRate": 3, "lender": "Friend"}

        await encrypted_manager.write_record(path, loan)

        stored = encrypted_manager.store.peek(path)
        assert all(is_encrypted_value(stored[name]) for name in loan)
        assert await encrypted_manager.read_record(path) == loan

    async def test_read_missing(self, encrypted_manager, user_id):
        assert await encrypted_manager.read_record(f"users/{user_id}/expenses/nope") is None

    async def test_plaintext_read_without_key(self, manager, user_id):
        record = await manager.read_record(f"users/{user_id}/expenses/e1")
        assert record["description"] == "Groceries"

    async def test_encrypted_read_needs_key(self, encrypted_manager, user_id):
        from ledger_vault.vault.exceptions import VaultLockedError

        encrypted_manager.lock()
        with pytest.raises(VaultLockedError):
            await encrypted_manager.read_record(f"users/{user_id}/expenses/e1")

    async def test_explicit_entity_type(self, encrypted_manager):
        from ledger_vault.vault.detection import is_encrypted_value

        sealed = await encrypted_manager.seal_record("inbox/x", {"amount": 5, "notes": "Cash"}, "Repayment")
        assert is_encrypted_value(sealed["notes"])

    async def test_seal_record_without_sensitive_fields(self, encrypted_manager, user_id):
        """Profile updates and partial updates of unmapped fields pass through."""
        profile = await encrypted_manager.seal_record(f"users/{user_id}", {"displayName": "New Name"})
        partial = await encrypted_manager.seal_record(f"users/{user_id}/expenses/e9", {"category": "Food"})

        assert profile == {"displayName": "New Name"}
        assert partial == {"category": "Food"}

    async def test_write_profile_update(self, encrypted_manager, user_id):
        await encrypted_manager.write_record(f"users/{user_id}", {"displayName": "New Name"})

        stored = encrypted_manager.store.peek(f"users/{user_id}")
        assert stored["displayName"] == "New Name"
        assert stored["isEncrypted"] is True

    async def test_write_partial_update_keeps_ciphertext(self, encrypted_manager, user_id):
        path = f"users/{user_id}/expenses/e1"
        await encrypted_manager.write_record(path, {"category": "Household"})

        record = await encrypted_manager.read_record(path)
        assert record == {"amount": 25.5, "description": "Groceries", "category": "Household"}

    async def test_unsealed_field_rejected(self, encrypted_manager, user_id, monkeypatch):
        from ledger_vault.vault import vault_manager
        from ledger_vault.vault.exceptions import EncryptionVerificationFailed

        monkeypatch.setattr(vault_manager, "encrypt_document", lambda record, entity_type, key: dict(record))

        path = f"users/{user_id}/expenses/e9"
        with pytest.raises(EncryptionVerificationFailed):
            await encrypted_manager.write_record(path, {"amount": 5, "category": "Food"})
        assert encrypted_manager.store.peek(path) is None


class TestRegenerateRecoveryCodes:
    """Tests for replacing recovery codes."""

    async def test_regenerate(self, encrypted_manager):
        from ledger_vault.vault.exceptions import RecoveryCodeNotFound

        old_codes = encrypted_manager.recovery_codes
        key = encrypted_manager.session.key

        new_codes = await encrypted_manager.regenerate_recovery_codes("correct-horse-battery")

        assert len(new_codes) == 10
        assert not set(old_codes) & set(new_codes)

        encrypted_manager.lock()
        with pytest.raises(RecoveryCodeNotFound):
            await encrypted_manager.unlock(old_codes[0])
        session = await encrypted_manager.unlock(new_codes[-1])
        assert session.key == key

    async def test_wrong_passphrase(self, encrypted_manager):
        from ledger_vault.vault.exceptions import DecryptionFailed

        with pytest.raises(DecryptionFailed):
            await encrypted_manager.regenerate_recovery_codes("not-the-passphrase")
        assert encrypted_manager.session.operation is None

    async def test_requires_unlock(self, encrypted_manager, passphrase):
        from ledger_vault.vault.exceptions import VaultLockedError

        encrypted_manager.lock()
        with pytest.raises(VaultLockedError):
            await encrypted_manager.regenerate_recovery_codes(passphrase)

    async def test_blocked_during_rotation(self, encrypted_manager, passphrase):
        from ledger_vault.vault.exceptions import ConcurrentOperationError

        with encrypted_manager.session.exclusive("key rotation"):
            with pytest.raises(ConcurrentOperationError):
                await encrypted_manager.regenerate_recovery_codes(passphrase)


class TestDisableAndUnencrypt:
    """Tests for turning encryption off."""

    async def test_disable(self, encrypted_manager, user_id):
        await encrypted_manager.disable()

        status = await encrypted_manager.status()
        assert not status.is_encrypted
        assert status.has_salt
        assert not encrypted_manager.session.is_unlocked
        assert encrypted_manager.salt_cache.get(user_id) is None

    async def test_disable_not_enabled(self, manager):
        from ledger_vault.vault.exceptions import VaultNotFoundError

        with pytest.raises(VaultNotFoundError):
            await manager.disable()

    async def test_unlock_after_disable(self, encrypted_manager, passphrase, user_id):
        """Records left encrypted stay reachable after disabling."""
        await encrypted_manager.disable()
        await encrypted_manager.unlock(passphrase)

        record = await encrypted_manager.read_record(f"users/{user_id}/expenses/e1")
        assert record["description"] == "Groceries"

    async def test_unencrypt_then_disable(self, encrypted_manager, owned_paths, user_id):
        result = await encrypted_manager.unencrypt()
        await encrypted_manager.disable()

        assert result.progress.succeeded == len(owned_paths)
        assert encrypted_manager.store.peek(f"users/{user_id}/expenses/e1")["description"] == "Groceries"

        record = await encrypted_manager.read_record(f"users/{user_id}/expenses/e1")
        assert record["amount"] == 25.5

    async def test_migrate_requires_key(self, manager):
        from ledger_vault.vault.exceptions import VaultLockedError

        with pytest.raises(VaultLockedError):
            await manager.migrate()


class TestVerifyIntegrity:
    """Tests for the read-only integrity check."""

    async def test_all_verified(self, encrypted_manager, owned_paths):
        report = await encrypted_manager.verify_integrity()

        assert report.ok
        assert report.records_verified == len(owned_paths)
        assert report.records_plaintext == 0

    async def test_plaintext_counted(self, encrypted_manager, user_id):
        encrypted_manager.store.put(f"users/{user_id}/expenses/e9", {"amount": 1, "description": "Plain"})

        report = await encrypted_manager.verify_integrity()
        assert report.records_plaintext == 1
        assert report.ok

    async def test_failure_reported(self, encrypted_manager, other_key, user_id):
        from ledger_vault.vault.crypto import encrypt_value

        path = f"users/{user_id}/expenses/e2"
        encrypted_manager.store.put(path, {"amount": encrypt_value(12, other_key)})

        report = await encrypted_manager.verify_integrity()

        assert not report.ok
        assert report.records_failed == 1
        assert report.errors[0].startswith(path)


def test_get_encryption_manager(store, user_id):
    from ledger_vault.vault.session import get_key_session
    from ledger_vault.vault.vault_manager import get_encryption_manager

    manager = get_encryption_manager(store, user_id)
    assert manager.session is get_key_session(user_id)
