"""Unit tests for key derivation and value encryption."""

import pytest


class TestKeyDerivation:
    """Tests for PBKDF2 key derivation."""

    def test_generate_salt(self):
        """Salts are 128 bits."""
        from ledger_vault.vault.crypto import KeyDerivation

        salt = KeyDerivation.generate_salt()
        assert len(salt) == 16

    def test_generate_salt_unique(self):
        """Each salt is fresh."""
        from ledger_vault.vault.crypto import KeyDerivation

        salts = [KeyDerivation.generate_salt() for _ in range(10)]
        assert len(set(salts)) == 10

    def test_derive_key_deterministic(self):
        """Same passphrase and salt give the same 256-bit key."""
        from ledger_vault.vault.crypto import KeyDerivation

        salt = KeyDerivation.generate_salt()
        key1 = KeyDerivation.derive_key("test_passphrase_123", salt)
        key2 = KeyDerivation.derive_key("test_passphrase_123", salt)

        assert key1 == key2
        assert len(key1) == 32

    def test_derive_key_different_passphrases(self):
        from ledger_vault.vault.crypto import KeyDerivation

        salt = KeyDerivation.generate_salt()
        assert KeyDerivation.derive_key("passphrase1", salt) != KeyDerivation.derive_key("passphrase2", salt)

    def test_derive_key_different_salts(self):
        from ledger_vault.vault.crypto import KeyDerivation

        key1 = KeyDerivation.derive_key("passphrase1", b"\x00" * 16)
        key2 = KeyDerivation.derive_key("passphrase1", b"\x01" * 16)
        assert key1 != key2

    def test_iterations_change_key(self):
        from ledger_vault.vault.crypto import KeyDerivation

        salt = b"\x00" * 16
        assert KeyDerivation.derive_key("passphrase1", salt, 1_000) != KeyDerivation.derive_key(
            "passphrase1", salt, 2_000
        )

    @pytest.mark.parametrize("passphrase", ["", "short", "1234567"])
    def test_passphrase_too_short(self, passphrase):
        """Passphrases under 8 characters are rejected before any crypto."""
        from ledger_vault.vault.crypto import KeyDerivation
        from ledger_vault.vault.exceptions import InvalidPassphrase

        with pytest.raises(InvalidPassphrase):
            KeyDerivation.derive_key(passphrase, b"\x00" * 16)

    def test_passphrase_too_long(self):
        from ledger_vault.vault.crypto import KeyDerivation
        from ledger_vault.vault.exceptions import InvalidPassphrase

        with pytest.raises(InvalidPassphrase):
            KeyDerivation.derive_key("x" * 129, b"\x00" * 16)

    def test_passphrase_length_bounds_accepted(self):
        from ledger_vault.vault.crypto import KeyDerivation

        assert len(KeyDerivation.derive_key("x" * 8, b"\x00" * 16)) == 32
        assert len(KeyDerivation.derive_key("x" * 128, b"\x00" * 16)) == 32

    def test_default_iterations(self):
        """Production default is 100,000 iterations."""
        from ledger_vault.vault.config import VaultConfig

        assert VaultConfig().pbkdf2_iterations == 100_000


class TestValueCipher:
    """Tests for AES-GCM value encryption."""

    def test_encrypt_decrypt_roundtrip(self, key):
        from ledger_vault.vault.crypto import ValueCipher

        cipher = ValueCipher(key)
        for plaintext in ["Groceries", "", "Café ☕ 日本", "a:b:c", "x" * 5000]:
            assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext

    def test_numbers_encrypted_as_strings(self, key):
        from ledger_vault.vault.crypto import ValueCipher

        cipher = ValueCipher(key)
        assert cipher.decrypt(cipher.encrypt(42.5)) == "42.5"
        assert cipher.decrypt(cipher.encrypt(7)) == "7"

    def test_fresh_iv_per_encryption(self, key):
        """Same plaintext encrypts to different ciphertexts."""
        from ledger_vault.vault.crypto import ValueCipher

        cipher = ValueCipher(key)
        first = cipher.encrypt("same value")
        second = cipher.encrypt("same value")

        assert first != second
        assert first.split(":")[0] != second.split(":")[0]

    def test_wire_format(self, key):
        """Output is base64(12-byte IV) ':' base64(ciphertext + tag)."""
        import base64

        from ledger_vault.vault.crypto import ValueCipher

        encrypted = ValueCipher(key).encrypt("hello")
        iv_part, ct_part = encrypted.split(":")

        assert len(base64.b64decode(iv_part)) == 12
        assert len(base64.b64decode(ct_part)) == len("hello") + 16

    def test_wrong_key_fails(self, key, other_key):
        from ledger_vault.vault.crypto import ValueCipher
        from ledger_vault.vault.exceptions import DecryptionFailed

        encrypted = ValueCipher(key).encrypt("secret")
        with pytest.raises(DecryptionFailed):
            ValueCipher(other_key).decrypt(encrypted)

    def test_tampered_ciphertext_fails(self, key):
        import base64

        from ledger_vault.vault.crypto import ValueCipher
        from ledger_vault.vault.exceptions import DecryptionFailed

        cipher = ValueCipher(key)
        iv_part, ct_part = cipher.encrypt("secret").split(":")
        raw = bytearray(base64.b64decode(ct_part))
        raw[0] ^= 0x01
        tampered = f"{iv_part}:{base64.b64encode(bytes(raw)).decode()}"

        with pytest.raises(DecryptionFailed):
            cipher.decrypt(tampered)

    @pytest.mark.parametrize("value", ["no separator", "a:b:c", ":abc", "abc:", "!!!!:????"])
    def test_malformed_input_fails(self, key, value):
        from ledger_vault.vault.crypto import ValueCipher
        from ledger_vault.vault.exceptions import DecryptionFailed

        with pytest.raises(DecryptionFailed):
            ValueCipher(key).decrypt(value)

    def test_wrong_iv_length_fails(self, key):
        import base64

        from ledger_vault.vault.crypto import ValueCipher
        from ledger_vault.vault.exceptions import DecryptionFailed

        _, ct_part = ValueCipher(key).encrypt("secret").split(":")
        bad_iv = base64.b64encode(b"\x00" * 16).decode()

        with pytest.raises(DecryptionFailed):
            ValueCipher(key).decrypt(f"{bad_iv}:{ct_part}")

    def test_invalid_key_size(self):
        from ledger_vault.vault.crypto import ValueCipher

        with pytest.raises(ValueError):
            ValueCipher(b"short")

    def test_self_test(self, key):
        from ledger_vault.vault.crypto import ValueCipher

        assert ValueCipher(key).self_test()

    def test_module_helpers(self, key):
        from ledger_vault.vault.crypto import decrypt_value, encrypt_value

        assert decrypt_value(encrypt_value("round trip", key), key) == "round trip"


class TestSealedValue:
    """Tests for the ciphertext shape check."""

    def test_cipher_output_looks_sealed(self, key):
        from ledger_vault.vault.crypto import SealedValue, ValueCipher

        cipher = ValueCipher(key)
        for plaintext in ["", "a", 0, "Groceries"]:
            assert SealedValue.looks_sealed(cipher.encrypt(plaintext))

    @pytest.mark.parametrize("value", [
        "Groceries",
        "12.50",
        "Meeting at 10:30",
        "http://example.com",
        "abc:def",
        42,
        None,
        {"amount": 1},
    ])
    def test_plaintext_not_sealed(self, value):
        from ledger_vault.vault.crypto import SealedValue

        assert not SealedValue.looks_sealed(value)

    def test_malformed_base64_not_sealed(self, key):
        """Strings shaped like ciphertext still have to decode to a 12-byte IV."""
        import base64

        from ledger_vault.vault.crypto import SealedValue, ValueCipher
        from ledger_vault.vault.detection import is_encrypted_value

        _, ct_part = ValueCipher(key).encrypt("secret").split(":")
        short_iv = base64.b64encode(b"\x00" * 8).decode()
        long_iv = base64.b64encode(b"\x00" * 16).decode()

        for value in [
            f"AAAAAAAAAAAAAAAAA:{ct_part}",
            f"AAAAAAAAAAAAAAAA:{'A' * 21}",
            f"{short_iv}:{ct_part}",
            f"{long_iv}:{ct_part}",
            f"AAAAAAAAAAAAAAAA:{base64.b64encode(b'short').decode()}",
        ]:
            assert not SealedValue.looks_sealed(value), value
            assert not is_encrypted_value(value), value
            assert SealedValue.parse(value) is None

    def test_parse(self, key):
        from ledger_vault.vault.crypto import SealedValue, ValueCipher

        encrypted = ValueCipher(key).encrypt("hello")
        sealed = SealedValue.parse(encrypted)

        assert sealed is not None
        assert len(sealed.iv) == 12
        assert sealed.encode() == encrypted
        assert SealedValue.parse("plain text") is None
