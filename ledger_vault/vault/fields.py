"""Document-level encryption of finance records.

Applies the per-entity field maps from ``field_maps`` to whole records:
scalars are sealed one by one, nested objects are sealed as one tagged
canonical JSON string, and split lists keep their structure with only each
entry's amount sealed.
"""

import json
import logging
import re
from typing import Any, Mapping, Optional

from .crypto import ValueCipher
from .detection import is_encrypted_value
from .exceptions import DecryptionFailed
from .field_maps import NUMERIC_FIELDS, SPLITS_FIELD, get_field_map

logger = logging.getLogger(__name__)

_INT_RE = re.compile(r"^-?\d+$")
_FLOAT_RE = re.compile(r"^-?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$")

# Marks plaintext that holds JSON (nested objects, lists)
JSON_TAG = "\x1ejson:"


def canonical_json(value: Any) -> str:
    """Serialize a nested value to a stable string."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def parse_number(text: str) -> Optional[int | float]:
    """Parse decrypted text back to a number, or None if it is not numeric."""
    text = text.strip()
    if _INT_RE.match(text):
        return int(text)
    if _FLOAT_RE.match(text):
        return float(text)
    return None


def _seal_text(value: Any) -> Any:
    if isinstance(value, (dict, list)) or (isinstance(value, str) and value.startswith(JSON_TAG)):
        return JSON_TAG + canonical_json(value)
    return value


def _restore(field_name: str, plaintext: str) -> Any:
    if plaintext.startswith(JSON_TAG):
        try:
            return json.loads(plaintext[len(JSON_TAG):])
        except ValueError:
            return plaintext

    if field_name in NUMERIC_FIELDS:
        number = parse_number(plaintext)
        return plaintext if number is None else number

    return plaintext


def _encrypt_splits(splits: list, cipher: ValueCipher) -> list:
    result = []
    for split in splits:
        if isinstance(split, Mapping):
            amount = split.get("amount")
            if amount is not None and not is_encrypted_value(amount):
                split = {**split, "amount": cipher.encrypt(amount)}
        result.append(split)
    return result


def _decrypt_splits(splits: list, cipher: ValueCipher) -> list:
    result = []
    for split in splits:
        if isinstance(split, Mapping) and is_encrypted_value(split.get("amount")):
            plaintext = cipher.decrypt(split["amount"])
            number = parse_number(plaintext)
            split = {**split, "amount": plaintext if number is None else number}
        result.append(split)
    return result


def encrypt_document(record: Mapping[str, Any], entity_type: str, key: bytes) -> dict[str, Any]:
    """
    Encrypt a record's sensitive fields.

    Fields that are already ciphertext are left alone, so encrypting twice
    gives the same result as encrypting once. Fields absent from the record
    stay absent.

    Args:
        record: Record data
        entity_type: Entity type name (e.g. "Expense")
        key: Derived 32-byte key

    Returns:
        New record with mapped fields sealed
    """
    fields = get_field_map(entity_type)
    encrypted = dict(record)
    if not fields:
        return encrypted

    cipher = ValueCipher(key)

    for field_name in fields:
        value = encrypted.get(field_name)
        if value is None or is_encrypted_value(value):
            continue

        if field_name == SPLITS_FIELD and isinstance(value, list):
            encrypted[field_name] = _encrypt_splits(value, cipher)
        else:
            encrypted[field_name] = cipher.encrypt(_seal_text(value))

    return encrypted


def decrypt_document(
    record: Mapping[str, Any],
    entity_type: str,
    key: bytes,
    strict: bool = False,
) -> dict[str, Any]:
    """
    Decrypt a record's sensitive fields.

    Plaintext fields pass through, so records that are only partly migrated
    can be read. A field that fails to decrypt keeps its ciphertext unless
    ``strict`` is set.

    Args:
        record: Record data
        entity_type: Entity type name
        key: Derived 32-byte key
        strict: Raise instead of leaving undecryptable fields as ciphertext

    Returns:
        New record with mapped fields opened

    Raises:
        DecryptionFailed: Only when ``strict`` and a field cannot be opened
    """
    fields = get_field_map(entity_type)
    decrypted = dict(record)
    if not fields:
        return decrypted

    cipher = ValueCipher(key)

    for field_name in fields:
        value = decrypted.get(field_name)
        if value is None:
            continue

        try:
            if field_name == SPLITS_FIELD and isinstance(value, list):
                decrypted[field_name] = _decrypt_splits(value, cipher)
            elif is_encrypted_value(value):
                decrypted[field_name] = _restore(field_name, cipher.decrypt(value))
        except DecryptionFailed as e:
            if strict:
                raise
            logger.error(
                "Failed to decrypt field %s of %s %s: %s",
                field_name,
                entity_type,
                record.get("id", "unknown"),
                e,
            )

    return decrypted


class DocumentFieldEncryptor:
    """
    Encrypts and decrypts records with one key.

    Usage:
        encryptor = DocumentFieldEncryptor(session.require_key())
        sealed = encryptor.encrypt(record, "Expense")
        opened = encryptor.decrypt(sealed, "Expense")
    """

    def __init__(self, key: bytes):
        self.key = key

    def encrypt(self, record: Mapping[str, Any], entity_type: str) -> dict[str, Any]:
        return encrypt_document(record, entity_type, self.key)

    def decrypt(self, record: Mapping[str, Any], entity_type: str, strict: bool = False) -> dict[str, Any]:
        return decrypt_document(record, entity_type, self.key, strict=strict)
