"""Encrypted-state detection for field values and records.

Ciphertext is recognised from its shape alone (see ``SealedValue``). Every
value produced by ``ValueCipher`` matches; realistic plaintext such as
short descriptions or numbers-as-strings does not.
"""

from typing import Any, Mapping

from .crypto import SealedValue
from .field_maps import SPLITS_FIELD, get_field_map


def is_encrypted_value(value: Any) -> bool:
    """Check whether a value is shaped like ``iv:ciphertext``."""
    return SealedValue.looks_sealed(value)


def _splits_encrypted(splits: list) -> bool:
    # Empty splits have nothing to encrypt
    for split in splits:
        if not isinstance(split, Mapping):
            return False
        amount = split.get("amount")
        if amount is None:
            continue
        if not is_encrypted_value(amount):
            return False
    return True


def is_field_encrypted(field_name: str, value: Any) -> bool:
    """
    Check a single field value.

    Numbers, dicts and lists are never ciphertext, except the splits list
    whose entries carry individually sealed amounts.
    """
    if field_name == SPLITS_FIELD and isinstance(value, list):
        return _splits_encrypted(value)
    return is_encrypted_value(value)


def has_fully_encrypted_fields(
    record: Mapping[str, Any],
    entity_type: str,
    present_only: bool = False,
) -> bool:
    """
    Check that every field in the entity's field map is encrypted.

    A record with any mapped field missing or in plaintext is not
    encrypted. Entity types with an empty or unknown field map are never
    considered encrypted.

    Args:
        record: Record data
        entity_type: Entity type name (e.g. "Expense")
        present_only: Ignore mapped fields that are absent from the record

    Returns:
        True if all (present) mapped fields are encrypted
    """
    fields = get_field_map(entity_type)
    if not fields:
        return False

    checked = 0
    for field_name in fields:
        value = record.get(field_name)
        if value is None:
            if present_only:
                continue
            return False
        if not is_field_encrypted(field_name, value):
            return False
        checked += 1

    return checked > 0 or not present_only


def has_any_encrypted_field(record: Mapping[str, Any], entity_type: str) -> bool:
    """Check whether at least one mapped field holds ciphertext."""
    for field_name in get_field_map(entity_type):
        value = record.get(field_name)
        if field_name == SPLITS_FIELD and isinstance(value, list):
            if any(
                isinstance(split, Mapping) and is_encrypted_value(split.get("amount"))
                for split in value
            ):
                return True
        elif is_encrypted_value(value):
            return True
    return False
