"""
Field list validation and stable key generation.

Invariants:
    - Every key matches FIELD_KEY_RE and is never the reserved word "key"
    - Keys are unique across the whole field list, tombstones included
    - Names are unique among available fields only
    - Key generation never changes a key that is already set

How to change safely:
    - Never loosen FIELD_KEY_RE; existing payloads rely on it
    - Keep gen_field_keys deterministic for a given input list
"""

from __future__ import annotations

import logging
import re

from ..entity import Dataset, FieldSchema
from ..errors import InvalidParamError

logger = logging.getLogger(__name__)

FIELD_KEY_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}$")

# Reserved: item rows expose their own "key" attribute.
RESERVED_KEY = "key"


def is_valid_key(key: str) -> bool:
    return bool(FIELD_KEY_RE.match(key)) and key != RESERVED_KEY


def gen_field_keys(fields: list[FieldSchema]) -> None:
    """Fill empty keys in place.

    The prefix is the field name when it is a valid identifier, otherwise
    "key". A free prefix is used as is; otherwise "_1", "_2", ... is
    appended until the candidate is free. The reserved word counts as
    occupied, so a field named "key" becomes "key_1".

    Example:
        >>> fields = [FieldSchema(name="input"), FieldSchema(name="Input Text")]
        >>> gen_field_keys(fields)
        >>> [f.key for f in fields]
        ['input', 'key_1']
    """
    used = {f.key for f in fields if f.key}
    used.add(RESERVED_KEY)

    for f in fields:
        if f.key:
            continue
        prefix = f.name if FIELD_KEY_RE.match(f.name or "") else RESERVED_KEY
        candidate = prefix
        n = 0
        while candidate in used:
            n += 1
            suffix = f"_{n}"
            # Keys are capped at 64 characters.
            candidate = prefix[: 64 - len(suffix)] + suffix
        f.key = candidate
        used.add(candidate)


def validate_fields(dataset: Dataset, fields: list[FieldSchema]) -> None:
    """Validate a field list against the dataset limits.

    Raises:
        InvalidParamError: On the first violation found
    """
    available = [f for f in fields if f.available]
    if not available:
        raise InvalidParamError("at least one available field is required")

    max_fields = dataset.spec.max_field_count
    if max_fields > 0 and len(available) > max_fields:
        raise InvalidParamError(
            f"field count {len(available)} exceeds max_field_count {max_fields}"
        )

    keys: set[str] = set()
    names: set[str] = set()
    for f in fields:
        if not f.name:
            raise InvalidParamError(f"field name is required, key='{f.key}'")
        if not is_valid_key(f.key):
            raise InvalidParamError(f"invalid field key '{f.key}', name='{f.name}'")
        if f.key in keys:
            raise InvalidParamError(f"duplicated field key '{f.key}'")
        keys.add(f.key)

        if not f.available:
            continue
        if f.name in names:
            raise InvalidParamError(f"duplicated field name '{f.name}'")
        names.add(f.name)
        if f.content_type.is_multi_modal and not dataset.features.multi_modal:
            raise InvalidParamError(
                f"field '{f.name}' has content type '{f.content_type.value}' "
                "but the dataset does not support multi-modal data"
            )
