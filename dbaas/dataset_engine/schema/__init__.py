"""
Schema engine: field validation, key generation, data validation,
compatibility checking and merging.
"""

from .compat import (
    ChangeKind,
    FieldChange,
    check_field_compatibility,
    compatible,
    merge_fields,
)
from .data import (
    BUILTIN_SCHEMAS,
    check_text_schema,
    schema_types,
    single_type,
    text_schema_of,
    validate_field_data,
    validate_json_content,
)
from .fields import FIELD_KEY_RE, RESERVED_KEY, gen_field_keys, is_valid_key, validate_fields

__all__ = [
    "BUILTIN_SCHEMAS",
    "ChangeKind",
    "FIELD_KEY_RE",
    "FieldChange",
    "RESERVED_KEY",
    "check_field_compatibility",
    "check_text_schema",
    "compatible",
    "gen_field_keys",
    "is_valid_key",
    "merge_fields",
    "schema_types",
    "single_type",
    "text_schema_of",
    "validate_field_data",
    "validate_fields",
    "validate_json_content",
]
