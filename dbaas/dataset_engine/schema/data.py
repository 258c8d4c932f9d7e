"""
Validation of field data against field schemas.

Text content is checked with JSON Schema (``jsonschema``). The content is
always parsed as JSON first, so a literal like ``2024-01-01`` can never be
read as a number.
"""

from __future__ import annotations

import json
from typing import Any

import jsonschema

from ..entity import ContentType, FieldData, FieldSchema, SchemaKey
from ..errors import SchemaMismatchError

BUILTIN_SCHEMAS: dict[SchemaKey, dict[str, Any]] = {
    SchemaKey.STRING: {"type": "string"},
    SchemaKey.INTEGER: {"type": "integer"},
    SchemaKey.FLOAT: {"type": "number"},
    SchemaKey.BOOL: {"type": "boolean"},
    SchemaKey.MESSAGE: {
        "type": "object",
        "properties": {
            "role": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["role", "content"],
    },
}


def schema_types(schema: dict[str, Any] | None) -> list[str]:
    """Declared JSON types of a schema, in declaration order."""
    if not schema:
        return []
    t = schema.get("type")
    if isinstance(t, str):
        return [t]
    if isinstance(t, list):
        return [v for v in t if isinstance(v, str)]
    return []


def single_type(schema: dict[str, Any] | None) -> str:
    types = schema_types(schema)
    return types[0] if len(types) == 1 else ""


def text_schema_of(field: FieldSchema) -> dict[str, Any] | None:
    """The effective JSON Schema of a text field.

    A builtin schema key takes precedence over the inline schema.
    """
    if field.schema_key != SchemaKey.UNKNOWN:
        return BUILTIN_SCHEMAS.get(field.schema_key)
    return field.text_schema


def check_text_schema(schema: dict[str, Any]) -> None:
    """Raise jsonschema.SchemaError if schema is not a valid JSON Schema."""
    cls = jsonschema.validators.validator_for(schema)
    cls.check_schema(schema)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid json constant {name}")


def validate_json_content(schema: dict[str, Any], content: str) -> None:
    """Validate text content against a JSON Schema.

    Raises:
        SchemaMismatchError: If content is not JSON or violates the schema
    """
    t = single_type(schema)
    if t == "string":
        content = json.dumps(content, ensure_ascii=False)
    elif t == "boolean":
        content = content.lower()

    try:
        doc = json.loads(content, parse_constant=_reject_constant)
    except ValueError as e:
        raise SchemaMismatchError("content is not a valid json") from e

    cls = jsonschema.validators.validator_for(schema)
    errors = list(cls(schema).iter_errors(doc))
    if errors:
        raise SchemaMismatchError("; ".join(e.message for e in errors))


def validate_field_data(field: FieldSchema, data: FieldData) -> None:
    """Validate one field of one item.

    Raises:
        SchemaMismatchError: If the data does not match the field schema
    """
    if data.key != field.key:
        raise SchemaMismatchError(f"key mismatch, schema_key={field.key}, data_key={data.key}")

    ct = field.content_type
    if ct == ContentType.TEXT:
        schema = text_schema_of(field)
        if schema:
            validate_json_content(schema, data.content)
    elif ct in (ContentType.IMAGE, ContentType.AUDIO, ContentType.VIDEO):
        spec = field.multi_modal_spec
        if spec and spec.max_file_count > 0 and len(data.attachments) > spec.max_file_count:
            raise SchemaMismatchError(
                f"file count out of range, max_file_count={spec.max_file_count}, "
                f"file_count={len(data.attachments)}"
            )
    elif ct == ContentType.MULTIPART:
        raise SchemaMismatchError("multipart content type not supported")
