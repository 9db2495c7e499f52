"""JSON Schema utilities for tool parameters."""

from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


def check_parameter_schema(schema: dict[str, Any]) -> list[str]:
    """
    Check that a tool parameter schema is itself well-formed.

    Returns:
        List of problems; empty when the schema is usable
    """
    problems: list[str] = []

    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        problems.append(e.message)

    properties = schema.get("properties", {})
    for name in schema.get("required", []):
        if name not in properties:
            problems.append(f"required parameter '{name}' is not declared in properties")

    return problems
