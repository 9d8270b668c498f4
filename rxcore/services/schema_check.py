"""
JSON Schema checks for inbound payloads.

Registry resources and remote-model answers are checked before they are
parsed, and every error is collected rather than stopping at the first one,
so a rejected payload can be logged with its full list of problems.
"""

from typing import Any

import jsonschema

_validators: dict[int, jsonschema.Draft7Validator] = {}


def _validator_for(schema: dict[str, Any]) -> jsonschema.Draft7Validator:
    validator = _validators.get(id(schema))
    if validator is None:
        validator = _validators[id(schema)] = jsonschema.Draft7Validator(schema)
    return validator


def validate_against_schema(data: Any, schema: dict[str, Any]) -> list[str]:
    """
    Validate data against a JSON schema.
    Returns a list of error messages (empty list = valid).
    """
    return [error.message for error in _validator_for(schema).iter_errors(data)]
