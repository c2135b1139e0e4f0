"""
Schema validation.

Every record the store writes and every structured reply from the AI
provider is checked against a JSON Schema shipped in ``storyflow/schemas``.
"""

import json
from pathlib import Path
from typing import Any

import jsonschema

from .errors import StoryflowError

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"

_validators: dict[str, Any] = {}


class ValidationError(StoryflowError):
    """A value did not match its schema."""

    category = "schema_validation_failed"

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


def _validator(schema_name: str):
    if schema_name in _validators:
        return _validators[schema_name]

    schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    if not schema_path.exists():
        raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
    schema = json.loads(schema_path.read_text())
    cls = jsonschema.validators.validator_for(schema)
    cls.check_schema(schema)
    _validators[schema_name] = cls(schema)
    return _validators[schema_name]


def validate(data: Any, schema_name: str) -> None:
    """
    Validate data against a named schema.

    When several parts of the value are wrong, the error reported is the one
    jsonschema ranks most relevant.

    Args:
        data: Decoded JSON value
        schema_name: Schema name (e.g., "work_item", "story", "refinement")

    Raises:
        ValidationError: If the value does not match
    """
    error = jsonschema.exceptions.best_match(_validator(schema_name).iter_errors(data))
    if error is None:
        return
    path = ".".join(str(p) for p in error.absolute_path) or "(root)"
    raise ValidationError(schema_name, error.message, path)


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(schema_name, f"Refusing to write invalid data to {filepath}: {e}") from None
