"""
Schema validation for storyloop.

Every document crossing a disk boundary (plan.json, session meta.env,
transcript.json, run result.json) is checked against a JSON Schema from
``storyloop/schemas``. Reads that fail validation raise; writes that would
fail validation are refused before anything touches the disk.
"""

import json
from functools import lru_cache
from pathlib import Path

import jsonschema
from jsonschema.exceptions import best_match

SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"


class ValidationError(Exception):
    """A document does not match its schema."""

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


@lru_cache(maxsize=None)
def _validator(schema_name: str):
    schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    if not schema_path.exists():
        raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
    schema = json.loads(schema_path.read_text())
    cls = jsonschema.validators.validator_for(schema)
    cls.check_schema(schema)
    return cls(schema)


def validate(data: dict, schema_name: str) -> None:
    """
    Check data against the named schema ("plan", "meta", "transcript", "result").

    Raises:
        ValidationError: naming the most relevant violation and where it is
    """
    error = best_match(_validator(schema_name).iter_errors(data))
    if error is None:
        return
    where = ".".join(str(p) for p in error.absolute_path) or "(root)"
    raise ValidationError(schema_name, error.message, where)


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """Refuse to write a document that would not validate."""
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(schema_name, f"Refusing to write invalid data to {filepath}: {e}") from None
