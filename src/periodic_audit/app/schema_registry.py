"""Named JSON schemas shipped with periodic-audit, plus their examples."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

from jsonschema import Draft7Validator, ValidationError
from jsonschema.exceptions import best_match

SCHEMA_DIR = Path(__file__).resolve().parents[1] / "schemas"
EXAMPLE_DIR = SCHEMA_DIR / "examples"

SchemaValidationError = ValidationError
"""Alias for jsonschema.ValidationError.
Keeps callers unaware of the implementation.
"""

SCHEMA_NAMES = ("config_v1", "state_v1", "cargo_audit_output_v1")


def schema_file(name: str) -> Path:
    """Map ``<subject>_<version>`` to ``<subject>_schema_<version>.json``."""

    if name not in SCHEMA_NAMES:
        raise KeyError(f"Unknown schema '{name}'")
    subject, _, version = name.rpartition("_")
    return SCHEMA_DIR / f"{subject}_schema_{version}.json"


def example_names() -> list[str]:
    return sorted(path.stem for path in EXAMPLE_DIR.glob("*.json"))


@lru_cache(maxsize=None)
def get_schema(name: str) -> Mapping[str, Any]:
    """Return the JSON schema with the given registry name."""

    return json.loads(schema_file(name).read_text(encoding="utf-8"))


@lru_cache(maxsize=None)
def _validator(name: str) -> Draft7Validator:
    schema = get_schema(name)
    Draft7Validator.check_schema(schema)
    return Draft7Validator(schema)


def get_example(name: str) -> Mapping[str, Any]:
    """Return a representative example document by file stem."""

    path = EXAMPLE_DIR / f"{name}.json"
    return json.loads(path.read_text(encoding="utf-8"))


def validate(name: str, instance: Any) -> None:
    """Raise the most relevant :class:`SchemaValidationError`, if any."""

    error = best_match(_validator(name).iter_errors(instance))
    if error is not None:
        raise error


def describe_error(exc: ValidationError) -> str:
    """Render a short, location-qualified message for a validation error."""

    location = "/".join(str(part) for part in exc.absolute_path)
    if location:
        return f"{location}: {exc.message}"
    return exc.message
