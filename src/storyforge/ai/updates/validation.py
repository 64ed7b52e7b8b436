"""Required-field and shape checks for update payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from jsonschema import Draft7Validator

from .protocol import REQUIRED_FIELDS, UPDATE_DATA_SCHEMAS, UpdateType

__all__ = ["UpdateValidation", "validate_update_data"]

_VALIDATORS: Dict[UpdateType, Draft7Validator] = {
    update_type: Draft7Validator(schema) for update_type, schema in UPDATE_DATA_SCHEMAS.items()
}


@dataclass(slots=True)
class UpdateValidation:
    valid: bool
    missing_fields: tuple[str, ...] = ()
    errors: list[str] = field(default_factory=list)
    message: str = ""


def validate_update_data(update_type: UpdateType | str, data: Any) -> UpdateValidation:
    """Check *data* against the schema for *update_type*.

    Pure: the input is never modified, so repeated calls return equal results.
    A required field that is present but blank counts as missing.
    """

    try:
        resolved = UpdateType(getattr(update_type, "value", update_type))
    except ValueError:
        return UpdateValidation(valid=False, message=f"Unknown update type: {update_type}")
    if not isinstance(data, Mapping):
        return UpdateValidation(valid=False, message=f"{resolved.value}: data must be an object")

    missing = tuple(name for name in REQUIRED_FIELDS[resolved] if _is_blank(data.get(name)))
    errors = [
        _format_error(error)
        for error in sorted(_VALIDATORS[resolved].iter_errors(dict(data)), key=lambda item: [str(part) for part in item.path])
        if error.validator != "required"
    ]
    if not missing and not errors:
        return UpdateValidation(valid=True)

    parts = []
    if missing:
        parts.append(f"missing required fields: {', '.join(missing)}")
    parts.extend(errors)
    return UpdateValidation(
        valid=False,
        missing_fields=missing,
        errors=errors,
        message=f"{resolved.value}: {'; '.join(parts)}",
    )


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def _format_error(error: Any) -> str:
    location = ".".join(str(part) for part in error.path)
    return f"{location}: {error.message}" if location else str(error.message)
