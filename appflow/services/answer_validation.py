"""
Answer normalisation and per-type validation.

``validate_answers`` returns ``{answer_key: message}`` for every visible
input field that fails its rules; hidden fields are never validated.
Callers raise ValidationError when the dict is non-empty.
"""

import re
from datetime import date, datetime

from email_validator import EmailNotValidError, validate_email

from appflow.services.conditions import is_empty
from appflow.services.form_schema import (
    FieldDefinition,
    answer_key_aliases,
    is_field_required,
    is_field_visible,
    option_text,
)


def _is_valid_email(text: str) -> bool:
    try:
        validate_email(text, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def normalize_answers_shape(answers) -> dict:
    """Unwrap legacy ``{"data": {...}}`` envelopes; non-dicts become ``{}``."""
    if not isinstance(answers, dict):
        return {}
    normalized = dict(answers)
    nested = normalized.get("data")
    if isinstance(nested, dict):
        normalized.update(nested)
    if "data" in normalized and any(key != "data" for key in normalized):
        del normalized["data"]
    return normalized


def extract_file_object_ids(value) -> list[str]:
    """File references inside an answer: a string, a list, ``{fileObjectId}`` or ``{fileObjectIds}``."""
    if not value:
        return []
    if isinstance(value, list):
        return [fid for item in value for fid in extract_file_object_ids(item)]
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, dict):
        if isinstance(value.get("fileObjectId"), str):
            return [value["fileObjectId"]]
        if isinstance(value.get("fileObjectIds"), list):
            return [v for v in value["fileObjectIds"] if isinstance(v, str)]
    return []


def _as_number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _is_date(text: str) -> bool:
    try:
        date.fromisoformat(text)
        return True
    except ValueError:
        pass
    try:
        datetime.fromisoformat(text.replace("Z", "+00:00"))
        return True
    except ValueError:
        return False


def validate_field(field_def: FieldDefinition, value, values: dict, aliases: dict | None = None) -> str | None:
    """Return an error message for one field, or None when it is valid."""
    if not field_def.is_input or not is_field_visible(field_def, values, aliases):
        return None

    required = is_field_required(field_def, values, aliases)
    ftype = field_def.type

    if ftype == "checkbox":
        if value is None:
            return "Required" if required else None
        if not isinstance(value, bool):
            return "Must be true or false"
        return "Required" if required and value is not True else None

    if ftype == "multiselect":
        if value is None:
            return "Required" if required else None
        if not isinstance(value, list):
            return "Must be a list of values"
        entries = [v for v in value if isinstance(v, str) and v.strip()]
        if required and not entries:
            return "Required"
        if entries and field_def.min is not None and len(entries) < field_def.min:
            return f"Min {field_def.min:g}"
        if entries and field_def.max is not None and len(entries) > field_def.max:
            return f"Max {field_def.max:g}"
        return None

    if ftype == "number":
        if is_empty(value):
            return "Required" if required else None
        number = _as_number(value)
        if number is None:
            return "Must be a number"
        if field_def.min is not None and number < field_def.min:
            return f"Min {field_def.min:g}"
        if field_def.max is not None and number > field_def.max:
            return f"Max {field_def.max:g}"
        return None

    if ftype == "file_upload":
        files = extract_file_object_ids(value)
        if not files:
            return "Required" if required else None
        if field_def.max_files is not None and len(files) > field_def.max_files:
            return f"Max {field_def.max_files} files"
        return None

    # text, textarea, email, select, date
    text = value if isinstance(value, str) else ("" if value is None else str(value))
    if not text.strip():
        return "Required" if required else None

    if ftype == "email" and not _is_valid_email(text.strip()):
        return "Invalid email address"
    if ftype in ("text", "textarea"):
        if field_def.min is not None and len(text) < field_def.min:
            return f"Min {field_def.min:g} characters"
        if field_def.max is not None and len(text) > field_def.max:
            return f"Max {field_def.max:g} characters"
    if ftype == "text" and field_def.pattern:
        try:
            pattern = re.compile(field_def.pattern)
        except re.error:
            # Broken legacy patterns must not block submissions
            pattern = None
        if pattern is not None and not pattern.search(text):
            return field_def.custom_message or "Invalid format"
    if ftype == "select" and field_def.options:
        if option_text(value) not in {opt_value for _, opt_value in field_def.options}:
            return "Select a valid option"
    if ftype == "date" and not _is_date(text.strip()):
        return "Invalid date"
    return None


def validate_answers(fields: list[FieldDefinition], answers: dict) -> dict:
    errors = {}
    aliases = answer_key_aliases(fields)
    for field_def in fields:
        message = validate_field(field_def, answers.get(field_def.answer_key), answers, aliases)
        if message:
            errors[field_def.answer_key] = message
    return errors
