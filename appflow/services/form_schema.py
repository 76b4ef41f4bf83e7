"""
Form schema normalisation and the field schema provider.

Form versions store free-form JSON written by the form builder.  This
module turns it into ``FieldDefinition`` records once, tolerating the
legacy shapes the builder has produced over time:

  - ``pages`` instead of ``sections``
  - ``required`` / ``min`` / ``max`` / ``pattern`` / ``options`` directly on
    the field instead of under ``validation`` / ``ui``
  - ``showWhen`` / ``requireWhen`` directly on the field instead of under
    ``logic``
  - type aliases (``file`` → ``file_upload``, ``multi_select`` → ``multiselect``)

The provider is a module-level hook so deployments that keep forms in a
separate service can swap it; the default reads ``FormVersion`` rows and
caches the parsed fields per form version (published versions never change).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from appflow.core.exceptions import NotFoundError
from appflow.models import db
from appflow.models.workflow import FormVersion
from appflow.services.conditions import ConditionGroup, evaluate_group, group_to_dict, parse_group

logger = logging.getLogger(__name__)

FIELD_TYPES = (
    "text", "textarea", "number", "email", "date",
    "select", "multiselect", "checkbox", "file_upload", "info_text",
)

_TYPE_ALIASES = {"multi_select": "multiselect", "file": "file_upload"}


@dataclass(frozen=True)
class FieldDefinition:
    id: str
    key: str
    type: str = "text"
    label: str = ""
    required: bool = False
    min: float | None = None
    max: float | None = None
    pattern: str | None = None
    custom_message: str | None = None
    options: tuple = ()
    max_files: int | None = None
    hidden: bool = False
    show_when: ConditionGroup | None = None
    require_when: ConditionGroup | None = None

    @property
    def answer_key(self) -> str:
        return self.key or self.id

    @property
    def is_input(self) -> bool:
        return self.type != "info_text"

    @property
    def is_file(self) -> bool:
        return self.type == "file_upload"

    def controlling_keys(self) -> list[str]:
        """Keys of the fields whose answers decide this field's visibility or requirement."""
        keys = []
        for group in (self.show_when, self.require_when):
            if group is None:
                continue
            for key in group.field_keys:
                if key not in keys:
                    keys.append(key)
        return keys

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "key": self.key,
            "type": self.type,
            "label": self.label,
            "validation": {"required": self.required},
        }
        for name in ("min", "max", "pattern"):
            value = getattr(self, name)
            if value is not None:
                data["validation"][name] = value
        ui = {}
        if self.options:
            ui["options"] = [{"label": label, "value": value} for label, value in self.options]
        if self.max_files is not None:
            ui["maxFiles"] = self.max_files
        if ui:
            data["ui"] = ui
        logic = {}
        if self.show_when:
            logic["showWhen"] = group_to_dict(self.show_when)
        if self.require_when:
            logic["requireWhen"] = group_to_dict(self.require_when)
        if logic:
            data["logic"] = logic
        return data


@dataclass(frozen=True)
class FormSection:
    id: str
    title: str
    fields: tuple = field(default_factory=tuple)


# ── Normalisation ────────────────────────────────────────────────────────────


def _text(value) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def _number(value) -> float | None:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, (int, float)) else None


def _field_type(raw) -> str:
    value = str(raw or "").strip().lower()
    value = _TYPE_ALIASES.get(value, value)
    return value if value in FIELD_TYPES else "text"


def _options(raw) -> tuple:
    if not isinstance(raw, list):
        return ()
    result = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        value = option_text(item.get("value"))
        if value is None:
            continue
        result.append((_text(item.get("label")) or value, value))
    return tuple(result)


def option_text(value) -> str | None:
    """Option values and select answers compare as text; numbers are accepted."""
    if _number(value) is not None:
        return f"{value:g}" if isinstance(value, float) else str(value)
    text = _text(value)
    return text.strip() if text else None


def normalize_field(raw, index: int) -> FieldDefinition:
    f = raw if isinstance(raw, dict) else {}
    ui = f.get("ui") if isinstance(f.get("ui"), dict) else {}
    validation = f.get("validation") if isinstance(f.get("validation"), dict) else {}
    logic = f.get("logic") if isinstance(f.get("logic"), dict) else {}

    field_id = _text(f.get("id")) or _text(f.get("fieldId")) or _text(f.get("key")) or f"field_{index + 1}"
    required = validation.get("required", f.get("required"))
    max_files = _number(ui.get("maxFiles"))

    return FieldDefinition(
        id=field_id,
        key=_text(f.get("key")) or field_id,
        type=_field_type(f.get("type")),
        label=_text(f.get("label")) or f"Field {index + 1}",
        required=required is True,
        min=_number(validation.get("min", f.get("min"))),
        max=_number(validation.get("max", f.get("max"))),
        pattern=_text(validation.get("pattern")) or _text(f.get("pattern")),
        custom_message=_text(validation.get("customMessage")) or _text(f.get("customMessage")),
        options=_options(ui.get("options", f.get("options"))),
        max_files=int(max_files) if max_files is not None else None,
        hidden=ui.get("hidden") is True,
        show_when=parse_group(logic.get("showWhen", f.get("showWhen"))),
        require_when=parse_group(logic.get("requireWhen", f.get("requireWhen"))),
    )


def normalize_form_definition(raw) -> list[FormSection]:
    """Normalise a stored schema to sections of FieldDefinitions."""
    d = raw if isinstance(raw, dict) else {}
    raw_sections = d.get("sections")
    if not isinstance(raw_sections, list):
        raw_sections = d.get("pages") if isinstance(d.get("pages"), list) else []

    sections = []
    for s_index, section in enumerate(raw_sections):
        s = section if isinstance(section, dict) else {}
        raw_fields = s.get("fields") if isinstance(s.get("fields"), list) else []
        sections.append(FormSection(
            id=_text(s.get("id")) or f"section_{s_index + 1}",
            title=_text(s.get("title")) or f"Section {s_index + 1}",
            fields=tuple(normalize_field(f, i) for i, f in enumerate(raw_fields)),
        ))
    return sections


def get_form_fields(raw) -> list[FieldDefinition]:
    """Flatten all fields of a stored schema, in section order."""
    return [f for section in normalize_form_definition(raw) for f in section.fields]


# ── Conditional logic ────────────────────────────────────────────────────────


def answer_key_aliases(fields: list[FieldDefinition]) -> dict[str, str]:
    """Map each field id to the answer key its value is stored under.

    Rules may name a field by id or by key.  Ids win when a key collides
    with another field's id, as in the dependency graph.
    """
    aliases = {}
    for field_def in fields:
        aliases.setdefault(field_def.id, field_def.answer_key)
    for field_def in fields:
        aliases.setdefault(field_def.answer_key, field_def.answer_key)
    return aliases


def is_field_visible(field_def: FieldDefinition, values: dict, aliases: dict | None = None) -> bool:
    return evaluate_group(field_def.show_when, values, aliases)


def is_field_required(field_def: FieldDefinition, values: dict, aliases: dict | None = None) -> bool:
    """Required when visible and either statically required or its requireWhen holds."""
    if not is_field_visible(field_def, values, aliases):
        return False
    if field_def.required:
        return True
    if field_def.require_when is None:
        return False
    return evaluate_group(field_def.require_when, values, aliases)


# ── Provider ─────────────────────────────────────────────────────────────────


class FieldSchemaProvider:
    """Default provider: parses ``FormVersion.schema`` and caches per version."""

    def __init__(self):
        self._cache: dict[str, tuple] = {}
        self._lock = threading.Lock()

    def get_fields(self, form_version_id: str) -> list[FieldDefinition]:
        with self._lock:
            cached = self._cache.get(form_version_id)
        if cached is not None:
            return list(cached)

        version = db.session.get(FormVersion, form_version_id)
        if version is None:
            raise NotFoundError(resource="FormVersion", resource_id=form_version_id)
        fields = tuple(get_form_fields(version.schema))
        with self._lock:
            self._cache[form_version_id] = fields
        logger.debug("Parsed form version %s: %d fields", form_version_id, len(fields))
        return list(fields)

    def clear(self):
        with self._lock:
            self._cache.clear()


_provider = FieldSchemaProvider()


def get_field_schema_provider():
    return _provider


def set_field_schema_provider(provider):
    """Replace the provider (anything with ``get_fields(form_version_id)``)."""
    global _provider
    _provider = provider
