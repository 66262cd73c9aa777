"""Fixed field type catalog: data types, the ui types they pair with, and value kinds."""

from __future__ import annotations

import re
from typing import Any, Dict, List


# data_type -> (value kind used by validation, allowed ui_types)
CATALOG: Dict[str, Dict[str, Any]] = {
    "string": {"kind": "string", "ui_types": {"text", "textarea", "email", "phone", "url", "dropdown", "radio"}},
    "text": {"kind": "string", "ui_types": {"text", "textarea", "rich_text"}},
    "email": {"kind": "string", "ui_types": {"email", "text"}},
    "phone": {"kind": "string", "ui_types": {"phone", "text"}},
    "url": {"kind": "string", "ui_types": {"url", "text"}},
    "number": {"kind": "number", "ui_types": {"number", "currency", "percent"}},
    "integer": {"kind": "integer", "ui_types": {"number"}},
    "decimal": {"kind": "number", "ui_types": {"number", "currency", "percent"}},
    "currency": {"kind": "currency", "ui_types": {"currency", "number"}},
    "boolean": {"kind": "boolean", "ui_types": {"checkbox", "toggle"}},
    "date": {"kind": "date", "ui_types": {"date"}},
    "datetime": {"kind": "datetime", "ui_types": {"datetime", "date"}},
    "picklist": {"kind": "choice", "ui_types": {"dropdown", "radio"}},
    "multiselect": {"kind": "multi_choice", "ui_types": {"multiselect", "checkbox_group"}},
    "lookup": {"kind": "reference", "ui_types": {"lookup", "dropdown"}},
    "reference": {"kind": "reference", "ui_types": {"lookup", "dropdown"}},
    "file": {"kind": "file", "ui_types": {"file"}},
    "table": {"kind": "table", "ui_types": {"table"}},
    "formula": {"kind": "formula", "ui_types": {"formula", "text", "number", "currency"}},
}

RULE_TYPES = {
    "required",
    "email",
    "phone",
    "url",
    "min_length",
    "max_length",
    "min",
    "max",
    "range",
    "regex",
    "pattern",
    "expression",
    "unique",
}

LAYOUT_TYPES = {"single_column", "two_column", "tabbed", "wizard"}

FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[+]?[0-9]{10,15}$")
URL_RE = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)


def is_known_data_type(data_type: Any) -> bool:
    return isinstance(data_type, str) and data_type in CATALOG


def allowed_ui_types(data_type: str) -> set:
    entry = CATALOG.get(data_type)
    return set(entry["ui_types"]) if entry else set()


def value_kind(field: dict) -> str:
    entry = CATALOG.get(field.get("data_type"))
    if entry is None:
        return "string"
    # a picklist ui on a plain string field still constrains to options
    if entry["kind"] == "string" and field.get("ui_type") in {"dropdown", "radio"} and field_options(field):
        return "choice"
    return entry["kind"]


def format_check(field: dict) -> str | None:
    """Return ``email``/``phone``/``url`` when the field implies a format check."""
    for candidate in (field.get("data_type"), field.get("ui_type")):
        if candidate in {"email", "phone", "url"}:
            return candidate
    return None


def field_options(field: dict) -> List[Any]:
    config = field.get("config") or {}
    options = config.get("options") or []
    values = []
    for option in options:
        if isinstance(option, dict):
            values.append(option.get("value", option.get("label")))
        else:
            values.append(option)
    return values


def is_picklist(field: dict) -> bool:
    return value_kind(field) in {"choice", "multi_choice"}


def matches_format(kind: str, value: str) -> bool:
    if kind == "email":
        return bool(EMAIL_RE.match(value))
    if kind == "phone":
        return bool(PHONE_RE.match(re.sub(r"[\s\-()]", "", value)))
    if kind == "url":
        return bool(URL_RE.match(value))
    return True
