"""Schema x payload validation for dynamic records.

``validate_payload`` is a pure function: it never touches storage and never
raises for problems in the data itself. Every problem becomes a field error
dict ``{"field", "kind", "message", "detail"}`` and all of them are collected
before returning, so callers can render the complete set at once.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List

from condition_eval import ConditionEvalError, eval_condition, is_empty
from field_catalog import field_options, format_check, matches_format, value_kind
from platform_errors import InvalidPayload, field_error


REQUIRED = "Required"
TYPE_MISMATCH = "TypeMismatch"
TOO_SHORT = "TooShort"
TOO_LONG = "TooLong"
PATTERN_MISMATCH = "PatternMismatch"
OUT_OF_RANGE = "OutOfRange"
INVALID_OPTION = "InvalidOption"
FILE_REJECTED = "FileRejected"
RULE_FAILED = "RuleFailed"
UNKNOWN_FIELD = "UnknownField"
DUPLICATE_VALUE = "DuplicateValue"
INVALID_REFERENCE = "InvalidReference"

RULE_ALIASES = {"minLength": "min_length", "maxLength": "max_length", "custom": "expression"}

_TRUE = {"true", "yes", "y", "1", "on"}
_FALSE = {"false", "no", "n", "0", "off"}


class CoercionError(ValueError):
    pass


def _coerce_string(value: Any, field: dict) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or isinstance(value, (list, dict)):
        raise CoercionError("must be text")
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    raise CoercionError("must be text")


def _parse_number(value: Any) -> int | float:
    if isinstance(value, bool):
        raise CoercionError("must be a number")
    if isinstance(value, Decimal):
        value = float(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise CoercionError("must be a finite number")
        return value
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            raise CoercionError("must be a number")
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise CoercionError("must be a number") from None
        if not math.isfinite(number):
            raise CoercionError("must be a finite number")
        return number
    raise CoercionError("must be a number")


def _coerce_number(value: Any, field: dict) -> Any:
    return _parse_number(value)


def _coerce_integer(value: Any, field: dict) -> Any:
    number = _parse_number(value)
    if isinstance(number, float):
        if not number.is_integer():
            raise CoercionError("must be a whole number")
        return int(number)
    return number


def round_currency(value: Any, decimals: int = 2) -> int | float:
    """Round half-up to ``decimals`` places."""
    try:
        quantum = Decimal(1).scaleb(-int(decimals))
        rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise CoercionError("must be an amount") from None
    if int(decimals) <= 0:
        return int(rounded)
    return float(rounded)


def _coerce_currency(value: Any, field: dict) -> Any:
    config = field.get("config") or {}
    decimals = config.get("decimals")
    if not isinstance(decimals, int) or isinstance(decimals, bool):
        decimals = 2
    return round_currency(_parse_number(value), decimals)


def _coerce_boolean(value: Any, field: dict) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    raise CoercionError("must be true or false")


def _coerce_date(value: Any, field: dict) -> Any:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return date.fromisoformat(text).isoformat()
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
        except ValueError:
            raise CoercionError("must be a date (YYYY-MM-DD)") from None
    raise CoercionError("must be a date (YYYY-MM-DD)")


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat(timespec="seconds") + "Z"
    return value.isoformat(timespec="seconds")


def _coerce_datetime(value: Any, field: dict) -> Any:
    if isinstance(value, datetime):
        return _format_datetime(value)
    if isinstance(value, date):
        return _format_datetime(datetime(value.year, value.month, value.day))
    if isinstance(value, str) and value.strip():
        try:
            return _format_datetime(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            raise CoercionError("must be an ISO 8601 datetime") from None
    raise CoercionError("must be an ISO 8601 datetime")


def _coerce_choice(value: Any, field: dict) -> Any:
    if isinstance(value, (list, dict)) or isinstance(value, bool):
        raise CoercionError("must be a single option")
    options = field_options(field)
    if value in options:
        return value
    for option in options:
        if str(option) == str(value):
            return option
    return value


def _coerce_multi_choice(value: Any, field: dict) -> Any:
    if isinstance(value, str):
        value = [part.strip() for part in value.split(",") if part.strip()]
    if not isinstance(value, list):
        raise CoercionError("must be a list of options")
    return [_coerce_choice(item, field) for item in value]


def _coerce_reference(value: Any, field: dict) -> Any:
    if isinstance(value, dict) and value.get("id"):
        value = value["id"]
    if isinstance(value, bool):
        raise CoercionError("must be a record id")
    if isinstance(value, (str, int)):
        return str(value)
    raise CoercionError("must be a record id")


def _coerce_file(value: Any, field: dict) -> Any:
    items = value if isinstance(value, list) else [value]
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise CoercionError("must be file metadata with a name")
        size = item.get("size")
        if size is not None and (isinstance(size, bool) or not isinstance(size, (int, float))):
            raise CoercionError("file size must be a number")
    return value


def _coerce_table(value: Any, field: dict) -> Any:
    if not isinstance(value, list):
        raise CoercionError("must be a list of rows")
    for idx, row in enumerate(value):
        if not isinstance(row, dict):
            raise CoercionError(f"row {idx} must be an object")
    return [dict(row) for row in value]


COERCERS: Dict[str, Callable[[Any, dict], Any]] = {
    "string": _coerce_string,
    "number": _coerce_number,
    "integer": _coerce_integer,
    "currency": _coerce_currency,
    "boolean": _coerce_boolean,
    "date": _coerce_date,
    "datetime": _coerce_datetime,
    "choice": _coerce_choice,
    "multi_choice": _coerce_multi_choice,
    "reference": _coerce_reference,
    "file": _coerce_file,
    "table": _coerce_table,
}


def _label(field: dict) -> str:
    return field.get("label") or field.get("name") or "field"


def _check_length(field: dict, value: str, errors: list) -> None:
    config = field.get("config") or {}
    name = field.get("name")
    min_length = config.get("min_length")
    max_length = config.get("max_length")
    if isinstance(min_length, int) and len(value) < min_length:
        errors.append(field_error(name, TOO_SHORT, f"{_label(field)} must be at least {min_length} characters", {"min_length": min_length}))
    if isinstance(max_length, int) and len(value) > max_length:
        errors.append(field_error(name, TOO_LONG, f"{_label(field)} must be at most {max_length} characters", {"max_length": max_length}))


def _check_pattern(field: dict, value: str, errors: list) -> None:
    config = field.get("config") or {}
    name = field.get("name")
    pattern = config.get("pattern")
    if isinstance(pattern, str) and pattern:
        try:
            ok = re.search(pattern, value) is not None
        except re.error:
            ok = False
        if not ok:
            errors.append(field_error(name, PATTERN_MISMATCH, f"{_label(field)} has an invalid format", {"pattern": pattern}))
    fmt = format_check(field)
    if fmt and value and not matches_format(fmt, value):
        errors.append(field_error(name, PATTERN_MISMATCH, f"{_label(field)} must be a valid {fmt}", {"format": fmt}))


def _check_range(field: dict, value: Any, errors: list) -> None:
    config = field.get("config") or {}
    low = config.get("min")
    high = config.get("max")
    if (low is not None and value < low) or (high is not None and value > high):
        errors.append(field_error(field.get("name"), OUT_OF_RANGE, f"{_label(field)} must be between {low} and {high}", {"min": low, "max": high}))


def _accepts(accept: Any, item: dict) -> bool:
    if isinstance(accept, str):
        accept = [part.strip() for part in accept.split(",") if part.strip()]
    if not accept:
        return True
    name = item.get("name", "").lower()
    mime = (item.get("type") or item.get("mime_type") or "").lower()
    for pattern in accept:
        pattern = str(pattern).lower()
        if pattern.startswith(".") and name.endswith(pattern):
            return True
        if pattern.endswith("/*") and mime.startswith(pattern[:-1]):
            return True
        if pattern == mime:
            return True
    return False


def _check_file(field: dict, value: Any, errors: list) -> None:
    config = field.get("config") or {}
    max_size = config.get("max_size")
    accept = config.get("accept")
    for item in value if isinstance(value, list) else [value]:
        size = item.get("size")
        if max_size is not None and size is not None and size > max_size:
            errors.append(field_error(field.get("name"), FILE_REJECTED, f"{item['name']} exceeds {max_size} bytes", {"size": size, "max_size": max_size}))
        if not _accepts(accept, item):
            errors.append(field_error(field.get("name"), FILE_REJECTED, f"{item['name']} is not an accepted file type", {"accept": accept}))


def _check_options(field: dict, value: Any, errors: list) -> None:
    options = field_options(field)
    if not options:
        return
    values = value if isinstance(value, list) else [value]
    invalid = [item for item in values if item not in options]
    if invalid:
        errors.append(field_error(field.get("name"), INVALID_OPTION, f"{_label(field)} must be one of {options}", {"invalid": invalid, "options": options}))


def _check_constraints(field: dict, kind: str, value: Any, errors: list) -> None:
    if kind == "string":
        _check_length(field, value, errors)
        _check_pattern(field, value, errors)
    elif kind in {"number", "integer", "currency"}:
        _check_range(field, value, errors)
    elif kind in {"choice", "multi_choice"}:
        _check_options(field, value, errors)
    elif kind == "file":
        _check_file(field, value, errors)


def _rule_param(rule: dict, key: str = "value") -> Any:
    if key in rule:
        return rule.get(key)
    return (rule.get("config") or {}).get(key)


def _rule_passes(rule_type: str, rule: dict, value: Any, data: dict) -> bool:
    if rule_type == "required":
        return not is_empty(value)
    if rule_type == "expression":
        return eval_condition(rule.get("condition"), data)
    if rule_type == "unique" or is_empty(value):
        return True
    if rule_type in {"email", "phone", "url"}:
        return matches_format(rule_type, str(value))
    if rule_type in {"min_length", "max_length"}:
        limit = int(_rule_param(rule) or 0)
        length = len(value) if isinstance(value, (str, list)) else len(str(value))
        return length >= limit if rule_type == "min_length" else length <= limit
    if rule_type in {"min", "max", "range"}:
        try:
            number = float(_parse_number(value))
        except CoercionError:
            return False
        low = _rule_param(rule, "min") if rule_type == "range" else _rule_param(rule)
        high = _rule_param(rule, "max") if rule_type == "range" else _rule_param(rule)
        if rule_type in {"min", "range"} and low is not None and number < float(low):
            return False
        if rule_type in {"max", "range"} and high is not None and number > float(high):
            return False
        return True
    if rule_type in {"regex", "pattern"}:
        pattern = _rule_param(rule) or _rule_param(rule, "pattern")
        if not pattern:
            return True
        return re.search(str(pattern), str(value)) is not None
    return True


DEFAULT_RULE_MESSAGES = {
    "required": "This field is required",
    "min_length": "Minimum {value} characters required",
    "max_length": "Maximum {value} characters allowed",
    "min": "Value must be at least {value}",
    "max": "Value must be at most {value}",
    "range": "Value is out of range",
    "email": "Please enter a valid email address",
    "url": "Please enter a valid URL",
    "phone": "Please enter a valid phone number",
    "regex": "Invalid format",
    "pattern": "Invalid format",
    "expression": "Validation failed",
}


def _rule_message(rule_type: str, rule: dict) -> str:
    message = rule.get("message")
    if isinstance(message, str) and message:
        return message
    template = DEFAULT_RULE_MESSAGES.get(rule_type, "Validation error")
    return template.format(value=_rule_param(rule) or 0)


def _apply_rule(field_name: str | None, rule: Any, value: Any, data: dict, errors: list) -> None:
    if not isinstance(rule, dict):
        return
    rule_type = RULE_ALIASES.get(rule.get("type"), rule.get("type"))
    try:
        ok = _rule_passes(rule_type, rule, value, data)
        detail = {"rule": rule_type}
    except (ConditionEvalError, re.error, ValueError, TypeError) as exc:
        ok = False
        detail = {"rule": rule_type, "error": str(exc)}
    if not ok:
        errors.append(field_error(field_name, RULE_FAILED, _rule_message(rule_type, rule), detail))


def validate_payload(config: dict, raw: Any, for_create: bool = True) -> tuple[list[dict], dict]:
    """Validate ``raw`` against a module config.

    Returns ``(errors, normalized)``. ``normalized`` only carries declared,
    non-formula fields whose values coerced cleanly.
    """
    if not isinstance(raw, dict):
        raise InvalidPayload("record data must be an object", "data")
    errors: list[dict] = []
    fields = [f for f in config.get("fields") or [] if isinstance(f, dict) and f.get("name")]
    field_by_name = {f["name"]: f for f in fields}

    for key in raw.keys():
        if key not in field_by_name:
            errors.append(field_error(key, UNKNOWN_FIELD, f"Unknown field: {key}"))

    normalized: dict = {}
    missing: set = set()
    for field in fields:
        name = field["name"]
        kind = value_kind(field)
        if kind == "formula":
            continue
        present = name in raw
        value = raw.get(name)
        if for_create and is_empty(value) and field.get("default_value") is not None:
            value = field.get("default_value")
            present = True
        if is_empty(value):
            if field.get("is_required"):
                errors.append(field_error(name, REQUIRED, f"{_label(field)} is required"))
                missing.add(name)
            if present:
                # blanks only survive on text fields; other kinds store None
                normalized[name] = value if kind == "string" or isinstance(value, list) else None
        else:
            coerce = COERCERS.get(kind, _coerce_string)
            try:
                value = coerce(value, field)
            except CoercionError as exc:
                errors.append(field_error(name, TYPE_MISMATCH, f"{_label(field)} {exc}", {"expected": kind}))
                continue
            _check_constraints(field, kind, value, errors)
            normalized[name] = value

    for field in fields:
        name = field["name"]
        if value_kind(field) == "formula":
            continue
        for rule in field.get("validation") or []:
            if name in missing and isinstance(rule, dict) and rule.get("type") == "required":
                continue
            _apply_rule(name, rule, normalized.get(name), normalized, errors)

    for rule in config.get("validations") or []:
        if not isinstance(rule, dict):
            continue
        target = rule.get("field")
        _apply_rule(target, rule, normalized.get(target) if target else None, normalized, errors)

    return errors, normalized
