"""AND/OR rule tree evaluator for workflow conditions, list filters and expression rules."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, List


GROUP_OPERATORS = {"AND", "OR"}
RULE_OPERATORS = {
    "equals",
    "notEquals",
    "contains",
    "greaterThan",
    "lessThan",
    "in",
    "notIn",
    "isEmpty",
    "isNotEmpty",
}
UNARY_OPERATORS = {"isEmpty", "isNotEmpty"}


@dataclass
class ConditionEvalError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class ConditionSchemaError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_SCHEMA_ERROR", message, path)


class ConditionDepthError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_DEPTH_EXCEEDED", message, path)


class UnknownOpError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_UNKNOWN_OP", message, path)


def _depth_check(depth: int, limit: int, path: str) -> None:
    if depth > limit:
        raise ConditionDepthError("Depth limit exceeded", path)


def get_field_value(data: dict, name: str) -> Any:
    if not isinstance(data, dict):
        return None
    if name in data:
        return data.get(name)
    current: Any = data
    for part in name.split("."):
        if isinstance(current, dict) and part in current:
            current = current.get(part)
        else:
            return None
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> float | None:
    if _is_number(value):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _to_date(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and value:
        text = value.strip().replace("Z", "+00:00")
        try:
            return datetime.fromisoformat(text).replace(tzinfo=None)
        except ValueError:
            return None
    return None


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    left_num = _to_number(left)
    right_num = _to_number(right)
    if left_num is not None and right_num is not None and not isinstance(left, bool) and not isinstance(right, bool):
        return left_num == right_num
    return False


def _ordered(left: Any, right: Any) -> tuple | None:
    left_num = _to_number(left)
    right_num = _to_number(right)
    if left_num is not None and right_num is not None:
        return left_num, right_num
    left_dt = _to_date(left)
    right_dt = _to_date(right)
    if left_dt is not None and right_dt is not None:
        return left_dt, right_dt
    return None


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [value]


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, list):
        return any(_equals(item, right) for item in left)
    if left is None or right is None:
        return False
    return str(right).lower() in str(left).lower()


def _member(left: Any, options: List[Any]) -> bool:
    if isinstance(left, list):
        return any(_member(item, options) for item in left)
    return any(_equals(left, option) for option in options)


def _resolve_value(value: Any, data: dict) -> Any:
    if isinstance(value, dict) and set(value.keys()) == {"field"}:
        return get_field_value(data, value["field"])
    return value


def eval_rule(rule: dict, data: dict) -> bool:
    """Apply one leaf rule ``{field, operator, value}`` to record data."""
    operator = rule.get("operator")
    left = get_field_value(data, rule.get("field"))
    if operator == "isEmpty":
        return is_empty(left)
    if operator == "isNotEmpty":
        return not is_empty(left)
    right = _resolve_value(rule.get("value"), data)
    if operator == "equals":
        return _equals(left, right)
    if operator == "notEquals":
        return not _equals(left, right)
    if operator == "contains":
        return _contains(left, right)
    if operator in {"greaterThan", "lessThan"}:
        pair = _ordered(left, right)
        if pair is None:
            return False
        return pair[0] > pair[1] if operator == "greaterThan" else pair[0] < pair[1]
    if operator == "in":
        return _member(left, _as_list(right))
    if operator == "notIn":
        return not _member(left, _as_list(right))
    raise UnknownOpError(f"Unknown operator: {operator}")


def _check(node: Any, path: str, depth: int, limit: int) -> None:
    _depth_check(depth, limit, path)
    if not isinstance(node, dict):
        raise ConditionSchemaError("Condition must be object", path)
    if "rules" in node or node.get("operator") in GROUP_OPERATORS:
        operator = node.get("operator")
        if operator not in GROUP_OPERATORS:
            raise UnknownOpError(f"Unknown group operator: {operator}", f"{path}.operator")
        rules = node.get("rules")
        if not isinstance(rules, list):
            raise ConditionSchemaError("rules must be list", f"{path}.rules")
        for idx, child in enumerate(rules):
            _check(child, f"{path}.rules[{idx}]", depth + 1, limit)
        return
    field = node.get("field")
    if not isinstance(field, str) or not field:
        raise ConditionSchemaError("Missing required field: field", path)
    operator = node.get("operator")
    if operator not in RULE_OPERATORS:
        raise UnknownOpError(f"Unknown operator: {operator}", f"{path}.operator")
    if operator not in UNARY_OPERATORS and "value" not in node:
        raise ConditionSchemaError("Missing required field: value", path)
    value = node.get("value")
    if isinstance(value, dict) and not (set(value.keys()) == {"field"} and isinstance(value["field"], str)):
        raise ConditionSchemaError("value reference must be {field: name}", f"{path}.value")


def _normalize(tree: Any) -> dict | None:
    if tree is None:
        return None
    if isinstance(tree, list):
        return {"operator": "AND", "rules": tree}
    if isinstance(tree, dict) and not tree:
        return None
    return tree


def validate_condition_tree(tree: Any, depth_limit: int = 10) -> None:
    """Raise a :class:`ConditionEvalError` when the tree is malformed."""
    node = _normalize(tree)
    if node is None:
        return
    _check(node, "$", 1, depth_limit)


def eval_condition(tree: Any, data: dict, depth_limit: int = 10) -> bool:
    """Evaluate a rule tree against ``data``. An empty tree always holds."""
    if not isinstance(data, dict):
        raise ConditionSchemaError("data must be object", "$")
    node = _normalize(tree)
    if node is None:
        return True
    _check(node, "$", 1, depth_limit)
    return _eval(node, data)


def _eval(node: dict, data: dict) -> bool:
    if node.get("operator") in GROUP_OPERATORS:
        results = (_eval(child, data) for child in node.get("rules") or [])
        if node["operator"] == "AND":
            return all(results)
        return any(results)
    return eval_rule(node, data)
