"""Versioned ModuleConfig registry with draft/review/active/archived lifecycle."""

from __future__ import annotations

import copy
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List

from condition_eval import ConditionEvalError, validate_condition_tree
from field_catalog import (
    FIELD_NAME_RE,
    LAYOUT_TYPES,
    RULE_TYPES,
    allowed_ui_types,
    field_options,
    is_known_data_type,
    is_picklist,
)
from forge.canonical import config_hash
from platform_errors import Issue, NotFound, SchemaError, issue
from record_validation import RULE_ALIASES
from storage_engine import run_in_transaction
from tenant_context import Caller, require_admin, require_tenant


logger = logging.getLogger("forge.schemas")

CONFIG_TABLE = "module_configs"
ACTIVE_TABLE = "module_active"
DRAFT = "draft"
REVIEW = "review"
ACTIVE = "active"
ARCHIVED = "archived"
STATUSES = {DRAFT, REVIEW, ACTIVE, ARCHIVED}
DEFAULT_CONVERTED_STATUS = "Converted"
MODULE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

DEFINITION_KEYS = (
    "module_name",
    "display_name",
    "description",
    "fields",
    "layout",
    "validations",
    "status_field",
    "initial_status",
    "converted_status",
    "auto_number",
)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _key(tenant_id: str, module_name: str, version: int) -> str:
    return f"{tenant_id}:{module_name}:{version}"


def _claim_active(tx: Any, tenant_id: str, module_name: str, version: int | None) -> None:
    # one row per module, written by every change of its active version
    key = f"{tenant_id}:{module_name}"
    pointer = tx.get(ACTIVE_TABLE, key)
    expected = pointer.pop("_version") if pointer else 0
    tx.put(
        ACTIVE_TABLE,
        key,
        {"tenant_id": tenant_id, "module_name": module_name, "version": version},
        expected_version=expected,
    )


def _strip(row: dict) -> dict:
    row = copy.deepcopy(row)
    row.pop("_version", None)
    return row


def _check_rules(rules: Any, path: str, field_names: set, module_level: bool) -> List[Issue]:
    issues: List[Issue] = []
    if rules is None:
        return issues
    if not isinstance(rules, list):
        return [issue("RULES_INVALID", "validation rules must be a list", path)]
    for idx, rule in enumerate(rules):
        rule_path = f"{path}[{idx}]"
        if not isinstance(rule, dict):
            issues.append(issue("RULE_INVALID", "rule must be an object", rule_path))
            continue
        rule_type = RULE_ALIASES.get(rule.get("type"), rule.get("type"))
        if rule_type not in RULE_TYPES:
            issues.append(issue("RULE_TYPE_UNKNOWN", f"unknown rule type: {rule.get('type')}", f"{rule_path}.type"))
            continue
        if rule_type == "expression":
            try:
                validate_condition_tree(rule.get("condition"))
            except ConditionEvalError as exc:
                issues.append(issue("RULE_CONDITION_INVALID", exc.message, f"{rule_path}.condition", {"at": exc.path}))
            if not rule.get("condition"):
                issues.append(issue("RULE_CONDITION_INVALID", "expression rule requires a condition", f"{rule_path}.condition"))
        if rule_type in {"regex", "pattern"}:
            pattern = rule.get("value") or (rule.get("config") or {}).get("value") or (rule.get("config") or {}).get("pattern")
            try:
                re.compile(str(pattern or ""))
            except re.error as exc:
                issues.append(issue("RULE_PATTERN_INVALID", f"invalid pattern: {exc}", rule_path))
        if module_level and rule_type != "expression":
            target = rule.get("field")
            if target not in field_names:
                issues.append(issue("RULE_FIELD_UNKNOWN", f"module rule targets unknown field: {target}", f"{rule_path}.field"))
    return issues


def _check_field(field: Any, path: str) -> List[Issue]:
    if not isinstance(field, dict):
        return [issue("FIELD_INVALID", "field must be an object", path)]
    issues: List[Issue] = []
    name = field.get("name")
    if not isinstance(name, str) or not FIELD_NAME_RE.match(name):
        issues.append(issue("FIELD_NAME_INVALID", f"invalid field name: {name!r}", f"{path}.name"))
    label = field.get("label")
    if label is not None and not isinstance(label, str):
        issues.append(issue("FIELD_LABEL_INVALID", "label must be a string", f"{path}.label"))
    data_type = field.get("data_type")
    if not is_known_data_type(data_type):
        issues.append(issue("FIELD_TYPE_UNKNOWN", f"unknown data_type: {data_type!r}", f"{path}.data_type"))
    else:
        ui_type = field.get("ui_type")
        if ui_type not in allowed_ui_types(data_type):
            issues.append(
                issue(
                    "FIELD_UI_TYPE_INVALID",
                    f"ui_type {ui_type!r} is not allowed for data_type {data_type}",
                    f"{path}.ui_type",
                    {"allowed": sorted(allowed_ui_types(data_type))},
                )
            )
    config = field.get("config")
    if config is not None and not isinstance(config, dict):
        issues.append(issue("FIELD_CONFIG_INVALID", "config must be an object", f"{path}.config"))
        config = {}
    config = config or {}
    for key in ("min_length", "max_length", "decimals", "max_size"):
        value = config.get(key)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
            issues.append(issue("FIELD_CONFIG_INVALID", f"{key} must be a non-negative integer", f"{path}.config.{key}"))
    for key in ("min", "max"):
        value = config.get(key)
        if value is not None and (not isinstance(value, (int, float)) or isinstance(value, bool)):
            issues.append(issue("FIELD_CONFIG_INVALID", f"{key} must be a number", f"{path}.config.{key}"))
    pattern = config.get("pattern")
    if pattern is not None:
        try:
            re.compile(str(pattern))
        except re.error as exc:
            issues.append(issue("FIELD_PATTERN_INVALID", f"invalid pattern: {exc}", f"{path}.config.pattern"))
    options = config.get("options")
    if options is not None and not isinstance(options, list):
        issues.append(issue("FIELD_OPTIONS_INVALID", "options must be a list", f"{path}.config.options"))
    elif data_type in {"picklist", "multiselect"} and not field_options(field):
        issues.append(issue("FIELD_OPTIONS_MISSING", "picklist fields need options", f"{path}.config.options"))
    if data_type in {"lookup", "reference"} and config.get("target_module") is not None and not isinstance(config.get("target_module"), str):
        issues.append(issue("FIELD_CONFIG_INVALID", "target_module must be a string", f"{path}.config.target_module"))
    return issues


def _check_layout(layout: Any, field_names: set) -> List[Issue]:
    if layout is None:
        return []
    if not isinstance(layout, dict):
        return [issue("LAYOUT_INVALID", "layout must be an object", "layout")]
    issues: List[Issue] = []
    layout_type = layout.get("type")
    if layout_type not in LAYOUT_TYPES:
        issues.append(issue("LAYOUT_TYPE_UNKNOWN", f"unknown layout type: {layout_type!r}", "layout.type"))
    for group_key in ("sections", "tabs", "steps"):
        groups = layout.get(group_key)
        if groups is None:
            continue
        if not isinstance(groups, list):
            issues.append(issue("LAYOUT_INVALID", f"{group_key} must be a list", f"layout.{group_key}"))
            continue
        for idx, group in enumerate(groups):
            names = group.get("fields") if isinstance(group, dict) else None
            if not isinstance(names, list):
                issues.append(issue("LAYOUT_INVALID", "layout group needs a fields list", f"layout.{group_key}[{idx}]"))
                continue
            for name in names:
                if name not in field_names:
                    issues.append(issue("LAYOUT_FIELD_UNKNOWN", f"layout references unknown field: {name}", f"layout.{group_key}[{idx}].fields"))
    return issues


def _status_field_name(definition: dict, field_by_name: dict) -> str | None:
    status_field = definition.get("status_field")
    if status_field:
        return status_field
    return "status" if "status" in field_by_name else None


def _initial_status(definition: dict, status_field: dict | None) -> str | None:
    if definition.get("initial_status"):
        return definition["initial_status"]
    if not status_field:
        return None
    if status_field.get("default_value") not in (None, ""):
        return status_field["default_value"]
    options = field_options(status_field)
    return options[0] if options else None


def validate_module_config(definition: Any) -> List[Issue]:
    """Collect every structural problem of a module definition."""
    if not isinstance(definition, dict):
        return [issue("CONFIG_INVALID", "module config must be an object", None)]
    issues: List[Issue] = []
    module_name = definition.get("module_name")
    if not isinstance(module_name, str) or not MODULE_NAME_RE.match(module_name):
        issues.append(issue("MODULE_NAME_INVALID", f"invalid module name: {module_name!r}", "module_name"))
    display_name = definition.get("display_name")
    if display_name is not None and not isinstance(display_name, str):
        issues.append(issue("DISPLAY_NAME_INVALID", "display_name must be a string", "display_name"))
    fields = definition.get("fields")
    if not isinstance(fields, list) or not fields:
        issues.append(issue("FIELDS_MISSING", "fields must be a non-empty list", "fields"))
        return issues

    field_by_name: Dict[str, dict] = {}
    for idx, field in enumerate(fields):
        path = f"fields[{idx}]"
        issues.extend(_check_field(field, path))
        if not isinstance(field, dict):
            continue
        name = field.get("name")
        if isinstance(name, str):
            if name in field_by_name:
                issues.append(issue("FIELD_NAME_DUPLICATE", f"duplicate field name: {name}", f"{path}.name"))
            else:
                field_by_name[name] = field
        issues.extend(_check_rules(field.get("validation"), f"{path}.validation", set(), False))
    names = set(field_by_name.keys())
    issues.extend(_check_rules(definition.get("validations"), "validations", names, True))
    issues.extend(_check_layout(definition.get("layout"), names))

    status_name = _status_field_name(definition, field_by_name)
    if definition.get("status_field") and status_name not in field_by_name:
        issues.append(issue("STATUS_FIELD_UNKNOWN", f"status_field references unknown field: {status_name}", "status_field"))
    status_field = field_by_name.get(status_name) if status_name else None
    if status_field is not None and is_picklist(status_field):
        options = field_options(status_field)
        for key in ("initial_status", "converted_status"):
            value = definition.get(key)
            if value is not None and value not in options:
                issues.append(issue("STATUS_VALUE_UNKNOWN", f"{key} {value!r} is not a status option", key, {"options": options}))

    auto_number = definition.get("auto_number")
    if auto_number is not None:
        if not isinstance(auto_number, dict):
            issues.append(issue("AUTO_NUMBER_INVALID", "auto_number must be an object", "auto_number"))
        elif auto_number.get("field") is not None and auto_number.get("field") not in field_by_name:
            issues.append(issue("AUTO_NUMBER_FIELD_UNKNOWN", f"auto_number field not declared: {auto_number.get('field')}", "auto_number.field"))
    return issues


def normalize_definition(definition: dict) -> dict:
    out = {key: copy.deepcopy(definition.get(key)) for key in DEFINITION_KEYS}
    out["display_name"] = out.get("display_name") or out["module_name"]
    fields = []
    for field in out["fields"]:
        item = dict(field)
        item.setdefault("label", item["name"])
        item["is_required"] = bool(item.get("is_required"))
        item["is_unique"] = bool(item.get("is_unique")) or any(
            isinstance(rule, dict) and rule.get("type") == "unique" for rule in item.get("validation") or []
        )
        item.setdefault("config", {})
        item.setdefault("validation", [])
        item.setdefault("default_value", None)
        fields.append(item)
    out["fields"] = fields
    field_by_name = {f["name"]: f for f in fields}
    out["validations"] = out.get("validations") or []
    out["status_field"] = _status_field_name(definition, field_by_name)
    out["initial_status"] = _initial_status(definition, field_by_name.get(out["status_field"]))
    out["converted_status"] = out.get("converted_status") or DEFAULT_CONVERTED_STATUS
    return out


class SchemaRegistry:
    def __init__(self, storage: Any, audit: Any | None = None) -> None:
        self._storage = storage
        self._audit = audit

    def _versions(self, tenant_id: str, module_name: str) -> List[dict]:
        rows = self._storage.query(CONFIG_TABLE, tenant_id=tenant_id, module_name=module_name)
        rows.sort(key=lambda row: row["version"])
        return rows

    def _emit(self, caller: Caller, action: str, config: dict, metadata: dict | None = None) -> None:
        if self._audit is None:
            return
        meta = {"module_name": config["module_name"], "version": config["version"], "status": config["status"]}
        meta.update(metadata or {})
        self._audit.record(caller.tenant_id, caller.actor_id, action, "module_config", f"{config['module_name']}:{config['version']}", meta)

    def resolve(self, caller: Caller, module_name: str) -> dict:
        require_tenant(caller)
        rows = self._versions(caller.tenant_id, module_name)
        for row in rows:
            if row["status"] == ACTIVE:
                return _strip(row)
        pending = [row for row in rows if row["status"] in {DRAFT, REVIEW}]
        if pending:
            return _strip(pending[-1])
        raise NotFound(f"module not found: {module_name}", "module_name")

    def get_version(self, caller: Caller, module_name: str, version: int) -> dict:
        require_tenant(caller)
        row = self._storage.get(CONFIG_TABLE, _key(caller.tenant_id, module_name, version))
        if row is None:
            raise NotFound(f"module version not found: {module_name} v{version}", "version")
        return _strip(row)

    def list_versions(self, caller: Caller, module_name: str) -> List[dict]:
        require_tenant(caller)
        return [_strip(row) for row in self._versions(caller.tenant_id, module_name)]

    def list_modules(self, caller: Caller) -> List[dict]:
        require_tenant(caller)
        rows = self._storage.query(CONFIG_TABLE, tenant_id=caller.tenant_id, status=ACTIVE)
        rows.sort(key=lambda row: (row.get("display_name") or row["module_name"]).lower())
        return [_strip(row) for row in rows]

    def get_field(self, caller: Caller, module_name: str, field_name: str) -> dict:
        config = self.resolve(caller, module_name)
        for field in config["fields"]:
            if field["name"] == field_name:
                return field
        raise NotFound(f"field not found: {module_name}.{field_name}", "field_name")

    def save(self, caller: Caller, module_config: dict) -> dict:
        """Persist ``module_config`` as a new draft version."""
        require_tenant(caller)
        issues = validate_module_config(module_config)
        if issues:
            logger.info("schema_rejected tenant=%s issues=%s", caller.tenant_id, len(issues))
            raise SchemaError(issues)
        definition = normalize_definition(module_config)
        module_name = definition["module_name"]

        def _write(tx: Any) -> dict:
            rows = tx.query(CONFIG_TABLE, tenant_id=caller.tenant_id, module_name=module_name)
            version = max((row["version"] for row in rows), default=0) + 1
            config = dict(definition)
            config.update(
                {
                    "tenant_id": caller.tenant_id,
                    "version": version,
                    "status": DRAFT,
                    "config_hash": config_hash(definition),
                    "created_by": caller.actor_id,
                    "created_at": _now(),
                    "approved_by": None,
                    "approved_at": None,
                }
            )
            tx.put(CONFIG_TABLE, _key(caller.tenant_id, module_name, version), config, expected_version=0)
            return config

        config = run_in_transaction(self._storage, _write)
        logger.info("schema_saved tenant=%s module=%s version=%s", caller.tenant_id, module_name, config["version"])
        self._emit(caller, "module_config.save", config, {"config_hash": config["config_hash"]})
        return copy.deepcopy(config)

    def _transition(self, caller: Caller, module_name: str, version: int, allowed: set, target: str, action: str) -> dict:
        require_tenant(caller)
        key = _key(caller.tenant_id, module_name, version)

        def _write(tx: Any) -> dict:
            row = tx.get(CONFIG_TABLE, key)
            if row is None:
                raise NotFound(f"module version not found: {module_name} v{version}", "version")
            current = row.pop("_version")
            if row["status"] not in allowed:
                raise SchemaError(
                    [issue("INVALID_TRANSITION", f"cannot {action} a {row['status']} version", "status", {"from": row["status"], "to": target})],
                    f"cannot {action} module version",
                )
            if target == ACTIVE:
                _claim_active(tx, caller.tenant_id, module_name, version)
                for other in tx.query(CONFIG_TABLE, tenant_id=caller.tenant_id, module_name=module_name, status=ACTIVE):
                    other_version = other.pop("_version")
                    other["status"] = ARCHIVED
                    tx.put(CONFIG_TABLE, _key(caller.tenant_id, module_name, other["version"]), other, expected_version=other_version)
                    logger.info("schema_archived tenant=%s module=%s version=%s", caller.tenant_id, module_name, other["version"])
                row["approved_by"] = caller.actor_id
                row["approved_at"] = _now()
            elif row["status"] == ACTIVE:
                _claim_active(tx, caller.tenant_id, module_name, None)
            row["status"] = target
            tx.put(CONFIG_TABLE, key, row, expected_version=current)
            return row

        config = run_in_transaction(self._storage, _write)
        logger.info("schema_%s tenant=%s module=%s version=%s", action, caller.tenant_id, module_name, version)
        self._emit(caller, f"module_config.{action}", config)
        return copy.deepcopy(config)

    def submit(self, caller: Caller, module_name: str, version: int) -> dict:
        return self._transition(caller, module_name, version, {DRAFT}, REVIEW, "submit")

    def approve(self, caller: Caller, module_name: str, version: int) -> dict:
        require_admin(caller, "approve")
        return self._transition(caller, module_name, version, {REVIEW}, ACTIVE, "approve")

    def reject(self, caller: Caller, module_name: str, version: int) -> dict:
        require_admin(caller, "reject")
        return self._transition(caller, module_name, version, {REVIEW}, DRAFT, "reject")

    def archive(self, caller: Caller, module_name: str, version: int) -> dict:
        return self._transition(caller, module_name, version, {DRAFT, REVIEW, ACTIVE}, ARCHIVED, "archive")
