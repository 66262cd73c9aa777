"""Workflow definitions and their append-only execution log."""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from condition_eval import ConditionEvalError, validate_condition_tree
from platform_errors import Issue, NotFound, SchemaError, issue
from storage_engine import run_in_transaction
from tenant_context import Caller, require_admin, require_tenant


logger = logging.getLogger("forge.workflows")

WORKFLOW_TABLE = "workflows"
EXECUTION_TABLE = "workflow_executions"

TRIGGER_TYPES = {"onCreate", "onUpdate", "onDelete", "onStatusChange", "onFieldChange", "scheduled"}
ACTION_TYPES = {"sendEmail", "updateRecord", "createRecord", "webhook", "notification"}
REQUIRED_ACTION_CONFIG = {
    "sendEmail": ("to", "subject"),
    "updateRecord": ("fields",),
    "createRecord": ("module_name", "fields"),
    "webhook": ("url",),
    "notification": ("message",),
}
RUNNING = "running"
SUCCESS = "success"
FAILED = "failed"

Workflow = Dict[str, Any]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _strip(row: dict) -> dict:
    row = copy.deepcopy(row)
    row.pop("_version", None)
    return row


def validate_workflow(workflow: Any) -> List[Issue]:
    if not isinstance(workflow, dict):
        return [issue("WORKFLOW_INVALID", "workflow must be an object", None)]
    issues: List[Issue] = []
    for key in ("module_name", "name"):
        if not isinstance(workflow.get(key), str) or not workflow.get(key):
            issues.append(issue("WORKFLOW_FIELD_MISSING", f"{key} is required", key))
    trigger = workflow.get("trigger")
    if not isinstance(trigger, dict) or trigger.get("type") not in TRIGGER_TYPES:
        issues.append(issue("TRIGGER_INVALID", f"trigger.type must be one of {sorted(TRIGGER_TYPES)}", "trigger.type"))
    elif trigger["type"] == "onFieldChange" and not trigger.get("field"):
        issues.append(issue("TRIGGER_FIELD_MISSING", "onFieldChange needs trigger.field", "trigger.field"))
    elif trigger["type"] == "scheduled" and not trigger.get("schedule"):
        issues.append(issue("TRIGGER_SCHEDULE_MISSING", "scheduled needs trigger.schedule", "trigger.schedule"))
    try:
        validate_condition_tree(workflow.get("conditions"))
    except ConditionEvalError as exc:
        issues.append(issue(exc.code, exc.message, "conditions", {"at": exc.path}))
    actions = workflow.get("actions")
    if not isinstance(actions, list) or not actions:
        issues.append(issue("ACTIONS_MISSING", "actions must be a non-empty list", "actions"))
        actions = []
    for idx, action in enumerate(actions):
        path = f"actions[{idx}]"
        if not isinstance(action, dict) or action.get("type") not in ACTION_TYPES:
            issues.append(issue("ACTION_TYPE_UNKNOWN", f"action type must be one of {sorted(ACTION_TYPES)}", f"{path}.type"))
            continue
        config = action.get("config")
        if not isinstance(config, dict):
            issues.append(issue("ACTION_CONFIG_INVALID", "action config must be an object", f"{path}.config"))
            continue
        for key in REQUIRED_ACTION_CONFIG[action["type"]]:
            if config.get(key) in (None, "", {}, []):
                issues.append(issue("ACTION_CONFIG_MISSING", f"{action['type']} needs config.{key}", f"{path}.config.{key}"))
        if action["type"] in {"updateRecord", "createRecord"} and not isinstance(config.get("fields", {}), dict):
            issues.append(issue("ACTION_CONFIG_INVALID", "config.fields must be an object", f"{path}.config.fields"))
    priority = workflow.get("priority", 0)
    if not isinstance(priority, int) or isinstance(priority, bool):
        issues.append(issue("PRIORITY_INVALID", "priority must be an integer", "priority"))
    return issues


class WorkflowStore:
    def __init__(self, storage: Any) -> None:
        self._storage = storage

    def _load(self, caller: Caller, workflow_id: str) -> dict:
        row = self._storage.get(WORKFLOW_TABLE, workflow_id) if isinstance(workflow_id, str) else None
        if row is None or row.get("tenant_id") != caller.tenant_id:
            raise NotFound("workflow not found", "workflow_id")
        return row

    def save(self, caller: Caller, workflow: Workflow) -> Workflow:
        """Create or replace a workflow definition (admin only)."""
        require_admin(caller, "save workflow")
        issues = validate_workflow(workflow)
        if issues:
            raise SchemaError(issues, "invalid workflow")
        now = _now()
        workflow_id = workflow.get("id") or str(uuid.uuid4())
        existing = None
        if workflow.get("id"):
            existing = self._load(caller, workflow_id)
        item = {
            "id": workflow_id,
            "tenant_id": caller.tenant_id,
            "module_name": workflow["module_name"],
            "name": workflow["name"],
            "description": workflow.get("description"),
            "trigger": copy.deepcopy(workflow["trigger"]),
            "conditions": copy.deepcopy(workflow.get("conditions")),
            "actions": copy.deepcopy(workflow["actions"]),
            "is_active": bool(workflow.get("is_active", True)),
            "priority": workflow.get("priority", 0),
            "created_by": existing["created_by"] if existing else caller.actor_id,
            "created_at": existing["created_at"] if existing else now,
            "updated_at": now,
        }
        expected = existing["_version"] if existing else 0
        self._storage.put(WORKFLOW_TABLE, workflow_id, item, expected_version=expected)
        logger.info("workflow_saved tenant=%s module=%s id=%s", caller.tenant_id, item["module_name"], workflow_id)
        return copy.deepcopy(item)

    def get(self, caller: Caller, workflow_id: str) -> Workflow:
        require_tenant(caller)
        return _strip(self._load(caller, workflow_id))

    def _set_active(self, caller: Caller, workflow_id: str, active: bool) -> Workflow:
        require_admin(caller, "activate workflow" if active else "deactivate workflow")
        row = self._load(caller, workflow_id)
        version = row.pop("_version")
        row["is_active"] = active
        row["updated_at"] = _now()
        self._storage.put(WORKFLOW_TABLE, workflow_id, row, expected_version=version)
        logger.info("workflow_%s tenant=%s id=%s", "activated" if active else "deactivated", caller.tenant_id, workflow_id)
        return row

    def activate(self, caller: Caller, workflow_id: str) -> Workflow:
        return self._set_active(caller, workflow_id, True)

    def deactivate(self, caller: Caller, workflow_id: str) -> Workflow:
        return self._set_active(caller, workflow_id, False)

    def list_active(self, tenant_id: str, module_name: str) -> list[Workflow]:
        rows = self._storage.query(WORKFLOW_TABLE, tenant_id=tenant_id, module_name=module_name, is_active=True)
        rows.sort(key=lambda row: (row.get("priority", 0), row.get("created_at") or ""))
        return [_strip(row) for row in rows]

    def start_execution(self, tenant_id: str, workflow_id: str, record_id: str | None, input_data: dict, depth: int) -> dict:
        execution = {
            "id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "workflow_id": workflow_id,
            "record_id": record_id,
            "status": RUNNING,
            "input": copy.deepcopy(input_data),
            "output": None,
            "error": None,
            "depth": depth,
            "executed_at": _now(),
            "completed_at": None,
        }
        self._storage.put(EXECUTION_TABLE, execution["id"], execution, expected_version=0)
        return copy.deepcopy(execution)

    def finish_execution(self, execution_id: str, status: str, output: Any = None, error: str | None = None) -> dict:
        if status not in {SUCCESS, FAILED}:
            raise ValueError(f"invalid terminal status: {status}")

        def _write(tx: Any) -> dict:
            row = tx.get(EXECUTION_TABLE, execution_id)
            if row is None:
                raise NotFound("execution not found", "execution_id")
            version = row.pop("_version")
            if row["status"] != RUNNING:
                raise ValueError(f"execution {execution_id} already {row['status']}")
            row.update({"status": status, "output": copy.deepcopy(output), "error": error, "completed_at": _now()})
            tx.put(EXECUTION_TABLE, execution_id, row, expected_version=version)
            return row

        return run_in_transaction(self._storage, _write)

    def list_executions(self, caller: Caller, *, workflow_id: str | None = None, record_id: str | None = None) -> list[dict]:
        require_tenant(caller)
        equals: dict = {"tenant_id": caller.tenant_id}
        if workflow_id:
            equals["workflow_id"] = workflow_id
        if record_id:
            equals["record_id"] = record_id
        rows = [_strip(row) for row in self._storage.query(EXECUTION_TABLE, **equals)]
        rows.sort(key=lambda row: row["executed_at"])
        return rows
