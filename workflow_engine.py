"""Trigger/condition/action evaluation for record mutations with a recursion guard.

Mutation events carry a ``depth`` counter. Records written by
``updateRecord``/``createRecord`` actions are stored at ``depth + 1``, so the
events they produce come back here one level deeper; at ``max_depth`` the
engine refuses to fire anything.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, List

from condition_eval import ConditionEvalError, eval_condition
from event_bus import MUTATION_KINDS, RECORD_CREATED, RECORD_DELETED, RECORD_UPDATED
from platform_errors import CollaboratorTimeout, InvalidPayload, NotFound, RecursionLimitExceeded
from record_store import record_context
from tenant_context import Caller
from workflow_store import FAILED, SUCCESS


logger = logging.getLogger("forge.workflows")

DEFAULT_MAX_DEPTH = 5
DEFAULT_ACTION_TIMEOUT = 10.0
COLLABORATOR_ACTIONS = {"sendEmail", "webhook", "notification"}

TRIGGER_KINDS = {
    "onCreate": {"create"},
    "onUpdate": {"update"},
    "onDelete": {"delete"},
    "onFieldChange": {"update", "fieldChange"},
    "onStatusChange": {"update", "statusChange"},
    "scheduled": {"scheduled"},
}

Renderer = Callable[[Any, dict], Any]


class UnresolvedVar(KeyError):
    pass


def _resolve_var(ctx: dict, name: str) -> Any:
    current: Any = ctx
    for part in name.split("."):
        if not isinstance(current, dict) or part not in current:
            raise UnresolvedVar(f"Unresolved var: {name}")
        current = current[part]
    return current


def resolve_config(node: Any, ctx: dict) -> Any:
    """Replace ``{"var": "record.x"}`` nodes in an action config with context values."""
    if isinstance(node, dict):
        if set(node.keys()) == {"var"} and isinstance(node["var"], str):
            return _resolve_var(ctx, node["var"])
        if set(node.keys()) == {"literal"}:
            return node["literal"]
        return {key: resolve_config(value, ctx) for key, value in node.items()}
    if isinstance(node, list):
        return [resolve_config(item, ctx) for item in node]
    return node


def trigger_matches(workflow: dict, event: dict) -> bool:
    trigger = workflow.get("trigger") or {}
    trigger_type = trigger.get("type")
    kind = event.get("kind")
    if kind not in TRIGGER_KINDS.get(trigger_type, set()):
        return False
    diff = event.get("diff") or {}
    if trigger_type == "onFieldChange":
        return trigger.get("field") in diff
    if trigger_type == "onStatusChange" and kind == "update":
        return (event.get("status_field") or "status") in diff
    return True


class WorkflowEngine:
    def __init__(
        self,
        store: Any,
        records: Any,
        collaborators: Dict[str, Any] | None = None,
        *,
        renderer: Renderer | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
        action_timeout: float = DEFAULT_ACTION_TIMEOUT,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._store = store
        self._records = records
        self._collaborators = dict(collaborators or {})
        self._renderer = renderer
        self._max_depth = max_depth
        self._timeout = action_timeout
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="forge-action")

    def attach(self, bus: Any) -> None:
        for name in (RECORD_CREATED, RECORD_UPDATED, RECORD_DELETED):
            bus.subscribe(name, self.on_record_event)

    def on_record_event(self, event: dict) -> None:
        meta = event["meta"]
        payload = event["payload"]
        caller = Caller.from_meta(meta["tenant_id"], meta.get("actor"))
        mutation = {
            "kind": payload.get("kind") or MUTATION_KINDS.get(event["name"]),
            "record": payload.get("record") or {},
            "diff": payload.get("diff") or {},
            "status_field": payload.get("status_field"),
            "depth": meta.get("depth", 0),
        }
        try:
            self.handle_mutation(caller, meta["module_name"], mutation)
        except RecursionLimitExceeded as exc:
            logger.warning(
                "workflow_recursion_stopped tenant=%s module=%s record=%s depth=%s",
                caller.tenant_id,
                meta["module_name"],
                mutation["record"].get("id"),
                exc.depth,
            )

    def handle_mutation(self, caller: Caller, module_name: str, event: dict) -> List[dict]:
        """Fire every matching active workflow; returns the executions recorded."""
        depth = int(event.get("depth") or 0)
        if depth >= self._max_depth:
            raise RecursionLimitExceeded(depth, self._max_depth)
        record = event.get("record") or {}
        executions = []
        for workflow in self._store.list_active(caller.tenant_id, module_name):
            if not trigger_matches(workflow, event):
                continue
            execution = self._evaluate(caller, module_name, workflow, record, event, depth)
            if execution is not None:
                executions.append(execution)
        return executions

    def run_scheduled(self, caller: Caller, workflow_id: str, record_ids: List[str]) -> List[dict]:
        """Entry point for the external timer of ``scheduled`` workflows."""
        workflow = self._store.get(caller, workflow_id)
        if (workflow.get("trigger") or {}).get("type") != "scheduled":
            raise InvalidPayload("workflow is not scheduled", "trigger.type")
        if not workflow.get("is_active"):
            logger.info("workflow_inactive tenant=%s id=%s", caller.tenant_id, workflow_id)
            return []
        module_name = workflow["module_name"]
        executions = []
        for record_id in record_ids:
            try:
                record = self._records.get(caller, module_name, record_id)
            except NotFound:
                logger.info("scheduled_record_missing tenant=%s workflow=%s record=%s", caller.tenant_id, workflow_id, record_id)
                continue
            event = {"kind": "scheduled", "record": record, "diff": {}, "depth": 0}
            execution = self._evaluate(caller, module_name, workflow, record, event, 0)
            if execution is not None:
                executions.append(execution)
        return executions

    def _evaluate(self, caller: Caller, module_name: str, workflow: dict, record: dict, event: dict, depth: int) -> dict | None:
        try:
            fire = eval_condition(workflow.get("conditions"), record_context(record))
        except ConditionEvalError as exc:
            logger.warning("workflow_condition_invalid tenant=%s workflow=%s error=%s", caller.tenant_id, workflow["id"], exc)
            return None
        if not fire:
            return None
        return self._run(caller, module_name, workflow, record, event, depth)

    def _run(self, caller: Caller, module_name: str, workflow: dict, record: dict, event: dict, depth: int) -> dict:
        input_data = {"kind": event.get("kind"), "record_id": record.get("id"), "diff": event.get("diff") or {}}
        execution = self._store.start_execution(caller.tenant_id, workflow["id"], record.get("id"), input_data, depth)
        outputs: List[dict] = []
        for idx, action in enumerate(workflow.get("actions") or []):
            try:
                outputs.append(self._execute_action(caller, module_name, action, record, depth))
            except Exception as exc:
                logger.warning(
                    "workflow_action_failed tenant=%s workflow=%s action=%s type=%s error=%s",
                    caller.tenant_id,
                    workflow["id"],
                    idx,
                    action.get("type"),
                    exc,
                )
                error = f"action {idx} ({action.get('type')}) failed: {exc}"
                return self._store.finish_execution(execution["id"], FAILED, {"actions": outputs}, error)
        logger.info("workflow_fired tenant=%s workflow=%s record=%s depth=%s", caller.tenant_id, workflow["id"], record.get("id"), depth)
        return self._store.finish_execution(execution["id"], SUCCESS, {"actions": outputs})

    def _context(self, module_name: str, record: dict) -> dict:
        return {
            "record": record_context(record),
            "record_id": record.get("id"),
            "module_name": module_name,
        }

    def _execute_action(self, caller: Caller, module_name: str, action: dict, record: dict, depth: int) -> dict:
        action_type = action.get("type")
        ctx = self._context(module_name, record)
        config = resolve_config(action.get("config") or {}, ctx)
        if self._renderer is not None:
            config = self._renderer(config, ctx)
        if action_type == "updateRecord":
            target_module = config.get("module_name") or module_name
            target_id = config.get("record_id") or record.get("id")
            updated = self._records.update(caller, target_module, target_id, config.get("fields") or {}, depth=depth + 1)
            return {"type": action_type, "record_id": updated["id"]}
        if action_type == "createRecord":
            created = self._records.create(caller, config["module_name"], config.get("fields") or {}, depth=depth + 1)
            return {"type": action_type, "record_id": created["id"]}
        if action_type in COLLABORATOR_ACTIONS:
            result = self._call_collaborator(action_type, config, record)
            return {"type": action_type, "result": result}
        raise InvalidPayload(f"unsupported action type: {action_type}", "type")

    def _call_collaborator(self, action_type: str, config: dict, record: dict) -> Any:
        collaborator = self._collaborators.get(action_type)
        if collaborator is None:
            raise InvalidPayload(f"no collaborator configured for {action_type}", "type")
        future = self._executor.submit(collaborator.execute, action_type, config, record)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout:
            future.cancel()
            raise CollaboratorTimeout(action_type, self._timeout) from None

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
