import os
import sys
import time
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.template_render import render_config
from audit_emitter import AuditEmitter
from event_bus import EventBus
from platform_errors import Forbidden, RecursionLimitExceeded, SchemaError
from record_store import RecordStore
from schema_registry import SchemaRegistry
from storage_engine import InMemoryStorage
from tenant_context import Caller
from workflow_engine import UnresolvedVar, WorkflowEngine, resolve_config, trigger_matches
from workflow_store import FAILED, SUCCESS, WorkflowStore, validate_workflow


ADMIN = Caller("t1", "admin-1", "admin")
STAFF = Caller("t1", "staff-1")

CONTACTS = {
    "module_name": "Contacts",
    "fields": [
        {"name": "name", "data_type": "string", "ui_type": "text", "is_required": True},
        {"name": "email", "data_type": "email", "ui_type": "email"},
        {"name": "city", "data_type": "string", "ui_type": "text"},
        {"name": "score", "data_type": "integer", "ui_type": "number"},
        {"name": "status", "data_type": "picklist", "ui_type": "dropdown", "config": {"options": ["Open", "Closed"]}},
    ],
}

TASKS = {
    "module_name": "Tasks",
    "fields": [
        {"name": "title", "data_type": "string", "ui_type": "text", "is_required": True},
        {"name": "contact_id", "data_type": "lookup", "ui_type": "lookup"},
    ],
}

QUOTES = {
    "module_name": "Quotes",
    "fields": [
        {"name": "title", "data_type": "string", "ui_type": "text", "is_required": True},
        {"name": "amount", "data_type": "currency", "ui_type": "currency"},
        {"name": "status", "data_type": "picklist", "ui_type": "dropdown",
         "config": {"options": ["Pending", "Approved", "Rejected"]}},
    ],
}


class Recorder:
    def __init__(self, delay: float = 0.0, error: Exception | None = None) -> None:
        self.delay = delay
        self.error = error
        self.calls = []

    def execute(self, action_type: str, config: dict, record: dict) -> dict:
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.calls.append((action_type, config, record["id"]))
        return {"ok": True}


class TestWorkflowHelpers(unittest.TestCase):
    def test_resolve_config_vars_and_literals(self) -> None:
        ctx = {"record": {"email": "a@b.co", "city": "Pune"}}
        config = {"to": {"var": "record.email"}, "fields": {"city": {"literal": {"var": "x"}}}, "tags": [{"var": "record.city"}]}
        self.assertEqual(
            resolve_config(config, ctx),
            {"to": "a@b.co", "fields": {"city": {"var": "x"}}, "tags": ["Pune"]},
        )
        with self.assertRaises(UnresolvedVar):
            resolve_config({"to": {"var": "record.missing"}}, ctx)

    def test_trigger_matching(self) -> None:
        on_field = {"trigger": {"type": "onFieldChange", "field": "status"}}
        self.assertTrue(trigger_matches(on_field, {"kind": "update", "diff": {"status": {}}}))
        self.assertFalse(trigger_matches(on_field, {"kind": "update", "diff": {"city": {}}}))
        self.assertFalse(trigger_matches(on_field, {"kind": "create", "diff": {"status": {}}}))
        on_status = {"trigger": {"type": "onStatusChange"}}
        self.assertTrue(trigger_matches(on_status, {"kind": "update", "diff": {"stage": {}}, "status_field": "stage"}))
        self.assertFalse(trigger_matches(on_status, {"kind": "update", "diff": {"status": {}}, "status_field": "stage"}))
        self.assertTrue(trigger_matches({"trigger": {"type": "onDelete"}}, {"kind": "delete"}))

    def test_validate_workflow(self) -> None:
        issues = validate_workflow(
            {
                "module_name": "Contacts",
                "name": "bad",
                "trigger": {"type": "onFieldChange"},
                "conditions": {"field": "x", "operator": "like", "value": 1},
                "actions": [{"type": "sendEmail", "config": {"subject": "hi"}}, {"type": "teleport", "config": {}}],
            }
        )
        codes = {item["code"] for item in issues}
        self.assertEqual(
            codes, {"TRIGGER_FIELD_MISSING", "CONDITION_UNKNOWN_OP", "ACTION_CONFIG_MISSING", "ACTION_TYPE_UNKNOWN"}
        )


class TestWorkflowEngine(unittest.TestCase):
    def setUp(self) -> None:
        self.storage = InMemoryStorage()
        audit = AuditEmitter(self.storage)
        self.schemas = SchemaRegistry(self.storage, audit)
        for config in (CONTACTS, TASKS, QUOTES):
            draft = self.schemas.save(ADMIN, config)
            self.schemas.submit(ADMIN, draft["module_name"], draft["version"])
            self.schemas.approve(ADMIN, draft["module_name"], draft["version"])
        self.bus = EventBus()
        self.records = RecordStore(self.storage, self.schemas, self.bus, audit)
        self.store = WorkflowStore(self.storage)
        self.mailer = Recorder()
        self.notifier = Recorder()
        self.hook = Recorder()
        self.engine = WorkflowEngine(
            self.store,
            self.records,
            {"sendEmail": self.mailer, "notification": self.notifier, "webhook": self.hook},
            renderer=render_config,
            max_depth=5,
            action_timeout=0.3,
        )
        self.engine.attach(self.bus)

    def tearDown(self) -> None:
        self.engine.shutdown()

    def _workflow(self, trigger: dict, actions: list, **extra) -> dict:
        definition = {"module_name": "Contacts", "name": extra.pop("name", "wf"), "trigger": trigger, "actions": actions}
        definition.update(extra)
        return self.store.save(ADMIN, definition)

    def _executions(self, workflow: dict) -> list:
        return self.store.list_executions(STAFF, workflow_id=workflow["id"])

    def test_saving_workflows_requires_admin(self) -> None:
        with self.assertRaises(Forbidden):
            self.store.save(STAFF, {"module_name": "Contacts", "name": "x", "trigger": {"type": "onCreate"},
                                    "actions": [{"type": "notification", "config": {"message": "hi"}}]})
        with self.assertRaises(SchemaError):
            self._workflow({"type": "never"}, [])

    def test_field_change_fires_exactly_once(self) -> None:
        workflow = self._workflow(
            {"type": "onFieldChange", "field": "status"},
            [{"type": "notification", "config": {"message": "Status is now {{ record.status }}"}}],
        )
        record = self.records.create(STAFF, "Contacts", {"name": "Asha"})
        self.records.update(STAFF, "Contacts", record["id"], {"city": "Pune"})
        self.assertEqual(self._executions(workflow), [])

        self.records.update(STAFF, "Contacts", record["id"], {"status": "Closed"})
        executions = self._executions(workflow)
        self.assertEqual([e["status"] for e in executions], [SUCCESS])
        self.assertEqual(executions[0]["record_id"], record["id"])
        self.assertEqual(self.notifier.calls[0][1]["message"], "Status is now Closed")

    def test_approval_workflow_runs_once_per_matching_change(self) -> None:
        workflow = self._workflow(
            {"type": "onFieldChange", "field": "status"},
            [{"type": "notification", "config": {"message": "{{ record.title }} approved"}}],
            module_name="Quotes",
            conditions={"field": "status", "operator": "equals", "value": "Approved"},
        )
        quote = self.records.create(STAFF, "Quotes", {"title": "Q-1", "amount": 1200, "status": "Pending"})
        self.records.update(STAFF, "Quotes", quote["id"], {"amount": 1500})
        self.assertEqual(self._executions(workflow), [])

        self.records.update(STAFF, "Quotes", quote["id"], {"status": "Approved"})
        executions = self._executions(workflow)
        self.assertEqual([e["status"] for e in executions], [SUCCESS])
        self.assertEqual(executions[0]["record_id"], quote["id"])
        self.assertEqual([call[1]["message"] for call in self.notifier.calls], ["Q-1 approved"])

    def test_conditions_gate_execution(self) -> None:
        workflow = self._workflow(
            {"type": "onCreate"},
            [{"type": "sendEmail", "config": {"to": {"var": "record.email"}, "subject": "Welcome {{ record.name }}"}}],
            conditions={"operator": "AND", "rules": [{"field": "city", "operator": "equals", "value": "Pune"}]},
        )
        self.records.create(STAFF, "Contacts", {"name": "Bilal", "city": "Goa", "email": "b@x.io"})
        self.records.create(STAFF, "Contacts", {"name": "Asha", "city": "Pune", "email": "a@x.io"})
        self.assertEqual(len(self._executions(workflow)), 1)
        _, config, _ = self.mailer.calls[0]
        self.assertEqual((config["to"], config["subject"]), ("a@x.io", "Welcome Asha"))

    def test_self_retriggering_update_stops_at_depth_limit(self) -> None:
        workflow = self._workflow({"type": "onUpdate"}, [{"type": "updateRecord", "config": {"fields": {"city": "loop"}}}])
        record = self.records.create(STAFF, "Contacts", {"name": "Asha"})
        with self.assertLogs("forge.workflows", level="WARNING") as logs:
            self.records.update(STAFF, "Contacts", record["id"], {"score": 1})
        executions = self._executions(workflow)
        self.assertEqual(len(executions), 5)
        self.assertEqual(sorted(e["depth"] for e in executions), [0, 1, 2, 3, 4])
        self.assertTrue(all(e["status"] == SUCCESS for e in executions))
        self.assertTrue(any("workflow_recursion_stopped" in line for line in logs.output))

    def test_depth_at_limit_raises(self) -> None:
        with self.assertRaises(RecursionLimitExceeded) as ctx:
            self.engine.handle_mutation(STAFF, "Contacts", {"kind": "update", "record": {}, "diff": {}, "depth": 5})
        self.assertEqual(ctx.exception.depth, 5)

    def test_collaborator_timeout_fails_only_its_workflow(self) -> None:
        self.hook.delay = 1.0
        slow = self._workflow(
            {"type": "onCreate"},
            [{"type": "webhook", "config": {"url": "https://hooks.example.com/x"}},
             {"type": "notification", "config": {"message": "never"}}],
            name="slow",
            priority=1,
        )
        fast = self._workflow({"type": "onCreate"}, [{"type": "notification", "config": {"message": "hi"}}], name="fast", priority=2)
        self.records.create(STAFF, "Contacts", {"name": "Asha"})
        slow_runs = self._executions(slow)
        self.assertEqual([e["status"] for e in slow_runs], [FAILED])
        self.assertIn("COLLABORATOR_TIMEOUT", slow_runs[0]["error"])
        self.assertEqual([e["status"] for e in self._executions(fast)], [SUCCESS])
        self.assertEqual([call[1]["message"] for call in self.notifier.calls], ["hi"])

    def test_failing_action_stops_remaining_actions(self) -> None:
        self.mailer.error = RuntimeError("smtp down")
        workflow = self._workflow(
            {"type": "onCreate"},
            [{"type": "sendEmail", "config": {"to": "a@x.io", "subject": "s"}},
             {"type": "notification", "config": {"message": "after"}}],
        )
        record = self.records.create(STAFF, "Contacts", {"name": "Asha"})
        executions = self._executions(workflow)
        self.assertEqual(executions[0]["status"], FAILED)
        self.assertIn("smtp down", executions[0]["error"])
        self.assertEqual(self.notifier.calls, [])
        self.assertEqual(self.records.get(STAFF, "Contacts", record["id"])["data"]["name"], "Asha")

    def test_create_record_action_links_modules(self) -> None:
        self._workflow(
            {"type": "onCreate"},
            [{"type": "createRecord", "config": {"module_name": "Tasks",
                                                 "fields": {"title": "Call {{ record.name }}", "contact_id": {"var": "record.id"}}}}],
        )
        record = self.records.create(STAFF, "Contacts", {"name": "Asha"})
        tasks = self.records.list(STAFF, "Tasks")["items"]
        self.assertEqual(len(tasks), 1)
        self.assertEqual(tasks[0]["data"]["contact_id"], record["id"])
        self.assertEqual(tasks[0]["data"]["title"], "Call Asha")

    def test_status_change_and_deactivation(self) -> None:
        workflow = self._workflow({"type": "onStatusChange"}, [{"type": "notification", "config": {"message": "moved"}}])
        record = self.records.create(STAFF, "Contacts", {"name": "Asha"})
        self.records.update(STAFF, "Contacts", record["id"], {}, status="Closed")
        self.store.deactivate(ADMIN, workflow["id"])
        self.records.update(STAFF, "Contacts", record["id"], {}, status="Open")
        self.assertEqual(len(self._executions(workflow)), 1)

    def test_scheduled_workflow_runs_for_given_records(self) -> None:
        workflow = self._workflow(
            {"type": "scheduled", "schedule": "0 9 * * *"},
            [{"type": "notification", "config": {"message": "Follow up with {{ record.name }}"}}],
        )
        first = self.records.create(STAFF, "Contacts", {"name": "Asha"})
        executions = self.engine.run_scheduled(STAFF, workflow["id"], [first["id"], "missing-id"])
        self.assertEqual([e["status"] for e in executions], [SUCCESS])
        self.assertEqual(self.notifier.calls[0][1]["message"], "Follow up with Asha")

    def test_workflows_are_tenant_scoped(self) -> None:
        workflow = self._workflow({"type": "onCreate"}, [{"type": "notification", "config": {"message": "x"}}])
        other = Caller("t2", "admin-9", "admin")
        draft = self.schemas.save(other, CONTACTS)
        self.schemas.submit(other, "Contacts", draft["version"])
        self.schemas.approve(other, "Contacts", draft["version"])
        self.records.create(other, "Contacts", {"name": "Zed"})
        self.assertEqual(self._executions(workflow), [])
        self.assertEqual(self.store.list_executions(other), [])


if __name__ == "__main__":
    unittest.main()
