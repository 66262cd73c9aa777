import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.bootstrap import build_platform
from app.config import Settings
from app.seed_modules import SEED_MODULES, seed_modules
from platform_errors import AlreadyConverted, Forbidden, NotFound
from storage_engine import InMemoryStorage
from tenant_context import Caller
from workflow_store import SUCCESS


ADMIN = Caller("t1", "admin-1", "admin")
STAFF = Caller("t1", "staff-1")
OTHER = Caller("t2", "staff-9")


class TestSalesPipeline(unittest.TestCase):
    def setUp(self) -> None:
        self.platform = build_platform(Settings(collaborator_timeout=2.0))
        self.addCleanup(self.platform.close)
        seed_modules(self.platform.schemas, ADMIN)

    def test_seed_is_admin_only_and_idempotent(self) -> None:
        with self.assertRaises(Forbidden):
            seed_modules(self.platform.schemas, STAFF)
        self.assertEqual(seed_modules(self.platform.schemas, ADMIN), [])
        names = {m["module_name"] for m in self.platform.schemas.list_modules(STAFF)}
        self.assertEqual(names, {m["module_name"] for m in SEED_MODULES})

    def test_lead_to_client_with_welcome_workflow(self) -> None:
        platform = self.platform
        workflow = platform.workflows.save(
            ADMIN,
            {
                "module_name": "Leads",
                "name": "Welcome new lead",
                "trigger": {"type": "onCreate"},
                "conditions": {"field": "email", "operator": "isNotEmpty"},
                "actions": [
                    {"type": "sendEmail", "config": {"to": "{{ record.email }}", "subject": "Welcome {{ record.name }}"}},
                    {"type": "notification", "config": {"message": "New lead {{ record.name }}"}},
                ],
            },
        )

        lead = platform.records.create(STAFF, "Leads", {"name": "Asha", "email": "asha@x.io", "source": "Website"})
        self.assertEqual(lead["status"], "New")
        self.assertEqual(lead["number"], "LD-00001")

        sent = platform.email.provider.sent
        self.assertEqual(len(sent), 1)
        self.assertEqual(sent[0]["to"], ["asha@x.io"])
        self.assertEqual(sent[0]["subject"], "Welcome Asha")
        notes = platform.notifications.list("t1", recipient="staff-1")
        self.assertEqual([n["message"] for n in notes], ["New lead Asha"])
        executions = platform.workflows.list_executions(ADMIN, workflow_id=workflow["id"])
        self.assertEqual([e["status"] for e in executions], [SUCCESS])

        result = platform.conversions.run_named(STAFF, "lead_to_client", lead["id"])
        client = result["target_record"]
        self.assertEqual(client["data"]["client_name"], "Asha")
        self.assertEqual(client["data"]["source_lead_id"], lead["id"])
        self.assertEqual(client["converted_from_id"], lead["id"])
        self.assertEqual(result["source_record"]["status"], "Converted")
        with self.assertRaises(AlreadyConverted):
            platform.conversions.run_named(STAFF, "lead_to_client", lead["id"])

        actions = {e["action"] for e in platform.audit.list("t1", entity_id=lead["id"])}
        self.assertIn("create", actions)
        self.assertIn("convert_lead_to_client", actions)
        self.assertEqual(len(sent), 1)

        with self.assertRaises(NotFound):
            platform.records.get(OTHER, "Leads", lead["id"])

    def test_external_storage_and_collaborators_are_used(self) -> None:
        class Recorder:
            def __init__(self) -> None:
                self.calls = []

            def execute(self, action_type, config, record):
                self.calls.append(config)
                return {"ok": True}

        storage = InMemoryStorage()
        hook = Recorder()
        platform = build_platform(Settings(), storage=storage, collaborators={"webhook": hook})
        self.addCleanup(platform.close)
        self.assertIs(platform.storage, storage)
        seed_modules(platform.schemas, ADMIN, [m for m in SEED_MODULES if m["module_name"] == "Leads"])
        platform.workflows.save(
            ADMIN,
            {
                "module_name": "Leads",
                "name": "Push lost leads",
                "trigger": {"type": "onStatusChange"},
                "conditions": {"field": "status", "operator": "equals", "value": "Lost"},
                "actions": [{"type": "webhook", "config": {"url": "https://crm.example.com/lost", "body": {"name": "{{ record.name }}"}}}],
            },
        )
        lead = platform.records.create(STAFF, "Leads", {"name": "Ravi"})
        platform.records.update(STAFF, "Leads", lead["id"], {"notes": "called twice"})
        platform.records.update(STAFF, "Leads", lead["id"], {"status": "Lost"})
        self.assertEqual(hook.calls, [{"url": "https://crm.example.com/lost", "body": {"name": "Ravi"}}])


if __name__ == "__main__":
    unittest.main()
