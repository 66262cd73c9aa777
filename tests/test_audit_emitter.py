import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from audit_emitter import AuditEmitter, change_diff
from storage_engine import InMemoryStorage


class BrokenStorage:
    def put(self, *args, **kwargs):
        raise RuntimeError("disk full")


class TestAuditEmitter(unittest.TestCase):
    def test_change_diff(self) -> None:
        diff = change_diff({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": None, "d": "x"})
        self.assertEqual(diff, {"b": {"before": 2, "after": 3}, "d": {"before": None, "after": "x"}})
        self.assertEqual(change_diff(None, None), {})

    def test_record_and_list(self) -> None:
        audit = AuditEmitter(InMemoryStorage())
        first = audit.record("t1", "u1", "create", "Leads", "r1", {"changes": {"name": {"before": None, "after": "A"}}})
        audit.record("t1", "u1", "update", "Leads", "r1", {"status": {"before": "New", "after": "Lost"}})
        audit.record("t2", "u2", "create", "Leads", "r9")
        self.assertIsNotNone(first)
        entries = audit.list("t1", entity_id="r1")
        self.assertEqual(len(entries), 2)
        created = [e for e in entries if e["action"] == "create"][0]
        self.assertEqual(created["changes"], {"name": {"before": None, "after": "A"}})
        self.assertEqual(created["metadata"], {})
        self.assertEqual(len(audit.list("t1", action="update")), 1)
        self.assertEqual(len(audit.list("t2")), 1)

    def test_failures_are_logged_not_raised(self) -> None:
        audit = AuditEmitter(BrokenStorage())
        with self.assertLogs("forge.audit", level="ERROR"):
            self.assertIsNone(audit.record("t1", "u1", "create", "Leads", "r1"))


if __name__ == "__main__":
    unittest.main()
