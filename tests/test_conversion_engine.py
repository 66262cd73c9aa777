import os
import sys
import unittest
from datetime import date, timedelta
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.seed_modules import seed_modules
from audit_emitter import AuditEmitter
from conversion_engine import ConversionEngine, apply_mapping, normalize_mapping
from event_bus import RECORD_CREATED, RECORD_UPDATED, EventBus
from platform_errors import AlreadyConverted, InvalidPayload, NotFound
from record_store import RecordStore
from schema_registry import SchemaRegistry
from storage_engine import InMemoryStorage
from tenant_context import Caller


ADMIN = Caller("t1", "admin-1", "admin")
STAFF = Caller("t1", "staff-1")


class RacingStorage(InMemoryStorage):
    """Runs ``interleave`` right before the next commit is applied."""

    def __init__(self) -> None:
        super().__init__()
        self.interleave = None

    def _commit(self, writes):
        hook, self.interleave = self.interleave, None
        if hook is not None:
            hook()
        super()._commit(writes)


class TestMapping(unittest.TestCase):
    def test_dict_mapping_copies_fields(self) -> None:
        entries = normalize_mapping({"name": "client_name", "email": "email"})
        payload = apply_mapping(entries, {"id": "r1", "data": {"name": "Asha", "email": None}})
        self.assertEqual(payload, {"client_name": "Asha"})

    def test_transforms(self) -> None:
        entries = normalize_mapping(
            [
                {"target": "total", "sources": ["total", "final_total"], "transform": "currency"},
                {"target": "items", "source": "items", "transform": "line_items"},
                {"target": "origin", "transform": "source_id"},
                {"target": "kind", "transform": "constant", "value": "Pending"},
                {"target": "due", "transform": "date_offset", "days": 30},
                {"target": "discount", "source": "discount", "transform": "currency", "default": 0},
            ]
        )
        source = {"id": "q1", "data": {"final_total": "1180.456", "items": [{"d": "x"}, "junk"]}}
        payload = apply_mapping(entries, source, today=date(2025, 1, 15))
        self.assertEqual(payload["total"], 1180.46)
        self.assertEqual(payload["items"], [{"d": "x"}])
        self.assertEqual(payload["origin"], "q1")
        self.assertEqual(payload["kind"], "Pending")
        self.assertEqual(payload["due"], "2025-02-14")
        self.assertEqual(payload["discount"], 0)

    def test_bad_mappings_are_rejected(self) -> None:
        for mapping in ("name->client", [{"source": "x"}], [{"target": "a", "transform": "explode"}],
                        [{"target": "a", "transform": "coalesce", "sources": "x"}]):
            with self.assertRaises(InvalidPayload):
                normalize_mapping(mapping)


class TestConversionEngine(unittest.TestCase):
    def setUp(self) -> None:
        self._build(InMemoryStorage())

    def _build(self, storage) -> None:
        self.storage = storage
        self.audit = AuditEmitter(storage)
        self.schemas = SchemaRegistry(storage, self.audit)
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(RECORD_CREATED, self.events.append)
        self.bus.subscribe(RECORD_UPDATED, self.events.append)
        self.records = RecordStore(storage, self.schemas, self.bus, self.audit)
        self.engine = ConversionEngine(storage, self.schemas, self.records, self.audit)
        seed_modules(self.schemas, ADMIN)

    def _lead(self, **data) -> dict:
        payload = {"name": "Asha Rao", "email": "asha@example.com", "phone": "9876543210"}
        payload.update(data)
        return self.records.create(STAFF, "Leads", payload)

    def _clients(self) -> list:
        return self.records.list(STAFF, "Clients")["items"]

    def test_lead_to_client(self) -> None:
        lead = self._lead()
        result = self.engine.run_named(STAFF, "lead_to_client", lead["id"])
        client = result["target_record"]
        self.assertEqual(client["data"]["client_name"], "Asha Rao")
        self.assertEqual(client["data"]["email"], "asha@example.com")
        self.assertEqual(client["data"]["source_lead_id"], lead["id"])
        self.assertEqual(client["status"], "Active")
        self.assertEqual(client["converted_from_id"], lead["id"])
        source = self.records.get(STAFF, "Leads", lead["id"])
        self.assertEqual(source["status"], "Converted")
        self.assertEqual(source["converted_to_id"], client["id"])
        self.assertEqual(result["source_record"]["status"], "Converted")
        entries = self.audit.list("t1", action="convert_lead_to_client")
        self.assertEqual(entries[0]["metadata"]["target_id"], client["id"])

    def test_conversion_is_idempotent(self) -> None:
        lead = self._lead()
        self.engine.run_named(STAFF, "lead_to_client", lead["id"])
        with self.assertRaises(AlreadyConverted):
            self.engine.run_named(STAFF, "lead_to_client", lead["id"])
        self.assertEqual(len(self._clients()), 1)

    def test_failed_source_update_leaves_no_target(self) -> None:
        lead = self._lead()
        with mock.patch.object(self.records, "update", side_effect=RuntimeError("source write failed")):
            with self.assertRaises(RuntimeError):
                self.engine.run_named(STAFF, "lead_to_client", lead["id"])
        self.assertEqual(self._clients(), [])
        self.assertEqual(self.records.get(STAFF, "Leads", lead["id"])["status"], "New")
        self.assertEqual([e["name"] for e in self.events], [RECORD_CREATED])
        result = self.engine.run_named(STAFF, "lead_to_client", lead["id"])
        self.assertEqual(result["target_record"]["number"], "CL-00001")

    def test_events_fire_after_commit(self) -> None:
        lead = self._lead()
        self.events.clear()
        self.engine.run_named(STAFF, "lead_to_client", lead["id"])
        names = [(e["name"], e["meta"]["module_name"]) for e in self.events]
        self.assertEqual(names, [(RECORD_CREATED, "Clients"), (RECORD_UPDATED, "Leads")])

    def test_concurrent_conversions_create_one_target(self) -> None:
        self._build(RacingStorage())
        lead = self._lead()
        inner = []

        def _second_caller():
            inner.append(self.engine.run_named(Caller("t1", "staff-2"), "lead_to_client", lead["id"]))

        self.storage.interleave = _second_caller
        with self.assertRaises(AlreadyConverted):
            self.engine.run_named(STAFF, "lead_to_client", lead["id"])
        self.assertEqual(len(inner), 1)
        clients = self._clients()
        self.assertEqual([c["id"] for c in clients], [inner[0]["target_record"]["id"]])
        self.assertEqual(self.records.get(STAFF, "Leads", lead["id"])["converted_to_id"], clients[0]["id"])

    def test_cross_tenant_source_is_not_found(self) -> None:
        lead = self._lead()
        with self.assertRaises(NotFound):
            self.engine.run_named(Caller("t2", "intruder"), "lead_to_client", lead["id"])
        with self.assertRaises(NotFound):
            self.engine.run_named(STAFF, "lead_to_nowhere", lead["id"])

    def test_custom_mapping_and_terminal_status(self) -> None:
        lead = self._lead(status="Qualified")
        result = self.engine.convert(
            STAFF,
            "Leads",
            "Clients",
            lead["id"],
            {"name": "client_name", "phone": "phone"},
            terminal_status="Lost",
        )
        self.assertEqual(result["target_record"]["data"]["phone"], "9876543210")
        self.assertEqual(result["source_record"]["status"], "Lost")
        with self.assertRaises(AlreadyConverted):
            self.engine.convert(STAFF, "Leads", "Clients", lead["id"], {"name": "client_name"}, terminal_status="Lost")

    def test_quotation_to_order_to_invoice(self) -> None:
        client = self.records.create(STAFF, "Clients", {"client_name": "Acme"})
        quotation = self.records.create(
            STAFF,
            "Quotations",
            {
                "client_id": client["id"],
                "items": [{"description": "Widget", "quantity": 2, "rate": 500, "amount": 1000}],
                "subtotal": 1000,
                "gst_percentage": 18,
                "gst_amount": 180,
                "total": 1180,
            },
        )
        self.assertEqual(quotation["data"]["quotation_number"], "QT-00001")
        order = self.engine.run_named(STAFF, "quotation_to_order", quotation["id"])["target_record"]
        self.assertEqual(order["data"]["quotation_id"], quotation["id"])
        self.assertEqual(order["data"]["total"], 1180.0)
        self.assertEqual(order["status"], "Pending")
        self.assertEqual(order["data"]["order_number"], "ORD-00001")

        invoice = self.engine.run_named(STAFF, "order_to_invoice", order["id"])["target_record"]
        today = date.today()
        self.assertEqual(invoice["data"]["invoice_date"], today.isoformat())
        self.assertEqual(invoice["data"]["due_date"], (today + timedelta(days=30)).isoformat())
        self.assertEqual(invoice["status"], "Pending Payment")
        self.assertEqual(invoice["data"]["items"][0]["description"], "Widget")
        self.assertTrue(invoice["data"]["invoice_number"].startswith(f"INV/{today.year:04d}/"))
        self.assertEqual(self.records.get(STAFF, "Orders", order["id"])["status"], "Invoiced")
        self.assertEqual(self.records.get(STAFF, "Quotations", quotation["id"])["status"], "Converted")


class TestMinimalLeadConversion(unittest.TestCase):
    def setUp(self) -> None:
        storage = InMemoryStorage()
        audit = AuditEmitter(storage)
        self.schemas = SchemaRegistry(storage, audit)
        self.records = RecordStore(storage, self.schemas, EventBus(), audit)
        self.engine = ConversionEngine(storage, self.schemas, self.records, audit)
        modules = (
            {
                "module_name": "Leads",
                "fields": [
                    {"name": "name", "data_type": "string", "ui_type": "text", "is_required": True},
                    {"name": "status", "data_type": "picklist", "ui_type": "dropdown",
                     "config": {"options": ["New", "Converted"]}},
                ],
            },
            {
                "module_name": "Clients",
                "fields": [{"name": "companyName", "data_type": "string", "ui_type": "text", "is_required": True}],
            },
        )
        for config in modules:
            draft = self.schemas.save(ADMIN, config)
            self.schemas.submit(ADMIN, draft["module_name"], draft["version"])
            self.schemas.approve(ADMIN, draft["module_name"], draft["version"])

    def test_lead_becomes_client(self) -> None:
        lead = self.records.create(STAFF, "Leads", {"name": "Acme"})
        self.assertEqual(lead["status"], "New")

        result = self.engine.convert(STAFF, "Leads", "Clients", lead["id"], {"name": "companyName"})
        client = result["target_record"]
        self.assertEqual(client["data"], {"companyName": "Acme"})
        self.assertEqual(client["converted_from_id"], lead["id"])

        source = self.records.get(STAFF, "Leads", lead["id"])
        self.assertEqual(source["status"], "Converted")
        self.assertEqual(source["converted_to_id"], client["id"])
        self.assertEqual(self.records.get(STAFF, "Clients", client["id"])["data"]["companyName"], "Acme")


if __name__ == "__main__":
    unittest.main()
