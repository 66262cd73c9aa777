import os
import sys
import unittest
from datetime import date


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from auto_numbering import (
    configure_sequence,
    default_prefix,
    format_number,
    get_sequence,
    next_number,
    reset_sequence,
    sequence_stats,
)
from platform_errors import NotFound
from storage_engine import InMemoryStorage, run_in_transaction


class TestAutoNumbering(unittest.TestCase):
    def setUp(self) -> None:
        self.storage = InMemoryStorage()

    def _claim(self, module_name: str = "Quotations", settings: dict | None = None) -> str:
        return run_in_transaction(self.storage, lambda tx: next_number(tx, "t1", module_name, settings))

    def test_format_number(self) -> None:
        today = date(2025, 4, 9)
        self.assertEqual(format_number("QT", "{prefix}-{padded:5}", 42, today), "QT-00042")
        self.assertEqual(format_number("INV", "{prefix}/{year}/{padded:3}", 7, today), "INV/2025/007")
        self.assertEqual(format_number("X", "{prefix}{year}{month}{day}-{number}", 12, today), "X20250409-12")

    def test_default_prefixes(self) -> None:
        self.assertEqual(default_prefix("Invoices"), "INV")
        self.assertEqual(default_prefix("Vendors"), "VEN")

    def test_numbers_are_sequential_per_tenant_and_module(self) -> None:
        self.assertEqual([self._claim() for _ in range(3)], ["QT-00001", "QT-00002", "QT-00003"])
        self.assertEqual(self._claim("Orders"), "ORD-00001")
        other = run_in_transaction(self.storage, lambda tx: next_number(tx, "t2", "Quotations"))
        self.assertEqual(other, "QT-00001")

    def test_settings_apply_on_first_claim(self) -> None:
        self.assertEqual(self._claim("Tickets", {"prefix": "TK", "format": "{prefix}#{number}", "start": 100}), "TK#100")
        self.assertEqual(self._claim("Tickets", {"prefix": "IGNORED"}), "TK#101")

    def test_rolled_back_claim_is_reused(self) -> None:
        tx = self.storage.begin()
        self.assertEqual(next_number(tx, "t1", "Quotations"), "QT-00001")
        tx.rollback()
        self.assertEqual(self._claim(), "QT-00001")

    def test_configure_reset_and_stats(self) -> None:
        self._claim()
        configure_sequence(self.storage, "t1", "Quotations", prefix="QUO")
        self.assertEqual(self._claim(), "QUO-00002")
        reset_sequence(self.storage, "t1", "Quotations", start=50)
        self.assertEqual(get_sequence(self.storage, "t1", "Quotations")["next_number"], 50)
        stats = sequence_stats(self.storage, "t1")
        self.assertEqual(stats[0]["preview"], "QUO-00050")
        with self.assertRaises(NotFound):
            reset_sequence(self.storage, "t1", "Orders")


if __name__ == "__main__":
    unittest.main()
