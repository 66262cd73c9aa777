"""Transactional, idempotent record-to-record conversion (Lead -> Client, ...)."""

from __future__ import annotations

import copy
import logging
from datetime import date, timedelta
from typing import Any, Dict, List

from condition_eval import is_empty
from platform_errors import AlreadyConverted, InvalidPayload, NotFound
from record_validation import CoercionError, round_currency
from storage_engine import run_in_transaction
from tenant_context import Caller, require_tenant


logger = logging.getLogger("forge.conversions")

TRANSFORMS = {"copy", "currency", "line_items", "coalesce", "constant", "source_id", "today", "date_offset"}


NAMED_FLOWS: Dict[str, dict] = {
    "lead_to_client": {
        "source_module": "Leads",
        "target_module": "Clients",
        "terminal_status": "Converted",
        "action": "convert_lead_to_client",
        "mapping": [
            {"target": "client_name", "sources": ["name", "client_name"], "transform": "coalesce"},
            {"target": "email", "source": "email"},
            {"target": "phone", "source": "phone"},
            {"target": "gst_number", "sources": ["gst", "gst_number"], "transform": "coalesce"},
            {"target": "source_lead_id", "transform": "source_id"},
            {"target": "status", "transform": "constant", "value": "Active"},
        ],
    },
    "quotation_to_order": {
        "source_module": "Quotations",
        "target_module": "Orders",
        "terminal_status": "Converted",
        "action": "convert_quotation_to_order",
        "mapping": [
            {"target": "client_id", "source": "client_id"},
            {"target": "quotation_id", "transform": "source_id"},
            {"target": "items", "source": "items", "transform": "line_items"},
            {"target": "subtotal", "source": "subtotal", "transform": "currency"},
            {"target": "discount", "source": "discount", "transform": "currency", "default": 0},
            {"target": "gst_percentage", "source": "gst_percentage", "default": 0},
            {"target": "gst_amount", "source": "gst_amount", "transform": "currency", "default": 0},
            {"target": "total", "sources": ["total", "final_total"], "transform": "currency"},
            {"target": "status", "transform": "constant", "value": "Pending"},
            {"target": "notes", "source": "notes"},
        ],
    },
    "order_to_invoice": {
        "source_module": "Orders",
        "target_module": "Invoices",
        "terminal_status": "Invoiced",
        "action": "convert_order_to_invoice",
        "mapping": [
            {"target": "client_id", "source": "client_id"},
            {"target": "order_id", "transform": "source_id"},
            {"target": "items", "source": "items", "transform": "line_items"},
            {"target": "subtotal", "source": "subtotal", "transform": "currency"},
            {"target": "discount", "source": "discount", "transform": "currency", "default": 0},
            {"target": "gst_percentage", "source": "gst_percentage", "default": 0},
            {"target": "gst_amount", "source": "gst_amount", "transform": "currency", "default": 0},
            {"target": "total", "source": "total", "transform": "currency"},
            {"target": "status", "transform": "constant", "value": "Pending Payment"},
            {"target": "invoice_date", "transform": "today"},
            {"target": "due_date", "transform": "date_offset", "days": 30},
            {"target": "notes", "source": "notes"},
        ],
    },
}


def normalize_mapping(mapping: Any) -> List[dict]:
    """Turn ``{source: target}`` or a list of entries into validated entries."""
    if isinstance(mapping, dict):
        entries = []
        for source, target in mapping.items():
            if not isinstance(source, str) or not isinstance(target, str) or not target:
                raise InvalidPayload("mapping must map field names to field names", "mapping")
            entries.append({"target": target, "source": source, "transform": "copy"})
        return entries
    if not isinstance(mapping, list):
        raise InvalidPayload("mapping must be an object or a list of entries", "mapping")
    entries = []
    for idx, entry in enumerate(mapping):
        path = f"mapping[{idx}]"
        if not isinstance(entry, dict) or not isinstance(entry.get("target"), str) or not entry.get("target"):
            raise InvalidPayload("mapping entry needs a target field", path)
        transform = entry.get("transform") or "copy"
        if transform not in TRANSFORMS:
            raise InvalidPayload(f"unknown transform: {transform}", f"{path}.transform")
        if transform in {"copy", "currency", "line_items"} and not (entry.get("source") or entry.get("sources")):
            raise InvalidPayload(f"{transform} needs a source field", path)
        if transform == "coalesce" and not isinstance(entry.get("sources"), list):
            raise InvalidPayload("coalesce needs a sources list", f"{path}.sources")
        if transform == "date_offset" and not isinstance(entry.get("days"), int):
            raise InvalidPayload("date_offset needs integer days", f"{path}.days")
        item = dict(entry)
        item["transform"] = transform
        entries.append(item)
    return entries


def _pick(entry: dict, data: dict) -> Any:
    sources = entry.get("sources") or [entry.get("source")]
    for name in sources:
        value = data.get(name) if name else None
        if not is_empty(value):
            return value
    return None


def _base_date(value: Any, today: date) -> date:
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return today
    return today


def apply_mapping(entries: List[dict], source: dict, today: date | None = None) -> dict:
    today = today or date.today()
    data = source.get("data") or {}
    payload: dict = {}
    for entry in entries:
        transform = entry["transform"]
        if transform == "constant":
            value = copy.deepcopy(entry.get("value"))
        elif transform == "source_id":
            value = source["id"]
        elif transform == "today":
            value = today.isoformat()
        elif transform == "date_offset":
            value = (_base_date(_pick(entry, data), today) + timedelta(days=entry["days"])).isoformat()
        else:
            value = _pick(entry, data)
            if value is None:
                value = copy.deepcopy(entry.get("default"))
            if transform == "currency" and value is not None:
                try:
                    value = round_currency(value, entry.get("decimals", 2))
                except CoercionError:
                    pass
            elif transform == "line_items":
                value = [copy.deepcopy(row) for row in value if isinstance(row, dict)] if isinstance(value, list) else []
            else:
                value = copy.deepcopy(value)
        if value is not None:
            payload[entry["target"]] = value
    return payload


class ConversionEngine:
    def __init__(self, storage: Any, schemas: Any, records: Any, audit: Any | None = None) -> None:
        self._storage = storage
        self._schemas = schemas
        self._records = records
        self._audit = audit

    def convert(
        self,
        caller: Caller,
        source_module: str,
        target_module: str,
        source_record_id: str,
        mapping: Any,
        *,
        terminal_status: str | None = None,
        action: str | None = None,
    ) -> dict:
        require_tenant(caller)
        entries = normalize_mapping(mapping)
        source_config = self._schemas.resolve(caller, source_module)
        terminal = terminal_status or source_config.get("converted_status") or "Converted"

        def _convert(unit: Any) -> tuple:
            source = self._records.get(caller, source_module, source_record_id, tx=unit)
            if source.get("status") == terminal or source.get("converted_to_id"):
                raise AlreadyConverted(source_record_id, source.get("status"))
            payload = apply_mapping(entries, source)
            target = self._records.create(
                caller, target_module, payload, tx=unit, links={"converted_from_id": source_record_id}
            )
            updated = self._records.update(
                caller,
                source_module,
                source_record_id,
                {},
                status=terminal,
                links={"converted_to_id": target["id"]},
                tx=unit,
            )
            return target, updated

        try:
            target, source = run_in_transaction(self._storage, _convert)
        except AlreadyConverted:
            logger.info("conversion_repeated tenant=%s source=%s/%s", caller.tenant_id, source_module, source_record_id)
            raise
        action_name = action or f"convert_{source_module.lower()}_to_{target_module.lower()}"
        if self._audit is not None:
            self._audit.record(
                caller.tenant_id,
                caller.actor_id,
                action_name,
                source_module,
                source_record_id,
                {
                    "source_module": source_module,
                    "source_id": source_record_id,
                    "target_module": target_module,
                    "target_id": target["id"],
                    "terminal_status": terminal,
                },
            )
        logger.info(
            "conversion_done tenant=%s action=%s source=%s target=%s", caller.tenant_id, action_name, source_record_id, target["id"]
        )
        return {"target_record": target, "source_record": source}

    def run_named(self, caller: Caller, flow: str, record_id: str) -> dict:
        definition = NAMED_FLOWS.get(flow)
        if definition is None:
            raise NotFound(f"unknown conversion flow: {flow}", "flow")
        return self.convert(
            caller,
            definition["source_module"],
            definition["target_module"],
            record_id,
            definition["mapping"],
            terminal_status=definition["terminal_status"],
            action=definition["action"],
        )
