"""Stock sales-pipeline modules: Leads, Clients, Quotations, Orders, Invoices."""

from __future__ import annotations

import copy
import logging
from typing import Any, List

from platform_errors import NotFound
from tenant_context import Caller, require_admin


logger = logging.getLogger("forge.seed")


def _field(name: str, data_type: str, ui_type: str, label: str | None = None, **extra: Any) -> dict:
    field = {"name": name, "label": label or name.replace("_", " ").title(), "data_type": data_type, "ui_type": ui_type}
    field.update(extra)
    return field


def _status(options: List[str], default: str) -> dict:
    return _field("status", "picklist", "dropdown", config={"options": options}, default_value=default)


_LINE_ITEM_COLUMNS = [
    {"name": "description", "data_type": "string"},
    {"name": "quantity", "data_type": "number"},
    {"name": "rate", "data_type": "currency"},
    {"name": "amount", "data_type": "currency"},
]


def _money_fields() -> List[dict]:
    return [
        _field("items", "table", "table", "Line Items", config={"columns": _LINE_ITEM_COLUMNS}),
        _field("subtotal", "currency", "currency", config={"decimals": 2, "min": 0}),
        _field("discount", "currency", "currency", config={"decimals": 2, "min": 0}, default_value=0),
        _field("gst_percentage", "decimal", "percent", "GST %", config={"min": 0, "max": 100}, default_value=0),
        _field("gst_amount", "currency", "currency", "GST Amount", config={"decimals": 2, "min": 0}, default_value=0),
        _field("total", "currency", "currency", config={"decimals": 2, "min": 0}),
    ]


SEED_MODULES: List[dict] = [
    {
        "module_name": "Leads",
        "display_name": "Leads",
        "description": "Prospects before they become clients.",
        "fields": [
            _field("name", "string", "text", is_required=True, config={"max_length": 200}),
            _field("email", "email", "email"),
            _field("phone", "phone", "phone"),
            _field("company", "string", "text"),
            _field("gst_number", "string", "text", "GST Number", config={"pattern": r"^[0-9A-Z]{15}$"}),
            _field("source", "picklist", "dropdown", config={"options": ["Website", "Referral", "Walk-in", "Campaign", "Other"]}),
            _field("estimated_value", "currency", "currency", config={"decimals": 2, "min": 0}),
            _status(["New", "Contacted", "Qualified", "Converted", "Lost"], "New"),
            _field("notes", "text", "textarea"),
        ],
        "layout": {"type": "two_column", "sections": [{"title": "Lead", "fields": ["name", "email", "phone", "company", "status"]}]},
        "status_field": "status",
        "converted_status": "Converted",
        "auto_number": {"prefix": "LD"},
    },
    {
        "module_name": "Clients",
        "display_name": "Clients",
        "fields": [
            _field("client_name", "string", "text", is_required=True, config={"max_length": 200}),
            _field("email", "email", "email", validation=[{"type": "unique", "message": "A client with this email already exists"}]),
            _field("phone", "phone", "phone"),
            _field("gst_number", "string", "text", "GST Number", config={"pattern": r"^[0-9A-Z]{15}$"}),
            _field("address", "text", "textarea"),
            _field("source_lead_id", "lookup", "lookup", "Source Lead", config={"target_module": "Leads"}),
            _status(["Active", "Inactive"], "Active"),
        ],
        "status_field": "status",
        "auto_number": {"prefix": "CL"},
    },
    {
        "module_name": "Quotations",
        "display_name": "Quotations",
        "fields": [
            _field("quotation_number", "string", "text", "Quotation #"),
            _field("client_id", "lookup", "lookup", "Client", is_required=True, config={"target_module": "Clients"}),
            _field("valid_until", "date", "date"),
            *_money_fields(),
            _status(["Draft", "Sent", "Accepted", "Rejected", "Converted"], "Draft"),
            _field("notes", "text", "textarea"),
        ],
        "status_field": "status",
        "converted_status": "Converted",
        "auto_number": {"prefix": "QT", "field": "quotation_number"},
    },
    {
        "module_name": "Orders",
        "display_name": "Orders",
        "fields": [
            _field("order_number", "string", "text", "Order #"),
            _field("client_id", "lookup", "lookup", "Client", is_required=True, config={"target_module": "Clients"}),
            _field("quotation_id", "lookup", "lookup", "Quotation", config={"target_module": "Quotations"}),
            *_money_fields(),
            _status(["Pending", "Confirmed", "Delivered", "Cancelled", "Invoiced"], "Pending"),
            _field("notes", "text", "textarea"),
        ],
        "status_field": "status",
        "converted_status": "Invoiced",
        "auto_number": {"prefix": "ORD", "field": "order_number"},
    },
    {
        "module_name": "Invoices",
        "display_name": "Invoices",
        "fields": [
            _field("invoice_number", "string", "text", "Invoice #"),
            _field("client_id", "lookup", "lookup", "Client", is_required=True, config={"target_module": "Clients"}),
            _field("order_id", "lookup", "lookup", "Order", config={"target_module": "Orders"}),
            _field("invoice_date", "date", "date"),
            _field("due_date", "date", "date"),
            *_money_fields(),
            _status(["Pending Payment", "Partially Paid", "Paid", "Overdue", "Cancelled"], "Pending Payment"),
            _field("notes", "text", "textarea"),
        ],
        "status_field": "status",
        "auto_number": {"prefix": "INV", "format": "{prefix}/{year}/{padded:4}", "field": "invoice_number"},
    },
]


def seed_modules(schemas: Any, caller: Caller, modules: List[dict] | None = None) -> List[dict]:
    """Save, submit and approve each stock module that the tenant does not have yet."""
    require_admin(caller, "seed modules")
    activated = []
    for definition in modules if modules is not None else SEED_MODULES:
        try:
            schemas.resolve(caller, definition["module_name"])
            logger.info("seed_skipped tenant=%s module=%s", caller.tenant_id, definition["module_name"])
            continue
        except NotFound:
            pass
        draft = schemas.save(caller, copy.deepcopy(definition))
        schemas.submit(caller, draft["module_name"], draft["version"])
        activated.append(schemas.approve(caller, draft["module_name"], draft["version"]))
        logger.info("seed_activated tenant=%s module=%s", caller.tenant_id, definition["module_name"])
    return activated
