"""Per tenant/module record number sequences (QT-00001, INV/2025/001, ...)."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any

from platform_errors import NotFound


logger = logging.getLogger("forge.numbering")

SEQUENCE_TABLE = "sequences"
DEFAULT_FORMAT = "{prefix}-{padded:5}"
DEFAULT_PREFIXES = {
    "Leads": "LD",
    "Clients": "CL",
    "Quotations": "QT",
    "Orders": "ORD",
    "Invoices": "INV",
    "Payments": "TXN",
}

_PADDED_RE = re.compile(r"\{padded:(\d+)\}")


def _key(tenant_id: str, module_name: str) -> str:
    return f"{tenant_id}:{module_name}"


def default_prefix(module_name: str) -> str:
    return DEFAULT_PREFIXES.get(module_name) or module_name[:3].upper()


def format_number(prefix: str, fmt: str, number: int, today: date | None = None) -> str:
    today = today or date.today()
    out = (fmt or DEFAULT_FORMAT).replace("{prefix}", prefix)
    out = _PADDED_RE.sub(lambda m: str(number).zfill(int(m.group(1))), out)
    out = out.replace("{number}", str(number))
    out = out.replace("{year}", f"{today.year:04d}")
    out = out.replace("{month}", f"{today.month:02d}")
    out = out.replace("{day}", f"{today.day:02d}")
    return out


def _initial(tenant_id: str, module_name: str, settings: dict | None) -> dict:
    settings = settings or {}
    return {
        "tenant_id": tenant_id,
        "module_name": module_name,
        "prefix": settings.get("prefix") or default_prefix(module_name),
        "format": settings.get("format") or DEFAULT_FORMAT,
        "next_number": int(settings.get("start") or 1),
    }


def next_number(tx: Any, tenant_id: str, module_name: str, settings: dict | None = None) -> str:
    """Claim the next number inside ``tx``; the claim commits or rolls back with it."""
    key = _key(tenant_id, module_name)
    row = tx.get(SEQUENCE_TABLE, key)
    expected = 0
    if row is None:
        row = _initial(tenant_id, module_name, settings)
    else:
        expected = row.pop("_version")
    number = int(row["next_number"])
    row["next_number"] = number + 1
    tx.put(SEQUENCE_TABLE, key, row, expected_version=expected)
    formatted = format_number(row["prefix"], row["format"], number)
    logger.debug("number_claimed tenant=%s module=%s number=%s", tenant_id, module_name, formatted)
    return formatted


def get_sequence(storage: Any, tenant_id: str, module_name: str) -> dict | None:
    row = storage.get(SEQUENCE_TABLE, _key(tenant_id, module_name))
    if row is not None:
        row.pop("_version", None)
    return row


def configure_sequence(storage: Any, tenant_id: str, module_name: str, prefix: str | None = None, fmt: str | None = None) -> dict:
    key = _key(tenant_id, module_name)
    row = storage.get(SEQUENCE_TABLE, key)
    expected = 0
    if row is None:
        row = _initial(tenant_id, module_name, None)
    else:
        expected = row.pop("_version")
    if prefix:
        row["prefix"] = prefix
    if fmt:
        row["format"] = fmt
    storage.put(SEQUENCE_TABLE, key, row, expected_version=expected)
    return row


def reset_sequence(storage: Any, tenant_id: str, module_name: str, start: int = 1) -> dict:
    key = _key(tenant_id, module_name)
    row = storage.get(SEQUENCE_TABLE, key)
    if row is None:
        raise NotFound("sequence not found", "module_name")
    expected = row.pop("_version")
    row["next_number"] = int(start)
    storage.put(SEQUENCE_TABLE, key, row, expected_version=expected)
    logger.warning("sequence_reset tenant=%s module=%s start=%s", tenant_id, module_name, start)
    return row


def sequence_stats(storage: Any, tenant_id: str) -> list[dict]:
    rows = storage.query(SEQUENCE_TABLE, tenant_id=tenant_id)
    rows.sort(key=lambda row: row.get("module_name") or "")
    return [
        {
            "module_name": row["module_name"],
            "prefix": row["prefix"],
            "format": row["format"],
            "next_number": row["next_number"],
            "preview": format_number(row["prefix"], row["format"], row["next_number"]),
        }
        for row in rows
    ]
