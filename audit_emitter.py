"""Fire-and-forget audit trail backed by the storage engine."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from forge.canonical import jsonable


logger = logging.getLogger("forge.audit")

AUDIT_TABLE = "audit_events"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def change_diff(before: dict | None, after: dict | None) -> dict:
    """Field-level diff ``{field: {"before": old, "after": new}}`` of two data maps."""
    before = before or {}
    after = after or {}
    diff = {}
    for key in list(before.keys()) + [k for k in after.keys() if k not in before]:
        old = before.get(key)
        new = after.get(key)
        if old != new:
            diff[key] = {"before": old, "after": new}
    return diff


class AuditEmitter:
    def __init__(self, storage: Any) -> None:
        self._storage = storage

    def record(
        self,
        tenant_id: str,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str | None,
        metadata: dict | None = None,
    ) -> str | None:
        """Append an audit event. Never raises; returns the event id or None."""
        metadata = dict(metadata or {})
        event_id = str(uuid.uuid4())
        try:
            event = {
                "id": event_id,
                "tenant_id": tenant_id,
                "actor_id": actor_id,
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "changes": jsonable(metadata.pop("changes", None)),
                "metadata": jsonable(metadata),
                "at": _now(),
            }
            self._storage.put(AUDIT_TABLE, event_id, event, expected_version=0)
        except Exception:
            logger.exception("audit_emit_failed tenant=%s action=%s entity=%s/%s", tenant_id, action, entity_type, entity_id)
            return None
        logger.debug("audit_emitted tenant=%s action=%s entity=%s/%s", tenant_id, action, entity_type, entity_id)
        return event_id

    def list(
        self,
        tenant_id: str,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        action: str | None = None,
        limit: int = 100,
    ) -> list[dict]:
        equals: dict = {"tenant_id": tenant_id}
        if entity_type:
            equals["entity_type"] = entity_type
        if entity_id:
            equals["entity_id"] = entity_id
        if action:
            equals["action"] = action
        rows = self._storage.query(AUDIT_TABLE, **equals)
        for row in rows:
            row.pop("_version", None)
        rows.sort(key=lambda row: row.get("at") or "", reverse=True)
        return rows[:limit]
