"""Outbound collaborators for workflow actions: webhooks and in-app notifications."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

import httpx

from platform_errors import CollaboratorTimeout, InvalidPayload


logger = logging.getLogger("forge.collaborators")

NOTIFICATION_TABLE = "notifications"
WEBHOOK_METHODS = {"POST", "PUT", "PATCH"}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class WebhookError(RuntimeError):
    pass


class WebhookCaller:
    def __init__(self, timeout: float = 10.0, transport: httpx.BaseTransport | None = None) -> None:
        self._timeout = timeout
        self._transport = transport

    def execute(self, action_type: str, config: dict, record: dict) -> dict:
        url = config.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise InvalidPayload("webhook url must be http(s)", "url")
        method = str(config.get("method") or "POST").upper()
        if method not in WEBHOOK_METHODS:
            raise InvalidPayload(f"unsupported webhook method: {method}", "method")
        body = config.get("body")
        if body is None:
            body = {"record": record}
        headers = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                res = client.request(method, url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise CollaboratorTimeout("webhook", self._timeout) from exc
        if res.status_code >= 400:
            raise WebhookError(f"webhook_failed:{res.status_code}")
        logger.info("webhook_delivered url=%s status=%s record=%s", url, res.status_code, record.get("id"))
        return {"status_code": res.status_code}


class NotificationService:
    """Stores in-app notifications; the ``notification`` workflow action."""

    def __init__(self, storage: Any) -> None:
        self._storage = storage

    def execute(self, action_type: str, config: dict, record: dict) -> dict:
        message = config.get("message")
        if not message:
            raise InvalidPayload("notification message is required", "message")
        item = {
            "id": str(uuid.uuid4()),
            "tenant_id": record.get("tenant_id"),
            "recipient": config.get("recipient") or record.get("created_by"),
            "title": config.get("title") or "",
            "message": str(message),
            "record_id": record.get("id"),
            "module_name": record.get("module_name"),
            "read_at": None,
            "created_at": _now(),
        }
        self._storage.put(NOTIFICATION_TABLE, item["id"], item, expected_version=0)
        return {"notification_id": item["id"]}

    def list(self, tenant_id: str, recipient: str | None = None, unread_only: bool = False, limit: int = 200) -> list[dict]:
        equals = {"tenant_id": tenant_id}
        if recipient is not None:
            equals["recipient"] = recipient
        items = []
        for row in self._storage.query(NOTIFICATION_TABLE, **equals):
            row.pop("_version", None)
            if unread_only and row.get("read_at"):
                continue
            items.append(row)
        items.sort(key=lambda n: n.get("created_at", ""), reverse=True)
        return items[:limit]

    def mark_read(self, tenant_id: str, notification_id: str) -> dict | None:
        row = self._storage.get(NOTIFICATION_TABLE, notification_id)
        if not row or row.get("tenant_id") != tenant_id:
            return None
        version = row.pop("_version")
        if not row.get("read_at"):
            row["read_at"] = _now()
            self._storage.put(NOTIFICATION_TABLE, notification_id, row, expected_version=version)
        return row
