"""Record store facade: generic CRUD over schemaless records with tenant isolation.

Every record read goes through ``_load``; a record that is absent, soft
deleted, owned by another tenant or filed under another module raises the
same ``NotFound`` from the same place. Writes run in one storage
transaction, and mutation events and audit entries are emitted only once
that transaction commits.
"""

from __future__ import annotations

import copy
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from audit_emitter import change_diff
from auto_numbering import next_number
from condition_eval import eval_condition, is_empty
from event_bus import RECORD_CREATED, RECORD_DELETED, RECORD_UPDATED, make_event
from field_catalog import value_kind
from forge.canonical import canonical_dumps
from platform_errors import DuplicateValue, InvalidPayload, NotFound, ValidationFailed, field_error
from record_validation import DUPLICATE_VALUE, INVALID_REFERENCE, validate_payload
from storage_engine import run_in_transaction
from tenant_context import Caller, require_tenant


logger = logging.getLogger("forge.records")

RECORD_TABLE = "records"
UNIQUE_TABLE = "unique_index"
ACTIVITY_TABLE = "record_activities"
NOTE_TABLE = "record_notes"

LINK_KEYS = {"converted_from_id", "converted_to_id"}
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _public(row: dict) -> dict:
    out = copy.deepcopy(row)
    out.pop("_version", None)
    return out


def _check_links(links: dict | None) -> dict:
    links = links or {}
    unknown = set(links.keys()) - LINK_KEYS
    if unknown:
        raise InvalidPayload(f"unsupported links: {sorted(unknown)}", "links")
    return dict(links)


def _unique_token(value: Any) -> str:
    if isinstance(value, str):
        value = value.strip().lower()
    return canonical_dumps(value)


def _unique_key(tenant_id: str, module_name: str, field_name: str, value: Any) -> str:
    return f"{tenant_id}:{module_name}:{field_name}:{_unique_token(value)}"


def record_context(record: dict) -> dict:
    """Record data plus its system attributes, as seen by rule trees."""
    ctx = dict(record.get("data") or {})
    for key in ("id", "status", "number", "created_at", "updated_at", "created_by"):
        ctx.setdefault(key, record.get(key))
    return ctx


def _sort_value(value: Any) -> tuple:
    if isinstance(value, bool):
        return (1, str(value))
    if isinstance(value, (int, float)) and math.isfinite(value):
        return (0, value)
    return (1, str(value).lower())


class RecordStore:
    def __init__(self, storage: Any, schemas: Any, bus: Any | None = None, audit: Any | None = None) -> None:
        self._storage = storage
        self._schemas = schemas
        self._bus = bus
        self._audit = audit

    # -- isolation -------------------------------------------------------

    def _load(self, source: Any, caller: Caller, module_name: str, record_id: Any) -> dict:
        row = source.get(RECORD_TABLE, record_id) if isinstance(record_id, str) and record_id else None
        if (
            row is None
            or row.get("tenant_id") != caller.tenant_id
            or row.get("module_name") != module_name
            or row.get("deleted_at")
        ):
            raise NotFound("record not found", "record_id")
        return row

    # -- uniqueness ------------------------------------------------------

    def _sync_unique(self, unit: Any, caller: Caller, config: dict, record_id: str, before: dict, after: dict) -> None:
        errors = []
        module_name = config["module_name"]
        for field in config.get("fields") or []:
            if not field.get("is_unique"):
                continue
            name = field["name"]
            old = before.get(name)
            new = after.get(name)
            old_key = None if is_empty(old) else _unique_key(caller.tenant_id, module_name, name, old)
            new_key = None if is_empty(new) else _unique_key(caller.tenant_id, module_name, name, new)
            if old_key == new_key:
                continue
            if new_key is not None:
                owner = unit.get(UNIQUE_TABLE, new_key)
                if owner is not None and owner.get("record_id") != record_id:
                    errors.append(
                        field_error(name, DUPLICATE_VALUE, f"{field.get('label') or name} must be unique", {"value": new})
                    )
                    continue
                unit.put(
                    UNIQUE_TABLE,
                    new_key,
                    {"tenant_id": caller.tenant_id, "module_name": module_name, "field": name, "record_id": record_id},
                    expected_version=0,
                )
            if old_key is not None:
                self._release(unit, old_key, record_id)
        if errors:
            raise DuplicateValue(errors)

    def _check_references(self, unit: Any, caller: Caller, config: dict, before: dict, after: dict, errors: list) -> None:
        for field in config.get("fields") or []:
            if value_kind(field) != "reference":
                continue
            name = field["name"]
            value = after.get(name)
            target = (field.get("config") or {}).get("target_module")
            if not target or is_empty(value) or value == before.get(name):
                continue
            try:
                self._load(unit, caller, target, value)
            except NotFound:
                errors.append(
                    field_error(
                        name,
                        INVALID_REFERENCE,
                        f"{field.get('label') or name} must reference an existing {target} record",
                        {"target_module": target, "value": value},
                    )
                )

    def _release(self, unit: Any, key: str, record_id: str) -> None:
        owner = unit.get(UNIQUE_TABLE, key)
        if owner is not None and owner.get("record_id") == record_id:
            unit.delete(UNIQUE_TABLE, key, expected_version=owner["_version"])

    # -- events ----------------------------------------------------------

    def _emit(
        self,
        caller: Caller,
        config: dict,
        name: str,
        kind: str,
        record: dict,
        diff: dict,
        depth: int,
        action: str,
        metadata: dict,
    ) -> None:
        if self._audit is not None:
            self._audit.record(caller.tenant_id, caller.actor_id, action, record["module_name"], record["id"], metadata)
        if self._bus is None:
            return
        meta = {
            "tenant_id": caller.tenant_id,
            "module_name": record["module_name"],
            "actor": caller.actor_meta(),
            "depth": depth,
        }
        payload = {"kind": kind, "record": record, "diff": diff, "status_field": config.get("status_field")}
        event = make_event(name, payload, meta)
        self._bus.publish(event)

    # -- writes ----------------------------------------------------------

    def create(
        self,
        caller: Caller,
        module_name: str,
        payload: dict,
        *,
        depth: int = 0,
        tx: Any = None,
        links: dict | None = None,
    ) -> dict:
        require_tenant(caller)
        if not isinstance(payload, dict):
            raise InvalidPayload("record data must be an object", "data")
        links = _check_links(links)
        config = self._schemas.resolve(caller, module_name)
        status_field = config.get("status_field")
        data = dict(payload)
        if status_field and is_empty(data.get(status_field)) and config.get("initial_status"):
            data[status_field] = config["initial_status"]

        def _write(unit: Any) -> dict:
            prepared = dict(data)
            number = None
            auto_number = config.get("auto_number")
            if auto_number:
                number = next_number(unit, caller.tenant_id, module_name, auto_number)
                if auto_number.get("field"):
                    prepared[auto_number["field"]] = number
            errors, normalized = validate_payload(config, prepared, for_create=True)
            self._check_references(unit, caller, config, {}, normalized, errors)
            if errors:
                raise ValidationFailed(errors)
            record_id = str(uuid.uuid4())
            self._sync_unique(unit, caller, config, record_id, {}, normalized)
            now = _now()
            record = {
                "id": record_id,
                "tenant_id": caller.tenant_id,
                "module_name": module_name,
                "data": normalized,
                "status": normalized.get(status_field) if status_field else config.get("initial_status"),
                "number": number,
                "schema_version": config["version"],
                "created_by": caller.actor_id,
                "updated_by": caller.actor_id,
                "created_at": now,
                "updated_at": now,
                "deleted_at": None,
                "converted_from_id": links.get("converted_from_id"),
                "converted_to_id": links.get("converted_to_id"),
            }
            unit.put(RECORD_TABLE, record_id, record, expected_version=0)
            diff = change_diff({}, normalized)
            unit.after_commit(
                lambda: self._emit(caller, config, RECORD_CREATED, "create", record, diff, depth, "create", {"changes": diff})
            )
            return record

        try:
            record = run_in_transaction(self._storage, _write, tx=tx)
        except ValidationFailed as exc:
            logger.info("record_rejected tenant=%s module=%s errors=%s", caller.tenant_id, module_name, len(exc.field_errors))
            raise
        logger.info("record_created tenant=%s module=%s id=%s depth=%s", caller.tenant_id, module_name, record["id"], depth)
        return copy.deepcopy(record)

    def update(
        self,
        caller: Caller,
        module_name: str,
        record_id: str,
        patch: dict,
        *,
        status: str | None = None,
        links: dict | None = None,
        depth: int = 0,
        tx: Any = None,
    ) -> dict:
        require_tenant(caller)
        if not isinstance(patch, dict):
            raise InvalidPayload("record data must be an object", "data")
        links = _check_links(links)

        def _write(unit: Any) -> dict:
            row = self._load(unit, caller, module_name, record_id)
            version = row.pop("_version")
            config = self._schemas.resolve(caller, module_name)
            status_field = config.get("status_field")
            declared = {f.get("name") for f in config.get("fields") or []}
            before = row["data"]
            merged = dict(before)
            merged.update(patch)
            if status is not None and status_field:
                merged[status_field] = status
            # values of fields dropped from newer schema versions ride along untouched
            legacy = {k: v for k, v in merged.items() if k not in declared and k not in patch}
            candidate = {k: v for k, v in merged.items() if k not in legacy}
            errors, normalized = validate_payload(config, candidate, for_create=False)
            self._check_references(unit, caller, config, before, normalized, errors)
            if errors:
                raise ValidationFailed(errors)
            normalized.update(legacy)
            self._sync_unique(unit, caller, config, record_id, before, normalized)
            record = dict(row)
            record["data"] = normalized
            if status_field:
                record["status"] = normalized.get(status_field)
            elif status is not None:
                record["status"] = status
            record.update(links)
            record["updated_by"] = caller.actor_id
            record["updated_at"] = _now()
            record["schema_version"] = config["version"]
            unit.put(RECORD_TABLE, record_id, record, expected_version=version)
            diff = change_diff(before, normalized)
            metadata = {"changes": diff}
            if row.get("status") != record.get("status"):
                metadata["status"] = {"before": row.get("status"), "after": record.get("status")}
            unit.after_commit(
                lambda: self._emit(caller, config, RECORD_UPDATED, "update", record, diff, depth, "update", metadata)
            )
            return record

        record = run_in_transaction(self._storage, _write, tx=tx)
        logger.info("record_updated tenant=%s module=%s id=%s depth=%s", caller.tenant_id, module_name, record_id, depth)
        return copy.deepcopy(record)

    def delete(self, caller: Caller, module_name: str, record_id: str, *, depth: int = 0) -> dict:
        """Soft delete; the record becomes invisible and its unique values are released."""
        require_tenant(caller)

        def _write(unit: Any) -> dict:
            row = self._load(unit, caller, module_name, record_id)
            version = row.pop("_version")
            config = self._schemas.resolve(caller, module_name)
            self._sync_unique(unit, caller, config, record_id, row["data"], {})
            record = dict(row)
            record["deleted_at"] = _now()
            record["updated_by"] = caller.actor_id
            unit.put(RECORD_TABLE, record_id, record, expected_version=version)
            unit.after_commit(lambda: self._emit(caller, config, RECORD_DELETED, "delete", record, {}, depth, "delete", {}))
            return record

        record = run_in_transaction(self._storage, _write)
        logger.info("record_deleted tenant=%s module=%s id=%s", caller.tenant_id, module_name, record_id)
        return copy.deepcopy(record)

    # -- reads -----------------------------------------------------------

    def get(self, caller: Caller, module_name: str, record_id: str, *, tx: Any = None) -> dict:
        require_tenant(caller)
        return _public(self._load(tx if tx is not None else self._storage, caller, module_name, record_id))

    def list(
        self,
        caller: Caller,
        module_name: str,
        *,
        filters: Any = None,
        search: str | None = None,
        search_fields: List[str] | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> dict:
        require_tenant(caller)
        rows = [
            _public(row)
            for row in self._storage.query(RECORD_TABLE, tenant_id=caller.tenant_id, module_name=module_name)
            if not row.get("deleted_at")
        ]
        if filters:
            rows = [row for row in rows if eval_condition(filters, record_context(row))]
        if search:
            needle = search.strip().lower()
            rows = [row for row in rows if self._matches_search(row, needle, search_fields)]

        def _key(row: dict) -> tuple:
            return _sort_value(record_context(row).get(sort_by))

        present = [row for row in rows if record_context(row).get(sort_by) is not None]
        missing = [row for row in rows if record_context(row).get(sort_by) is None]
        present.sort(key=_key, reverse=(sort_order or "desc").lower() == "desc")
        rows = present + missing

        page = max(int(page or 1), 1)
        page_size = min(max(int(page_size or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
        total = len(rows)
        start = (page - 1) * page_size
        return {
            "items": rows[start : start + page_size],
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": (total + page_size - 1) // page_size,
        }

    @staticmethod
    def _matches_search(record: dict, needle: str, search_fields: List[str] | None) -> bool:
        data = record.get("data") or {}
        names = search_fields or list(data.keys())
        for name in names:
            value = data.get(name)
            if isinstance(value, (str, int, float)) and not isinstance(value, bool) and needle in str(value).lower():
                return True
        return bool(record.get("number")) and needle in str(record["number"]).lower()

    # -- timeline --------------------------------------------------------

    def create_record_activity(self, caller: Caller, module_name: str, record_id: str, activity: dict) -> dict:
        require_tenant(caller)
        self._load(self._storage, caller, module_name, record_id)
        if not isinstance(activity, dict):
            raise InvalidPayload("activity must be an object", "activity")
        for key in ("activity_type", "title"):
            if not isinstance(activity.get(key), str) or not activity.get(key).strip():
                raise InvalidPayload(f"{key} is required", key)
        entry = {
            "id": str(uuid.uuid4()),
            "tenant_id": caller.tenant_id,
            "module_name": module_name,
            "record_id": record_id,
            "activity_type": activity["activity_type"],
            "title": activity["title"],
            "description": activity.get("description"),
            "metadata": copy.deepcopy(activity.get("metadata") or {}),
            "created_by": caller.actor_id,
            "created_at": _now(),
        }
        self._storage.put(ACTIVITY_TABLE, entry["id"], entry, expected_version=0)
        logger.info("activity_created tenant=%s record=%s type=%s", caller.tenant_id, record_id, entry["activity_type"])
        return entry

    def list_record_activities(self, caller: Caller, module_name: str, record_id: str) -> List[dict]:
        require_tenant(caller)
        self._load(self._storage, caller, module_name, record_id)
        rows = [_public(row) for row in self._storage.query(ACTIVITY_TABLE, tenant_id=caller.tenant_id, record_id=record_id)]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return rows

    def create_record_note(self, caller: Caller, module_name: str, record_id: str, note: dict) -> dict:
        require_tenant(caller)
        self._load(self._storage, caller, module_name, record_id)
        if not isinstance(note, dict):
            raise InvalidPayload("note must be an object", "note")
        content = note.get("content")
        if not isinstance(content, str) or not content.strip():
            raise InvalidPayload("content is required", "content")
        mentions = note.get("mentions") or []
        if not isinstance(mentions, list) or not all(isinstance(m, str) for m in mentions):
            raise InvalidPayload("mentions must be a list of user ids", "mentions")
        entry = {
            "id": str(uuid.uuid4()),
            "tenant_id": caller.tenant_id,
            "module_name": module_name,
            "record_id": record_id,
            "content": content,
            "is_pinned": bool(note.get("is_pinned")),
            "mentions": list(mentions),
            "created_by": caller.actor_id,
            "created_at": _now(),
        }
        self._storage.put(NOTE_TABLE, entry["id"], entry, expected_version=0)
        logger.info("note_created tenant=%s record=%s", caller.tenant_id, record_id)
        return entry

    def list_record_notes(self, caller: Caller, module_name: str, record_id: str) -> List[dict]:
        require_tenant(caller)
        self._load(self._storage, caller, module_name, record_id)
        rows = [_public(row) for row in self._storage.query(NOTE_TABLE, tenant_id=caller.tenant_id, record_id=record_id)]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        rows.sort(key=lambda row: not row["is_pinned"])
        return rows
