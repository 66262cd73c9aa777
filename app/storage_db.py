"""Postgres storage engine: versioned JSON rows in one jsonb table."""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Callable

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json
from psycopg2.pool import SimpleConnectionPool

from app.db import execute, fetch_all, fetch_one
from platform_errors import CollaboratorTimeout
from storage_engine import VERSION_KEY, BaseTx, StorageError, TransientConflict, VersionConflict


logger = logging.getLogger("forge.storage.db")

SCHEMA_SQL = (
    """
    create table if not exists kv_store (
        tbl text not null,
        key text not null,
        tenant_id text,
        value jsonb not null,
        version integer not null,
        primary key (tbl, key)
    )
    """,
    "create index if not exists kv_store_tenant_idx on kv_store (tbl, tenant_id)",
    "create index if not exists kv_store_value_idx on kv_store using gin (value jsonb_path_ops)",
)


def _ensure_json(value: Any) -> dict:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row(record: dict) -> dict:
    value = copy.deepcopy(_ensure_json(record["value"]))
    value[VERSION_KEY] = record["version"]
    return value


def _clean(value: dict) -> dict:
    out = copy.deepcopy(value)
    out.pop(VERSION_KEY, None)
    return out


class PostgresTx(BaseTx):
    def __init__(self, storage: "PostgresStorage") -> None:
        super().__init__()
        self._storage = storage
        self._pool = storage.pool
        self.conn = self._pool.getconn()

    def _run(self, fn: Callable[[], Any]) -> Any:
        if self.closed:
            raise StorageError("transaction is closed")
        try:
            return fn()
        except (pg_errors.SerializationFailure, pg_errors.DeadlockDetected, pg_errors.UniqueViolation) as exc:
            raise TransientConflict(str(exc).strip()) from exc
        except pg_errors.QueryCanceled as exc:
            raise CollaboratorTimeout("postgres", self._storage.statement_timeout_ms / 1000.0) from exc

    def _actual_version(self, table: str, key: str) -> int:
        row = fetch_one(self.conn, "select version from kv_store where tbl = %s and key = %s", [table, key], query_name="kv.version")
        return row["version"] if row else 0

    def get(self, table: str, key: str) -> dict | None:
        row = self._run(
            lambda: fetch_one(
                self.conn,
                "select value, version from kv_store where tbl = %s and key = %s",
                [table, key],
                query_name="kv.get",
            )
        )
        return _row(row) if row else None

    def query(self, table: str, **equals: Any) -> list[dict]:
        rows = self._run(
            lambda: fetch_all(
                self.conn,
                "select value, version from kv_store where tbl = %s and value @> %s::jsonb order by key",
                [table, json.dumps(equals)],
                query_name="kv.query",
            )
        )
        return [_row(row) for row in rows]

    def put(self, table: str, key: str, value: dict, expected_version: int | None = None) -> int:
        value = _clean(value)
        tenant_id = value.get("tenant_id")
        if expected_version is None:
            sql = (
                "insert into kv_store (tbl, key, tenant_id, value, version) values (%s, %s, %s, %s, 1) "
                "on conflict (tbl, key) do update set value = excluded.value, tenant_id = excluded.tenant_id, "
                "version = kv_store.version + 1 returning version"
            )
            params = [table, key, tenant_id, Json(value)]
        elif expected_version == 0:
            sql = (
                "insert into kv_store (tbl, key, tenant_id, value, version) values (%s, %s, %s, %s, 1) "
                "on conflict (tbl, key) do nothing returning version"
            )
            params = [table, key, tenant_id, Json(value)]
        else:
            sql = (
                "update kv_store set value = %s, tenant_id = %s, version = version + 1 "
                "where tbl = %s and key = %s and version = %s returning version"
            )
            params = [Json(value), tenant_id, table, key, expected_version]
        row = self._run(lambda: fetch_one(self.conn, sql, params, query_name="kv.put"))
        if row is None:
            raise VersionConflict(table, key, expected_version, self._actual_version(table, key))
        return row["version"]

    def delete(self, table: str, key: str, expected_version: int | None = None) -> None:
        if expected_version is None:
            self._run(lambda: execute(self.conn, "delete from kv_store where tbl = %s and key = %s", [table, key], query_name="kv.delete"))
            return
        count = self._run(
            lambda: execute(
                self.conn,
                "delete from kv_store where tbl = %s and key = %s and version = %s",
                [table, key, expected_version],
                query_name="kv.delete",
            )
        )
        if count == 0:
            raise VersionConflict(table, key, expected_version, self._actual_version(table, key))

    def commit(self) -> None:
        if self.closed:
            raise StorageError("transaction is closed")
        try:
            self._run(self.conn.commit)
        except BaseException:
            self.conn.rollback()
            self.rolled_back = True
            self._pool.putconn(self.conn)
            raise
        self.committed = True
        self._pool.putconn(self.conn)
        self._run_hooks()

    def rollback(self) -> None:
        if self.closed:
            return
        try:
            self.conn.rollback()
        finally:
            self.rolled_back = True
            self._hooks.clear()
            self._pool.putconn(self.conn)


class PostgresStorage:
    def __init__(self, pool: SimpleConnectionPool, statement_timeout_ms: int = 5000) -> None:
        self.pool = pool
        self.statement_timeout_ms = statement_timeout_ms

    def ensure_schema(self) -> None:
        tx = self.begin()
        try:
            for sql in SCHEMA_SQL:
                tx._run(lambda sql=sql: execute(tx.conn, sql, query_name="kv.schema"))
            tx.commit()
        except BaseException:
            tx.rollback()
            raise
        logger.info("kv_store_ready")

    def begin(self) -> PostgresTx:
        return PostgresTx(self)

    def _single(self, fn: Callable[[PostgresTx], Any]) -> Any:
        tx = self.begin()
        try:
            result = fn(tx)
            tx.commit()
            return result
        except BaseException:
            tx.rollback()
            raise

    def get(self, table: str, key: str) -> dict | None:
        return self._single(lambda tx: tx.get(table, key))

    def query(self, table: str, **equals: Any) -> list[dict]:
        return self._single(lambda tx: tx.query(table, **equals))

    def put(self, table: str, key: str, value: dict, expected_version: int | None = None) -> int:
        return self._single(lambda tx: tx.put(table, key, value, expected_version))

    def delete(self, table: str, key: str, expected_version: int | None = None) -> None:
        self._single(lambda tx: tx.delete(table, key, expected_version))
