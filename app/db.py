"""Postgres connection pool and query helpers."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Iterable

import psycopg2
import psycopg2.extras
from psycopg2.pool import SimpleConnectionPool

from app.config import Settings


_POOL: SimpleConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_SLOW_MS = 200.0
_logger = logging.getLogger("forge.db")
_query_logger = logging.getLogger("forge.db.query")


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    redacted: list[Any] = []
    for val in params:
        if isinstance(val, (bytes, bytearray)):
            redacted.append(f"<bytes:{len(val)}>")
        elif isinstance(val, str) and len(val) > 80:
            redacted.append(f"{val[:40]}...{val[-10:]}")
        else:
            redacted.append(val)
    return redacted


def _log_query(*, query_name: str | None, params: Iterable[Any] | None, elapsed_ms: float, rowcount: int | None) -> None:
    message = {
        "query": query_name or "unnamed",
        "ms": round(elapsed_ms, 2),
        "rowcount": rowcount,
        "params": _redact_params(params),
    }
    if elapsed_ms >= _SLOW_MS:
        _query_logger.warning("db_slow_query=%s", message)
    else:
        _query_logger.debug("db_query=%s", message)


def init_pool(settings: Settings) -> SimpleConnectionPool:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            if not settings.database_url:
                raise RuntimeError("DATABASE_URL is required when USE_DB=1")
            _POOL = SimpleConnectionPool(
                settings.db_pool_min,
                settings.db_pool_max,
                dsn=settings.database_url,
                options=f"-c statement_timeout={int(settings.db_statement_timeout_ms)}",
            )
            _logger.info("db_pool_ready min=%s max=%s", settings.db_pool_min, settings.db_pool_max)
        return _POOL


def close_pool() -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            _POOL.closeall()
            _POOL = None


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params or [])
        row = cur.fetchone()
        result = dict(row) if row else None
        rowcount = cur.rowcount
    _log_query(query_name=query_name, params=params, elapsed_ms=(time.perf_counter() - start) * 1000, rowcount=rowcount)
    return result


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params or [])
        result = [dict(r) for r in cur.fetchall()]
        rowcount = cur.rowcount
    _log_query(query_name=query_name, params=params, elapsed_ms=(time.perf_counter() - start) * 1000, rowcount=rowcount)
    return result


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    start = time.perf_counter()
    with conn.cursor() as cur:
        cur.execute(sql, params or [])
        rowcount = cur.rowcount
    _log_query(query_name=query_name, params=params, elapsed_ms=(time.perf_counter() - start) * 1000, rowcount=rowcount)
    return rowcount
