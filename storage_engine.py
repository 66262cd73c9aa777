"""Storage engine contract, in-memory engine and transaction helper.

Rows are JSON-like dicts addressed by ``(table, key)``. Every row carries a
monotonically increasing version that callers can pin with
``expected_version`` for optimistic concurrency; ``expected_version=0`` means
the row must not exist yet, which is how unique constraints are expressed.
Reads return a copy of the row with its version under ``_version``.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Tuple, TypeVar

from platform_errors import CollaboratorTimeout, ConflictError


logger = logging.getLogger("forge.storage")

T = TypeVar("T")
VERSION_KEY = "_version"


class StorageError(RuntimeError):
    pass


class TransientConflict(StorageError):
    """Contention signal; the unit of work may be retried."""


class VersionConflict(TransientConflict):
    def __init__(self, table: str, key: str, expected: int | None, actual: int) -> None:
        super().__init__(f"version conflict on {table}/{key}: expected {expected}, found {actual}")
        self.table = table
        self.key = key
        self.expected = expected
        self.actual = actual


def _strip(value: dict) -> dict:
    out = copy.deepcopy(value)
    out.pop(VERSION_KEY, None)
    return out


def _with_version(value: dict, version: int) -> dict:
    out = copy.deepcopy(value)
    out[VERSION_KEY] = version
    return out


def _matches(row: dict, equals: dict) -> bool:
    for name, expected in equals.items():
        if row.get(name) != expected:
            return False
    return True


class BaseTx:
    def __init__(self) -> None:
        self._hooks: List[Callable[[], None]] = []
        self.committed = False
        self.rolled_back = False

    @property
    def closed(self) -> bool:
        return self.committed or self.rolled_back

    def after_commit(self, fn: Callable[[], None]) -> None:
        self._hooks.append(fn)

    def _run_hooks(self) -> None:
        hooks, self._hooks = self._hooks, []
        for fn in hooks:
            try:
                fn()
            except Exception:
                logger.exception("after_commit_hook_failed")


class InMemoryTx(BaseTx):
    def __init__(self, storage: "InMemoryStorage") -> None:
        super().__init__()
        self._storage = storage
        # (table, key) -> {"value": dict | None, "expected": int | None, "version": int}
        self._writes: Dict[Tuple[str, str], dict] = {}

    def get(self, table: str, key: str) -> dict | None:
        staged = self._writes.get((table, key))
        if staged is not None:
            if staged["value"] is None:
                return None
            return _with_version(staged["value"], staged["version"])
        return self._storage.get(table, key)

    def _stage(self, table: str, key: str, value: dict | None, expected_version: int | None) -> int:
        if self.closed:
            raise StorageError("transaction is closed")
        slot = (table, key)
        staged = self._writes.get(slot)
        if staged is not None:
            current = staged["version"] if staged["value"] is not None else 0
            if expected_version is not None and expected_version != current:
                raise VersionConflict(table, key, expected_version, current)
            staged["value"] = None if value is None else _strip(value)
            staged["version"] = current + 1
            return staged["version"]
        current = self._storage.version_of(table, key)
        if expected_version is not None and expected_version != current:
            raise VersionConflict(table, key, expected_version, current)
        self._writes[slot] = {
            "value": None if value is None else _strip(value),
            "expected": expected_version,
            "version": current + 1,
        }
        return current + 1

    def put(self, table: str, key: str, value: dict, expected_version: int | None = None) -> int:
        return self._stage(table, key, value, expected_version)

    def delete(self, table: str, key: str, expected_version: int | None = None) -> None:
        self._stage(table, key, None, expected_version)

    def query(self, table: str, **equals: Any) -> list[dict]:
        rows = {row["_key"]: row for row in self._storage.query_keyed(table, **equals)}
        for (tbl, key), staged in self._writes.items():
            if tbl != table:
                continue
            rows.pop(key, None)
            value = staged["value"]
            if value is not None and _matches(value, equals):
                row = _with_version(value, staged["version"])
                row["_key"] = key
                rows[key] = row
        out = []
        for row in rows.values():
            row.pop("_key", None)
            out.append(row)
        return out

    def commit(self) -> None:
        if self.closed:
            raise StorageError("transaction is closed")
        try:
            self._storage._commit(self._writes)
        except BaseException:
            self.rolled_back = True
            raise
        self.committed = True
        self._run_hooks()

    def rollback(self) -> None:
        if self.closed:
            return
        self._writes.clear()
        self._hooks.clear()
        self.rolled_back = True


class InMemoryStorage:
    def __init__(self, lock_timeout: float = 5.0) -> None:
        self._tables: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.Lock()
        self._lock_timeout = lock_timeout

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise CollaboratorTimeout("storage", self._lock_timeout)

    def begin(self) -> InMemoryTx:
        return InMemoryTx(self)

    def version_of(self, table: str, key: str) -> int:
        self._acquire()
        try:
            row = self._tables.get(table, {}).get(key)
            return row["version"] if row else 0
        finally:
            self._lock.release()

    def get(self, table: str, key: str) -> dict | None:
        self._acquire()
        try:
            row = self._tables.get(table, {}).get(key)
            if row is None:
                return None
            return _with_version(row["value"], row["version"])
        finally:
            self._lock.release()

    def query_keyed(self, table: str, **equals: Any) -> list[dict]:
        self._acquire()
        try:
            out = []
            for key, row in self._tables.get(table, {}).items():
                if _matches(row["value"], equals):
                    item = _with_version(row["value"], row["version"])
                    item["_key"] = key
                    out.append(item)
            return out
        finally:
            self._lock.release()

    def query(self, table: str, **equals: Any) -> list[dict]:
        rows = self.query_keyed(table, **equals)
        for row in rows:
            row.pop("_key", None)
        return rows

    def put(self, table: str, key: str, value: dict, expected_version: int | None = None) -> int:
        tx = self.begin()
        version = tx.put(table, key, value, expected_version)
        tx.commit()
        return version

    def delete(self, table: str, key: str, expected_version: int | None = None) -> None:
        tx = self.begin()
        tx.delete(table, key, expected_version)
        tx.commit()

    def _commit(self, writes: Dict[Tuple[str, str], dict]) -> None:
        self._acquire()
        try:
            for (table, key), staged in writes.items():
                row = self._tables.get(table, {}).get(key)
                current = row["version"] if row else 0
                expected = staged["expected"]
                if expected is not None and expected != current:
                    raise VersionConflict(table, key, expected, current)
            for (table, key), staged in writes.items():
                bucket = self._tables.setdefault(table, {})
                if staged["value"] is None:
                    bucket.pop(key, None)
                    continue
                row = bucket.get(key)
                current = row["version"] if row else 0
                bucket[key] = {"value": copy.deepcopy(staged["value"]), "version": current + 1}
        finally:
            self._lock.release()


def run_in_transaction(storage: Any, fn: Callable[[Any], T], *, tx: Any = None, retries: int = 1) -> T:
    """Run ``fn(tx)`` as one atomic unit.

    A caller-owned ``tx`` is joined as is: no commit and no retry here. An
    owned transaction is retried ``retries`` times on transient contention and
    then surfaced as :class:`ConflictError`. Any other exception, including
    cancellation, rolls the unit back before propagating.
    """
    if tx is not None:
        return fn(tx)
    attempt = 0
    while True:
        unit = storage.begin()
        try:
            result = fn(unit)
            unit.commit()
            return result
        except TransientConflict as exc:
            unit.rollback()
            if attempt >= retries:
                logger.warning("tx_conflict attempts=%s error=%s", attempt + 1, exc)
                raise ConflictError(str(exc)) from exc
            attempt += 1
            logger.info("tx_retry attempt=%s error=%s", attempt, exc)
        except BaseException:
            unit.rollback()
            raise
