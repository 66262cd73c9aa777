"""Canonical JSON serialization and definition hashing."""

from __future__ import annotations

import copy
import hashlib
import json
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Raised when a value cannot be represented as canonical JSON."""


def jsonable(value: Any, path: str = "$") -> Any:
    """Return a JSON-compatible deep copy of ``value``.

    Dates become ISO strings, datetimes become UTC ``...Z`` strings and
    Decimals become floats. Tuples are turned into lists. Anything else that
    JSON cannot carry raises :class:`CanonicalJsonTypeError`.
    """
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Non-finite float at {path}: {value!r}")
        return value
    if isinstance(value, Decimal):
        return jsonable(float(value), path)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
            return value.isoformat(timespec="seconds") + "Z"
        return value.isoformat(timespec="seconds")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise CanonicalJsonTypeError(
                    f"Unsupported key type at {path}: {type(key).__name__}"
                )
            out[key] = jsonable(item, f"{path}.{key}")
        return out
    if isinstance(value, (list, tuple)):
        return [jsonable(item, f"{path}[{idx}]") for idx, item in enumerate(value)]
    raise CanonicalJsonTypeError(f"Unsupported type at {path}: {type(value).__name__}")


def canonical_dumps(obj: Any) -> str:
    """Serialize with sorted keys, no whitespace and non-ASCII preserved."""
    return json.dumps(
        jsonable(obj),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )


def config_hash(definition: Any) -> str:
    data = canonical_dumps(definition).encode("utf-8")
    return "sha256:" + hashlib.sha256(data).hexdigest()


def clone(value: Any) -> Any:
    return copy.deepcopy(value)
