"""Error taxonomy shared by the record engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List


Issue = Dict[str, Any]


@dataclass
class PlatformError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class NotFound(PlatformError):
    def __init__(self, message: str = "not found", path: str | None = None) -> None:
        super().__init__("NOT_FOUND", message, path)


class Forbidden(PlatformError):
    def __init__(self, message: str = "forbidden", path: str | None = None) -> None:
        super().__init__("FORBIDDEN", message, path)


class InvalidPayload(PlatformError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("INVALID_PAYLOAD", message, path)


class AlreadyConverted(PlatformError):
    def __init__(self, record_id: str, status: str | None) -> None:
        super().__init__("ALREADY_CONVERTED", f"record {record_id} already converted (status={status})", "status")
        self.record_id = record_id
        self.status = status


class RecursionLimitExceeded(PlatformError):
    def __init__(self, depth: int, limit: int) -> None:
        super().__init__("RECURSION_LIMIT_EXCEEDED", f"workflow depth {depth} reached limit {limit}", "depth")
        self.depth = depth
        self.limit = limit


class CollaboratorTimeout(PlatformError):
    def __init__(self, collaborator: str, timeout: float) -> None:
        super().__init__("COLLABORATOR_TIMEOUT", f"{collaborator} exceeded {timeout}s", None)
        self.collaborator = collaborator
        self.timeout = timeout


class ConflictError(PlatformError):
    def __init__(self, message: str = "concurrent modification", path: str | None = None) -> None:
        super().__init__("CONFLICT", message, path)


class SchemaError(PlatformError):
    def __init__(self, issues: List[Issue], message: str = "invalid module config") -> None:
        PlatformError.__init__(self, "SCHEMA_ERROR", message, None)
        self.issues = list(issues)


class ValidationFailed(PlatformError):
    def __init__(self, field_errors: List[Issue], message: str = "record validation failed") -> None:
        PlatformError.__init__(self, "VALIDATION_FAILED", message, None)
        self.field_errors = list(field_errors)


class DuplicateValue(ValidationFailed):
    def __init__(self, field_errors: List[Issue]) -> None:
        super().__init__(field_errors, "unique field collision")
        self.code = "DUPLICATE_VALUE"


def issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def field_error(field_name: str | None, kind: str, message: str, detail: dict | None = None) -> Issue:
    return {"field": field_name, "kind": kind, "message": message, "detail": detail}
