"""Explicit caller identity passed into every core entry point."""

from __future__ import annotations

from dataclasses import dataclass

from platform_errors import Forbidden


ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Caller:
    tenant_id: str
    actor_id: str
    role: str = "staff"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def actor_meta(self) -> dict:
        return {"id": self.actor_id, "roles": [self.role]}

    @classmethod
    def from_meta(cls, tenant_id: str, actor: dict | None) -> "Caller":
        actor = actor or {}
        roles = actor.get("roles") or []
        return cls(tenant_id=tenant_id, actor_id=actor.get("id") or "system", role=roles[0] if roles else "staff")


def require_admin(caller: Caller, action: str) -> None:
    if not caller.is_admin:
        raise Forbidden(f"{action} requires the {ADMIN_ROLE} role", "role")


def require_tenant(caller: Caller) -> None:
    if not isinstance(caller, Caller) or not caller.tenant_id:
        raise Forbidden("caller tenant is required", "tenant_id")
