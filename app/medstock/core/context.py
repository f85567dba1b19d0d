from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class OrganizationRole(str, Enum):
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"
    OWNER = "OWNER"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as resolved by the external identity layer."""

    user_id: str
    organization_id: str
    role: OrganizationRole
    name: str | None = None
    department_ids: frozenset[str] = field(default_factory=frozenset)

    def belongs_to(self, department_id) -> bool:
        return str(department_id) in self.department_ids

    @property
    def is_org_admin(self) -> bool:
        return self.role in (OrganizationRole.ADMIN, OrganizationRole.OWNER)

    def snapshot(self) -> dict:
        return {"id": self.user_id, "name": self.name, "role": self.role.value}


def build_actor(
    *,
    user_id: str,
    organization_id: str,
    role: str,
    name: str | None = None,
    department_ids=(),
) -> Actor:
    return Actor(
        user_id=str(user_id),
        organization_id=str(organization_id),
        role=OrganizationRole(role),
        name=name,
        department_ids=frozenset(str(value) for value in department_ids),
    )


@dataclass(frozen=True)
class RequestContext:
    user_id: str | None
    organization_id: str | None
    role: str | None
    trace_id: str


def build_request_context(
    *,
    user_id: str | None,
    organization_id: str | None,
    role: str | None,
    trace_id: str,
) -> RequestContext:
    return RequestContext(
        user_id=user_id,
        organization_id=organization_id,
        role=role,
        trace_id=trace_id,
    )

